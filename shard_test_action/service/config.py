"""Configuration for the work queue HTTP client."""

from pydantic import BaseModel, Field, SecretStr


class QueueClientConfig(BaseModel):
    """Configuration for reaching a remote work queue."""

    url: str
    token: SecretStr | None = None
    request_timeout: float = Field(
        default=60, gt=0, description="Must exceed the server's lease long-poll window"
    )
