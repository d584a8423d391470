"""Work queue client speaking to a remote queue over HTTP."""

import logging
from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from urllib.parse import quote

import aiohttp

from shard_test_action.errors import StaleAckError, UnknownBatchError
from shard_test_action.models.batch import AgentStatus, Lease
from shard_test_action.models.result import RunResult
from shard_test_action.service.config import QueueClientConfig
from shard_test_action.service.models import (
    AckRequest,
    ErrorResponse,
    ExtendRequest,
    ExtendResponse,
    HeartbeatResponse,
    LeaseRequest,
    LeaseResponse,
)

log = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class HttpQueueClient:
    """Queue client for agents running outside the coordinator process."""

    config: QueueClientConfig
    session: aiohttp.ClientSession = field(repr=False)

    @classmethod
    @asynccontextmanager
    async def from_config(
        cls, config: QueueClientConfig
    ) -> AsyncGenerator["HttpQueueClient", None]:
        """Create client with managed session lifecycle."""
        headers = {"Accept": "application/json"}
        if config.token is not None:
            headers["Authorization"] = f"Bearer {config.token.get_secret_value()}"
        async with aiohttp.ClientSession(
            base_url=config.url,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=config.request_timeout),
        ) as session:
            yield cls(config=config, session=session)

    async def heartbeat(self, agent_id: str) -> AgentStatus:
        """Report liveness and learn whether the queue considers us dead."""
        url = f"/agents/{quote(agent_id, safe='')}/heartbeat"
        async with self.session.post(url) as response:
            if response.status != 200:
                text = await response.text()
                raise RuntimeError(f"Heartbeat failed: {response.status} {text}")
            data = await response.json()
        return HeartbeatResponse.model_validate(data).status

    async def lease(self, agent_id: str) -> Lease | None:
        """Lease the next batch, None when the agent should stop.

        Repeats the long-poll request while the server asks us to retry.
        """
        payload = LeaseRequest(agent_id=agent_id).model_dump(mode="json")
        while True:
            async with self.session.post("/lease", json=payload) as response:
                if response.status != 200:
                    text = await response.text()
                    raise RuntimeError(
                        f"Lease request failed: {response.status} {text}"
                    )
                data = await response.json()

            lease_response = LeaseResponse.model_validate(data)
            if not lease_response.retry:
                return lease_response.lease
            log.debug("No work available yet for %s, polling again", agent_id)

    async def ack(
        self, batch_id: str, agent_id: str, results: Sequence[RunResult]
    ) -> None:
        """Report a completed batch.

        Raises:
            StaleAckError: If the queue no longer considers us the owner
            UnknownBatchError: If the queue does not know the batch

        """
        payload = AckRequest(
            batch_id=batch_id, agent_id=agent_id, results=results
        ).model_dump(mode="json")
        async with self.session.post("/ack", json=payload) as response:
            if response.status == 204:
                return
            text = await response.text()
            if response.status == 409:
                raise StaleAckError(batch_id, agent_id, _error_message(text))
            if response.status == 404:
                raise UnknownBatchError(_error_message(text))
            raise RuntimeError(f"Ack failed: {response.status} {text}")

    async def extend_lease(self, batch_id: str, agent_id: str) -> bool:
        """Renew a held lease, False if it is no longer ours."""
        payload = ExtendRequest(batch_id=batch_id, agent_id=agent_id).model_dump(
            mode="json"
        )
        async with self.session.post("/extend", json=payload) as response:
            if response.status == 404:
                raise UnknownBatchError(_error_message(await response.text()))
            if response.status != 200:
                text = await response.text()
                raise RuntimeError(f"Lease extension failed: {response.status} {text}")
            data = await response.json()
        return ExtendResponse.model_validate(data).extended


def _error_message(text: str) -> str:
    try:
        return ErrorResponse.model_validate_json(text).error
    except ValueError:
        return text
