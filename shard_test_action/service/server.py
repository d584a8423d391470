"""aiohttp application exposing a work queue to remote agents."""

import asyncio
import hmac
import logging
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager

from aiohttp import web
from pydantic import BaseModel, ValidationError

from shard_test_action.errors import StaleAckError, UnknownBatchError
from shard_test_action.service.models import (
    AckRequest,
    ErrorResponse,
    ExtendRequest,
    ExtendResponse,
    HeartbeatResponse,
    LeaseRequest,
    LeaseResponse,
    StatusResponse,
)
from shard_test_action.work_queue import WorkQueue

log = logging.getLogger(__name__)

QUEUE_KEY = web.AppKey("queue", WorkQueue)
TOKEN_KEY = web.AppKey("token", str)
LEASE_WAIT_KEY = web.AppKey("lease_wait", float)

type Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def create_app(
    queue: WorkQueue, token: str | None = None, lease_wait: float = 20
) -> web.Application:
    """Build the HTTP application for a queue.

    Requeueing is not exposed; only the failure handler running next to
    the queue calls it.

    Args:
        queue: Queue of the current run
        token: Optional bearer token every request must present
        lease_wait: Seconds a lease request may wait for work before the
            client is told to retry

    Returns:
        Application ready to be served

    """
    app = web.Application(middlewares=[_auth_middleware])
    app[QUEUE_KEY] = queue
    app[TOKEN_KEY] = token or ""
    app[LEASE_WAIT_KEY] = lease_wait
    app.router.add_post("/agents/{agent_id}/heartbeat", handle_heartbeat)
    app.router.add_post("/lease", handle_lease)
    app.router.add_post("/ack", handle_ack)
    app.router.add_post("/extend", handle_extend)
    app.router.add_get("/status", handle_status)
    return app


@web.middleware
async def _auth_middleware(
    request: web.Request, handler: Handler
) -> web.StreamResponse:
    expected = request.app[TOKEN_KEY]
    if expected:
        provided = request.headers.get("Authorization", "").encode()
        if not hmac.compare_digest(provided, f"Bearer {expected}".encode()):
            return _error(401, "Invalid or missing token")
    return await handler(request)


async def handle_heartbeat(request: web.Request) -> web.Response:
    """Record an agent heartbeat."""
    status = await request.app[QUEUE_KEY].heartbeat(request.match_info["agent_id"])
    return _json(HeartbeatResponse(status=status))


async def handle_lease(request: web.Request) -> web.Response:
    """Lease the next batch to the requesting agent."""
    body = await _parse(request, LeaseRequest)
    try:
        lease = await asyncio.wait_for(
            request.app[QUEUE_KEY].lease(body.agent_id),
            timeout=request.app[LEASE_WAIT_KEY],
        )
    except TimeoutError:
        return _json(LeaseResponse(retry=True))
    return _json(LeaseResponse(lease=lease))


async def handle_ack(request: web.Request) -> web.Response:
    """Complete a batch with its results."""
    body = await _parse(request, AckRequest)
    try:
        await request.app[QUEUE_KEY].ack(body.batch_id, body.agent_id, body.results)
    except StaleAckError as e:
        log.warning("%s", e)
        return _error(409, e.reason)
    except UnknownBatchError as e:
        return _error(404, str(e))
    return web.Response(status=204)


async def handle_extend(request: web.Request) -> web.Response:
    """Renew a lease for its owner."""
    body = await _parse(request, ExtendRequest)
    try:
        extended = await request.app[QUEUE_KEY].extend_lease(
            body.batch_id, body.agent_id
        )
    except UnknownBatchError as e:
        return _error(404, str(e))
    return _json(ExtendResponse(extended=extended))


async def handle_status(request: web.Request) -> web.Response:
    """Report batch counts and agent liveness."""
    queue = request.app[QUEUE_KEY]
    return _json(
        StatusResponse(
            closed=queue.closed,
            batches=queue.snapshot(),
            agents={agent_id: agent.status for agent_id, agent in queue.agents.items()},
        )
    )


async def _parse[M: BaseModel](request: web.Request, model: type[M]) -> M:
    try:
        return model.model_validate_json(await request.read())
    except ValidationError as e:
        raise web.HTTPBadRequest(
            text=ErrorResponse(error=str(e)).model_dump_json(),
            content_type="application/json",
        ) from e


def _error(status: int, message: str) -> web.Response:
    return web.Response(
        status=status,
        text=ErrorResponse(error=message).model_dump_json(),
        content_type="application/json",
    )


def _json(model: BaseModel) -> web.Response:
    return web.Response(text=model.model_dump_json(), content_type="application/json")


@asynccontextmanager
async def serve_queue(
    queue: WorkQueue, host: str, port: int, token: str | None = None
) -> AsyncGenerator[web.AppRunner, None]:
    """Serve a queue over HTTP for the duration of the context."""
    runner = web.AppRunner(create_app(queue, token))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    log.info("Serving work queue on http://%s:%d", host, port)
    try:
        yield runner
    finally:
        await runner.cleanup()
