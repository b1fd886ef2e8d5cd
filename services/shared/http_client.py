"""
Outbound HTTP for the engine's collaborators (snapshot service, push
gateway, Twilio).

    async with traced_client(timeout=8.0) as client:
        resp = await client.get(f"{base_url}/entities/{entity_id}/snapshot")

The current pass or sweep trace id rides along as X-Trace-ID.
"""

import httpx
from contextlib import asynccontextmanager
from typing import AsyncIterator

from shared.logging import trace_id_var

USER_AGENT = "proactive-notifications/0.1"


class TraceTransport(httpx.AsyncHTTPTransport):
    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        trace_id = trace_id_var.get("")
        if trace_id:
            request.headers["X-Trace-ID"] = trace_id
        return await super().handle_async_request(request)


@asynccontextmanager
async def traced_client(
    timeout: float = 10.0,
    retries: int = 0,
    **kwargs,
) -> AsyncIterator[httpx.AsyncClient]:
    """
    Yield an httpx.AsyncClient bound to one collaborator call site.

    Args:
        timeout: Per-request bound in seconds. Callers always pass their own.
        retries: Connection-level retries only; HTTP error statuses are
            never retried here.
        **kwargs: Forwarded to httpx.AsyncClient.
    """
    headers = {"User-Agent": USER_AGENT, **kwargs.pop("headers", {})}
    async with httpx.AsyncClient(
        transport=TraceTransport(retries=retries),
        timeout=timeout,
        headers=headers,
        **kwargs,
    ) as client:
        yield client
