"""HTTP helpers shared by the credential and quota clients."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx

from account_pool.constants import CLOUDCODE_USER_AGENT, DEFAULT_HTTP_TIMEOUT_SECONDS


# Transient upstream statuses worth retrying (503 Service Unavailable, 529 Overloaded)
TRANSIENT_STATUS_CODES = frozenset({500, 502, 503, 504, 529})


class TransientHTTPError(Exception):
    """Retryable upstream failure."""

    def __init__(self, status_code: int, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Transient error: {status_code}")


@asynccontextmanager
async def open_client(
    client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
) -> AsyncIterator[httpx.AsyncClient]:
    """Yield the given client, or a short-lived one closed on exit."""
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=timeout) as owned:
        yield owned


def cloudcode_headers(token: str, user_agent: str = CLOUDCODE_USER_AGENT) -> dict[str, str]:
    """Build headers for authenticated Cloud Code requests."""
    return {
        "Authorization": f"Bearer {token}",
        "Content-Type": "application/json",
        "User-Agent": user_agent,
    }
