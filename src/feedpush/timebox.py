"""Time-boxed HTTP requests."""

import asyncio

import httpx

from feedpush.config import DEFAULT_FETCH_TIMEOUT

DEFAULT_TIMEOUT = DEFAULT_FETCH_TIMEOUT


class FetchTimeoutError(Exception):
    """Raised when a request does not complete before its deadline."""


async def fetch_with_timeout(
    client: httpx.AsyncClient,
    url: str,
    timeout: float = DEFAULT_TIMEOUT,
    **kwargs,
) -> httpx.Response:
    """GET a URL, reading the full body before the deadline.

    The request is cancelled if the deadline passes, whether it is still
    connecting, waiting for headers or streaming the body.

    Raises:
        FetchTimeoutError: If the deadline expires.
        httpx.HTTPError: On network errors.
    """
    try:
        async with asyncio.timeout(timeout):
            response = await client.get(url, **kwargs)
            await response.aread()
    except (TimeoutError, httpx.TimeoutException):
        raise FetchTimeoutError(f"Timed out after {timeout:g}s")
    return response
