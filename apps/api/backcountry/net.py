from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Optional, Sequence, Tuple

import httpx

from backcountry.providers import USER_AGENT, ProviderError, RequestCancelled

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = float(os.environ.get("BACKCOUNTRY_REQUEST_TIMEOUT_SECONDS", "9"))


def new_client(transport: httpx.AsyncBaseTransport | None = None) -> httpx.AsyncClient:
    headers = {"User-Agent": USER_AGENT, "Accept": "application/geo+json, application/json"}
    return httpx.AsyncClient(
        timeout=REQUEST_TIMEOUT_SECONDS,
        headers=headers,
        transport=transport,
        follow_redirects=True,
    )


async def fetch(
    client: httpx.AsyncClient,
    url: str,
    *,
    params: Optional[Dict[str, Any]] = None,
    timeout: float | None = None,
    cancel: asyncio.Event | None = None,
    provider: str = "upstream",
) -> httpx.Response:
    """GET with an overall deadline that also honours a caller cancel event.

    Notes:
    - httpx timeouts are per phase; the asyncio deadline bounds the whole call.
    - When `cancel` is set while the request is in flight, the request task
      is cancelled and RequestCancelled is raised immediately.
    """
    if cancel is not None and cancel.is_set():
        raise RequestCancelled(f"{provider}: request cancelled before start")

    limit = REQUEST_TIMEOUT_SECONDS if timeout is None else float(timeout)
    request = asyncio.ensure_future(client.get(url, params=params, timeout=limit))
    waiters = {request}
    cancel_waiter = None
    if cancel is not None:
        cancel_waiter = asyncio.ensure_future(cancel.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(waiters, timeout=limit, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        request.cancel()
        if cancel_waiter is not None:
            cancel_waiter.cancel()
        raise

    if cancel_waiter is not None and not cancel_waiter.done():
        cancel_waiter.cancel()

    if request in done:
        return request.result()

    request.cancel()
    if cancel_waiter is not None and cancel_waiter in done:
        raise RequestCancelled(f"{provider}: request cancelled")
    raise ProviderError(provider, f"timed out after {limit:g}s")


async def fetch_json(
    client: httpx.AsyncClient,
    url: str,
    *,
    params: Optional[Dict[str, Any]] = None,
    timeout: float | None = None,
    cancel: asyncio.Event | None = None,
    provider: str = "upstream",
) -> Tuple[Any, httpx.Headers]:
    r = await fetch(client, url, params=params, timeout=timeout, cancel=cancel, provider=provider)
    if r.status_code != 200:
        raise ProviderError(provider, f"HTTP {r.status_code} {r.text[:200]}", status_code=r.status_code)
    try:
        return r.json(), r.headers
    except ValueError as e:
        raise ProviderError(provider, f"invalid JSON: {e}") from e


async def fetch_json_with_fallback(
    client: httpx.AsyncClient,
    urls: Sequence[str],
    *,
    params: Optional[Dict[str, Any]] = None,
    attempts: int = 3,
    timeout: float | None = None,
    cancel: asyncio.Event | None = None,
    provider: str = "upstream",
) -> Tuple[Any, httpx.Headers]:
    """Try each mirror `attempts` times, in order, and return the first good payload."""
    last_error: Exception | None = None
    for url in urls:
        for attempt in range(1, attempts + 1):
            try:
                return await fetch_json(client, url, params=params, timeout=timeout, cancel=cancel, provider=provider)
            except RequestCancelled:
                raise
            except (ProviderError, httpx.HTTPError) as e:
                last_error = e
                logger.debug("%s attempt %d/%d against %s failed: %s", provider, attempt, attempts, url, e)
    if last_error is None:
        raise ProviderError(provider, "no endpoints configured")
    raise last_error


def response_date(headers: httpx.Headers | None) -> datetime | None:
    """Parse the HTTP Date header into an aware UTC datetime."""
    raw = headers.get("date") if headers is not None else None
    if not raw:
        return None
    try:
        return parsedate_to_datetime(raw).astimezone(timezone.utc)
    except (TypeError, ValueError):
        return None
