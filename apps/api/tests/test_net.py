import asyncio
import time
from datetime import datetime, timezone

import httpx
import pytest

from backcountry import net
from backcountry.providers import ProviderError, RequestCancelled

from conftest import mock_client


def test_fetch_json_returns_payload_and_headers():
    def handler(request):
        assert request.url.params["point"] == "1,2"
        return httpx.Response(200, json={"ok": 1}, headers={"Date": "Thu, 15 Jan 2026 14:00:00 GMT"})

    async def run():
        async with mock_client(handler) as client:
            return await net.fetch_json(client, "https://x.test/a", params={"point": "1,2"})

    payload, headers = asyncio.run(run())
    assert payload == {"ok": 1}
    assert net.response_date(headers) == datetime(2026, 1, 15, 14, 0, tzinfo=timezone.utc)


def test_non_200_is_provider_error_with_status():
    async def run():
        async with mock_client(lambda r: httpx.Response(404, text="nope")) as client:
            await net.fetch_json(client, "https://x.test/a", provider="thing")

    with pytest.raises(ProviderError) as e:
        asyncio.run(run())
    assert e.value.status_code == 404
    assert e.value.provider == "thing"


def test_invalid_json_is_provider_error():
    async def run():
        async with mock_client(lambda r: httpx.Response(200, text="<html>")) as client:
            await net.fetch_json(client, "https://x.test/a")

    with pytest.raises(ProviderError):
        asyncio.run(run())


def test_deadline_bounds_slow_upstream():
    async def slow(request):
        await asyncio.sleep(5)
        return httpx.Response(200, json={})

    async def run():
        async with mock_client(slow) as client:
            await net.fetch(client, "https://x.test/slow", timeout=0.05)

    started = time.monotonic()
    with pytest.raises(ProviderError, match="timed out"):
        asyncio.run(run())
    assert time.monotonic() - started < 2


def test_cancel_aborts_in_flight_request():
    async def slow(request):
        await asyncio.sleep(5)
        return httpx.Response(200, json={})

    async def run():
        cancel = asyncio.Event()
        async with mock_client(slow) as client:
            asyncio.get_running_loop().call_later(0.05, cancel.set)
            await net.fetch(client, "https://x.test/slow", timeout=10, cancel=cancel)

    started = time.monotonic()
    with pytest.raises(RequestCancelled):
        asyncio.run(run())
    assert time.monotonic() - started < 2


def test_already_cancelled_never_sends():
    sent = []

    async def run():
        cancel = asyncio.Event()
        cancel.set()
        async with mock_client(lambda r: sent.append(r) or httpx.Response(200, json={})) as client:
            await net.fetch(client, "https://x.test/a", cancel=cancel)

    with pytest.raises(RequestCancelled):
        asyncio.run(run())
    assert sent == []


def test_fallback_tries_mirrors_in_order():
    seen = []

    def handler(request):
        seen.append(request.url.host)
        if request.url.host == "a.test":
            return httpx.Response(502, text="bad gateway")
        return httpx.Response(200, json={"host": request.url.host})

    async def run():
        async with mock_client(handler) as client:
            return await net.fetch_json_with_fallback(
                client, ["https://a.test/f", "https://b.test/f"], attempts=3,
            )

    payload, _ = asyncio.run(run())
    assert payload == {"host": "b.test"}
    assert seen == ["a.test", "a.test", "a.test", "b.test"]


def test_fallback_raises_last_error_when_all_fail():
    async def run():
        async with mock_client(lambda r: httpx.Response(500, text="x")) as client:
            await net.fetch_json_with_fallback(client, ["https://a.test/f"], attempts=2)

    with pytest.raises(ProviderError):
        asyncio.run(run())


def test_response_date_tolerates_garbage():
    assert net.response_date(httpx.Headers({"date": "not a date"})) is None
    assert net.response_date(None) is None
