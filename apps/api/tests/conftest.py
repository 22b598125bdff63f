from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

import httpx
import pytest

NOW = datetime(2026, 1, 15, 15, 0, tzinfo=timezone.utc)


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def square(lon: float, lat: float, size: float = 0.1) -> dict:
    return {
        "type": "Polygon",
        "coordinates": [[
            [lon, lat],
            [lon + size, lat],
            [lon + size, lat + size],
            [lon, lat + size],
            [lon, lat],
        ]],
    }


def zone(name: str, center_id: str, geometry: dict, **props) -> dict:
    return {
        "type": "Feature",
        "id": name,
        "geometry": geometry,
        "properties": {"name": name, "center_id": center_id, **props},
    }


@pytest.fixture
def now() -> datetime:
    return NOW
