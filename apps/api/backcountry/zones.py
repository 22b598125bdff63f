from __future__ import annotations

import os
import time
import asyncio
import logging
from typing import List, Optional, Tuple

import httpx

from backcountry import net
from backcountry.cache import SnapshotCache
from backcountry.geo import ZoneFeature, parse_zone_layer
from backcountry.providers import ProviderError, ZoneLayerError

ZONE_LAYER_URL = os.environ.get(
    "BACKCOUNTRY_ZONE_LAYER_URL",
    "https://api.avalanche.org/v2/public/products/map-layer",
)
ZONE_LAYER_TTL_SECONDS = float(os.environ.get("BACKCOUNTRY_ZONE_LAYER_TTL_SECONDS", "600"))

_KEY = "map-layer"


class ZoneLayerCache:
    """TTL-bounded copy of the avalanche map layer.

    Notes:
    - A fresh snapshot is served without a network call.
    - When a refresh fails (network error, bad status, or a payload with no
      features list) the last good snapshot is served and a warning logged.
    - With no prior snapshot the failure propagates; a malformed payload
      surfaces as ZoneLayerError.
    """

    def __init__(
        self,
        cache: SnapshotCache | None = None,
        url: str = ZONE_LAYER_URL,
        logger: logging.Logger | None = None,
    ):
        self.cache = cache or SnapshotCache("zones:v1", ZONE_LAYER_TTL_SECONDS)
        self.url = url
        self.logger = logger or logging.getLogger(__name__)
        self._parsed: Optional[Tuple[float, List[ZoneFeature]]] = None

    def _features_for(self, fetched_at: float, payload) -> List[ZoneFeature]:
        if self._parsed is not None and self._parsed[0] == fetched_at:
            return self._parsed[1]
        features = parse_zone_layer(payload)
        self._parsed = (fetched_at, features)
        return features

    async def features(
        self,
        client: httpx.AsyncClient,
        now: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> List[ZoneFeature]:
        now = time.time() if now is None else now
        entry = self.cache.get(_KEY)
        if entry is not None and entry.is_fresh(self.cache.ttl_seconds, now):
            return self._features_for(entry.fetched_at, entry.payload)

        try:
            payload, _ = await net.fetch_json(client, self.url, cancel=cancel, provider="avalanche map layer")
            features = parse_zone_layer(payload)
        except (ProviderError, ZoneLayerError, httpx.HTTPError) as e:
            if entry is None:
                raise
            self.logger.warning("map-layer refresh failed, serving cached copy: %s", e)
            return self._features_for(entry.fetched_at, entry.payload)

        fresh = self.cache.put(_KEY, payload, now)
        self._parsed = (fresh.fetched_at, features)
        return features
