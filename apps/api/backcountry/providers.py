from __future__ import annotations

import math
import os
from typing import Any, Literal

import httpx

USER_AGENT = os.environ.get(
    "BACKCOUNTRY_USER_AGENT",
    "BackcountrySafety/1.0 (+https://github.com/backcountry-safety/backcountry)",
)

# Status values shared by every normalized signal record.
Status = Literal[
    "ok",
    "partial",
    "no_data",
    "unavailable",
    "none",
    "none_for_selected_start",
    "not_applicable_future_date",
    "future_time_not_supported",
]


# ---------- Errors ----------
class BackcountryError(Exception):
    """Base class for errors that abort an assessment."""


class ProviderError(Exception):
    """A single upstream attempt failed; callers fall through to the next tier."""

    def __init__(self, provider: str, detail: str, status_code: int | None = None):
        super().__init__(f"{provider}: {detail}")
        self.provider = provider
        self.detail = detail
        self.status_code = status_code


class InvalidCoordinateError(BackcountryError, ValueError):
    pass


class ZoneLayerError(BackcountryError):
    pass


class RequestCancelled(BackcountryError):
    pass


def is_fatal(exc: BaseException) -> bool:
    """True for errors that must abort the caller rather than degrade one source."""
    return isinstance(exc, BackcountryError) or not isinstance(exc, Exception)


# ---------- Provider interface ----------
class SignalProvider:
    """Anything that turns a coordinate into a normalized signal record.

    Notes:
    - fetch() either returns a record carrying a `status` or raises
      ProviderError / httpx.HTTPError; the pipeline converts raised errors
      into the provider's unavailable record.
    """

    name: str

    async def fetch(self, client: httpx.AsyncClient, coord: Any, **kwargs: Any) -> Any:
        raise NotImplementedError

    def unavailable(self, status: str = "unavailable") -> Any:
        raise NotImplementedError


def finite_or_none(value: Any) -> float | None:
    """Coerce provider values to float, mapping blanks, NaN and inf to None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None
