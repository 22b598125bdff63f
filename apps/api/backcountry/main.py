from __future__ import annotations

import logging
import os
from typing import Optional

from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from backcountry import __version__, net
from backcountry.pipeline import SafetyPipeline
from backcountry.providers import InvalidCoordinateError, ZoneLayerError

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, ConfigDict

APP_NAME = "Backcountry Safety API"

logging.basicConfig(
    level=os.environ.get("BACKCOUNTRY_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title=APP_NAME, version=__version__)

# Rate limiting (in-memory by default; point BACKCOUNTRY_RATE_LIMIT_STORAGE at redis to share it)
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[os.environ.get("BACKCOUNTRY_RATE_LIMIT", "60/minute")],
    storage_uri=os.environ.get("BACKCOUNTRY_RATE_LIMIT_STORAGE", "memory://"),
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)


cors = os.environ.get("BACKCOUNTRY_CORS_ORIGINS")
origins = [o.strip() for o in cors.split(",")] if cors else ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# One pipeline per process; its map-layer, precipitation and station caches persist across requests.
pipeline = SafetyPipeline()


# ---------- Models ----------
class SafetyRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    # Range checks live in the pipeline (HTTP 400).
    lat: float
    lon: float
    date: Optional[str] = Field(default=None, pattern=r"^\d{4}-\d{2}-\d{2}$")
    start_time: Optional[str] = Field(default=None, max_length=16)
    travel_window_hours: Optional[float] = Field(default=None, ge=1, le=24)
    timezone: Optional[str] = Field(default=None, max_length=64)


# ---------- Endpoints ----------
@app.get("/health")
def health(request: Request):
    return {"ok": True, "name": APP_NAME, "version": app.version}


@app.post("/v1/safety")
@limiter.limit(os.environ.get("BACKCOUNTRY_RATE_LIMIT_SAFETY", "30/minute"))
async def safety(request: Request, req: SafetyRequest):
    async with net.new_client() as client:
        try:
            result = await pipeline.assess(
                client,
                req.lat,
                req.lon,
                selected_date=req.date,
                start_clock=req.start_time,
                travel_window_hours=req.travel_window_hours,
                tz=req.timezone,
            )
        except InvalidCoordinateError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except ZoneLayerError as e:
            logger.error("avalanche map layer unusable: %s", e)
            raise HTTPException(status_code=502, detail=f"Avalanche map layer malformed: {e}")

    return jsonable_encoder(result)
