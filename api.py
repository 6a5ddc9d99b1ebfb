"""
Virtual Energy Trader — FastAPI Server
Thin HTTP surface over the analytics engine: time-series reconstruction,
spike detection and bid settlement.  Raw provider records are posted in the
request body; no provider calls are made here.

Run:  uvicorn api:app --reload --port 8000
Docs: http://localhost:8000/docs
"""

from __future__ import annotations

import asyncio
import os
import sys
from collections import Counter
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, Literal, Optional
from zoneinfo import ZoneInfo

from dotenv import load_dotenv
from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from analytics.errors import AnalyticsError
from analytics.reconstruction import SOURCE_TIMEZONE, market_stats, reconstruct
from analytics.records import build_location_series
from analytics.settlement import Bid, risk_metrics, settle
from analytics.spikes import (
    SpikeThresholds,
    analysis_summary,
    detect_spikes,
    spike_stats,
    synthesize_events,
)

load_dotenv()

# ---------------------------------------------------------------------------
# Configuration  (environment, with defaults)
# ---------------------------------------------------------------------------

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
MARKET_TIMEZONE = os.getenv("MARKET_TIMEZONE", SOURCE_TIMEZONE)
DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", SOURCE_TIMEZONE)
MAX_BIDS_PER_HOUR = int(os.getenv("MAX_BIDS_PER_HOUR", "10"))

API_VERSION = "1.0"

logger.remove()
logger.add(sys.stderr, level=LOG_LEVEL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Analytics API starting | market tz={} | default tz={} | max bids/hour={}",
        MARKET_TIMEZONE, DEFAULT_TIMEZONE, MAX_BIDS_PER_HOUR,
    )
    yield
    logger.info("Analytics API stopped.")


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Virtual Energy Trader API",
    description=(
        "Reconstructs 24-hour day-ahead / real-time price series, detects "
        "price spikes and simulates virtual bid settlement."
    ),
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class EnvelopeMeta(BaseModel):
    """Metadata block present on every data response."""
    api_version:     str = API_VERSION
    date:            str
    timezone:        str
    source_timezone: str
    generated_at:    str


class ErrorResponse(BaseModel):
    detail:     str
    error_code: str


class HealthResponse(BaseModel):
    status:          str
    timestamp:       str
    market_timezone: str


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

RawRecord = dict[str, Any]


class MarketDataRequest(BaseModel):
    day:       date = Field(alias="date")
    day_ahead: list[RawRecord] = Field(default_factory=list, alias="dayAhead")
    real_time: list[RawRecord] = Field(default_factory=list, alias="realTime")

    model_config = ConfigDict(populate_by_name=True)


class ThresholdsModel(BaseModel):
    min_magnitude:     Optional[float] = Field(default=None, gt=0, alias="minMagnitude")
    min_duration:      Optional[float] = Field(default=None, ge=0, alias="minDuration")
    spatial_radius:    Optional[float] = Field(default=None, ge=0, alias="spatialRadius")
    z_score_threshold: Optional[float] = Field(default=None, gt=0, alias="zScoreThreshold")

    model_config = ConfigDict(populate_by_name=True)


class SpikeAnalysisRequest(BaseModel):
    day:           date = Field(alias="date")
    records:       list[RawRecord]
    thresholds:    Optional[ThresholdsModel] = None
    analysis_type: Literal["statistical"] = Field(default="statistical", alias="analysisType")

    model_config = ConfigDict(populate_by_name=True)


class BidModel(BaseModel):
    id:       str = Field(min_length=1)
    hour:     int = Field(ge=0, le=23)
    type:     Literal["buy", "sell"]
    price:    float = Field(ge=0, le=10_000, description="$/MWh")
    quantity: float = Field(gt=0, le=1_000, description="MWh")

    def to_bid(self) -> Bid:
        return Bid(id=self.id, hour=self.hour, side=self.type, price=self.price, quantity=self.quantity)


class SimulationRequest(MarketDataRequest):
    bids: list[BidModel] = Field(min_length=1)


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


@app.exception_handler(AnalyticsError)
async def analytics_error_handler(request: Request, exc: AnalyticsError) -> JSONResponse:
    logger.warning("{} {} -> {} {}", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(detail=exc.message, error_code=exc.error_code).model_dump(),
    )


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _resolve_timezone(query_tz: Optional[str], header_tz: Optional[str]) -> str:
    """Query param, then X-User-Timezone header, then the configured default."""
    return query_tz or header_tz or DEFAULT_TIMEZONE


def _make_meta(day: date, timezone: str) -> EnvelopeMeta:
    return EnvelopeMeta(
        date=day.isoformat(),
        timezone=timezone,
        source_timezone=MARKET_TIMEZONE,
        generated_at=datetime.now(tz=ZoneInfo(MARKET_TIMEZONE)).isoformat(),
    )


def _check_bid_limits(bids: list[BidModel]) -> None:
    per_hour = Counter(b.hour for b in bids)
    crowded = sorted(h for h, n in per_hour.items() if n > MAX_BIDS_PER_HOUR)
    if crowded:
        raise HTTPException(
            status_code=422,
            detail=f"At most {MAX_BIDS_PER_HOUR} bids per hour allowed; exceeded for hours {crowded}.",
        )


_TZ_QUERY = Query(default=None, description="IANA timezone for output hours, e.g. 'America/New_York'.")


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.get("/health", response_model=HealthResponse, tags=["Meta"])
async def health():
    return HealthResponse(
        status="ok",
        timestamp=datetime.now(tz=ZoneInfo(MARKET_TIMEZONE)).isoformat(),
        market_timezone=MARKET_TIMEZONE,
    )


@app.post("/api/market/reconstruct", tags=["Market"])
async def reconstruct_market(
    body: MarketDataRequest,
    timezone: Optional[str] = _TZ_QUERY,
    x_user_timezone: Optional[str] = Header(default=None),
):
    """
    Rebuild complete 24-hour day-ahead and real-time series for ``date``.

    Every response holds exactly 24 entries per market, each tagged with its
    data quality (actual / interpolated / partial / fallback).
    """
    tz = _resolve_timezone(timezone, x_user_timezone)
    logger.info(
        "POST /api/market/reconstruct | date={} | tz={} | {} DA / {} RT records",
        body.day, tz, len(body.day_ahead), len(body.real_time),
    )

    result = await asyncio.to_thread(
        reconstruct, body.day_ahead, body.real_time, MARKET_TIMEZONE, tz, body.day,
    )
    stats = market_stats(result.day_ahead, result.real_time)

    return {
        "meta":    _make_meta(body.day, tz).model_dump(),
        "data":    result.to_dict(),
        "summary": stats.to_dict(),
    }


@app.post("/api/analysis/spikes", tags=["Analysis"])
async def analyze_spikes(
    body: SpikeAnalysisRequest,
    timezone: Optional[str] = _TZ_QUERY,
    x_user_timezone: Optional[str] = Header(default=None),
):
    """
    Detect price spikes across pricing nodes and synthesise grid events.

    Thresholds are optional; omitted fields use the detector defaults
    (minMagnitude 5, minDuration 15, spatialRadius 50, zScoreThreshold 1.5).
    """
    tz = _resolve_timezone(timezone, x_user_timezone)
    thresholds = SpikeThresholds.from_dict(
        body.thresholds.model_dump(exclude_none=True) if body.thresholds else None
    )
    logger.info(
        "POST /api/analysis/spikes | date={} | type={} | {} records",
        body.day, body.analysis_type, len(body.records),
    )

    series = build_location_series(body.records, tz)
    spikes = await asyncio.to_thread(detect_spikes, series, thresholds)
    events = synthesize_events(spikes, body.day)

    return {
        "meta": _make_meta(body.day, tz).model_dump(),
        "data": {
            "analysisType": body.analysis_type,
            "spikes":       [s.to_dict() for s in spikes],
            "gridEvents":   [e.to_dict() for e in events],
            "thresholds":   thresholds.to_dict(),
        },
        "summary": {
            **analysis_summary(spikes, series, len(body.records)),
            "stats": spike_stats(spikes).to_dict(),
        },
    }


@app.post("/api/trading/simulate", tags=["Trading"])
async def simulate_trades(
    body: SimulationRequest,
    timezone: Optional[str] = _TZ_QUERY,
    x_user_timezone: Optional[str] = Header(default=None),
):
    """
    Reconstruct the market for ``date`` and settle the submitted bids.

    Buy bids execute when bid ≥ DA clearing price, sell bids when bid ≤ DA
    clearing price; P&L settles against the hour's real-time average.
    """
    tz = _resolve_timezone(timezone, x_user_timezone)
    _check_bid_limits(body.bids)
    logger.info("POST /api/trading/simulate | date={} | tz={} | {} bids", body.day, tz, len(body.bids))

    market = await asyncio.to_thread(
        reconstruct, body.day_ahead, body.real_time, MARKET_TIMEZONE, tz, body.day,
    )
    simulation = settle([b.to_bid() for b in body.bids], market.day_ahead, market.real_time)

    return {
        "meta": _make_meta(body.day, tz).model_dump(),
        "data": {
            "simulation": simulation.to_dict(),
            "marketData": market.to_dict(),
        },
        "summary": {
            **simulation.summary.to_dict(),
            "totalProfit": simulation.total_profit,
            "risk":        risk_metrics(simulation.trades).to_dict(),
        },
    }
