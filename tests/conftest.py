"""Shared fixtures for the analytics test suite."""

from __future__ import annotations

import pandas as pd
import pytest
from fastapi.testclient import TestClient

from analytics.reconstruction import HourlyDayAheadEntry, HourlyRealTimeEntry, IntervalPrice

TRADE_DATE = "2024-07-15"


def pacific_stamp(hour: int, minute: int = 0) -> str:
    """ISO timestamp for a Pacific wall-clock time on TRADE_DATE (PDT, UTC-7)."""
    return f"{TRADE_DATE}T{hour:02d}:{minute:02d}:00-07:00"


@pytest.fixture
def da_records():
    """Build raw day-ahead records: one per listed Pacific hour."""

    def _build(prices: dict[int, float]) -> list[dict]:
        return [
            {"interval_start_utc": pacific_stamp(h), "lmp": p, "location": "TH_NP15_GEN-APND"}
            for h, p in prices.items()
        ]

    return _build


@pytest.fixture
def rt_records():
    """Build raw real-time records: every 15-minute interval of the listed Pacific hours."""

    def _build(prices: dict[int, float], minutes: tuple[int, ...] = (0, 15, 30, 45)) -> list[dict]:
        return [
            {"interval_start_utc": pacific_stamp(h, m), "lmp": p, "location": "TH_NP15_GEN-APND"}
            for h, p in prices.items()
            for m in minutes
        ]

    return _build


@pytest.fixture
def full_day(da_records, rt_records):
    """A complete Pacific day: DA at 40 + h, RT at 45 + h."""
    return (
        da_records({h: 40.0 + h for h in range(24)}),
        rt_records({h: 45.0 + h for h in range(24)}),
    )


@pytest.fixture
def flat_market():
    """Reconstructed 24-hour market, DA 50 everywhere, RT 60 before noon and 45 after."""
    day_ahead = tuple(HourlyDayAheadEntry(h, 50.0, "actual", 1, h) for h in range(24))
    real_time = tuple(
        HourlyRealTimeEntry(
            h, "actual", 4, h,
            tuple(IntervalPrice(i, 60.0 if h < 12 else 45.0, "actual") for i in range(4)),
        )
        for h in range(24)
    )
    return day_ahead, real_time


@pytest.fixture
def node_records():
    """Build raw 5-minute real-time records for one or more pricing nodes."""

    def _build(series: dict[str, list[float]], start: str = "2024-07-15T18:00:00Z") -> list[dict]:
        origin = pd.Timestamp(start)
        records = []
        for location, prices in series.items():
            for i, price in enumerate(prices):
                stamp = origin + pd.Timedelta(minutes=5 * i)
                records.append({"pnode": location, "interval_start_utc": stamp.isoformat(), "lmp": price})
        return records

    return _build


@pytest.fixture
def client():
    from api import app

    with TestClient(app) as test_client:
        yield test_client
