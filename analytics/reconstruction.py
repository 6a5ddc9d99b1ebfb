"""
Virtual Energy Trader — Day-Ahead / Real-Time Time-Series Reconstruction
Turns raw, incomplete price records into two complete 24-hour series for one
calendar date in the caller's timezone.

Background
----------
The market (CAISO) publishes in its own fixed operating timezone, Pacific
Time.  Records are bucketed by their *source* hour-of-day, then re-indexed
onto the *target* timezone's 24 hours:

    source_hour(h) = hour of (target_date hh:00 in target tz) seen in source tz

Each date is resolved against the IANA timezone database, so a date inside
daylight-saving time maps differently from one outside it.

Outputs
-------
  Day-Ahead  : 24 hourly entries.  Hours with data are "actual"; empty hours
               are linearly interpolated between the nearest earlier resolved
               target hour and the nearest later source bucket ("interpolated"),
               or set to DEFAULT_PRICE when no neighbour exists ("fallback").
  Real-Time  : 24 hourly entries x 4 fifteen-minute intervals.
                 all 4 intervals observed → "actual"
                 some intervals observed  → "partial"  (gaps = hour average)
                 nothing observed         → "fallback" (DA price + small noise)

Metadata partitions hours 0..23 into actual / interpolated / fallback sets
based on the day-ahead series.
"""

from __future__ import annotations

import hashlib
import math
import random
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pandas as pd
from loguru import logger

from analytics.errors import DataUnavailable, InvalidInput
from analytics.records import (
    QUALITY_ACTUAL,
    QUALITY_FALLBACK,
    QUALITY_INTERPOLATED,
    QUALITY_PARTIAL,
    parse_records,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SOURCE_TIMEZONE = "America/Los_Angeles"   # CAISO operating timezone
DATA_SOURCE = "gridstatus"

HOURS_PER_DAY = 24
INTERVALS_PER_HOUR = 4
INTERVAL_MINUTES = 15

DEFAULT_PRICE: float = 50.00        # $/MWh, used when a DA hour has no neighbours
FALLBACK_VARIANCE: float = 5.00     # $/MWh, width of the noise band on RT fallback


# ---------------------------------------------------------------------------
# Output dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HourlyDayAheadEntry:
    """Day-ahead clearing price for one target-timezone hour."""

    hour: int            # 0–23, target timezone
    price: float         # $/MWh
    quality: str         # "actual" | "interpolated" | "fallback"
    record_count: int
    source_hour: int     # 0–23, source (market) timezone

    def to_dict(self) -> dict:
        return {
            "hour":        self.hour,
            "price":       self.price,
            "dataQuality": self.quality,
            "recordCount": self.record_count,
            "sourceHour":  self.source_hour,
        }


@dataclass(frozen=True)
class IntervalPrice:
    """Real-time price for one 15-minute interval."""

    interval: int        # 0–3
    price: float
    quality: str         # "actual" | "fallback"

    def to_dict(self) -> dict:
        return {"interval": self.interval, "price": self.price, "dataQuality": self.quality}


@dataclass(frozen=True)
class HourlyRealTimeEntry:
    """Real-time prices for one target-timezone hour, split into 4 intervals."""

    hour: int
    quality: str         # "actual" | "partial" | "fallback"
    record_count: int
    source_hour: int
    intervals: tuple[IntervalPrice, ...]

    @property
    def average_price(self) -> float:
        return sum(i.price for i in self.intervals) / len(self.intervals)

    def to_dict(self) -> dict:
        return {
            "hour":        self.hour,
            "prices":      [i.to_dict() for i in self.intervals],
            "dataQuality": self.quality,
            "recordCount": self.record_count,
            "sourceHour":  self.source_hour,
        }


@dataclass(frozen=True)
class ReconstructionMetadata:
    actual_hours: tuple[int, ...]
    interpolated_hours: tuple[int, ...]
    fallback_hours: tuple[int, ...]
    total_day_ahead: int          # raw record counts, before validation
    total_real_time: int
    timezone: str
    source_timezone: str
    data_source: str = DATA_SOURCE

    def to_dict(self) -> dict:
        return {
            "actualHours":       list(self.actual_hours),
            "interpolatedHours": list(self.interpolated_hours),
            "fallbackHours":     list(self.fallback_hours),
            "totalRecords": {
                "dayAhead": self.total_day_ahead,
                "realTime": self.total_real_time,
            },
            "dataSource":        self.data_source,
            "timezone":          self.timezone,
            "sourceTimezone":    self.source_timezone,
        }


@dataclass(frozen=True)
class ReconstructionResult:
    day_ahead: tuple[HourlyDayAheadEntry, ...]
    real_time: tuple[HourlyRealTimeEntry, ...]
    metadata: ReconstructionMetadata

    def to_dict(self) -> dict:
        return {
            "dayAheadPrices": [e.to_dict() for e in self.day_ahead],
            "realTimePrices": [e.to_dict() for e in self.real_time],
            "metadata":       self.metadata.to_dict(),
        }


@dataclass(frozen=True)
class MarketStats:
    """Day-level summary of a reconstructed DA/RT pair."""

    avg_day_ahead: float
    avg_real_time: float
    max_spread: float        # max over hours of (RT hourly mean − DA)
    min_spread: float
    volatility: float        # RMS of the hourly spreads

    def to_dict(self) -> dict:
        return {
            "avgDayAhead": self.avg_day_ahead,
            "avgRealTime": self.avg_real_time,
            "maxSpread":   self.max_spread,
            "minSpread":   self.min_spread,
            "volatility":  self.volatility,
        }


# ---------------------------------------------------------------------------
# Timezone helpers
# ---------------------------------------------------------------------------


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, TypeError) as exc:
        raise InvalidInput(f"Unknown timezone: {name!r}") from exc


def _coerce_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError as exc:
        raise InvalidInput(f"Invalid date: {value!r}. Expected YYYY-MM-DD.") from exc


def source_hour_for(
    target_hour: int,
    target_date: date,
    source_tz: ZoneInfo,
    target_tz: ZoneInfo,
) -> int:
    """
    Return the source-timezone hour that corresponds to *target_hour*.

    The target wall-clock hour is localised on *target_date* and converted to
    the source zone, so the UTC offsets in force on that date are used.
    """
    local = datetime(
        target_date.year, target_date.month, target_date.day, target_hour,
        tzinfo=target_tz,
    )
    return local.astimezone(source_tz).hour


def _make_rng(date_str: str, hour: int) -> random.Random:
    """Return a deterministic RNG seeded on calendar date + hour."""
    seed = int(hashlib.md5(f"{date_str}|{hour}".encode()).hexdigest(), 16) % (2 ** 32)
    return random.Random(seed)


# ---------------------------------------------------------------------------
# Bucketing
# ---------------------------------------------------------------------------


def _localise(df: pd.DataFrame, source_tz: ZoneInfo) -> pd.DataFrame:
    """Add source-timezone hour and 15-minute interval columns."""
    out = df.copy()
    local = out["timestamp_utc"].dt.tz_convert(source_tz)
    out["source_hour"] = local.dt.hour.astype(int)
    out["interval"] = (local.dt.minute // INTERVAL_MINUTES).astype(int)
    return out


def _hourly_buckets(df: pd.DataFrame) -> pd.DataFrame:
    """Mean price and record count per source hour."""
    if df.empty:
        return pd.DataFrame(columns=["mean", "count"])
    return df.groupby("source_hour")["price"].agg(["mean", "count"])


def _next_bucket(source_hour: int, hourly: pd.DataFrame) -> Optional[tuple[int, float]]:
    """Nearest later source hour with data, wrapping past midnight: (distance, price)."""
    for step in range(1, HOURS_PER_DAY):
        candidate = (source_hour + step) % HOURS_PER_DAY
        if candidate in hourly.index:
            return step, float(hourly.at[candidate, "mean"])
    return None


# ---------------------------------------------------------------------------
# Day-Ahead
# ---------------------------------------------------------------------------


def _fill_day_ahead_gap(
    hour: int,
    source_hour: int,
    resolved: list[HourlyDayAheadEntry],
    hourly: pd.DataFrame,
) -> tuple[float, str]:
    """Price and quality for a target hour with no day-ahead bucket."""
    previous = next((e for e in reversed(resolved) if e.quality != QUALITY_FALLBACK), None)
    forward = _next_bucket(source_hour, hourly)

    if previous is not None and forward is not None:
        back = hour - previous.hour
        ahead, next_price = forward
        price = previous.price + (next_price - previous.price) * back / (back + ahead)
        return price, QUALITY_INTERPOLATED
    if previous is not None:
        return previous.price, QUALITY_INTERPOLATED
    if forward is not None:
        return forward[1], QUALITY_INTERPOLATED
    return DEFAULT_PRICE, QUALITY_FALLBACK


def _build_day_ahead(
    hourly: pd.DataFrame,
    source_hours: list[int],
    target_tz_name: str,
) -> list[HourlyDayAheadEntry]:
    entries: list[HourlyDayAheadEntry] = []
    for hour in range(HOURS_PER_DAY):
        src = source_hours[hour]
        if src in hourly.index:
            entries.append(HourlyDayAheadEntry(
                hour=hour,
                price=float(hourly.at[src, "mean"]),
                quality=QUALITY_ACTUAL,
                record_count=int(hourly.at[src, "count"]),
                source_hour=src,
            ))
            continue

        price, quality = _fill_day_ahead_gap(hour, src, entries, hourly)
        entries.append(HourlyDayAheadEntry(
            hour=hour, price=price, quality=quality, record_count=0, source_hour=src,
        ))
        logger.warning(
            "Missing day-ahead data for hour {} ({}), using {} price: ${:.2f}",
            hour, target_tz_name, quality, price,
        )
    return entries


# ---------------------------------------------------------------------------
# Real-Time
# ---------------------------------------------------------------------------


def _build_real_time(
    rt_df: pd.DataFrame,
    source_hours: list[int],
    day_ahead: list[HourlyDayAheadEntry],
    target_date: date,
    target_tz_name: str,
) -> list[HourlyRealTimeEntry]:
    if rt_df.empty:
        per_interval = pd.DataFrame(columns=["mean", "count"])
    else:
        per_interval = rt_df.groupby(["source_hour", "interval"])["price"].agg(["mean", "count"])
    per_hour = _hourly_buckets(rt_df)

    entries: list[HourlyRealTimeEntry] = []
    for hour in range(HOURS_PER_DAY):
        src = source_hours[hour]

        if src not in per_hour.index:
            da_price = day_ahead[hour].price
            rng = _make_rng(target_date.isoformat(), hour)
            intervals = tuple(
                IntervalPrice(
                    interval=i,
                    price=da_price + (rng.random() - 0.5) * FALLBACK_VARIANCE,
                    quality=QUALITY_FALLBACK,
                )
                for i in range(INTERVALS_PER_HOUR)
            )
            entries.append(HourlyRealTimeEntry(
                hour=hour, quality=QUALITY_FALLBACK, record_count=0,
                source_hour=src, intervals=intervals,
            ))
            logger.warning(
                "Missing real-time data for hour {} ({}), using fallback based on day-ahead: ${:.2f}",
                hour, target_tz_name, da_price,
            )
            continue

        hour_mean = float(per_hour.at[src, "mean"])
        intervals_list: list[IntervalPrice] = []
        for i in range(INTERVALS_PER_HOUR):
            if (src, i) in per_interval.index:
                intervals_list.append(IntervalPrice(
                    interval=i, price=float(per_interval.loc[(src, i), "mean"]), quality=QUALITY_ACTUAL,
                ))
            else:
                intervals_list.append(IntervalPrice(interval=i, price=hour_mean, quality=QUALITY_FALLBACK))

        observed = all(p.quality == QUALITY_ACTUAL for p in intervals_list)
        entries.append(HourlyRealTimeEntry(
            hour=hour,
            quality=QUALITY_ACTUAL if observed else QUALITY_PARTIAL,
            record_count=int(per_hour.at[src, "count"]),
            source_hour=src,
            intervals=tuple(intervals_list),
        ))
    return entries


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def reconstruct(
    raw_day_ahead: Sequence[Any],
    raw_real_time: Sequence[Any],
    source_timezone: str = SOURCE_TIMEZONE,
    target_timezone: str = SOURCE_TIMEZONE,
    target_date: Any = None,
) -> ReconstructionResult:
    """
    Rebuild complete day-ahead and real-time series for *target_date*.

    Parameters
    ----------
    raw_day_ahead / raw_real_time:
        Raw provider records (dicts).  Malformed records are skipped.
    source_timezone:
        The market's operating timezone; hour buckets are computed here.
    target_timezone:
        The caller's timezone; output hours 0–23 are wall-clock hours here.
    target_date:
        ``date``, ``datetime`` or ``"YYYY-MM-DD"``.

    Returns
    -------
    ReconstructionResult
        Always exactly 24 day-ahead and 24 real-time entries.

    Raises
    ------
    DataUnavailable
        When neither input holds a single valid record.
    InvalidInput
        On an unknown timezone or unparseable date.
    """
    if target_date is None:
        raise InvalidInput("A target date is required for reconstruction")
    day = _coerce_date(target_date)
    source_tz = _zone(source_timezone)
    target_tz = _zone(target_timezone)

    raw_day_ahead = list(raw_day_ahead or [])
    raw_real_time = list(raw_real_time or [])
    logger.info(
        "Reconstruct | date={} | {} DA and {} RT records | {} -> {}",
        day, len(raw_day_ahead), len(raw_real_time), source_timezone, target_timezone,
    )

    da_df = parse_records(raw_day_ahead, label="day-ahead")
    rt_df = parse_records(raw_real_time, label="real-time")
    if da_df.empty and rt_df.empty:
        raise DataUnavailable(f"No market data available for {day}. Please try a different date.")

    if not da_df.empty:
        da_df = _localise(da_df, source_tz)
    if not rt_df.empty:
        rt_df = _localise(rt_df, source_tz)

    source_hours = [source_hour_for(h, day, source_tz, target_tz) for h in range(HOURS_PER_DAY)]
    da_hourly = _hourly_buckets(da_df)
    logger.debug(
        "Grouped day-ahead data into {} source hours: {}",
        len(da_hourly), sorted(int(h) for h in da_hourly.index),
    )

    day_ahead = _build_day_ahead(da_hourly, source_hours, target_timezone)
    real_time = _build_real_time(rt_df, source_hours, day_ahead, day, target_timezone)

    metadata = ReconstructionMetadata(
        actual_hours=tuple(e.hour for e in day_ahead if e.quality == QUALITY_ACTUAL),
        interpolated_hours=tuple(e.hour for e in day_ahead if e.quality == QUALITY_INTERPOLATED),
        fallback_hours=tuple(e.hour for e in day_ahead if e.quality == QUALITY_FALLBACK),
        total_day_ahead=len(raw_day_ahead),
        total_real_time=len(raw_real_time),
        timezone=target_timezone,
        source_timezone=source_timezone,
    )

    logger.info(
        "Reconstructed {} ({}): Actual={} Interpolated={} Fallback={}",
        day, target_timezone,
        len(metadata.actual_hours), len(metadata.interpolated_hours), len(metadata.fallback_hours),
    )
    return ReconstructionResult(day_ahead=tuple(day_ahead), real_time=tuple(real_time), metadata=metadata)


def market_stats(
    day_ahead: Sequence[HourlyDayAheadEntry],
    real_time: Sequence[HourlyRealTimeEntry],
) -> MarketStats:
    """
    Summarise a DA/RT pair: averages, hourly spread range and spread volatility.

    spread(h) = mean(RT intervals at h) − DA(h); hours with no RT entry count
    as an RT mean of 0.
    """
    if not day_ahead:
        raise InvalidInput("Day-ahead prices are required for market statistics calculation")
    if not real_time:
        raise InvalidInput("Real-time prices are required for market statistics calculation")

    avg_da = sum(e.price for e in day_ahead) / len(day_ahead)
    rt_prices = [i.price for e in real_time for i in e.intervals]
    avg_rt = sum(rt_prices) / len(rt_prices)

    rt_by_hour = {e.hour: e for e in real_time}
    spreads = [
        (rt_by_hour[e.hour].average_price if e.hour in rt_by_hour else 0.0) - e.price
        for e in day_ahead
    ]

    return MarketStats(
        avg_day_ahead=avg_da,
        avg_real_time=avg_rt,
        max_spread=max(spreads),
        min_spread=min(spreads),
        volatility=math.sqrt(sum(s * s for s in spreads) / len(spreads)),
    )


# ---------------------------------------------------------------------------
# Smoke test  (python -m analytics.reconstruction)
# ---------------------------------------------------------------------------


if __name__ == "__main__":
    import sys

    logger.remove()
    logger.add(sys.stderr, level="INFO")

    logger.info("=== Reconstruction Smoke Test ===")

    # Synthetic sparse day: DA for even Pacific hours, RT every 15 min for 06–17 PT
    sample_da = [
        {"interval_start_utc": f"2024-07-15T{(h + 7) % 24:02d}:00:00Z", "lmp": 40 + h}
        for h in range(0, 24, 2)
    ]
    sample_rt = [
        {"interval_start_utc": f"2024-07-15T{(h + 7) % 24:02d}:{m:02d}:00Z", "lmp": 45 + h + m / 15}
        for h in range(6, 18) for m in (0, 15, 30, 45)
    ]

    result = reconstruct(sample_da, sample_rt, SOURCE_TIMEZONE, "America/New_York", "2024-07-15")

    print(f"\n{'Hour':>4} {'Src':>4} {'DA':>9} {'Quality':<13} {'RT avg':>9} {'RT quality'}")
    print("-" * 58)
    for da, rt in zip(result.day_ahead, result.real_time):
        print(
            f"{da.hour:>4} {da.source_hour:>4} ${da.price:>8.2f} {da.quality:<13} "
            f"${rt.average_price:>8.2f} {rt.quality}"
        )

    stats = market_stats(result.day_ahead, result.real_time)
    print(f"\nAvg DA ${stats.avg_day_ahead:.2f} | Avg RT ${stats.avg_real_time:.2f} | "
          f"Spread range ${stats.min_spread:+.2f}..${stats.max_spread:+.2f}")
    logger.success("Smoke test complete: {} actual hours.", len(result.metadata.actual_hours))
