"""
Virtual Energy Trader — Raw Price Record Parsing
Shared parsing and validation primitives for every analytics component.

Raw records come from the external market-data provider as loosely typed
dicts.  Depending on the dataset, the same concept lives under different keys,
so each concept has an ordered alias list; the first key that is present and
non-empty wins:

  timestamp : interval_start_utc, interval_start_local, timestamp,
              datetime, time, interval_start
  price     : lmp, price, energy_price, da_lmp, rt_lmp
  location  : pnode, location, node, zone

Validation
----------
  * Timestamps are parsed with pandas and normalised to UTC.  Strings without
    an offset are read as UTC.
  * Prices must be numeric and fall inside (0, 10000] $/MWh.

A record failing either check raises ``InvalidRecord`` from ``parse_record``;
the bulk helpers catch it, log at DEBUG, and skip the record.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Sequence

import pandas as pd
from loguru import logger

from analytics.errors import InvalidInput, InvalidRecord

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

TIMESTAMP_FIELDS: tuple[str, ...] = (
    "interval_start_utc",
    "interval_start_local",
    "timestamp",
    "datetime",
    "time",
    "interval_start",
)
PRICE_FIELDS: tuple[str, ...] = ("lmp", "price", "energy_price", "da_lmp", "rt_lmp")
LOCATION_FIELDS: tuple[str, ...] = ("pnode", "location", "node", "zone")

DEFAULT_LOCATION = "UNKNOWN"

PRICE_FLOOR: float = 0.0          # exclusive
PRICE_CEILING: float = 10_000.0   # inclusive, $/MWh

# Quality tiers
QUALITY_ACTUAL = "actual"
QUALITY_INTERPOLATED = "interpolated"
QUALITY_PARTIAL = "partial"
QUALITY_FALLBACK = "fallback"

RECORD_COLUMNS = ["location", "timestamp_utc", "price"]

# pandas resolves these against the wall clock
RELATIVE_TIMESTAMPS = frozenset({"now", "today"})


# ---------------------------------------------------------------------------
# Output dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PricePoint:
    """One validated price observation."""

    location: str
    timestamp_utc: pd.Timestamp
    price: float                      # $/MWh
    quality: str = QUALITY_ACTUAL     # "actual" | "interpolated" | "fallback"

    def to_dict(self) -> dict:
        return {
            "location":    self.location,
            "timestamp":   self.timestamp_utc.isoformat(),
            "price":       self.price,
            "dataQuality": self.quality,
        }


@dataclass(frozen=True)
class LocationSeries:
    """Chronological price series for one pricing node."""

    location: str
    prices: list[PricePoint]
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "location": self.location,
            "prices":   [p.to_dict() for p in self.prices],
            "metadata": self.metadata,
        }


# ---------------------------------------------------------------------------
# Field resolution
# ---------------------------------------------------------------------------


def resolve_field(record: dict, aliases: Sequence[str]) -> Optional[Any]:
    """Return the value of the first alias present in *record*, or None."""
    for alias in aliases:
        value = record.get(alias)
        if value is not None and value != "":
            return value
    return None


def parse_timestamp(value: Any) -> pd.Timestamp:
    """
    Parse *value* into a UTC ``pd.Timestamp``.

    Accepts ISO strings, ``datetime`` and ``pd.Timestamp``.  Naive values are
    taken as UTC.  Relative keywords ("now", "today") are rejected.  Raises
    ``InvalidRecord`` on anything else.
    """
    if not isinstance(value, (str, datetime)):
        raise InvalidRecord(f"unsupported timestamp type {type(value).__name__}")
    if isinstance(value, str) and value.strip().lower() in RELATIVE_TIMESTAMPS:
        raise InvalidRecord(f"relative timestamp {value!r} is not a point in time")
    try:
        ts = pd.Timestamp(value)
    except (ValueError, TypeError, OverflowError) as exc:
        raise InvalidRecord(f"unparseable timestamp {value!r}") from exc

    if pd.isna(ts):
        raise InvalidRecord(f"unparseable timestamp {value!r}")
    if ts.tzinfo is None:
        return ts.tz_localize("UTC")
    return ts.tz_convert("UTC")


def parse_price(value: Any) -> float:
    """Parse *value* as a $/MWh price inside (0, 10000].  Raises ``InvalidRecord``."""
    if isinstance(value, bool):
        raise InvalidRecord(f"boolean is not a price: {value!r}")
    try:
        price = float(value)
    except (ValueError, TypeError) as exc:
        raise InvalidRecord(f"non-numeric price {value!r}") from exc

    if math.isnan(price) or price <= PRICE_FLOOR or price > PRICE_CEILING:
        raise InvalidRecord(f"price out of range: {price}")
    return price


def parse_record(record: Any) -> PricePoint:
    """Validate one raw record into a ``PricePoint``.  Raises ``InvalidRecord``."""
    if not isinstance(record, dict):
        raise InvalidRecord(f"record is not an object ({type(record).__name__})")

    raw_ts = resolve_field(record, TIMESTAMP_FIELDS)
    if raw_ts is None:
        raise InvalidRecord("no timestamp field")
    raw_price = resolve_field(record, PRICE_FIELDS)
    if raw_price is None:
        raise InvalidRecord("no price field")

    location = resolve_field(record, LOCATION_FIELDS)
    return PricePoint(
        location=str(location) if location is not None else DEFAULT_LOCATION,
        timestamp_utc=parse_timestamp(raw_ts),
        price=parse_price(raw_price),
    )


# ---------------------------------------------------------------------------
# Bulk helpers
# ---------------------------------------------------------------------------


def parse_records(records: Sequence[Any], label: str = "records") -> pd.DataFrame:
    """
    Parse a batch of raw records into a DataFrame, skipping invalid ones.

    Returns
    -------
    pd.DataFrame
        Columns: location, timestamp_utc (tz-aware UTC), price.
        Empty (with those columns) when nothing survives validation.
    """
    points: list[PricePoint] = []
    skipped = 0
    for index, record in enumerate(records or []):
        try:
            points.append(parse_record(record))
        except InvalidRecord as exc:
            skipped += 1
            logger.debug("Skipping {} item {}: {}", label, index, exc.message)

    if skipped:
        logger.info("Parsed {} {}: {} valid, {} skipped.", len(records), label, len(points), skipped)

    if not points:
        return pd.DataFrame(columns=RECORD_COLUMNS)

    return pd.DataFrame(
        {
            "location":      [p.location for p in points],
            "timestamp_utc": pd.DatetimeIndex([p.timestamp_utc for p in points]),
            "price":         [p.price for p in points],
        }
    )


def build_location_series(
    records: Sequence[Any],
    timezone: str = "UTC",
) -> list[LocationSeries]:
    """
    Group raw real-time records into chronological per-location series.

    Locations keep the order in which they first appear in *records*; that
    order is what the spike detector's synthetic distance proxy is based on.

    Raises
    ------
    InvalidInput
        When *records* is empty or no record survives validation.
    """
    if not records:
        raise InvalidInput("No raw data provided for spike analysis")

    df = parse_records(records, label="spike-analysis")
    if df.empty:
        raise InvalidInput("No valid location price data could be extracted from the raw records")

    series: list[LocationSeries] = []
    for location, loc_df in df.groupby("location", sort=False):
        loc_df = loc_df.sort_values("timestamp_utc", kind="stable")
        prices = [
            PricePoint(location=str(location), timestamp_utc=ts, price=float(price))
            for ts, price in zip(loc_df["timestamp_utc"], loc_df["price"])
        ]
        series.append(
            LocationSeries(
                location=str(location),
                prices=prices,
                metadata={
                    "region":     location_region(str(location)),
                    "type":       location_type(str(location)),
                    "dataPoints": len(prices),
                    "timeRange": {
                        "start": prices[0].timestamp_utc.isoformat(),
                        "end":   prices[-1].timestamp_utc.isoformat(),
                    },
                    "timezone":   timezone,
                },
            )
        )

    logger.info("Built {} location series for spike analysis ({}).", len(series), timezone)
    return series


# ---------------------------------------------------------------------------
# Location classification  (name heuristics, CAISO naming conventions)
# ---------------------------------------------------------------------------

_REGION_PATTERNS: list[tuple[tuple[str, ...], str]] = [
    (("SP15", "SCE", "SDGE"), "Southern California"),
    (("NP15", "PGE"),         "Northern California"),
    (("ZP26",),               "Central Valley"),
    (("DLAP",),               "Distribution Load Aggregation Point"),
    (("LA", "ANGELES"),       "Los Angeles Basin"),
    (("SF", "BAY"),           "San Francisco Bay Area"),
    (("SD", "DIEGO"),         "San Diego"),
]

_TYPE_PATTERNS: list[tuple[str, str]] = [
    ("DLAP", "Load Zone"),
    ("GEN",  "Generation Zone"),
    ("ASR",  "Ancillary Services Region"),
    ("HUB",  "Trading Hub"),
    ("ZONE", "Price Zone"),
    ("NODE", "Price Node"),
]


def location_region(location: str) -> str:
    name = location.upper()
    for patterns, region in _REGION_PATTERNS:
        if any(p in name for p in patterns):
            return region
    return "California ISO"


def location_type(location: str) -> str:
    name = location.upper()
    for pattern, kind in _TYPE_PATTERNS:
        if pattern in name:
            return kind
    return "Trading Hub"
