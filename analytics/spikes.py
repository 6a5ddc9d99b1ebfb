"""
Virtual Energy Trader — Price Spike Detector
Flags statistical price anomalies per pricing node and rolls co-timed spikes
up into grid-level events.

Detection
---------
For every location and every sample i ≥ W (W = 6, i.e. the preceding 30
minutes of 5-minute data):

    μ, σ      = population mean / std of prices[i-W : i]
    z         = |p_i − μ| / σ          (0 when σ = 0)
    magnitude = |p_i − μ|

A sample is a spike when EITHER trigger fires:

    (z > zScoreThreshold  and  magnitude > minMagnitude)
    magnitude > 2 × minMagnitude

Severity (strict >):   > $50 critical  |  > $25 high  |  > $10 medium  |  low
Confidence:            min(z / 5, 1)

Spatial context
---------------
Locations carry no coordinates, so "distance" is a proxy:

    distance = |index_a − index_b| × 10

where index is the location's position in the input list.  Up to 5 other
locations within ``spatialRadius`` are attached with their price at the same
sample index.  This is an approximation, not geography.

Deduplication
-------------
Spikes for the same location less than 15 minutes apart collapse into the
higher-magnitude one.  Output is sorted by magnitude, descending.

Grid events
-----------
Spikes are grouped by UTC hour-of-day; every hour holding ≥ 2 spikes becomes
one GridEvent:

    avg magnitude > $100  →  transmission_outage  (high)
    avg magnitude >  $75  →  congestion           (medium)
    otherwise             →  local_imbalance      (low)

    confidence = min(0.5 + 0.1 × count + avg_magnitude / 200, 0.95)
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Optional, Sequence

import numpy as np
import pandas as pd
from loguru import logger

from analytics.errors import ComputationError, InvalidInput
from analytics.records import LocationSeries

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

WINDOW_SIZE = 6                            # samples, 30 min of 5-min data
DEDUP_WINDOW = pd.Timedelta(minutes=15)
DISTANCE_PER_INDEX: float = 10.0           # synthetic distance between neighbours
MAX_NEARBY_LOCATIONS = 5

DEFAULT_MIN_MAGNITUDE: float = 5.0         # $/MWh
DEFAULT_MIN_DURATION: float = 15.0         # minutes
DEFAULT_SPATIAL_RADIUS: float = 50.0
DEFAULT_Z_SCORE_THRESHOLD: float = 1.5

SEVERITY_CRITICAL: float = 50.0
SEVERITY_HIGH: float = 25.0
SEVERITY_MEDIUM: float = 10.0

OUTAGE_THRESHOLD: float = 100.0            # avg magnitude for transmission_outage
CONGESTION_THRESHOLD: float = 75.0         # avg magnitude for congestion
EVENT_MIN_SPIKES = 2
EVENT_CONFIDENCE_CAP: float = 0.95


# ---------------------------------------------------------------------------
# Config & output dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SpikeThresholds:
    """Detection parameters.  All fields optional; defaults match the UI."""

    min_magnitude: float = DEFAULT_MIN_MAGNITUDE
    min_duration: float = DEFAULT_MIN_DURATION     # minutes; reported, not used by the trigger
    spatial_radius: float = DEFAULT_SPATIAL_RADIUS
    z_score_threshold: float = DEFAULT_Z_SCORE_THRESHOLD

    _WIRE_NAMES = {
        "minMagnitude":    "min_magnitude",
        "minDuration":     "min_duration",
        "spatialRadius":   "spatial_radius",
        "zScoreThreshold": "z_score_threshold",
    }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "SpikeThresholds":
        """Build from camelCase wire names or snake_case; unknown/None keys are ignored."""
        if not data:
            return cls()
        kwargs: dict[str, float] = {}
        for key, value in data.items():
            name = cls._WIRE_NAMES.get(key, key)
            if name in cls.__dataclass_fields__ and value is not None:
                kwargs[name] = float(value)
        return cls(**kwargs)

    def to_dict(self) -> dict:
        return {
            "minMagnitude":    self.min_magnitude,
            "minDuration":     self.min_duration,
            "spatialRadius":   self.spatial_radius,
            "zScoreThreshold": self.z_score_threshold,
        }


@dataclass(frozen=True)
class NearbyPrice:
    location: str
    price: float
    distance: float

    def to_dict(self) -> dict:
        return {"location": self.location, "price": self.price, "distance": self.distance}


@dataclass(frozen=True)
class Spike:
    """A single detected price anomaly."""

    id: str
    timestamp: pd.Timestamp
    location: str
    price: float
    baseline_price: float        # rolling-window mean μ
    magnitude: float             # |price − μ|
    type: str                    # "positive" | "negative"
    severity: str                # "low" | "medium" | "high" | "critical"
    nearby_locations: tuple[NearbyPrice, ...]
    confidence: float            # 0–1
    z_score: float

    def to_dict(self) -> dict:
        return {
            "id":               self.id,
            "timestamp":        self.timestamp.isoformat(),
            "location":         self.location,
            "price":            self.price,
            "baselinePrice":    self.baseline_price,
            "magnitude":        self.magnitude,
            "type":             self.type,
            "severity":         self.severity,
            "nearbyLocations":  [n.to_dict() for n in self.nearby_locations],
            "confidence":       self.confidence,
            "zScore":           self.z_score,
        }


@dataclass(frozen=True)
class GridEvent:
    """Grid-level event synthesised from ≥ 2 spikes in the same hour."""

    id: str
    timestamp: str               # hour bucket, "YYYY-MM-DDTHH:00:00Z"
    type: str                    # "transmission_outage" | "congestion" | "local_imbalance"
    description: str
    affected_locations: tuple[str, ...]
    estimated_impact: float      # average spike magnitude, $/MWh
    severity: str                # "low" | "medium" | "high"
    confidence: float

    def to_dict(self) -> dict:
        return {
            "id":                self.id,
            "timestamp":         self.timestamp,
            "type":              self.type,
            "description":       self.description,
            "affectedLocations": list(self.affected_locations),
            "estimatedImpact":   self.estimated_impact,
            "severity":          self.severity,
            "confidence":        self.confidence,
        }


@dataclass(frozen=True)
class SpikeStats:
    total: int
    by_severity: dict
    by_type: dict
    avg_magnitude: float
    max_magnitude: float
    avg_confidence: float

    def to_dict(self) -> dict:
        return {
            "total":         self.total,
            "bySeverity":    self.by_severity,
            "byType":        self.by_type,
            "avgMagnitude":  self.avg_magnitude,
            "maxMagnitude":  self.max_magnitude,
            "avgConfidence": self.avg_confidence,
        }


# ---------------------------------------------------------------------------
# Classification helpers
# ---------------------------------------------------------------------------


def classify_severity(magnitude: float) -> str:
    if magnitude > SEVERITY_CRITICAL:
        return "critical"
    if magnitude > SEVERITY_HIGH:
        return "high"
    if magnitude > SEVERITY_MEDIUM:
        return "medium"
    return "low"


def is_spike(z_score: float, magnitude: float, thresholds: SpikeThresholds) -> bool:
    statistical = z_score > thresholds.z_score_threshold and magnitude > thresholds.min_magnitude
    absolute = magnitude > thresholds.min_magnitude * 2
    return statistical or absolute


def find_nearby_prices(
    location_series: Sequence[LocationSeries],
    location_index: int,
    sample_index: int,
    radius: float,
) -> tuple[NearbyPrice, ...]:
    """Prices at *sample_index* for other locations within the synthetic *radius*."""
    nearby: list[NearbyPrice] = []
    for other_index, other in enumerate(location_series):
        if other_index == location_index or sample_index >= len(other.prices):
            continue
        distance = abs(other_index - location_index) * DISTANCE_PER_INDEX
        if distance <= radius:
            nearby.append(NearbyPrice(
                location=other.location,
                price=other.prices[sample_index].price,
                distance=distance,
            ))
    return tuple(nearby[:MAX_NEARBY_LOCATIONS])


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


def _scan_location(
    location_series: Sequence[LocationSeries],
    location_index: int,
    thresholds: SpikeThresholds,
) -> list[Spike]:
    series = location_series[location_index]
    values = np.array([p.price for p in series.prices], dtype=float)

    spikes: list[Spike] = []
    for i in range(WINDOW_SIZE, len(values)):
        window = values[i - WINDOW_SIZE:i]
        mean = float(window.mean())
        std = float(window.std())
        price = float(values[i])

        magnitude = abs(price - mean)
        z_score = magnitude / std if std > 0 else 0.0
        if not is_spike(z_score, magnitude, thresholds):
            continue

        spike = Spike(
            id=f"spike-{location_index}-{i}",
            timestamp=series.prices[i].timestamp_utc,
            location=series.location,
            price=price,
            baseline_price=mean,
            magnitude=magnitude,
            type="positive" if price > mean else "negative",
            severity=classify_severity(magnitude),
            nearby_locations=find_nearby_prices(
                location_series, location_index, i, thresholds.spatial_radius,
            ),
            confidence=min(z_score / 5, 1.0),
            z_score=z_score,
        )
        spikes.append(spike)
        logger.debug(
            "Spike detected: {} at {} | magnitude ${:.2f} | z={:.2f}",
            spike.location, spike.timestamp, spike.magnitude, spike.z_score,
        )
    return spikes


def deduplicate_spikes(spikes: Sequence[Spike]) -> list[Spike]:
    """
    Drop spikes that sit less than 15 minutes from a larger spike at the same
    location.  Returns the survivors sorted by magnitude, descending.
    """
    kept: list[Spike] = []
    for spike in sorted(spikes, key=lambda s: s.magnitude, reverse=True):
        duplicate = any(
            other.location == spike.location
            and abs(other.timestamp - spike.timestamp) < DEDUP_WINDOW
            for other in kept
        )
        if not duplicate:
            kept.append(spike)
    return kept


def detect_spikes(
    location_series: Sequence[LocationSeries],
    thresholds: Optional[SpikeThresholds] = None,
) -> list[Spike]:
    """
    Detect price spikes across all locations.

    Parameters
    ----------
    location_series:
        One chronological ``LocationSeries`` per pricing node.  List order
        drives the synthetic distance proxy.
    thresholds:
        Detection parameters; defaults when omitted.

    Returns
    -------
    list[Spike]
        Deduplicated spikes sorted by magnitude, descending.  May be empty.

    Raises
    ------
    InvalidInput
        When *location_series* is empty or a location has no prices.
    """
    if not location_series:
        raise InvalidInput("Price data is required for spike detection")
    thresholds = thresholds or SpikeThresholds()

    for series in location_series:
        if not series.prices:
            raise InvalidInput(f"No price data available for location {series.location}")

    logger.info(
        "Detecting spikes | {} locations | magnitude={} zScore={} spatialRadius={}",
        len(location_series), thresholds.min_magnitude,
        thresholds.z_score_threshold, thresholds.spatial_radius,
    )

    raw: list[Spike] = []
    try:
        for location_index in range(len(location_series)):
            raw.extend(_scan_location(location_series, location_index, thresholds))
        spikes = deduplicate_spikes(raw)
    except (ArithmeticError, ValueError, TypeError) as exc:
        logger.error("Spike detection error: {}", exc)
        raise ComputationError(f"Spike detection failed: {exc}") from exc

    logger.info("Detected {} price spikes ({} before filtering).", len(spikes), len(raw))
    return spikes


# ---------------------------------------------------------------------------
# Grid events
# ---------------------------------------------------------------------------


def _classify_event(avg_magnitude: float) -> tuple[str, str]:
    """(event_type, severity) for a group's average magnitude."""
    if avg_magnitude > OUTAGE_THRESHOLD:
        return "transmission_outage", "high"
    if avg_magnitude > CONGESTION_THRESHOLD:
        return "congestion", "medium"
    return "local_imbalance", "low"


def _describe_event(event_type: str, locations: Sequence[str]) -> str:
    names = ", ".join(locations)
    if event_type == "transmission_outage":
        return (
            f"Major transmission outage affecting {names}. "
            "Price differential suggests line trip or generator failure."
        )
    if event_type == "congestion":
        return (
            f"Transmission congestion detected at {names}. "
            "Possible line loading or constraint activation."
        )
    return f"Minor grid disturbance observed at {names}. Localized supply-demand imbalance."


def event_confidence(count: int, avg_magnitude: float) -> float:
    return min(0.5 + 0.1 * count + avg_magnitude / 200, EVENT_CONFIDENCE_CAP)


def synthesize_events(spikes: Sequence[Spike], event_date: Any) -> list[GridEvent]:
    """
    Roll spikes up into grid events, one per UTC hour holding ≥ 2 spikes.

    Parameters
    ----------
    spikes:
        Output of ``detect_spikes``.
    event_date:
        Calendar date stamped on each event (``date`` or ``"YYYY-MM-DD"``).

    Returns
    -------
    list[GridEvent]
        Sorted by hour.  Empty when no hour qualifies.
    """
    if not spikes:
        logger.info("No spikes provided for grid event generation.")
        return []

    day = event_date.isoformat() if isinstance(event_date, (date, datetime)) else str(event_date)[:10]

    groups: dict[int, list[Spike]] = defaultdict(list)
    for spike in spikes:
        groups[spike.timestamp.hour].append(spike)

    events: list[GridEvent] = []
    try:
        for hour in sorted(groups):
            hour_spikes = groups[hour]
            if len(hour_spikes) < EVENT_MIN_SPIKES:
                continue
            avg_magnitude = sum(s.magnitude for s in hour_spikes) / len(hour_spikes)
            event_type, severity = _classify_event(avg_magnitude)
            locations = tuple(dict.fromkeys(s.location for s in hour_spikes))
            events.append(GridEvent(
                id=f"event-{day}-{hour:02d}",
                timestamp=f"{day}T{hour:02d}:00:00Z",
                type=event_type,
                description=_describe_event(event_type, locations),
                affected_locations=locations,
                estimated_impact=avg_magnitude,
                severity=severity,
                confidence=event_confidence(len(hour_spikes), avg_magnitude),
            ))
    except (ArithmeticError, ValueError, TypeError) as exc:
        logger.error("Grid event generation error: {}", exc)
        raise ComputationError(f"Failed to generate grid events: {exc}") from exc

    logger.info("Generated {} grid events from {} spikes.", len(events), len(spikes))
    return events


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


def spike_stats(spikes: Sequence[Spike]) -> SpikeStats:
    """Distribution of spikes by severity and type, plus magnitude/confidence averages."""
    total = len(spikes)
    by_severity = {level: 0 for level in ("critical", "high", "medium", "low")}
    by_type = {"positive": 0, "negative": 0}
    for spike in spikes:
        by_severity[spike.severity] += 1
        by_type[spike.type] += 1

    return SpikeStats(
        total=total,
        by_severity=by_severity,
        by_type=by_type,
        avg_magnitude=sum(s.magnitude for s in spikes) / total if total else 0.0,
        max_magnitude=max((s.magnitude for s in spikes), default=0.0),
        avg_confidence=sum(s.confidence for s in spikes) / total if total else 0.0,
    )


def analysis_summary(
    spikes: Sequence[Spike],
    location_series: Sequence[LocationSeries],
    api_records: int,
) -> dict:
    """Headline numbers for one analysis run."""
    total_points = sum(len(s.prices) for s in location_series)
    spike_pct = round(len(spikes) / total_points * 100, 2) if total_points else 0.0
    return {
        "totalSpikes":       len(spikes),
        "totalDataPoints":   total_points,
        "spikePercentage":   spike_pct,
        "locationsAnalyzed": len(location_series),
        "dataSource":        "gridstatus",
        "apiRecords":        api_records,
    }


# ---------------------------------------------------------------------------
# Smoke test  (python -m analytics.spikes)
# ---------------------------------------------------------------------------


if __name__ == "__main__":
    import sys

    from analytics.records import build_location_series

    logger.remove()
    logger.add(sys.stderr, level="INFO")

    logger.info("=== Spike Detector Smoke Test ===")

    start = pd.Timestamp("2024-07-15T18:00:00Z")
    nodes = ["TH_SP15_GEN-APND", "TH_NP15_GEN-APND", "TH_ZP26_GEN-APND"]
    raw_records = []
    for n, node in enumerate(nodes):
        for k in range(36):
            price = 42.0 + (k % 3)
            if k == 20:
                price += 60 + 15 * n          # coincident spike on every node
            raw_records.append({
                "pnode": node,
                "interval_start_utc": (start + pd.Timedelta(minutes=5 * k)).isoformat(),
                "lmp": price,
            })

    series = build_location_series(raw_records)
    found = detect_spikes(series)
    if not found:
        logger.error("Smoke test FAILED: no spikes detected.")
        sys.exit(1)

    print(f"\n{'Location':<20} {'Time':<27} {'Mag':>8} {'z':>6}  {'Severity'}")
    print("-" * 72)
    for s in found:
        print(f"{s.location:<20} {s.timestamp.isoformat():<27} ${s.magnitude:>7.2f} {s.z_score:>6.2f}  {s.severity}")

    for event in synthesize_events(found, "2024-07-15"):
        print(f"\n{event.timestamp} {event.type} ({event.severity}, conf {event.confidence:.2f})")
        print(f"  {event.description}")

    logger.success("Smoke test PASSED: {} spikes.", len(found))
