"""
Virtual Energy Trader — Analytics error taxonomy

Whole-call failures (``DataUnavailable``, ``InvalidInput``, ``ComputationError``)
propagate to the caller.  Per-item failures (``InvalidRecord``, ``InvalidBid``)
are raised and caught inside the engine so that one bad record or bid never
fails the batch.

Every error carries the HTTP status the API layer should map it to.
"""

from __future__ import annotations

from typing import Optional


class AnalyticsError(Exception):
    """Base class for every error raised by the analytics engine."""

    status_code: int = 500
    error_code: str = "ANALYTICS_ERROR"

    def __init__(self, message: str, details: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class DataUnavailable(AnalyticsError):
    """Neither day-ahead nor real-time input held a single usable record."""

    status_code = 404
    error_code = "DATA_UNAVAILABLE"


class InvalidRecord(AnalyticsError):
    """A single raw price record could not be parsed."""

    status_code = 400
    error_code = "INVALID_RECORD"


class InvalidBid(AnalyticsError):
    """A bid references an hour with no market data."""

    status_code = 400
    error_code = "INVALID_BID"


class InvalidInput(AnalyticsError):
    """Input rejected before any computation took place."""

    status_code = 400
    error_code = "INVALID_INPUT"


class ComputationError(AnalyticsError):
    """Unexpected internal failure while computing a result."""

    status_code = 500
    error_code = "COMPUTATION_ERROR"
