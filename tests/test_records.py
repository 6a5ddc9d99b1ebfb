"""Tests for raw record parsing and per-location series building."""

from __future__ import annotations

from datetime import datetime, timezone

import pandas as pd
import pytest

from analytics.errors import InvalidInput, InvalidRecord
from analytics.records import (
    DEFAULT_LOCATION,
    PRICE_FIELDS,
    TIMESTAMP_FIELDS,
    build_location_series,
    location_region,
    location_type,
    parse_price,
    parse_record,
    parse_records,
    parse_timestamp,
    resolve_field,
)


class TestResolveField:
    """Alias resolution over loosely typed provider records."""

    def test_first_alias_wins(self):
        record = {"price": 30.0, "lmp": 42.0}
        assert resolve_field(record, PRICE_FIELDS) == 42.0

    def test_skips_empty_and_none(self):
        record = {"interval_start_utc": "", "interval_start_local": None, "timestamp": "2024-07-15T00:00:00Z"}
        assert resolve_field(record, TIMESTAMP_FIELDS) == "2024-07-15T00:00:00Z"

    def test_missing_returns_none(self):
        assert resolve_field({"foo": 1}, PRICE_FIELDS) is None


class TestParseTimestamp:
    """Timestamp parsing and UTC normalisation."""

    def test_offset_converted_to_utc(self):
        ts = parse_timestamp("2024-07-15T10:00:00-07:00")
        assert ts == pd.Timestamp("2024-07-15T17:00:00Z")
        assert str(ts.tz) == "UTC"

    def test_naive_string_read_as_utc(self):
        assert parse_timestamp("2024-07-15 10:00:00") == pd.Timestamp("2024-07-15T10:00:00Z")

    def test_datetime_accepted(self):
        value = datetime(2024, 7, 15, 10, tzinfo=timezone.utc)
        assert parse_timestamp(value) == pd.Timestamp("2024-07-15T10:00:00Z")

    @pytest.mark.parametrize("value", ["not a date", 12345, None])
    def test_rejects_garbage(self, value):
        with pytest.raises(InvalidRecord):
            parse_timestamp(value)

    @pytest.mark.parametrize("value", ["now", "today", " Now "])
    def test_rejects_relative_keywords(self, value):
        with pytest.raises(InvalidRecord):
            parse_timestamp(value)

    def test_relative_keyword_record_skipped(self):
        df = parse_records([
            {"timestamp": "now", "lmp": 77.0},
            {"timestamp": "2024-07-15T00:00:00Z", "lmp": 20.0},
        ])
        assert df["price"].tolist() == [20.0]


class TestParsePrice:
    """Price bounds are (0, 10000] $/MWh."""

    @pytest.mark.parametrize("value", [0.01, "42.5", 10_000])
    def test_accepts_in_range(self, value):
        assert parse_price(value) == float(value)

    @pytest.mark.parametrize("value", [0, -5, 10_000.01, "abc", True, float("nan"), None])
    def test_rejects_out_of_range_or_non_numeric(self, value):
        with pytest.raises(InvalidRecord):
            parse_price(value)


class TestParseRecord:
    def test_full_record(self):
        point = parse_record({"pnode": "TH_SP15_GEN-APND", "timestamp": "2024-07-15T00:00:00Z", "price": "31.2"})
        assert point.location == "TH_SP15_GEN-APND"
        assert point.price == 31.2
        assert point.quality == "actual"

    def test_missing_location_defaults(self):
        point = parse_record({"timestamp": "2024-07-15T00:00:00Z", "lmp": 20})
        assert point.location == DEFAULT_LOCATION

    @pytest.mark.parametrize(
        "record",
        [
            {"lmp": 20},
            {"timestamp": "2024-07-15T00:00:00Z"},
            ["not", "a", "dict"],
        ],
    )
    def test_incomplete_record_rejected(self, record):
        with pytest.raises(InvalidRecord):
            parse_record(record)

    def test_to_dict_wire_names(self):
        point = parse_record({"timestamp": "2024-07-15T00:00:00Z", "lmp": 20, "node": "N1"})
        assert point.to_dict() == {
            "location":    "N1",
            "timestamp":   "2024-07-15T00:00:00+00:00",
            "price":       20.0,
            "dataQuality": "actual",
        }


class TestParseRecords:
    def test_invalid_records_skipped(self):
        df = parse_records([
            {"timestamp": "2024-07-15T00:00:00Z", "lmp": 20},
            {"timestamp": "2024-07-15T00:05:00Z", "lmp": -1},
            {"timestamp": "garbage", "lmp": 20},
            {"timestamp": "2024-07-15T00:10:00Z", "lmp": 25},
        ])
        assert list(df.columns) == ["location", "timestamp_utc", "price"]
        assert df["price"].tolist() == [20.0, 25.0]

    def test_nothing_valid_gives_empty_frame(self):
        df = parse_records([{"lmp": "x"}])
        assert df.empty
        assert list(df.columns) == ["location", "timestamp_utc", "price"]


class TestBuildLocationSeries:
    """Grouping raw records into chronological per-node series."""

    def test_first_appearance_order_and_sorting(self):
        records = [
            {"pnode": "B", "timestamp": "2024-07-15T00:10:00Z", "lmp": 3},
            {"pnode": "A", "timestamp": "2024-07-15T00:05:00Z", "lmp": 2},
            {"pnode": "B", "timestamp": "2024-07-15T00:00:00Z", "lmp": 1},
        ]
        series = build_location_series(records, "America/Los_Angeles")

        assert [s.location for s in series] == ["B", "A"]
        assert [p.price for p in series[0].prices] == [1.0, 3.0]
        assert series[0].metadata["dataPoints"] == 2
        assert series[0].metadata["timezone"] == "America/Los_Angeles"
        assert series[0].metadata["timeRange"]["start"] == "2024-07-15T00:00:00+00:00"

    def test_empty_input_rejected(self):
        with pytest.raises(InvalidInput):
            build_location_series([])

    def test_all_invalid_rejected(self):
        with pytest.raises(InvalidInput):
            build_location_series([{"pnode": "A", "lmp": 5}])


class TestLocationClassification:
    @pytest.mark.parametrize(
        "name, region",
        [
            ("TH_SP15_GEN-APND", "Southern California"),
            ("TH_NP15_GEN-APND", "Northern California"),
            ("TH_ZP26_GEN-APND", "Central Valley"),
            ("XYZ", "California ISO"),
        ],
    )
    def test_region(self, name, region):
        assert location_region(name) == region

    def test_type(self):
        assert location_type("DLAP_PGAE-APND") == "Load Zone"
        assert location_type("TH_SP15_GEN-APND") == "Generation Zone"
        assert location_type("XYZ") == "Trading Hub"
