"""Tests for measurement records and log sinks."""

import csv
import math
from datetime import datetime

from src.acoustic.export.acoustic_log import (
    CSV_HEADER,
    AcousticRecord,
    CsvLogSink,
    MemoryLogSink,
    format_metric,
    log_file_name,
)


def realtime_record(frame_idx=1, **overrides):
    values = dict(
        scene="shoebox",
        mode="realtime",
        frame_idx=frame_idx,
        rays=10000,
        max_reflections=5,
        bvh_strategy="refit",
        frame_time_ms=3.25,
        first_reflection_ms=12.0,
        rt60_s=0.4567891,
    )
    values.update(overrides)
    return AcousticRecord(**values)


class TestFormatting:
    """Test metric formatting."""

    def test_four_decimals(self):
        """Test fixed four-decimal output."""
        assert format_metric(0.4567891) == "0.4568"
        assert format_metric(12.0) == "12.0000"

    def test_missing_values(self):
        """Test that None and NaN are written as nan."""
        assert format_metric(None) == "nan"
        assert format_metric(math.nan) == "nan"

    def test_record_row(self):
        """Test the column order of a record row."""
        row = realtime_record(first_reflection_ms=None).as_row()
        assert row == ["shoebox", "realtime", "1", "10000", "5", "refit", "3.2500", "nan", "0.4568"]
        assert len(row) == len(CSV_HEADER)

    def test_file_name(self):
        """Test that the file name encodes run parameters and start time."""
        name = log_file_name("shoebox", "reference", 100000, "none", datetime(2024, 3, 5, 14, 7, 9))
        assert name == "AcousticLog_scene=shoebox_mode=reference_rays=100000_bvh=none_time=2024-03-05_14-07-09.csv"


class TestMemoryLogSink:
    """Test the in-memory sink."""

    def test_keeps_records_until_closed(self):
        """Test that records after close are dropped."""
        sink = MemoryLogSink()
        sink.log(realtime_record(1))
        sink.close()
        sink.log(realtime_record(2))
        assert [r.frame_idx for r in sink.records] == [1]
        assert sink.closed


class TestCsvLogSink:
    """Test the CSV sink."""

    def test_writes_header_and_rows(self, tmp_path):
        """Test that the file holds the header followed by one row per record."""
        sink = CsvLogSink(tmp_path / "logs", "shoebox", "realtime", 10000, "refit", timestamp=datetime(2024, 1, 2, 3, 4, 5))
        sink.log(realtime_record(1))
        sink.log(realtime_record(2, rt60_s=None))
        sink.close()

        assert sink.path.name.startswith("AcousticLog_scene=shoebox_mode=realtime")
        with open(sink.path, newline="", encoding="utf-8") as f:
            rows = list(csv.reader(f))

        assert rows[0] == list(CSV_HEADER)
        assert rows[1][2] == "1"
        assert rows[2][-1] == "nan"
        assert len(rows) == 3

    def test_close_is_idempotent(self, tmp_path):
        """Test that closing twice is harmless and later records are dropped."""
        sink = CsvLogSink(tmp_path, "shoebox", "reference", 100000, "none")
        sink.close()
        sink.close()
        sink.log(realtime_record())
        assert sink.closed

        with open(sink.path, newline="", encoding="utf-8") as f:
            assert len(list(csv.reader(f))) == 1
