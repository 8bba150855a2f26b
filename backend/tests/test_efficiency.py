"""Tests for the per-minute production series."""
from datetime import datetime, timedelta

from aggregation.efficiency import build_minute_series
from aggregation.segmenter import TagSample

START = datetime(2026, 3, 2, 6, 0, 0)


def reading(value, minutes):
    return TagSample(tag_id=30, value=str(value), timestamp=START + timedelta(minutes=minutes))


class TestMinuteSeries:

    def test_counts_per_minute(self):
        samples = [reading(1000, -0.5), reading(1010, 0.5), reading(1030, 1.2), reading(1060, 2.9)]

        points = build_minute_series(samples, START, START + timedelta(minutes=3))

        assert [p.bottle_count for p in points] == [10, 20, 30]
        assert [p.cumulative_count for p in points] == [10, 30, 60]
        assert [p.minute for p in points] == [1, 2, 3]
        assert points[0].timestamp == START + timedelta(minutes=1)

    def test_counter_reset_never_negative(self):
        samples = [reading(500, 0), reading(520, 0.5), reading(15, 1.5)]

        points = build_minute_series(samples, START, START + timedelta(minutes=2))

        assert [p.bottle_count for p in points] == [20, 15]

    def test_unparseable_readings_ignored(self):
        samples = [reading(100, 0), reading("offline", 0.5), reading(130, 1.5)]

        points = build_minute_series(samples, START, START + timedelta(minutes=2))

        assert [p.bottle_count for p in points] == [0, 30]

    def test_empty_window(self):
        assert build_minute_series([reading(1, 0)], START, START) == []
