"""
Tests for calendar chunking and the filter window type.
"""

from datetime import date, datetime, timedelta

import pytest

from bookingsync.models import FilterWindow
from bookingsync.windows import chunk_windows, parse_date, parse_moment


class TestFilterWindow:
    def test_half_open(self):
        """The lower bound is inside the window, the upper bound is not."""
        window = FilterWindow(datetime(2024, 1, 1), datetime(2024, 2, 1))
        assert window.contains(datetime(2024, 1, 1))
        assert window.contains(datetime(2024, 1, 31, 23, 59))
        assert not window.contains(datetime(2024, 2, 1))
        assert not window.contains(None)

    def test_empty_window_rejected(self):
        """A window must have positive length."""
        with pytest.raises(ValueError):
            FilterWindow(datetime(2024, 1, 2), datetime(2024, 1, 2))

    def test_as_params(self):
        """Windows render as upstream filter parameters."""
        window = FilterWindow(datetime(2024, 1, 1), datetime(2024, 2, 1))
        assert window.as_params() == {
            "start_at_min": "2024-01-01T00:00:00Z",
            "start_at_max": "2024-02-01T00:00:00Z",
        }


class TestChunkWindows:
    def test_month_boundaries(self):
        """A quarter splits on calendar months."""
        windows = chunk_windows(date(2024, 1, 1), date(2024, 4, 1))
        assert [(w.start_at_min.month, w.start_at_max.month) for w in windows] == [(1, 2), (2, 3), (3, 4)]

    def test_covers_range_without_gaps(self):
        """Windows are contiguous, never overlap and never exceed max_days."""
        start, end = date(2023, 11, 17), date(2024, 3, 5)
        windows = chunk_windows(start, end, max_days=10)

        assert windows[0].start_at_min == datetime(2023, 11, 17)
        assert windows[-1].start_at_max == datetime(2024, 3, 5)
        for previous, following in zip(windows, windows[1:]):
            assert previous.start_at_max == following.start_at_min
        assert all(w.span <= timedelta(days=10) for w in windows)

    def test_partial_month(self):
        """A range starting mid-month ends its first window at the month boundary."""
        windows = chunk_windows(date(2024, 1, 20), date(2024, 2, 10))
        assert [(w.start_at_min.day, w.start_at_max.day) for w in windows] == [(20, 1), (1, 10)]

    def test_year_rollover(self):
        """December windows end on January 1st of the next year."""
        windows = chunk_windows(date(2023, 12, 15), date(2024, 1, 15))
        assert windows[0].start_at_max == datetime(2024, 1, 1)

    def test_accepts_datetimes(self):
        """Datetimes are used as-is, not truncated to dates."""
        windows = chunk_windows(datetime(2024, 1, 5, 12), datetime(2024, 1, 6))
        assert len(windows) == 1
        assert windows[0].start_at_min == datetime(2024, 1, 5, 12)

    def test_empty_range(self):
        """An empty range is rejected."""
        with pytest.raises(ValueError):
            chunk_windows(date(2024, 1, 5), date(2024, 1, 5))

    def test_bad_max_days(self):
        """max_days below 1 is rejected."""
        with pytest.raises(ValueError):
            chunk_windows(date(2024, 1, 1), date(2024, 2, 1), max_days=0)


class TestParsing:
    def test_parse_date(self):
        """Only YYYY-MM-DD is accepted."""
        assert parse_date("2024-02-29") == date(2024, 2, 29)
        with pytest.raises(ValueError):
            parse_date("02/29/2024")

    def test_parse_moment(self):
        """Both dates and timestamps are accepted."""
        assert parse_moment("2024-02-01") == datetime(2024, 2, 1)
        assert parse_moment("2024-02-01T06:00:00Z") == datetime(2024, 2, 1, 6)
