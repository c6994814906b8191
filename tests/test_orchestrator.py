"""
Tests for the run loop: pagination, statistics, progress, throttle, aborts.
"""

from datetime import datetime

import pytest
from sqlalchemy import func, select

from bookingsync.database import Booking
from bookingsync.exceptions import AuthError, RateLimitedError, UpstreamError
from bookingsync.fetcher import PageFetcher
from bookingsync.models import FilterWindow, RunStatistics
from bookingsync.orchestrator import BackfillOrchestrator
from bookingsync.retry import ExhaustedRetriesError
from bookingsync.upserter import RecordUpserter

from conftest import FakeClient, make_booking

JANUARY = FilterWindow(datetime(2024, 1, 1), datetime(2024, 2, 1))


def build(sessions, sleep, pages, page_delay=0.1, location_id="loc-1"):
    client = FakeClient(pages=pages)
    fetcher = PageFetcher(client, location_id=location_id, max_retries=2, initial_delay=1.0, sleep=sleep)
    upserter = RecordUpserter(sessions, client, "org-1", sleep=sleep)
    orchestrator = BackfillOrchestrator(fetcher, upserter, sessions, "org-1", page_delay=page_delay, sleep=sleep)
    return orchestrator, client


def stored(sessions):
    with sessions() as session:
        return session.execute(select(func.count(Booking.id))).scalar()


class TestRunStatistics:
    def test_merge(self):
        """Statistics add field by field."""
        total = RunStatistics(fetched=2, upserted=2, pages=1) + RunStatistics(fetched=1, errors=1, pages=1)
        assert total == RunStatistics(fetched=3, upserted=2, errors=1, pages=2)
        assert total.as_dict()["fetched"] == 3


class TestPagination:
    def test_three_pages(self, sessions, sleep):
        """Pages of 2, 1 and 0 items are all visited in order."""
        pages = [
            {"bookings": [make_booking("a"), make_booking("b")], "cursor": "c2"},
            {"bookings": [make_booking("c")], "cursor": "c3"},
            {"bookings": [], "cursor": None},
        ]
        orchestrator, client = build(sessions, sleep, pages)

        stats = orchestrator.run(JANUARY)

        assert stats.fetched == 3
        assert stats.pages == 3
        assert stats.upserted == 3
        assert stats.errors == 0
        assert [call["cursor"] for call in client.list_calls] == [None, "c2", "c3"]
        assert stored(sessions) == 3

    def test_progress_after_every_page(self, sessions, sleep):
        """Progress reports cumulative totals and the next cursor per page."""
        pages = [
            {"bookings": [make_booking("a"), make_booking("b")], "cursor": "c2"},
            {"bookings": [make_booking("c")], "cursor": None},
        ]
        orchestrator, _ = build(sessions, sleep, pages)
        progress = []

        orchestrator.run(JANUARY, on_progress=lambda *args: progress.append(args))

        assert progress == [(1, 2, 2, "c2"), (2, 3, 3, None)]

    def test_throttle_only_between_pages(self, sessions, sleep):
        """The inter-page delay is slept only when another page remains."""
        pages = [
            {"bookings": [make_booking("a")], "cursor": "c2"},
            {"bookings": [make_booking("b")], "cursor": "c3"},
            {"bookings": [], "cursor": None},
        ]
        orchestrator, _ = build(sessions, sleep, pages, page_delay=0.25)

        orchestrator.run(JANUARY)

        assert sleep.delays == [0.25, 0.25]

    def test_window_required(self, sessions, sleep):
        """Runs without a window are refused before any call."""
        orchestrator, client = build(sessions, sleep, [])
        with pytest.raises(ValueError):
            orchestrator.run(None)
        assert client.list_calls == []

    def test_retries_counted(self, sessions, sleep):
        """Page retries show up in the run statistics."""
        pages = [RateLimitedError("slow down", status_code=429), {"bookings": [make_booking("a")]}]
        orchestrator, _ = build(sessions, sleep, pages)

        stats = orchestrator.run(JANUARY)

        assert stats.retries == 1
        assert sleep.delays == [1.0]


class TestItemFailures:
    def test_bad_item_does_not_stop_page(self, sessions, sleep):
        """A malformed item is counted and the rest of the page is stored."""
        pages = [{"bookings": [make_booking("a"), {"id": "broken"}, make_booking("c")], "cursor": None}]
        orchestrator, _ = build(sessions, sleep, pages)

        stats = orchestrator.run(JANUARY)

        assert stats.fetched == 3
        assert stats.upserted == 2
        assert stats.errors == 1
        assert stored(sessions) == 2

    def test_soft_error_truncates_quietly(self, sessions, sleep):
        """A swallowed upstream error ends the run without raising."""
        pages = [
            {"bookings": [make_booking("a")], "cursor": "c2"},
            UpstreamError("Upstream request failed (400)", status_code=400),
        ]
        orchestrator, _ = build(sessions, sleep, pages)

        stats = orchestrator.run(JANUARY)

        assert stats.fetched == 1
        assert stats.pages == 2
        assert stats.errors == 1
        assert not orchestrator.trail.ends_at_null()


class TestAbort:
    def test_auth_error_aborts(self, sessions, sleep):
        """Auth errors abort the run and keep the progress made so far."""
        pages = [
            {"bookings": [make_booking("a")], "cursor": "c2"},
            AuthError("Authentication failed", status_code=401),
        ]
        orchestrator, _ = build(sessions, sleep, pages)

        with pytest.raises(AuthError):
            orchestrator.run(JANUARY)

        assert orchestrator.last_stats.fetched == 1
        assert orchestrator.observation.count == 1
        assert len(orchestrator.trail) == 1

    def test_exhausted_retries_abort(self, sessions, sleep):
        """Exhausted retries abort the run."""
        pages = [RateLimitedError("slow down", status_code=429) for _ in range(3)]
        orchestrator, _ = build(sessions, sleep, pages)

        with pytest.raises(ExhaustedRetriesError):
            orchestrator.run(JANUARY)

    def test_rerun_after_abort_converges(self, sessions, sleep):
        """Re-invoking after an abort is safe: nothing is duplicated."""
        first, _ = build(sessions, sleep, [
            {"bookings": [make_booking("a")], "cursor": "c2"},
            AuthError("Authentication failed", status_code=401),
        ])
        with pytest.raises(AuthError):
            first.run(JANUARY)

        second, _ = build(sessions, sleep, [
            {"bookings": [make_booking("a")], "cursor": "c2"},
            {"bookings": [make_booking("b")], "cursor": None},
        ])
        second.run(JANUARY)

        assert stored(sessions) == 2


class TestIncremental:
    def test_explicit_lower_bound_skips_unchanged(self, sessions, sleep):
        """Items updated before the bound are observed but not written."""
        pages = [{"bookings": [
            make_booking("old", updated_at="2024-01-01T00:00:00Z"),
            make_booking("new", updated_at="2024-01-20T00:00:00Z"),
        ]}]
        orchestrator, _ = build(sessions, sleep, pages)

        stats = orchestrator.run(JANUARY, incremental=True, lower_bound=datetime(2024, 1, 10))

        assert stats.fetched == 2
        assert stats.upserted == 1
        assert stats.skipped == 1
        assert orchestrator.observation.count == 2

    def test_derived_lower_bound(self, sessions, sleep):
        """Without an explicit bound, the newest stored updated_at is used."""
        seed, _ = build(sessions, sleep, [{"bookings": [make_booking("a", updated_at="2024-01-15T00:00:00Z")]}])
        seed.run(JANUARY)

        orchestrator, _ = build(sessions, sleep, [{"bookings": [
            make_booking("a", updated_at="2024-01-15T00:00:00Z"),
            make_booking("b", updated_at="2024-01-14T00:00:00Z"),
            make_booking("c", updated_at="2024-01-16T00:00:00Z"),
        ]}])
        assert orchestrator.derive_lower_bound() == datetime(2024, 1, 15)

        stats = orchestrator.run(JANUARY, incremental=True)

        assert stats.upserted == 2
        assert stats.skipped == 1

    def test_falls_back_to_full(self, sessions, sleep):
        """With nothing stored, incremental mode behaves like a full run."""
        pages = [{"bookings": [make_booking("a", updated_at="2020-01-01T00:00:00Z")]}]
        orchestrator, _ = build(sessions, sleep, pages)

        stats = orchestrator.run(JANUARY, incremental=True)

        assert stats.upserted == 1
        assert stats.skipped == 0

    def test_full_mode_ignores_lower_bound(self, sessions, sleep):
        """A lower bound has no effect outside incremental mode."""
        pages = [{"bookings": [make_booking("a", updated_at="2020-01-01T00:00:00Z")]}]
        orchestrator, _ = build(sessions, sleep, pages)

        stats = orchestrator.run(JANUARY, lower_bound=datetime(2024, 1, 1))

        assert stats.upserted == 1
