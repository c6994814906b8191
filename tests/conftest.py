"""
Pytest configuration and shared fixtures.
"""

import threading
from copy import deepcopy
from typing import Any, Dict, List, Optional

import pytest

from bookingsync.database import dispose_engines, init_database, session_factory
from bookingsync.exceptions import NotFoundError


class SleepRecorder:
    """Stands in for time.sleep; remembers every requested delay."""

    def __init__(self):
        self.delays: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FakeClient:
    """
    Scripted upstream client.

    `pages` is consumed in order by list_bookings; an entry that is an
    exception instance is raised instead of returned.
    """

    def __init__(
        self,
        pages: Optional[List[Any]] = None,
        customers: Optional[Dict[str, Dict[str, Any]]] = None,
        bookings: Optional[Dict[str, Dict[str, Any]]] = None,
        customer_barrier: Optional[threading.Barrier] = None,
    ):
        self.pages = list(pages or [])
        self.customers = customers or {}
        self.bookings = bookings or {}
        self.customer_barrier = customer_barrier
        self.list_calls: List[Dict[str, Any]] = []
        self.customer_calls: List[str] = []

    def list_bookings(self, **params):
        self.list_calls.append(params)
        if not self.pages:
            raise AssertionError("list_bookings called more often than scripted")
        page = self.pages.pop(0)
        if isinstance(page, Exception):
            raise page
        return deepcopy(page)

    def retrieve_customer(self, customer_id):
        self.customer_calls.append(customer_id)
        if self.customer_barrier is not None:
            self.customer_barrier.wait()
        if customer_id not in self.customers:
            raise NotFoundError("Not found upstream", status_code=404)
        customer = self.customers[customer_id]
        if isinstance(customer, Exception):
            raise customer
        return customer

    def retrieve_booking(self, booking_id):
        if booking_id not in self.bookings:
            raise NotFoundError("Not found upstream", status_code=404)
        return self.bookings[booking_id]

    def list_locations(self):
        return []


def make_booking(
    booking_id: str = "bk-1",
    start_at: str = "2024-01-10T15:00:00Z",
    version: Any = 1,
    customer_id: Optional[str] = "cust-1",
    updated_at: str = "2024-01-05T12:00:00Z",
    segments: Optional[List[Dict[str, Any]]] = None,
    **extra,
) -> Dict[str, Any]:
    booking = {
        "id": booking_id,
        "version": version,
        "status": "ACCEPTED",
        "location_id": "loc-1",
        "start_at": start_at,
        "created_at": "2024-01-01T09:00:00Z",
        "updated_at": updated_at,
        "appointment_segments": segments if segments is not None else [
            {
                "duration_minutes": 60,
                "service_variation_id": "svc-1",
                "service_variation_version": 1700000000000,
                "team_member_id": "tm-1",
            },
        ],
    }
    if customer_id is not None:
        booking["customer_id"] = customer_id
    booking.update(extra)
    return booking


@pytest.fixture
def db_path(tmp_path):
    """Initialized SQLite database file."""
    path = tmp_path / "bookings.db"
    init_database(path)
    yield path
    dispose_engines()


@pytest.fixture
def sessions(db_path):
    return session_factory(db_path)


@pytest.fixture
def sleep():
    return SleepRecorder()


@pytest.fixture
def booking_factory():
    return make_booking
