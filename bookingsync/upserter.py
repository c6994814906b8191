"""
Idempotent persistence of one upstream booking.

upsert(item) guarantees the booking's customer row exists, then writes the
booking, its raw snapshot and its segments in a single transaction. Any
failure is contained to the item: it is logged and reported as
UpsertOutcome.FAILED, never raised.
"""

import json
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import Numeric, cast, delete, insert, select
from sqlalchemy.orm import Session, sessionmaker

from .client import UpstreamClient
from .database import (
    Booking,
    BookingSegment,
    BookingSnapshot,
    Customer,
    ServiceVariation,
    dialect_insert,
    ensure_exists,
    row_exists,
)
from .exceptions import (
    AuthError,
    DependencyError,
    MalformedRecordError,
    NotFoundError,
    RETRYABLE_ERRORS,
    UpstreamError,
)
from .logger import get_logger
from .models import UpsertOutcome
from .normalize import (
    as_decimal_string,
    parse_timestamp,
    resolve,
    stringify_wide_integers,
    utcnow,
    widen,
)
from .retry import ExhaustedRetriesError, retry_call
from .schema import validate_booking

logger = get_logger()

# Columns an ON CONFLICT update must leave alone.
IMMUTABLE_COLUMNS = frozenset({"organization_id", "external_id", "created_at", "first_seen_at"})


@dataclass(frozen=True)
class BookingPayload:
    """A validated booking split into column values, segment rows and the raw item."""

    values: Dict[str, Any]
    segments: List[Dict[str, Any]]
    raw: Dict[str, Any]

    @property
    def external_id(self) -> str:
        return self.values["external_id"]


def _segment_row(position: int, segment: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "position": position,
        "service_variation_id": resolve(segment, "service_variation_id"),
        "service_variation_version": as_decimal_string(resolve(segment, "service_variation_version")),
        "team_member_id": resolve(segment, "team_member_id"),
        "duration_minutes": resolve(segment, "duration_minutes", 0),
        "intermission_minutes": resolve(segment, "intermission_minutes", 0),
        "any_team_member": bool(resolve(segment, "any_team_member", False)),
    }


def parse_booking(
    item: Dict[str, Any],
    organization_id: str,
    default_location_id: Optional[str] = None,
) -> BookingPayload:
    """
    Validate an upstream booking and map it onto table columns.

    Raises:
        MalformedRecordError: if the payload cannot be stored
    """
    errors = validate_booking(item)
    if errors:
        external_id = item.get("id") if isinstance(item, dict) else None
        raise MalformedRecordError(
            "Invalid booking payload",
            details="; ".join(errors),
            external_id=external_id if isinstance(external_id, str) else None,
        )

    start_at = parse_timestamp(resolve(item, "start_at"))
    created_at = parse_timestamp(resolve(item, "created_at")) or utcnow()
    updated_at = parse_timestamp(resolve(item, "updated_at")) or created_at

    segments = [_segment_row(i, seg) for i, seg in enumerate(resolve(item, "segments") or [])]
    end_at = None
    if segments:
        minutes = sum(s["duration_minutes"] + s["intermission_minutes"] for s in segments)
        end_at = start_at + timedelta(minutes=minutes)

    address = resolve(item, "address") or {}
    creator = resolve(item, "creator_details") or {}

    values = {
        "organization_id": organization_id,
        "external_id": item["id"],
        "version": as_decimal_string(resolve(item, "version")) or "0",
        "customer_id": resolve(item, "customer_id") or None,
        "location_id": resolve(item, "location_id") or default_location_id,
        "location_type": resolve(item, "location_type"),
        "source": resolve(item, "source"),
        "status": resolve(item, "status"),
        "all_day": bool(resolve(item, "all_day", False)),
        "transition_time_minutes": int(resolve(item, "transition_time_minutes", 0)),
        "start_at": start_at,
        "end_at": end_at,
        "creator_type": resolve(creator, "creator_type"),
        "creator_customer_id": resolve(creator, "customer_id"),
        "creator_team_member_id": resolve(creator, "team_member_id"),
        "address_line_1": resolve(address, "address_line_1"),
        "locality": resolve(address, "locality"),
        "administrative_district_level_1": resolve(address, "administrative_district_level_1"),
        "postal_code": resolve(address, "postal_code"),
        "created_at": created_at,
        "updated_at": updated_at,
    }
    return BookingPayload(values=values, segments=segments, raw=item)


def customer_stub(customer_id: str) -> Dict[str, Any]:
    return {"customer_id": customer_id, "is_stub": True}


def customer_profile(customer_id: str, profile: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "customer_id": customer_id,
        "given_name": resolve(profile, "given_name"),
        "family_name": resolve(profile, "family_name"),
        "email_address": resolve(profile, "email_address"),
        "phone_number": resolve(profile, "phone_number"),
        "is_stub": False,
    }


def booking_upsert(session: Session, row: Dict[str, Any]):
    """
    INSERT .. ON CONFLICT for one booking row.

    The update branch only fires when the incoming version is not older than
    the stored one, compared as numbers; otherwise the statement is a no-op.
    """
    stmt = dialect_insert(session, Booking).values(**row)
    return stmt.on_conflict_do_update(
        index_elements=["organization_id", "external_id"],
        set_={col: stmt.excluded[col] for col in row if col not in IMMUTABLE_COLUMNS},
        where=cast(Booking.version, Numeric) <= cast(stmt.excluded.version, Numeric),
    )


class RecordUpserter:
    """Writes bookings for one organization; safe to run in several processes at once."""

    def __init__(
        self,
        sessions: sessionmaker,
        client: Optional[UpstreamClient],
        organization_id: str,
        default_location_id: Optional[str] = None,
        ensure_attempts: int = 3,
        max_retries: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 60.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.sessions = sessions
        self.client = client
        self.organization_id = organization_id
        self.default_location_id = default_location_id
        self.ensure_attempts = ensure_attempts
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.sleep = sleep
        self._known_customers = set()

    @classmethod
    def from_settings(cls, sessions: sessionmaker, client: Optional[UpstreamClient], settings,
                      sleep: Callable[[float], None] = time.sleep) -> "RecordUpserter":
        return cls(
            sessions,
            client,
            organization_id=settings.organization_id,
            default_location_id=settings.location_id,
            max_retries=settings.max_retries,
            initial_delay=settings.initial_retry_delay,
            max_delay=settings.max_retry_delay,
            sleep=sleep,
        )

    def upsert(self, item: Dict[str, Any]) -> UpsertOutcome:
        """Persist one booking. Never raises; failures come back as FAILED."""
        external_id = item.get("id") if isinstance(item, dict) else None
        try:
            payload = parse_booking(item, self.organization_id, self.default_location_id)
            customer_id = payload.values["customer_id"]
            if customer_id:
                self.ensure_customer(customer_id)

            with self.sessions.begin() as session:
                return self._write(session, payload)
        except Exception as e:
            logger.record_error(type(e).__name__)
            logger.error(
                "Failed to upsert booking",
                external_id=external_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return UpsertOutcome.FAILED

    # Dependencies

    def ensure_customer(self, customer_id: str) -> None:
        """
        Make sure a customer row exists, preferring the upstream profile.

        Raises:
            DependencyError: the row could not be created
            AuthError: upstream rejected our credentials
        """
        if customer_id in self._known_customers:
            return
        with self.sessions() as session:
            if row_exists(session, Customer, customer_id):
                self._known_customers.add(customer_id)
                return

        values = self._customer_values(customer_id)
        with self.sessions.begin() as session:
            created = ensure_exists(session, Customer, values, attempts=self.ensure_attempts)
        if created:
            logger.info("Created customer", customer_id=customer_id, stub=values["is_stub"])
        self._known_customers.add(customer_id)

    def _customer_values(self, customer_id: str) -> Dict[str, Any]:
        if self.client is None:
            return customer_stub(customer_id)
        try:
            profile = retry_call(
                self.client.retrieve_customer,
                customer_id,
                max_retries=self.max_retries,
                base_delay=self.initial_delay,
                max_delay=self.max_delay,
                exceptions=RETRYABLE_ERRORS,
                on_retry=lambda attempt, error, delay: logger.record_retry(type(error).__name__),
                sleep=self.sleep,
            )
        except NotFoundError:
            logger.info("Customer no longer exists upstream, storing stub", customer_id=customer_id)
            return customer_stub(customer_id)
        except AuthError:
            raise
        except (UpstreamError, ExhaustedRetriesError) as e:
            logger.warning(
                "Could not fetch customer profile, storing stub",
                customer_id=customer_id,
                error=str(e),
            )
            return customer_stub(customer_id)
        return customer_profile(customer_id, profile)

    def _ensure_service_variation(self, session: Session, segment: Dict[str, Any]) -> None:
        variation_id = segment["service_variation_id"]
        if not variation_id:
            return
        try:
            ensure_exists(
                session,
                ServiceVariation,
                {
                    "variation_id": variation_id,
                    "duration_minutes": segment["duration_minutes"] or None,
                    "is_stub": True,
                },
                attempts=self.ensure_attempts,
            )
        except DependencyError as e:
            logger.warning(
                "Could not ensure service variation for segment",
                variation_id=variation_id,
                position=segment["position"],
                error=str(e),
            )

    # Writes

    def _write(self, session: Session, payload: BookingPayload) -> UpsertOutcome:
        values = payload.values
        key = (
            Booking.organization_id == values["organization_id"],
            Booking.external_id == values["external_id"],
        )

        # Row lock on PostgreSQL; SQLite serializes writers on its own.
        stored_version = session.execute(
            select(Booking.version).where(*key).with_for_update()
        ).scalar()
        if stored_version is not None and widen(stored_version) > widen(values["version"]):
            return self._skip_stale(values, stored_version)

        if values["customer_id"]:
            # Re-assert inside the transaction so the FK resolves at commit.
            ensure_exists(session, Customer, customer_stub(values["customer_id"]), attempts=self.ensure_attempts)

        now = utcnow()
        session.execute(booking_upsert(session, dict(values, first_seen_at=now, last_synced_at=now)))
        booking_id, stored_version = session.execute(
            select(Booking.id, Booking.version).where(*key)
        ).one()
        # A newer version inserted concurrently makes the conflict update a no-op.
        if widen(stored_version) > widen(values["version"]):
            return self._skip_stale(values, stored_version)

        self._capture(session, booking_id, values["version"], payload.raw)
        self._replace_segments(session, booking_id, payload.segments)

        logger.debug(
            "Upserted booking",
            external_id=values["external_id"],
            version=values["version"],
            segments=len(payload.segments),
        )
        return UpsertOutcome.UPSERTED

    def _skip_stale(self, values: Dict[str, Any], stored_version: str) -> UpsertOutcome:
        logger.info(
            "Stored booking is newer, skipping",
            external_id=values["external_id"],
            stored_version=stored_version,
            incoming_version=values["version"],
        )
        return UpsertOutcome.SKIPPED

    def _capture(self, session: Session, booking_id: int, version: str, raw: Dict[str, Any]) -> None:
        stmt = dialect_insert(session, BookingSnapshot).values(
            booking_id=booking_id,
            version=version,
            payload=json.dumps(stringify_wide_integers(raw), sort_keys=True),
            captured_at=utcnow(),
        ).on_conflict_do_nothing(index_elements=["booking_id", "version"])
        session.execute(stmt)

    def _replace_segments(self, session: Session, booking_id: int, segments: List[Dict[str, Any]]) -> None:
        session.execute(delete(BookingSegment).where(BookingSegment.booking_id == booking_id))
        if not segments:
            return
        for segment in segments:
            self._ensure_service_variation(session, segment)
        session.execute(
            insert(BookingSegment),
            [dict(segment, booking_id=booking_id) for segment in segments],
        )
