"""
Database schema and connection management.

SQLAlchemy models for bookings and the rows they depend on, plus the
conflict-aware insert helpers the upserter builds on. SQLite and
PostgreSQL are supported.
"""

from pathlib import Path
from typing import Any, Dict, Optional, Union

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker

from .exceptions import DependencyError
from .logger import get_logger
from .normalize import utcnow

Base = declarative_base()
logger = get_logger()

# Wide enough for any decimal-string version counter we have seen upstream.
VERSION_LENGTH = 40


class Customer(Base):
    """Dependency row every booking's customer_id must resolve to."""

    __tablename__ = "customers"

    customer_id = Column(String, primary_key=True)
    given_name = Column(String)
    family_name = Column(String)
    email_address = Column(String)
    phone_number = Column(String)
    is_stub = Column(Boolean, nullable=False, default=False)  # no upstream profile available
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Location(Base):
    __tablename__ = "locations"

    location_id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    address_line_1 = Column(String)
    locality = Column(String)
    administrative_district_level_1 = Column(String)
    postal_code = Column(String)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class ServiceVariation(Base):
    __tablename__ = "service_variations"

    variation_id = Column(String, primary_key=True)
    name = Column(String)
    duration_minutes = Column(Integer)
    is_stub = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Booking(Base):
    """Upstream booking, unique per (organization_id, external_id)."""

    __tablename__ = "bookings"
    __table_args__ = (
        UniqueConstraint("organization_id", "external_id", name="uq_bookings_org_external_id"),
        Index("ix_bookings_partition_start", "organization_id", "location_id", "start_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(String, nullable=False)
    external_id = Column(String, nullable=False)
    version = Column(String(VERSION_LENGTH), nullable=False, default="0")  # decimal string
    customer_id = Column(String, ForeignKey("customers.customer_id"), index=True)
    location_id = Column(String, index=True)
    location_type = Column(String)
    source = Column(String)
    status = Column(String)
    all_day = Column(Boolean, nullable=False, default=False)
    transition_time_minutes = Column(Integer, nullable=False, default=0)
    start_at = Column(DateTime, nullable=False)
    end_at = Column(DateTime)
    creator_type = Column(String)
    creator_customer_id = Column(String)
    creator_team_member_id = Column(String)
    address_line_1 = Column(String)
    locality = Column(String)
    administrative_district_level_1 = Column(String)
    postal_code = Column(String)
    created_at = Column(DateTime, nullable=False)  # upstream creation time
    updated_at = Column(DateTime, nullable=False)  # upstream last update
    first_seen_at = Column(DateTime, nullable=False, default=utcnow)
    last_synced_at = Column(DateTime, nullable=False, default=utcnow)

    customer = relationship("Customer")
    segments = relationship(
        "BookingSegment",
        order_by="BookingSegment.position",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class BookingSegment(Base):
    """Appointment segment; owned by its booking and replaced wholesale."""

    __tablename__ = "booking_segments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(Integer, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    service_variation_id = Column(String, index=True)
    service_variation_version = Column(String(VERSION_LENGTH))  # decimal string
    team_member_id = Column(String)
    duration_minutes = Column(Integer, nullable=False, default=0)
    intermission_minutes = Column(Integer, nullable=False, default=0)
    any_team_member = Column(Boolean, nullable=False, default=False)


class BookingSnapshot(Base):
    """Immutable raw capture of each booking version as received upstream."""

    __tablename__ = "booking_snapshots"
    __table_args__ = (
        UniqueConstraint("booking_id", "version", name="uq_booking_snapshots_version"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(Integer, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)
    version = Column(String(VERSION_LENGTH), nullable=False)
    payload = Column(Text, nullable=False)  # JSON, wide integers as decimal strings
    captured_at = Column(DateTime, nullable=False, default=utcnow)


def database_url(target: Union[str, Path]) -> str:
    """Accept either a SQLAlchemy URL or a path to a SQLite file."""
    if isinstance(target, Path) or "://" not in str(target):
        return f"sqlite:///{Path(target)}"
    return str(target)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


_engines: Dict[str, Engine] = {}


def get_engine(target: Union[str, Path]) -> Engine:
    """
    Return a shared engine for the given URL or SQLite path.

    SQLite engines enforce foreign keys and wait on locks held by
    concurrent writers instead of failing immediately.
    """
    url = database_url(target)
    engine = _engines.get(url)
    if engine is not None:
        return engine

    if url.startswith("sqlite"):
        db_file = url.split("sqlite:///", 1)[-1]
        if db_file and db_file != ":memory:":
            Path(db_file).parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(url, connect_args={"timeout": 30, "check_same_thread": False})
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    else:
        engine = create_engine(url, pool_pre_ping=True)

    _engines[url] = engine
    return engine


def dispose_engines() -> None:
    """Close every pooled connection (tests and CLI shutdown)."""
    for engine in _engines.values():
        engine.dispose()
    _engines.clear()


def init_database(target: Union[str, Path]) -> Engine:
    """
    Initialize database and create tables.

    Args:
        target: SQLAlchemy URL or path to a SQLite database file
    """
    engine = get_engine(target)
    Base.metadata.create_all(engine)
    return engine


def session_factory(target: Union[str, Path]) -> sessionmaker:
    """Session factory bound to the shared engine for `target`."""
    return sessionmaker(bind=get_engine(target), expire_on_commit=False)


def dialect_insert(session: Session, model):
    """INSERT construct supporting ON CONFLICT for the session's dialect."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model.__table__)
    if dialect == "sqlite":
        return sqlite_insert(model.__table__)
    raise NotImplementedError(f"Conflict-aware inserts are not supported on {dialect}")


def _primary_key_column(model):
    columns = list(model.__table__.primary_key.columns)
    if len(columns) != 1:
        raise ValueError(f"{model.__name__} must have a single-column primary key")
    return columns[0]


def row_exists(session: Session, model, key: Any) -> bool:
    column = _primary_key_column(model)
    return session.execute(select(column).where(column == key)).first() is not None


def ensure_exists(session: Session, model, values: Dict[str, Any], attempts: int = 3) -> bool:
    """
    Make sure the row keyed by `values`' primary key exists.

    One loop covers every path: already there, inserted by us, or inserted
    concurrently by someone else (the conflict is absorbed and re-checked).
    Returns True only if this call inserted the row.

    Raises:
        DependencyError: if the row still does not exist after `attempts`.
    """
    column = _primary_key_column(model)
    key = values[column.name]

    for attempt in range(1, attempts + 1):
        if row_exists(session, model, key):
            return False

        stmt = dialect_insert(session, model).values(**values).on_conflict_do_nothing(
            index_elements=[column.name]
        )
        result = session.execute(stmt)
        if result.rowcount == 1:
            return True

        logger.debug(
            "Concurrent insert detected, re-checking",
            table=model.__tablename__,
            key=key,
            attempt=attempt,
        )

    if row_exists(session, model, key):
        return False
    raise DependencyError(
        f"{model.__tablename__} row could not be ensured",
        details=f"key={key} after {attempts} attempts",
        key=key,
    )


def latest_updated_at(
    session: Session,
    organization_id: str,
    location_id: Optional[str] = None,
    customer_id: Optional[str] = None,
):
    """Max upstream updated_at stored for a partition, or None."""
    stmt = select(func.max(Booking.updated_at)).where(Booking.organization_id == organization_id)
    if location_id:
        stmt = stmt.where(Booking.location_id == location_id)
    if customer_id:
        stmt = stmt.where(Booking.customer_id == customer_id)
    return session.execute(stmt).scalar()
