"""
Run-scoped value types shared by the fetcher, orchestrator and verifier.

Nothing here touches the database; see bookingsync.database for tables.
"""

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .normalize import format_timestamp, utcnow


@dataclass(frozen=True)
class FilterWindow:
    """Half-open scheduled-time window [start_at_min, start_at_max), naive UTC."""

    start_at_min: datetime
    start_at_max: datetime

    def __post_init__(self):
        if self.start_at_min >= self.start_at_max:
            raise ValueError(
                f"Empty window: {self.start_at_min.isoformat()} >= {self.start_at_max.isoformat()}"
            )

    def contains(self, moment: Optional[datetime]) -> bool:
        if moment is None:
            return False
        return self.start_at_min <= moment < self.start_at_max

    @property
    def span(self) -> timedelta:
        return self.start_at_max - self.start_at_min

    def as_params(self) -> Dict[str, str]:
        return {
            "start_at_min": format_timestamp(self.start_at_min),
            "start_at_max": format_timestamp(self.start_at_max),
        }

    @property
    def label(self) -> str:
        return f"{self.start_at_min:%Y-%m-%d} .. {self.start_at_max:%Y-%m-%d}"


@dataclass
class Page:
    """One page of upstream results after client-side filtering."""

    items: List[Dict[str, Any]]
    next_cursor: Optional[str]
    soft_errors: List[Dict[str, Any]] = field(default_factory=list)
    retries: int = 0
    dropped: int = 0  # removed by the client-side window filter
    failed: bool = False  # an error was swallowed; pagination stopped early


@dataclass(frozen=True)
class CursorStep:
    page: int
    cursor_in: Optional[str]
    cursor_out: Optional[str]
    item_count: int
    recorded_at: datetime


class CursorTrail:
    """Append-only audit of page transitions for one run."""

    def __init__(self):
        self._steps: List[CursorStep] = []

    def record(self, cursor_in: Optional[str], cursor_out: Optional[str], item_count: int) -> CursorStep:
        step = CursorStep(
            page=len(self._steps) + 1,
            cursor_in=cursor_in,
            cursor_out=cursor_out,
            item_count=item_count,
            recorded_at=utcnow(),
        )
        self._steps.append(step)
        return step

    @property
    def steps(self) -> Tuple[CursorStep, ...]:
        return tuple(self._steps)

    @property
    def last(self) -> Optional[CursorStep]:
        return self._steps[-1] if self._steps else None

    def ends_at_null(self) -> bool:
        """True only if the last recorded page reported no further cursor."""
        return bool(self._steps) and self._steps[-1].cursor_out is None

    def __len__(self) -> int:
        return len(self._steps)

    def __iter__(self) -> Iterator[CursorStep]:
        return iter(self._steps)


@dataclass(frozen=True)
class RunStatistics:
    """
    Counters for one run (or one page). Immutable: build a fresh instance
    per page and merge it into the running total.
    """

    fetched: int = 0
    upserted: int = 0
    skipped: int = 0
    errors: int = 0
    retries: int = 0
    pages: int = 0

    def merge(self, other: "RunStatistics") -> "RunStatistics":
        return RunStatistics(**{
            f.name: getattr(self, f.name) + getattr(other, f.name) for f in fields(self)
        })

    __add__ = merge

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class Observation:
    """What the run saw upstream: item count and scheduled-time extremes."""

    count: int = 0
    earliest: Optional[datetime] = None
    latest: Optional[datetime] = None

    def observe(self, start_at: Optional[datetime]) -> None:
        self.count += 1
        if start_at is None:
            return
        if self.earliest is None or start_at < self.earliest:
            self.earliest = start_at
        if self.latest is None or start_at > self.latest:
            self.latest = start_at


class UpsertOutcome(str, Enum):
    UPSERTED = "upserted"
    SKIPPED = "skipped"
    FAILED = "failed"

    def __bool__(self) -> bool:
        return self is not UpsertOutcome.FAILED


@dataclass(frozen=True)
class GapSample:
    """Advisory: adjacent stored start times further apart than `threshold`."""

    sampled: int
    threshold: timedelta
    gaps: Tuple[Tuple[datetime, datetime], ...] = ()

    @property
    def gap_count(self) -> int:
        return len(self.gaps)


@dataclass(frozen=True)
class VerificationReport:
    count_match: bool
    temporal_match: bool
    pagination_complete: bool
    gap_sample: GapSample
    upstream_count: int
    stored_count: int
    upstream_earliest: Optional[datetime]
    upstream_latest: Optional[datetime]
    stored_earliest: Optional[datetime]
    stored_latest: Optional[datetime]
    pages_audited: int

    @property
    def passed(self) -> bool:
        # Gap sampling never fails a run.
        return self.count_match and self.temporal_match and self.pagination_complete
