"""
Post-run completeness checks.

Four independent strategies compare what a run saw upstream with what is
now stored for the same partition and window:

1. count comparison (warning on mismatch, upstream may have changed)
2. temporal coverage of earliest/latest start_at
3. pagination audit: the cursor trail must end on a null cursor
4. gap sampling, advisory only

The report passes when the first three agree.
"""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from .database import Booking
from .logger import get_logger
from .models import CursorTrail, FilterWindow, GapSample, Observation, VerificationReport

logger = get_logger()

DEFAULT_SAMPLE_SIZE = 100
DEFAULT_GAP_THRESHOLD = timedelta(days=1)


def _same_moment(observed: Optional[datetime], stored: Optional[datetime]) -> bool:
    # Either side missing means there is nothing to compare.
    if observed is None or stored is None:
        return True
    return observed == stored


class CompletenessVerifier:
    def __init__(
        self,
        sessions: sessionmaker,
        organization_id: str,
        location_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        window: Optional[FilterWindow] = None,
        observation: Optional[Observation] = None,
        trail: Optional[CursorTrail] = None,
        sample_size: int = DEFAULT_SAMPLE_SIZE,
        gap_threshold: timedelta = DEFAULT_GAP_THRESHOLD,
    ):
        self.sessions = sessions
        self.organization_id = organization_id
        self.location_id = location_id
        self.customer_id = customer_id
        self.window = window
        self.observation = observation or Observation()
        self.trail = trail or CursorTrail()
        self.sample_size = sample_size
        self.gap_threshold = gap_threshold

    def _scoped(self, stmt):
        stmt = stmt.where(Booking.organization_id == self.organization_id)
        if self.location_id:
            stmt = stmt.where(Booking.location_id == self.location_id)
        if self.customer_id:
            stmt = stmt.where(Booking.customer_id == self.customer_id)
        if self.window is not None:
            stmt = stmt.where(
                Booking.start_at >= self.window.start_at_min,
                Booking.start_at < self.window.start_at_max,
            )
        return stmt

    def verify(self) -> VerificationReport:
        with self.sessions() as session:
            stored_count, stored_earliest, stored_latest = session.execute(
                self._scoped(select(
                    func.count(Booking.id),
                    func.min(Booking.start_at),
                    func.max(Booking.start_at),
                ))
            ).one()
            sample = session.execute(
                self._scoped(select(Booking.start_at))
                .order_by(Booking.start_at)
                .limit(self.sample_size)
            ).scalars().all()

        observed = self.observation
        scope = {
            "organization_id": self.organization_id,
            "location_id": self.location_id,
            "customer_id": self.customer_id,
            "window": self.window.label if self.window else None,
        }

        # 1. Count comparison
        count_match = observed.count == stored_count
        if count_match:
            logger.info("Count check passed", count=stored_count, **scope)
        else:
            logger.warning(
                "Count mismatch between upstream and store",
                upstream=observed.count,
                stored=stored_count,
                **scope,
            )

        # 2. Temporal coverage
        temporal_match = (
            _same_moment(observed.earliest, stored_earliest)
            and _same_moment(observed.latest, stored_latest)
        )
        if temporal_match:
            logger.info("Temporal coverage check passed", earliest=stored_earliest, latest=stored_latest)
        else:
            logger.warning(
                "Temporal coverage mismatch",
                upstream_earliest=observed.earliest,
                upstream_latest=observed.latest,
                stored_earliest=stored_earliest,
                stored_latest=stored_latest,
            )

        # 3. Pagination audit
        pagination_complete = self.trail.ends_at_null()
        last = self.trail.last
        if pagination_complete:
            logger.info("Pagination audit passed", pages=len(self.trail))
        else:
            logger.warning(
                "Pagination did not reach the final page",
                pages=len(self.trail),
                last_cursor=last.cursor_out if last else None,
            )

        # 4. Gap sampling
        gaps = tuple(
            (earlier, later)
            for earlier, later in zip(sample, sample[1:])
            if later - earlier > self.gap_threshold
        )
        gap_sample = GapSample(sampled=len(sample), threshold=self.gap_threshold, gaps=gaps)
        if gaps:
            logger.info(
                "Gaps found in stored start times (advisory)",
                sampled=len(sample),
                gaps=len(gaps),
                first_gap=gaps[0],
            )

        report = VerificationReport(
            count_match=count_match,
            temporal_match=temporal_match,
            pagination_complete=pagination_complete,
            gap_sample=gap_sample,
            upstream_count=observed.count,
            stored_count=stored_count,
            upstream_earliest=observed.earliest,
            upstream_latest=observed.latest,
            stored_earliest=stored_earliest,
            stored_latest=stored_latest,
            pages_audited=len(self.trail),
        )
        logger.info("Verification finished", passed=report.passed, **scope)
        return report
