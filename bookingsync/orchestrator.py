"""
Run loop: fetch a page, upsert its items in order, advance the cursor.

One orchestrator instance drives one partition (organization, location,
optional customer). Each call to run() starts a fresh cursor trail and
observation; both survive an aborted run so callers can still inspect them.
"""

import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import sessionmaker

from .database import latest_updated_at
from .exceptions import FATAL_ERRORS
from .fetcher import PageFetcher
from .logger import get_logger
from .models import CursorTrail, FilterWindow, Observation, RunStatistics, UpsertOutcome
from .normalize import parse_timestamp, resolve
from .retry import ExhaustedRetriesError
from .upserter import RecordUpserter
from .verifier import CompletenessVerifier

logger = get_logger()

ProgressCallback = Callable[[int, int, int, Optional[str]], None]


def _timestamp(item: Any, field: str) -> Optional[datetime]:
    if not isinstance(item, dict):
        return None
    try:
        return parse_timestamp(resolve(item, field))
    except (ValueError, TypeError):
        return None


class BackfillOrchestrator:
    """Drives PageFetcher and RecordUpserter over one window."""

    def __init__(
        self,
        fetcher: PageFetcher,
        upserter: RecordUpserter,
        sessions: sessionmaker,
        organization_id: str,
        page_delay: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.fetcher = fetcher
        self.upserter = upserter
        self.sessions = sessions
        self.organization_id = organization_id
        self.page_delay = page_delay
        self.sleep = sleep

        self.trail = CursorTrail()
        self.observation = Observation()
        self.window: Optional[FilterWindow] = None
        self.last_stats = RunStatistics()

    def derive_lower_bound(self) -> Optional[datetime]:
        """Newest upstream updated_at already stored for this partition."""
        with self.sessions() as session:
            return latest_updated_at(
                session,
                self.organization_id,
                location_id=self.fetcher.location_id,
                customer_id=self.fetcher.customer_id,
            )

    def run(
        self,
        window: FilterWindow,
        incremental: bool = False,
        lower_bound: Optional[datetime] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> RunStatistics:
        """
        Drain every page of `window`.

        Raises:
            ValueError: no window given
            AuthError, InvalidFilterError, ExhaustedRetriesError: the run aborts
        """
        if window is None:
            raise ValueError("A scheduled-time window is required for every run")

        self.window = window
        self.trail = CursorTrail()
        self.observation = Observation()
        self.last_stats = RunStatistics()

        if incremental and lower_bound is None:
            lower_bound = self.derive_lower_bound()
            if lower_bound is None:
                logger.info("Nothing stored for partition, falling back to full run")
        if not incremental:
            lower_bound = None

        mode = "incremental" if lower_bound is not None else "full"
        logger.info(
            "Starting run",
            mode=mode,
            window=window.label,
            location_id=self.fetcher.location_id,
            customer_id=self.fetcher.customer_id,
            lower_bound=lower_bound,
        )

        stats = RunStatistics()
        cursor = None
        while True:
            try:
                page = self.fetcher.fetch_page(cursor, window, self.trail)
            except (ExhaustedRetriesError,) + FATAL_ERRORS as e:
                self.last_stats = stats
                logger.error(
                    "Run aborted",
                    error_type=type(e).__name__,
                    error=str(e),
                    pages=stats.pages,
                    fetched=stats.fetched,
                )
                raise

            page_stats = self._process_page(page.items, lower_bound)
            stats = stats + page_stats + RunStatistics(
                retries=page.retries,
                errors=1 if page.failed else 0,
                pages=1,
            )
            self.last_stats = stats
            cursor = page.next_cursor

            logger.debug(
                "Processed page",
                page=stats.pages,
                items=len(page.items),
                upserted=page_stats.upserted,
                cursor=cursor,
            )
            if on_progress is not None:
                on_progress(stats.pages, stats.fetched, stats.upserted, cursor)

            if cursor is None:
                break
            if self.page_delay > 0:
                self.sleep(self.page_delay)

        logger.info("Run complete", mode=mode, window=window.label, **stats.as_dict())
        return stats

    def _process_page(self, items, lower_bound: Optional[datetime]) -> RunStatistics:
        counts: Dict[str, int] = {"upserted": 0, "skipped": 0, "errors": 0}
        for item in items:
            self.observation.observe(_timestamp(item, "start_at"))

            if lower_bound is not None:
                updated_at = _timestamp(item, "updated_at")
                if updated_at is not None and updated_at < lower_bound:
                    counts["skipped"] += 1
                    continue

            outcome = self.upserter.upsert(item)
            if outcome is UpsertOutcome.UPSERTED:
                counts["upserted"] += 1
            elif outcome is UpsertOutcome.SKIPPED:
                counts["skipped"] += 1
            else:
                counts["errors"] += 1

        return RunStatistics(fetched=len(items), **counts)

    def verifier(self, **kwargs) -> CompletenessVerifier:
        """CompletenessVerifier over what the last run observed."""
        return CompletenessVerifier(
            self.sessions,
            organization_id=self.organization_id,
            location_id=self.fetcher.location_id,
            customer_id=self.fetcher.customer_id,
            window=self.window,
            observation=self.observation,
            trail=self.trail,
            **kwargs,
        )
