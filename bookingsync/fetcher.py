"""
Page fetching with backoff for the upstream bookings list.

Retryable upstream conditions (rate limits, 5xx, dropped connections) are
absorbed here with exponential backoff. Auth and location-filter errors and
exhausted retries propagate. Any other upstream error ends pagination
quietly: the page comes back empty with no cursor and the failure in
`soft_errors`, and nothing is recorded in the cursor trail, so the
verifier's pagination audit will flag the run.
"""

import time
from typing import Any, Callable, Dict, Optional

from .client import UpstreamClient
from .exceptions import FATAL_ERRORS, RETRYABLE_ERRORS, UpstreamError
from .logger import get_logger
from .models import CursorTrail, FilterWindow, Page
from .normalize import parse_timestamp, resolve
from .retry import ExhaustedRetriesError, retry_call

logger = get_logger()


def _in_window(item: Any, window: FilterWindow) -> bool:
    """Upstream filtering is not fully trusted; re-check start_at locally.

    Items whose start time cannot be read are kept so the upserter can
    reject and count them.
    """
    if not isinstance(item, dict):
        return True
    try:
        start_at = parse_timestamp(resolve(item, "start_at"))
    except (ValueError, TypeError):
        return True
    if start_at is None:
        return True
    return window.contains(start_at)


class PageFetcher:
    """Fetches one page of bookings for a fixed location/customer partition."""

    def __init__(
        self,
        client: UpstreamClient,
        location_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        limit: int = 100,
        max_retries: int = 5,
        initial_delay: float = 1.0,
        max_delay: float = 60.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.location_id = location_id
        self.customer_id = customer_id
        self.limit = limit
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.sleep = sleep

    @classmethod
    def from_settings(cls, client: UpstreamClient, settings, customer_id: Optional[str] = None,
                      sleep: Callable[[float], None] = time.sleep) -> "PageFetcher":
        return cls(
            client,
            location_id=settings.location_id,
            customer_id=customer_id,
            limit=settings.page_limit,
            max_retries=settings.max_retries,
            initial_delay=settings.initial_retry_delay,
            max_delay=settings.max_retry_delay,
            sleep=sleep,
        )

    def _list(self, cursor: Optional[str], window: FilterWindow) -> Dict[str, Any]:
        return self.client.list_bookings(
            limit=self.limit,
            cursor=cursor,
            customer_id=self.customer_id,
            location_id=self.location_id,
            **window.as_params(),
        )

    def fetch_page(
        self,
        cursor: Optional[str],
        window: FilterWindow,
        trail: Optional[CursorTrail] = None,
    ) -> Page:
        """
        Fetch the page after `cursor` (None for the first page).

        Raises:
            AuthError, InvalidFilterError: fatal, never retried
            ExhaustedRetriesError: retryable failures outlasted max_retries
        """
        if window is None:
            raise ValueError("fetch_page requires an explicit scheduled-time window")

        retries = 0

        def on_retry(attempt: int, error: BaseException, delay: float):
            nonlocal retries
            retries += 1
            reason = type(error).__name__
            logger.record_retry(reason)
            logger.warning(
                "Retrying bookings page",
                reason=reason,
                status=getattr(error, "status_code", None),
                attempt=attempt,
                max_retries=self.max_retries,
                delay=delay,
            )

        try:
            body = retry_call(
                self._list,
                cursor,
                window,
                max_retries=self.max_retries,
                base_delay=self.initial_delay,
                max_delay=self.max_delay,
                exceptions=RETRYABLE_ERRORS,
                on_retry=on_retry,
                sleep=self.sleep,
            )
        except ExhaustedRetriesError as e:
            logger.record_error(type(e).__name__)
            logger.error("Bookings page failed after retries", cursor=cursor, error=str(e.last_error))
            raise
        except FATAL_ERRORS as e:
            logger.record_error(type(e).__name__)
            logger.error("Fatal upstream error", cursor=cursor, status=e.status_code, error=str(e))
            raise
        except UpstreamError as e:
            logger.record_error(type(e).__name__)
            logger.error(
                "Bookings page failed, stopping pagination early",
                cursor=cursor,
                status=e.status_code,
                error=str(e),
            )
            return Page(
                items=[],
                next_cursor=None,
                soft_errors=e.errors or [{"code": type(e).__name__, "detail": str(e)}],
                retries=retries,
                failed=True,
            )

        items = body.get("bookings") or []
        next_cursor = body.get("cursor") or None
        soft_errors = body.get("errors") or []
        if soft_errors:
            logger.warning("Upstream reported errors alongside the page", cursor=cursor, errors=soft_errors)

        kept = [item for item in items if _in_window(item, window)]
        dropped = len(items) - len(kept)
        if dropped:
            logger.info(
                "Dropped bookings outside the requested window",
                dropped=dropped,
                kept=len(kept),
                window=window.label,
            )

        if trail is not None:
            trail.record(cursor, next_cursor, len(kept))

        return Page(
            items=kept,
            next_cursor=next_cursor,
            soft_errors=soft_errors,
            retries=retries,
            dropped=dropped,
        )
