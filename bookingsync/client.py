"""
HTTP client for the upstream commerce API (Square-style v2 endpoints).

Every call either returns the decoded JSON body or raises one of the
bookingsync.exceptions.UpstreamError subclasses, so callers can decide
what is retryable without looking at HTTP details.
"""

from typing import Any, Dict, List, Optional

import requests

from .exceptions import (
    AuthError,
    InvalidFilterError,
    NotFoundError,
    RateLimitedError,
    UpstreamConnectionError,
    UpstreamError,
    UpstreamServerError,
)
from .logger import get_logger

logger = get_logger()

RATE_LIMIT_CODES = {"RATE_LIMITED", "RATE_LIMIT_ERROR"}


def _error_details(errors: List[Dict[str, Any]]) -> str:
    parts = []
    for err in errors:
        code = err.get("code") or err.get("category") or "ERROR"
        detail = err.get("detail") or err.get("message") or ""
        field = err.get("field")
        text = f"{code}: {detail}" if detail else code
        if field:
            text += f" (field={field})"
        parts.append(text)
    return "; ".join(parts)


def error_from_response(status_code: int, body: Dict[str, Any]) -> UpstreamError:
    """Map an error response onto the exception taxonomy."""
    errors = (body.get("errors") or []) if isinstance(body, dict) else []
    codes = {err.get("code") for err in errors}
    details = _error_details(errors) or None
    kwargs = {"details": details, "status_code": status_code, "errors": errors}

    if status_code == 429 or codes & RATE_LIMIT_CODES:
        return RateLimitedError("Rate limited by upstream", **kwargs)
    if status_code in (401, 403):
        return AuthError("Authentication failed. Check the access token", **kwargs)
    if status_code == 404:
        return NotFoundError("Not found upstream", **kwargs)
    if 500 <= status_code < 600:
        return UpstreamServerError(f"Upstream server error {status_code}", **kwargs)
    if status_code == 400 and any("location" in (err.get("field") or "") for err in errors):
        return InvalidFilterError("Upstream rejected the location filter", **kwargs)
    return UpstreamError(f"Upstream request failed ({status_code})", **kwargs)


class UpstreamClient:
    """Thin wrapper over a requests.Session with auth and error mapping."""

    def __init__(
        self,
        access_token: str,
        base_url: str = "https://connect.squareup.com",
        api_version: Optional[str] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        if not access_token:
            raise ValueError("An access token is required")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        })
        if api_version:
            self.session.headers["Square-Version"] = api_version

    @classmethod
    def from_settings(cls, settings, session: Optional[requests.Session] = None) -> "UpstreamClient":
        return cls(
            access_token=settings.access_token,
            base_url=settings.base_url,
            api_version=settings.api_version,
            timeout=settings.request_timeout,
            session=session,
        )

    def _request(self, path: str, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        logger.record_api_call(endpoint)
        try:
            resp = self.session.get(url, params=params, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise UpstreamConnectionError("Upstream request timed out", details=str(e))
        except requests.exceptions.ConnectionError as e:
            raise UpstreamConnectionError("Upstream connection failed", details=str(e))
        except requests.exceptions.RequestException as e:
            raise UpstreamError("Upstream request error", details=str(e))

        try:
            body = resp.json() if resp.content else {}
        except ValueError:
            if resp.ok:
                raise UpstreamError(
                    "Upstream returned a non-JSON body",
                    details=resp.text[:200],
                    status_code=resp.status_code,
                )
            body = {}

        if not resp.ok:
            raise error_from_response(resp.status_code, body)
        if not isinstance(body, dict):
            raise UpstreamError("Upstream returned an unexpected body", status_code=resp.status_code)
        return body

    def list_bookings(
        self,
        limit: int = 100,
        cursor: Optional[str] = None,
        customer_id: Optional[str] = None,
        location_id: Optional[str] = None,
        start_at_min: Optional[str] = None,
        start_at_max: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        One page of GET /v2/bookings.

        Returns the raw body: {"bookings": [...], "cursor": ..., "errors": [...]}.
        """
        params = {
            "limit": limit,
            "cursor": cursor,
            "customer_id": customer_id,
            "location_id": location_id,
            "start_at_min": start_at_min,
            "start_at_max": start_at_max,
        }
        return self._request(
            "/v2/bookings",
            endpoint="list_bookings",
            params={k: v for k, v in params.items() if v is not None},
        )

    def retrieve_booking(self, booking_id: str) -> Dict[str, Any]:
        body = self._request(f"/v2/bookings/{booking_id}", endpoint="retrieve_booking")
        booking = body.get("booking")
        if not booking:
            raise NotFoundError("Booking missing from response", details=booking_id, status_code=200)
        return booking

    def retrieve_customer(self, customer_id: str) -> Dict[str, Any]:
        body = self._request(f"/v2/customers/{customer_id}", endpoint="retrieve_customer")
        customer = body.get("customer")
        if not customer:
            raise NotFoundError("Customer missing from response", details=customer_id, status_code=200)
        return customer

    def list_locations(self) -> List[Dict[str, Any]]:
        body = self._request("/v2/locations", endpoint="list_locations")
        return body.get("locations") or []
