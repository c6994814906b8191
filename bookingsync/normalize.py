"""
Field normalization for upstream booking payloads.

Upstream SDKs hand back the same logical field under snake_case or
camelCase keys. ALIASES lists, per logical field, the keys to try in order;
`resolve` returns the first one present and not None.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Sequence

ALIASES: Dict[str, Sequence[str]] = {
    "id": ("id",),
    "version": ("version",),
    "status": ("status",),
    "source": ("source",),
    "customer_id": ("customer_id", "customerId"),
    "location_id": ("location_id", "locationId"),
    "location_type": ("location_type", "locationType"),
    "start_at": ("start_at", "startAt"),
    "created_at": ("created_at", "createdAt"),
    "updated_at": ("updated_at", "updatedAt"),
    "all_day": ("all_day", "allDay"),
    "transition_time_minutes": ("transition_time_minutes", "transitionTimeMinutes"),
    "address": ("address",),
    "creator_details": ("creator_details", "creatorDetails"),
    "creator_type": ("creator_type", "creatorType"),
    "team_member_id": ("team_member_id", "teamMemberId"),
    "segments": ("appointment_segments", "appointmentSegments"),
    "service_variation_id": ("service_variation_id", "serviceVariationId"),
    "service_variation_version": ("service_variation_version", "serviceVariationVersion"),
    "duration_minutes": ("duration_minutes", "durationMinutes"),
    "intermission_minutes": ("intermission_minutes", "intermissionMinutes"),
    "any_team_member": ("any_team_member", "anyTeamMember"),
    "address_line_1": ("address_line_1", "addressLine1"),
    "locality": ("locality",),
    "administrative_district_level_1": (
        "administrative_district_level_1",
        "administrativeDistrictLevel1",
    ),
    "postal_code": ("postal_code", "postalCode"),
    "given_name": ("given_name", "givenName"),
    "family_name": ("family_name", "familyName"),
    "email_address": ("email_address", "emailAddress"),
    "phone_number": ("phone_number", "phoneNumber"),
    "name": ("name",),
}

# Fields that may exceed 2**53 and must never pass through a float.
WIDE_INTEGER_FIELDS = ("version", "service_variation_version")


def resolve(payload: Optional[Mapping[str, Any]], field: str, default: Any = None) -> Any:
    """Return the first non-None value among the aliases of `field`."""
    if not payload:
        return default
    for key in ALIASES.get(field, (field,)):
        value = payload.get(key)
        if value is not None:
            return value
    return default


def utcnow() -> datetime:
    """Current time as a naive UTC datetime, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an RFC 3339 timestamp into a naive UTC datetime.

    Returns None for None/empty input; raises ValueError for anything else
    that is not a timestamp.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Not a timestamp: {value!r}")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Render a naive-UTC (or aware) datetime as RFC 3339 with a Z suffix."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime("%Y-%m-%dT%H:%M:%S") + "Z"


def as_decimal_string(value: Any) -> Optional[str]:
    """
    Carry a possibly-wide integer as a canonical decimal string.

    Accepts int or digit strings; rejects floats, which may already have
    lost precision.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"Not an integer: {value!r}")
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        text = value.strip()
        negative = text.startswith("-")
        digits = text[1:] if text[:1] in ("+", "-") else text
        if digits.isascii() and digits.isdigit():
            digits = digits.lstrip("0") or "0"
            return f"-{digits}" if negative and digits != "0" else digits
    raise ValueError(f"Not an integer: {value!r}")


def widen(decimal_string: Optional[str]) -> Optional[int]:
    """Decimal string -> int, for comparisons and arithmetic only."""
    if decimal_string is None:
        return None
    return int(decimal_string)


def stringify_wide_integers(payload: Any) -> Any:
    """
    Deep copy of a payload with WIDE_INTEGER_FIELDS rendered as decimal strings,
    suitable for the immutable raw capture.
    """
    if isinstance(payload, dict):
        result = {}
        for key, value in payload.items():
            if key in _WIDE_KEYS and isinstance(value, int) and not isinstance(value, bool):
                result[key] = str(value)
            else:
                result[key] = stringify_wide_integers(value)
        return result
    if isinstance(payload, list):
        return [stringify_wide_integers(v) for v in payload]
    return payload


_WIDE_KEYS = frozenset(key for field in WIDE_INTEGER_FIELDS for key in ALIASES[field])
