from typing import Any, Dict, List

from .normalize import as_decimal_string, parse_timestamp, resolve

REQUIRED_TIMESTAMP_FIELDS = ["start_at"]
OPTIONAL_TIMESTAMP_FIELDS = ["created_at", "updated_at"]
OPTIONAL_STR_FIELDS = [
    "customer_id",
    "location_id",
    "location_type",
    "source",
    "status",
]
SEGMENT_INT_FIELDS = ["duration_minutes", "intermission_minutes"]


def _is_non_empty_str(v: Any) -> bool:
    return isinstance(v, str) and v.strip() != ""


def _valid_timestamp(v: Any) -> bool:
    try:
        return parse_timestamp(v) is not None
    except (ValueError, TypeError):
        return False


def _valid_wide_int(v: Any) -> bool:
    try:
        as_decimal_string(v)
        return True
    except ValueError:
        return False


def _validate_segment(index: int, segment: Any) -> List[str]:
    if not isinstance(segment, dict):
        return [f"Segment {index} must be an object"]
    errors: List[str] = []
    for f in SEGMENT_INT_FIELDS:
        value = resolve(segment, f)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            errors.append(f"Segment {index} field '{f}' must be a non-negative integer")
    version = resolve(segment, "service_variation_version")
    if version is not None and not _valid_wide_int(version):
        errors.append(f"Segment {index} field 'service_variation_version' must be an integer")
    return errors


def validate_booking(data: Dict[str, Any]) -> List[str]:
    """
    Returns a list of validation error messages. Empty list means valid.
    Only checks what the store needs; unknown upstream fields are ignored.
    """
    if not isinstance(data, dict):
        return ["Booking payload must be an object"]

    errors: List[str] = []

    if "id" not in data:
        errors.append("Missing required field: id")
    elif not _is_non_empty_str(data["id"]):
        errors.append("Field 'id' must be a non-empty string")

    version = resolve(data, "version")
    if version is not None and not _valid_wide_int(version):
        errors.append("Field 'version' must be an integer")

    for f in REQUIRED_TIMESTAMP_FIELDS:
        value = resolve(data, f)
        if value is None:
            errors.append(f"Missing required field: {f}")
        elif not _valid_timestamp(value):
            errors.append(f"Field '{f}' must be an RFC 3339 timestamp")

    for f in OPTIONAL_TIMESTAMP_FIELDS:
        value = resolve(data, f)
        if value is not None and not _valid_timestamp(value):
            errors.append(f"Field '{f}' must be an RFC 3339 timestamp if provided")

    # Optional strings: if present, must be strings
    for f in OPTIONAL_STR_FIELDS:
        value = resolve(data, f)
        if value is not None and not isinstance(value, str):
            errors.append(f"Field '{f}' must be a string if provided")

    segments = resolve(data, "segments")
    if segments is not None:
        if not isinstance(segments, list):
            errors.append("Field 'appointment_segments' must be a list if provided")
        else:
            for i, segment in enumerate(segments):
                errors.extend(_validate_segment(i, segment))

    return errors
