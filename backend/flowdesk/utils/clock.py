"""Time helpers."""

from __future__ import annotations

from datetime import UTC, datetime

from ..errors import ValidationError


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime, the form stored in the database."""

    return datetime.now(UTC).replace(tzinfo=None)


def isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat() + "Z"


def parse_datetime(value: str | None, *, name: str = "date") -> datetime | None:
    """Parse an ISO-8601 string into a naive UTC datetime; empty values give ``None``."""

    if value is None or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValidationError(f"{name} must be an ISO-8601 date or datetime") from exc
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(UTC).replace(tzinfo=None)
    return parsed
