"""Shared utility functions used by services and blueprints.

parse_date:    lenient date parsing (returns None on bad input)
parse_month:   strict ``YYYY-MM`` parsing into a UTC [start, end) window
month_key:     datetime → ``YYYY-MM``
as_utc:        attach UTC to naive datetimes read back from SQLite
fmt_number:    compact number rendering for audit formula strings
"""
import logging
import math
import re
from datetime import date, datetime, timezone

from app.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value):
    """Return *value* as an aware UTC datetime.

    SQLite drops tzinfo on ``DateTime(timezone=True)`` columns, so values
    read back are naive even though they were written as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD.MM.YYYY
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except (ValueError, TypeError):
        return None


def parse_month(value) -> tuple[str, datetime, datetime]:
    """Validate a ``YYYY-MM`` month and return ``(month, start, end)``.

    ``start`` is inclusive and ``end`` exclusive, both aware UTC datetimes.

    Raises:
        ValidationError: on a missing or malformed month.
    """
    match = _MONTH_RE.match(str(value or "").strip())
    if not match:
        raise ValidationError("month must be in YYYY-MM format", details={"month": value})
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise ValidationError("month must be between 01 and 12", details={"month": value})
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    end = datetime(year + 1, 1, 1, tzinfo=timezone.utc) if month == 12 \
        else datetime(year, month + 1, 1, tzinfo=timezone.utc)
    return f"{year:04d}-{month:02d}", start, end


def month_key(value: datetime | None = None) -> str:
    value = as_utc(value) if value is not None else utcnow()
    return value.strftime("%Y-%m")


def fmt_number(value) -> str:
    """Render a number for formula text: ``0.1200`` → ``0.12``, ``10000.0`` → ``10000``."""
    if value is None:
        return "0"
    text = f"{float(value):.4f}".rstrip("0").rstrip(".")
    return text if text not in ("", "-0") else "0"


def to_float(value, field: str, *, default=None) -> float | None:
    """Coerce request input to a finite float, raising ValidationError on garbage."""
    if value is None or value == "":
        return default
    try:
        result = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number", details={field: value})
    if not math.isfinite(result):
        raise ValidationError(f"{field} must be a finite number", details={field: str(value)})
    return result
