"""Utility functions shared by the engine components.

Provides date parsing and normalization (all timestamps are timezone-aware
UTC) and the placeholder-validated template formatting used to render
notification titles and messages."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from string import Formatter
from typing import Any

from .exceptions import ValidationError

# Template formatter for extracting field names from format strings
_FORMATTER = Formatter()


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_day(day: date) -> datetime:
    """Midnight UTC at the start of ``day``."""
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def parse_date(value: Any, field_name: str = "date") -> date:
    """Parse an ISO date (YYYY-MM-DD), date, or datetime into a date.

    Parameters
    ----------
    value : Any
        ``date``, ``datetime`` or ISO 8601 string.
    field_name : str
        Name used in the error message.

    Returns
    -------
    date
        Calendar date.

    Raises
    ------
    ValidationError
        If value is missing or not a recognizable date.
    """
    if isinstance(value, datetime):
        return as_utc(value).date()
    if isinstance(value, date):
        return value
    if value is None or str(value).strip() == "":
        raise ValidationError(f"{field_name} is required")
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        raise ValidationError(
            f"Invalid {field_name}: {value}. Expected YYYY-MM-DD."
        ) from None


def parse_datetime(value: Any, field_name: str = "timestamp") -> datetime:
    """Parse an ISO 8601 timestamp (or date) into an aware UTC datetime.

    Raises
    ------
    ValidationError
        If value is missing or unparseable.
    """
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return start_of_day(value)
    if value is None or str(value).strip() == "":
        raise ValidationError(f"{field_name} is required")
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError:
        raise ValidationError(f"Invalid {field_name}: {value}") from None


def days_between(start: date, end: date) -> int:
    """Signed whole days from ``start`` to ``end``."""
    return (end - start).days


def add_days(day: date, days: int) -> date:
    return day + timedelta(days=days)


def string_or_empty(value: Any) -> str:
    """Safely convert value to string, returning empty string for None."""
    if value is None:
        return ""
    return str(value).strip()


def extract_template_fields(template: str) -> set[str]:
    """Extract placeholder names from a format string template.

    Examples
    --------
    >>> extract_template_fields("{child_name}: {vaccine_name}")
    {'child_name', 'vaccine_name'}
    """
    try:
        return {
            field_name
            for _, field_name, _, _ in _FORMATTER.parse(template)
            if field_name
        }
    except ValueError as exc:
        raise ValueError(f"Invalid template format: {exc}") from exc


def validate_and_format_template(
    template: str,
    context: dict[str, str],
    allowed_fields: set[str] | None = None,
) -> str:
    """Format template and validate placeholders against allowed set.

    Parameters
    ----------
    template : str
        Format string template with placeholders.
    context : dict[str, str]
        Placeholder values.
    allowed_fields : set[str] | None
        Whitelist of placeholder names. If None, any placeholder present in
        context is allowed.

    Returns
    -------
    str
        Rendered template.

    Raises
    ------
    KeyError
        If template contains placeholders not in context.
    ValueError
        If template contains disallowed placeholders.
    """
    placeholders = extract_template_fields(template)

    unknown_fields = placeholders - context.keys()
    if unknown_fields:
        raise KeyError(
            f"Unknown placeholder(s) {sorted(unknown_fields)} in template. "
            f"Available: {sorted(context.keys())}"
        )

    if allowed_fields is not None:
        disallowed = placeholders - allowed_fields
        if disallowed:
            raise ValueError(
                f"Disallowed placeholder(s) {sorted(disallowed)} in template. "
                f"Allowed: {sorted(allowed_fields)}"
            )

    return template.format(**context)
