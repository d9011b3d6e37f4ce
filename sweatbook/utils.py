"""Utility helpers for SweatBook."""

from __future__ import annotations

import re
from datetime import UTC, datetime
from decimal import ROUND_HALF_EVEN, Decimal

_email_pattern = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

SECONDS_PER_DAY = 60 * 60 * 24


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    """Normalize aware datetimes to naive UTC; naive values are assumed UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def normalize_email(value: str | None) -> str:
    return (value or "").strip().lower()


def is_valid_email(value: str | None) -> bool:
    return bool(_email_pattern.match(normalize_email(value)))


def round_minor_units(value: Decimal) -> int:
    """Round a Decimal amount to whole minor units using banker's rounding."""
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_EVEN))


def days_between(start: datetime, end: datetime) -> float:
    """Return fractional days from ``start`` to ``end`` (negative if end is earlier)."""
    return (to_naive_utc(end) - to_naive_utc(start)).total_seconds() / SECONDS_PER_DAY
