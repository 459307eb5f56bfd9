"""
Shared utility functions used across the service adapters.
"""

import logging
from datetime import date, datetime, timezone
from typing import Any, Optional

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an epoch number or an ISO-8601 string into an aware UTC datetime.
    """
    if value is None or value == "":
        return None

    if isinstance(value, (int, float)):
        if value <= 0:
            return None
        return datetime.fromtimestamp(value, tz=timezone.utc)

    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            logger.debug(f"Unparseable timestamp: {value!r}")
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)

    return None


def parse_date(value: Any) -> Optional[date]:
    """
    Parse a 'YYYY-MM-DD' (or longer ISO) string into a date.
    Partial dates such as '2017' or '2017-04' fill the missing parts with 1.
    """
    if not value or not isinstance(value, str):
        return None

    parts = value[:10].split("-")
    try:
        numbers = [int(p) for p in parts if p]
    except ValueError:
        return None
    if not numbers or numbers[0] <= 0:
        return None

    numbers += [1] * (3 - len(numbers))
    try:
        return date(*numbers[:3])
    except ValueError:
        return None


def format_date(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def parse_fuzzy_date(value: Any) -> Optional[date]:
    """Parse a {year, month, day} mapping where any part may be null."""
    if not isinstance(value, dict) or not value.get("year"):
        return None
    try:
        return date(value["year"], value.get("month") or 1, value.get("day") or 1)
    except (TypeError, ValueError):
        return None


def to_fuzzy_date(value: Optional[date]) -> dict:
    if value is None:
        return {"year": None, "month": None, "day": None}
    return {"year": value.year, "month": value.month, "day": value.day}


def clamp_score(score: Any) -> int:
    """Coerce a canonical 0-100 score."""
    try:
        return max(0, min(100, int(round(float(score)))))
    except (TypeError, ValueError):
        return 0


def score_to_scale(score: int, scale_max: int) -> int:
    """Convert a canonical 0-100 score to a 0..scale_max integer scale."""
    if score <= 0:
        return 0
    return max(1, int(round(score * scale_max / 100)))


def score_from_scale(value: Any, scale_max: int) -> int:
    """Convert a 0..scale_max score back to the canonical 0-100 scale."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if number <= 0:
        return 0
    return clamp_score(number * 100 / scale_max)


def to_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
