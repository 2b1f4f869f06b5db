"""
Calendar bucket keys for rollups and vector metadata.

All keys are derived in UTC. The worker tags message vectors with these keys
and the rollup service selects buckets with them, so both sides must go
through this module.
"""

from datetime import UTC, date, datetime


def _utc(epoch_seconds: float) -> datetime:
    return datetime.fromtimestamp(epoch_seconds, UTC)


def _parse_day_key(day_key: str) -> date:
    return date.fromisoformat(day_key)


def _iso_week(d: date) -> str:
    iso_year, iso_week, _ = d.isocalendar()
    return f"{iso_year}-W{iso_week:02d}"


def day_key(epoch_seconds: float) -> str:
    """YYYY-MM-DD"""
    return _utc(epoch_seconds).strftime("%Y-%m-%d")


def week_key(epoch_seconds: float) -> str:
    """
    ISO-8601 week, YYYY-Www.

    Weeks start on Monday and week 1 is the week holding the year's first
    Thursday, so early January days can belong to the previous ISO year and
    late December days to the next one.
    """
    return _iso_week(_utc(epoch_seconds).date())


def month_key(epoch_seconds: float) -> str:
    """YYYY-MM"""
    return _utc(epoch_seconds).strftime("%Y-%m")


def week_key_from_day_key(day_key_value: str) -> str:
    return _iso_week(_parse_day_key(day_key_value))


def month_key_from_day_key(day_key_value: str) -> str:
    return day_key_value[:7]


def epoch_from_day_key(day_key_value: str) -> int:
    """Epoch seconds of midnight UTC for the given day key."""
    d = _parse_day_key(day_key_value)
    return int(datetime(d.year, d.month, d.day, tzinfo=UTC).timestamp())
