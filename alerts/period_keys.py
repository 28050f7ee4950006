"""Calendar bucket keys for periodic quota resets and counters."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional, Union

PERIODIC_RESET_PERIODS = ("daily", "weekly", "monthly")

DateLike = Union[datetime, date]


def _as_utc_date(value: Optional[DateLike]) -> date:
    if value is None:
        return datetime.now(timezone.utc).date()
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.date()
        return value.astimezone(timezone.utc).date()
    return value


def is_periodic(period_type: Optional[str]) -> bool:
    return period_type in PERIODIC_RESET_PERIODS


def get_period_key(period_type: Optional[str], when: Optional[DateLike] = None) -> Optional[str]:
    """Return the bucket key of ``when`` for ``period_type`` or ``None``.

    Buckets follow the UTC calendar: ``daily:2025-06-15``,
    ``monthly:2025-06`` and ISO-8601 weeks (``weekly:2025-W25``, the week
    belongs to the year holding its Thursday). Naive datetimes are read as
    UTC. ``never`` and unknown period types have no bucket.
    """

    if not is_periodic(period_type):
        return None
    day = _as_utc_date(when)
    if period_type == "daily":
        return f"daily:{day.isoformat()}"
    if period_type == "monthly":
        return f"monthly:{day.year:04d}-{day.month:02d}"
    iso_year, iso_week, _ = day.isocalendar()
    return f"weekly:{iso_year}-W{iso_week}"


__all__ = ["PERIODIC_RESET_PERIODS", "get_period_key", "is_periodic"]
