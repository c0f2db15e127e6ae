from __future__ import annotations

from datetime import UTC, datetime, timedelta

SLOT_SECONDS = 15 * 60
SLOTS_PER_HOUR = 4

DAY_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]
DAY_LABELS = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]
ALL_DAYS = [0, 1, 2, 3, 4, 5, 6]


def slot_start(timestamp: float) -> int:
    return int(timestamp // SLOT_SECONDS) * SLOT_SECONDS


def next_slot_start(timestamp: float) -> int:
    return slot_start(timestamp) + SLOT_SECONDS


def _utc(timestamp: float) -> datetime:
    return datetime.fromtimestamp(timestamp, UTC)


def hour_of(timestamp: float) -> int:
    return _utc(timestamp).hour


def sub_slot_of(timestamp: float) -> int:
    return _utc(timestamp).minute // 15


def day_of_week(timestamp: float) -> int:
    # Sunday first, matching DAY_NAMES
    return (_utc(timestamp).weekday() + 1) % 7


def date_of(timestamp: float) -> str:
    return _utc(timestamp).strftime("%Y-%m-%d")


def cutoff_date(days_back: int, now: float) -> str:
    return (_utc(now) - timedelta(days=days_back)).strftime("%Y-%m-%d")


def week_offset(timestamp: float, reference: float) -> int:
    """Whole Sunday-started weeks between ``timestamp`` and ``reference``."""

    def week_start(ts: float) -> datetime:
        d = _utc(ts).replace(hour=0, minute=0, second=0, microsecond=0)
        return d - timedelta(days=day_of_week(ts))

    return (week_start(reference) - week_start(timestamp)).days // 7


def parse_days_filter(days: str | None) -> list[int]:
    if not days or days == "all":
        return list(ALL_DAYS)
    if days == "weekday":
        return [1, 2, 3, 4, 5]
    if days == "weekend":
        return [0, 6]

    picked: list[int] = []
    for chunk in days.lower().split(","):
        name = chunk.strip()
        if name in DAY_NAMES:
            index = DAY_NAMES.index(name)
            if index not in picked:
                picked.append(index)
    return sorted(picked) if picked else list(ALL_DAYS)


def format_time_slot(index: int, granularity: str) -> str:
    if granularity == "15min":
        return f"{index // SLOTS_PER_HOUR:02d}:{(index % SLOTS_PER_HOUR) * 15:02d}"
    return f"{index:02d}:00"
