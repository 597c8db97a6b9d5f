from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo

from app.config import settings


@dataclass(frozen=True)
class CalendarFields:
    year: int
    month: int
    week: int


@lru_cache(maxsize=8)
def _zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def now_utc() -> datetime:
    return datetime.now(tz=timezone.utc)


def business_today(now: datetime | None = None) -> date:
    moment = now or now_utc()
    return moment.astimezone(_zone(settings.business_timezone)).date()


def calendar_fields(value: date) -> CalendarFields:
    """ISO-8601 week and week-numbering year, plus the calendar month.

    Week 1 is the week holding the year's first Thursday, so the ISO year can
    differ from ``value.year`` in the last days of December and the first days
    of January.
    """
    iso_year, iso_week, _ = value.isocalendar()
    return CalendarFields(year=iso_year, month=value.month, week=iso_week)
