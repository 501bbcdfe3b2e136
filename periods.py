import calendar
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterator, Optional
from zoneinfo import ZoneInfo

from config import get_settings
from errors import ValidationError


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def days(self) -> Iterator[date]:
        current = self.start
        while current <= self.end:
            yield current
            current += timedelta(days=1)


def local_now() -> datetime:
    """Current wall-clock time in the configured timezone, as a naive datetime."""
    settings = get_settings()
    return datetime.now(ZoneInfo(settings.timezone)).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()


def to_local_naive(value: datetime) -> datetime:
    """Ledger timestamps are stored as naive wall-clock times in the configured zone."""
    if value.tzinfo is None:
        return value
    settings = get_settings()
    return value.astimezone(ZoneInfo(settings.timezone)).replace(tzinfo=None)


def validate_month(year: int, month: int) -> None:
    if not 1970 <= year <= 3000:
        raise ValidationError("Year must be between 1970 and 3000", field="year")
    if not 1 <= month <= 12:
        raise ValidationError("Month must be between 1 and 12", field="month")


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def month_period(year: int, month: int) -> Period:
    validate_month(year, month)
    first = date(year, month, 1)
    last = date(year, month, days_in_month(year, month))
    return Period(f"{year:04d}-{month:02d}", first, last)


def recent_period(days: int, *, today: Optional[date] = None) -> Period:
    """The ``days`` calendar days ending with ``today`` inclusive."""
    if days < 1:
        raise ValidationError("days must be at least 1", field="days")
    today = today or local_today()
    return Period(f"last_{days}_days", today - timedelta(days=days - 1), today)


def month_index(year: int, month: int) -> int:
    return year * 12 + (month - 1)


def months_between(start: date, year: int, month: int) -> int:
    return month_index(year, month) - month_index(start.year, start.month)
