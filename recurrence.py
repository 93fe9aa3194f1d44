import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Optional, Union
from zoneinfo import ZoneInfo

from config import get_settings


logger = logging.getLogger(__name__)


class MonthDayPolicy(str, Enum):
    snap_to_end = "snap_to_end"
    skip = "skip"


class Weekday(IntEnum):
    monday = 0
    tuesday = 1
    wednesday = 2
    thursday = 3
    friday = 4
    saturday = 5
    sunday = 6


def _check_day(day: object, label: str = "day") -> None:
    if isinstance(day, bool) or not isinstance(day, int) or not 1 <= day <= 31:
        raise ValueError(f"{label} must be between 1 and 31, got {day!r}")


@dataclass(frozen=True)
class Monthly:
    day: int

    def __post_init__(self) -> None:
        _check_day(self.day)


@dataclass(frozen=True)
class Weekly:
    weekday: int

    def __post_init__(self) -> None:
        if isinstance(self.weekday, bool) or not isinstance(self.weekday, int):
            raise ValueError(f"weekday must be 0-6, got {self.weekday!r}")
        if not 0 <= self.weekday <= 6:
            raise ValueError(f"weekday must be 0-6, got {self.weekday!r}")


@dataclass(frozen=True)
class Yearly:
    month: int
    day: int

    def __post_init__(self) -> None:
        if isinstance(self.month, bool) or not isinstance(self.month, int):
            raise ValueError(f"month must be 1-12, got {self.month!r}")
        if not 1 <= self.month <= 12:
            raise ValueError(f"month must be 1-12, got {self.month!r}")
        _check_day(self.day)
        if self.day > days_in_month(2024, self.month):
            raise ValueError(f"{self.month}/{self.day} never occurs")


@dataclass(frozen=True)
class Biweekly:
    anchor: date

    def __post_init__(self) -> None:
        if not isinstance(self.anchor, date):
            raise ValueError(f"anchor must be a date, got {self.anchor!r}")


@dataclass(frozen=True)
class SemiMonthly:
    first_day: int
    second_day: int

    def __post_init__(self) -> None:
        _check_day(self.first_day, "first_day")
        _check_day(self.second_day, "second_day")
        if self.first_day >= self.second_day:
            raise ValueError("first_day must be before second_day")


Frequency = Union[Monthly, Weekly, Yearly, Biweekly, SemiMonthly]


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _day_in_month(
    year: int, month: int, day: int, policy: MonthDayPolicy
) -> Optional[date]:
    dim = days_in_month(year, month)
    if day <= dim:
        return date(year, month, day)
    if policy == MonthDayPolicy.skip:
        logger.debug(f"occurrence_skipped: year={year} month={month} day={day}")
        return None
    logger.debug(f"occurrence_clamped: year={year} month={month} day={day} to={dim}")
    return date(year, month, dim)


def _months(start: date, end: date):
    year, month = start.year, start.month
    while (year, month) <= (end.year, end.month):
        yield year, month
        if month == 12:
            year, month = year + 1, 1
        else:
            month += 1


def occurrences(
    frequency: Frequency,
    window_start: date,
    window_end: date,
    policy: MonthDayPolicy = MonthDayPolicy.snap_to_end,
) -> list[date]:
    """Dates on which ``frequency`` fires inside ``[window_start, window_end]``.

    Pure and deterministic: the result depends only on the arguments, is
    ascending and contains no duplicates. ``policy`` decides what happens when
    a month is shorter than the requested day (clamp to the last day, or no
    occurrence that month).
    """
    if window_start > window_end:
        return []

    found: set[date] = set()
    if isinstance(frequency, Monthly):
        for year, month in _months(window_start, window_end):
            found.add(_day_in_month(year, month, frequency.day, policy))
    elif isinstance(frequency, SemiMonthly):
        for year, month in _months(window_start, window_end):
            found.add(_day_in_month(year, month, frequency.first_day, policy))
            found.add(_day_in_month(year, month, frequency.second_day, policy))
    elif isinstance(frequency, Yearly):
        for year in range(window_start.year, window_end.year + 1):
            found.add(_day_in_month(year, frequency.month, frequency.day, policy))
    elif isinstance(frequency, Weekly):
        offset = (frequency.weekday - window_start.weekday()) % 7
        current = window_start + timedelta(days=offset)
        while current <= window_end:
            found.add(current)
            current += timedelta(weeks=1)
    elif isinstance(frequency, Biweekly):
        delta = (window_start - frequency.anchor).days
        periods = -(-delta // 14)
        current = frequency.anchor + timedelta(days=14 * periods)
        while current <= window_end:
            found.add(current)
            current += timedelta(weeks=2)
    else:
        raise TypeError(f"Unsupported frequency: {frequency!r}")

    found.discard(None)
    return sorted(d for d in found if window_start <= d <= window_end)


def rule_occurrences(rule, window_start: date, window_end: date) -> list[date]:
    """Occurrences for a stored rule; a rule with a broken anchor yields none."""
    spec = rule.frequency_spec()
    if spec is None:
        kind = getattr(rule.frequency, "value", rule.frequency)
        logger.warning(
            f"rule_skipped: rule_id={rule.id} frequency={kind} reason=invalid_anchor",
            extra={
                "rule_id": rule.id,
                "owner_id": rule.owner_id,
                "frequency": kind,
                "reason": "invalid_anchor",
            },
        )
        return []
    return occurrences(spec, window_start, window_end, rule.month_day_policy)


_MONTHLY_FACTORS: dict[type, Decimal] = {
    Monthly: Decimal(1),
    Weekly: Decimal(52) / Decimal(12),
    Biweekly: Decimal(26) / Decimal(12),
    SemiMonthly: Decimal(2),
    Yearly: Decimal(1) / Decimal(12),
}


def average_monthly_occurrences(frequency: Frequency) -> Decimal:
    """Long-run occurrences per month, for "monthly equivalent" figures only.

    Window totals must use ``occurrences`` instead, which counts exactly.
    """
    try:
        return _MONTHLY_FACTORS[type(frequency)]
    except KeyError as exc:
        raise TypeError(f"Unsupported frequency: {frequency!r}") from exc
