from dataclasses import dataclass
from datetime import date
from typing import Iterator, Optional


@dataclass(frozen=True)
class Window:
    start: date
    end: date

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError("Start date must be before end date")

    def __contains__(self, day: date) -> bool:
        return self.start <= day <= self.end

    @property
    def key(self) -> tuple[date, date]:
        return (self.start, self.end)


def month_start(year: int, month: int) -> date:
    return date(year, month, 1)


def month_end(year: int, month: int) -> date:
    if month == 12:
        return date(year + 1, 1, 1) - date.resolution
    return date(year, month + 1, 1) - date.resolution


def add_months(d: date, count: int) -> date:
    total = d.year * 12 + (d.month - 1) + count
    return date(total // 12, total % 12 + 1, 1)


def month_window(year: int, month: int) -> Window:
    return Window(month_start(year, month), month_end(year, month))


def window_for(day: date) -> Window:
    return month_window(day.year, day.month)


def iter_month_windows(first: date, count: int) -> Iterator[Window]:
    for offset in range(count):
        d = add_months(first, offset)
        yield month_window(d.year, d.month)


def parse_month(value: str) -> Window:
    try:
        year_str, month_str = value.split("-", 1)
        return month_window(int(year_str), int(month_str))
    except ValueError as exc:
        raise ValueError(f"Invalid month {value!r}, expected YYYY-MM") from exc


def resolve_window(
    month: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Window:
    if start or end:
        if not start or not end:
            raise ValueError("Custom window requires start and end dates")
        return Window(date.fromisoformat(start), date.fromisoformat(end))
    if month:
        return parse_month(month)
    return window_for(today or date.today())
