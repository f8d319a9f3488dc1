import calendar
from dataclasses import dataclass
from datetime import date


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def __contains__(self, d: date) -> bool:
        return self.start <= d <= self.end


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def month_period(year: int, month: int) -> Period:
    """Return the calendar month ``year-month`` as an inclusive period.

    Raises ``ValueError`` when the pair does not name a real month.
    """
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month: {year}-{month}")
    try:
        start = date(year, month, 1)
        end = start.replace(day=days_in_month(year, month))
    except ValueError as exc:
        raise ValueError(f"Invalid month: {year}-{month}") from exc
    return Period(f"{year:04d}-{month:02d}", start, end)


def month_period_for(d: date) -> Period:
    return month_period(d.year, d.month)
