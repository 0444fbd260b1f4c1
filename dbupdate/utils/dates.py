"""
Date helpers for report queries.

Query dates are UTC, formatted as YYYY-MM-DDTHH:MM:SS.mmm (the Adobe
Analytics dateRange format).
"""

from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta

QUERY_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S.000"


def format_query_date(value: datetime) -> str:
    return value.astimezone(UTC).strftime(QUERY_DATE_FORMAT)


def parse_query_date(value: str) -> datetime:
    """Parse a query date (or a plain YYYY-MM-DD) as UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def utc_midnight(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=UTC)


def today() -> datetime:
    """Start of the current UTC day."""
    return utc_midnight(datetime.now(UTC).date())


@dataclass(frozen=True)
class DateRange:
    """Start/end query dates (strings in QUERY_DATE_FORMAT)."""

    start: str
    end: str

    @classmethod
    def from_datetimes(cls, start: datetime, end: datetime) -> "DateRange":
        return cls(format_query_date(start), format_query_date(end))

    @property
    def start_date(self) -> datetime:
        return parse_query_date(self.start)

    @property
    def end_date(self) -> datetime:
        return parse_query_date(self.end)

    def to_adobe(self) -> str:
        """Adobe Analytics globalFilters dateRange value."""
        return f"{self.start}/{self.end}"

    def single_days(self) -> list["DateRange"]:
        """Split into one-day ranges, one per day from start to end inclusive."""
        days = []
        day = self.start_date.date()
        last = self.end_date.date()
        while day <= last:
            start = utc_midnight(day)
            days.append(DateRange.from_datetimes(start, start + timedelta(days=1)))
            day += timedelta(days=1)
        return days
