"""
Holiday calendar for Chilean business day queries.

Holidays are recurring month-day markers without a year component. The
set is acquired once by the caller (see market_data.holidays) and passed
into the calendar explicitly; there is no process-wide holiday cache.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, FrozenSet, Iterable, Optional, Tuple
import logging
import re

logger = logging.getLogger(__name__)

SATURDAY = 5
SUNDAY = 6


@dataclass(frozen=True)
class HolidaySet:
    """Immutable set of (month, day) holiday markers recurring every year."""
    markers: FrozenSet[Tuple[int, int]] = field(default_factory=frozenset)

    def __contains__(self, item: Tuple[int, int]) -> bool:
        return item in self.markers

    def __len__(self) -> int:
        return len(self.markers)

    @classmethod
    def from_entries(cls, entries: Optional[Iterable[Any]]) -> 'HolidaySet':
        """
        Build a HolidaySet from loosely-typed entries.

        Accepted entry shapes:
            {"month": 9, "day": 18}
            (9, 18)
            "09-18" (MM-DD)
            "2025-09-18" (YYYY-MM-DD, the year is discarded)
            date / datetime objects (year discarded)

        Invalid entries are skipped with a warning.

        Args:
            entries: Iterable of holiday entries

        Returns:
            HolidaySet: The parsed holiday markers
        """
        markers = set()
        for entry in entries or []:
            marker = _parse_marker(entry)
            if marker is None:
                logger.warning(f"Skipping invalid holiday entry: {entry!r}")
                continue
            markers.add(marker)
        return cls(frozenset(markers))

    def to_entries(self) -> list:
        return [{'month': month, 'day': day} for month, day in sorted(self.markers)]


def _parse_marker(entry: Any) -> Optional[Tuple[int, int]]:
    month = day = None

    if isinstance(entry, dict):
        month, day = entry.get('month'), entry.get('day')
    elif isinstance(entry, (datetime, date)):
        month, day = entry.month, entry.day
    elif isinstance(entry, (tuple, list)) and len(entry) == 2:
        month, day = entry
    elif isinstance(entry, str):
        # Split the string instead of building an instant, so no timezone
        # shift can move the day.
        parts = re.split(r'[-/]', entry.strip()[:10])
        if len(parts) == 3:
            month, day = parts[1], parts[2]
        elif len(parts) == 2:
            month, day = parts

    try:
        month, day = int(month), int(day)
    except (TypeError, ValueError):
        return None

    if not (1 <= month <= 12 and 1 <= day <= 31):
        return None
    return month, day


class HolidayCalendar:
    """
    Business day queries over a HolidaySet.

    A business day is Monday to Friday and not a holiday. Queries use
    only the year/month/day components of the date they receive.
    """

    def __init__(self, holidays: Optional[HolidaySet] = None):
        self.holidays = holidays if holidays is not None else HolidaySet()

    def is_holiday(self, check_date: date) -> bool:
        """True iff the (month, day) of check_date is a holiday marker."""
        return (check_date.month, check_date.day) in self.holidays

    def is_business_day(self, check_date: date) -> bool:
        """
        Check if a date is a business day.

        Args:
            check_date: Local calendar date

        Returns:
            bool: True if Monday-Friday and not a holiday
        """
        local = date(check_date.year, check_date.month, check_date.day)
        return local.weekday() < SATURDAY and not self.is_holiday(local)

    def reason_not_business_day(self, check_date: date) -> Optional[str]:
        """Return 'saturday', 'sunday' or 'holiday', or None for a business day."""
        weekday = check_date.weekday()
        if weekday == SUNDAY:
            return 'sunday'
        if weekday == SATURDAY:
            return 'saturday'
        if self.is_holiday(check_date):
            return 'holiday'
        return None
