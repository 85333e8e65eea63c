"""
Settlement Date Manager for Chilean Equities

Payment date calculation for Santiago Stock Exchange trades:
- CN (contado normal): second business day after the trade date
- PM (pagadero mañana): first business day after the trade date
- PH (pagadero hoy): the trade date itself when it is a business day
- Business days exclude weekends and recurring Chilean holidays
- Batch annotation of transaction records with their payment date

Author: cl_equity_ledger team
Date: 2025
"""

import logging
from dataclasses import replace
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Iterable, List, Optional, Any

import pytz

from ledger.holiday_calendar import HolidayCalendar, HolidaySet
from ledger.market_utils import to_local_date
from ledger.portfolio import TransactionRecord

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)


class SettlementCondition(Enum):
    """Settlement condition codes printed on confirmations."""
    CN = "CN"
    PM = "PM"
    PH = "PH"

    @classmethod
    def parse(cls, value: Any) -> 'SettlementCondition':
        """Parse a condition code; anything unrecognized settles as CN."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip())
        except ValueError:
            return cls.CN


class SettlementDateCalculator:
    """
    Computes payment dates by walking forward over non-business days.

    The holiday calendar is injected; the calculator keeps no other state
    and every call is a pure function of its arguments.
    """

    def __init__(self, calendar: Optional[HolidayCalendar] = None):
        """
        Initialize the calculator.

        Args:
            calendar: Business day calendar (weekends only if omitted)
        """
        self.calendar = calendar if calendar is not None else HolidayCalendar()

    def _is_business_day(self, check_date: date) -> bool:
        return self.calendar.is_business_day(check_date)

    def _advance_to_business_day(self, current: date) -> date:
        # Terminates: weekends recur at most two days at a time and the
        # holiday set cannot cover every weekday of the year.
        while not self._is_business_day(current):
            current += ONE_DAY
        return current

    def get_next_business_day(self, from_date: date) -> date:
        """
        Get the first business day strictly after a date.

        Args:
            from_date: Starting date

        Returns:
            date: Next business day
        """
        return self._advance_to_business_day(from_date + ONE_DAY)

    def compute_settlement_date(self, trade_date: date, condition: Any = SettlementCondition.CN) -> date:
        """
        Calculate the settlement date for a trade.

        CN runs two independent passes of "advance one calendar day, then
        skip non-business days", which is not the same as counting two
        business days near holiday clusters.

        A trade date on a weekend is processed as-is.

        Args:
            trade_date: Local trade date
            condition: CN, PM or PH (anything else is CN)

        Returns:
            date: Settlement date
        """
        local = date(trade_date.year, trade_date.month, trade_date.day)
        code = SettlementCondition.parse(condition)

        if code == SettlementCondition.PM:
            return self.get_next_business_day(local)

        if code == SettlementCondition.PH:
            if self._is_business_day(local):
                return local
            return self.get_next_business_day(local)

        first = self._advance_to_business_day(local + ONE_DAY)
        return self._advance_to_business_day(first + ONE_DAY)

    def annotate(self, records: Iterable[TransactionRecord]) -> List[TransactionRecord]:
        """
        Return copies of the records with their settlement date filled in.

        Records without a trade date keep a null settlement date.
        """
        annotated = []
        for record in records:
            if record.trade_date is None:
                logger.warning(f"Record for {record.instrument or '?'} has no trade date; "
                               f"settlement date left empty")
                annotated.append(replace(record, settlement_date=None))
                continue

            if not self._is_business_day(record.trade_date):
                reason = self.calendar.reason_not_business_day(record.trade_date)
                logger.debug(f"Trade date {record.trade_date} for {record.instrument} is a {reason}")

            settlement = self.compute_settlement_date(record.trade_date, record.settlement_condition)
            annotated.append(replace(record, settlement_date=settlement))

        logger.info(f"Annotated {len(annotated)} records with settlement dates")
        return annotated

    def trade_date_warnings(self, trade_date: Optional[date],
                            processing_date: Optional[date] = None) -> List[str]:
        """
        Describe why a file's trade date deserves a second look.

        Args:
            trade_date: Trade date of the uploaded file
            processing_date: Date the file is processed (today if omitted)

        Returns:
            List[str]: Warning messages, empty when nothing is unusual
        """
        if trade_date is None:
            return ["File has no trade date"]

        warnings = []
        if trade_date.weekday() >= 5:
            warnings.append(f"Trade date {trade_date.strftime('%d/%m/%Y')} falls on a weekend")
        elif self.calendar.is_holiday(trade_date):
            warnings.append(f"Trade date {trade_date.strftime('%d/%m/%Y')} is a holiday")

        today = processing_date or to_local_date(datetime.now(pytz.utc))
        if trade_date != today:
            warnings.append(f"Trade date {trade_date.strftime('%d/%m/%Y')} is not the processing date "
                            f"{today.strftime('%d/%m/%Y')}")

        for message in warnings:
            logger.warning(message)
        return warnings


def create_settlement_calculator(holiday_entries: Optional[Iterable[Any]] = None) -> SettlementDateCalculator:
    """
    Create a SettlementDateCalculator from raw holiday entries.

    Args:
        holiday_entries: Entries accepted by HolidaySet.from_entries

    Returns:
        SettlementDateCalculator instance
    """
    holidays = HolidaySet.from_entries(holiday_entries)
    return SettlementDateCalculator(HolidayCalendar(holidays))
