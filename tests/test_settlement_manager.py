"""
Test Suite for the Holiday Calendar and Settlement Date Calculator

This test suite covers:
- Holiday set parsing from loosely typed entries
- Business day queries (weekends, recurring holidays)
- CN / PM / PH payment date rules, including holiday clusters
- Weekend trade dates processed mechanically
- Batch annotation and trade date warnings

Author: cl_equity_ledger team
Date: 2025
"""

import unittest
from datetime import date, datetime, timedelta

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from ledger.holiday_calendar import HolidayCalendar, HolidaySet
from ledger.portfolio import TransactionRecord
from ledger.settlement_manager import (
    SettlementCondition,
    SettlementDateCalculator,
    create_settlement_calculator,
)


CHILEAN_HOLIDAYS = [
    {'month': 1, 'day': 1},
    {'month': 5, 'day': 1},
    {'month': 5, 'day': 21},
    {'month': 9, 'day': 18},
    {'month': 9, 'day': 19},
    {'month': 12, 'day': 25},
]


class TestHolidayCalendar(unittest.TestCase):
    """Tests for HolidaySet and HolidayCalendar."""

    def setUp(self):
        self.calendar = HolidayCalendar(HolidaySet.from_entries(CHILEAN_HOLIDAYS))

    def test_holiday_set_accepts_mixed_entries(self):
        holidays = HolidaySet.from_entries([
            {'month': 9, 'day': 18},
            (12, 25),
            "01-01",
            "2025-05-21",
            date(2024, 6, 20),
        ])
        self.assertEqual(len(holidays), 5)
        self.assertIn((5, 21), holidays)
        self.assertIn((6, 20), holidays)

    def test_holiday_set_skips_invalid_entries(self):
        holidays = HolidaySet.from_entries(["not a date", {'month': 13, 'day': 1}, None, (2, 30)])
        self.assertEqual(len(holidays), 1)
        self.assertIn((2, 30), holidays)

    def test_holiday_set_round_trips_entries(self):
        holidays = HolidaySet.from_entries(CHILEAN_HOLIDAYS)
        self.assertEqual(HolidaySet.from_entries(holidays.to_entries()), holidays)

    def test_holiday_ignores_year(self):
        self.assertTrue(self.calendar.is_holiday(date(2019, 9, 18)))
        self.assertTrue(self.calendar.is_holiday(date(2031, 9, 18)))
        self.assertFalse(self.calendar.is_holiday(date(2025, 9, 17)))

    def test_business_day(self):
        self.assertTrue(self.calendar.is_business_day(date(2025, 6, 13)))    # Friday
        self.assertFalse(self.calendar.is_business_day(date(2025, 6, 14)))   # Saturday
        self.assertFalse(self.calendar.is_business_day(date(2025, 6, 15)))   # Sunday
        self.assertFalse(self.calendar.is_business_day(date(2025, 9, 18)))   # Thursday holiday

    def test_business_day_uses_calendar_components_of_datetime(self):
        late_evening = datetime(2025, 9, 17, 23, 30)
        self.assertTrue(self.calendar.is_business_day(late_evening))

    def test_reason_not_business_day(self):
        self.assertEqual(self.calendar.reason_not_business_day(date(2025, 6, 14)), 'saturday')
        self.assertEqual(self.calendar.reason_not_business_day(date(2025, 6, 15)), 'sunday')
        self.assertEqual(self.calendar.reason_not_business_day(date(2025, 9, 18)), 'holiday')
        self.assertIsNone(self.calendar.reason_not_business_day(date(2025, 6, 13)))

    def test_empty_calendar_only_skips_weekends(self):
        calendar = HolidayCalendar()
        self.assertTrue(calendar.is_business_day(date(2025, 12, 25)))


class TestSettlementDateCalculator(unittest.TestCase):
    """Tests for payment date computation."""

    def setUp(self):
        self.calculator = SettlementDateCalculator(
            HolidayCalendar(HolidaySet.from_entries(CHILEAN_HOLIDAYS))
        )

    def test_condition_parse(self):
        self.assertEqual(SettlementCondition.parse('PM'), SettlementCondition.PM)
        self.assertEqual(SettlementCondition.parse(' PH '), SettlementCondition.PH)
        self.assertEqual(SettlementCondition.parse('OE'), SettlementCondition.CN)
        self.assertEqual(SettlementCondition.parse(None), SettlementCondition.CN)

    def test_cn_friday_settles_tuesday(self):
        result = self.calculator.compute_settlement_date(date(2025, 6, 13), 'CN')
        self.assertEqual(result, date(2025, 6, 17))

    def test_cn_is_default(self):
        self.assertEqual(self.calculator.compute_settlement_date(date(2025, 6, 13)), date(2025, 6, 17))
        self.assertEqual(self.calculator.compute_settlement_date(date(2025, 6, 13), 'VC'), date(2025, 6, 17))

    def test_cn_skips_holiday_cluster(self):
        # Sep 18-19 are holidays, Sep 20-21 a weekend
        result = self.calculator.compute_settlement_date(date(2025, 9, 17), 'CN')
        self.assertEqual(result, date(2025, 9, 23))

    def test_pm_next_business_day(self):
        self.assertEqual(self.calculator.compute_settlement_date(date(2025, 6, 13), 'PM'), date(2025, 6, 16))
        self.assertEqual(self.calculator.compute_settlement_date(date(2025, 9, 17), 'PM'), date(2025, 9, 22))

    def test_ph_same_day_when_business(self):
        self.assertEqual(self.calculator.compute_settlement_date(date(2025, 6, 13), 'PH'), date(2025, 6, 13))

    def test_ph_rolls_forward_on_holiday(self):
        self.assertEqual(self.calculator.compute_settlement_date(date(2025, 9, 18), 'PH'), date(2025, 9, 22))

    def test_weekend_trade_date_processed_mechanically(self):
        self.assertEqual(self.calculator.compute_settlement_date(date(2025, 6, 14), 'CN'), date(2025, 6, 17))
        self.assertEqual(self.calculator.compute_settlement_date(date(2025, 6, 15), 'PM'), date(2025, 6, 16))

    def test_payment_date_properties_over_a_year(self):
        current = date(2025, 1, 1)
        while current.year == 2025:
            cn = self.calculator.compute_settlement_date(current, 'CN')
            pm = self.calculator.compute_settlement_date(current, 'PM')
            ph = self.calculator.compute_settlement_date(current, 'PH')

            self.assertGreaterEqual(cn, current + timedelta(days=2))
            self.assertTrue(self.calculator.calendar.is_business_day(cn))
            self.assertGreater(pm, current)
            self.assertTrue(self.calculator.calendar.is_business_day(pm))
            self.assertEqual(ph == current, self.calculator.calendar.is_business_day(current))

            current += timedelta(days=1)

    def test_annotate_returns_copies(self):
        records = [
            TransactionRecord(date(2025, 6, 13), 'SQM-B', 10, 40000, 'Buy', settlement_condition='CN'),
            TransactionRecord(date(2025, 6, 13), 'LTM', 10, 12.5, 'Sell', settlement_condition='PM'),
            TransactionRecord(None, 'CHILE', 10, 100, 'Buy'),
        ]

        annotated = self.calculator.annotate(records)

        self.assertEqual(annotated[0].settlement_date, date(2025, 6, 17))
        self.assertEqual(annotated[1].settlement_date, date(2025, 6, 16))
        self.assertIsNone(annotated[2].settlement_date)
        self.assertIsNone(records[0].settlement_date)

    def test_trade_date_warnings(self):
        self.assertEqual(self.calculator.trade_date_warnings(date(2025, 6, 13), date(2025, 6, 13)), [])

        weekend = self.calculator.trade_date_warnings(date(2025, 6, 14), date(2025, 6, 14))
        self.assertEqual(len(weekend), 1)
        self.assertIn('weekend', weekend[0])

        stale = self.calculator.trade_date_warnings(date(2025, 6, 12), date(2025, 6, 13))
        self.assertEqual(len(stale), 1)
        self.assertIn('12/06/2025', stale[0])

    def test_factory(self):
        calculator = create_settlement_calculator(["2025-09-18", "2025-09-19"])
        self.assertEqual(calculator.compute_settlement_date(date(2025, 9, 17), 'PM'), date(2025, 9, 22))


if __name__ == '__main__':
    unittest.main(verbosity=2)
