"""
Test Suite for the Position Aggregator

This test suite covers:
- Weighted-average cost accounting for purchases
- Short positions marked at the triggering sale price
- Opening balance valuations used verbatim
- Chronological ordering of unordered batches
- Netting report and market revaluation
- Valuation clamping and malformed numerics

Author: cl_equity_ledger team
Date: 2025
"""

import unittest
from datetime import date

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from ledger.portfolio import (
    NettingDetector,
    Position,
    PositionAggregator,
    RevaluationCalculator,
    Side,
    TransactionRecord,
)


def buy(day, instrument, quantity, price, **kwargs):
    return TransactionRecord(date(2025, 6, day), instrument, quantity, price, Side.BUY, **kwargs)


def sell(day, instrument, quantity, price, **kwargs):
    return TransactionRecord(date(2025, 6, day), instrument, quantity, price, Side.SELL, **kwargs)


class TestTransactionRecord(unittest.TestCase):
    """Tests for record normalization at the boundary."""

    def test_side_parse(self):
        self.assertEqual(Side.parse('Buy'), Side.BUY)
        self.assertEqual(Side.parse('venta'), Side.SELL)
        with self.assertRaises(ValueError):
            Side.parse('Hold')

    def test_instrument_and_condition_normalized(self):
        record = TransactionRecord(date(2025, 6, 13), ' ltm 886 ', 10, 12.5, 'Buy', settlement_condition='OE')
        self.assertEqual(record.instrument, 'LTM')
        self.assertEqual(record.settlement_condition, 'CN')

    def test_from_dict_camel_case(self):
        record = TransactionRecord.from_dict({
            'date': '2025-06-13',
            'instrument': 'SQM-B',
            'quantity': '1.000',
            'price': '40.000,50',
            'side': 'Buy',
            'brokerCode': '86',
            'brokerName': 'BANCHILE ',
            'settlementCondition': 'PM',
        })
        self.assertEqual(record.trade_date, date(2025, 6, 13))
        self.assertEqual(record.quantity, 1000.0)
        self.assertEqual(record.price, 40000.5)
        self.assertEqual(record.broker_code, 86)
        self.assertEqual(record.broker_name, 'BANCHILE')
        self.assertEqual(record.settlement_condition, 'PM')
        self.assertFalse(record.source_is_opening_balance)

    def test_from_dict_implies_price_from_valuation(self):
        record = TransactionRecord.from_dict({
            'date': '2025-06-12',
            'instrument': 'CHILE',
            'quantity': -500,
            'price': 0,
            'side': 'Sell',
            'sourceIsOpeningBalance': True,
            'explicitValuation': 50000,
        })
        self.assertEqual(record.quantity, 500.0)
        self.assertEqual(record.price, 100.0)
        self.assertTrue(record.source_is_opening_balance)

    def test_from_dict_rejects_missing_side(self):
        with self.assertRaises(ValueError):
            TransactionRecord.from_dict({'date': '2025-06-13', 'instrument': 'LTM', 'quantity': 1, 'price': 1})

    def test_to_dict_uses_interface_keys(self):
        data = buy(13, 'LTM', 10, 12.5).to_dict()
        self.assertEqual(data['side'], 'Buy')
        self.assertEqual(data['date'], '2025-06-13')
        self.assertIn('settlementCondition', data)


class TestPositionAggregator(unittest.TestCase):
    """Tests for the fold rules."""

    def setUp(self):
        self.aggregator = PositionAggregator()

    def test_weighted_average_cost(self):
        positions = self.aggregator.fold_all([buy(10, 'SQM-B', 100, 10), buy(11, 'SQM-B', 50, 13)])
        position = positions['SQM-B']

        self.assertEqual(position.signed_quantity, 150)
        self.assertAlmostEqual(position.weighted_average_cost, 11.00)
        self.assertEqual(position.cost_basis_value, 1650.00)
        self.assertEqual(position.classification, 'Cartera')

    def test_buy_only_average_is_value_over_quantity(self):
        trades = [(100, 10.0), (250, 11.4), (75, 9.8), (10, 13.25)]
        records = [buy(10 + i, 'COPEC', q, p) for i, (q, p) in enumerate(trades)]
        position = self.aggregator.fold_all(records)['COPEC']

        expected = sum(q * p for q, p in trades) / sum(q for q, _ in trades)
        self.assertAlmostEqual(position.weighted_average_cost, expected)

    def test_sale_keeps_cost_while_long(self):
        position = self.aggregator.fold_all([buy(10, 'LTM', 100, 10), sell(11, 'LTM', 40, 15)])['LTM']
        self.assertEqual(position.signed_quantity, 60)
        self.assertEqual(position.weighted_average_cost, 10)
        self.assertEqual(position.cost_basis_value, 600.0)
        self.assertEqual(position.cumulative_sold_value, 600.0)
        self.assertEqual(position.cumulative_sold_quantity, 40)

    def test_short_from_nothing(self):
        position = self.aggregator.fold(None, sell(13, 'CHILE', 100, 15))
        self.assertEqual(position.signed_quantity, -100)
        self.assertEqual(position.classification, 'Corto')
        self.assertEqual(position.weighted_average_cost, 15)
        self.assertEqual(position.cost_basis_value, -1500.0)

    def test_sale_through_zero_marks_short_at_sale_price(self):
        position = self.aggregator.fold_all([buy(10, 'LTM', 100, 10), sell(11, 'LTM', 150, 12)])['LTM']
        self.assertEqual(position.signed_quantity, -50)
        self.assertEqual(position.weighted_average_cost, 12)
        self.assertEqual(position.cost_basis_value, -600.0)

    def test_buy_then_sell_same_quantity_nets_to_zero(self):
        positions = self.aggregator.fold_all([buy(10, 'BSANTANDER', 500, 55), sell(12, 'BSANTANDER', 500, 57)])
        self.assertEqual(positions['BSANTANDER'].signed_quantity, 0)
        self.assertTrue(positions['BSANTANDER'].is_flat)
        self.assertEqual(NettingDetector().detect(positions.values()), ['BSANTANDER'])

    def test_opening_balance_valuation_used_verbatim(self):
        record = sell(12, 'CHILE', 500, 100, source_is_opening_balance=True, explicit_valuation=50123.45)
        position = self.aggregator.fold(None, record)
        self.assertEqual(position.signed_quantity, -500)
        self.assertEqual(position.cost_basis_value, -50123.45)

    def test_explicit_valuation_ignored_for_regular_records(self):
        position = self.aggregator.fold(None, buy(13, 'LTM', 10, 12, explicit_valuation=99999))
        self.assertEqual(position.cost_basis_value, 120.0)

    def test_unordered_batch_folded_chronologically(self):
        ordered = [buy(10, 'LTM', 100, 10), sell(11, 'LTM', 150, 12), buy(12, 'LTM', 100, 11)]
        shuffled = [ordered[2], ordered[0], ordered[1]]

        self.assertEqual(self.aggregator.fold_all(ordered), self.aggregator.fold_all(shuffled))

    def test_same_day_ties_keep_arrival_order(self):
        early_sale = sell(13, 'LTM', 150, 12)
        late_purchase = buy(13, 'LTM', 100, 10)
        ordered = PositionAggregator.order_records([early_sale, late_purchase])
        self.assertEqual(ordered, [early_sale, late_purchase])

    def test_refold_is_deterministic(self):
        records = [buy(10, 'LTM', 100, 10), sell(11, 'SQM-B', 5, 40000), buy(12, 'LTM', 7, 11.5)]
        self.assertEqual(self.aggregator.fold_all(records), self.aggregator.fold_all(list(records)))

    def test_fold_does_not_mutate_input(self):
        position = self.aggregator.fold(None, buy(10, 'LTM', 100, 10))
        self.aggregator.fold(position, buy(11, 'LTM', 100, 20))
        self.assertEqual(position.signed_quantity, 100)

    def test_close_price_is_last_non_null(self):
        records = [
            buy(10, 'LTM', 100, 10, close_price=11.0),
            buy(11, 'LTM', 100, 10),
            sell(12, 'LTM', 50, 12, close_price=float('nan')),
        ]
        self.assertEqual(self.aggregator.fold_all(records)['LTM'].most_recent_close_price, 11.0)

    def test_malformed_numbers_count_as_zero(self):
        record = TransactionRecord(date(2025, 6, 13), 'LTM', 'abc', None, Side.BUY)
        position = self.aggregator.fold(None, record)
        self.assertEqual(position.signed_quantity, 0)
        self.assertEqual(position.cost_basis_value, 0)

    def test_records_without_instrument_are_skipped(self):
        positions = self.aggregator.fold_all([buy(10, '', 100, 10), buy(10, 'LTM', 1, 1)])
        self.assertEqual(list(positions), ['LTM'])

    def test_valuations_are_clamped(self):
        position = self.aggregator.fold(None, buy(13, 'LTM', 1e12, 1e6))
        self.assertLessEqual(abs(position.cost_basis_value), 1e15)
        self.assertLessEqual(position.cumulative_bought_value, 1e15)

    def test_fold_instrument(self):
        records = [buy(10, 'LTM', 100, 10), buy(10, 'SQM-B', 1, 40000), sell(11, 'LTM', 30, 12)]
        position = self.aggregator.fold_instrument('ltm', records)
        self.assertEqual(position.signed_quantity, 70)
        self.assertIsNone(self.aggregator.fold_instrument('COPEC', records))


class TestNettingAndRevaluation(unittest.TestCase):
    """Tests for the netting report and market valuation."""

    def test_netting_ignores_untouched_positions(self):
        positions = [Position('LTM'), Position('SQM-B', signed_quantity=0, transaction_count=2)]
        self.assertEqual(NettingDetector().detect(positions), ['SQM-B'])

    def test_revalue_with_close_price(self):
        position = PositionAggregator().fold_all([
            buy(10, 'SQM-B', 100, 10), buy(11, 'SQM-B', 50, 13, close_price=12)
        ])['SQM-B']
        revaluation = RevaluationCalculator().revalue(position)
        self.assertEqual(revaluation.market_value, 1800.0)
        self.assertEqual(revaluation.mark_to_market_adjustment, 150.0)

    def test_revalue_without_close_price(self):
        position = Position('LTM', signed_quantity=150, weighted_average_cost=11, cost_basis_value=1650.0)
        revaluation = RevaluationCalculator().revalue(position)
        self.assertEqual(revaluation.market_value, 0.0)
        self.assertEqual(revaluation.mark_to_market_adjustment, -1650.0)

    def test_revalue_short_position(self):
        position = Position('CHILE', signed_quantity=-100, weighted_average_cost=15,
                            cost_basis_value=-1500.0, most_recent_close_price=14)
        revaluation = RevaluationCalculator().revalue(position)
        self.assertEqual(revaluation.market_value, -1400.0)
        self.assertEqual(revaluation.mark_to_market_adjustment, 100.0)

    def test_output_record(self):
        position = Position('CHILE', signed_quantity=-100, weighted_average_cost=15,
                            cost_basis_value=-1500.0, most_recent_close_price=14)
        output = position.to_dict(RevaluationCalculator().revalue(position))
        self.assertEqual(output['classification'], 'Corto')
        self.assertEqual(output['marketValue'], -1400.0)
        self.assertTrue(set(output).issuperset({
            'instrument', 'signedQuantity', 'weightedAverageCost', 'costBasisValue',
            'mostRecentClosePrice', 'marketValue', 'markToMarketAdjustment', 'classification',
        }))


if __name__ == '__main__':
    unittest.main(verbosity=2)
