"""
Position Ledger for Chilean Equities

Incremental position aggregation over brokerage transactions:
- Weighted-average cost accounting for purchases
- Short positions ("Corto") marked at the triggering sale price
- Opening-balance valuations trusted verbatim from the source
- Chronological fold ordering enforced on unordered batches
- Netting report for instruments traded back to flat
- Market revaluation against the last observed close price

Author: cl_equity_ledger team
Date: 2025
"""

from dataclasses import dataclass, replace
from datetime import date
from enum import Enum
from typing import Dict, List, Optional, Any, Iterable, Tuple
import logging
import math

from ledger.market_utils import (
    DEFAULT_VALUATION_BOUND,
    clamp_valuation,
    map_settlement_condition,
    normalize_instrument,
    parse_numeric_value,
    to_local_date,
)

# Configure logging
logger = logging.getLogger(__name__)

LONG_CLASSIFICATION = "Cartera"
SHORT_CLASSIFICATION = "Corto"


class Side(Enum):
    """Transaction side."""
    BUY = "Buy"
    SELL = "Sell"

    @classmethod
    def parse(cls, value: Any) -> 'Side':
        """
        Parse a side from English or Spanish spellings.

        Raises:
            ValueError: If the value is not a recognizable side
        """
        if isinstance(value, cls):
            return value
        text = str(value or '').strip().upper()
        if text in ('BUY', 'B', 'COMPRA', 'C'):
            return cls.BUY
        if text in ('SELL', 'S', 'VENTA', 'V'):
            return cls.SELL
        raise ValueError(f"Invalid side '{value}'. Valid sides: Buy, Sell")


@dataclass
class TransactionRecord:
    """A single parsed buy/sell row from a confirmation or opening balance."""
    trade_date: Optional[date]
    instrument: str
    quantity: float
    price: float
    side: Side
    broker_code: int = 0
    broker_name: str = ""
    settlement_condition: str = "CN"
    settlement_date: Optional[date] = None
    close_price: Optional[float] = None
    source_is_opening_balance: bool = False
    explicit_valuation: Optional[float] = None

    def __post_init__(self):
        self.side = Side.parse(self.side)
        self.instrument = normalize_instrument(self.instrument)
        if self.settlement_condition not in ('CN', 'PM', 'PH'):
            self.settlement_condition = map_settlement_condition(self.settlement_condition)

    @property
    def amount(self) -> float:
        """Gross traded amount (quantity x price)."""
        return parse_numeric_value(self.quantity) * parse_numeric_value(self.price)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TransactionRecord':
        """
        Build a record from a boundary dictionary.

        Accepts both the camelCase keys used by the upload interface
        (brokerCode, settlementCondition, sourceIsOpeningBalance, ...)
        and snake_case keys.

        Raises:
            ValueError: If the side is missing or invalid
        """
        def pick(*keys, default=None):
            for key in keys:
                if key in data and data[key] is not None:
                    return data[key]
            return default

        quantity = abs(parse_numeric_value(pick('quantity', 'cantidad', default=0)))
        price = parse_numeric_value(pick('price', 'precio', default=0))
        valuation = pick('explicitValuation', 'explicit_valuation')
        valuation = parse_numeric_value(valuation) if valuation is not None else None

        # Price implied from valuation when the source leaves it blank
        if price == 0 and valuation and quantity > 0:
            price = abs(valuation) / quantity

        close_price = pick('closePrice', 'close_price')
        settlement_date = pick('settlementDate', 'settlement_date')

        return cls(
            trade_date=to_local_date(pick('date', 'trade_date', 'tradeDate')),
            instrument=pick('instrument', 'nemotecnico', default=''),
            quantity=quantity,
            price=price,
            side=pick('side', 'tipo_operacion'),
            broker_code=int(parse_numeric_value(pick('brokerCode', 'broker_code', default=0))),
            broker_name=str(pick('brokerName', 'broker_name', default='')).strip(),
            settlement_condition=pick('settlementCondition', 'settlement_condition', default='CN'),
            settlement_date=to_local_date(settlement_date) if settlement_date is not None else None,
            close_price=parse_numeric_value(close_price) if close_price is not None else None,
            source_is_opening_balance=bool(pick('sourceIsOpeningBalance', 'source_is_opening_balance',
                                                default=False)),
            explicit_valuation=valuation,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            'date': self.trade_date.isoformat() if self.trade_date else None,
            'instrument': self.instrument,
            'quantity': self.quantity,
            'price': self.price,
            'side': self.side.value,
            'brokerCode': self.broker_code,
            'brokerName': self.broker_name,
            'settlementCondition': self.settlement_condition,
            'settlementDate': self.settlement_date.isoformat() if self.settlement_date else None,
            'closePrice': self.close_price,
            'sourceIsOpeningBalance': self.source_is_opening_balance,
            'explicitValuation': self.explicit_valuation,
        }


@dataclass
class Position:
    """Running position for one instrument."""
    instrument: str
    signed_quantity: float = 0.0
    weighted_average_cost: float = 0.0
    cost_basis_value: float = 0.0
    most_recent_close_price: Optional[float] = None
    cumulative_bought_value: float = 0.0
    cumulative_bought_quantity: float = 0.0
    cumulative_sold_value: float = 0.0
    cumulative_sold_quantity: float = 0.0
    transaction_count: int = 0
    last_trade_date: Optional[date] = None
    has_manual_adjustment: bool = False

    @property
    def classification(self) -> str:
        """'Corto' for short positions, 'Cartera' otherwise."""
        return SHORT_CLASSIFICATION if self.signed_quantity < 0 else LONG_CLASSIFICATION

    @property
    def is_flat(self) -> bool:
        return self.signed_quantity == 0

    def to_dict(self, revaluation: Optional['Revaluation'] = None) -> Dict[str, Any]:
        """Convert to the output position record (camelCase keys, like TransactionRecord)."""
        result = {
            'instrument': self.instrument,
            'signedQuantity': self.signed_quantity,
            'weightedAverageCost': self.weighted_average_cost,
            'costBasisValue': self.cost_basis_value,
            'mostRecentClosePrice': self.most_recent_close_price,
            'classification': self.classification,
            'hasManualAdjustment': self.has_manual_adjustment,
        }
        if revaluation is not None:
            result['marketValue'] = revaluation.market_value
            result['markToMarketAdjustment'] = revaluation.mark_to_market_adjustment
        return result


@dataclass(frozen=True)
class Revaluation:
    """Market valuation of a position."""
    market_value: float
    mark_to_market_adjustment: float


class PositionAggregator:
    """
    Folds transaction records into per-instrument positions.

    Buys blend into the weighted-average cost of everything bought so far;
    a sale that leaves the position short marks it at that sale price.
    Cost basis is quantity x cost rounded to cents, except for opening
    balance records that carry their own valuation.
    """

    def __init__(self, valuation_bound: float = DEFAULT_VALUATION_BOUND):
        self.valuation_bound = valuation_bound

    def fold(self, position: Optional[Position], record: TransactionRecord) -> Position:
        """
        Apply one record to a position and return the new position.

        The input position is never mutated.

        Args:
            position: Current position, or None for the first record
            record: Transaction to apply

        Returns:
            Position: Updated position
        """
        current = position if position is not None else Position(instrument=record.instrument)

        quantity = abs(parse_numeric_value(record.quantity))
        price = parse_numeric_value(record.price)
        trade_value = clamp_valuation(quantity * price, self.valuation_bound)

        signed_quantity = current.signed_quantity
        cost = current.weighted_average_cost
        bought_value = current.cumulative_bought_value
        bought_quantity = current.cumulative_bought_quantity
        sold_value = current.cumulative_sold_value
        sold_quantity = current.cumulative_sold_quantity

        if record.side == Side.BUY:
            signed_quantity += quantity
            bought_value = clamp_valuation(bought_value + trade_value, self.valuation_bound)
            bought_quantity += quantity
            if bought_quantity > 0:
                cost = bought_value / bought_quantity
        else:
            signed_quantity -= quantity
            sold_value = clamp_valuation(sold_value + trade_value, self.valuation_bound)
            sold_quantity += quantity
            if signed_quantity < 0:
                cost = price

        if record.source_is_opening_balance and record.explicit_valuation is not None:
            magnitude = abs(parse_numeric_value(record.explicit_valuation))
            cost_basis = -magnitude if signed_quantity < 0 else magnitude
        else:
            cost_basis = round(signed_quantity * cost, 2)
        cost_basis = clamp_valuation(cost_basis, self.valuation_bound)

        close_price = current.most_recent_close_price
        if record.close_price is not None and not _is_nan(record.close_price):
            close_price = parse_numeric_value(record.close_price)

        logger.debug(f"Folded {record.side.value} {quantity} {current.instrument} @ {price:.2f} -> "
                     f"qty {signed_quantity}, cost {cost:.4f}, basis {cost_basis:,.2f}")

        return replace(
            current,
            signed_quantity=signed_quantity,
            weighted_average_cost=cost,
            cost_basis_value=cost_basis,
            most_recent_close_price=close_price,
            cumulative_bought_value=bought_value,
            cumulative_bought_quantity=bought_quantity,
            cumulative_sold_value=sold_value,
            cumulative_sold_quantity=sold_quantity,
            transaction_count=current.transaction_count + 1,
            last_trade_date=record.trade_date or current.last_trade_date,
        )

    @staticmethod
    def order_records(records: Iterable[TransactionRecord]) -> List[TransactionRecord]:
        """
        Sort records by trade date, ties broken by arrival order.

        Records without a trade date sort first.
        """
        indexed = list(enumerate(records))
        indexed.sort(key=lambda pair: (pair[1].trade_date or date.min, pair[0]))
        return [record for _, record in indexed]

    def fold_all(self, records: Iterable[TransactionRecord]) -> Dict[str, Position]:
        """
        Fold an unordered batch into positions keyed by instrument.

        Args:
            records: Transaction records in arrival order

        Returns:
            Dict[str, Position]: Positions keyed by normalized instrument
        """
        positions: Dict[str, Position] = {}
        skipped = 0

        for record in self.order_records(records):
            if not record.instrument:
                skipped += 1
                continue
            positions[record.instrument] = self.fold(positions.get(record.instrument), record)

        if skipped:
            logger.warning(f"Skipped {skipped} records without an instrument code")

        logger.info(f"Folded records into {len(positions)} positions")
        return positions

    def fold_instrument(self, instrument: str,
                        records: Iterable[TransactionRecord]) -> Optional[Position]:
        """Re-fold the complete history of a single instrument."""
        key = normalize_instrument(instrument)
        history = [record for record in records if record.instrument == key]
        return self.fold_all(history).get(key)


class NettingDetector:
    """Reports instruments that were traded back to exactly zero."""

    def detect(self, positions: Iterable[Position]) -> List[str]:
        netted = [
            position.instrument
            for position in positions
            if position.signed_quantity == 0 and position.transaction_count > 0
        ]
        if netted:
            logger.warning(f"Instruments netted to zero: {', '.join(netted)}")
        return netted


class RevaluationCalculator:
    """Marks a position to the last observed close price."""

    def __init__(self, valuation_bound: float = DEFAULT_VALUATION_BOUND):
        self.valuation_bound = valuation_bound

    def revalue(self, position: Position) -> Revaluation:
        """
        Compute market value and mark-to-market adjustment.

        A position without a close price has a market value of 0 and an
        adjustment of minus its cost basis.
        """
        close_price = position.most_recent_close_price
        if close_price is None or _is_nan(close_price):
            market_value = 0.0
        else:
            market_value = clamp_valuation(position.signed_quantity * close_price, self.valuation_bound)

        adjustment = clamp_valuation(market_value - position.cost_basis_value, self.valuation_bound)
        return Revaluation(market_value=market_value, mark_to_market_adjustment=adjustment)

    def revalue_all(self, positions: Iterable[Position]) -> List[Tuple[Position, Revaluation]]:
        return [(position, self.revalue(position)) for position in positions]


def _is_nan(value: Any) -> bool:
    return isinstance(value, float) and math.isnan(value)
