"""
Manual Adjustment Overlay

User overrides applied on top of computed positions:
- At most one adjustment per instrument
- Quantity / cost overrides recompute the cost basis
- Close price override replaces only the close price
- Upsert merges with the stored adjustment field by field
- Removal reports "not found" instead of failing

Author: cl_equity_ledger team
Date: 2025
"""

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Any, Iterable
import logging

from ledger.market_utils import (
    DEFAULT_VALUATION_BOUND,
    clamp_valuation,
    normalize_instrument,
    parse_numeric_value,
)
from ledger.portfolio import Position

# Configure logging
logger = logging.getLogger(__name__)


class AdjustmentRemoval(Enum):
    """Outcome of removing an adjustment."""
    REMOVED = "removed"
    NOT_FOUND = "not_found"


@dataclass
class ManualAdjustment:
    """Override values for one instrument; None means "keep computed"."""
    instrument: str
    override_quantity: Optional[float] = None
    override_cost: Optional[float] = None
    override_close_price: Optional[float] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.instrument = normalize_instrument(self.instrument)

    @property
    def is_empty(self) -> bool:
        return (self.override_quantity is None and self.override_cost is None
                and self.override_close_price is None)

    def merge(self, other: 'ManualAdjustment') -> 'ManualAdjustment':
        """Fields present on `other` replace ours; omitted fields are kept."""
        return ManualAdjustment(
            instrument=self.instrument,
            override_quantity=_first_present(other.override_quantity, self.override_quantity),
            override_cost=_first_present(other.override_cost, self.override_cost),
            override_close_price=_first_present(other.override_close_price, self.override_close_price),
            updated_at=other.updated_at or self.updated_at,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ManualAdjustment':
        """
        Build an adjustment from a boundary dictionary.

        Unknown keys are ignored, so a caller-supplied valuation is never
        accepted.

        Raises:
            ValueError: If no instrument is given
        """
        instrument = normalize_instrument(data.get('instrument'))
        if not instrument:
            raise ValueError("Manual adjustment requires an instrument")

        def optional_number(*keys):
            for key in keys:
                if data.get(key) is not None and data.get(key) != '':
                    return parse_numeric_value(data[key])
            return None

        return cls(
            instrument=instrument,
            override_quantity=optional_number('override_quantity', 'overrideQuantity', 'existencia'),
            override_cost=optional_number('override_cost', 'overrideCost', 'precio_compra'),
            override_close_price=optional_number('override_close_price', 'overrideClosePrice',
                                                 'precio_cierre'),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            'instrument': self.instrument,
            'overrideQuantity': self.override_quantity,
            'overrideCost': self.override_cost,
            'overrideClosePrice': self.override_close_price,
            'updatedAt': self.updated_at.isoformat() if self.updated_at else None,
        }


def _first_present(preferred: Optional[float], fallback: Optional[float]) -> Optional[float]:
    return preferred if preferred is not None else fallback


class ManualAdjustmentOverlay:
    """
    In-memory adjustment book with the override rules.

    The overlay never re-folds history itself; after a removal the caller
    rebuilds the position from the aggregator.
    """

    def __init__(self, adjustments: Optional[Iterable[ManualAdjustment]] = None,
                 valuation_bound: float = DEFAULT_VALUATION_BOUND):
        self.valuation_bound = valuation_bound
        self.adjustments: Dict[str, ManualAdjustment] = {}
        for adjustment in adjustments or []:
            self.upsert(adjustment)

    def upsert(self, adjustment: ManualAdjustment) -> ManualAdjustment:
        """
        Store an adjustment, merging with any existing one.

        Args:
            adjustment: New override values

        Returns:
            ManualAdjustment: The stored (merged) adjustment
        """
        existing = self.adjustments.get(adjustment.instrument)
        stored = existing.merge(adjustment) if existing else adjustment
        self.adjustments[stored.instrument] = stored
        logger.info(f"Stored manual adjustment for {stored.instrument}")
        return stored

    def get(self, instrument: str) -> Optional[ManualAdjustment]:
        return self.adjustments.get(normalize_instrument(instrument))

    def remove(self, instrument: str) -> AdjustmentRemoval:
        """Delete the stored adjustment for an instrument."""
        key = normalize_instrument(instrument)
        if key not in self.adjustments:
            logger.warning(f"No manual adjustment stored for {key}")
            return AdjustmentRemoval.NOT_FOUND
        del self.adjustments[key]
        logger.info(f"Removed manual adjustment for {key}")
        return AdjustmentRemoval.REMOVED

    def apply(self, position: Position, adjustment: Optional[ManualAdjustment]) -> Position:
        """
        Apply one adjustment to a position and return the new position.

        Args:
            position: Computed position
            adjustment: Override values (None leaves the position unchanged)

        Returns:
            Position: Overridden position
        """
        if adjustment is None or adjustment.is_empty:
            return position

        quantity = position.signed_quantity
        cost = position.weighted_average_cost
        cost_basis = position.cost_basis_value
        close_price = position.most_recent_close_price

        if adjustment.override_quantity is not None:
            quantity = parse_numeric_value(adjustment.override_quantity)
        if adjustment.override_cost is not None:
            cost = parse_numeric_value(adjustment.override_cost)
        if adjustment.override_quantity is not None or adjustment.override_cost is not None:
            cost_basis = clamp_valuation(round(quantity * cost, 2), self.valuation_bound)
        if adjustment.override_close_price is not None:
            close_price = parse_numeric_value(adjustment.override_close_price)

        logger.debug(f"Applied manual adjustment to {position.instrument}: "
                     f"qty {quantity}, cost {cost}, close {close_price}")

        return replace(
            position,
            signed_quantity=quantity,
            weighted_average_cost=cost,
            cost_basis_value=cost_basis,
            most_recent_close_price=close_price,
            has_manual_adjustment=True,
        )

    def apply_all(self, positions: Dict[str, Position]) -> Dict[str, Position]:
        """
        Apply every stored adjustment.

        An adjustment for an instrument with no computed position creates
        the position from the override values alone.
        """
        result = dict(positions)
        for instrument, adjustment in self.adjustments.items():
            base = result.get(instrument, Position(instrument=instrument))
            result[instrument] = self.apply(base, adjustment)
        return result
