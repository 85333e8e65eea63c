"""
Equities Balance Service

Orchestrates the daily balance pipeline:
- Ingest confirmations and opening balances (annotated with payment dates)
- Re-fold the stored history into positions
- Overlay manual adjustments
- Revalue against close prices
- Report instruments netted to zero separately
- Export the balance with the back-office rounding rules
- Regenerate the FIP export or the original file of a stored upload

Author: cl_equity_ledger team
Date: 2025
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Dict, List, Optional, Any, Tuple

import pandas as pd
import yaml

from ledger.adjustments import AdjustmentRemoval, ManualAdjustment, ManualAdjustmentOverlay
from ledger.finix_export import FipExporter
from ledger.holiday_calendar import HolidayCalendar, HolidaySet
from ledger.loader import (
    LoadResult,
    create_confirmation_loader,
    create_opening_balance_loader,
)
from ledger.market_utils import DEFAULT_VALUATION_BOUND, normalize_instrument
from ledger.portfolio import (
    NettingDetector,
    Position,
    PositionAggregator,
    Revaluation,
    RevaluationCalculator,
)
from ledger.settlement_manager import SettlementDateCalculator
from ledger.store import (
    SOURCE_CONFIRMATIONS,
    SOURCE_OPENING_BALANCE,
    LedgerStore,
    create_ledger_store,
)

# Configure logging
logger = logging.getLogger(__name__)

TOTALS_LABEL = "Valorizacion de Cartera Acciones"

BALANCE_COLUMNS = [
    'N°',
    'Tipo Operación',
    'INSTRUMENTO',
    'EXISTENCIA',
    'PRECIO COMPRA',
    'PRECIO CIERRE',
    'VALORIZACIÓN COMPRA',
    'VALORIZACIÓN CIERRE',
    'AJUSTE A MERCADO',
]


@dataclass
class BalanceRow:
    """One reported position with its revaluation."""
    position: Position
    revaluation: Revaluation

    def to_dict(self) -> Dict[str, Any]:
        return self.position.to_dict(self.revaluation)


@dataclass
class BalanceReport:
    """Positions with non-zero quantity plus the netting report."""
    rows: List[BalanceRow] = field(default_factory=list)
    netted_instruments: List[str] = field(default_factory=list)

    @property
    def total_cost_basis(self) -> float:
        return sum(row.position.cost_basis_value for row in self.rows)

    @property
    def total_market_value(self) -> float:
        return sum(row.revaluation.market_value for row in self.rows)

    @property
    def total_adjustment(self) -> float:
        return sum(row.revaluation.mark_to_market_adjustment for row in self.rows)

    def get(self, instrument: str) -> Optional[BalanceRow]:
        key = normalize_instrument(instrument)
        for row in self.rows:
            if row.position.instrument == key:
                return row
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'positions': [row.to_dict() for row in self.rows],
            'nettedInstruments': list(self.netted_instruments),
            'totals': {
                'costBasisValue': round(self.total_cost_basis, 2),
                'marketValue': round(self.total_market_value, 2),
                'markToMarketAdjustment': round(self.total_adjustment, 2),
            },
        }

    def to_dataframe(self) -> pd.DataFrame:
        """
        Balance sheet with the export rounding.

        Quantity is rounded to an integer, prices to 2 decimals and row
        valuations to integers; the totals row keeps 2 decimals.
        """
        records = []
        for number, row in enumerate(self.rows, start=1):
            position, revaluation = row.position, row.revaluation
            records.append({
                'N°': number,
                'Tipo Operación': position.classification,
                'INSTRUMENTO': position.instrument,
                'EXISTENCIA': int(round(position.signed_quantity)),
                'PRECIO COMPRA': round(position.weighted_average_cost, 2),
                'PRECIO CIERRE': round(position.most_recent_close_price or 0.0, 2),
                'VALORIZACIÓN COMPRA': int(round(position.cost_basis_value)),
                'VALORIZACIÓN CIERRE': int(round(revaluation.market_value)),
                'AJUSTE A MERCADO': int(round(revaluation.mark_to_market_adjustment)),
            })

        # Totals label sits outside the INSTRUMENTO column so a re-imported
        # export rejects the row as having no instrument
        records.append({
            'N°': None,
            'Tipo Operación': TOTALS_LABEL,
            'INSTRUMENTO': None,
            'EXISTENCIA': None,
            'PRECIO COMPRA': None,
            'PRECIO CIERRE': None,
            'VALORIZACIÓN COMPRA': round(self.total_cost_basis, 2),
            'VALORIZACIÓN CIERRE': round(self.total_market_value, 2),
            'AJUSTE A MERCADO': round(self.total_adjustment, 2),
        })
        return pd.DataFrame(records, columns=BALANCE_COLUMNS)

    def export_csv(self, output_path: str) -> Path:
        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.to_dataframe().to_csv(path, index=False, encoding='utf-8-sig')
        logger.info(f"Balance exported to {path} ({len(self.rows)} positions)")
        return path


class BalanceService:
    """
    Builds the equities balance from the stored history.

    Every report is re-folded from the full stored history, so deleting
    a batch or an adjustment is reflected on the next call.
    """

    def __init__(self, store: LedgerStore, holidays: Optional[HolidaySet] = None,
                 valuation_bound: float = DEFAULT_VALUATION_BOUND,
                 config: Optional[Dict[str, Any]] = None):
        """
        Initialize the service.

        Args:
            store: Persistence gateway
            holidays: Holiday markers used for payment dates
            valuation_bound: Absolute valuation clamp
            config: Configuration dictionary for the loaders
        """
        self.store = store
        self.config = config or {}
        self.calendar = HolidayCalendar(holidays)
        self.settlement = SettlementDateCalculator(self.calendar)
        self.aggregator = PositionAggregator(valuation_bound)
        self.revaluer = RevaluationCalculator(valuation_bound)
        self.netting = NettingDetector()
        self.valuation_bound = valuation_bound
        self.confirmation_loader = create_confirmation_loader(self.config)
        self.opening_balance_loader = create_opening_balance_loader(self.config)

        logger.info(f"BalanceService initialized with {len(self.calendar.holidays)} holiday markers")

    # Ingestion

    def _store_load(self, result: LoadResult, file_path: str, source_kind: str,
                    replace_existing: bool = False) -> Tuple[int, LoadResult]:
        annotated = self.settlement.annotate(result.records)
        result.records = annotated
        content = Path(file_path).read_bytes()
        batch_id = self.store.save_batch(annotated, Path(file_path).name, source_kind,
                                         content=content, replace_existing=replace_existing)
        return batch_id, result

    def ingest_confirmations(self, file_path: str,
                             processing_date: Optional[date] = None) -> Tuple[int, LoadResult]:
        """
        Load a confirmation file, annotate payment dates and store it.

        Args:
            file_path: Confirmation CSV/XLSX
            processing_date: Date the file is processed (today if omitted)

        Returns:
            Tuple[int, LoadResult]: Batch id and the load result
        """
        result = self.confirmation_loader.load(file_path)
        if result.records:
            result.warnings.extend(self.settlement.trade_date_warnings(result.trade_date, processing_date))
        return self._store_load(result, file_path, SOURCE_CONFIRMATIONS)

    def upload_opening_balance(self, file_path: str,
                               as_of: Optional[date] = None) -> Tuple[int, LoadResult]:
        """Load an opening balance, replacing earlier opening balances."""
        result = self.opening_balance_loader.load(file_path, as_of=as_of)
        return self._store_load(result, file_path, SOURCE_OPENING_BALANCE, replace_existing=True)

    def delete_batch(self, batch_id: int) -> bool:
        return self.store.delete_batch(batch_id)

    def list_batches(self) -> List[Dict[str, Any]]:
        return self.store.list_batches()

    def _require_batch(self, batch_id: int) -> Dict[str, Any]:
        batch = self.store.get_batch(batch_id)
        if batch is None:
            logger.error(f"Upload batch {batch_id} not found")
            raise LookupError(f"Upload batch {batch_id} not found")
        return batch

    def export_batch(self, batch_id: int, output_dir: str, workbook: bool = False) -> List[Path]:
        """
        Regenerate the FIP export of a stored confirmation batch.

        Payment dates are the ones stored at ingestion.

        Args:
            batch_id: Upload batch id
            output_dir: Destination directory
            workbook: Write one .xlsx with both sheets instead of two CSV files

        Returns:
            List[Path]: Written files

        Raises:
            LookupError: If the batch does not exist
            ValueError: If the batch is not a confirmation upload or has no records
        """
        batch = self._require_batch(batch_id)
        if batch['source_kind'] != SOURCE_CONFIRMATIONS:
            raise ValueError(f"Upload batch {batch_id} is a {batch['source_kind']} upload, not confirmations")

        records = self.store.load_transactions(batch_id=batch_id)
        exporter = FipExporter(self.confirmation_loader.broker_directory)
        if workbook:
            return [exporter.write_workbook(records, output_dir)]
        return list(exporter.write_csv(records, output_dir))

    def save_original(self, batch_id: int, output_dir: str) -> Path:
        """
        Write the originally uploaded file of a batch back to disk.

        Raises:
            LookupError: If the batch does not exist
            ValueError: If the batch was stored without its file content
        """
        batch = self._require_batch(batch_id)
        content = self.store.get_batch_content(batch_id)
        if content is None:
            raise ValueError(f"Upload batch {batch_id} has no stored file content")

        directory = Path(output_dir)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / Path(batch['file_name']).name
        path.write_bytes(content)
        logger.info(f"Original file of batch {batch_id} written to {path}")
        return path

    # Positions

    def compute_positions(self) -> Dict[str, Position]:
        """Fold the stored history into positions (no overlay)."""
        return self.aggregator.fold_all(self.store.load_transactions())

    def get_balance(self) -> BalanceReport:
        """
        Build the balance report.

        The netting report is taken from the computed positions before the
        overlay; reported rows are the overlaid positions with non-zero
        quantity, sorted by closing valuation (descending).

        Returns:
            BalanceReport: Current balance
        """
        computed = self.compute_positions()
        netted = self.netting.detect(computed.values())

        overlay = ManualAdjustmentOverlay(self.store.get_adjustments(), self.valuation_bound)
        adjusted = overlay.apply_all(computed)

        rows = [
            BalanceRow(position, revaluation)
            for position, revaluation in self.revaluer.revalue_all(adjusted.values())
            if not position.is_flat
        ]
        rows.sort(key=lambda row: (-row.revaluation.market_value, row.position.instrument))

        report = BalanceReport(rows=rows, netted_instruments=netted)
        logger.info(f"Balance built: {len(rows)} positions, {len(netted)} netted, "
                    f"market value {report.total_market_value:,.2f}")
        return report

    # Adjustments and close prices

    def set_adjustment(self, adjustment: ManualAdjustment) -> ManualAdjustment:
        """
        Save a manual adjustment (merged with any stored one).

        A close-price override is also stamped on the instrument's Buy
        transactions that have no close price yet.
        """
        stored = self.store.upsert_adjustment(adjustment)
        if adjustment.override_close_price is not None:
            self.store.update_close_price(adjustment.instrument, adjustment.override_close_price)
        return stored

    def remove_adjustment(self, instrument: str) -> AdjustmentRemoval:
        """Remove an adjustment; the next balance re-folds the history."""
        return self.store.remove_adjustment(instrument)

    def update_close_price(self, instrument: str, close_price: float) -> int:
        return self.store.update_close_price(instrument, close_price)


def load_config(config_path: str) -> Dict[str, Any]:
    """Load configuration from YAML file."""
    try:
        with open(config_path, 'r', encoding='utf-8') as file:
            return yaml.safe_load(file) or {}
    except FileNotFoundError:
        logger.error(f"Configuration file not found: {config_path}")
        raise
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML configuration: {e}")
        raise


def create_balance_service(config_path: str = "config/settings.yaml",
                           holidays: Optional[HolidaySet] = None) -> BalanceService:
    """
    Create a BalanceService from the configuration file.

    Args:
        config_path: Path to settings.yaml
        holidays: Holiday markers acquired by the caller

    Returns:
        BalanceService instance
    """
    config = load_config(config_path)
    bound = float(config.get('market', {}).get('valuation_bound', DEFAULT_VALUATION_BOUND))
    return BalanceService(create_ledger_store(config), holidays, valuation_bound=bound, config=config)
