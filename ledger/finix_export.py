"""
Back-office (FIP) export of daily confirmations.

Each confirmation becomes one row of the fixed "Control Operaciones
Diarias FIP" layout; the broker table with commission rates is written
alongside as "Corredores".
"""

import logging
from pathlib import Path
from typing import Dict, List, Any, Iterable, Tuple, Optional

import pandas as pd

from ledger.market_utils import BrokerDirectory
from ledger.portfolio import Side, TransactionRecord

logger = logging.getLogger(__name__)

FIP_COLUMNS = [
    'Fecha', 'Codigo', 'Tipo Operación', 'Cantidad', 'Precio', 'Dcto.', 'Comision', 'Iva',
    'Abono', 'Cargo', 'Saldo', 'Fecha Pago', 'Corredor', 'Tipo', '', 'Tasa', 'Vcto',
]
BROKER_COLUMNS = ['Cod.', 'Corredor', '%', '% Otros']

FIP_FILE_PREFIX = "Control Operaciones Diarias FIP"


def fip_row(record: TransactionRecord) -> Dict[str, Any]:
    """Map one annotated record to a FIP row."""
    is_buy = record.side == Side.BUY
    label = 'Compra' if is_buy else 'Venta'
    amount = int(round(record.amount))

    return {
        'Fecha': record.trade_date.strftime('%d-%m-%y') if record.trade_date else '',
        'Codigo': record.broker_code,
        'Tipo Operación': f"{label} {record.instrument.lower()}",
        'Cantidad': record.quantity,
        'Precio': record.price,
        'Dcto.': 0,
        'Comision': 0,
        'Iva': 0,
        'Abono': 0 if is_buy else amount,
        'Cargo': amount if is_buy else 0,
        'Saldo': 0,
        'Fecha Pago': record.settlement_date.strftime('%d-%m-%Y') if record.settlement_date else '',
        'Corredor': record.broker_name.strip(),
        'Tipo': label,
        '': '',
        'Tasa': '',
        'Vcto': '',
    }


class FipExporter:
    """Writes the FIP sheet and the broker table for a confirmation batch."""

    def __init__(self, broker_directory: Optional[BrokerDirectory] = None):
        self.broker_directory = broker_directory or BrokerDirectory()

    def build_frame(self, records: Iterable[TransactionRecord]) -> pd.DataFrame:
        rows = [fip_row(record) for record in records]
        return pd.DataFrame(rows, columns=FIP_COLUMNS)

    def broker_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.broker_directory.to_rows(), columns=BROKER_COLUMNS)

    @staticmethod
    def file_stem(records: List[TransactionRecord]) -> str:
        """
        File name (without extension) dated from the first record.

        Raises:
            ValueError: If there is no record with a trade date
        """
        for record in records:
            if record.trade_date is not None:
                return f"{FIP_FILE_PREFIX} {record.trade_date.strftime('%d.%m.%Y')}"
        raise ValueError("No dated records to export")

    def write_csv(self, records: Iterable[TransactionRecord], output_dir: str) -> Tuple[Path, Path]:
        """
        Write the FIP rows and the broker table as two CSV files.

        Args:
            records: Records annotated with settlement dates
            output_dir: Destination directory

        Returns:
            Tuple[Path, Path]: FIP file and broker table file
        """
        records = list(records)
        stem = self.file_stem(records)
        directory = Path(output_dir)
        directory.mkdir(parents=True, exist_ok=True)

        fip_path = directory / f"{stem}.csv"
        brokers_path = directory / f"Corredores {stem[len(FIP_FILE_PREFIX) + 1:]}.csv"

        self.build_frame(records).to_csv(fip_path, index=False, encoding='utf-8-sig')
        self.broker_frame().to_csv(brokers_path, index=False, encoding='utf-8-sig')

        logger.info(f"Wrote {len(records)} FIP rows to {fip_path}")
        return fip_path, brokers_path

    def write_workbook(self, records: Iterable[TransactionRecord], output_dir: str) -> Path:
        """Write FIP and Corredores as two sheets of one .xlsx workbook."""
        records = list(records)
        directory = Path(output_dir)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{self.file_stem(records)}.xlsx"

        with pd.ExcelWriter(path, engine='openpyxl') as writer:
            self.build_frame(records).to_excel(writer, sheet_name='FIP', index=False)
            self.broker_frame().to_excel(writer, sheet_name='Corredores', index=False)

        logger.info(f"Wrote {len(records)} FIP rows to {path}")
        return path
