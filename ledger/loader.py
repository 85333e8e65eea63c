"""
Load brokerage spreadsheets into transaction records

This module provides functionality to:
- Read confirmation files (CSV or XLSX) with positional A..Z columns
- Detect the trade side from the house broker marker column
- Resolve broker names through the broker directory
- Reject rows with empty or excluded instruments, with a reason
- Load opening balance sheets (INSTRUMENTO / EXISTENCIA / PRECIO COMPRA /
  VALORIZACIÓN COMPRA) as tagged opening-balance records

"""

import logging
import math
import string
import unicodedata
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Optional, Dict, List, Any, Tuple

import pandas as pd

from ledger.market_utils import (
    DEFAULT_EXCLUDED_MARKERS,
    DEFAULT_HOUSE_BROKER_CODE,
    BrokerDirectory,
    create_broker_directory,
    map_settlement_condition,
    normalize_instrument,
    parse_numeric_value,
    parse_trade_date,
    rejection_reason,
)
from ledger.portfolio import TransactionRecord, Side

# Configure logging
logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = ('.csv', '.txt', '.xlsx', '.xlsm')

OPENING_BALANCE_COLUMNS = {
    'instrument': ('INSTRUMENTO', 'NEMOTECNICO'),
    'quantity': ('EXISTENCIA', 'CANTIDAD'),
    'price': ('PRECIO COMPRA',),
    'valuation': ('VALORIZACION COMPRA',),
    'close_price': ('PRECIO CIERRE',),
}


@dataclass
class LoadResult:
    """Outcome of loading one spreadsheet."""
    records: List[TransactionRecord] = field(default_factory=list)
    rejected: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    skipped_blank_rows: int = 0

    @property
    def trade_date(self) -> Optional[date]:
        """Trade date of the first accepted record."""
        for record in self.records:
            if record.trade_date is not None:
                return record.trade_date
        return None

    def reject(self, row_number: int, reason: str, raw: Dict[str, Any]):
        self.rejected.append({'row': row_number, 'reason': reason, 'raw': raw})
        logger.warning(f"Row {row_number} rejected: {reason}")

    def summary(self) -> Dict[str, Any]:
        return {
            'accepted': len(self.records),
            'rejected': len(self.rejected),
            'skipped_blank_rows': self.skipped_blank_rows,
            'warnings': list(self.warnings),
        }


def column_letter(index: int) -> str:
    """Spreadsheet letter for a zero-based column index (0 -> A, 26 -> AA)."""
    letters = ''
    index += 1
    while index > 0:
        index, remainder = divmod(index - 1, 26)
        letters = string.ascii_uppercase[remainder] + letters
    return letters


def detect_delimiter(path: Path) -> str:
    """
    Pick the delimiter of a text spreadsheet from its first non-empty line.

    Chilean exports are usually semicolon separated because the comma is
    the decimal mark; the most frequent of ';', ',' and tab wins.
    """
    with open(path, 'r', encoding='utf-8-sig') as f:
        for line in f:
            if line.strip():
                counts = {delimiter: line.count(delimiter) for delimiter in (';', ',', '\t')}
                best = max(counts, key=counts.get)
                return best if counts[best] > 0 else ','
    return ','


def read_sheet(file_path: str) -> pd.DataFrame:
    """
    Read the first sheet of a CSV or Excel file as raw cells.

    Columns are renamed to spreadsheet letters (A, B, C, ...). CSV cells
    are kept as strings so no locale-dependent conversion happens before
    the numeric parser sees them; Excel cells keep their stored type
    (numbers, dates, text) and empty cells read as ''.

    Args:
        file_path: Path to the spreadsheet

    Returns:
        pd.DataFrame: Raw cells with letter column names

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the extension is not supported
    """
    path = Path(file_path)
    if not path.exists():
        logger.error(f"Spreadsheet not found: {path}")
        raise FileNotFoundError(f"Spreadsheet not found: {path}")

    suffix = path.suffix.lower()
    if suffix not in SUPPORTED_EXTENSIONS:
        raise ValueError(f"Unsupported spreadsheet extension '{suffix}'. "
                         f"Supported: {', '.join(SUPPORTED_EXTENSIONS)}")

    if suffix in ('.xlsx', '.xlsm'):
        frame = pd.read_excel(path, sheet_name=0, header=None, na_filter=False, engine='openpyxl')
    else:
        frame = pd.read_csv(path, header=None, dtype=str, sep=detect_delimiter(path),
                            keep_default_na=False, encoding='utf-8-sig')

    frame.columns = [column_letter(i) for i in range(len(frame.columns))]
    logger.info(f"Read {len(frame)} rows x {len(frame.columns)} columns from {path.name}")
    return frame


def _cell(row: Dict[str, Any], column: str) -> Any:
    """
    Raw cell value; blanks (None, NaN, NaT, whitespace) read as ''.

    Text is stripped; numbers and dates typed in a workbook are returned
    unchanged so they never go through the Chilean text parser.
    """
    value = row.get(column)
    if value is None or value is pd.NaT:
        return ''
    if isinstance(value, float) and math.isnan(value):
        return ''
    if isinstance(value, str):
        text = value.strip()
        return '' if text.lower() == 'nan' else text
    return value


def _is_blank(value: Any) -> bool:
    return isinstance(value, str) and value == ''


def _text(row: Dict[str, Any], column: str) -> str:
    """Cell as text for code and name columns; 832.0 (from Excel) reads as '832'."""
    value = _cell(row, column)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    text = str(value)
    return text[:-2] if text.endswith('.0') and text[:-2].isdigit() else text


def _normalize_header(value: Any) -> str:
    text = unicodedata.normalize('NFKD', str(value or ''))
    text = ''.join(char for char in text if not unicodedata.combining(char))
    return ' '.join(text.upper().split())


class ConfirmationLoader:
    """
    Loads daily trade confirmations into TransactionRecords.

    Column layout of a confirmation:
        A  trade date           C/D  selling broker code / name
        E/F buying broker code / name
        G  quantity             H    price
        I  operation type (PM / PH, anything else settles CN)
        L  instrument           S    buy marker (house code means Buy)
    """

    def __init__(self, broker_directory: Optional[BrokerDirectory] = None,
                 house_broker_code: str = DEFAULT_HOUSE_BROKER_CODE,
                 excluded_markers: Tuple[str, ...] = DEFAULT_EXCLUDED_MARKERS):
        self.broker_directory = broker_directory or BrokerDirectory()
        self.house_broker_code = str(house_broker_code).strip()
        self.excluded_markers = tuple(excluded_markers)

    def load(self, file_path: str) -> LoadResult:
        """Read and parse a confirmation file."""
        logger.info(f"Loading confirmations from {file_path}")
        return self.load_frame(read_sheet(file_path))

    def load_frame(self, frame: pd.DataFrame) -> LoadResult:
        """
        Parse confirmation rows from a letter-columned frame.

        Rows missing the trade date or instrument cell are skipped silently
        (blank and padding lines); everything else is either accepted or
        rejected with a reason.
        """
        result = LoadResult()

        for position, row in enumerate(frame.to_dict(orient='records'), start=1):
            raw_date = _cell(row, 'A')
            raw_instrument = _text(row, 'L')
            if _is_blank(raw_date) or not raw_instrument:
                result.skipped_blank_rows += 1
                continue

            trade_date = parse_trade_date(raw_date)
            if trade_date is None:
                result.reject(position, f"invalid trade date '{raw_date}'", row)
                continue

            instrument = normalize_instrument(raw_instrument)
            reason = rejection_reason(instrument, self.excluded_markers)
            if reason:
                result.reject(position, reason, row)
                continue

            result.records.append(self._build_record(row, trade_date, instrument))

        logger.info(f"Parsed {len(result.records)} confirmations "
                    f"({len(result.rejected)} rejected, {result.skipped_blank_rows} blank)")
        return result

    def _build_record(self, row: Dict[str, Any], trade_date: date, instrument: str) -> TransactionRecord:
        is_buy = _text(row, 'S') == self.house_broker_code

        if is_buy:
            code, name = _cell(row, 'E'), _text(row, 'F')
        else:
            code, name = _cell(row, 'C'), _text(row, 'D')
        broker_code = int(parse_numeric_value(code))

        return TransactionRecord.from_dict({
            'date': trade_date,
            'instrument': instrument,
            'quantity': _cell(row, 'G'),
            'price': _cell(row, 'H'),
            'side': Side.BUY if is_buy else Side.SELL,
            'brokerCode': broker_code,
            'brokerName': self.broker_directory.resolve(broker_code, name),
            'settlementCondition': map_settlement_condition(_text(row, 'I')),
        })


class OpeningBalanceLoader:
    """
    Loads an opening balance sheet into tagged opening-balance records.

    The header row is located by its INSTRUMENTO / EXISTENCIA labels, so
    title rows above it are ignored. A negative EXISTENCIA is a short
    position and becomes a Sell record.
    """

    def __init__(self, excluded_markers: Tuple[str, ...] = DEFAULT_EXCLUDED_MARKERS):
        self.excluded_markers = tuple(excluded_markers)

    def load(self, file_path: str, as_of: Optional[date] = None) -> LoadResult:
        logger.info(f"Loading opening balance from {file_path}")
        return self.load_frame(read_sheet(file_path), as_of=as_of)

    def _locate_columns(self, frame: pd.DataFrame) -> Tuple[int, Dict[str, str]]:
        for row_index in range(len(frame)):
            labels = {_normalize_header(value): column for column, value in frame.iloc[row_index].items()}
            mapping = {}
            for field_name, candidates in OPENING_BALANCE_COLUMNS.items():
                for candidate in candidates:
                    if candidate in labels:
                        mapping[field_name] = labels[candidate]
                        break
            if 'instrument' in mapping and 'quantity' in mapping:
                return row_index, mapping

        raise ValueError("Opening balance sheet has no INSTRUMENTO / EXISTENCIA header row")

    def load_frame(self, frame: pd.DataFrame, as_of: Optional[date] = None) -> LoadResult:
        """
        Parse opening balance rows.

        Args:
            frame: Letter-columned raw frame
            as_of: Date stamped on the records (today if omitted)

        Returns:
            LoadResult: Parsed records and rejections

        Raises:
            ValueError: If no header row is found
        """
        header_index, columns = self._locate_columns(frame)
        as_of = as_of or date.today()
        result = LoadResult()

        rows = frame.iloc[header_index + 1:].to_dict(orient='records')
        for offset, row in enumerate(rows, start=header_index + 2):
            if all(_is_blank(_cell(row, column)) for column in row):
                result.skipped_blank_rows += 1
                continue

            instrument = normalize_instrument(_text(row, columns['instrument']))
            reason = rejection_reason(instrument, self.excluded_markers)
            if reason:
                result.reject(offset, reason, row)
                continue

            quantity = parse_numeric_value(_cell(row, columns['quantity']))
            price = parse_numeric_value(_cell(row, columns['price'])) if 'price' in columns else 0.0
            valuation = None
            if 'valuation' in columns and not _is_blank(_cell(row, columns['valuation'])):
                valuation = parse_numeric_value(_cell(row, columns['valuation']))
            close_price = None
            if 'close_price' in columns and not _is_blank(_cell(row, columns['close_price'])):
                close_price = parse_numeric_value(_cell(row, columns['close_price']))

            result.records.append(TransactionRecord.from_dict({
                'date': as_of,
                'instrument': instrument,
                'quantity': quantity,
                'price': price,
                'side': Side.SELL if quantity < 0 else Side.BUY,
                'closePrice': close_price,
                'sourceIsOpeningBalance': True,
                'explicitValuation': valuation,
            }))

        logger.info(f"Parsed {len(result.records)} opening balance positions "
                    f"({len(result.rejected)} rejected)")
        return result


def create_confirmation_loader(config: Dict[str, Any] = None) -> ConfirmationLoader:
    """
    Create a ConfirmationLoader with optional configuration.

    Args:
        config: Optional configuration dictionary

    Returns:
        ConfirmationLoader instance
    """
    market = (config or {}).get('market', {})
    return ConfirmationLoader(
        broker_directory=create_broker_directory(config),
        house_broker_code=str(market.get('house_broker_code', DEFAULT_HOUSE_BROKER_CODE)),
        excluded_markers=tuple(market.get('excluded_instrument_markers', DEFAULT_EXCLUDED_MARKERS)),
    )


def create_opening_balance_loader(config: Dict[str, Any] = None) -> OpeningBalanceLoader:
    market = (config or {}).get('market', {})
    return OpeningBalanceLoader(
        excluded_markers=tuple(market.get('excluded_instrument_markers', DEFAULT_EXCLUDED_MARKERS)),
    )
