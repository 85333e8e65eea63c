"""
Chilean Market Utilities - Record Normalization

This module provides the normalization rules applied to brokerage
confirmation rows before they reach the position engine:
- Instrument code normalization and exclusion markers
- Chilean-formatted numeric parsing (1.234.567,89 and friends)
- Settlement condition mapping (CN / PM / PH)
- Trade date parsing (Excel serials, YYYYMMDD, YYMMDD, ISO)
- Local wall-clock date normalization in the market timezone
- Valuation clamping

Author: cl_equity_ledger team
Date: 2025
"""

from typing import Dict, Any, Optional, List, Tuple
from datetime import datetime, date, timedelta
import logging
import math
import re
from decimal import Decimal

import numpy as np
import pandas as pd
import pytz

# Configure logging
logger = logging.getLogger(__name__)

MARKET_TIMEZONE = 'America/Santiago'
DEFAULT_VALUATION_BOUND = 1e15
DEFAULT_EXCLUDED_MARKERS = ('CFI', 'OSA')
DEFAULT_HOUSE_BROKER_CODE = '832'

# Excel serial day 0 (accounts for the 1900 leap year bug)
EXCEL_EPOCH = date(1899, 12, 30)

_TRAILING_NON_ALNUM = re.compile(r'[^A-Za-z0-9]+$')
_THOUSANDS_DOT = re.compile(r'^-?\d{1,3}(\.\d{3})+(,\d+)?$')      # 1.234.567,89
_THOUSANDS_COMMA = re.compile(r'^-?\d{1,3}(,\d{3})+(\.\d+)?$')    # 1,234,567.89

DEFAULT_BROKERS: Dict[int, str] = {
    1: 'EMF',
    20: 'SECURITY',
    35: 'LARRAIN VIAL',
    47: 'GBM',
    48: 'SCOTIA',
    51: 'NEVASA',
    56: 'DEUTSCHE',
    58: 'BCI',
    61: 'MERRIL',
    66: 'CREDICORP CAPITAL',
    70: 'BTG PACTUAL',
    72: 'CORPBANCA',
    76: 'EUROAMERICA',
    82: 'BICE',
    83: 'CRUZ DEL SUR',
    85: 'SCOTIA',
    86: 'BANCHILE',
    88: 'SANTANDER',
    90: 'CONSORCIO',
    91: 'PENTA',
}

# Commission rates printed in the back-office "Corredores" table
DEFAULT_BROKER_RATES: Dict[int, Tuple[str, str]] = {
    1: ('', ''),
    20: ('0.020%', ''),
    35: ('0.050%', '0.100%'),
    47: ('0.021%', ''),
    48: ('0.050%', ''),
    51: ('0.050%', ''),
    56: ('0.000%', ''),
    58: ('0.030%', ''),
    61: ('0.000%', ''),
    66: ('0.050%', ''),
    70: ('0.100%', '0.150%'),
    72: ('0.000%', ''),
    76: ('0.000%', ''),
    82: ('0.000%', ''),
    83: ('0.000%', ''),
    85: ('0.050%', ''),
    86: ('0.030%', ''),
    88: ('0.040%', ''),
    90: ('0.025%', ''),
    91: ('0.000%', ''),
}


def normalize_instrument(raw: Any) -> str:
    """
    Normalize a raw instrument (nemotécnico) cell.

    Takes the first whitespace-delimited token, strips trailing
    non-alphanumeric characters and uppercases the result.

    Examples:
        >>> normalize_instrument("ltm 886")
        'LTM'
        >>> normalize_instrument(" SQM-B. ")
        'SQM-B'
    """
    if raw is None:
        return ''
    if isinstance(raw, float) and math.isnan(raw):
        return ''

    text = str(raw).strip()
    if not text:
        return ''

    token = text.split()[0]
    token = _TRAILING_NON_ALNUM.sub('', token)
    return token.upper()


def rejection_reason(instrument: str,
                     excluded_markers: Tuple[str, ...] = DEFAULT_EXCLUDED_MARKERS) -> Optional[str]:
    """
    Return why a normalized instrument is not accepted, or None if it is.

    Args:
        instrument: Normalized instrument code
        excluded_markers: Substrings that exclude an instrument

    Returns:
        Optional[str]: Rejection reason
    """
    if not instrument:
        return "empty instrument"

    for marker in excluded_markers:
        if marker.upper() in instrument:
            return f"excluded marker {marker.upper()}"

    return None


def parse_numeric_value(value: Any) -> float:
    """
    Parse a numeric cell written in Chilean or international notation.

    Non-numeric and non-finite inputs yield 0.0 instead of raising.

    Examples:
        >>> parse_numeric_value("1.234.567,89")
        1234567.89
        >>> parse_numeric_value("1,234,567.89")
        1234567.89
        >>> parse_numeric_value("21,01")
        21.01
    """
    if value is None or isinstance(value, bool):
        return 0.0

    if isinstance(value, (int, float, Decimal, np.integer, np.floating)):
        number = float(value)
        return number if math.isfinite(number) else 0.0

    if not isinstance(value, str):
        return 0.0

    text = re.sub(r'\s+', '', value)
    if text == '':
        return 0.0

    if _THOUSANDS_DOT.match(text):
        candidate = text.replace('.', '').replace(',', '.')
    elif _THOUSANDS_COMMA.match(text):
        candidate = text.replace(',', '')
    elif ',' in text and '.' in text:
        # Rightmost separator is the decimal one
        if text.rfind('.') > text.rfind(','):
            candidate = text.replace(',', '')
        else:
            candidate = text.replace('.', '').replace(',', '.')
    elif ',' in text:
        candidate = text.replace(',', '.')
    else:
        candidate = text

    try:
        number = float(candidate)
    except ValueError:
        return 0.0

    return number if math.isfinite(number) else 0.0


def map_settlement_condition(operation_type: Any) -> str:
    """
    Map the confirmation's operation-type column to a settlement condition.

    PM and PH are kept as-is; any other value (OE, VC, blank...) is CN.
    """
    text = '' if operation_type is None else str(operation_type).strip()
    if text in ('PM', 'PH'):
        return text
    return 'CN'


def to_local_date(value: Any, timezone: str = MARKET_TIMEZONE) -> Optional[date]:
    """
    Reduce a date-like value to a local wall-clock calendar date.

    Timezone-aware datetimes are converted to the market timezone before
    the date is taken; naive datetimes are assumed to already be local.
    Only year/month/day components are kept.

    Args:
        value: date, datetime, pandas Timestamp or parseable string
        timezone: Market timezone name

    Returns:
        Optional[date]: Local calendar date, or None if not parseable
    """
    if value is None or value is pd.NaT:
        return None

    if isinstance(value, pd.Timestamp):
        if pd.isna(value):
            return None
        value = value.to_pydatetime()

    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(pytz.timezone(timezone))
        return date(value.year, value.month, value.day)

    if isinstance(value, date):
        return date(value.year, value.month, value.day)

    return parse_trade_date(value)


def parse_trade_date(value: Any) -> Optional[date]:
    """
    Parse a trade date cell from a confirmation spreadsheet.

    Supports Excel serial numbers, YYYYMMDD, YYMMDD (century pivot at 50)
    and ISO YYYY-MM-DD strings. Returns None when nothing usable is found.
    """
    if value is None:
        return None

    if isinstance(value, (datetime, date, pd.Timestamp)):
        return to_local_date(value)

    if isinstance(value, (int, float, np.integer, np.floating)) and not isinstance(value, bool):
        if not math.isfinite(float(value)):
            return None
        number = float(value)
        # Plain integers like 20250613 are written dates, not serials
        if number >= 1e7:
            return _parse_digits(str(int(number)))
        return EXCEL_EPOCH + timedelta(days=int(number))

    text = str(value).strip()
    if not text:
        return None

    iso_match = re.match(r'^(\d{4})-(\d{1,2})-(\d{1,2})', text)
    if iso_match:
        year, month, day = (int(part) for part in iso_match.groups())
        return _safe_date(year, month, day)

    # Serial written out as text, e.g. a workbook saved as CSV
    if re.fullmatch(r'\d{5}(\.\d+)?', text):
        return EXCEL_EPOCH + timedelta(days=int(float(text)))

    return _parse_digits(re.sub(r'[^0-9]', '', text))


def _parse_digits(digits: str) -> Optional[date]:
    if len(digits) == 8:
        return _safe_date(int(digits[0:4]), int(digits[4:6]), int(digits[6:8]))
    if len(digits) == 6:
        century = '19' if int(digits[0:2]) > 50 else '20'
        return _parse_digits(century + digits)
    return None


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        logger.debug(f"Discarding invalid calendar date {year:04d}-{month:02d}-{day:02d}")
        return None


def clamp_valuation(value: float, bound: float = DEFAULT_VALUATION_BOUND) -> float:
    """
    Clamp a valuation to [-bound, bound], preserving its sign.

    Non-finite values collapse to 0.0 (NaN) or to the signed bound (inf).
    """
    if value is None:
        return 0.0
    number = float(value)
    if math.isnan(number):
        return 0.0
    clamped = float(np.clip(number, -bound, bound))
    if clamped != number:
        logger.warning(f"Valuation {number:,.2f} clamped to {clamped:,.2f}")
    return clamped


class BrokerDirectory:
    """
    Code → name lookup for Santiago Stock Exchange brokers.

    Unknown codes fall back to the name printed on the confirmation.
    """

    def __init__(self, brokers: Optional[Dict[int, str]] = None,
                 rates: Optional[Dict[int, Tuple[str, str]]] = None):
        source = brokers if brokers is not None else DEFAULT_BROKERS
        self.brokers = {int(code): str(name).strip() for code, name in source.items()}
        self.rates = dict(rates if rates is not None else DEFAULT_BROKER_RATES)

    def resolve(self, code: Any, fallback_name: str = '') -> str:
        key = int(parse_numeric_value(code))
        name = self.brokers.get(key)
        return name if name else str(fallback_name or '').strip()

    def to_rows(self) -> List[Dict[str, Any]]:
        """Rows of the "Corredores" table (code, name, commission rates)."""
        rows = []
        for code, name in self.brokers.items():
            commission, other = self.rates.get(code, ('', ''))
            rows.append({'Cod.': code, 'Corredor': name, '%': commission, '% Otros': other})
        return rows


def create_broker_directory(config: Dict[str, Any] = None) -> BrokerDirectory:
    """
    Create a BrokerDirectory with optional configuration.

    Broker entries are either a plain name or a mapping with `name`,
    `commission` and `other_commission` keys.

    Args:
        config: Optional configuration dictionary

    Returns:
        BrokerDirectory instance
    """
    if config is None:
        return BrokerDirectory()

    brokers = config.get('market', {}).get('brokers')
    if not brokers:
        return BrokerDirectory()

    names, rates = {}, {}
    for code, entry in brokers.items():
        if isinstance(entry, dict):
            names[int(code)] = entry['name']
            rates[int(code)] = (str(entry.get('commission') or ''), str(entry.get('other_commission') or ''))
        else:
            names[int(code)] = entry
            rates[int(code)] = DEFAULT_BROKER_RATES.get(int(code), ('', ''))
    return BrokerDirectory(names, rates)
