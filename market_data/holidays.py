"""
Chilean Holiday Provider

This module provides functionality to:
- Retrieve Chilean public holidays from the boostr.cl API
- Reduce them to recurring (month, day) markers
- Cache the markers locally as JSON
- Fall back to the cache when the API is unreachable

The markers are returned as a HolidaySet that the caller passes to the
calendar explicitly, once per calculation batch.
"""

import json
import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, List, Any

import requests
import yaml

from ledger.holiday_calendar import HolidaySet

# Configure logging
logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.boostr.cl/holidays.json"
DEFAULT_CACHE_PATH = "data/holidays/cl_holidays.json"


class HolidayDataError(Exception):
    """Base exception for holiday data issues."""
    pass


class HolidayDataUnavailableError(HolidayDataError):
    """Raised when neither the API nor the cache can provide holidays."""
    pass


class HolidayDataFormatError(HolidayDataError):
    """Raised when the API payload does not have the expected shape."""
    pass


class ChileanHolidayProvider:
    """
    Fetches Chilean holidays and caches them as month/day markers.

    Configuration (settings.yaml, `holidays` section):
        api.url, api.timeout, api.max_retries, api.retry_delay, cache_path
    """

    def __init__(self, config_path: Optional[str] = "config/settings.yaml",
                 config: Optional[Dict[str, Any]] = None):
        """
        Initialize the provider.

        Args:
            config_path: Path to configuration file (ignored when config is given)
            config: Configuration dictionary
        """
        self.config = config if config is not None else self._load_config(config_path)

        holiday_config = self.config.get('holidays', {})
        api_config = holiday_config.get('api', {})
        self.url = api_config.get('url', DEFAULT_API_URL)
        self.timeout = api_config.get('timeout', 30)
        self.max_retries = max(1, int(api_config.get('max_retries', 3)))
        self.retry_delay = float(api_config.get('retry_delay', 1.0))
        self.cache_path = Path(holiday_config.get('cache_path', DEFAULT_CACHE_PATH))

        self.session = requests.Session()
        self.session.headers.update({'User-Agent': 'cl_equity_ledger/1.0'})

        logger.info(f"ChileanHolidayProvider initialized with cache: {self.cache_path}")

    def _load_config(self, config_path: Optional[str]) -> Dict:
        """
        Load configuration from YAML file.

        A missing file yields the defaults.
        """
        if not config_path:
            return {}
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                return yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.warning(f"Config file not found: {config_path}, using defaults")
            return {}
        except yaml.YAMLError as e:
            logger.error(f"Error parsing configuration file: {e}")
            raise

    def fetch_from_api(self) -> List[Dict[str, int]]:
        """
        Fetch holidays from the API, retrying network failures.

        Returns:
            List[Dict[str, int]]: Entries of the form {"month": m, "day": d}

        Raises:
            requests.exceptions.RequestException: After the last failed attempt
            HolidayDataFormatError: If the payload is malformed
        """
        last_error = None
        for attempt in range(1, self.max_retries + 1):
            try:
                logger.info(f"Fetching holidays from {self.url} (attempt {attempt}/{self.max_retries})")
                response = self.session.get(self.url, timeout=self.timeout)
                response.raise_for_status()
                return self.parse_payload(response.json())
            except requests.exceptions.RequestException as e:
                last_error = e
                logger.warning(f"Holiday API request failed: {e}")
                if attempt < self.max_retries:
                    time.sleep(self.retry_delay)

        raise last_error

    @staticmethod
    def parse_payload(payload: Any) -> List[Dict[str, int]]:
        """
        Extract month/day markers from an API payload.

        Dates are split as text ("YYYY-MM-DD") so no timezone conversion
        can move a holiday to the neighbouring day.

        Raises:
            HolidayDataFormatError: If the payload is not a success response
        """
        if not isinstance(payload, dict) or payload.get('status') != 'success':
            raise HolidayDataFormatError("Holiday API did not return a success status")

        data = payload.get('data')
        if not isinstance(data, list):
            raise HolidayDataFormatError("Holiday API payload has no data list")

        entries = []
        for item in data:
            raw = str(item.get('date', '')) if isinstance(item, dict) else ''
            parts = raw[:10].split('-')
            if len(parts) != 3 or not all(part.isdigit() for part in parts):
                logger.warning(f"Skipping holiday with unexpected date: {item!r}")
                continue
            entries.append({'month': int(parts[1]), 'day': int(parts[2])})

        logger.info(f"Parsed {len(entries)} holidays from API payload")
        return entries

    def save_cache(self, entries: List[Dict[str, int]]):
        self.cache_path.parent.mkdir(parents=True, exist_ok=True)
        content = {
            'source': self.url,
            'fetched_at': datetime.now().isoformat(),
            'holidays': entries,
        }
        with open(self.cache_path, 'w', encoding='utf-8') as f:
            json.dump(content, f, indent=2)
        logger.info(f"Cached {len(entries)} holidays to {self.cache_path}")

    def load_cache(self) -> Optional[List[Dict[str, int]]]:
        if not self.cache_path.exists():
            return None
        try:
            with open(self.cache_path, 'r', encoding='utf-8') as f:
                content = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read holiday cache {self.cache_path}: {e}")
            return None
        return content.get('holidays', []) if isinstance(content, dict) else None

    def get_holidays(self, use_cache_only: bool = False) -> HolidaySet:
        """
        Acquire the holiday set for a calculation batch.

        The API is tried first (unless use_cache_only); on network failure
        the cache is used.

        Args:
            use_cache_only: Skip the API

        Returns:
            HolidaySet: Holiday markers

        Raises:
            HolidayDataUnavailableError: If neither source is available
            HolidayDataFormatError: If the API payload is malformed
        """
        if not use_cache_only:
            try:
                entries = self.fetch_from_api()
                self.save_cache(entries)
                return HolidaySet.from_entries(entries)
            except requests.exceptions.RequestException as e:
                logger.warning(f"Holiday API unavailable, falling back to cache: {e}")

        cached = self.load_cache()
        if cached is None:
            logger.error("No holiday data available from API or cache")
            raise HolidayDataUnavailableError(
                f"Holidays unavailable: API {self.url} failed and no cache at {self.cache_path}"
            )

        logger.info(f"Loaded {len(cached)} holidays from cache")
        return HolidaySet.from_entries(cached)


def load_holidays_file(file_path: str) -> HolidaySet:
    """
    Load holiday markers from a JSON file.

    Accepts either the cache format ({"holidays": [...]}) or a bare list
    of entries understood by HolidaySet.from_entries.

    Raises:
        FileNotFoundError: If the file does not exist
        HolidayDataFormatError: If the content is neither shape
    """
    with open(file_path, 'r', encoding='utf-8') as f:
        content = json.load(f)

    if isinstance(content, dict):
        content = content.get('holidays')
    if not isinstance(content, list):
        raise HolidayDataFormatError(f"Unexpected holiday file layout in {file_path}")
    return HolidaySet.from_entries(content)
