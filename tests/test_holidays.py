"""
Unit tests for the Chilean holiday provider.

This module tests:
- Successful API fetch and cache write
- Retry and cache fallback on network failures
- Unavailable data when neither API nor cache responds
- Payload format validation
- Loading holiday files
"""

import json
import unittest
import tempfile
import shutil
from unittest.mock import MagicMock, patch

import requests

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from market_data.holidays import (
    ChileanHolidayProvider,
    HolidayDataFormatError,
    HolidayDataUnavailableError,
    load_holidays_file,
)


API_PAYLOAD = {
    'status': 'success',
    'data': [
        {'date': '2025-01-01', 'title': 'Año Nuevo'},
        {'date': '2025-09-18', 'title': 'Independencia Nacional'},
        {'date': '2025-09-19', 'title': 'Día de las Glorias del Ejército'},
        {'date': 'sin fecha', 'title': 'Entrada inválida'},
    ],
}


def json_response(payload):
    response = MagicMock()
    response.json.return_value = payload
    response.raise_for_status.return_value = None
    return response


class TestChileanHolidayProvider(unittest.TestCase):
    """Tests for ChileanHolidayProvider."""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.cache_path = os.path.join(self.test_dir, "holidays", "cl_holidays.json")
        self.provider = ChileanHolidayProvider(config={
            'holidays': {
                'api': {'url': 'https://example.test/holidays.json', 'max_retries': 2, 'retry_delay': 0},
                'cache_path': self.cache_path,
            }
        })
        self.provider.session = MagicMock()

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_configuration(self):
        self.assertEqual(self.provider.url, 'https://example.test/holidays.json')
        self.assertEqual(self.provider.max_retries, 2)

    def test_fetch_writes_cache(self):
        self.provider.session.get.return_value = json_response(API_PAYLOAD)

        holidays = self.provider.get_holidays()

        self.assertEqual(len(holidays), 3)
        self.assertIn((9, 18), holidays)
        self.assertTrue(os.path.exists(self.cache_path))
        with open(self.cache_path, 'r', encoding='utf-8') as f:
            cached = json.load(f)
        self.assertEqual(cached['holidays'][0], {'month': 1, 'day': 1})

    @patch('market_data.holidays.time.sleep')
    def test_network_failure_falls_back_to_cache(self, mock_sleep):
        self.provider.save_cache([{'month': 12, 'day': 25}])
        self.provider.session.get.side_effect = requests.exceptions.ConnectionError("offline")

        holidays = self.provider.get_holidays()

        self.assertEqual(self.provider.session.get.call_count, 2)
        mock_sleep.assert_called_once_with(0.0)
        self.assertIn((12, 25), holidays)

    @patch('market_data.holidays.time.sleep')
    def test_no_api_and_no_cache_is_unavailable(self, mock_sleep):
        self.provider.session.get.side_effect = requests.exceptions.Timeout("slow")

        with self.assertRaises(HolidayDataUnavailableError):
            self.provider.get_holidays()

    def test_cache_only_skips_api(self):
        self.provider.save_cache([{'month': 5, 'day': 21}])

        holidays = self.provider.get_holidays(use_cache_only=True)

        self.provider.session.get.assert_not_called()
        self.assertIn((5, 21), holidays)

    def test_bad_status_is_format_error(self):
        self.provider.session.get.return_value = json_response({'status': 'error', 'message': 'quota'})

        with self.assertRaises(HolidayDataFormatError):
            self.provider.get_holidays()

    def test_parse_payload_requires_list(self):
        with self.assertRaises(HolidayDataFormatError):
            ChileanHolidayProvider.parse_payload({'status': 'success', 'data': {}})

    def test_dates_split_as_text(self):
        entries = ChileanHolidayProvider.parse_payload({
            'status': 'success',
            'data': [{'date': '2025-06-20T00:00:00-04:00'}],
        })
        self.assertEqual(entries, [{'month': 6, 'day': 20}])


class TestLoadHolidaysFile(unittest.TestCase):
    """Tests for load_holidays_file."""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def write(self, name, content):
        path = os.path.join(self.test_dir, name)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(content, f)
        return path

    def test_cache_layout(self):
        path = self.write("cache.json", {'holidays': [{'month': 9, 'day': 18}]})
        self.assertIn((9, 18), load_holidays_file(path))

    def test_bare_list(self):
        path = self.write("list.json", ["2025-09-19", "12-25"])
        holidays = load_holidays_file(path)
        self.assertEqual(len(holidays), 2)

    def test_unexpected_layout(self):
        path = self.write("bad.json", {'feriados': 3})
        with self.assertRaises(HolidayDataFormatError):
            load_holidays_file(path)


if __name__ == '__main__':
    unittest.main(verbosity=2)
