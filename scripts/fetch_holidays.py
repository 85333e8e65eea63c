#!/usr/bin/env python3
"""
Refresh the local Chilean holiday cache.

Usage:
    python scripts/fetch_holidays.py [--config CONFIG] [--verbose]
"""

import argparse
import sys
import os
import logging

# Add the project root to the path
sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from market_data.holidays import ChileanHolidayProvider, HolidayDataError


def setup_logging(level=logging.INFO):
    """Set up logging configuration."""
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )


def parse_arguments():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Fetch Chilean holidays and refresh the cache')
    parser.add_argument('--config', type=str, default='config/settings.yaml',
                        help='Path to settings.yaml (default: config/settings.yaml)')
    parser.add_argument('--verbose', action='store_true', help='Enable debug logging')
    return parser.parse_args()


def main():
    """Main function."""
    args = parse_arguments()
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)
    logger = logging.getLogger(__name__)

    provider = ChileanHolidayProvider(args.config)
    try:
        holidays = provider.get_holidays()
    except HolidayDataError as e:
        logger.error(f"Could not refresh holidays: {e}")
        return 1

    print(f"\n{len(holidays)} holiday markers cached at {provider.cache_path}")
    for entry in holidays.to_entries():
        print(f"   {entry['day']:02d}/{entry['month']:02d}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
