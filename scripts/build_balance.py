#!/usr/bin/env python3
"""
Build the equities balance from the ledger database.

This script:
1. Optionally loads an opening balance (replacing earlier ones)
2. Optionally ingests one or more confirmation files
3. Re-folds the stored history, applies manual adjustments and revalues
4. Exports the balance CSV and reports instruments netted to zero

Usage:
    python scripts/build_balance.py [--opening-balance FILE] [--confirmations FILE ...] [--output FILE]

Examples:
    # Start a ledger from an opening balance and the day's confirmations
    python scripts/build_balance.py --opening-balance data/in/saldo_inicial.xlsx --confirmations data/in/conf_0613.csv

    # Rebuild the balance from what is already stored
    python scripts/build_balance.py --output data/exports/balance.csv
"""

import argparse
import sys
import os
import logging
from datetime import datetime

# Add the project root to the path
sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from ledger.balance import create_balance_service, load_config
from market_data.holidays import ChileanHolidayProvider, load_holidays_file


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
    parser = argparse.ArgumentParser(
        description='Build and export the equities balance',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--opening-balance', type=str, help='Opening balance sheet (CSV or XLSX)')
    parser.add_argument('--as-of', type=str,
                        help='Date of the opening balance in format YYYY-MM-DD (default: today)')
    parser.add_argument('--confirmations', type=str, nargs='*', default=[],
                        help='Confirmation files to ingest')
    parser.add_argument('--output', type=str, help='Balance CSV path (default: export.output_dir)')
    parser.add_argument('--holidays-file', type=str,
                        help='JSON holiday file to use instead of the API/cache')
    parser.add_argument('--config', type=str, default='config/settings.yaml',
                        help='Path to settings.yaml (default: config/settings.yaml)')
    parser.add_argument('--verbose', action='store_true', help='Enable debug logging')
    return parser.parse_args()


def print_balance(report):
    """Print a summary of the balance report."""
    print("\n" + "="*60)
    print("EQUITIES BALANCE")
    print("="*60)
    for row in report.rows:
        position = row.position
        close = position.most_recent_close_price
        print(f"{position.classification:8} {position.instrument:12} {position.signed_quantity:>14,.0f} "
              f"cost {position.weighted_average_cost:>12,.2f} "
              f"close {close if close is not None else 0:>10,.2f} "
              f"mtm {row.revaluation.mark_to_market_adjustment:>16,.0f}")
    print("-"*60)
    print(f"Cost basis:   {report.total_cost_basis:>20,.2f}")
    print(f"Market value: {report.total_market_value:>20,.2f}")
    print(f"Adjustment:   {report.total_adjustment:>20,.2f}")
    if report.netted_instruments:
        print(f"\n⚠️  Netted to zero: {', '.join(report.netted_instruments)}")
    print("="*60)


def main():
    """Main function."""
    args = parse_arguments()
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)
    logger = logging.getLogger(__name__)
    logger.info("Starting balance build")

    try:
        config = load_config(args.config)

        if args.holidays_file:
            holidays = load_holidays_file(args.holidays_file)
        else:
            holidays = ChileanHolidayProvider(config=config).get_holidays()

        service = create_balance_service(args.config, holidays)

        if args.opening_balance:
            as_of = datetime.strptime(args.as_of, '%Y-%m-%d').date() if args.as_of else None
            batch_id, result = service.upload_opening_balance(args.opening_balance, as_of=as_of)
            logger.info(f"Opening balance stored as batch {batch_id}: {result.summary()}")

        for file_path in args.confirmations:
            batch_id, result = service.ingest_confirmations(file_path)
            logger.info(f"{file_path} stored as batch {batch_id}: {result.summary()}")

        report = service.get_balance()

        output = args.output
        if not output:
            output_dir = config.get('export', {}).get('output_dir', 'data/exports')
            output = os.path.join(output_dir, f"Balance Acciones {datetime.now().strftime('%d.%m.%Y')}.csv")
        path = report.export_csv(output)

    except Exception as e:
        logger.error(f"Error building balance: {e}")
        return 1

    print_balance(report)
    print(f"Written: {path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
