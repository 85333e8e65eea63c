#!/usr/bin/env python3
"""
Transform a daily confirmation file into the back-office FIP format.

This script:
1. Loads the confirmation spreadsheet (CSV or XLSX)
2. Computes payment dates with the Chilean holiday calendar
3. Writes "Control Operaciones Diarias FIP DD.MM.YYYY" plus the broker table
4. Optionally stores the batch in the ledger database

With --batch-id it works on an upload already stored in the database
instead: the FIP export is regenerated from the stored records, or with
--original the uploaded file itself is written back.

Usage:
    python scripts/transform_confirmations.py INPUT [--output-dir DIR] [--holidays-file FILE] [--xlsx] [--store]
    python scripts/transform_confirmations.py --batch-id ID [--original] [--output-dir DIR] [--xlsx]

Examples:
    python scripts/transform_confirmations.py data/in/confirmaciones.xlsx
    python scripts/transform_confirmations.py data/in/confirmaciones.csv --holidays-file data/holidays/cl_holidays.json --store
    python scripts/transform_confirmations.py --batch-id 12 --original --output-dir data/restored
"""

import argparse
import sys
import os
import logging

# Add the project root to the path
sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from ledger.balance import create_balance_service, load_config
from ledger.finix_export import FipExporter
from ledger.loader import create_confirmation_loader
from ledger.market_utils import create_broker_directory
from ledger.settlement_manager import SettlementDateCalculator
from ledger.holiday_calendar import HolidayCalendar
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
        description='Transform confirmations into the FIP back-office format',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('input', type=str, nargs='?', help='Confirmation file (CSV or XLSX)')
    parser.add_argument('--batch-id', type=int, help='Use a stored upload batch instead of an input file')
    parser.add_argument('--original', action='store_true',
                        help='With --batch-id, write back the originally uploaded file')
    parser.add_argument('--output-dir', type=str, help='Output directory (default: export.output_dir)')
    parser.add_argument('--holidays-file', type=str,
                        help='JSON holiday file to use instead of the API/cache')
    parser.add_argument('--xlsx', action='store_true',
                        help='Write one workbook with FIP and Corredores sheets instead of CSV files')
    parser.add_argument('--store', action='store_true', help='Also store the batch in the ledger database')
    parser.add_argument('--config', type=str, default='config/settings.yaml',
                        help='Path to settings.yaml (default: config/settings.yaml)')
    parser.add_argument('--verbose', action='store_true', help='Enable debug logging')

    args = parser.parse_args()
    if args.input is None and args.batch_id is None:
        parser.error('an input file or --batch-id is required')
    if args.original and args.batch_id is None:
        parser.error('--original requires --batch-id')
    return args


def export_stored_batch(args, config):
    """Regenerate outputs for a stored upload batch."""
    output_dir = args.output_dir or config.get('export', {}).get('output_dir', 'data/exports')
    service = create_balance_service(args.config)
    if args.original:
        return [service.save_original(args.batch_id, output_dir)]
    return service.export_batch(args.batch_id, output_dir, workbook=args.xlsx)


def main():
    """Main function."""
    args = parse_arguments()
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)
    logger = logging.getLogger(__name__)

    if args.batch_id is not None:
        try:
            outputs = export_stored_batch(args, load_config(args.config))
        except Exception as e:
            logger.error(f"Error exporting batch {args.batch_id}: {e}")
            return 1

        for path in outputs:
            print(f"Written: {path}")
        return 0

    try:
        config = load_config(args.config)

        if args.holidays_file:
            holidays = load_holidays_file(args.holidays_file)
        else:
            holidays = ChileanHolidayProvider(config=config).get_holidays()

        if args.store:
            service = create_balance_service(args.config, holidays)
            batch_id, result = service.ingest_confirmations(args.input)
            logger.info(f"Stored confirmations as batch {batch_id}")
            records = result.records
        else:
            result = create_confirmation_loader(config).load(args.input)
            calculator = SettlementDateCalculator(HolidayCalendar(holidays))
            result.warnings.extend(calculator.trade_date_warnings(result.trade_date))
            records = calculator.annotate(result.records)

        if not records:
            logger.error(f"No valid confirmations found in {args.input}")
            return 1

        output_dir = args.output_dir or config.get('export', {}).get('output_dir', 'data/exports')
        exporter = FipExporter(create_broker_directory(config))
        if args.xlsx:
            outputs = [exporter.write_workbook(records, output_dir)]
        else:
            outputs = list(exporter.write_csv(records, output_dir))

    except Exception as e:
        logger.error(f"Error transforming confirmations: {e}")
        return 1

    print("\n" + "="*60)
    print("FIP TRANSFORM")
    print("="*60)
    print(f"Accepted rows: {len(records)}")
    print(f"Rejected rows: {len(result.rejected)}")
    for rejection in result.rejected:
        print(f"   Row {rejection['row']}: {rejection['reason']}")
    for warning in result.warnings:
        print(f"⚠️  {warning}")
    for path in outputs:
        print(f"Written: {path}")
    print("="*60)
    return 0


if __name__ == "__main__":
    sys.exit(main())
