# WORKFLOW: Command line entry point for the ORCID data file ETL.
# Used by: orcid-etl console script, python -m cli.main
# Commands:
# 1. convert - Archive / directory / single XML -> debug-json | ndjson | bulk-rows
# 2. extract - Archive -> distinct disambiguated organization ids (ndjson)
# 3. load - bulk-rows file -> COPY into the name_metadata table
#
# Convert flow: Validate format -> Load reference table -> Stream entries -> Summary -> Exit code
# Exit codes: 0 done (skipped entries allowed), 1 fatal error, 2 usage or unsupported
# format, 130 cancelled by SIGINT. SIGINT only sets the cancellation event; the run
# stops after the entry in progress.

"""
Command line entry point for the ORCID data file ETL.
"""

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional

from core.config import settings
from core.exceptions import ConversionError, UnsupportedFormat
from core.logging_config import configure_logging
from db.session import copy_bulk_rows, init_db
from etl.archive import open_entries
from etl.extract import ExtractFormat, extract_org_ids
from etl.formatters import OutputFormat
from etl.pipeline import ConversionSummary, check_format_for_input, convert, open_sink
from etl.sharding import convert_sharded
from services.affiliation_resolver import AffiliationResolver
from services.reference_table import load_reference_table

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="orcid-etl", description="ORCID public data file ETL")
    parser.add_argument('--log-level', default=None, help='Log level (default: settings.log_level)')
    subparsers = parser.add_subparsers(dest='command', required=True)

    convert_parser = subparsers.add_parser('convert', help='Convert records to an output format')
    convert_parser.add_argument('--input-file', required=True,
                                help='Archive (.tar.gz, .zip), directory of entry files or one .xml record')
    convert_parser.add_argument('--output-file', default='-', help='Output file, - for standard output')
    convert_parser.add_argument('--format', default=OutputFormat.BULK_ROWS.value,
                                help=f"Output format: {', '.join(OutputFormat.choices())}")
    convert_parser.add_argument('--orgs-file', default=settings.orgs_file,
                                help='Organizations CSV (id,name[,aliases][,country])')
    convert_parser.add_argument('--org-mappings-file', default=settings.org_mappings_file,
                                help='Identifier crosswalk CSV (scheme,identifier,canonical_id)')
    convert_parser.add_argument('--workers', type=int, default=1,
                                help='Worker processes for directory input')
    convert_parser.add_argument('--header', action='store_true', default=settings.bulk_row_header,
                                help='Write a header line before bulk rows')
    convert_parser.add_argument('--entry-pattern', default=None, help='Regex for entry names')

    extract_parser = subparsers.add_parser('extract', help='Extract data from the archive')
    extract_parser.add_argument('--input-file', required=True, help='Archive, directory or .xml record')
    extract_parser.add_argument('--output-file', default='-', help='Output file, - for standard output')
    extract_parser.add_argument('--type', dest='extract_type', default=ExtractFormat.ORG_IDS.value,
                                help='What to extract (org-ids)')
    extract_parser.add_argument('--entry-pattern', default=None, help='Regex for entry names')

    load_parser = subparsers.add_parser('load', help='Bulk load a bulk-rows file')
    load_parser.add_argument('--input-file', required=True, help='File written with --format bulk-rows')
    load_parser.add_argument('--table', default=None, help='Target table (default: settings.name_table)')
    load_parser.add_argument('--header', action='store_true', help='The file starts with a header line')
    load_parser.add_argument('--create-table', action='store_true', help='Create the table first')

    return parser


def install_cancel_handler(cancel_event: threading.Event):
    """Route SIGINT to the cancellation event; returns the previous handler."""

    def _handle_sigint(signum, frame):
        logger.warning("Interrupt received, stopping after the current entry")
        cancel_event.set()

    return signal.signal(signal.SIGINT, _handle_sigint)


def report_summary(summary: ConversionSummary) -> None:
    logger.info(
        f"Processed {summary.processed} entries: {summary.written} written, "
        f"{summary.skipped} skipped, {summary.resolved_affiliations} affiliations resolved"
    )
    for failure in summary.failures:
        logger.warning(f"Skipped {failure.entry_name} ({failure.stage.value}): {failure.cause}")
    if summary.skipped > len(summary.failures):
        logger.warning(f"... {summary.skipped - len(summary.failures)} more skipped entries not listed")


def run_convert(args, cancel_event: threading.Event) -> int:
    # Format errors are reported before the archive is opened
    fmt = check_format_for_input(args.format, args.input_file)
    table = load_reference_table(args.orgs_file, args.org_mappings_file)

    if args.workers > 1 and Path(args.input_file).is_dir():
        summary = convert_sharded(
            args.input_file,
            args.output_file,
            fmt,
            table=table,
            workers=args.workers,
            entry_pattern=args.entry_pattern,
            header=args.header,
            cancel_event=cancel_event,
        )
    else:
        if args.workers > 1:
            logger.warning("Archives can only be read sequentially, ignoring --workers")
        summary = convert(
            args.input_file,
            args.output_file,
            fmt,
            resolver=AffiliationResolver(table),
            cancel_event=cancel_event,
            entry_pattern=args.entry_pattern,
            header=args.header,
        )

    report_summary(summary)
    return EXIT_CANCELLED if summary.cancelled else EXIT_OK


def run_extract(args) -> int:
    ExtractFormat.parse(args.extract_type)
    with open_sink(args.output_file) as sink:
        extract_org_ids(open_entries(args.input_file, args.entry_pattern), sink)
    return EXIT_OK


def run_load(args) -> int:
    if args.create_table:
        init_db()
    loaded = copy_bulk_rows(args.input_file, table=args.table, header=args.header)
    logger.info(f"Loaded {loaded} rows")
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    """
    Run the CLI.

    Returns:
        Process exit code
    """
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        return EXIT_USAGE if e.code else EXIT_OK

    configure_logging(args.log_level)

    cancel_event = threading.Event()
    previous_handler = install_cancel_handler(cancel_event)
    try:
        if args.command == 'convert':
            return run_convert(args, cancel_event)
        if args.command == 'extract':
            return run_extract(args)
        return run_load(args)
    except UnsupportedFormat as e:
        logger.error(str(e))
        return EXIT_USAGE
    except ConversionError as e:
        logger.error(f"{args.command} failed: {e}")
        return EXIT_FATAL
    except Exception as e:
        logger.error(f"{args.command} failed: {e}", exc_info=True)
        return EXIT_FATAL
    finally:
        if previous_handler is not None:
            signal.signal(signal.SIGINT, previous_handler)


if __name__ == "__main__":
    sys.exit(main())
