# WORKFLOW: Sharded parallel conversion of entries exposed as ordinary files.
# Used by: CLI convert command (directory input with --workers > 1), tests
# Functions:
# 1. shard_paths() - Split the sorted entry files into contiguous disjoint shards
# 2. _init_worker() - Per-process setup: logging, shared reference table, resolver options
# 3. _convert_shard() - Run the sequential pipeline over one shard into its own part file
# 4. concatenate_parts() - Join part files in shard order into the final output
# 5. convert_sharded() - Fan shards out to a process pool and merge the summaries
#
# Sharding flow: Directory -> Sorted entry files -> Shards -> Workers (part files) -> Concatenate -> Summary
# A container archive can only be read forward, so sharding applies to directory input only.
# Workers share nothing but the read-only reference table; their summaries are summed at the end.

"""
Sharded parallel conversion of entries exposed as ordinary files.
"""

import logging
import shutil
import signal
import tempfile
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ProcessPoolExecutor, wait
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from core.config import settings
from core.exceptions import UnsupportedFormat
from core.logging_config import configure_logging
from etl.archive import iter_file_entries, list_directory_entries
from etl.formatters import BulkRowWriter, OutputFormat, format_copy_line, make_writer, utc_timestamp
from etl.pipeline import ConversionPipeline, ConversionSummary, open_sink
from services.affiliation_resolver import AffiliationResolver
from services.reference_table import ReferenceTable

logger = logging.getLogger(__name__)

# Seconds between cancellation checks while shards are running
CANCEL_POLL_INTERVAL = 0.5

# Per-process state set by _init_worker()
_worker_resolver: Optional[AffiliationResolver] = None


def shard_paths(paths: Sequence[Path], shards: int) -> List[List[Path]]:
    """
    Split paths into at most ``shards`` contiguous, disjoint, non-empty slices.

    Concatenating the slices gives back the input order, so concatenating the
    part files keeps the sorted entry order.
    """
    if shards < 1:
        raise ValueError(f"shards must be at least 1, got {shards}")

    paths = list(paths)
    if not paths:
        return []

    shards = min(shards, len(paths))
    size, extra = divmod(len(paths), shards)
    result = []
    start = 0
    for index in range(shards):
        end = start + size + (1 if index < extra else 0)
        result.append(paths[start:end])
        start = end
    return result


def _init_worker(table: Optional[ReferenceTable], resolver_options: Dict, log_level: str) -> None:
    global _worker_resolver

    # The parent process owns cancellation; workers finish their shard
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    configure_logging(log_level)
    _worker_resolver = AffiliationResolver(table, **resolver_options) if table is not None else None


def _convert_shard(
    shard_index: int,
    paths: List[Path],
    root: str,
    part_path: str,
    output_format: str,
    created: str,
) -> ConversionSummary:
    """Convert one shard into its own part file, without a header row."""
    logger.info(f"Shard {shard_index}: converting {len(paths)} entries into {part_path}")
    with open_sink(part_path) as sink:
        writer = make_writer(output_format, sink, header=False, created=created)
        pipeline = ConversionPipeline(writer, resolver=_worker_resolver)
        return pipeline.run(iter_file_entries(paths, root))


def concatenate_parts(part_paths: Sequence[Path], output_path: Union[str, Path], header_line: str = "") -> None:
    """
    Write the optional header line and then every part file, in order.

    Raises:
        OutputUnwritable: if the output cannot be written
    """
    with open_sink(output_path) as sink:
        if header_line:
            sink.write(header_line)
        for part_path in part_paths:
            with open(part_path, "r", encoding="utf-8", newline="") as part:
                shutil.copyfileobj(part, sink)
        sink.flush()


def convert_sharded(
    input_dir: Union[str, Path],
    output_path: Union[str, Path],
    output_format,
    table: Optional[ReferenceTable] = None,
    workers: Optional[int] = None,
    entry_pattern: Optional[str] = None,
    header: Optional[bool] = None,
    created: Optional[str] = None,
    cancel_event: Optional[threading.Event] = None,
    resolver_options: Optional[Dict] = None,
) -> ConversionSummary:
    """
    Convert a directory of entry files with a pool of worker processes.

    Args:
        input_dir: Directory where entries are exposed as files
        output_path: Output file, or "-" for standard output
        output_format: "ndjson" or "bulk-rows"
        table: Reference table shared read-only by every worker; None disables enrichment
        workers: Number of worker processes, defaults to settings.shard_workers
        entry_pattern: Regex for entry file paths relative to input_dir
        header: Write the bulk-rows header line once at the top of the output
        created: Timestamp shared by all bulk rows of the run
        cancel_event: Set to stop scheduling further shards
        resolver_options: Threshold overrides passed to every worker's resolver

    Returns:
        ConversionSummary summed over all shards
    """
    fmt = OutputFormat.parse(output_format)
    if fmt is OutputFormat.DEBUG_JSON:
        raise UnsupportedFormat(fmt.value, reason="debug-json requires a single XML document as input")

    workers = workers or settings.shard_workers
    header = settings.bulk_row_header if header is None else header
    created = created or utc_timestamp()

    paths = list_directory_entries(input_dir, entry_pattern)
    shards = shard_paths(paths, workers)
    logger.info(f"Converting {len(paths)} entry files from {input_dir} in {len(shards)} shards")

    summary = ConversionSummary()
    header_line = format_copy_line(BulkRowWriter.columns) if fmt is OutputFormat.BULK_ROWS and header else ""

    with tempfile.TemporaryDirectory(prefix="orcid-etl-") as parts_dir:
        part_paths = [Path(parts_dir) / f"part-{index:04d}" for index in range(len(shards))]
        futures: Dict[Future, int] = {}

        with ProcessPoolExecutor(
            max_workers=max(1, len(shards)),
            initializer=_init_worker,
            initargs=(table, resolver_options or {}, settings.log_level),
        ) as executor:
            for index, shard in enumerate(shards):
                future = executor.submit(
                    _convert_shard, index, shard, str(input_dir), str(part_paths[index]), fmt.value, created
                )
                futures[future] = index

            pending = set(futures)
            try:
                while pending:
                    if cancel_event is not None and cancel_event.is_set() and not summary.cancelled:
                        logger.warning("Cancellation requested, dropping shards that have not started")
                        summary.cancelled = True
                        for future in pending:
                            future.cancel()

                    done, pending = wait(pending, timeout=CANCEL_POLL_INTERVAL, return_when=FIRST_COMPLETED)
                    for future in done:
                        if not future.cancelled():
                            summary = summary.merge(future.result())
            except Exception as e:
                logger.error(f"Sharded conversion failed: {e}")
                for future in pending:
                    future.cancel()
                raise

        completed = [
            part_paths[index] for future, index in sorted(futures.items(), key=lambda item: item[1])
            if not future.cancelled()
        ]
        concatenate_parts(completed, output_path, header_line)

    logger.info(f"Wrote {summary.written} records, skipped {summary.skipped} entries")
    return summary
