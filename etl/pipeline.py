# WORKFLOW: Streaming conversion pipeline over archive entries.
# Used by: CLI convert command, sharded workers, tests
# Functions:
# 1. ConversionPipeline.process_entry() - Parse -> Enrich -> Format one entry, capturing failures
# 2. ConversionPipeline.run() - Drive the entry stream, write rows, honour cancellation
# 3. ConversionSummary.merge() - Combine counters of independent workers by summation
# 4. open_sink() - Open the output file or standard output
# 5. convert() - Full conversion of one input path to one output path
#
# Pipeline flow: Entry stream -> Parsing -> Enriching -> Formatting -> Written | Skipped
# Entries are processed one at a time in archive order. A failing entry is recorded and
# skipped; only stream-level conditions (unreadable archive, unwritable output) abort the run.
# Cancellation is checked between entries, never in the middle of one.

"""
Streaming conversion pipeline over archive entries.
"""

import logging
import sys
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, TextIO, Union

import structlog

from core.config import settings
from core.exceptions import ConversionError, OutputUnwritable, RecordMalformed, UnsupportedFormat
from etl.archive import ArchiveEntry, is_single_document, open_entries
from etl.formatters import OutputFormat, RecordWriter, make_writer
from etl.record_parser import parse_record
from services.affiliation_resolver import AffiliationResolver

logger = logging.getLogger(__name__)
event_logger = structlog.get_logger("etl.pipeline")


class PipelineState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    DRAINING = "draining"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


class Stage(str, Enum):
    PARSING = "parsing"
    ENRICHING = "enriching"
    FORMATTING = "formatting"


class EntryStatus(str, Enum):
    WRITTEN = "written"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class EntryFailure:
    """Why one entry was skipped."""
    entry_name: str
    stage: Stage
    cause: str


@dataclass(frozen=True)
class EntryOutcome:
    """Result of processing one entry."""
    entry_name: str
    status: EntryStatus
    failure: Optional[EntryFailure] = None
    resolved_affiliations: int = 0


@dataclass
class ConversionSummary:
    """Run-level counters; failure details are kept up to max_reported_failures."""
    written: int = 0
    skipped: int = 0
    resolved_affiliations: int = 0
    cancelled: bool = False
    failures: List[EntryFailure] = field(default_factory=list)
    max_reported_failures: int = field(default_factory=lambda: settings.max_reported_failures)

    @property
    def processed(self) -> int:
        return self.written + self.skipped

    def record(self, outcome: EntryOutcome) -> None:
        if outcome.status is EntryStatus.WRITTEN:
            self.written += 1
            self.resolved_affiliations += outcome.resolved_affiliations
            return

        self.skipped += 1
        if outcome.failure is not None and len(self.failures) < self.max_reported_failures:
            self.failures.append(outcome.failure)

    def merge(self, other: "ConversionSummary") -> "ConversionSummary":
        """Sum of two summaries; neither operand is modified."""
        merged = ConversionSummary(
            written=self.written + other.written,
            skipped=self.skipped + other.skipped,
            resolved_affiliations=self.resolved_affiliations + other.resolved_affiliations,
            cancelled=self.cancelled or other.cancelled,
            max_reported_failures=self.max_reported_failures,
        )
        merged.failures = (self.failures + other.failures)[:self.max_reported_failures]
        return merged

    def to_dict(self) -> dict:
        data = asdict(self)
        data["processed"] = self.processed
        return data


class ConversionPipeline:
    """Single sequential pass over an entry stream."""

    def __init__(
        self,
        writer: RecordWriter,
        resolver: Optional[AffiliationResolver] = None,
        cancel_event: Optional[threading.Event] = None,
        max_reported_failures: Optional[int] = None,
    ):
        self.writer = writer
        self.resolver = resolver
        self.cancel_event = cancel_event
        self.max_reported_failures = (
            settings.max_reported_failures if max_reported_failures is None else max_reported_failures
        )
        self.state = PipelineState.IDLE

    def process_entry(self, entry: ArchiveEntry) -> EntryOutcome:
        """
        Convert one entry and write it.

        Entry-level problems become a SKIPPED outcome; stream-level errors
        (OutputUnwritable and other ConversionError subclasses) propagate.
        """
        stage = Stage.PARSING
        try:
            record = parse_record(entry.name, entry.stream)

            stage = Stage.ENRICHING
            resolved = self.resolver.resolve_record(record) if self.resolver is not None else 0

            stage = Stage.FORMATTING
            rendered = self.writer.render(record)
        except RecordMalformed as e:
            return EntryOutcome(entry.name, EntryStatus.SKIPPED, EntryFailure(entry.name, stage, str(e.cause)))
        except ConversionError:
            raise
        except Exception as e:
            logger.error(f"Unexpected error while {stage.value} {entry.name}: {e}")
            return EntryOutcome(entry.name, EntryStatus.SKIPPED, EntryFailure(entry.name, stage, repr(e)))

        self.writer.emit(rendered)
        return EntryOutcome(entry.name, EntryStatus.WRITTEN, resolved_affiliations=resolved)

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def run(self, entries: Iterable[ArchiveEntry]) -> ConversionSummary:
        """
        Process every entry of the stream.

        Returns:
            ConversionSummary with written / skipped counts

        Raises:
            ArchiveCorrupt: if the entry stream fails at the container level
            OutputUnwritable: if the sink cannot be written
        """
        summary = ConversionSummary(max_reported_failures=self.max_reported_failures)
        self.state = PipelineState.STREAMING

        try:
            self.writer.start()
            for entry in entries:
                outcome = self.process_entry(entry)
                summary.record(outcome)

                if outcome.failure is not None:
                    event_logger.warning(
                        "entry_skipped",
                        entry=outcome.failure.entry_name,
                        stage=outcome.failure.stage.value,
                        cause=outcome.failure.cause,
                    )

                if self._cancelled():
                    summary.cancelled = True
                    logger.warning(f"Run cancelled after {summary.processed} entries")
                    break

            self.state = PipelineState.DRAINING
            self.writer.flush()
        except Exception:
            self.state = PipelineState.FAILED
            raise

        self.state = PipelineState.CANCELLED if summary.cancelled else PipelineState.DONE
        event_logger.info(
            "run_finished",
            written=summary.written,
            skipped=summary.skipped,
            resolved_affiliations=summary.resolved_affiliations,
            cancelled=summary.cancelled,
        )
        return summary


@contextmanager
def open_sink(output_path: Union[str, Path]) -> Iterator[TextIO]:
    """
    Open the output destination; ``-`` means standard output.

    Raises:
        OutputUnwritable: if the file cannot be created
    """
    if str(output_path) == "-":
        yield sys.stdout
        return

    try:
        sink = open(output_path, "w", encoding="utf-8", newline="")
    except OSError as e:
        raise OutputUnwritable(f"Cannot open output file {output_path}: {e}") from e

    try:
        yield sink
    finally:
        try:
            sink.close()
        except OSError as e:
            raise OutputUnwritable(f"Cannot close output file {output_path}: {e}") from e


def check_format_for_input(output_format, input_path: Union[str, Path]) -> OutputFormat:
    """
    Validate the format selector against the input before anything is read.

    Raises:
        UnsupportedFormat: unknown selector, or debug-json for a multi-entry input
    """
    fmt = OutputFormat.parse(output_format)
    if fmt is OutputFormat.DEBUG_JSON and not is_single_document(input_path):
        raise UnsupportedFormat(fmt.value, reason="debug-json requires a single XML document as input")
    return fmt


def convert(
    input_path: Union[str, Path],
    output_path: Union[str, Path],
    output_format,
    resolver: Optional[AffiliationResolver] = None,
    cancel_event: Optional[threading.Event] = None,
    entry_pattern: Optional[str] = None,
    **writer_options,
) -> ConversionSummary:
    """
    Convert one input (archive, directory or single XML file) to one output.

    Args:
        input_path: Archive, mounted directory or standalone XML document
        output_path: Output file, or "-" for standard output
        output_format: "debug-json", "ndjson" or "bulk-rows"
        resolver: Affiliation resolver; None disables enrichment
        cancel_event: Set to stop the run after the current entry
        entry_pattern: Regex for entry names, defaults to settings.entry_pattern
        writer_options: Extra options for the writer (header, created, row_id_factory)

    Returns:
        ConversionSummary
    """
    fmt = check_format_for_input(output_format, input_path)
    logger.info(f"Converting {input_path} to {fmt.value} at {output_path}")

    with open_sink(output_path) as sink:
        writer = make_writer(fmt, sink, **writer_options)
        pipeline = ConversionPipeline(writer, resolver=resolver, cancel_event=cancel_event)
        summary = pipeline.run(open_entries(input_path, entry_pattern))

    logger.info(f"Wrote {summary.written} records, skipped {summary.skipped} entries")
    return summary
