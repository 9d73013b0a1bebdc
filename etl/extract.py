# WORKFLOW: Extract distinct disambiguated organization identifiers from an archive.
# Used by: CLI extract command (builds the input for the identifier crosswalk file)
# Functions:
# 1. collect_org_ids() - (scheme, identifier) pairs asserted by one record's employments
# 2. extract_org_ids() - Stream entries and write each pair once, in first-seen order
#
# Extract flow: Entry stream -> Parse -> Disambiguated organizations -> Dedupe -> ndjson lines

"""
Extract distinct disambiguated organization identifiers from an archive.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Set, TextIO

from core.exceptions import OutputUnwritable, RecordMalformed, UnsupportedFormat
from etl.archive import ArchiveEntry
from etl.record_parser import parse_record
from schemas.organizations import ExtractedIdentifier
from schemas.records import PersonRecord

logger = logging.getLogger(__name__)


class ExtractFormat(str, Enum):
    ORG_IDS = "org-ids"

    @classmethod
    def parse(cls, selector) -> "ExtractFormat":
        try:
            return cls(str(selector).strip().lower())
        except ValueError:
            raise UnsupportedFormat(str(selector), [fmt.value for fmt in cls]) from None


@dataclass
class ExtractSummary:
    records: int = 0
    skipped: int = 0
    identifiers: int = 0


def collect_org_ids(record: PersonRecord) -> List[ExtractedIdentifier]:
    """Disambiguated organization ids of a record, in employment order, without repeats."""
    found: List[ExtractedIdentifier] = []
    for employment in record.employments:
        organization = employment.disambiguated_organization
        if organization is None:
            continue
        identifier = ExtractedIdentifier(scheme=organization.source, identifier=organization.identifier)
        if identifier not in found:
            found.append(identifier)
    return found


def extract_org_ids(entries: Iterable[ArchiveEntry], sink: TextIO) -> ExtractSummary:
    """
    Write every distinct (scheme, identifier) pair once as a JSON line.

    Args:
        entries: Archive entry stream
        sink: Text output

    Returns:
        ExtractSummary
    """
    summary = ExtractSummary()
    seen: Set[ExtractedIdentifier] = set()

    for entry in entries:
        try:
            record = parse_record(entry.name, entry.stream)
        except RecordMalformed as e:
            logger.warning(f"Skipping {e.entry_name}: {e.cause}")
            summary.skipped += 1
            continue

        summary.records += 1
        for identifier in collect_org_ids(record):
            if identifier in seen:
                continue
            seen.add(identifier)
            try:
                sink.write(identifier.model_dump_json() + "\n")
            except OSError as e:
                raise OutputUnwritable(f"Failed to write output: {e}") from e
            summary.identifiers += 1

    logger.info(
        f"Extracted {summary.identifiers} organization ids from {summary.records} records "
        f"({summary.skipped} skipped)"
    )
    return summary
