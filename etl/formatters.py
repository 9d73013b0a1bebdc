# WORKFLOW: Render person records into the supported output formats.
# Used by: Conversion pipeline, CLI (format selection), tests
# Functions:
# 1. OutputFormat.parse() - Validate a format selector before any reading starts
# 2. format_debug_json() / format_ndjson() - Structured JSON renderings of a PersonRecord
# 3. build_name_json() - InvenioRDM name document (names, identifiers, active affiliations)
# 4. build_bulk_row() - One row of the name_metadata table contract
# 5. escape_copy_field() - PostgreSQL CSV COPY quoting of one column value
# 6. make_writer() - Writer object for the selected format and sink
#
# Format flow: PersonRecord -> Format projection -> Escaping -> Line on the sink
# Formatting never fails for a valid PersonRecord: missing optional fields render as
# empty values. Bulk rows follow COPY ... WITH (FORMAT csv) quoting so that embedded
# delimiters, quotes and newlines cannot shift columns.

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, NamedTuple, Optional, Sequence, TextIO

from core.config import settings
from core.exceptions import ConversionError, OutputUnwritable, UnsupportedFormat
from db.models import NAME_METADATA_COLUMNS
from schemas.names import NameAffiliation, NameIdentifier, NameJson
from schemas.records import PersonRecord

logger = logging.getLogger(__name__)

ORCID_SCHEME = "orcid"

# ORCID external-id-type (lower case) -> InvenioRDM name identifier scheme
NAME_IDENTIFIER_SCHEMES = {
    "isni": "isni",
    "gnd": "gnd",
}

COPY_DELIMITER = ','
COPY_QUOTE = '"'
COPY_LINE_TERMINATOR = '\n'
COPY_END_OF_DATA = '\\.'


class OutputFormat(str, Enum):
    DEBUG_JSON = "debug-json"
    NDJSON = "ndjson"
    BULK_ROWS = "bulk-rows"

    @classmethod
    def choices(cls):
        return [fmt.value for fmt in cls]

    @classmethod
    def parse(cls, selector) -> "OutputFormat":
        """
        Validate a format selector.

        Raises:
            UnsupportedFormat: for anything but the known selectors
        """
        if isinstance(selector, cls):
            return selector
        try:
            return cls(str(selector).strip().lower())
        except ValueError:
            raise UnsupportedFormat(str(selector), cls.choices()) from None


class BulkRow(NamedTuple):
    """One row of the name_metadata table, in column order."""
    created: str
    updated: str
    id: str
    json: str
    version_id: int
    pid: str


def format_debug_json(record: PersonRecord) -> str:
    """Pretty, field-complete JSON document of a record."""
    return record.model_dump_json(indent=2)


def format_ndjson(record: PersonRecord) -> str:
    """Compact single-line JSON document, fields in schema order."""
    return record.model_dump_json()


def parse_ndjson_line(line: str) -> PersonRecord:
    """Inverse of format_ndjson()."""
    return PersonRecord.model_validate_json(line)


def build_name_json(record: PersonRecord, schema: Optional[str] = None) -> NameJson:
    """
    Project a record to the InvenioRDM name document.

    Only active employments (no end date) become affiliations; the id is
    included when the resolver found one.
    """
    identifiers = [NameIdentifier(scheme=ORCID_SCHEME, identifier=record.entity_id)]
    for external in record.external_identifiers:
        scheme = NAME_IDENTIFIER_SCHEMES.get(external.scheme.strip().lower())
        if scheme:
            identifiers.append(NameIdentifier(scheme=scheme, identifier=external.value))

    affiliations = [
        NameAffiliation(id=employment.organization_id, name=employment.organization_name)
        for employment in record.employments
        if employment.is_active and employment.organization_name
    ]

    return NameJson(
        schema_=schema or settings.name_schema,
        given_name=(record.given_names or "").strip(),
        family_name=(record.family_name or "").strip(),
        name=record.display_name,
        identifiers=identifiers,
        affiliations=affiliations or None,
    )


def build_bulk_row(record: PersonRecord, created: str, row_id: Optional[str] = None,
                   schema: Optional[str] = None) -> BulkRow:
    """
    Build one name_metadata row.

    Args:
        record: Enriched person record
        created: Timestamp used for both created and updated
        row_id: Surrogate row id, a fresh UUID4 when omitted
        schema: Name document schema URI
    """
    return BulkRow(
        created=created,
        updated=created,
        id=row_id or str(uuid.uuid4()),
        json=build_name_json(record, schema).to_json(),
        version_id=1,
        pid=record.entity_id,
    )


def escape_copy_field(value) -> str:
    """
    Quote one value for PostgreSQL ``COPY ... WITH (FORMAT csv)``.

    None is written as an unquoted empty value (NULL). Values containing the
    delimiter, the quote character, CR or LF, the empty string and the
    end-of-data marker are quoted, with embedded quotes doubled.
    """
    if value is None:
        return ""

    text = str(value)
    needs_quotes = (
        text == ""
        or text == COPY_END_OF_DATA
        or COPY_DELIMITER in text
        or COPY_QUOTE in text
        or '\n' in text
        or '\r' in text
    )
    if not needs_quotes:
        return text
    return COPY_QUOTE + text.replace(COPY_QUOTE, COPY_QUOTE * 2) + COPY_QUOTE


def format_copy_line(values: Sequence) -> str:
    return COPY_DELIMITER.join(escape_copy_field(value) for value in values) + COPY_LINE_TERMINATOR


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class RecordWriter:
    """Writes formatted records to a text sink."""

    def __init__(self, sink: TextIO):
        self.sink = sink
        self.count = 0

    def render(self, record: PersonRecord) -> str:
        raise NotImplementedError

    def start(self) -> None:
        """Write anything that precedes the first record."""

    def _write_raw(self, text: str) -> None:
        try:
            self.sink.write(text)
        except OSError as e:
            raise OutputUnwritable(f"Failed to write output: {e}") from e

    def emit(self, rendered: str) -> None:
        """Write one rendered record."""
        self._write_raw(rendered)
        self.count += 1

    def write(self, record: PersonRecord) -> None:
        self.emit(self.render(record))

    def flush(self) -> None:
        try:
            self.sink.flush()
        except OSError as e:
            raise OutputUnwritable(f"Failed to flush output: {e}") from e


class DebugJsonWriter(RecordWriter):
    def render(self, record: PersonRecord) -> str:
        if self.count:
            raise ConversionError("debug-json output holds exactly one record")
        return format_debug_json(record) + "\n"


class JsonLinesWriter(RecordWriter):
    def render(self, record: PersonRecord) -> str:
        return format_ndjson(record) + "\n"


class BulkRowWriter(RecordWriter):
    """name_metadata rows in PostgreSQL CSV COPY syntax."""

    columns = NAME_METADATA_COLUMNS

    def __init__(self, sink: TextIO, header: bool = False, created: Optional[str] = None,
                 row_id_factory: Callable[[], str] = None, schema: Optional[str] = None):
        super().__init__(sink)
        self.header = header
        self.created = created or utc_timestamp()
        self.row_id_factory = row_id_factory or (lambda: str(uuid.uuid4()))
        self.schema = schema

    def start(self) -> None:
        if self.header:
            self._write_raw(format_copy_line(self.columns))

    def render(self, record: PersonRecord) -> str:
        row = build_bulk_row(record, self.created, self.row_id_factory(), self.schema)
        return format_copy_line(row)


def make_writer(output_format, sink: TextIO, header: Optional[bool] = None, **options) -> RecordWriter:
    """
    Writer for a format selector.

    Raises:
        UnsupportedFormat: for unknown selectors
    """
    fmt = OutputFormat.parse(output_format)
    if fmt is OutputFormat.DEBUG_JSON:
        return DebugJsonWriter(sink)
    if fmt is OutputFormat.NDJSON:
        return JsonLinesWriter(sink)
    return BulkRowWriter(
        sink,
        header=settings.bulk_row_header if header is None else header,
        **options,
    )
