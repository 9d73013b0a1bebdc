# WORKFLOW: Tests for the output formats.
# Test scenarios:
# 1. Format selector validation
# 2. ndjson lines re-parse into an identical PersonRecord
# 3. Bulk rows follow the name_metadata column contract and the name document layout
# 4. COPY CSV escaping survives delimiters, quotes and newlines (checked with the csv reader)
# 5. Writers: header line, single-record debug-json, unwritable sinks

import csv
import io
import json

import pytest

from core.exceptions import ConversionError, OutputUnwritable, UnsupportedFormat
from etl.formatters import (
    BulkRowWriter,
    DebugJsonWriter,
    JsonLinesWriter,
    OutputFormat,
    build_bulk_row,
    build_name_json,
    escape_copy_field,
    format_copy_line,
    format_debug_json,
    format_ndjson,
    make_writer,
    parse_ndjson_line,
)
from etl.record_parser import parse_record
from schemas.records import Employment, PersonRecord

CREATED = "2024-01-01T00:00:00+00:00"


@pytest.fixture
def alex(read_fixture):
    record = parse_record("alex.xml", io.BytesIO(read_fixture("alex.xml")))
    record.employments[0].organization_id = "01ggx4157"
    return record


def read_copy_rows(text):
    return list(csv.reader(io.StringIO(text, newline="")))


class TestOutputFormat:
    def test_known_selectors(self):
        assert OutputFormat.parse("ndjson") is OutputFormat.NDJSON
        assert OutputFormat.parse(" Bulk-Rows ") is OutputFormat.BULK_ROWS
        assert OutputFormat.parse(OutputFormat.DEBUG_JSON) is OutputFormat.DEBUG_JSON

    def test_unknown_selector(self):
        with pytest.raises(UnsupportedFormat) as excinfo:
            OutputFormat.parse("xml")
        assert excinfo.value.selector == "xml"
        assert "ndjson" in str(excinfo.value)

    def test_make_writer(self):
        sink = io.StringIO()
        assert isinstance(make_writer("debug-json", sink), DebugJsonWriter)
        assert isinstance(make_writer("ndjson", sink), JsonLinesWriter)
        assert isinstance(make_writer("bulk-rows", sink, header=True), BulkRowWriter)
        with pytest.raises(UnsupportedFormat):
            make_writer("csv", sink)


def test_ndjson_round_trip(alex):
    line = format_ndjson(alex)
    assert "\n" not in line
    restored = parse_ndjson_line(line)
    assert restored == alex
    assert restored.employments == alex.employments


def test_ndjson_field_order(alex):
    assert list(json.loads(format_ndjson(alex)).keys())[:3] == ["entity_id", "given_names", "family_name"]


def test_debug_json_is_field_complete(alex):
    document = json.loads(format_debug_json(alex))
    assert document["entity_id"] == "0000-0002-5082-6404"
    assert document["credit_name"] is None
    assert document["employments"][1]["end_date"] == "2016-12-31"


class TestNameDocument:
    def test_identifiers_and_active_affiliations(self, alex):
        document = json.loads(build_name_json(alex, schema="local://names/name-v1.0.0.json").to_json())
        assert document == {
            "$schema": "local://names/name-v1.0.0.json",
            "given_name": "Alex",
            "family_name": "Ioannidis",
            "name": "Ioannidis, Alex",
            "identifiers": [
                {"scheme": "orcid", "identifier": "0000-0002-5082-6404"},
                {"scheme": "isni", "identifier": "0000000121032683"},
            ],
            "affiliations": [{"id": "01ggx4157", "name": "CERN"}],
        }

    def test_unresolved_affiliation_has_no_id(self):
        record = PersonRecord(
            entity_id="0000-0002-1825-0097",
            family_name="Carberry",
            employments=[Employment(organization_name="Brown University")],
        )
        document = json.loads(build_name_json(record).to_json())
        assert document["affiliations"] == [{"name": "Brown University"}]
        assert document["given_name"] == ""
        assert document["name"] == "Carberry"

    def test_record_without_names_or_employments(self):
        document = json.loads(build_name_json(PersonRecord(entity_id="0000-0002-1825-0097")).to_json())
        assert "affiliations" not in document
        assert document["name"] == ""


class TestBulkRows:
    def test_columns(self, alex):
        row = build_bulk_row(alex, CREATED, row_id="3b4f9c1e-0000-4000-8000-000000000001")
        assert row._fields == ("created", "updated", "id", "json", "version_id", "pid")
        assert row.created == row.updated == CREATED
        assert row.version_id == 1
        assert row.pid == "0000-0002-5082-6404"

    def test_fresh_uuid_per_row(self, alex):
        assert build_bulk_row(alex, CREATED).id != build_bulk_row(alex, CREATED).id

    def test_row_parses_back(self, alex):
        line = format_copy_line(build_bulk_row(alex, CREATED, row_id="row-1"))
        (row,) = read_copy_rows(line)
        assert len(row) == 6
        assert row[2] == "row-1"
        assert json.loads(row[3])["identifiers"][0]["identifier"] == "0000-0002-5082-6404"
        assert row[5] == "0000-0002-5082-6404"

    def test_hostile_values_keep_columns(self):
        record = PersonRecord(
            entity_id="0000-0002-1825-0097",
            given_names='Josiah "Joe",\nthe',
            family_name="Carberry\r\nIII",
            employments=[Employment(organization_name='Brown, "University"\n')],
        )
        output = io.StringIO()
        writer = BulkRowWriter(output, header=True, created=CREATED, row_id_factory=lambda: "row-1")
        writer.start()
        writer.write(record)
        writer.write(record)

        header, first, second = read_copy_rows(output.getvalue())
        assert header == ["created", "updated", "id", "json", "version_id", "pid"]
        assert first == second
        assert first[5] == "0000-0002-1825-0097"
        document = json.loads(first[3])
        assert document["given_name"] == 'Josiah "Joe",\nthe'
        assert document["affiliations"][0]["name"] == 'Brown, "University"\n'
        assert writer.count == 2


@pytest.mark.parametrize("value, expected", [
    (None, ""),
    ("", '""'),
    ("plain", "plain"),
    (1, "1"),
    ("a,b", '"a,b"'),
    ('say "hi"', '"say ""hi"""'),
    ("line\nbreak", '"line\nbreak"'),
    ("carriage\rreturn", '"carriage\rreturn"'),
    ("\\.", '"\\."'),
])
def test_escape_copy_field(value, expected):
    assert escape_copy_field(value) == expected


@pytest.mark.parametrize("value", ['a,b', 'quote " inside', 'multi\nline', 'cr\r\nlf', ',"\n,'])
def test_escaped_fields_round_trip_through_csv_reader(value):
    line = format_copy_line(["left", value, "right"])
    assert read_copy_rows(line) == [["left", value, "right"]]


class TestWriters:
    def test_debug_json_holds_one_record(self, alex):
        writer = DebugJsonWriter(io.StringIO())
        writer.write(alex)
        with pytest.raises(ConversionError):
            writer.write(alex)

    def test_ndjson_writer(self, alex):
        output = io.StringIO()
        writer = JsonLinesWriter(output)
        writer.write(alex)
        writer.write(alex)
        lines = output.getvalue().splitlines()
        assert len(lines) == 2
        assert parse_ndjson_line(lines[1]) == alex

    def test_no_header_by_default(self, alex):
        output = io.StringIO()
        writer = BulkRowWriter(output, created=CREATED)
        writer.start()
        writer.write(alex)
        assert len(read_copy_rows(output.getvalue())) == 1

    def test_unwritable_sink(self, alex):
        class BrokenSink(io.StringIO):
            def write(self, text):
                raise OSError("disk full")

        writer = JsonLinesWriter(BrokenSink())
        with pytest.raises(OutputUnwritable):
            writer.write(alex)
        assert writer.count == 0
