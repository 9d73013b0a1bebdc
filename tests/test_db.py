# WORKFLOW: Tests for the bulk-load table contract and COPY loading.
# Test scenarios:
# 1. name_metadata columns match the bulk-row column order
# 2. init_db() creates the table (SQLite engine)
# 3. COPY statement text and copy_bulk_rows() commit / rollback behaviour

import pytest
from sqlalchemy import create_engine, inspect

from db.models import NAME_METADATA_COLUMNS
from db.session import build_copy_statement, check_db_connection, copy_bulk_rows, init_db
from etl.formatters import BulkRow


def test_columns_match_bulk_rows():
    assert NAME_METADATA_COLUMNS == ("created", "updated", "id", "json", "version_id", "pid")
    assert NAME_METADATA_COLUMNS == BulkRow._fields


def test_init_db_creates_table(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'names.db'}")
    init_db(engine)
    columns = [column["name"] for column in inspect(engine).get_columns("name_metadata")]
    assert tuple(columns) == NAME_METADATA_COLUMNS
    assert check_db_connection(engine)


def test_copy_statement():
    assert build_copy_statement("name_metadata") == (
        "COPY name_metadata (created, updated, id, json, version_id, pid) FROM STDIN WITH (FORMAT csv)"
    )
    assert build_copy_statement("names", header=True).endswith("WITH (FORMAT csv, HEADER true)")


class FakeCursor:
    def __init__(self, fail=False):
        self.fail = fail
        self.statement = None
        self.payload = None
        self.rowcount = -1

    def copy_expert(self, statement, file):
        if self.fail:
            raise RuntimeError("COPY failed")
        self.statement = statement
        self.payload = file.read()
        self.rowcount = len(self.payload.splitlines())


class FakeConnection:
    def __init__(self, cursor):
        self._cursor = cursor
        self.committed = False
        self.rolled_back = False
        self.closed = False

    def cursor(self):
        return self._cursor

    def commit(self):
        self.committed = True

    def rollback(self):
        self.rolled_back = True

    def close(self):
        self.closed = True


class FakeEngine:
    def __init__(self, connection):
        self.connection = connection

    def raw_connection(self):
        return self.connection


class TestCopyBulkRows:
    def setup_method(self):
        self.rows = "2024-01-01T00:00:00+00:00,2024-01-01T00:00:00+00:00,row-1,{},1,0000-0002-1825-0097\n"

    def test_commit(self, tmp_path):
        rows_file = tmp_path / "rows.csv"
        rows_file.write_text(self.rows)
        connection = FakeConnection(FakeCursor())

        loaded = copy_bulk_rows(rows_file, table="name_metadata", engine=FakeEngine(connection))

        assert loaded == 1
        assert connection.committed and connection.closed
        assert connection.cursor().statement.startswith("COPY name_metadata (created,")
        assert connection.cursor().payload == self.rows

    def test_rollback_on_error(self, tmp_path):
        rows_file = tmp_path / "rows.csv"
        rows_file.write_text(self.rows)
        connection = FakeConnection(FakeCursor(fail=True))

        with pytest.raises(RuntimeError):
            copy_bulk_rows(rows_file, engine=FakeEngine(connection))

        assert connection.rolled_back and connection.closed
        assert not connection.committed
