# WORKFLOW: Shared pytest fixtures for the ETL test suite.
# Used by: All test modules
# Fixtures:
# 1. data_dir / read_fixture - XML records and reference CSV files under tests/data
# 2. make_tar / make_zip - Build small archives in tmp_path from (name, bytes) pairs
# 3. reference_table - Table loaded from tests/data/orgs.csv and org_mappings.csv

import io
import tarfile
import zipfile
from pathlib import Path

import pytest

from services.reference_table import load_reference_table

DATA_DIR = Path(__file__).parent / "data"


@pytest.fixture
def data_dir() -> Path:
    return DATA_DIR


@pytest.fixture
def read_fixture():
    def _read(name: str) -> bytes:
        return (DATA_DIR / name).read_bytes()
    return _read


@pytest.fixture
def make_tar(tmp_path):
    """Build a tar archive; a None payload adds a directory marker."""

    def _make(entries, name="summaries.tar.gz", mode="w:gz") -> Path:
        path = tmp_path / name
        with tarfile.open(path, mode) as tar:
            for entry_name, payload in entries:
                info = tarfile.TarInfo(entry_name)
                if payload is None:
                    info.type = tarfile.DIRTYPE
                    tar.addfile(info)
                    continue
                info.size = len(payload)
                tar.addfile(info, io.BytesIO(payload))
        return path

    return _make


@pytest.fixture
def make_zip(tmp_path):
    def _make(entries, name="summaries.zip") -> Path:
        path = tmp_path / name
        with zipfile.ZipFile(path, "w", zipfile.ZIP_DEFLATED) as zip_ref:
            for entry_name, payload in entries:
                zip_ref.writestr(entry_name, payload if payload is not None else b"")
        return path

    return _make


@pytest.fixture
def reference_table():
    return load_reference_table(DATA_DIR / "orgs.csv", DATA_DIR / "org_mappings.csv")
