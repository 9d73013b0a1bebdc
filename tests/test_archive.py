# WORKFLOW: Tests for the forward-only archive entry stream.
# Test scenarios:
# 1. tar.gz and zip containers yield matching regular files in container order
# 2. Directory markers and non-matching names are skipped silently
# 3. Corrupt, truncated and missing containers raise ArchiveCorrupt
# 4. Single-file and directory modes, and open_entries() dispatch

import os

import pytest

from core.exceptions import ArchiveCorrupt
from etl.archive import (
    is_single_document,
    iter_archive_entries,
    iter_directory_entries,
    iter_single_file,
    list_directory_entries,
    open_entries,
)

ENTRIES = [
    ("ORCID_2023_summaries/", None),
    ("ORCID_2023_summaries/097/", None),
    ("ORCID_2023_summaries/097/0000-0002-1825-0097.xml", b"<record-a/>"),
    ("ORCID_2023_summaries/README.txt", b"not a record"),
    ("ORCID_2023_summaries/404/0000-0002-5082-6404.xml", b"<record-b/>"),
]


def names_and_payloads(entries):
    return [(entry.name, entry.stream.read()) for entry in entries]


def test_tar_entries_in_container_order(make_tar):
    archive = make_tar(ENTRIES)
    assert names_and_payloads(iter_archive_entries(archive)) == [
        ("ORCID_2023_summaries/097/0000-0002-1825-0097.xml", b"<record-a/>"),
        ("ORCID_2023_summaries/404/0000-0002-5082-6404.xml", b"<record-b/>"),
    ]


def test_uncompressed_tar(make_tar):
    archive = make_tar(ENTRIES, name="summaries.tar", mode="w")
    assert len(list(iter_archive_entries(archive))) == 2


def test_zip_entries(make_zip):
    archive = make_zip(ENTRIES)
    assert [name for name, _ in names_and_payloads(iter_archive_entries(archive))] == [
        "ORCID_2023_summaries/097/0000-0002-1825-0097.xml",
        "ORCID_2023_summaries/404/0000-0002-5082-6404.xml",
    ]


def test_custom_entry_pattern(make_tar):
    archive = make_tar(ENTRIES)
    entries = list(iter_archive_entries(archive, entry_pattern=r".*\.txt$"))
    assert [entry.name for entry in entries] == ["ORCID_2023_summaries/README.txt"]


def test_stream_is_lazy(make_tar):
    archive = make_tar(ENTRIES)
    stream = iter_archive_entries(archive)
    first = next(stream)
    assert first.name.endswith("0000-0002-1825-0097.xml")
    stream.close()


def test_not_an_archive(tmp_path):
    path = tmp_path / "garbage.tar.gz"
    path.write_bytes(b"this is not a tar archive" * 40)
    with pytest.raises(ArchiveCorrupt):
        list(iter_archive_entries(path))


def test_truncated_archive(make_tar):
    archive = make_tar([("summaries/0000-0002-1825-0097.xml", os.urandom(256 * 1024))])
    data = archive.read_bytes()
    archive.write_bytes(data[: len(data) // 2])
    with pytest.raises(ArchiveCorrupt):
        list(iter_archive_entries(archive))


def test_missing_archive(tmp_path):
    with pytest.raises(ArchiveCorrupt):
        list(iter_archive_entries(tmp_path / "missing.tar.gz"))


def test_single_file_mode(data_dir):
    entries = list(iter_single_file(data_dir / "alex.xml"))
    assert len(entries) == 1
    assert entries[0].name == "alex.xml"
    assert entries[0].stream.read().startswith(b"<?xml")


class TestDirectoryMode:
    def setup_method(self):
        self.files = {
            "404/0000-0002-5082-6404.xml": b"<b/>",
            "097/0000-0002-1825-0097.xml": b"<a/>",
            "097/notes.txt": b"skip me",
        }

    def _populate(self, root):
        for relative, payload in self.files.items():
            path = root / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(payload)

    def test_sorted_relative_names(self, tmp_path):
        self._populate(tmp_path)
        entries = names_and_payloads(iter_directory_entries(tmp_path))
        assert entries == [
            ("097/0000-0002-1825-0097.xml", b"<a/>"),
            ("404/0000-0002-5082-6404.xml", b"<b/>"),
        ]

    def test_list_directory_entries(self, tmp_path):
        self._populate(tmp_path)
        paths = list_directory_entries(tmp_path)
        assert [path.name for path in paths] == ["0000-0002-1825-0097.xml", "0000-0002-5082-6404.xml"]

    def test_missing_directory(self, tmp_path):
        with pytest.raises(ArchiveCorrupt):
            list_directory_entries(tmp_path / "missing")


def test_open_entries_dispatch(tmp_path, make_tar, data_dir):
    archive = make_tar(ENTRIES)
    assert len(list(open_entries(archive))) == 2
    assert len(list(open_entries(data_dir / "alex.xml"))) == 1

    (tmp_path / "mounted").mkdir()
    (tmp_path / "mounted" / "0000-0002-1825-0097.xml").write_bytes(b"<a/>")
    assert [entry.name for entry in open_entries(tmp_path / "mounted")] == ["0000-0002-1825-0097.xml"]


def test_is_single_document(tmp_path, data_dir):
    assert is_single_document(data_dir / "alex.xml")
    assert not is_single_document(tmp_path / "summaries.tar.gz")
    assert not is_single_document(tmp_path)
