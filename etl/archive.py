# WORKFLOW: Sequential entry stream over ORCID public data file archives.
# Used by: Conversion pipeline, extract command, sharded conversion
# Functions:
# 1. iter_archive_entries() - Stream per-entity XML entries from a tar/zip container
# 2. iter_single_file() - Yield one standalone XML document as a one-entry archive
# 3. iter_directory_entries() - Yield entries exposed as plain files (mounted archive)
# 4. list_directory_entries() - List matching files for sharded processing
# 5. open_entries() - Pick the right entry source for an input path
#
# Ingestion flow: Archive -> Forward-only member walk -> Pattern filter -> (name, bytes) entries
# This is the first step of the conversion pipeline. Archives are never extracted to
# disk and never seeked; at most one entry's decompressed content is held at a time.

"""
Sequential entry stream over ORCID public data file archives.
"""

import io
import logging
import re
import tarfile
import zipfile
import zlib
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator, List, NamedTuple, Optional, Union

from core.config import settings
from core.exceptions import ArchiveCorrupt

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

# Errors that mean the container itself can no longer be read
FRAMING_ERRORS = (tarfile.TarError, zipfile.BadZipFile, zlib.error, EOFError, OSError)


class ArchiveEntry(NamedTuple):
    """One named byte stream of the archive."""
    name: str
    stream: BinaryIO


def _compile_pattern(entry_pattern: Optional[str]) -> "re.Pattern[str]":
    return re.compile(entry_pattern or settings.entry_pattern)


def _iter_tar_entries(archive_path: Path, pattern: "re.Pattern[str]") -> Iterator[ArchiveEntry]:
    try:
        # Stream mode: members are read strictly in order, compression auto-detected
        tar = tarfile.open(archive_path, mode="r|*")
    except FRAMING_ERRORS as e:
        raise ArchiveCorrupt(f"Cannot open archive {archive_path}: {e}") from e

    with tar:
        members = iter(tar)
        while True:
            try:
                member = next(members)
            except StopIteration:
                break
            except FRAMING_ERRORS as e:
                raise ArchiveCorrupt(f"Invalid archive framing in {archive_path}: {e}") from e

            if not member.isfile() or not pattern.match(member.name):
                continue

            try:
                extracted = tar.extractfile(member)
                content = extracted.read() if extracted is not None else b""
            except FRAMING_ERRORS as e:
                raise ArchiveCorrupt(
                    f"Failed to read entry {member.name} from {archive_path}: {e}"
                ) from e

            yield ArchiveEntry(member.name, io.BytesIO(content))


def _iter_zip_entries(archive_path: Path, pattern: "re.Pattern[str]") -> Iterator[ArchiveEntry]:
    try:
        zip_ref = zipfile.ZipFile(archive_path, 'r')
    except FRAMING_ERRORS as e:
        raise ArchiveCorrupt(f"Cannot open archive {archive_path}: {e}") from e

    with zip_ref:
        for info in zip_ref.infolist():
            if info.is_dir() or not pattern.match(info.filename):
                continue

            try:
                content = zip_ref.read(info)
            except FRAMING_ERRORS as e:
                raise ArchiveCorrupt(
                    f"Failed to read entry {info.filename} from {archive_path}: {e}"
                ) from e

            yield ArchiveEntry(info.filename, io.BytesIO(content))


def iter_archive_entries(archive_path: PathLike, entry_pattern: Optional[str] = None) -> Iterator[ArchiveEntry]:
    """
    Stream matching entries of a compressed container in container order.

    Args:
        archive_path: Path to a .tar, .tar.gz, .tar.bz2, .tar.xz or .zip file
        entry_pattern: Regex matched against entry names (default: settings.entry_pattern)

    Yields:
        ArchiveEntry(name, stream) for each regular file whose name matches

    Raises:
        ArchiveCorrupt: if the container cannot be opened or its framing is invalid
    """
    path = Path(archive_path)
    pattern = _compile_pattern(entry_pattern)

    logger.info(f"Streaming entries from {path}")
    if path.is_file() and zipfile.is_zipfile(path):
        yield from _iter_zip_entries(path, pattern)
    else:
        yield from _iter_tar_entries(path, pattern)


def iter_single_file(xml_path: PathLike) -> Iterator[ArchiveEntry]:
    """
    Yield a standalone XML document as a degenerate one-entry archive.

    Raises:
        ArchiveCorrupt: if the file cannot be read
    """
    path = Path(xml_path)
    try:
        content = path.read_bytes()
    except OSError as e:
        raise ArchiveCorrupt(f"Cannot read input file {path}: {e}") from e

    yield ArchiveEntry(path.name, io.BytesIO(content))


def list_directory_entries(root: PathLike, entry_pattern: Optional[str] = None) -> List[Path]:
    """
    List matching files below a directory, in sorted relative-path order.

    Args:
        root: Directory where an external tool exposes archive entries as files
        entry_pattern: Regex matched against the path relative to root
    """
    root_path = Path(root)
    if not root_path.is_dir():
        raise ArchiveCorrupt(f"Input directory {root_path} does not exist")

    pattern = _compile_pattern(entry_pattern)
    return sorted(
        path for path in root_path.rglob("*")
        if path.is_file() and pattern.match(path.relative_to(root_path).as_posix())
    )


def iter_file_entries(paths: Iterable[Path], root: Optional[PathLike] = None) -> Iterator[ArchiveEntry]:
    """
    Yield entries for an explicit list of files.

    Entry names are relative to ``root`` when given.
    """
    root_path = Path(root) if root is not None else None
    for path in paths:
        name = path.relative_to(root_path).as_posix() if root_path is not None else path.name
        try:
            content = path.read_bytes()
        except OSError as e:
            raise ArchiveCorrupt(f"Cannot read entry file {path}: {e}") from e
        yield ArchiveEntry(name, io.BytesIO(content))


def iter_directory_entries(root: PathLike, entry_pattern: Optional[str] = None) -> Iterator[ArchiveEntry]:
    """Yield entries exposed as ordinary files below ``root``."""
    paths = list_directory_entries(root, entry_pattern)
    logger.info(f"Found {len(paths)} entry files below {root}")
    yield from iter_file_entries(paths, root)


def is_single_document(input_path: PathLike) -> bool:
    """True when the input is one standalone XML document."""
    path = Path(input_path)
    return path.suffix.lower() == ".xml" and not path.is_dir()


def open_entries(input_path: PathLike, entry_pattern: Optional[str] = None) -> Iterator[ArchiveEntry]:
    """
    Pick the entry source for an input path.

    A directory is read as mounted entries, a ``.xml`` file in single-file
    mode, anything else as a compressed container.
    """
    path = Path(input_path)
    if path.is_dir():
        return iter_directory_entries(path, entry_pattern)
    if is_single_document(path):
        return iter_single_file(path)
    return iter_archive_entries(path, entry_pattern)
