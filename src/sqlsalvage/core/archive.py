# src/sqlsalvage/core/archive.py
"""Picking and extracting the database candidate from an uploaded ZIP.

Archives of damaged databases are often damaged themselves, so an entry
whose CRC does not match is still extracted by inflating its raw bytes.
"""

from __future__ import annotations

import re
import shutil
import struct
import zipfile
import zlib
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from sqlsalvage.contracts import ArchiveError, NotFoundError
from sqlsalvage.core.logging import get_logger

logger = get_logger(__name__)

DATABASE_EXTENSIONS = (".db", ".sqlite", ".sqlite3")
NAME_HINTS = ("db", "database", "sqlite")
DEFAULT_BASE_NAME = "extracted_database"

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9.-]")
_LOCAL_HEADER = struct.Struct("<4s5H3L2H")
_LOCAL_HEADER_SIGNATURE = b"PK\x03\x04"
_COPY_CHUNK = 1024 * 1024


@dataclass(frozen=True, slots=True)
class ArchiveEntry:
    name: str
    size: int
    is_dir: bool = False


@dataclass(frozen=True, slots=True)
class ExtractedCandidate:
    path: Path
    base_name: str
    entry_name: str


def sanitize_name(name: str) -> str:
    """Basename of an archive entry with unsafe characters replaced by ``_``."""
    return _UNSAFE_CHARS.sub("_", PurePosixPath(name.replace("\\", "/")).name)


def choose_candidate(entries: Iterable[ArchiveEntry]) -> ArchiveEntry | None:
    """Pick the entry most likely to be the database.

    First match by extension, then by name hint, then the largest file.
    Directories are never candidates.
    """
    files = [e for e in entries if not e.is_dir]
    for entry in files:
        if PurePosixPath(entry.name).suffix.lower() in DATABASE_EXTENSIONS:
            return entry
    for entry in files:
        lowered = entry.name.lower()
        if any(hint in lowered for hint in NAME_HINTS):
            return entry
    largest: ArchiveEntry | None = None
    for entry in files:
        if entry.size > 0 and (largest is None or entry.size > largest.size):
            largest = entry
    return largest


def _raw_entry_bytes(zip_path: Path, info: zipfile.ZipInfo) -> bytes:
    with zip_path.open("rb") as f:
        f.seek(info.header_offset)
        header = f.read(_LOCAL_HEADER.size)
        if len(header) != _LOCAL_HEADER.size:
            raise ArchiveError(f"Truncated local header for {info.filename}")
        fields = _LOCAL_HEADER.unpack(header)
        if fields[0] != _LOCAL_HEADER_SIGNATURE:
            raise ArchiveError(f"Bad local header signature for {info.filename}")
        name_len, extra_len = fields[-2], fields[-1]
        f.seek(name_len + extra_len, 1)
        return f.read(info.compress_size)


def _inflate_raw(zip_path: Path, info: zipfile.ZipInfo, target: Path) -> None:
    """Recover entry contents without CRC verification."""
    data = _raw_entry_bytes(zip_path, info)
    if info.compress_type == zipfile.ZIP_STORED:
        payload = data
    elif info.compress_type == zipfile.ZIP_DEFLATED:
        try:
            payload = zlib.decompressobj(-zlib.MAX_WBITS).decompress(data)
        except zlib.error:
            try:
                payload = zlib.decompress(data)
            except zlib.error as e:
                raise ArchiveError(f"Cannot extract file: {info.filename}") from e
    else:
        raise ArchiveError(f"Cannot extract file: {info.filename} (compression method {info.compress_type})")
    target.write_bytes(payload)


def extract_candidate(zip_path: Path, dest_dir: Path, prefix: str) -> ExtractedCandidate:
    """Extract the best database candidate to ``dest_dir/{prefix}{name}``.

    Raises:
        NotFoundError: The archive holds no usable file.
        ArchiveError: The archive or the chosen entry cannot be read.
    """
    try:
        archive = zipfile.ZipFile(zip_path)
    except (zipfile.BadZipFile, OSError) as e:
        raise ArchiveError(f"Unreadable ZIP archive: {e}") from e

    with archive:
        infos = {info.filename: info for info in archive.infolist()}
        entries = [ArchiveEntry(info.filename, info.file_size, info.is_dir()) for info in infos.values()]
        logger.info("Inspecting ZIP archive", zip_path=str(zip_path), entries=len(entries))
        chosen = choose_candidate(entries)
        if chosen is None:
            raise NotFoundError("No SQLite database file found in the ZIP archive")

        info = infos[chosen.name]
        target = dest_dir / f"{prefix}{sanitize_name(chosen.name)}"
        try:
            with archive.open(info) as source, target.open("wb") as sink:
                shutil.copyfileobj(source, sink, _COPY_CHUNK)
        except (zipfile.BadZipFile, zlib.error, EOFError) as e:
            logger.warning("Normal extraction failed, inflating raw entry data", entry=chosen.name, error=str(e))
            _inflate_raw(zip_path, info, target)

    stem = PurePosixPath(chosen.name.replace("\\", "/")).stem
    logger.info("Extracted archive candidate", entry=chosen.name, path=str(target), size=target.stat().st_size)
    return ExtractedCandidate(path=target, base_name=stem or DEFAULT_BASE_NAME, entry_name=chosen.name)
