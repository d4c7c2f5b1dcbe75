from __future__ import annotations

import io
import zipfile
import zlib
from dataclasses import dataclass
from typing import Iterable, Iterator

from .security import sanitize_path


class ArchiveError(ValueError):
    """The upload is not an archive we are willing to unpack."""


class UnsafeEntryError(ArchiveError):
    def __init__(self, raw_name: str) -> None:
        super().__init__(f"Unsupported entry path: {raw_name}")
        self.raw_name = raw_name


class ArchiveTooLargeError(ArchiveError):
    pass


@dataclass(frozen=True)
class ArchiveMember:
    raw_name: str
    path: str  # sanitized, relative
    info: zipfile.ZipInfo


def is_zip_bytes(data: bytes) -> bool:
    try:
        return zipfile.is_zipfile(io.BytesIO(data))
    except OSError:
        return False


def open_archive(zip_bytes: bytes) -> zipfile.ZipFile:
    if not zip_bytes or not is_zip_bytes(zip_bytes):
        raise ArchiveError("Invalid ZIP archive")
    try:
        return zipfile.ZipFile(io.BytesIO(zip_bytes))
    except (zipfile.BadZipFile, zipfile.LargeZipFile) as exc:
        raise ArchiveError("Invalid ZIP archive") from exc


def plan_members(zf: zipfile.ZipFile, *, max_extracted_bytes: int) -> list[ArchiveMember]:
    """Validate every entry name before anything is extracted.

    Rules:
    - Directories are skipped
    - Any unsafe path (absolute, drive letter, '..') fails the whole archive
    - Encrypted entries are rejected
    - Declared uncompressed sizes must fit in max_extracted_bytes in total

    Duplicate sanitized names keep the later entry, matching upsert semantics.
    """
    planned: dict[str, ArchiveMember] = {}
    total = 0
    for info in zf.infolist():
        if info.is_dir():
            continue
        path = sanitize_path(info.filename)
        if path is None:
            raise UnsafeEntryError(info.filename)
        if info.flag_bits & 0x1:
            raise ArchiveError(f"Encrypted entries are not supported: {info.filename}")
        total += info.file_size
        if total > max_extracted_bytes:
            raise ArchiveTooLargeError(
                f"Archive expands beyond {max_extracted_bytes / (1024 * 1024):.0f} MiB"
            )
        planned.pop(path, None)
        planned[path] = ArchiveMember(raw_name=info.filename, path=path, info=info)
    return list(planned.values())


def iter_member_bytes(zf: zipfile.ZipFile, members: Iterable[ArchiveMember]) -> Iterator[tuple[ArchiveMember, bytes]]:
    """Yield (member, bytes) one entry at a time so only one body is held in memory."""
    for member in members:
        try:
            data = zf.read(member.info)
        except (zipfile.BadZipFile, zlib.error, EOFError, OSError, RuntimeError) as exc:
            raise ArchiveError(f"Corrupt entry: {member.raw_name}") from exc
        yield member, data


def build_archive(entries: Iterable[tuple[str, bytes]]) -> bytes:
    """Build a ZIP from (path, bytes) pairs in the given order."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, mode="w", compression=zipfile.ZIP_DEFLATED) as zf:
        for arcname, data in entries:
            zf.writestr(arcname, data)
    return buf.getvalue()
