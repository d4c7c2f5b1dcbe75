"""ZIP ingestion and archive rebuilds shared by session assets and app objects.

Ordering: every blob is written before any metadata row references it. Blob
keys carry the content digest (`<prefix><sha256>/<path>`), so a failed
re-upload leaves the previous blob untouched. A failure half-way leaves the
earlier blobs in place (no rollback); the reconciliation sweep removes them
once they are old enough.
"""

from __future__ import annotations

import logging
from typing import Iterable, Protocol

from .blobstore import BlobStore
from .content import checksum, guess_content_type
from .errors import NotFoundError, PayloadError, StorageFault, ValidationError
from .metadata import StoredFile
from .zip_utils import ArchiveError, ArchiveTooLargeError, build_archive, iter_member_bytes, open_archive, plan_members


logger = logging.getLogger(__name__)


class _StoredRow(Protocol):
    filename: str
    object_key: str


def session_key_prefix(session_id: str) -> str:
    return f"sessions/{session_id}/"


def app_key_prefix(tenant: str, app_name: str) -> str:
    return f"apps/{tenant}/{app_name}/"


def store_file(
    blobs: BlobStore,
    *,
    key_prefix: str,
    filename: str,
    data: bytes,
    content_type: str | None = None,
    custom_metadata: dict[str, str] | None = None,
) -> StoredFile:
    digest = checksum(data)
    # Keyed by content, so a re-upload never overwrites the blob a live row still serves.
    object_key = f"{key_prefix}{digest}/{filename}"
    content_type = content_type or guess_content_type(filename)
    meta = dict(custom_metadata or {})
    meta.update({"filename": filename, "checksum": digest})
    try:
        blobs.put(object_key, data, content_type=content_type, custom_metadata=meta)
    except OSError as exc:
        logger.error("Blob upload failed key=%s filename=%s: %s", object_key, filename, exc)
        raise StorageFault("Failed to store asset", {"filename": filename}) from exc
    return StoredFile(
        filename=filename,
        object_key=object_key,
        content_type=content_type,
        size=len(data),
        checksum=digest,
    )


def ingest_archive(
    blobs: BlobStore,
    zip_bytes: bytes,
    *,
    key_prefix: str,
    max_extracted_bytes: int,
    custom_metadata: dict[str, str] | None = None,
) -> list[StoredFile]:
    """Unpack an uploaded ZIP into blobs and return one StoredFile per entry.

    Every entry path is validated up front, so an unsafe name fails the call
    before any blob is written.
    """
    try:
        zf = open_archive(zip_bytes)
    except ArchiveError as exc:
        raise ValidationError(str(exc)) from exc

    stored: list[StoredFile] = []
    with zf:
        try:
            members = plan_members(zf, max_extracted_bytes=max_extracted_bytes)
        except ArchiveTooLargeError as exc:
            raise PayloadError(str(exc), status_code=413) from exc
        except ArchiveError as exc:
            raise ValidationError(str(exc)) from exc

        if not members:
            raise ValidationError("Zip archive contained no files")

        try:
            for member, data in iter_member_bytes(zf, members):
                stored.append(
                    store_file(
                        blobs,
                        key_prefix=key_prefix,
                        filename=member.path,
                        data=data,
                        custom_metadata=custom_metadata,
                    )
                )
        except ArchiveError as exc:
            if stored:
                logger.warning(
                    "Archive ingestion aborted after %d blob(s) under %s", len(stored), key_prefix
                )
            raise ValidationError(str(exc)) from exc
    return stored


def rebuild_archive(
    blobs: BlobStore, rows: Iterable[_StoredRow], *, empty_message: str, log_context: str
) -> bytes:
    """Fetch the blob behind every row and pack them into a fresh ZIP.

    A row without its blob is a store inconsistency and fails the whole
    archive (StorageFault) rather than silently producing a partial one.
    """
    rows = list(rows)
    if not rows:
        raise NotFoundError(empty_message)

    def _entries():
        for row in rows:
            try:
                blob = blobs.get(row.object_key)
            except OSError as exc:
                logger.error("Blob read failed for %s key=%s: %s", log_context, row.object_key, exc)
                raise StorageFault("Failed to read asset", {"filename": row.filename}) from exc
            if blob is None:
                logger.error("Blob missing for %s key=%s filename=%s", log_context, row.object_key, row.filename)
                raise StorageFault("Asset storage inconsistent")
            yield row.filename, blob.data

    return build_archive(_entries())


def discard_blobs(blobs: BlobStore, keys: Iterable[str], *, log_context: str) -> int:
    """Delete blobs no row points at any more; failures are left for the sweep."""
    removed = 0
    for key in keys:
        try:
            if blobs.delete(key):
                removed += 1
        except OSError as exc:
            logger.error("Blob delete failed for %s key=%s (left for reconciliation): %s", log_context, key, exc)
    return removed
