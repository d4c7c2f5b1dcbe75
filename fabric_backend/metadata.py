"""Typed access to session, log, asset and app-storage rows.

Every method opens its own short transaction. Uniqueness, ordering and upsert
rules live here so handlers never build queries themselves.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.orm import sessionmaker

from .db import AppLogRecord, AppObjectRecord, AssetRecord, LogRecord, SessionRecord, utcnow
from .security import generate_id


@dataclass(frozen=True)
class StoredFile:
    """One blob written by an ingestion pass, waiting for its metadata row."""

    filename: str
    object_key: str
    content_type: str
    size: int
    checksum: str


@dataclass(frozen=True)
class LogInput:
    message: str
    level: str = "info"
    context: Any = None


@dataclass(frozen=True)
class PageCursor:
    created_at: datetime
    id: str | None = None


def encode_cursor(created_at: datetime, row_id: str) -> str:
    raw = f"{created_at.isoformat(timespec='microseconds')}|{row_id}".encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(token: str) -> PageCursor:
    """Parse a cursor produced by encode_cursor.

    A bare ISO-8601 timestamp is accepted too and pages strictly before it.
    Raises ValueError for anything else.
    """
    token = (token or "").strip()
    if not token:
        raise ValueError("empty cursor")
    try:
        return PageCursor(created_at=_parse_timestamp(token))
    except ValueError:
        pass
    try:
        padded = token + "=" * (-len(token) % 4)
        raw = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError) as exc:
        raise ValueError("malformed cursor") from exc
    stamp, sep, row_id = raw.partition("|")
    if not sep or not row_id:
        raise ValueError("malformed cursor")
    return PageCursor(created_at=_parse_timestamp(stamp), id=row_id)


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class MetadataStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    # -- sessions ---------------------------------------------------------

    def create_session(self, tenant: str, app_name: str, metadata: dict | None) -> SessionRecord:
        now = utcnow()
        record = SessionRecord(
            id=generate_id(),
            app_name=app_name,
            tenant=tenant,
            status="active",
            metadata_=metadata,
            last_sequence=0,
            created_at=now,
            updated_at=now,
        )
        with self._session_factory.begin() as db:
            db.add(record)
        return record

    def get_session(self, session_id: str, tenant: str) -> SessionRecord | None:
        """Return the session only when owned by tenant; otherwise None."""
        with self._session_factory() as db:
            record = db.get(SessionRecord, session_id)
        if record is None or record.tenant != tenant:
            return None
        return record

    def list_sessions(self, tenant: str, app_name: str | None = None) -> list[SessionRecord]:
        stmt = select(SessionRecord).where(SessionRecord.tenant == tenant)
        if app_name:
            stmt = stmt.where(SessionRecord.app_name == app_name)
        stmt = stmt.order_by(SessionRecord.updated_at.desc(), SessionRecord.id.desc())
        with self._session_factory() as db:
            return list(db.scalars(stmt))

    def session_metrics(self, session_id: str) -> dict[str, int]:
        with self._session_factory() as db:
            log_count = db.scalar(
                select(func.count()).select_from(LogRecord).where(LogRecord.session_id == session_id)
            )
            asset_count = db.scalar(
                select(func.count()).select_from(AssetRecord).where(AssetRecord.session_id == session_id)
            )
        return {"logCount": int(log_count or 0), "assetCount": int(asset_count or 0)}

    # -- session logs -----------------------------------------------------

    def append_logs(self, session_id: str, entries: Sequence[LogInput]) -> int:
        """Insert a batch with contiguous sequence numbers.

        The counter on the session row is bumped by the batch size in the same
        transaction as the inserts; the row write lock serializes concurrent
        writers, and (session_id, sequence) is unique as a backstop.
        """
        if not entries:
            return 0
        now = utcnow()
        with self._session_factory.begin() as db:
            result = db.execute(
                update(SessionRecord)
                .where(SessionRecord.id == session_id)
                .values(last_sequence=SessionRecord.last_sequence + len(entries), updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise LookupError(session_id)
            last = db.scalar(select(SessionRecord.last_sequence).where(SessionRecord.id == session_id))
            first = int(last) - len(entries) + 1
            db.add_all(
                LogRecord(
                    session_id=session_id,
                    sequence=first + offset,
                    level=entry.level,
                    message=entry.message,
                    context=entry.context,
                    created_at=now,
                )
                for offset, entry in enumerate(entries)
            )
        return len(entries)

    def list_logs(self, session_id: str) -> list[LogRecord]:
        stmt = select(LogRecord).where(LogRecord.session_id == session_id).order_by(LogRecord.sequence.asc())
        with self._session_factory() as db:
            return list(db.scalars(stmt))

    # -- session assets ---------------------------------------------------

    def upsert_assets(self, session_id: str, files: Iterable[StoredFile]) -> list[str]:
        """Insert new rows or overwrite key/type/size/checksum on (session_id, filename); touch the session.

        Returns the object keys that rows pointed at before this call and no
        longer do.
        """
        files = list(files)
        superseded: list[str] = []
        with self._session_factory.begin() as db:
            existing = {
                row.filename: row
                for row in db.scalars(
                    select(AssetRecord).where(
                        AssetRecord.session_id == session_id,
                        AssetRecord.filename.in_([f.filename for f in files]),
                    )
                )
            }
            for stored in files:
                row = existing.get(stored.filename)
                if row is None:
                    db.add(
                        AssetRecord(
                            session_id=session_id,
                            object_key=stored.object_key,
                            filename=stored.filename,
                            content_type=stored.content_type,
                            size=stored.size,
                            checksum=stored.checksum,
                            created_at=utcnow(),
                        )
                    )
                    continue
                if row.object_key != stored.object_key:
                    superseded.append(row.object_key)
                row.object_key = stored.object_key
                row.content_type = stored.content_type
                row.size = stored.size
                row.checksum = stored.checksum
            db.execute(
                update(SessionRecord)
                .where(SessionRecord.id == session_id)
                .values(updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
        return superseded

    def list_assets(self, session_id: str) -> list[AssetRecord]:
        stmt = select(AssetRecord).where(AssetRecord.session_id == session_id).order_by(AssetRecord.filename)
        with self._session_factory() as db:
            return list(db.scalars(stmt))

    def get_asset(self, session_id: str, filename: str) -> AssetRecord | None:
        stmt = select(AssetRecord).where(AssetRecord.session_id == session_id, AssetRecord.filename == filename)
        with self._session_factory() as db:
            return db.scalars(stmt).one_or_none()

    # -- app-scoped logs --------------------------------------------------

    def create_app_log(
        self, tenant: str, app_name: str, *, level: str, message: str, metadata: Any = None
    ) -> AppLogRecord:
        now = utcnow()
        record = AppLogRecord(
            id=generate_id(),
            tenant=tenant,
            app_name=app_name,
            level=level,
            message=message,
            metadata_=metadata,
            created_at=now,
            updated_at=now,
        )
        with self._session_factory.begin() as db:
            db.add(record)
        return record

    def list_app_logs(
        self, tenant: str, app_name: str, *, limit: int, cursor: PageCursor | None = None
    ) -> tuple[list[AppLogRecord], str | None]:
        """Newest-first keyset page ordered by (created_at, id).

        Returns the rows and the cursor for the next page, which is only set
        when the page came back full.
        """
        stmt = select(AppLogRecord).where(AppLogRecord.tenant == tenant, AppLogRecord.app_name == app_name)
        if cursor is not None:
            if cursor.id is None:
                stmt = stmt.where(AppLogRecord.created_at < cursor.created_at)
            else:
                stmt = stmt.where(
                    or_(
                        AppLogRecord.created_at < cursor.created_at,
                        and_(AppLogRecord.created_at == cursor.created_at, AppLogRecord.id < cursor.id),
                    )
                )
        stmt = stmt.order_by(AppLogRecord.created_at.desc(), AppLogRecord.id.desc()).limit(limit)
        with self._session_factory() as db:
            rows = list(db.scalars(stmt))
        next_cursor = None
        if rows and len(rows) == limit:
            last = rows[-1]
            next_cursor = encode_cursor(last.created_at, last.id)
        return rows, next_cursor

    def get_app_log(self, tenant: str, app_name: str, log_id: str) -> AppLogRecord | None:
        with self._session_factory() as db:
            record = db.get(AppLogRecord, log_id)
        if record is None or record.tenant != tenant or record.app_name != app_name:
            return None
        return record

    def update_app_log(self, tenant: str, app_name: str, log_id: str, changes: dict[str, Any]) -> AppLogRecord | None:
        """Apply a partial update (keys: level, message, metadata)."""
        with self._session_factory.begin() as db:
            record = db.get(AppLogRecord, log_id)
            if record is None or record.tenant != tenant or record.app_name != app_name:
                return None
            if "level" in changes:
                record.level = changes["level"]
            if "message" in changes:
                record.message = changes["message"]
            if "metadata" in changes:
                record.metadata_ = changes["metadata"]
            record.updated_at = utcnow()
        return record

    def delete_app_log(self, tenant: str, app_name: str, log_id: str) -> bool:
        with self._session_factory.begin() as db:
            result = db.execute(
                delete(AppLogRecord).where(
                    AppLogRecord.id == log_id,
                    AppLogRecord.tenant == tenant,
                    AppLogRecord.app_name == app_name,
                )
            )
        return result.rowcount > 0

    # -- app-scoped objects -----------------------------------------------

    def upsert_app_objects(
        self, tenant: str, app_name: str, files: Iterable[StoredFile], metadata: Any = None
    ) -> tuple[list[AppObjectRecord], list[str]]:
        """Upsert on (tenant, app_name, filename).

        Returns the saved rows and the object keys they no longer point at.
        """
        files = list(files)
        now = utcnow()
        saved: list[AppObjectRecord] = []
        superseded: list[str] = []
        with self._session_factory.begin() as db:
            existing = {
                row.filename: row
                for row in db.scalars(
                    select(AppObjectRecord).where(
                        AppObjectRecord.tenant == tenant,
                        AppObjectRecord.app_name == app_name,
                        AppObjectRecord.filename.in_([f.filename for f in files]),
                    )
                )
            }
            for stored in files:
                row = existing.get(stored.filename)
                if row is None:
                    row = AppObjectRecord(
                        tenant=tenant,
                        app_name=app_name,
                        filename=stored.filename,
                        created_at=now,
                    )
                    db.add(row)
                elif row.object_key != stored.object_key:
                    superseded.append(row.object_key)
                row.object_key = stored.object_key
                row.content_type = stored.content_type
                row.size = stored.size
                row.checksum = stored.checksum
                if metadata is not None:
                    row.metadata_ = metadata
                row.updated_at = now
                saved.append(row)
        return saved, superseded

    def list_app_objects(self, tenant: str, app_name: str) -> list[AppObjectRecord]:
        stmt = (
            select(AppObjectRecord)
            .where(AppObjectRecord.tenant == tenant, AppObjectRecord.app_name == app_name)
            .order_by(AppObjectRecord.filename)
        )
        with self._session_factory() as db:
            return list(db.scalars(stmt))

    def get_app_object(self, tenant: str, app_name: str, filename: str) -> AppObjectRecord | None:
        stmt = select(AppObjectRecord).where(
            AppObjectRecord.tenant == tenant,
            AppObjectRecord.app_name == app_name,
            AppObjectRecord.filename == filename,
        )
        with self._session_factory() as db:
            return db.scalars(stmt).one_or_none()

    def delete_app_object(self, tenant: str, app_name: str, filename: str) -> AppObjectRecord | None:
        """Delete the row and return it so the caller can drop the blob afterwards."""
        with self._session_factory.begin() as db:
            row = db.scalars(
                select(AppObjectRecord).where(
                    AppObjectRecord.tenant == tenant,
                    AppObjectRecord.app_name == app_name,
                    AppObjectRecord.filename == filename,
                )
            ).one_or_none()
            if row is None:
                return None
            db.delete(row)
        return row

    # -- reconciliation ---------------------------------------------------

    def referenced_object_keys(self) -> set[str]:
        with self._session_factory() as db:
            keys = set(db.scalars(select(AssetRecord.object_key)))
            keys.update(db.scalars(select(AppObjectRecord.object_key)))
        return keys
