"""Request bodies and response shapes for the HTTP API."""

from __future__ import annotations

from typing import Any, TypeVar
from urllib.parse import quote

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from .config import APP_NAME_MAX_LENGTH, LOG_LEVEL_MAX_LENGTH
from .db import AppLogRecord, AppObjectRecord, AssetRecord, LogRecord, SessionRecord, isoformat
from .errors import ValidationError


ModelT = TypeVar("ModelT", bound=BaseModel)


class CreateSessionRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    appName: str = Field(min_length=1, max_length=APP_NAME_MAX_LENGTH)
    metadata: dict[str, Any] | None = None


class LogEntryIn(BaseModel):
    level: str | None = Field(default=None, min_length=1, max_length=LOG_LEVEL_MAX_LENGTH)
    message: str = Field(min_length=1)
    context: Any = None


class AppendLogsRequest(BaseModel):
    entries: list[LogEntryIn] = Field(min_length=1)


class CreateAppLogRequest(BaseModel):
    level: str = Field(default="info", min_length=1, max_length=LOG_LEVEL_MAX_LENGTH)
    message: str = Field(min_length=1)
    metadata: Any = None


class UpdateAppLogRequest(BaseModel):
    # Only fields present in the body are applied; metadata may be set to null.
    level: str | None = Field(default=None, min_length=1, max_length=LOG_LEVEL_MAX_LENGTH)
    message: str | None = Field(default=None, min_length=1)
    metadata: Any = None

    def changes(self) -> dict[str, Any]:
        changes = {name: getattr(self, name) for name in self.model_fields_set}
        for required in ("level", "message"):
            if required in changes and changes[required] is None:
                raise ValidationError("Invalid payload", {required: "must not be null"})
        if not changes:
            raise ValidationError("Invalid payload", "Provide at least one of level, message, metadata")
        return changes


def parse_body(model: type[ModelT], payload: Any) -> ModelT:
    """Validate a decoded JSON body, mapping pydantic errors to a 400."""
    try:
        return model.model_validate(payload)
    except pydantic.ValidationError as exc:
        details = exc.errors(include_url=False, include_context=False, include_input=False)
        raise ValidationError("Invalid payload", details) from exc


def session_summary(session: SessionRecord) -> dict[str, Any]:
    return {
        "id": session.id,
        "appName": session.app_name,
        "status": session.status,
        "metadata": session.metadata_,
        "createdAt": isoformat(session.created_at),
        "updatedAt": isoformat(session.updated_at),
    }


def session_list_item(session: SessionRecord) -> dict[str, Any]:
    return {
        "sessionId": session.id,
        "appName": session.app_name,
        "metadata": session.metadata_,
        "status": session.status,
        "createdAt": isoformat(session.created_at),
        "updatedAt": isoformat(session.updated_at),
    }


def log_entry(row: LogRecord) -> dict[str, Any]:
    return {
        "sequence": row.sequence,
        "level": row.level,
        "message": row.message,
        "context": row.context,
        "createdAt": isoformat(row.created_at),
    }


def asset_item(row: AssetRecord) -> dict[str, Any]:
    return {
        "filename": row.filename,
        "objectKey": row.object_key,
        "contentType": row.content_type,
        "size": row.size,
        "checksum": row.checksum,
        "createdAt": isoformat(row.created_at),
        "downloadUrl": f"/sessions/{row.session_id}/assets/{quote(row.filename, safe='')}",
    }


def app_log_item(row: AppLogRecord) -> dict[str, Any]:
    return {
        "id": row.id,
        "appName": row.app_name,
        "level": row.level,
        "message": row.message,
        "metadata": row.metadata_,
        "createdAt": isoformat(row.created_at),
        "updatedAt": isoformat(row.updated_at),
    }


def app_object_item(row: AppObjectRecord) -> dict[str, Any]:
    return {
        "filename": row.filename,
        "appName": row.app_name,
        "contentType": row.content_type,
        "size": row.size,
        "checksum": row.checksum,
        "metadata": row.metadata_,
        "createdAt": isoformat(row.created_at),
        "updatedAt": isoformat(row.updated_at),
        "downloadUrl": f"/apps/{row.app_name}/storage/objects/{quote(row.filename, safe='')}",
    }
