from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated, Any, Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, FastAPI, Path, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from fabric_backend.auth import Tenant, require_tenant
from fabric_backend.config import DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT, Settings, configure_logging, load_settings
from fabric_backend.context import AppContext, build_context
from fabric_backend.errors import FabricError, NotFoundError, PayloadError, StorageFault, ValidationError
from fabric_backend.ingest import (
    app_key_prefix,
    discard_blobs,
    ingest_archive,
    rebuild_archive,
    session_key_prefix,
    store_file,
)
from fabric_backend.metadata import LogInput, decode_cursor
from fabric_backend.reconcile import sweep_orphan_blobs
from fabric_backend.schemas import (
    AppendLogsRequest,
    CreateAppLogRequest,
    CreateSessionRequest,
    UpdateAppLogRequest,
    app_log_item,
    app_object_item,
    asset_item,
    log_entry,
    parse_body,
    session_list_item,
    session_summary,
)
from fabric_backend.security import APP_NAME_PATTERN, SESSION_ID_PATTERN, sanitize_path


logger = logging.getLogger("fabric.server")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Authorization, Content-Type, X-Requested-With, X-Fabric-Token, X-Object-Metadata",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
}

ZIP_CONTENT_TYPES = ("application/zip", "application/x-zip-compressed")


def get_ctx(request: Request) -> AppContext:
    return request.app.state.ctx


# Auth is declared first so it resolves before any path/query validation.
TenantDep = Annotated[Tenant, Depends(require_tenant)]
CtxDep = Annotated[AppContext, Depends(get_ctx)]
SessionId = Annotated[str, Path(pattern=SESSION_ID_PATTERN)]
AppName = Annotated[str, Path(pattern=APP_NAME_PATTERN)]
LogId = Annotated[str, Path(pattern=SESSION_ID_PATTERN)]


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


async def _read_json(request: Request) -> Any:
    # Undecodable bodies become None and fail schema validation as a 400.
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


async def _read_limited_body(request: Request, limit: int) -> bytes:
    """Read the raw body, refusing anything larger than limit before parsing it."""
    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > limit:
        raise PayloadError.too_large(limit)
    buf = bytearray()
    async for chunk in request.stream():
        buf.extend(chunk)
        if len(buf) > limit:
            raise PayloadError.too_large(limit)
    return bytes(buf)


def _require_zip(request: Request) -> None:
    content_type = (request.headers.get("content-type") or "").lower()
    if not any(ct in content_type for ct in ZIP_CONTENT_TYPES):
        raise PayloadError("Expected application/zip payload")


def _load_session(ctx: AppContext, session_id: str, tenant: Tenant):
    # Someone else's session and a missing one look identical.
    session = ctx.store.get_session(session_id, tenant.id)
    if session is None:
        raise NotFoundError("Session not found")
    return session


def _normalize_limit(limit: int | None) -> int:
    normalized = DEFAULT_PAGE_LIMIT if limit is None else int(limit)
    return max(1, min(MAX_PAGE_LIMIT, normalized))


def _file_response(data: bytes, content_type: str, filename: str, *, etag: str | None = None) -> Response:
    headers = {
        "Content-Disposition": f'inline; filename="{quote(filename, safe="")}"',
        "X-Content-Type-Options": "nosniff",
    }
    if etag:
        headers["ETag"] = f'"{etag}"'
    return Response(content=data, media_type=content_type, headers=headers)


def _archive_response(zip_bytes: bytes, download_name: str) -> Response:
    headers = {
        "Content-Disposition": f'attachment; filename="{quote(download_name, safe="")}.zip"',
        "Cache-Control": "no-store",
    }
    return Response(content=zip_bytes, media_type="application/zip", headers=headers)


router = APIRouter()

# Handlers that never await are plain ``def`` so FastAPI runs them in its
# threadpool. Handlers that read the body push store and blob work through
# asyncio.to_thread; nothing below blocks the event loop.


@router.get("/health")
async def health() -> JSONResponse:
    return JSONResponse({"status": "ok", "timestamp": _utc_timestamp()})


# ---------------------------------------------------------------------------
# Sessions


@router.post("/sessions")
async def create_session(tenant: TenantDep, ctx: CtxDep, request: Request) -> JSONResponse:
    payload = parse_body(CreateSessionRequest, await _read_json(request))
    session = await asyncio.to_thread(ctx.store.create_session, tenant.id, payload.appName, payload.metadata)
    logger.info("Created session %s for app %s", session.id, session.app_name)
    return JSONResponse({"sessionId": session.id}, status_code=201)


@router.get("/sessions")
def list_sessions(
    tenant: TenantDep,
    ctx: CtxDep,
    app_name: Annotated[Optional[str], Query(alias="appName")] = None,
) -> JSONResponse:
    filter_name = (app_name or "").strip()
    if filter_name.lower() == "all":
        filter_name = ""
    sessions = ctx.store.list_sessions(tenant.id, filter_name or None)
    return JSONResponse({"sessions": [session_list_item(s) for s in sessions]})


@router.get("/sessions/{session_id}")
def get_session(tenant: TenantDep, ctx: CtxDep, session_id: SessionId) -> JSONResponse:
    session = _load_session(ctx, session_id, tenant)
    return JSONResponse({"session": session_summary(session), "metrics": ctx.store.session_metrics(session_id)})


@router.post("/sessions/{session_id}/logs")
async def append_logs(tenant: TenantDep, ctx: CtxDep, session_id: SessionId, request: Request) -> JSONResponse:
    await asyncio.to_thread(_load_session, ctx, session_id, tenant)
    payload = parse_body(AppendLogsRequest, await _read_json(request))
    entries = [
        LogInput(message=entry.message, level=entry.level or "info", context=entry.context)
        for entry in payload.entries
    ]
    inserted = await asyncio.to_thread(ctx.store.append_logs, session_id, entries)
    return JSONResponse({"inserted": inserted})


@router.get("/sessions/{session_id}/logs")
def list_logs(tenant: TenantDep, ctx: CtxDep, session_id: SessionId) -> JSONResponse:
    session = _load_session(ctx, session_id, tenant)
    rows = ctx.store.list_logs(session_id)
    return JSONResponse({"session": session_summary(session), "entries": [log_entry(r) for r in rows]})


def _store_session_assets(ctx: AppContext, session_id: str, zip_bytes: bytes) -> int:
    stored = ingest_archive(
        ctx.blobs,
        zip_bytes,
        key_prefix=session_key_prefix(session_id),
        max_extracted_bytes=ctx.settings.max_extracted_bytes,
        custom_metadata={"sessionId": session_id},
    )
    try:
        superseded = ctx.store.upsert_assets(session_id, stored)
    except SQLAlchemyError as exc:
        logger.error("Asset metadata write failed session=%s files=%d: %s", session_id, len(stored), exc)
        raise StorageFault("Failed to persist asset metadata") from exc
    discard_blobs(ctx.blobs, superseded, log_context=f"session {session_id}")
    return len(stored)


@router.post("/sessions/{session_id}/assets")
async def upload_assets(tenant: TenantDep, ctx: CtxDep, session_id: SessionId, request: Request) -> JSONResponse:
    """Unpack a ZIP into per-file blobs, then upsert one asset row per entry."""
    await asyncio.to_thread(_load_session, ctx, session_id, tenant)
    _require_zip(request)
    zip_bytes = await _read_limited_body(request, ctx.settings.max_upload_bytes)

    stored = await asyncio.to_thread(_store_session_assets, ctx, session_id, zip_bytes)
    logger.info("Stored %d asset(s) for session %s", stored, session_id)
    return JSONResponse({"stored": stored})


@router.get("/sessions/{session_id}/assets")
def list_assets(tenant: TenantDep, ctx: CtxDep, session_id: SessionId) -> JSONResponse:
    session = _load_session(ctx, session_id, tenant)
    rows = ctx.store.list_assets(session_id)
    return JSONResponse({"session": session_summary(session), "assets": [asset_item(r) for r in rows]})


@router.get("/sessions/{session_id}/assets/archive")
def get_archive(tenant: TenantDep, ctx: CtxDep, session_id: SessionId) -> Response:
    _load_session(ctx, session_id, tenant)
    zip_bytes = rebuild_archive(
        ctx.blobs,
        ctx.store.list_assets(session_id),
        empty_message="No assets found for session",
        log_context=f"session {session_id}",
    )
    return _archive_response(zip_bytes, session_id)


@router.get("/sessions/{session_id}/assets/{asset_name:path}")
def get_asset(tenant: TenantDep, ctx: CtxDep, session_id: SessionId, asset_name: str) -> Response:
    _load_session(ctx, session_id, tenant)
    filename = sanitize_path(asset_name)
    if not filename:
        raise ValidationError("Invalid asset name")

    row = ctx.store.get_asset(session_id, filename)
    if row is None:
        raise NotFoundError("Asset not found")
    blob = ctx.blobs.get(row.object_key)
    if blob is None:
        logger.error("Blob missing for session %s key=%s", session_id, row.object_key)
        raise NotFoundError("Asset not found")
    return _file_response(blob.data, row.content_type or blob.info.content_type, filename, etag=row.checksum)


# ---------------------------------------------------------------------------
# App-scoped logs


@router.post("/apps/{app_name}/storage/logs")
async def create_app_log(tenant: TenantDep, ctx: CtxDep, app_name: AppName, request: Request) -> JSONResponse:
    payload = parse_body(CreateAppLogRequest, await _read_json(request))
    row = await asyncio.to_thread(
        ctx.store.create_app_log,
        tenant.id,
        app_name,
        level=payload.level,
        message=payload.message,
        metadata=payload.metadata,
    )
    return JSONResponse({"log": app_log_item(row)}, status_code=201)


@router.get("/apps/{app_name}/storage/logs")
def list_app_logs(
    tenant: TenantDep,
    ctx: CtxDep,
    app_name: AppName,
    limit: Annotated[Optional[int], Query()] = None,
    cursor: Annotated[Optional[str], Query()] = None,
) -> JSONResponse:
    page_cursor = None
    if cursor:
        try:
            page_cursor = decode_cursor(cursor)
        except ValueError as exc:
            raise ValidationError("Invalid cursor") from exc
    rows, next_cursor = ctx.store.list_app_logs(
        tenant.id, app_name, limit=_normalize_limit(limit), cursor=page_cursor
    )
    return JSONResponse({"logs": [app_log_item(r) for r in rows], "nextCursor": next_cursor})


@router.get("/apps/{app_name}/storage/logs/{log_id}")
def get_app_log(tenant: TenantDep, ctx: CtxDep, app_name: AppName, log_id: LogId) -> JSONResponse:
    row = ctx.store.get_app_log(tenant.id, app_name, log_id)
    if row is None:
        raise NotFoundError("Log not found")
    return JSONResponse({"log": app_log_item(row)})


@router.put("/apps/{app_name}/storage/logs/{log_id}")
async def update_app_log(
    tenant: TenantDep, ctx: CtxDep, app_name: AppName, log_id: LogId, request: Request
) -> JSONResponse:
    payload = parse_body(UpdateAppLogRequest, await _read_json(request))
    row = await asyncio.to_thread(ctx.store.update_app_log, tenant.id, app_name, log_id, payload.changes())
    if row is None:
        raise NotFoundError("Log not found")
    return JSONResponse({"log": app_log_item(row)})


@router.delete("/apps/{app_name}/storage/logs/{log_id}")
def delete_app_log(tenant: TenantDep, ctx: CtxDep, app_name: AppName, log_id: LogId) -> JSONResponse:
    if not ctx.store.delete_app_log(tenant.id, app_name, log_id):
        raise NotFoundError("Log not found")
    return JSONResponse({"deleted": log_id})


# ---------------------------------------------------------------------------
# App-scoped objects


def _object_metadata(request: Request) -> Any:
    raw = request.headers.get("X-Object-Metadata")
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except ValueError as exc:
        raise ValidationError("Invalid X-Object-Metadata header") from exc
    if not isinstance(value, dict):
        raise ValidationError("Invalid X-Object-Metadata header", "Expected a JSON object")
    return value


def _persist_app_objects(ctx: AppContext, tenant: Tenant, app_name: str, stored, metadata: Any):
    try:
        rows, superseded = ctx.store.upsert_app_objects(tenant.id, app_name, stored, metadata=metadata)
    except SQLAlchemyError as exc:
        logger.error("Object metadata write failed app=%s files=%d: %s", app_name, len(stored), exc)
        raise StorageFault("Failed to persist asset metadata") from exc
    discard_blobs(ctx.blobs, superseded, log_context=f"app {app_name}")
    return rows


def _store_app_archive(ctx: AppContext, tenant: Tenant, app_name: str, zip_bytes: bytes, metadata: Any) -> int:
    stored = ingest_archive(
        ctx.blobs,
        zip_bytes,
        key_prefix=app_key_prefix(tenant.id, app_name),
        max_extracted_bytes=ctx.settings.max_extracted_bytes,
        custom_metadata={"appName": app_name},
    )
    _persist_app_objects(ctx, tenant, app_name, stored, metadata)
    return len(stored)


@router.post("/apps/{app_name}/storage/objects")
async def upload_app_objects(tenant: TenantDep, ctx: CtxDep, app_name: AppName, request: Request) -> JSONResponse:
    _require_zip(request)
    metadata = _object_metadata(request)
    zip_bytes = await _read_limited_body(request, ctx.settings.max_upload_bytes)
    stored = await asyncio.to_thread(_store_app_archive, ctx, tenant, app_name, zip_bytes, metadata)
    logger.info("Stored %d object(s) for app %s", stored, app_name)
    return JSONResponse({"stored": stored})


@router.get("/apps/{app_name}/storage/objects")
def list_app_objects(tenant: TenantDep, ctx: CtxDep, app_name: AppName) -> JSONResponse:
    rows = ctx.store.list_app_objects(tenant.id, app_name)
    return JSONResponse({"objects": [app_object_item(r) for r in rows]})


@router.get("/apps/{app_name}/storage/objects/archive")
def get_app_archive(tenant: TenantDep, ctx: CtxDep, app_name: AppName) -> Response:
    zip_bytes = rebuild_archive(
        ctx.blobs,
        ctx.store.list_app_objects(tenant.id, app_name),
        empty_message="No objects found for app",
        log_context=f"app {app_name}",
    )
    return _archive_response(zip_bytes, app_name)


def _object_name(raw: str) -> str:
    filename = sanitize_path(raw)
    if not filename:
        raise ValidationError("Invalid object name")
    return filename


def _store_app_object(
    ctx: AppContext, tenant: Tenant, app_name: str, filename: str, data: bytes, content_type: str | None, metadata: Any
):
    stored = store_file(
        ctx.blobs,
        key_prefix=app_key_prefix(tenant.id, app_name),
        filename=filename,
        data=data,
        content_type=content_type,
        custom_metadata={"appName": app_name},
    )
    return _persist_app_objects(ctx, tenant, app_name, [stored], metadata)[0]


@router.post("/apps/{app_name}/storage/objects/{object_name:path}")
async def put_app_object(
    tenant: TenantDep, ctx: CtxDep, app_name: AppName, object_name: str, request: Request
) -> JSONResponse:
    """Store one raw body under object_name (no archive involved)."""
    filename = _object_name(object_name)
    metadata = _object_metadata(request)
    data = await _read_limited_body(request, ctx.settings.max_upload_bytes)
    declared = (request.headers.get("content-type") or "").strip()
    content_type = None if declared in ("", "application/octet-stream") else declared
    row = await asyncio.to_thread(_store_app_object, ctx, tenant, app_name, filename, data, content_type, metadata)
    return JSONResponse({"object": app_object_item(row)})


@router.get("/apps/{app_name}/storage/objects/{object_name:path}")
def get_app_object(tenant: TenantDep, ctx: CtxDep, app_name: AppName, object_name: str) -> Response:
    filename = _object_name(object_name)
    row = ctx.store.get_app_object(tenant.id, app_name, filename)
    if row is None:
        raise NotFoundError("Object not found")
    blob = ctx.blobs.get(row.object_key)
    if blob is None:
        logger.error("Blob missing for app %s key=%s", app_name, row.object_key)
        raise NotFoundError("Object not found")
    return _file_response(blob.data, row.content_type or blob.info.content_type, filename, etag=row.checksum)


@router.delete("/apps/{app_name}/storage/objects/{object_name:path}")
def delete_app_object(tenant: TenantDep, ctx: CtxDep, app_name: AppName, object_name: str) -> JSONResponse:
    filename = _object_name(object_name)
    # Row first: metadata must never point at a deleted blob.
    row = ctx.store.delete_app_object(tenant.id, app_name, filename)
    if row is None:
        raise NotFoundError("Object not found")
    discard_blobs(ctx.blobs, [row.object_key], log_context=f"app {app_name}")
    return JSONResponse({"deleted": filename})


# ---------------------------------------------------------------------------
# Application factory


async def _reconcile_worker(ctx: AppContext, interval: int) -> None:
    # Periodically delete blobs left behind by failed uploads.
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(sweep_orphan_blobs, ctx)
        except Exception:
            logger.exception("Orphan blob sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    ctx: AppContext = app.state.ctx
    interval = ctx.settings.reconcile_interval_seconds
    task = None
    if interval > 0:
        try:
            await asyncio.to_thread(sweep_orphan_blobs, ctx)
        except Exception:
            logger.exception("Startup orphan blob sweep failed")
        task = asyncio.create_task(_reconcile_worker(ctx, max(30, interval)))

    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        ctx.engine.dispose()


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(FabricError)
    async def fabric_error_handler(request: Request, exc: FabricError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s -> %d %s", request.method, request.url.path, exc.status_code, exc.message)
        return JSONResponse(exc.to_payload(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = [{"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")} for err in exc.errors()]
        return JSONResponse({"error": "Invalid request", "details": details}, status_code=400)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        message = "Not found" if exc.status_code == 404 else str(exc.detail)
        return JSONResponse({"error": message}, status_code=exc.status_code)

    @app.middleware("http")
    async def _cors_and_fallback(request: Request, call_next):
        # Outermost layer: CORS headers on every response, errors included.
        if request.method == "OPTIONS":
            response = Response(status_code=204)
        else:
            try:
                response = await call_next(request)
            except Exception:
                logger.exception("Unhandled error on %s %s", request.method, request.url.path)
                response = JSONResponse({"error": "Internal Server Error"}, status_code=500)
        for key, value in CORS_HEADERS.items():
            response.headers.setdefault(key, value)
        return response


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    app = FastAPI(title="Fabric Storage Worker", version="1.0.0", lifespan=lifespan)
    app.state.ctx = build_context(settings)
    _install_error_handlers(app)
    app.include_router(router)
    return app


if __name__ == "__main__":
    # Convenience: python server.py
    import uvicorn

    port = int(os.environ.get("PORT", "8787"))
    host = os.environ.get("HOST", "127.0.0.1")
    uvicorn.run("server:create_app", factory=True, host=host, port=port, reload=False)
