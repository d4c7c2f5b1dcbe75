from __future__ import annotations

import asyncio
import hashlib
import os
import zipfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import SQLAlchemyError

import server
from conftest import auth_header, make_zip, read_zip, zip_headers


REPORT = b"# Quarterly report\n\nAll good.\n"
INDEX = b"<!doctype html><html><body>Hello</body></html>"


def _upload(client: TestClient, session_id: str, files: dict[str, bytes]):
    return client.post(f"/sessions/{session_id}/assets", content=make_zip(files), headers=zip_headers())


def test_upload_list_and_download(client: TestClient, session_id: str) -> None:
    response = _upload(client, session_id, {"report.md": REPORT, "index.html": INDEX})
    assert response.status_code == 200
    assert response.json() == {"stored": 2}

    payload = client.get(f"/sessions/{session_id}/assets", headers=auth_header()).json()
    assert payload["session"]["id"] == session_id
    assets = {a["filename"]: a for a in payload["assets"]}
    assert sorted(assets) == ["index.html", "report.md"]
    assert assets["report.md"]["contentType"] == "text/markdown"
    assert assets["index.html"]["contentType"] == "text/html"
    assert assets["report.md"]["size"] == len(REPORT)
    assert assets["report.md"]["downloadUrl"] == f"/sessions/{session_id}/assets/report.md"

    for name, asset in assets.items():
        download = client.get(asset["downloadUrl"], headers=auth_header())
        assert download.status_code == 200
        assert download.headers["content-type"].startswith(asset["contentType"])
        assert "inline" in download.headers["content-disposition"]
        assert download.headers["Access-Control-Allow-Origin"] == "*"
        assert hashlib.sha256(download.content).hexdigest() == asset["checksum"]

    detail = client.get(f"/sessions/{session_id}", headers=auth_header()).json()
    assert detail["metrics"]["assetCount"] == 2


def test_nested_paths_are_addressable(client: TestClient, session_id: str) -> None:
    _upload(client, session_id, {"slides/": b"", "slides/01/intro.txt": b"intro", "./audio\\track.mp3": b"ID3"})
    names = [a["filename"] for a in client.get(f"/sessions/{session_id}/assets", headers=auth_header()).json()["assets"]]
    assert names == ["audio/track.mp3", "slides/01/intro.txt"]

    response = client.get(f"/sessions/{session_id}/assets/slides/01/intro.txt", headers=auth_header())
    assert response.status_code == 200
    assert response.content == b"intro"

    response = client.get(f"/sessions/{session_id}/assets/audio%2Ftrack.mp3", headers=auth_header())
    assert response.status_code == 200
    assert response.headers["content-type"] == "audio/mpeg"


def test_traversal_entry_fails_whole_upload(client: TestClient, session_id: str, ctx) -> None:
    response = _upload(client, session_id, {"ok.txt": b"fine", "../../etc/passwd": b"root:x"})
    assert response.status_code == 400
    assert response.json() == {"error": "Unsupported entry path: ../../etc/passwd"}
    assert response.headers["Access-Control-Allow-Origin"] == "*"

    assert client.get(f"/sessions/{session_id}/assets", headers=auth_header()).json()["assets"] == []
    assert list(ctx.blobs.list(f"sessions/{session_id}/")) == []


def test_absolute_entry_is_rejected(client: TestClient, session_id: str) -> None:
    response = _upload(client, session_id, {"/etc/shadow": b"x"})
    assert response.status_code == 400
    assert response.json()["error"].startswith("Unsupported entry path")


def test_reupload_replaces_existing_asset(client: TestClient, session_id: str) -> None:
    _upload(client, session_id, {"report.md": REPORT, "index.html": INDEX})
    first = {a["filename"]: a for a in client.get(f"/sessions/{session_id}/assets", headers=auth_header()).json()["assets"]}

    new_report = b"# Revised\n" * 10
    assert _upload(client, session_id, {"report.md": new_report}).json() == {"stored": 1}

    assets = client.get(f"/sessions/{session_id}/assets", headers=auth_header()).json()["assets"]
    assert [a["filename"] for a in assets] == ["index.html", "report.md"]
    report = next(a for a in assets if a["filename"] == "report.md")
    assert report["size"] == len(new_report)
    assert report["checksum"] == hashlib.sha256(new_report).hexdigest()
    assert report["checksum"] != first["report.md"]["checksum"]

    download = client.get(f"/sessions/{session_id}/assets/report.md", headers=auth_header())
    assert download.content == new_report


def test_archive_matches_listed_assets(client: TestClient, session_id: str) -> None:
    _upload(client, session_id, {"report.md": REPORT, "index.html": INDEX})
    response = client.get(f"/sessions/{session_id}/assets/archive", headers=auth_header())
    assert response.status_code == 200
    assert response.headers["content-type"] == "application/zip"
    assert f'filename="{session_id}.zip"' in response.headers["content-disposition"]
    assert read_zip(response.content) == {"index.html": INDEX, "report.md": REPORT}


def test_archive_without_assets_is_not_found(client: TestClient, session_id: str) -> None:
    response = client.get(f"/sessions/{session_id}/assets/archive", headers=auth_header())
    assert response.status_code == 404
    assert response.json() == {"error": "No assets found for session"}


def test_missing_blob_is_reported(client: TestClient, session_id: str, ctx) -> None:
    _upload(client, session_id, {"report.md": REPORT, "index.html": INDEX})
    assets = client.get(f"/sessions/{session_id}/assets", headers=auth_header()).json()["assets"]
    report = next(a for a in assets if a["filename"] == "report.md")
    assert ctx.blobs.delete(report["objectKey"])

    archive = client.get(f"/sessions/{session_id}/assets/archive", headers=auth_header())
    assert archive.status_code == 500
    assert archive.json() == {"error": "Asset storage inconsistent"}
    assert archive.headers["Access-Control-Allow-Origin"] == "*"

    single = client.get(f"/sessions/{session_id}/assets/report.md", headers=auth_header())
    assert single.status_code == 404
    assert single.json() == {"error": "Asset not found"}


def test_unknown_asset_is_not_found(client: TestClient, session_id: str) -> None:
    response = client.get(f"/sessions/{session_id}/assets/nope.txt", headers=auth_header())
    assert response.status_code == 404
    assert response.json() == {"error": "Asset not found"}


def test_upload_requires_zip_content_type(client: TestClient, session_id: str) -> None:
    response = client.post(
        f"/sessions/{session_id}/assets",
        content=make_zip({"a.txt": b"a"}),
        headers={**auth_header(), "Content-Type": "application/octet-stream"},
    )
    assert response.status_code == 415
    assert response.json() == {"error": "Expected application/zip payload"}


def test_upload_rejects_garbage_and_empty_archives(client: TestClient, session_id: str) -> None:
    response = client.post(f"/sessions/{session_id}/assets", content=b"not a zip", headers=zip_headers())
    assert response.status_code == 400
    assert response.json() == {"error": "Invalid ZIP archive"}

    response = client.post(f"/sessions/{session_id}/assets", content=make_zip({}), headers=zip_headers())
    assert response.status_code == 400
    assert response.json() == {"error": "Zip archive contained no files"}

    response = _upload(client, session_id, {"only/": b"", "dirs/": b""})
    assert response.status_code == 400
    assert response.json() == {"error": "Zip archive contained no files"}


def test_upload_to_unknown_session_is_not_found(client: TestClient) -> None:
    response = client.post(
        "/sessions/23456789ABCDEFGHJKLM/assets", content=make_zip({"a.txt": b"a"}), headers=zip_headers()
    )
    assert response.status_code == 404


def test_upload_size_limit(storage_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FABRIC_MAX_UPLOAD_MB", "0.001")
    with TestClient(server.create_app()) as client:
        session_id = client.post("/sessions", json={"appName": "Big"}, headers=auth_header()).json()["sessionId"]
        body = make_zip({"noise.bin": os.urandom(4096)}, compression=zipfile.ZIP_STORED)
        response = client.post(f"/sessions/{session_id}/assets", content=body, headers=zip_headers())
        assert response.status_code == 413
        assert response.json()["error"].startswith("Payload too large")
        assert client.get(f"/sessions/{session_id}/assets", headers=auth_header()).json()["assets"] == []


def _flip_payload(body: bytes, payload: bytes) -> bytes:
    # Stored entries keep their bytes verbatim, so this breaks only the CRC.
    assert body.count(payload) == 1
    return body.replace(payload, payload[::-1])


def _assert_served_bytes_match_listing(client: TestClient, session_id: str, expected: bytes) -> None:
    asset = client.get(f"/sessions/{session_id}/assets", headers=auth_header()).json()["assets"][0]
    body = client.get(asset["downloadUrl"], headers=auth_header()).content
    assert body == expected
    assert asset["size"] == len(expected)
    assert hashlib.sha256(body).hexdigest() == asset["checksum"]


def test_failed_reupload_keeps_previous_asset(client: TestClient, session_id: str) -> None:
    assert _upload(client, session_id, {"report.md": b"version one"}).status_code == 200

    broken = b"BROKEN-PAYLOAD-0123"
    body = make_zip({"report.md": b"version two, longer", "broken.txt": broken}, compression=zipfile.ZIP_STORED)
    response = client.post(
        f"/sessions/{session_id}/assets", content=_flip_payload(body, broken), headers=zip_headers()
    )
    assert response.status_code == 400
    assert response.json() == {"error": "Corrupt entry: broken.txt"}

    _assert_served_bytes_match_listing(client, session_id, b"version one")


def test_failed_metadata_write_keeps_previous_asset(
    client: TestClient, session_id: str, ctx, monkeypatch: pytest.MonkeyPatch
) -> None:
    _upload(client, session_id, {"report.md": b"version one"})

    def fail(*_args, **_kwargs):
        raise SQLAlchemyError("disk I/O error")

    monkeypatch.setattr(ctx.store, "upsert_assets", fail)
    response = _upload(client, session_id, {"report.md": b"version two"})
    assert response.status_code == 500
    assert response.json() == {"error": "Failed to persist asset metadata"}

    _assert_served_bytes_match_listing(client, session_id, b"version one")


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


def test_blocking_work_runs_off_the_event_loop(
    client: TestClient, session_id: str, ctx, monkeypatch: pytest.MonkeyPatch
) -> None:
    calls: list[bool] = []
    real_ingest = server.ingest_archive
    real_list = ctx.store.list_assets

    def recording_ingest(*args, **kwargs):
        calls.append(_loop_running())
        return real_ingest(*args, **kwargs)

    def recording_list(*args, **kwargs):
        calls.append(_loop_running())
        return real_list(*args, **kwargs)

    monkeypatch.setattr(server, "ingest_archive", recording_ingest)
    monkeypatch.setattr(ctx.store, "list_assets", recording_list)

    assert _upload(client, session_id, {"report.md": REPORT}).status_code == 200
    assert client.get(f"/sessions/{session_id}/assets/archive", headers=auth_header()).status_code == 200
    assert calls == [False, False]
