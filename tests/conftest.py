from __future__ import annotations

import io
import zipfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

import server
from fabric_backend.config import load_settings


TOKEN = "test-token"


def auth_header(token: str = TOKEN) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def make_zip(files: dict[str, bytes], *, compression: int = zipfile.ZIP_DEFLATED) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, mode="w", compression=compression) as zf:
        for name, data in files.items():
            zf.writestr(name, data)
    return buf.getvalue()


def read_zip(data: bytes) -> dict[str, bytes]:
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        return {info.filename: zf.read(info) for info in zf.infolist()}


def zip_headers(token: str = TOKEN) -> dict[str, str]:
    return {**auth_header(token), "Content-Type": "application/zip"}


@pytest.fixture()
def storage_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("FABRIC_TOKEN", TOKEN)
    monkeypatch.setenv("FABRIC_DATABASE_URL", f"sqlite:///{tmp_path / 'fabric.db'}")
    monkeypatch.setenv("FABRIC_BLOB_ROOT", str(tmp_path / "blobs"))
    monkeypatch.delenv("FABRIC_MAX_UPLOAD_MB", raising=False)
    monkeypatch.delenv("FABRIC_RECONCILE_INTERVAL_SECONDS", raising=False)
    return tmp_path


@pytest.fixture()
def client(storage_env: Path) -> TestClient:
    app = server.create_app()
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def ctx(client: TestClient):
    return client.app.state.ctx


@pytest.fixture()
def session_id(client: TestClient) -> str:
    response = client.post("/sessions", json={"appName": "ReportBot"}, headers=auth_header())
    assert response.status_code == 201
    return response.json()["sessionId"]


def settings_for(tmp_path: Path, token: str):
    return load_settings(
        {
            "FABRIC_TOKEN": token,
            "FABRIC_DATABASE_URL": f"sqlite:///{tmp_path / 'fabric.db'}",
            "FABRIC_BLOB_ROOT": str(tmp_path / "blobs"),
        }
    )
