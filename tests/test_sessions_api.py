from __future__ import annotations

import re
from pathlib import Path

from fastapi.testclient import TestClient

import server
from conftest import auth_header, settings_for
from fabric_backend.security import SESSION_ID_PATTERN


def test_create_and_get_session(client: TestClient) -> None:
    response = client.post(
        "/sessions",
        json={"appName": "ReportBot", "metadata": {"runId": "abc"}},
        headers=auth_header(),
    )
    assert response.status_code == 201
    session_id = response.json()["sessionId"]
    assert re.match(SESSION_ID_PATTERN, session_id)

    response = client.get(f"/sessions/{session_id}", headers=auth_header())
    assert response.status_code == 200
    payload = response.json()
    assert payload["session"]["id"] == session_id
    assert payload["session"]["appName"] == "ReportBot"
    assert payload["session"]["metadata"] == {"runId": "abc"}
    assert payload["session"]["status"] == "active"
    assert payload["metrics"] == {"logCount": 0, "assetCount": 0}
    assert "tenant" not in payload["session"]


def test_create_session_validates_payload(client: TestClient) -> None:
    for body in ({}, {"appName": ""}, {"appName": "x" * 129}, {"appName": "ok", "metadata": [1, 2]}):
        response = client.post("/sessions", json=body, headers=auth_header())
        assert response.status_code == 400, body
        assert response.json()["error"] == "Invalid payload"
        assert response.json()["details"]

    response = client.post(
        "/sessions", content=b"{not json", headers={**auth_header(), "Content-Type": "application/json"}
    )
    assert response.status_code == 400


def test_blank_app_name_is_rejected(client: TestClient) -> None:
    for name in ("   ", "\t\n"):
        response = client.post("/sessions", json={"appName": name}, headers=auth_header())
        assert response.status_code == 400, name
        assert response.json()["error"] == "Invalid payload"

    session_id = client.post("/sessions", json={"appName": "  ReportBot "}, headers=auth_header()).json()["sessionId"]
    session = client.get(f"/sessions/{session_id}", headers=auth_header()).json()["session"]
    assert session["appName"] == "ReportBot"


def test_unknown_session_is_not_found(client: TestClient) -> None:
    response = client.get("/sessions/23456789ABCDEFGHJKLM", headers=auth_header())
    assert response.status_code == 404
    assert response.json() == {"error": "Session not found"}


def test_other_tenant_cannot_see_session(storage_env: Path) -> None:
    app_a = server.create_app(settings_for(storage_env, "token-a"))
    app_b = server.create_app(settings_for(storage_env, "token-b"))
    with TestClient(app_a) as client_a, TestClient(app_b) as client_b:
        session_id = client_a.post(
            "/sessions", json={"appName": "ReportBot"}, headers=auth_header("token-a")
        ).json()["sessionId"]

        assert client_a.get(f"/sessions/{session_id}", headers=auth_header("token-a")).status_code == 200

        hidden = client_b.get(f"/sessions/{session_id}", headers=auth_header("token-b"))
        assert hidden.status_code == 404
        assert hidden.json() == {"error": "Session not found"}
        assert client_b.get(f"/sessions/{session_id}/logs", headers=auth_header("token-b")).status_code == 404
        assert client_b.get("/sessions", headers=auth_header("token-b")).json() == {"sessions": []}


def test_list_sessions_newest_updated_first_with_filter(client: TestClient) -> None:
    first = client.post("/sessions", json={"appName": "ReportBot"}, headers=auth_header()).json()["sessionId"]
    second = client.post("/sessions", json={"appName": "SlideMaker"}, headers=auth_header()).json()["sessionId"]

    ids = [s["sessionId"] for s in client.get("/sessions", headers=auth_header()).json()["sessions"]]
    assert ids == [second, first]

    # Appending logs touches updatedAt and moves the session to the front.
    client.post(f"/sessions/{first}/logs", json={"entries": [{"message": "hi"}]}, headers=auth_header())
    ids = [s["sessionId"] for s in client.get("/sessions", headers=auth_header()).json()["sessions"]]
    assert ids == [first, second]

    filtered = client.get("/sessions", params={"appName": "SlideMaker"}, headers=auth_header()).json()
    assert [s["sessionId"] for s in filtered["sessions"]] == [second]

    everything = client.get("/sessions", params={"appName": "all"}, headers=auth_header()).json()
    assert len(everything["sessions"]) == 2


def test_append_and_list_logs(client: TestClient, session_id: str) -> None:
    response = client.post(
        f"/sessions/{session_id}/logs",
        json={"entries": [{"level": "info", "message": "Task completed"}]},
        headers=auth_header(),
    )
    assert response.status_code == 200
    assert response.json() == {"inserted": 1}

    response = client.get(f"/sessions/{session_id}/logs", headers=auth_header())
    assert response.status_code == 200
    payload = response.json()
    assert payload["session"]["id"] == session_id
    assert len(payload["entries"]) == 1
    entry = payload["entries"][0]
    assert entry["sequence"] == 1
    assert entry["level"] == "info"
    assert entry["message"] == "Task completed"
    assert entry["context"] is None


def test_sequences_are_gapless_across_batches(client: TestClient, session_id: str) -> None:
    before = client.get(f"/sessions/{session_id}", headers=auth_header()).json()["session"]["updatedAt"]
    batches = [
        [{"message": "a"}, {"message": "b", "level": "warn"}],
        [{"message": "c", "context": {"step": 3}}],
        [{"message": "d"}, {"message": "e"}, {"message": "f", "level": "error"}],
    ]
    for batch in batches:
        response = client.post(f"/sessions/{session_id}/logs", json={"entries": batch}, headers=auth_header())
        assert response.json() == {"inserted": len(batch)}

    entries = client.get(f"/sessions/{session_id}/logs", headers=auth_header()).json()["entries"]
    assert [e["sequence"] for e in entries] == [1, 2, 3, 4, 5, 6]
    assert [e["message"] for e in entries] == ["a", "b", "c", "d", "e", "f"]
    assert entries[0]["level"] == "info"
    assert entries[2]["context"] == {"step": 3}

    detail = client.get(f"/sessions/{session_id}", headers=auth_header()).json()
    assert detail["metrics"]["logCount"] == 6
    assert detail["session"]["updatedAt"] >= before


def test_append_logs_validation(client: TestClient, session_id: str) -> None:
    for body in ({"entries": []}, {"entries": [{"message": ""}]}, {"entries": [{"level": "", "message": "x"}]}, {}):
        response = client.post(f"/sessions/{session_id}/logs", json=body, headers=auth_header())
        assert response.status_code == 400, body

    assert client.get(f"/sessions/{session_id}/logs", headers=auth_header()).json()["entries"] == []
