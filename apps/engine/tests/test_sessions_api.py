"""Integration tests for the session and rule endpoints."""

from __future__ import annotations

from fastapi.testclient import TestClient
from smartimport_core import SmartImportService


def _paste(client: TestClient, service: SmartImportService, text: str) -> str:
    response = client.post("/sessions/paste", json={"owner": "ana", "text": text})
    assert response.status_code == 202
    body = response.json()
    assert body["state"] == "uploading"
    assert service.wait(body["id"], timeout=10)
    return body["id"]


def test_paste_review_and_finalize_flow(client: TestClient, service: SmartImportService) -> None:
    session_id = _paste(client, service, "Supermercado Continente 45.67\nSalario 2500")

    status = client.get(f"/sessions/{session_id}")
    assert status.status_code == 200
    assert status.json()["state"] == "completed"
    assert status.json()["total_rows"] == 2

    records = client.get(f"/sessions/{session_id}/records").json()["records"]
    assert [record["suggestion"]["category"] for record in records] == ["Alimentação", "Salário"]
    assert records[1]["suggestion"]["direction"] == "income"

    feedback = client.post(
        f"/sessions/{session_id}/records/1/feedback",
        json={"choice": {"accepted": True}},
    )
    assert feedback.status_code == 200
    assert feedback.json()["record"]["review_status"] == "accepted"
    assert feedback.json()["repeated"] is False

    finalized = client.post(
        f"/sessions/{session_id}/finalize",
        json={"records": [{"sequence": 1}, {"sequence": 2}]},
    )
    assert finalized.status_code == 200
    body = finalized.json()
    assert body["session"]["state"] == "finalized"
    assert body["committed"] == [1, 2]
    assert body["rejected"] == []

    again = client.post(f"/sessions/{session_id}/finalize", json={"records": []})
    assert again.status_code == 409


def test_upload_with_unknown_format_ends_in_error(
    client: TestClient, service: SmartImportService
) -> None:
    response = client.post(
        "/sessions/upload",
        json={"owner": "ana", "file_name": "extract.pdf", "file_format": "pdf", "content": "%PDF"},
    )
    assert response.status_code == 202
    session_id = response.json()["id"]
    assert service.wait(session_id, timeout=10)

    status = client.get(f"/sessions/{session_id}").json()
    assert status["state"] == "error"
    assert "pdf" in status["error_message"]


def test_unknown_sessions_and_records_are_404(
    client: TestClient, service: SmartImportService
) -> None:
    assert client.get("/sessions/missing").status_code == 404
    assert client.get("/sessions/missing/records").status_code == 404
    session_id = _paste(client, service, "Galp 50")
    missing_record = client.post(
        f"/sessions/{session_id}/records/9/feedback",
        json={"choice": {"accepted": True}},
    )
    assert missing_record.status_code == 404


def test_delete_session_is_idempotent(client: TestClient, service: SmartImportService) -> None:
    session_id = _paste(client, service, "Galp 50")

    first = client.delete(f"/sessions/{session_id}")
    second = client.delete(f"/sessions/{session_id}")

    assert first.json() == {"session_id": session_id, "deleted": True}
    assert second.json() == {"session_id": session_id, "deleted": False}
    assert client.get(f"/sessions/{session_id}").status_code == 404


def test_rule_management_protects_system_rules(client: TestClient) -> None:
    rules = client.get("/rules", params={"owner": "ana"}).json()["rules"]
    system_rule = next(rule for rule in rules if rule["is_system"])

    assert client.patch(f"/rules/{system_rule['id']}", json={"is_active": False}).status_code == 403
    assert client.delete(f"/rules/{system_rule['id']}").status_code == 403

    created = client.post(
        "/rules",
        json={
            "owner": "ana",
            "name": "ginasio",
            "conditions": {"keywords": ["ginasio"]},
            "action": {"category": "Entretenimento", "confidence": 0.8},
            "priority": 3,
        },
    )
    assert created.status_code == 201
    rule_id = created.json()["id"]

    updated = client.patch(f"/rules/{rule_id}", json={"priority": 2})
    assert updated.status_code == 200
    assert updated.json()["priority"] == 2

    assert client.delete(f"/rules/{rule_id}").status_code == 204
    assert client.patch(f"/rules/{rule_id}", json={"priority": 1}).status_code == 404


def test_rules_can_be_filtered_by_kind(client: TestClient) -> None:
    response = client.get("/rules", params={"kind": "duplicate_detection"})

    assert response.status_code == 200
    assert [rule["name"] for rule in response.json()["rules"]] == ["Duplicata_Mesmo_Valor"]
