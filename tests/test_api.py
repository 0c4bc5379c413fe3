from __future__ import annotations

from fakes import ScriptedClientFactory
from fastapi.testclient import TestClient

from geoscan_api.app.errors import ProviderError

ALICE = {"X-User-Id": "alice"}
BOB = {"X-User-Id": "bob"}


def _open(client: TestClient, user_id: str, points: int) -> None:
    client.app.state.ledger.open_account(user_id, opening_balance=points)


def test_create_task_runs_in_background(client: TestClient, fake_llm: ScriptedClientFactory) -> None:
    _open(client, "alice", 3)
    fake_llm.script("ChatGPT", stream="Acme is the top agency.")
    fake_llm.script("Kimi", stream="Globex leads the market.")

    response = client.post(
        "/tasks",
        json={"prompt": "best agencies", "mode": "quick", "models": ["ChatGPT", "Kimi"]},
        headers=ALICE,
    )
    assert response.status_code == 200
    created = response.json()
    assert created["status"] == "PENDING"
    assert created["cost_units"] == 2
    assert created["remaining_points"] == 1

    task = client.get(f"/tasks/{created['task_id']}", headers=ALICE).json()
    assert task["status"] == "COMPLETED"
    assert task["progress"] == 100
    assert task["result"]["models_succeeded"] == 2
    assert set(task["result"]["platform_data"]) == {"ChatGPT", "Kimi"}

    runs = client.get(f"/tasks/{created['task_id']}/runs", headers=ALICE).json()
    assert [run["model_key"] for run in runs] == ["ChatGPT", "Kimi"]
    assert all(run["status"] == "SUCCEEDED" for run in runs)

    listed = client.get("/tasks", headers=ALICE).json()
    assert [item["task_id"] for item in listed] == [created["task_id"]]


def test_insufficient_balance_returns_403_payload(client: TestClient, fake_llm: ScriptedClientFactory) -> None:
    _open(client, "alice", 1)

    response = client.post(
        "/tasks",
        json={"prompt": "q", "mode": "deep", "models": ["ChatGPT"]},
        headers=ALICE,
    )

    assert response.status_code == 403
    body = response.json()
    assert body["error"] == "insufficient_balance"
    assert body["required_points"] == 2
    assert body["current_points"] == 1
    assert client.get("/tasks", headers=ALICE).json() == []
    assert fake_llm.calls == []


def test_missing_identity_header_is_rejected(client: TestClient) -> None:
    assert client.get("/tasks").status_code == 401
    assert client.post("/tasks", json={"prompt": "q", "models": ["ChatGPT"]}).status_code == 401
    assert client.get("/me/points", headers={"X-User-Id": "  "}).status_code == 401


def test_invalid_payloads_are_422(client: TestClient) -> None:
    _open(client, "alice", 5)
    assert client.post("/tasks", json={"prompt": "", "models": ["ChatGPT"]}, headers=ALICE).status_code == 422
    assert client.post("/tasks", json={"prompt": "q", "models": []}, headers=ALICE).status_code == 422
    assert client.post("/tasks", json={"prompt": "   ", "models": ["ChatGPT"]}, headers=ALICE).status_code == 422
    assert client.app.state.ledger.balance("alice") == 5


def test_unknown_account_is_404(client: TestClient) -> None:
    response = client.post("/tasks", json={"prompt": "q", "models": ["ChatGPT"]}, headers={"X-User-Id": "ghost"})
    assert response.status_code == 404
    assert client.get("/me/points", headers={"X-User-Id": "ghost"}).status_code == 404


def test_tasks_are_private_to_their_owner(client: TestClient, fake_llm: ScriptedClientFactory) -> None:
    _open(client, "alice", 1)
    fake_llm.script("ChatGPT", stream="answer")
    task_id = client.post("/tasks", json={"prompt": "q", "models": ["ChatGPT"]}, headers=ALICE).json()["task_id"]

    assert client.get(f"/tasks/{task_id}", headers=BOB).status_code == 404
    assert client.get(f"/tasks/{task_id}/runs", headers=BOB).status_code == 404
    assert client.get("/tasks/does-not-exist", headers=ALICE).status_code == 404


def test_points_and_admin_recharge(client: TestClient) -> None:
    response = client.post(
        "/admin/users/carol/recharge",
        json={"amount": 25},
        headers={"X-Operator-Id": "ops-1"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["points"] == 25
    assert body["entry"]["entry_type"] == "ADMIN_ADD"
    assert body["entry"]["operator_id"] == "ops-1"

    client.post(
        "/admin/users/carol/recharge",
        json={"amount": 5, "description": "promo"},
        headers={"X-Operator-Id": "ops-1"},
    )
    points = client.get("/me/points", headers={"X-User-Id": "carol"}).json()
    assert points["balance"] == 30
    assert [entry["description"] for entry in points["entries"]] == ["promo", "Admin recharge 25 points"]

    assert client.post("/admin/users/carol/recharge", json={"amount": 5}).status_code == 401
    assert (
        client.post(
            "/admin/users/carol/recharge", json={"amount": 0}, headers={"X-Operator-Id": "ops-1"}
        ).status_code
        == 422
    )


def test_pricing_exposes_billing_table(client: TestClient) -> None:
    body = client.get("/billing/pricing").json()
    assert body["searchMultiplier"] == {"quick": 1.0, "deep": 2.0}
    assert body["dailyUnitsByPlan"] == {"FREE": 0, "PRO": 100, "ENTERPRISE": 1000}
    assert body["defaultUnitPrice"] == 1.0


def test_provider_connectivity_check(client: TestClient, fake_llm: ScriptedClientFactory) -> None:
    ok = client.post("/admin/providers/test", json={"provider": "Kimi"}).json()
    assert ok == {"success": True, "provider": "Kimi", "model": "moonshot-v1-8k", "preview": "ok", "error": None}
    ping = fake_llm.calls_of("ping")[0]
    assert ping["max_tokens"] == 16
    assert ping["temperature"] == 0

    fake_llm.script("ChatGPT", ping=ProviderError("HTTP 401: invalid key", status_code=401))
    failed = client.post("/admin/providers/test", json={"provider": "ChatGPT"}).json()
    assert failed["success"] is False
    assert "invalid key" in failed["error"]
