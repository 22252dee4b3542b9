from __future__ import annotations

from decimal import Decimal

import httpx
import pytest
from fastapi.testclient import TestClient

from matteflow.core.config import Settings
from matteflow.main import create_app

ADMIN = {"X-API-Key": "admin-key"}
WORKER = {"X-Worker-Token": "worker-token"}


@pytest.fixture()
def worker_requests():
    return []


@pytest.fixture()
def client(tmp_path, worker_requests):
    def handler(request: httpx.Request) -> httpx.Response:
        worker_requests.append(request)
        return httpx.Response(200, json={"status": "accepted", "message": "queued"})

    settings = Settings(
        database_url=f"sqlite:///{tmp_path / 'api.db'}",
        api_base_url="http://dispatch.test",
        admin_api_key="admin-key",
        worker_token="worker-token",
        scheduler_enabled=False,
        default_task_price=Decimal("1.00"),
        model_prices={"pro": Decimal("3.00")},
        bootstrap_account_balance=Decimal("5.00"),
    )
    app = create_app(settings, worker_transport=httpx.MockTransport(handler))
    with TestClient(app) as test_client:
        yield test_client


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_account_surface(client):
    opened = client.post("/api/accounts", json={"account_id": "alice"}, headers=ADMIN)
    assert opened.status_code == 201
    assert Decimal(opened.json()["balance"]) == Decimal("5.00")

    assert client.post("/api/accounts", json={"account_id": "bob", "initial_balance": "0"}, headers=ADMIN).status_code == 201
    assert client.post("/api/accounts/alice/recharge", json={"amount": "95"}, headers=ADMIN).status_code == 200

    consumed = client.post("/api/accounts/alice/consume", json={"amount": "30"})
    assert consumed.status_code == 200
    assert Decimal(consumed.json()["account"]["balance"]) == Decimal("70.00")

    overdraw = client.post("/api/accounts/alice/consume", json={"amount": "80"})
    assert overdraw.status_code == 402

    moved = client.post("/api/accounts/transfer", json={"from_account_id": "alice", "to_account_id": "bob", "amount": "70"})
    assert moved.status_code == 200
    assert Decimal(moved.json()["to_account"]["balance"]) == Decimal("70.00")

    same = client.post("/api/accounts/transfer", json={"from_account_id": "bob", "to_account_id": "bob", "amount": "1"})
    assert same.status_code == 422

    summary = client.get("/api/accounts/alice").json()
    assert Decimal(summary["account"]["balance"]) == Decimal("0.00")
    assert Decimal(summary["audited_balance"]) == Decimal("0.00")

    history = client.get("/api/accounts/bob/transactions", params={"type": "transfer"}).json()["items"]
    assert len(history) == 1

    assert client.get("/api/accounts/ghost").status_code == 404
    assert client.post("/api/accounts/alice/recharge", json={"amount": "1"}).status_code == 401


def test_task_round_trip(client, worker_requests):
    client.post("/api/accounts", json={"account_id": "alice", "initial_balance": "10"}, headers=ADMIN)
    beat = client.post("/api/workers/heartbeat", json={"address": "10.0.0.9:7001"}, headers=WORKER)
    assert beat.status_code == 200
    assert beat.json()["status"] == "idle"

    created = client.post(
        "/api/tasks",
        json={"owner_id": "alice", "video_path": "/in/a.mp4", "model_name": "pro"},
    )
    assert created.status_code == 201
    task_id = created.json()["id"]

    report = client.post("/api/admin/dispatch/tick", headers=ADMIN)
    assert report.status_code == 200
    assert report.json()["assigned"] == {str(task_id): "10.0.0.9:7001"}
    assert str(worker_requests[0].url) == "http://10.0.0.9:7001/api/video/segment"

    assert client.get(f"/api/tasks/{task_id}").json()["status"] == "processing"

    progress = client.post("/api/tasks/callback", json={"taskId": task_id, "status": "processing", "progress": 50}, headers=WORKER)
    assert progress.json()["progress"] == 50

    done = client.post("/api/tasks/callback", json={"taskId": task_id, "status": "completed"}, headers=WORKER)
    assert done.status_code == 200
    assert Decimal(done.json()["cost"]) == Decimal("3.00")

    repeat = client.post("/api/tasks/callback", json={"taskId": task_id, "status": "completed"}, headers=WORKER)
    assert repeat.status_code == 200
    assert Decimal(client.get("/api/accounts/alice").json()["account"]["balance"]) == Decimal("7.00")

    workers = client.get("/api/admin/workers", headers=ADMIN).json()["items"]
    assert workers[0]["status"] == "idle"
    assert workers[0]["completed"] == 1
    usage = client.get("/api/admin/models", headers=ADMIN).json()
    models = usage["items"]
    assert models == [{"model_name": "pro", "usage_count": 1, "updated_at": models[0]["updated_at"]}]
    assert Decimal(usage["default_price"]) == Decimal("1.00")
    assert {name: Decimal(price) for name, price in usage["prices"].items()} == {"pro": Decimal("3.00")}


def test_task_submission_and_cancel_rules(client):
    client.post("/api/accounts", json={"account_id": "poor", "initial_balance": "0.50"}, headers=ADMIN)
    client.post("/api/accounts", json={"account_id": "alice"}, headers=ADMIN)

    assert client.post("/api/tasks", json={"owner_id": "poor", "video_path": "/in/a.mp4"}).status_code == 402
    assert client.post("/api/tasks", json={"owner_id": "nobody", "video_path": "/in/a.mp4"}).status_code == 404

    task_id = client.post("/api/tasks", json={"owner_id": "alice", "video_path": "/in/a.mp4"}).json()["id"]
    cancelled = client.post(f"/api/tasks/{task_id}/cancel", json={"owner_id": "alice"})
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "failed"

    again = client.post(f"/api/tasks/{task_id}/cancel", json={"owner_id": "alice"})
    assert again.status_code == 409

    listed = client.get("/api/tasks", params={"owner_id": "alice", "status": "failed"}).json()["items"]
    assert [item["id"] for item in listed] == [task_id]


def test_worker_endpoints_require_token(client):
    assert client.post("/api/workers/heartbeat", json={"address": "10.0.0.9:7001"}).status_code == 401
    assert client.post("/api/tasks/callback", json={"taskId": 1, "status": "completed"}).status_code == 401
    registered = client.post("/api/workers/register", json={"address": "10.0.0.9:7001"}, headers=WORKER)
    assert registered.status_code == 201
    blank = client.post("/api/workers/register", json={"address": "    /"}, headers=WORKER)
    assert blank.status_code == 422


def test_admin_can_bench_a_worker(client):
    client.post("/api/workers/heartbeat", json={"address": "10.0.0.9:7001"}, headers=WORKER)

    benched = client.put("/api/admin/workers/10.0.0.9:7001/status", json={"status": "offline"}, headers=ADMIN)
    assert benched.status_code == 200
    assert benched.json()["status"] == "offline"

    forced = client.put("/api/admin/workers/10.0.0.9:7001/status", json={"status": "busy"}, headers=ADMIN)
    assert forced.status_code == 409
    missing = client.put("/api/admin/workers/nope:1/status", json={"status": "idle"}, headers=ADMIN)
    assert missing.status_code == 404
