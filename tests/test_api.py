import types

import pytest
from fastapi.testclient import TestClient

from campaign_queue.api import create_app, API_TOKEN_HEADER_NAME


API_TOKEN = "secret-token"

QUEUE_ROW = {
    "id": "q1",
    "campaign_id": "camp",
    "contact_email": "a@x.test",
    "contact_name": "Ann",
    "subject": "Hi",
    "html_content": "<p>Hi</p>",
    "message_id": "camp-c1-1-abc",
    "status": "pending",
    "retry_count": 0,
    "scheduled_for": 100,
    "sent_at": None,
    "error_message": None,
    "error_code": None,
    "provider_message_id": None,
    "created_at": 100,
    "updated_at": 100,
}


SERVER_HEALTH = {
    "server_id": "s1",
    "name": "Primary",
    "total_sent": 9,
    "total_failed": 1,
    "success_rate": 90.0,
    "is_healthy": True,
    "is_active": True,
    "last_used": 1200,
}

class DummyService:
    def __init__(self):
        self.calls = []
        self.metrics = types.SimpleNamespace(generate_latest=lambda: b"metrics-data")
        self.fail_batch = False

    async def handle_command(self, cmd, payload):
        self.calls.append((cmd, payload))
        if cmd == "enqueueCampaign":
            if payload["campaign_id"] == "missing":
                return {"ok": False, "error": "Campaign 'missing' not found"}
            return {"ok": True, "queued_count": 2, "duplicates_skipped": 1, "failed": 0}
        if cmd == "retryFailed":
            return {"ok": True, "reset": 4}
        if cmd == "campaignStats":
            return {"ok": True, "campaign_id": payload["campaign_id"], "counts": {"pending": 1, "total": 1}}
        if cmd == "listQueue":
            return {"ok": True, "items": [QUEUE_ROW]}
        if cmd == "processBatch":
            if self.fail_batch:
                raise RuntimeError("database is locked")
            return {"ok": True, "processed": 2, "sent": 1, "retried": 1, "failed": 0,
                    "deferred": 0, "skipped": 0, "errors": 0}
        if cmd in ("startWorker", "stopWorker", "workerStatus"):
            return {"ok": True, "running": cmd != "stopWorker"}
        if cmd == "reclaim":
            return {"ok": True, "reclaimed": 2}
        if cmd == "listServers":
            return {"ok": True, "servers": []}
        if cmd == "queueMetrics":
            return {"ok": True, "counts": {"sent": 3, "total": 4}, "throughput_last_hour": 3,
                    "error_rate": 25.0, "last_sent_at": 900}
        if cmd == "serverMetrics":
            return {"ok": True, "servers": [SERVER_HEALTH]}
        if cmd == "deleteServer":
            if payload["id"] == "ghost":
                return {"ok": False, "error": "Server 'ghost' not found"}
            return {"ok": True}
        return {"ok": True}


@pytest.fixture
def client_and_service():
    svc = DummyService()
    client = TestClient(create_app(svc, api_token=API_TOKEN))
    client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN})
    return client, svc


def test_status_requires_token():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))
    assert client.get("/status").status_code == 401
    assert client.get("/status", headers={API_TOKEN_HEADER_NAME: "wrong"}).status_code == 401
    response = client.get("/status", headers={API_TOKEN_HEADER_NAME: API_TOKEN})
    assert response.status_code == 200
    assert response.json() == {"ok": True}


def test_no_token_configured_allows_requests():
    client = TestClient(create_app(DummyService()))
    assert client.get("/status").status_code == 200


def test_enqueue_campaign(client_and_service):
    client, svc = client_and_service
    response = client.post("/campaigns/camp/enqueue", json={"list_ids": ["news", "vip"]})
    assert response.status_code == 200
    assert response.json()["queued_count"] == 2
    assert response.json()["duplicates_skipped"] == 1
    assert svc.calls[-1] == ("enqueueCampaign", {"campaign_id": "camp", "list_ids": ["news", "vip"]})


def test_enqueue_without_body_targets_all_contacts(client_and_service):
    client, svc = client_and_service
    assert client.post("/campaigns/camp/enqueue").status_code == 200
    assert svc.calls[-1][1]["list_ids"] == []


def test_enqueue_unknown_campaign_is_404(client_and_service):
    client, _ = client_and_service
    response = client.post("/campaigns/missing/enqueue", json={})
    assert response.status_code == 404
    assert "not found" in response.json()["detail"]


def test_retry_failed_and_stats(client_and_service):
    client, _ = client_and_service
    assert client.post("/campaigns/camp/retry-failed").json() == {"ok": True, "reset": 4}
    stats = client.get("/campaigns/camp/stats").json()
    assert stats["campaign_id"] == "camp"
    assert stats["counts"]["total"] == 1


def test_queue_listing_forwards_filters(client_and_service):
    client, svc = client_and_service
    response = client.get("/queue", params={"campaign_id": "camp", "status": "failed", "limit": 10})
    assert response.status_code == 200
    item = response.json()["items"][0]
    assert item["id"] == "q1"
    assert "html_content" not in item
    assert svc.calls[-1] == ("listQueue", {"campaign_id": "camp", "limit": 10, "status": "failed"})


def test_queue_listing_rejects_unknown_status(client_and_service):
    client, _ = client_and_service
    assert client.get("/queue", params={"status": "lost"}).status_code == 422


def test_process_batch(client_and_service):
    client, svc = client_and_service
    response = client.post("/commands/process-batch")
    assert response.status_code == 200
    assert response.json()["processed"] == 2

    svc.fail_batch = True
    response = client.post("/commands/process-batch")
    assert response.status_code == 200
    assert response.json() == {"ok": False, "error": "database is locked", "processed": 0, "sent": 0,
                               "retried": 0, "failed": 0, "deferred": 0, "skipped": 0, "errors": 0}


def test_worker_commands(client_and_service):
    client, svc = client_and_service
    assert client.post("/commands/start-worker").json()["running"] is True
    assert client.post("/commands/stop-worker").json()["running"] is False
    assert client.get("/commands/worker-status").json()["running"] is True
    assert client.post("/commands/reclaim").json() == {"ok": True, "reclaimed": 2}
    assert [c[0] for c in svc.calls] == ["startWorker", "stopWorker", "workerStatus", "reclaim"]


def test_commands_require_token():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))
    assert client.post("/commands/process-batch").status_code == 401


def test_server_endpoints(client_and_service):
    client, svc = client_and_service
    payload = {
        "id": "sg",
        "type": "sendgrid",
        "api_key": "key",
        "from_name": "ACME",
        "from_email": "news@acme.test",
        "limit_per_hour": 100,
    }
    assert client.post("/servers", json=payload).status_code == 200
    cmd, forwarded = svc.calls[-1]
    assert cmd == "addServer"
    assert forwarded["type"] == "sendgrid"
    assert forwarded["tenant_id"] == "default"

    assert client.get("/servers").json() == {"ok": True, "servers": []}
    assert client.delete("/servers/sg").status_code == 200
    assert client.delete("/servers/ghost").status_code == 404


def test_invalid_server_payload_is_rejected(client_and_service):
    client, svc = client_and_service
    response = client.post("/servers", json={"id": "smtp1", "from_name": "x", "from_email": "x@y.z"})
    assert response.status_code == 422
    assert svc.calls == []


def test_metrics_endpoint(client_and_service):
    client, _ = client_and_service
    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.content == b"metrics-data"


def test_queue_metrics_endpoint_forwards_scope(client_and_service):
    client, svc = client_and_service
    response = client.get("/queue/metrics", params={"tenant_id": "t1"})
    assert response.status_code == 200
    assert response.json()["error_rate"] == 25.0
    assert svc.calls[-1] == ("queueMetrics", {"campaign_id": None, "tenant_id": "t1"})


def test_server_metrics_endpoint(client_and_service):
    client, svc = client_and_service
    response = client.get("/servers/metrics", params={"tenant_id": "t1"})
    assert response.status_code == 200
    assert response.json()["servers"] == [SERVER_HEALTH]
    assert svc.calls[-1] == ("serverMetrics", {"tenant_id": "t1"})
