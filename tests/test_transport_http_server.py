from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest
from conftest import campaigns
from starlette.testclient import TestClient

from campaign_planner.app import build_app_context
from campaign_planner.domain.budget import DEFAULT_REGIONAL_BUDGETS
from campaign_planner.transport.http_server import create_http_app


@pytest.fixture
def client(memory_settings):
    app = create_http_app(build_app_context(memory_settings))
    with TestClient(app) as test_client:
        yield test_client


def test_health(client) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["started"] is True


def test_context_attached_to_app_state(memory_settings) -> None:
    context = build_app_context(memory_settings)

    app = create_http_app(context)

    assert app.state.context is context


def test_create_http_app_builds_context_from_settings(memory_settings) -> None:
    with patch(
        "campaign_planner.transport.http_server.load_settings", return_value=memory_settings
    ) as mock_load:
        app = create_http_app()

    mock_load.assert_called_once()
    assert set(app.state.context.repositories) == {"campaigns", "budgets"}


def test_get_records_on_cold_start(client) -> None:
    campaigns_body = client.get("/api/campaigns").json()
    budgets_body = client.get("/api/budgets").json()

    assert campaigns_body["records"] == []
    assert campaigns_body["dirty"] is False
    assert campaigns_body["status"]["lastSaved"] is None
    assert [r["id"] for r in budgets_body["records"]] == list(DEFAULT_REGIONAL_BUDGETS)


def test_put_repairs_then_save_persists(client) -> None:
    response = client.put("/api/campaigns", json=[{"id": "c-1", "expectedLeads": "1,000"}])

    assert response.status_code == 202
    record = response.json()["records"][0]
    assert record["expectedLeads"] == 1000
    assert record["mql"] == 100
    assert record["sql"] == 60

    saved = client.post("/api/campaigns/save")
    assert saved.status_code == 200
    assert saved.json()["success"] is True
    assert saved.json()["remote"] is None

    status = client.get("/api/campaigns/status").json()
    assert status["dirty"] is False
    assert status["status"]["lastSaved"] is not None
    assert status["monitoring"] is False
    stored = client.app.state.context.kv.get_json("campaignData")
    assert stored[0]["id"] == "c-1"


def test_put_accepts_records_envelope(client) -> None:
    response = client.put("/api/campaigns", json={"records": campaigns("Launch")})

    assert response.status_code == 202
    assert client.get("/api/campaigns").json()["records"][0]["campaignName"] == "Launch"


@pytest.mark.parametrize(
    ("body", "error"),
    [
        (b"{not json", "invalid_json"),
        (json.dumps({"records": "nope"}).encode(), "invalid_records"),
        (json.dumps(42).encode(), "invalid_records"),
    ],
)
def test_put_rejects_bad_payloads(client, body, error) -> None:
    response = client.put(
        "/api/campaigns", content=body, headers={"Content-Type": "application/json"}
    )

    assert response.status_code == 400
    assert response.json()["error"] == error


def test_put_rejects_oversized_body(client) -> None:
    body = b"[" + b" " * (5 * 1024 * 1024) + b"]"

    response = client.put("/api/campaigns", content=body)

    assert response.status_code == 413


def test_unknown_collection(client) -> None:
    for response in (
        client.get("/api/widgets"),
        client.put("/api/widgets", json=[]),
        client.post("/api/widgets/save"),
        client.get("/api/widgets/status"),
        client.get("/api/widgets/backup"),
    ):
        assert response.status_code == 404
        assert response.json()["error"] == "unknown_collection"


def test_backup_download(client) -> None:
    client.put("/api/campaigns", json=campaigns("Launch"))

    response = client.get("/api/campaigns/backup")

    assert response.status_code == 200
    assert 'filename="campaign-backup-' in response.headers["content-disposition"]
    payload = response.json()
    assert payload["version"] == "1.0"
    assert payload["records"][0]["campaignName"] == "Launch"


def test_backup_export_writes_file(client, memory_settings) -> None:
    client.put("/api/campaigns", json=campaigns("Launch", "Webinar"))

    response = client.post("/api/campaigns/backup")

    assert response.status_code == 200
    path = Path(response.json()["path"])
    assert path.parent == Path(memory_settings.storage.backup_dir)
    assert len(json.loads(path.read_text(encoding="utf-8"))["records"]) == 2


def test_backup_export_failure_returns_500(memory_settings, tmp_path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    storage = memory_settings.storage.model_copy(update={"backup_dir": str(blocker / "sub")})
    app = create_http_app(build_app_context(memory_settings.model_copy(update={"storage": storage})))

    with TestClient(app) as client:
        response = client.post("/api/campaigns/backup")
        advisories = client.get("/api/advisories").json()["advisories"]

    assert response.status_code == 500
    assert response.json()["error"] == "backup_failed"
    assert any(a["source"] == "recovery" and a["level"] == "error" for a in advisories)


def test_storage_usage_and_enforce(client) -> None:
    usage = client.get("/api/storage/usage").json()

    assert usage["capacityBytes"] == 5 * 1024 * 1024
    assert "dataMigration_v1_completed" in usage["perKey"]
    assert usage["recommendations"] == []

    enforced = client.post("/api/storage/enforce").json()
    assert enforced["reclaimed"] == 0


def test_reset_clears_and_reloads(client) -> None:
    client.put("/api/campaigns", json=campaigns("Launch"))
    client.post("/api/campaigns/save")

    response = client.post("/api/reset")

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert [layer["layer"] for layer in response.json()["layers"]] == ["local_storage", "sqlite"]
    assert client.get("/api/campaigns").json()["records"] == []
    assert len(client.get("/api/budgets").json()["records"]) == len(DEFAULT_REGIONAL_BUDGETS)


def test_failed_save_returns_503_and_advises(memory_settings) -> None:
    settings = memory_settings.model_copy(
        update={
            "storage": memory_settings.storage.model_copy(
                update={"kv_capacity_bytes": 1024, "sqlite_enabled": False}
            )
        }
    )
    app = create_http_app(build_app_context(settings))

    with TestClient(app) as client:
        client.put("/api/campaigns", json=campaigns(*[f"Campaign {i}" for i in range(20)]))
        response = client.post("/api/campaigns/save")
        advisories = client.get("/api/advisories").json()["advisories"]

    assert response.status_code == 503
    assert response.json()["local"]["failedLayers"] == ["local_storage"]
    assert any(a["action"] == "export_backup" for a in advisories)
