import pytest


@pytest.mark.anyio("asyncio")
async def test_healthcheck(client):
    response = await client.get("/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] in {"ok", "degraded"}
    assert payload["gateway_webhook_secret_status"] in {"missing", "partial", "ok"}
    assert payload["gateway_webhook_configured"] is True
    assert isinstance(payload["scheduler_config_enabled"], bool)
    assert isinstance(payload["scheduler_running"], bool)
    fps = payload["gateway_webhook_secret_fingerprints"]
    assert fps["primary"].startswith("sha256:")
    assert "secondary" in fps
    assert payload.get("db_status") in {"ok", "error"}
    assert payload.get("migrations_status") in {"up_to_date", "out_of_date", "unknown"}
    assert isinstance(payload.get("db_ok"), bool)
    assert isinstance(payload.get("migrations_ok"), bool)
    assert "scheduler_lock" in payload


@pytest.mark.anyio("asyncio")
async def test_health_reports_migrations_at_head(client):
    payload = (await client.get("/health")).json()
    assert payload["db_status"] == "ok"
    assert payload["migrations_status"] == "up_to_date"
    assert payload["status"] == "ok"


@pytest.mark.anyio("asyncio")
async def test_health_exposes_processing_counters(client):
    payload = (await client.get("/health")).json()

    assert payload["webhook_stats"].keys() >= {"received", "processed", "duplicates", "orphaned", "rejected", "errors"}
    assert isinstance(payload["dedup_cache_size"], int)
    assert payload["event_stats"].keys() >= {"outcomes", "settlement_fallback_matches"}
    assert payload["reconciliation_stats"].keys() >= {"runs", "skipped", "failures", "last_run"}
    assert payload["notifications"].keys() == {"delivered", "failed"}
    assert payload["jobs"] == {}


@pytest.mark.anyio("asyncio")
async def test_health_degrades_on_db_failure(monkeypatch, client):
    class BrokenEngine:
        def connect(self):  # pragma: no cover - simple stub
            raise RuntimeError("DB down")

    monkeypatch.setattr("fundledger.routers.health.get_engine", lambda: BrokenEngine())

    response = await client.get("/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "degraded"
    assert payload["db_status"] == "error"
    assert payload["migrations_status"] == "unknown"
    assert payload["db_ok"] is False
    assert payload["migrations_ok"] is False


@pytest.mark.anyio("asyncio")
async def test_health_status_degraded_when_db_status_error(monkeypatch, client):
    from fundledger.routers import health as health_module

    monkeypatch.setattr(health_module, "_db_status", lambda: "error")

    response = await client.get("/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "degraded"
    assert payload["db_status"] == "error"


@pytest.mark.anyio("asyncio")
async def test_health_reports_missing_secret(monkeypatch, client):
    from fundledger.config import get_settings

    monkeypatch.setattr(get_settings(), "gateway_webhook_secret", None)

    payload = (await client.get("/health")).json()
    assert payload["gateway_webhook_configured"] is False
    assert payload["gateway_webhook_secret_status"] == "missing"
