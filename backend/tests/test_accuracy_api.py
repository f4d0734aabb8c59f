from __future__ import annotations

from fastapi.testclient import TestClient

from wxconsensus.errors import StorageError, UpstreamError
from wxconsensus.storage.base import Lease, ReconciliationBatch, ScoreUpdate

from _helpers import FIXED_NOW

RANGE = {"start": "2024-04-17T00:00:00Z", "end": "2024-05-02T00:00:00Z"}


def test_scores_empty_envelope(client: TestClient):
    resp = client.get("/api/accuracy/scores")
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["data"] == []
    assert body["error"] is None
    assert "generated_at" in body["meta"]


def test_scores_nested_view(client: TestClient, service):
    service.store.apply_reconciliation(ReconciliationBatch(score_updates=[
        ScoreUpdate(3, "icon_global", "temperature_2m", "48h", 1.5, "Edmonton Airport CYEG", "ICON Global 7km"),
    ]))
    (score,) = client.get("/api/accuracy/scores").json()["data"]
    assert score["location_id"] == 3
    assert score["model_name"] == "ICON Global 7km"
    assert score["scores"]["temperature_2m"]["48h"] == {"mean_absolute_error": 1.5, "hours_tracked": 1}
    assert score["scores"]["temperature_2m"]["24h"]["hours_tracked"] == 0


def test_full_cycle_then_read_accessors(client: TestClient):
    resp = client.post("/api/accuracy/full-cycle")
    assert resp.status_code == 200
    report = resp.json()["data"]
    assert report["actuals_added"] == 14 * 24
    assert report["pending_added"] > 0
    assert report["failures"] == []

    actuals = client.get("/api/accuracy/actuals", params={"location_id": 3, **RANGE}).json()
    assert actuals["ok"] is True
    times = [row["time"] for row in actuals["data"]]
    assert times == sorted(times)
    # the oldest hour sits exactly on the retention cutoff and is pruned in the same cycle
    assert len(times) == 14 * 24 - 1
    assert times[-1].startswith("2024-05-01T11:00:00")
    assert actuals["meta"]["params"]["location_id"] == 3

    historical = client.get("/api/accuracy/historical", params={"location_id": 3, **RANGE}).json()
    assert historical["data"] == []

    status = client.get("/api/accuracy/status").json()["data"]
    assert status["last_cycle_ok"] is True
    assert status["is_leader"] is True
    assert status["failures"] == []


def test_full_cycle_conflict_when_other_replica_leads(client: TestClient, service):
    service.store.put_lease(Lease(service.lease.lease_id, "other-replica", int(FIXED_NOW.timestamp() * 1000)))
    resp = client.post("/api/accuracy/full-cycle")
    assert resp.status_code == 409
    body = resp.json()
    assert body["ok"] is False
    assert body["error"]["code"] == "lease_unavailable"
    assert body["error"]["details"]["holder_id"] == "other-replica"


def test_update_as_follower(client: TestClient, service):
    service.store.put_lease(Lease(service.lease.lease_id, "other-replica", int(FIXED_NOW.timestamp() * 1000)))
    body = client.post("/api/accuracy/update").json()
    assert body["data"] == {"ran": False, "leader": False}


def test_reconcile_and_reset(client: TestClient):
    reconcile = client.post("/api/accuracy/reconcile").json()
    assert reconcile["data"] == {"due": 0, "scored": 0, "skipped": 0}

    reset = client.post("/api/accuracy/reset")
    assert reset.status_code == 200
    assert reset.json()["data"] == {"reset": True}
    assert client.get("/api/accuracy/scores").json()["data"] == []


def test_invalid_range_rejected(client: TestClient):
    resp = client.get(
        "/api/accuracy/actuals",
        params={"location_id": 3, "start": "2024-05-02T00:00:00Z", "end": "2024-05-01T00:00:00Z"},
    )
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "invalid_range"


def test_forecasts_include_median_model(client: TestClient):
    resp = client.get("/api/forecasts", params={"view": "hourly", "latitude": 53.3, "longitude": -113.6})
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["view"] == "hourly"
    assert set(data["forecasts"]) == {"icon_global", "gem_global", "median_model"}
    assert data["errors"] == []


def test_forecasts_reject_unknown_view(client: TestClient):
    resp = client.get("/api/forecasts", params={"view": "weekly", "latitude": 53.3, "longitude": -113.6})
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "invalid_view"


def test_storage_failure_becomes_error_envelope(client: TestClient, service, monkeypatch):
    def broken():
        raise StorageError("disk I/O error")

    monkeypatch.setattr(service.store, "get_accuracy_scores", broken)
    resp = client.get("/api/accuracy/scores", headers={"x-request-id": "req-42"})
    assert resp.status_code == 500
    body = resp.json()
    assert body["ok"] is False
    assert body["error"]["code"] == "storage_error"
    assert body["error"]["details"]["request_id"] == "req-42"


def test_current_weather_envelope(client: TestClient):
    resp = client.get("/api/forecasts/current", params={"latitude": 53.3, "longitude": -113.6})
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["timezone_abbreviation"] == "MDT"
    assert data["current"]["temperature_2m"] == 6.5
    assert data["current"]["cloud_cover_high"] == 40.0


def test_past_weather_defaults_to_one_day(client: TestClient):
    resp = client.get("/api/forecasts/past", params={"latitude": 53.3, "longitude": -113.6})
    assert resp.status_code == 200
    body = resp.json()
    assert body["data"]["days"] == 1
    # 2024-04-30 and 2024-05-01, whole days
    assert len(body["data"]["records"]) == 48
    assert body["meta"]["params"]["count"] == 48
    assert body["data"]["records"][0]["time"] == "2024-04-30T00:00"


def test_past_weather_rejects_days_out_of_range(client: TestClient):
    for days in (0, 8):
        resp = client.get("/api/forecasts/past", params={"latitude": 53.3, "longitude": -113.6, "days": days})
        assert resp.status_code == 422


def test_past_weather_upstream_failure_is_bad_gateway(client: TestClient, service, monkeypatch):
    async def failing(latitude, longitude, days):
        raise UpstreamError("https://archive-api.open-meteo.com/v1/archive", 200, "Invalid JSON: bad body")

    monkeypatch.setattr(service.client, "fetch_archive", failing)
    resp = client.get("/api/forecasts/past", params={"latitude": 53.3, "longitude": -113.6})
    assert resp.status_code == 502
    assert resp.json()["error"]["code"] == "upstream_error"
