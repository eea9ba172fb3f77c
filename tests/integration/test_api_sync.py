"""Integration tests for /fms sync, log and review routes."""
import json

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from fmssync.api.main import create_app
from fmssync.db.engine import get_session
from fmssync.models.sync import SyncLog
from fmssync.sync.orchestrator import SyncOrchestrator

FACILITY = "facility-001"


@pytest.fixture(name="orchestrator")
def orchestrator_fixture(engine, settings):
    return SyncOrchestrator(engine, settings=settings)


@pytest.fixture(name="client")
def client_fixture(engine, orchestrator):
    app = create_app(engine=engine, orchestrator=orchestrator)

    def override_session():
        with Session(engine) as s:
            yield s

    app.dependency_overrides[get_session] = override_session
    with TestClient(app) as c:
        yield c


def _remove_john(data_file, demo_data):
    demo_data["tenants"] = [t for t in demo_data["tenants"] if t["id"] != "TEN-1001"]
    data_file.write_text(json.dumps(demo_data))


class TestTriggerRoutes:
    def test_trigger_completes(self, client, sim_config):
        resp = client.post(f"/fms/sync/{FACILITY}")
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["status"] == "completed"
        assert body["summary"]["units_added"] == 6

    def test_trigger_records_user(self, client, sim_config, store):
        resp = client.post(f"/fms/sync/{FACILITY}", json={"user_id": "staff-7"})
        log = store.get_log(resp.json()["sync_log_id"])
        assert log.triggered_by_user_id == "staff-7"
        assert log.triggered_by == "manual"

    def test_missing_config_is_404(self, client):
        assert client.post("/fms/sync/nowhere").status_code == 404

    def test_disabled_config_is_400(self, client, sim_config, store):
        sim_config.is_enabled = False
        store.save_config(sim_config)
        assert client.post(f"/fms/sync/{FACILITY}").status_code == 400

    def test_active_sync_is_409(self, client, sim_config, seed_internal, demo_data, data_file):
        seed_internal(demo_data)
        _remove_john(data_file, demo_data)
        first = client.post(f"/fms/sync/{FACILITY}")
        assert first.json()["status"] == "review_needed"

        resp = client.post(f"/fms/sync/{FACILITY}")
        assert resp.status_code == 409


class TestStatusRoutes:
    def test_idle_status(self, client, sim_config):
        resp = client.get(f"/fms/sync/{FACILITY}/status")
        assert resp.status_code == 200
        assert resp.json()["active"] is False

    def test_review_status_and_cancel(self, client, sim_config, seed_internal, demo_data, data_file):
        seed_internal(demo_data)
        _remove_john(data_file, demo_data)
        sync_log_id = client.post(f"/fms/sync/{FACILITY}").json()["sync_log_id"]

        status = client.get(f"/fms/sync/{FACILITY}/status").json()
        assert status["active"] is True
        assert status["step"] == "review_needed"
        assert status["progress_percentage"] == 75
        assert status["sync_log_id"] == sync_log_id

        assert client.post(f"/fms/sync/{FACILITY}/cancel").json() == {"cancelled": True}
        assert client.get(f"/fms/sync/{FACILITY}/status").json()["active"] is False
        assert client.post(f"/fms/sync/{FACILITY}/cancel").json() == {"cancelled": False}

    def test_history_pagination(self, client, sim_config):
        for _ in range(3):
            client.post(f"/fms/sync/{FACILITY}")
        resp = client.get(f"/fms/sync/{FACILITY}/history", params={"limit": 2, "offset": 0})
        body = resp.json()
        assert body["total"] == 3
        assert len(body["logs"]) == 2

    def test_history_limit_validated(self, client):
        assert client.get(f"/fms/sync/{FACILITY}/history", params={"limit": 0}).status_code == 422


class TestLogAndReviewRoutes:
    def test_log_detail_includes_changes(self, client, sim_config):
        sync_log_id = client.post(f"/fms/sync/{FACILITY}").json()["sync_log_id"]
        resp = client.get(f"/fms/logs/{sync_log_id}")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "completed"
        assert len(body["changes"]) == body["changes_detected"] == 9

    def test_log_not_found(self, client):
        assert client.get("/fms/logs/999").status_code == 404

    def test_review_flow(self, client, sim_config, seed_internal, demo_data, data_file):
        seed_internal(demo_data)
        _remove_john(data_file, demo_data)
        sync_log_id = client.post(f"/fms/sync/{FACILITY}").json()["sync_log_id"]

        pending = client.get(f"/fms/changes/{sync_log_id}/pending").json()
        assert [c["change_type"] for c in pending] == ["tenant_removed"]

        resp = client.post(f"/fms/changes/{pending[0]['id']}/review", json={"decision": "approve"})
        assert resp.status_code == 200
        assert resp.json()["change"]["outcome"] == "applied"
        assert resp.json()["sync_status"] == "completed"
        assert client.get(f"/fms/changes/{sync_log_id}/pending").json() == []

        again = client.post(f"/fms/changes/{pending[0]['id']}/review", json={"decision": "reject"})
        assert again.status_code == 409

    def test_review_unknown_change(self, client):
        resp = client.post("/fms/changes/404/review", json={"decision": "approve"})
        assert resp.status_code == 404

    def test_review_bad_decision(self, client):
        resp = client.post("/fms/changes/1/review", json={"decision": "maybe"})
        assert resp.status_code == 422


class TestLifespan:
    def test_startup_fails_interrupted_logs(self, engine, orchestrator):
        with Session(engine) as s:
            s.add(SyncLog(facility_id=FACILITY, status="running"))
            s.commit()

        with TestClient(create_app(engine=engine, orchestrator=orchestrator)):
            pass

        with Session(engine) as s:
            assert s.get(SyncLog, 1).status == "failed"
