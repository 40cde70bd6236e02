"""HTTP surface: routing, request validation and domain error mapping."""

from datetime import timedelta

import pytest
from httpx import ASGITransport, AsyncClient

from main import app
from models import get_session, utcnow


@pytest.fixture
async def client(session_factory):
    async def override_session():
        async with session_factory() as s:
            yield s

    app.dependency_overrides[get_session] = override_session
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


async def _register(client, serial, name=None):
    resp = await client.post("/api/devices", json={"serial": serial, "name": name or serial})
    assert resp.status_code == 201
    return resp.json()


class TestDevices:

    async def test_register_and_duplicate(self, client):
        body = await _register(client, "SN1", "Front door")
        assert body["status"] == "offline"
        assert body["direction"] == "both"

        resp = await client.post("/api/devices", json={"serial": "SN1", "name": "again"})
        assert resp.status_code == 409

    async def test_heartbeat_marks_online(self, client):
        await _register(client, "SN1")
        resp = await client.post("/api/devices/SN1/heartbeat")
        assert resp.status_code == 200
        assert resp.json()["status"] == "online"
        assert resp.json()["last_activity"] is not None

        resp = await client.get("/api/devices", params={"status": "online"})
        assert [d["serial"] for d in resp.json()] == ["SN1"]

    async def test_unknown_device(self, client):
        assert (await client.get("/api/devices/NOPE")).status_code == 404
        assert (await client.post("/api/devices/NOPE/heartbeat")).status_code == 404


class TestCommands:

    async def test_enqueue_report_and_conflict(self, client):
        await _register(client, "SN1")
        resp = await client.post("/api/commands", json={"device_serial": "SN1", "payload": "DATA QUERY"})
        assert resp.status_code == 201
        cid = resp.json()["id"]
        assert resp.json()["status"] == "pending"

        pending = await client.get("/api/commands/pending/SN1")
        assert [c["id"] for c in pending.json()] == [cid]

        resp = await client.post(f"/api/commands/{cid}/result", json={"status": "success", "response": "OK"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "success"

        resp = await client.post(f"/api/commands/{cid}/result", json={"status": "failed"})
        assert resp.status_code == 409

        stats = await client.get("/api/commands/stats", params={"device": "SN1"})
        assert stats.json()["success"] == 1

    async def test_enqueue_unknown_device(self, client):
        resp = await client.post("/api/commands", json={"device_serial": "GHOST", "payload": "X"})
        assert resp.status_code == 404

    async def test_enqueue_empty_payload(self, client):
        await _register(client, "SN1")
        resp = await client.post("/api/commands", json={"device_serial": "SN1", "payload": " "})
        assert resp.status_code == 400

    async def test_failure_without_retry_cap_is_final(self, client):
        await _register(client, "SN1")
        cid = (await client.post("/api/commands", json={"device_serial": "SN1", "payload": "X"})).json()["id"]

        resp = await client.post(f"/api/commands/{cid}/failure", json={"response": "timeout"})

        assert resp.json()["status"] == "failed"
        assert resp.json()["retry_count"] == 1

    async def test_unknown_command(self, client):
        assert (await client.get("/api/commands/999")).status_code == 404


class TestPersonnel:

    async def test_transfer_message(self, client, make_employee):
        for serial in ("D1", "D2", "D3"):
            await _register(client, serial)
        a = await make_employee("E1")
        b = await make_employee("E2")

        resp = await client.post(
            "/api/personnel/transfer",
            json={"ids": [a.id, b.id], "type": "department", "target_id": 7},
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["message"] == (
            "Transferred 2 employees successfully. Sync commands queued for 3 devices."
        )
        assert body["commands_queued"] == 6
        assert {e["department_id"] for e in body["employees"]} == {7}

    async def test_transfer_unknown_employee(self, client):
        resp = await client.post(
            "/api/personnel/transfer", json={"ids": [41], "type": "area", "target_id": 1},
        )
        assert resp.status_code == 404

    async def test_resign_twice_conflicts(self, client, make_employee):
        await _register(client, "D1")
        await make_employee("E1")

        first = await client.post("/api/personnel/resign", json={"employee_code": "E1"})
        assert first.status_code == 200
        assert first.json()["employees"][0]["status"] == "resigned"

        second = await client.post("/api/personnel/resign", json={"employee_code": "E1"})
        assert second.status_code == 409


class TestHealth:

    async def test_unknown_device_health(self, client):
        resp = await client.get("/api/health/devices/NOPE")
        assert resp.status_code == 200
        assert resp.json()["score"] == 0
        assert resp.json()["status"] == "offline"

    async def test_offline_alert(self, client, make_device):
        await make_device("D1", last_activity=utcnow() - timedelta(hours=2))

        resp = await client.get("/api/health/alerts")

        assert [a["type"] for a in resp.json()] == ["device_offline"]

    async def test_last_alerts_without_monitor(self, client):
        resp = await client.get("/api/health/alerts/last")
        assert resp.json() == {"last_run_at": None, "alerts": []}

    async def test_summary(self, client):
        resp = await client.get("/api/health/summary")
        assert resp.json()["devices"]["total"] == 0

    async def test_liveness(self, client):
        assert (await client.get("/health")).json() == {"status": "ok", "version": "1.0.0"}


class TestReportsApi:

    async def test_create_and_list(self, client):
        resp = await client.post("/api/reports/scheduled", json={
            "name": "Weekly health",
            "report_type": "device-health",
            "schedule_type": "weekly",
            "schedule_time": "07:30:00",
            "schedule_day": 1,
            "recipients": ["ops@example.com"],
        })
        assert resp.status_code == 201
        job = resp.json()
        assert job["next_run_at"] is not None
        assert job["running_since"] is None

        listed = (await client.get("/api/reports/scheduled")).json()
        assert [(j["id"], j["run_count"]) for j in listed] == [(job["id"], 0)]

    async def test_invalid_format(self, client):
        resp = await client.post("/api/reports/scheduled", json={
            "name": "x",
            "report_type": "device-health",
            "schedule_type": "daily",
            "schedule_time": "07:30:00",
            "recipients": ["ops@example.com"],
            "format": "pdf",
        })
        assert resp.status_code == 400

    async def test_unknown_job(self, client):
        assert (await client.get("/api/reports/scheduled/99")).status_code == 404
        assert (await client.delete("/api/reports/scheduled/99")).status_code == 404
        assert (await client.post("/api/reports/scheduled/99/release")).status_code == 404

    async def test_release_idle_job_conflicts(self, client):
        resp = await client.post("/api/reports/scheduled", json={
            "name": "Daily health",
            "report_type": "device-health",
            "schedule_type": "daily",
            "schedule_time": "07:30:00",
            "recipients": ["ops@example.com"],
        })
        job_id = resp.json()["id"]
        assert (await client.post(f"/api/reports/scheduled/{job_id}/release")).status_code == 409

    async def test_manual_run_without_scheduler(self, client):
        resp = await client.post("/api/reports/scheduled/1/run")
        assert resp.status_code == 503
