import asyncio

import pytest

from app.core.simulations.runner import RunController

BASE = "/api/v1/simulations"


@pytest.fixture
def controller(guard_ok):
    return RunController(guard=guard_ok)


@pytest.mark.asyncio
async def test_requires_admin_credentials(db_engine, sandbox_mode, controller, make_client, bearer):
    async with make_client(controller=controller) as client:
        resp = await client.get(f"{BASE}/status")
        assert resp.status_code == 401
        assert resp.json()["error"] == "unauthorized"

        resp = await client.get(f"{BASE}/status", headers={"X-Admin-Token": "wrong"})
        assert resp.status_code == 403
        assert resp.json()["error"] == "forbidden"

        resp = await client.get(f"{BASE}/status", headers=bearer("TEACHER"))
        assert resp.status_code == 403

        resp = await client.get(f"{BASE}/status", headers=bearer("ADMIN"))
        assert resp.status_code == 200
        assert "X-Request-ID" in resp.headers


@pytest.mark.asyncio
async def test_sandbox_lifecycle_endpoints_inside_sandbox(db_engine, sandbox_mode, fake_manager, make_client, admin_headers):
    manager = fake_manager()
    async with make_client(manager=manager) as client:
        resp = await client.get(f"{BASE}/sandbox/status", headers=admin_headers)
        assert resp.status_code == 200
        body = resp.json()
        assert body["mode"] == "sandbox"
        assert body["sandboxServer"]["running"] is True

        resp = await client.post(f"{BASE}/sandbox/start", headers=admin_headers)
        assert resp.status_code == 400
        assert resp.json()["error"] == "already_in_sandbox"

        resp = await client.post(f"{BASE}/sandbox/stop", headers=admin_headers)
        assert resp.status_code == 400
        assert resp.json()["error"] == "cannot_stop_from_sandbox"

    assert manager.started == 0
    assert manager.stopped == 0


@pytest.mark.asyncio
async def test_status_without_running_run(db_engine, sandbox_mode, controller, make_client, admin_headers):
    async with make_client(controller=controller) as client:
        resp = await client.get(f"{BASE}/status", headers=admin_headers)

    assert resp.status_code == 200
    body = resp.json()
    assert body["running"] is None
    assert body["live"] is None
    assert body["sandbox"] is True
    assert body["sandboxDiagnostics"]["dbName"] == "nvcar_test"


@pytest.mark.asyncio
async def test_start_status_stop_history_flow(db_engine, sandbox_mode, controller, make_client, admin_headers):
    async with make_client(controller=controller) as client:
        resp = await client.post(
            f"{BASE}/start",
            headers=admin_headers,
            json={"teachers": 0, "subAdmins": 0, "durationSec": 10, "thinkTimeMs": "soon"},
        )
        assert resp.status_code == 200
        run_id = resp.json()["runId"]
        assert resp.json()["ok"] is True

        resp = await client.get(f"{BASE}/status", headers=admin_headers)
        body = resp.json()
        assert body["running"]["id"] == run_id
        assert body["running"]["status"] == "running"
        assert body["running"]["requestedDurationSec"] == 10
        assert body["running"]["thinkTimeMs"] is None
        assert body["live"]["runId"] == run_id
        assert body["live"]["stopRequested"] is False

        resp = await client.post(f"{BASE}/start", headers=admin_headers, json={"teachers": 1})
        assert resp.status_code == 409
        assert resp.json()["error"] == "already_running"
        assert resp.json()["runId"] == run_id

        resp = await client.post(f"{BASE}/stop", headers=admin_headers, json={})
        assert resp.status_code == 200
        assert resp.json() == {"ok": True}

        handle = controller.get_handle(run_id)
        if handle is not None:
            await asyncio.wait_for(handle.wait(), timeout=10)

        resp = await client.get(f"{BASE}/{run_id}", headers=admin_headers)
        assert resp.status_code == 200
        run = resp.json()["run"]
        assert run["status"] == "stopped"
        assert run["endedAt"] is not None
        assert run["summary"]["totalActions"] == 0
        assert resp.json()["live"] is None

        # Stopping an already stopped run by id is a no-op.
        resp = await client.post(f"{BASE}/stop", headers=admin_headers, json={"runId": run_id})
        assert resp.status_code == 200

        resp = await client.get(f"{BASE}/history", headers=admin_headers)
        assert [r["id"] for r in resp.json()["runs"]] == [run_id]


@pytest.mark.asyncio
async def test_not_found_and_validation_errors(db_engine, sandbox_mode, controller, make_client, admin_headers):
    async with make_client(controller=controller) as client:
        resp = await client.get(f"{BASE}/does-not-exist", headers=admin_headers)
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"

        resp = await client.post(f"{BASE}/stop", headers=admin_headers, json={"runId": "does-not-exist"})
        assert resp.status_code == 404

        resp = await client.post(f"{BASE}/stop", headers=admin_headers)
        assert resp.status_code == 404

        resp = await client.post(f"{BASE}/start", headers=admin_headers, json={"scenario": "chaos"})
        assert resp.status_code == 422
        assert resp.json()["error"] == "invalid_input"

    assert controller.get_handle("does-not-exist") is None


@pytest.mark.asyncio
async def test_real_guard_admits_test_database(db_engine, sandbox_mode, make_client, admin_headers):
    controller = RunController()
    async with make_client(controller=controller) as client:
        resp = await client.post(f"{BASE}/start", headers=admin_headers, json={"teachers": 0, "subAdmins": 0})
        assert resp.status_code == 200
        run_id = resp.json()["runId"]

        resp = await client.get(f"{BASE}/{run_id}", headers=admin_headers)
        run = resp.json()["run"]
        assert run["sandbox"] is True
        assert run["sandboxMarker"] == "sandbox"
        assert run["requestedDurationSec"] == 120
        assert run["lastMetrics"]["dbName"] == "nvcar_test"

    await controller.shutdown(timeout=5)
