import asyncio
import subprocess

import httpx
import psutil
import pytest

from app.config import settings
from app.core.simulations.sandbox_server import SandboxServerManager
from app.utils.exceptions import (
    SandboxBuildFailedError,
    SandboxHealthCheckTimeoutError,
    SandboxMissingBuildError,
    SandboxServerError,
)

# Far above any real pid: psutil cannot inspect it, so termination falls back to Popen.
FAKE_PID = 99_999_999


class FakeProcess:
    def __init__(self, pid: int = FAKE_PID):
        self.pid = pid
        self.returncode = None
        self.terminated = 0
        self.killed = 0

    def poll(self):
        return self.returncode

    def terminate(self):
        self.terminated += 1
        self.returncode = -15

    def kill(self):
        self.killed += 1
        self.returncode = -9

    def wait(self, timeout=None):
        return self.returncode


class FakePopen:
    def __init__(self):
        self.calls = []
        self.processes = []

    def __call__(self, cmd, cwd=None, env=None):
        self.calls.append({"cmd": cmd, "cwd": cwd, "env": env})
        proc = FakeProcess()
        self.processes.append(proc)
        return proc


def _health(status_code: int):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(status_code, json={"status": "ok"})

    return httpx.MockTransport(handler), seen


@pytest.fixture
def sandbox_root(tmp_path, monkeypatch):
    (tmp_path / "app").mkdir()
    (tmp_path / "app" / "main.py").write_text("app = None\n")
    monkeypatch.setattr(settings, "SANDBOX_ENTRY", "app/main.py")
    monkeypatch.setattr(settings, "SANDBOX_BUILD_COMMAND", "")
    monkeypatch.setattr(settings, "SANDBOX_CERTS_DIR", str(tmp_path / "certs"))
    monkeypatch.setattr(settings, "SANDBOX_PORT", 8123)
    monkeypatch.setattr(settings, "PUBLIC_API_PROTOCOL", "")
    monkeypatch.setattr(settings, "PUBLIC_API_HOST", "127.0.0.1")
    monkeypatch.setattr(settings, "SANDBOX_HEALTH_TIMEOUT_SECONDS", 0.3)
    monkeypatch.setattr(settings, "SANDBOX_HEALTH_INTERVAL_SECONDS", 0.05)
    monkeypatch.setattr(settings, "SANDBOX_STOP_GRACE_SECONDS", 0.1)
    return tmp_path


@pytest.mark.asyncio
async def test_start_spawns_child_and_is_idempotent(sandbox_root):
    popen = FakePopen()
    transport, seen = _health(200)
    manager = SandboxServerManager(repo_root=sandbox_root, popen=popen, http_transport=transport)

    status = await manager.start()
    assert status.running is True
    assert status.pid == FAKE_PID
    assert status.base_url == "http://127.0.0.1:8123"
    assert seen and seen[0] == "http://127.0.0.1:8123/health"

    again = await manager.start()
    assert again.running is True
    assert len(popen.calls) == 1

    env = popen.calls[0]["env"]
    assert env["SIMULATION_SANDBOX"] == "true"
    assert env["DATABASE_URL"] == settings.SANDBOX_DATABASE_URL
    assert env["PORT"] == "8123"
    assert env["SIMULATION_SANDBOX_MARKER"] == settings.SIMULATION_SANDBOX_MARKER
    cmd = popen.calls[0]["cmd"]
    assert cmd[1:3] == ["-m", "uvicorn"]
    assert "--ssl-keyfile" not in cmd


@pytest.mark.asyncio
async def test_https_when_certs_present(sandbox_root):
    certs = sandbox_root / "certs"
    certs.mkdir()
    (certs / "key.pem").write_text("k")
    (certs / "cert.pem").write_text("c")

    popen = FakePopen()
    transport, seen = _health(200)
    manager = SandboxServerManager(repo_root=sandbox_root, popen=popen, http_transport=transport)

    assert manager.base_url() == "https://127.0.0.1:8123"
    await manager.start()
    assert seen[0].startswith("https://")
    assert "--ssl-certfile" in popen.calls[0]["cmd"]


@pytest.mark.asyncio
async def test_build_failure_captures_bounded_output(sandbox_root, monkeypatch):
    monkeypatch.setattr(settings, "SANDBOX_BUILD_COMMAND", "npm run build")
    monkeypatch.setattr(settings, "SANDBOX_BUILD_OUTPUT_MAX_CHARS", 4000)

    def run_command(args, **kwargs):
        assert args == ["npm", "run", "build"]
        return subprocess.CompletedProcess(args, 2, stdout="x" * 10_000, stderr="error TS2304: boom")

    popen = FakePopen()
    manager = SandboxServerManager(repo_root=sandbox_root, popen=popen, run_command=run_command)

    with pytest.raises(SandboxBuildFailedError) as exc_info:
        await manager.start()

    exc = exc_info.value
    assert exc.code == "sandbox_server_build_failed"
    assert "boom" in exc.message
    assert "exit_status=2" in exc.message
    assert len(exc.message) < 4200
    assert popen.calls == []

    status = manager.status()
    assert status.running is False
    assert "boom" in status.last_error


@pytest.mark.asyncio
async def test_missing_entry_artifact(sandbox_root, monkeypatch):
    monkeypatch.setattr(settings, "SANDBOX_ENTRY", "dist/server.js")
    popen = FakePopen()
    manager = SandboxServerManager(repo_root=sandbox_root, popen=popen)

    with pytest.raises(SandboxMissingBuildError):
        await manager.start()

    assert popen.calls == []
    assert manager.status().running is False
    assert "sandbox_server_missing_build" in manager.status().last_error


@pytest.mark.asyncio
async def test_health_timeout_terminates_child(sandbox_root):
    popen = FakePopen()
    transport, _seen = _health(503)
    manager = SandboxServerManager(repo_root=sandbox_root, popen=popen, http_transport=transport)

    with pytest.raises(SandboxHealthCheckTimeoutError):
        await manager.start()

    proc = popen.processes[0]
    assert proc.terminated == 1
    status = manager.status()
    assert status.running is False
    assert status.pid is None
    assert status.last_error == "sandbox_health_check_timeout"


@pytest.mark.asyncio
async def test_child_exit_during_health_check(sandbox_root):
    class ExitingPopen(FakePopen):
        def __call__(self, cmd, cwd=None, env=None):
            proc = super().__call__(cmd, cwd=cwd, env=env)
            proc.returncode = 1
            return proc

    transport, _seen = _health(503)
    manager = SandboxServerManager(repo_root=sandbox_root, popen=ExitingPopen(), http_transport=transport)

    with pytest.raises(SandboxServerError, match="sandbox_server_exit_1"):
        await manager.start()
    assert manager.status().running is False


@pytest.mark.asyncio
async def test_status_reports_nonzero_exit_and_clears_handle(sandbox_root):
    popen = FakePopen()
    transport, _seen = _health(200)
    manager = SandboxServerManager(repo_root=sandbox_root, popen=popen, http_transport=transport)
    await manager.start()

    popen.processes[0].returncode = 3

    status = manager.status()
    assert status.running is False
    assert status.pid is None
    assert status.last_error == "sandbox_server_exit_3"


@pytest.mark.asyncio
async def test_stop_is_idempotent_and_falls_back_to_terminate(sandbox_root):
    popen = FakePopen()
    transport, _seen = _health(200)
    manager = SandboxServerManager(repo_root=sandbox_root, popen=popen, http_transport=transport)

    # Never started.
    assert (await manager.stop()).running is False

    await manager.start()
    status = await manager.stop()
    assert status.running is False
    assert popen.processes[0].terminated == 1

    status = await manager.stop()
    assert status.running is False
    assert popen.processes[0].terminated == 1


def _gone(proc: psutil.Process) -> bool:
    try:
        return not proc.is_running() or proc.status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


@pytest.mark.asyncio
async def test_stop_terminates_whole_process_tree(sandbox_root):
    spawned = []

    def popen(cmd, cwd=None, env=None):
        proc = subprocess.Popen(["sh", "-c", "sleep 300 & sleep 300 & wait"])
        spawned.append(proc)
        return proc

    transport, _seen = _health(200)
    manager = SandboxServerManager(repo_root=sandbox_root, popen=popen, http_transport=transport)

    status = await manager.start()
    parent = psutil.Process(status.pid)
    grandchildren = []
    try:
        for _ in range(100):
            grandchildren = parent.children(recursive=True)
            if len(grandchildren) >= 2:
                break
            await asyncio.sleep(0.02)
        assert len(grandchildren) == 2

        status = await manager.stop()

        assert status.running is False
        assert spawned[0].poll() is not None
        assert all(_gone(proc) for proc in grandchildren)
    finally:
        for proc in grandchildren:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass
        if spawned and spawned[0].poll() is None:
            spawned[0].kill()
            spawned[0].wait()
