from __future__ import annotations

import asyncio
import logging
import os
import shlex
import subprocess
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

import httpx
import psutil

from app.config import settings
from app.utils.exceptions import (
    SandboxBuildFailedError,
    SandboxHealthCheckTimeoutError,
    SandboxMissingBuildError,
    SandboxServerError,
)
from app.utils.metrics import SANDBOX_SERVER_EVENTS_TOTAL

logger = logging.getLogger(__name__)


def _repo_root() -> Path:
    # app/core/simulations/sandbox_server.py -> repo root
    return Path(__file__).resolve().parents[3]


@dataclass
class SandboxProcessHandle:
    process: subprocess.Popen
    pid: int
    port: int
    base_url: str
    started_at: datetime


@dataclass(frozen=True)
class SandboxServerStatus:
    running: bool
    pid: Optional[int]
    port: int
    base_url: str
    started_at: Optional[datetime]
    last_error: Optional[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "pid": self.pid,
            "port": self.port,
            "baseUrl": self.base_url,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "lastError": self.last_error,
        }


class SandboxServerManager:
    """Owns at most one sandbox child server (STOPPED -> STARTING -> RUNNING -> STOPPED)."""

    def __init__(
        self,
        *,
        repo_root: Optional[Path] = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        run_command: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._repo_root = repo_root or _repo_root()
        self._popen = popen
        self._run_command = run_command
        self._http_transport = http_transport
        self._handle: Optional[SandboxProcessHandle] = None
        self._last_error: Optional[str] = None
        self._lock = asyncio.Lock()

    @property
    def http_transport(self) -> Optional[httpx.AsyncBaseTransport]:
        return self._http_transport

    # ------------------------------------------------------------------
    # Addressing
    # ------------------------------------------------------------------

    def _certs_dir(self) -> Path:
        certs = Path(settings.SANDBOX_CERTS_DIR)
        return certs if certs.is_absolute() else (self._repo_root / certs)

    def _has_certs(self) -> bool:
        certs = self._certs_dir()
        return (certs / "key.pem").exists() and (certs / "cert.pem").exists()

    def base_url(self) -> str:
        protocol = (settings.PUBLIC_API_PROTOCOL or "").strip().lower()
        if not protocol:
            protocol = "https" if self._has_certs() else "http"
        host = (settings.PUBLIC_API_HOST or "").strip() or "127.0.0.1"
        return f"{protocol}://{host}:{int(settings.SANDBOX_PORT)}"

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> SandboxServerStatus:
        handle = self._handle
        if handle is not None:
            code = handle.process.poll()
            if code is not None:
                if code != 0:
                    self._last_error = f"sandbox_server_exit_{code}"
                logger.warning("sandbox.server.exited pid=%s code=%s", handle.pid, code)
                self._handle = None
                handle = None

        return SandboxServerStatus(
            running=handle is not None,
            pid=handle.pid if handle else None,
            port=int(settings.SANDBOX_PORT),
            base_url=handle.base_url if handle else self.base_url(),
            started_at=handle.started_at if handle else None,
            last_error=self._last_error,
        )

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def _build(self) -> None:
        command = (settings.SANDBOX_BUILD_COMMAND or "").strip()
        if not command:
            return

        max_chars = int(settings.SANDBOX_BUILD_OUTPUT_MAX_CHARS)
        try:
            result = self._run_command(
                shlex.split(command),
                cwd=str(self._repo_root),
                capture_output=True,
                text=True,
            )
        except OSError as exc:
            raise SandboxBuildFailedError(
                f"sandbox_server_build_failed: {exc}"[:max_chars]
            ) from exc

        if result.returncode != 0:
            output = "\n".join(part for part in (result.stdout, result.stderr) if part)
            # Keep the tail: compilers print the actual error last.
            detail = f"exit_status={result.returncode} {output[-max_chars:]}".strip()
            raise SandboxBuildFailedError(
                f"sandbox_server_build_failed: {detail}",
                details={"exitStatus": result.returncode},
            )

    def _spawn(self) -> SandboxProcessHandle:
        port = int(settings.SANDBOX_PORT)
        base_url = self.base_url()
        host = (settings.PUBLIC_API_HOST or "").strip() or "127.0.0.1"

        env = os.environ.copy()
        env.update(
            {
                "PORT": str(port),
                "DATABASE_URL": settings.SANDBOX_DATABASE_URL,
                "SIMULATION_SANDBOX": "true",
                "SIMULATION_SANDBOX_MARKER": settings.SIMULATION_SANDBOX_MARKER,
            }
        )

        cmd = [sys.executable, "-m", "uvicorn", settings.SANDBOX_APP, "--host", host, "--port", str(port)]
        if base_url.startswith("https://"):
            certs = self._certs_dir()
            cmd += ["--ssl-keyfile", str(certs / "key.pem"), "--ssl-certfile", str(certs / "cert.pem")]

        process = self._popen(cmd, cwd=str(self._repo_root), env=env)
        logger.info("sandbox.server.spawned pid=%s port=%s base_url=%s", process.pid, port, base_url)
        return SandboxProcessHandle(
            process=process,
            pid=process.pid,
            port=port,
            base_url=base_url,
            started_at=datetime.now(timezone.utc),
        )

    async def _wait_for_healthy(self, handle: SandboxProcessHandle) -> None:
        url = f"{handle.base_url}{settings.SANDBOX_HEALTH_PATH}"
        interval = float(settings.SANDBOX_HEALTH_INTERVAL_SECONDS)
        deadline = time.monotonic() + float(settings.SANDBOX_HEALTH_TIMEOUT_SECONDS)

        async with httpx.AsyncClient(
            verify=False,
            timeout=float(settings.SANDBOX_HEALTH_PROBE_TIMEOUT_SECONDS),
            transport=self._http_transport,
        ) as client:
            while time.monotonic() < deadline:
                code = handle.process.poll()
                if code is not None:
                    raise SandboxServerError(f"sandbox_server_exit_{code}")
                try:
                    resp = await client.get(url)
                    if 200 <= resp.status_code < 300:
                        return
                except httpx.HTTPError:
                    pass
                await asyncio.sleep(interval)

        raise SandboxHealthCheckTimeoutError("sandbox_health_check_timeout")

    async def start(self) -> SandboxServerStatus:
        async with self._lock:
            current = self.status()
            if current.running:
                return current

            try:
                await asyncio.to_thread(self._build)

                entry = self._repo_root / settings.SANDBOX_ENTRY
                if not entry.exists():
                    raise SandboxMissingBuildError(f"sandbox_server_missing_build: {entry}")

                handle = self._spawn()
                try:
                    await self._wait_for_healthy(handle)
                except BaseException:
                    await asyncio.to_thread(self._terminate_tree, handle.process)
                    raise
            except Exception as exc:
                self._handle = None
                self._last_error = str(exc)
                SANDBOX_SERVER_EVENTS_TOTAL.labels(event="start", result="error").inc()
                logger.error("sandbox.server.start_failed error=%s", exc)
                raise

            self._handle = handle
            self._last_error = None
            SANDBOX_SERVER_EVENTS_TOTAL.labels(event="start", result="success").inc()
            logger.info("sandbox.server.healthy pid=%s base_url=%s", handle.pid, handle.base_url)
            return self.status()

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    def _terminate_tree(self, process: subprocess.Popen) -> None:
        if process.poll() is not None:
            return

        grace = float(settings.SANDBOX_STOP_GRACE_SECONDS)
        try:
            parent = psutil.Process(process.pid)
            procs = parent.children(recursive=True) + [parent]
        except psutil.Error:
            # No tree inspection available: plain termination signal.
            process.terminate()
            try:
                process.wait(timeout=grace)
            except subprocess.TimeoutExpired:
                process.kill()
            return

        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass
        _gone, alive = psutil.wait_procs(procs, timeout=grace)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass

        # Reap the direct child so it does not linger as a zombie.
        try:
            process.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            logger.warning("sandbox.server.reap_timeout pid=%s", process.pid)

    async def stop(self) -> SandboxServerStatus:
        async with self._lock:
            handle, self._handle = self._handle, None
            if handle is not None:
                logger.info("sandbox.server.stopping pid=%s", handle.pid)
                await asyncio.to_thread(self._terminate_tree, handle.process)
                SANDBOX_SERVER_EVENTS_TOTAL.labels(event="stop", result="success").inc()
        return self.status()
