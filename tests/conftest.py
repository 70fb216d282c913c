"""
NVCar simulations: pytest fixtures and configuration.

Provides:
- A throwaway SQLite database per test (schema from the models)
- Settings overrides for sandbox mode and fast loops
- A mocked collaborator API (httpx.MockTransport)
- An ASGI client against `app.main:app` with injected controller/manager
"""
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Optional

# Must be set before `app.config` is imported anywhere.
os.environ.setdefault("ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./nvcar_test.db")

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import app.db.session as db
from app.config import settings
from app.core.simulations.sandbox_guard import SandboxDiagnostics
from app.core.simulations.sandbox_server import SandboxServerStatus
from app.db.models import Base
from app.utils.security import create_access_token

# =============================================================================
# Constants
# =============================================================================
TEMPLATE_DOC = {
    "_id": "tpl-original",
    "name": "Livret PS",
    "pages": [
        {
            "blocks": [
                {
                    "type": "language_toggle",
                    "props": {"blockId": "lang-1", "items": [{"code": "fr"}, {"code": "ar"}, {"code": "en"}]},
                },
                {
                    "type": "table",
                    "props": {
                        "blockId": "tbl-1",
                        "expandedRows": True,
                        "expandedLanguages": [{"code": "fr"}, {"code": "en"}],
                        "rowIds": ["r0", "r1"],
                        "cells": [["a"], ["b"]],
                    },
                },
            ]
        }
    ],
}


# =============================================================================
# Database
# =============================================================================
@pytest.fixture
async def db_engine(tmp_path, monkeypatch):
    """Fresh SQLite file per test, swapped into `app.db.session`."""
    url = f"sqlite+aiosqlite:///{tmp_path / 'nvcar_test.db'}"
    engine = db._create_engine(url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(
        bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )
    monkeypatch.setattr(db, "engine", engine)
    monkeypatch.setattr(db, "AsyncSessionLocal", session_factory)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    async with db.AsyncSessionLocal() as session:
        yield session


# =============================================================================
# Settings
# =============================================================================
@pytest.fixture
def fast_settings(monkeypatch):
    """Short loop intervals so runs finish quickly."""
    monkeypatch.setattr(settings, "SIMULATION_SAMPLER_INTERVAL_SECONDS", 0.05)
    monkeypatch.setattr(settings, "SIMULATION_COLLECTOR_INTERVAL_SECONDS", 0.05)
    monkeypatch.setattr(settings, "SIMULATION_ACTOR_DRAIN_TIMEOUT_SECONDS", 2.0)
    monkeypatch.setattr(settings, "SIMULATION_CLEANUP_SEEDED_DATA", False)
    monkeypatch.setattr(settings, "RATE_LIMIT_ENABLED", False)
    return settings


@pytest.fixture
def sandbox_mode(monkeypatch, fast_settings):
    monkeypatch.setattr(settings, "SIMULATION_SANDBOX", "true")
    monkeypatch.setattr(settings, "SIMULATION_SANDBOX_MARKER", "sandbox")
    return settings


@pytest.fixture
def normal_mode(monkeypatch, fast_settings):
    monkeypatch.setattr(settings, "SIMULATION_SANDBOX", "")
    return settings


def _allow_guard() -> SandboxDiagnostics:
    return SandboxDiagnostics(
        ok=True,
        flag=True,
        flag_raw="true",
        marker="sandbox",
        marker_match=False,
        test_match=True,
        db_name="nvcar_test",
        uri="sqlite+aiosqlite:///nvcar_test.db",
        env_source="env",
    )


@pytest.fixture
def guard_ok():
    """Guard stand-in that always admits the run."""
    return _allow_guard


# =============================================================================
# Collaborator API mock
# =============================================================================
@dataclass
class CollaboratorApi:
    """Minimal teacher/subadmin API answering the routes actors call."""

    fail_all: bool = False
    requests: list = field(default_factory=list)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_all:
            return httpx.Response(500, json={"error": "boom"})

        path = request.url.path
        if request.method == "GET":
            if path == "/teacher/classes":
                return httpx.Response(200, json=[{"_id": "class-1", "name": "PS A"}])
            if path.endswith("/students") and path.startswith("/teacher/classes/"):
                return httpx.Response(200, json=[{"_id": "student-1"}])
            if path.endswith("/templates") and path.startswith("/teacher/students/"):
                return httpx.Response(200, json=[{"_id": "assignment-1"}])
            if path.startswith("/teacher/template-assignments/"):
                return httpx.Response(200, json={"_id": "assignment-1", "template": TEMPLATE_DOC})
        return httpx.Response(200, json={"ok": True})

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]


@pytest.fixture
def collaborator_api() -> CollaboratorApi:
    return CollaboratorApi()


@pytest.fixture
def template_doc() -> dict:
    return TEMPLATE_DOC


# =============================================================================
# Sandbox manager fake (API tests)
# =============================================================================
class FakeSandboxManager:
    def __init__(self, *, running: bool = False, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.running = running
        self.http_transport = transport
        self.started = 0
        self.stopped = 0
        self.start_error: Optional[Exception] = None

    def status(self) -> SandboxServerStatus:
        return SandboxServerStatus(
            running=self.running,
            pid=4242 if self.running else None,
            port=8001,
            base_url="http://sandbox.local:8001",
            started_at=datetime.now(timezone.utc) if self.running else None,
            last_error=None,
        )

    async def start(self) -> SandboxServerStatus:
        self.started += 1
        if self.start_error is not None:
            raise self.start_error
        self.running = True
        return self.status()

    async def stop(self) -> SandboxServerStatus:
        self.stopped += 1
        self.running = False
        return self.status()


@pytest.fixture
def fake_manager():
    return FakeSandboxManager


# =============================================================================
# HTTP client
# =============================================================================
@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Token": settings.ADMIN_TOKEN}


@pytest.fixture
def bearer():
    def _bearer(role: str, subject: Any = None) -> dict[str, str]:
        token = create_access_token(subject or uuid.uuid4(), role=role)
        return {"Authorization": f"Bearer {token}"}

    return _bearer


@pytest.fixture
def make_client():
    """Build an ASGI client with the controller/manager dependencies overridden."""
    from app.api.v1.simulations import get_run_controller, get_sandbox_manager
    from app.main import app

    def _make(*, controller=None, manager=None) -> httpx.AsyncClient:
        if controller is not None:
            app.dependency_overrides[get_run_controller] = lambda: controller
        if manager is not None:
            app.dependency_overrides[get_sandbox_manager] = lambda: manager
        return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")

    yield _make
    app.dependency_overrides.clear()
