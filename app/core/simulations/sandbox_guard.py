"""Sandbox guard: the single check that permits synthetic load.

Load runs create and delete real users and write real rows, so they are only
allowed when the process was started as a sandbox (``SIMULATION_SANDBOX``)
*and* the connected database is recognisably a sandbox or test database.
Only process/connection signals are inspected, never request payloads.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import PurePath
from typing import Any, Optional

from sqlalchemy.engine.url import make_url

import app.db.session as db
from app.config import settings
from app.utils.exceptions import SimulationNotAllowedException

logger = logging.getLogger(__name__)

_TRUTHY = frozenset({"true", "1", "yes"})
_TEST_TOKEN = "test"


@dataclass(frozen=True)
class SandboxDiagnostics:
    ok: bool
    flag: bool
    flag_raw: str
    marker: str
    marker_match: bool
    test_match: bool
    db_name: str
    uri: str
    env_source: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "flag": self.flag,
            "flagRaw": self.flag_raw,
            "marker": self.marker,
            "markerMatch": self.marker_match,
            "testMatch": self.test_match,
            "dbName": self.db_name,
            "uri": self.uri,
            "envSource": self.env_source,
        }


def _connection_identity(database_url: Optional[str]) -> tuple[str, str]:
    """Return (masked uri, database name) of the active connection."""
    raw = database_url if database_url is not None else db.engine.url
    try:
        url = make_url(raw)
    except Exception:
        return str(raw or ""), ""

    uri = url.render_as_string(hide_password=True)
    database = url.database or ""
    if url.get_backend_name() == "sqlite":
        # File stem of the SQLite file; "" for in-memory databases.
        database = "" if database in ("", ":memory:") else PurePath(database).stem
    return uri, database


def diagnostics(database_url: Optional[str] = None) -> SandboxDiagnostics:
    flag_raw = str(settings.SIMULATION_SANDBOX or "")
    flag = flag_raw.strip().lower() in _TRUTHY
    marker = (settings.SIMULATION_SANDBOX_MARKER or "").strip() or "sandbox"

    uri, db_name = _connection_identity(database_url)
    haystacks = (uri.lower(), db_name.lower())
    marker_match = any(marker.lower() in h for h in haystacks)
    test_match = any(_TEST_TOKEN in h for h in haystacks)

    return SandboxDiagnostics(
        ok=flag and (marker_match or test_match),
        flag=flag,
        flag_raw=flag_raw,
        marker=marker,
        marker_match=marker_match,
        test_match=test_match,
        db_name=db_name,
        uri=uri,
        env_source="env" if os.getenv("DATABASE_URL") else "settings",
    )


def is_sandbox(database_url: Optional[str] = None) -> bool:
    return diagnostics(database_url).ok


def assert_sandbox(database_url: Optional[str] = None) -> SandboxDiagnostics:
    diag = diagnostics(database_url)
    if diag.ok:
        return diag

    logger.warning(
        "simulation.guard.denied flag=%s marker=%s db_name=%s",
        diag.flag_raw,
        diag.marker,
        diag.db_name,
    )
    raise SimulationNotAllowedException(
        "simulation_not_allowed: set SIMULATION_SANDBOX=true and connect to a sandbox DB "
        f"(marker: {diag.marker}). currentDb={diag.db_name} currentUri={diag.uri}",
        details={"dbName": diag.db_name, "uri": diag.uri},
    )
