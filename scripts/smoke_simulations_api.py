"""Minimal smoke-check of the simulations API.

Runs against a local backend (default http://127.0.0.1:8000, override with
NVCAR_SMOKE_BASE). In the main process the run routes are proxied, so the
sandbox server is started first and stopped at the end.

Exercises: health, sandbox/start, start, status, stop, history, sandbox/stop.
"""

from __future__ import annotations

import json
import os
import time
import urllib.error
import urllib.request


BASE = os.getenv("NVCAR_SMOKE_BASE", "http://127.0.0.1:8000").rstrip("/")
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "dev-admin-token-change-me")


def _req(method: str, path: str, *, body=None):
    url = BASE + path
    data = None
    h = {"Accept": "application/json", "X-Admin-Token": ADMIN_TOKEN}
    if body is not None:
        data = json.dumps(body).encode("utf-8")
        h["Content-Type"] = "application/json"

    request = urllib.request.Request(url, data=data, headers=h, method=method)
    try:
        with urllib.request.urlopen(request, timeout=60) as resp:
            raw = resp.read()
            text = raw.decode("utf-8") if raw else ""
            return resp.status, (json.loads(text) if text else None)
    except urllib.error.HTTPError as e:
        raw = e.read()
        text = raw.decode("utf-8") if raw else ""
        try:
            payload = json.loads(text) if text else None
        except ValueError:
            payload = text
        return e.code, payload


def main() -> int:
    def pr(label: str, result):
        print(f"\n== {label} ==")
        print(result)

    pr("health", _req("GET", "/health"))

    status, sandbox = _req("GET", "/api/v1/simulations/sandbox/status")
    pr("sandbox status", (status, sandbox))
    started_sandbox = False
    if status == 200 and sandbox.get("mode") == "normal" and not sandbox["sandboxServer"]["running"]:
        status, resp = _req("POST", "/api/v1/simulations/sandbox/start")
        pr("sandbox start", (status, resp))
        if status != 200:
            return 2
        started_sandbox = True

    status, start = _req(
        "POST",
        "/api/v1/simulations/start",
        body={"teachers": 2, "subAdmins": 1, "durationSec": 10, "thinkTimeMs": 100},
    )
    pr("start run", (status, start))
    if status != 200:
        return 3
    run_id = start["runId"]

    time.sleep(3)
    pr("status", _req("GET", "/api/v1/simulations/status"))
    pr("stop", _req("POST", "/api/v1/simulations/stop", body={"runId": run_id}))

    time.sleep(2)
    status, run = _req("GET", f"/api/v1/simulations/{run_id}")
    pr("run", (status, run))
    pr("history", _req("GET", "/api/v1/simulations/history"))

    if started_sandbox:
        pr("sandbox stop", _req("POST", "/api/v1/simulations/sandbox/stop"))

    print("\nOK")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
