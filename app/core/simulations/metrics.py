from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal, Optional, Sequence

import httpx
import psutil

from app.core.simulations.models import RECENT_ACTIONS_MAX, ActionMetric

StabilityVerdict = Literal["pass", "warning", "fail"]

WARNING_ERROR_RATE = 0.05
FAIL_ERROR_RATE = 0.15


@dataclass(frozen=True)
class TimedResult:
    ok: bool
    ms: int
    status: int
    data: Any = None
    error: Optional[str] = None


def _elapsed_ms(start: float) -> int:
    return max(0, int(round((time.perf_counter() - start) * 1000.0)))


def _json_or_none(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return None


async def timed(call: Callable[[], Awaitable[httpx.Response]]) -> TimedResult:
    """Run one API call and report its outcome; never raises for call failures."""
    start = time.perf_counter()
    try:
        resp = await call()
    except Exception as exc:
        return TimedResult(ok=False, ms=_elapsed_ms(start), status=0, error=str(exc) or exc.__class__.__name__)

    ms = _elapsed_ms(start)
    return TimedResult(
        ok=200 <= resp.status_code < 300,
        ms=ms,
        status=resp.status_code,
        data=_json_or_none(resp),
    )


def percentile(sorted_ms: Sequence[int], q: float) -> Optional[int]:
    if not sorted_ms:
        return None
    n = len(sorted_ms)
    return sorted_ms[min(n - 1, int(math.floor(q * (n - 1))))]


def stability_verdict(error_rate: float) -> StabilityVerdict:
    if error_rate < WARNING_ERROR_RATE:
        return "pass"
    if error_rate < FAIL_ERROR_RATE:
        return "warning"
    return "fail"


def compute_summary(
    actions: Sequence[ActionMetric],
    duration_sec: int,
    *,
    recorded_actions: Optional[int] = None,
) -> dict[str, Any]:
    """Aggregate recorded actions into the run summary.

    Percentiles are computed over `actions` only, i.e. the bounded
    recent-actions window; `recordedActions` is the exact count for the run.
    """
    total = len(actions)
    errors = sum(1 for a in actions if not a.ok)
    error_rate = errors / total if total else 0.0
    ms_list = sorted(a.ms for a in actions if a.ms is not None and a.ms >= 0)

    by_action: dict[str, dict[str, int]] = {}
    for a in actions:
        cur = by_action.setdefault(a.name, {"total": 0, "errors": 0})
        cur["total"] += 1
        if not a.ok:
            cur["errors"] += 1

    verdict = stability_verdict(error_rate)
    return {
        "durationSec": duration_sec,
        "totalActions": total,
        "okActions": total - errors,
        "errorActions": errors,
        "errorRate": error_rate,
        "p50Ms": percentile(ms_list, 0.50),
        "p95Ms": percentile(ms_list, 0.95),
        "p99Ms": percentile(ms_list, 0.99),
        "byAction": by_action,
        "verdict": verdict,
        "stability": {
            "pass": verdict == "pass",
            "warning": verdict == "warning",
            "fail": verdict == "fail",
        },
        "recordedActions": total if recorded_actions is None else recorded_actions,
        "window": {"size": total, "capacity": RECENT_ACTIONS_MAX},
    }


class ProcessSampler:
    """CPU/memory usage of this process, relative to when the sampler was created."""

    def __init__(self, process: Optional[psutil.Process] = None) -> None:
        self._proc = process or psutil.Process()
        cpu = self._proc.cpu_times()
        mem = self._proc.memory_info()
        self._cpu_user0 = cpu.user
        self._cpu_system0 = cpu.system
        self._rss0 = mem.rss
        self._vms0 = mem.vms

    def snapshot(self) -> dict[str, Any]:
        cpu = self._proc.cpu_times()
        mem = self._proc.memory_info()
        return {
            "memoryRss": mem.rss,
            "memoryVms": mem.vms,
            "numThreads": self._proc.num_threads(),
            "cpuUserMicros": int((cpu.user - self._cpu_user0) * 1_000_000),
            "cpuSystemMicros": int((cpu.system - self._cpu_system0) * 1_000_000),
        }

    def resource_delta(self) -> dict[str, int]:
        cpu = self._proc.cpu_times()
        mem = self._proc.memory_info()
        return {
            "cpuUserMicros": int((cpu.user - self._cpu_user0) * 1_000_000),
            "cpuSystemMicros": int((cpu.system - self._cpu_system0) * 1_000_000),
            "memoryRssDelta": mem.rss - self._rss0,
            "memoryVmsDelta": mem.vms - self._vms0,
        }
