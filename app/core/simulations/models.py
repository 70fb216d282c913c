from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

# Capacity of the recent-actions ring buffer, in memory and in storage.
RECENT_ACTIONS_MAX = 200

RUN_STATUS_RUNNING = "running"
RUN_STATUS_STOPPED = "stopped"
RUN_STATUS_COMPLETED = "completed"
RUN_STATUS_FAILED = "failed"
TERMINAL_RUN_STATUSES = frozenset({RUN_STATUS_STOPPED, RUN_STATUS_COMPLETED, RUN_STATUS_FAILED})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ActorRole(str, Enum):
    TEACHER = "TEACHER"
    SUBADMIN = "SUBADMIN"


class ScenarioKind(str, Enum):
    MIXED = "mixed"


@dataclass(frozen=True)
class SimActor:
    user_id: str
    role: ActorRole
    token: str
    email: str


@dataclass
class RunConfig:
    run_id: str
    teachers: int
    sub_admins: int
    duration_sec: int
    scenario: ScenarioKind = ScenarioKind.MIXED
    base_url: str = ""
    think_time_ms: Optional[int] = None
    ramp_up_users_per_sec: Optional[int] = None
    sandbox_template_id: Optional[str] = None
    cleanup_seeded_data: bool = False


@dataclass
class SeededData:
    """Working set handed to actor loops, plus every row the seeder created."""

    school_year_id: Optional[str] = None
    assignment_ids: list[str] = field(default_factory=list)
    class_ids: list[str] = field(default_factory=list)
    student_ids: list[str] = field(default_factory=list)
    enrollment_ids: list[str] = field(default_factory=list)
    teacher_class_assignment_ids: list[str] = field(default_factory=list)
    sub_admin_assignment_ids: list[str] = field(default_factory=list)
    role_scope_ids: list[str] = field(default_factory=list)
    created_school_year: bool = False

    @property
    def assignment_id(self) -> Optional[str]:
        return self.assignment_ids[0] if self.assignment_ids else None

    def counts(self) -> dict[str, Any]:
        return {
            "seededAssignmentId": self.assignment_id,
            "seededAssignments": len(self.assignment_ids),
            "seededClasses": len(self.class_ids),
            "seededStudents": len(self.student_ids),
        }


@dataclass(frozen=True)
class ActionMetric:
    name: str
    ok: bool
    ms: int
    status: Optional[int] = None
    error: Optional[str] = None
    at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "ok": self.ok,
            "ms": self.ms,
            "status": self.status,
            "error": self.error,
            "at": self.at.isoformat(),
        }


@dataclass
class LiveState:
    """In-memory detail of one running run; dropped when the run terminates."""

    run_id: str
    started_at: datetime = field(default_factory=utc_now)
    started_monotonic: float = field(default_factory=time.monotonic)
    stop_requested: bool = False
    active_teacher_users: int = 0
    active_sub_admin_users: int = 0
    in_flight: int = 0
    last_metrics: dict[str, Any] = field(default_factory=dict)
    seeded: dict[str, Any] = field(default_factory=dict)
    recent_actions: deque = field(default_factory=lambda: deque(maxlen=RECENT_ACTIONS_MAX))
    actions_recorded: int = 0

    def elapsed_seconds(self) -> float:
        return time.monotonic() - self.started_monotonic

    def should_continue(self, duration_sec: float) -> bool:
        return not self.stop_requested and self.elapsed_seconds() < duration_sec

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "startedAt": int(self.started_at.timestamp() * 1000),
            "stopRequested": self.stop_requested,
            "activeTeacherUsers": self.active_teacher_users,
            "activeSubAdminUsers": self.active_sub_admin_users,
            "inFlight": self.in_flight,
            "lastMetrics": self.last_metrics,
            "recentActions": [a.to_dict() for a in self.recent_actions],
            "actionsRecorded": self.actions_recorded,
        }
