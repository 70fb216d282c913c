from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic.config import ConfigDict

from app.core.simulations.models import ScenarioKind


def _number_or_none(value: Any) -> Any:
    """Non-numeric input means "not given": the controller applies defaults."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


class SimulationStartRequest(BaseModel):
    teachers: Optional[float] = None
    sub_admins: Optional[float] = Field(default=None, alias="subAdmins")
    duration_sec: Optional[float] = Field(default=None, alias="durationSec")
    scenario: ScenarioKind = ScenarioKind.MIXED
    think_time_ms: Optional[float] = Field(default=None, alias="thinkTimeMs")
    ramp_up_users_per_sec: Optional[float] = Field(default=None, alias="rampUpUsersPerSec")
    # Gradebook template document to create for this run only.
    template: Optional[Dict[str, Any]] = None
    cleanup_seeded_data: Optional[bool] = Field(default=None, alias="cleanupSeededData")

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("teachers", "sub_admins", "duration_sec", "think_time_ms", "ramp_up_users_per_sec", mode="before")
    @classmethod
    def _coerce_numbers(cls, value: Any) -> Any:
        return _number_or_none(value)

    @field_validator("scenario", mode="before")
    @classmethod
    def _default_scenario(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return ScenarioKind.MIXED
        return value


class SimulationStartResponse(BaseModel):
    ok: bool = True
    run_id: str = Field(alias="runId")

    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)


class SimulationStopRequest(BaseModel):
    run_id: Optional[str] = Field(default=None, alias="runId")

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class SimulationActionOut(BaseModel):
    name: str
    ok: bool
    ms: int
    status: Optional[int] = None
    error: Optional[str] = None
    at: datetime

    model_config = ConfigDict(from_attributes=True)


class SimulationRunOut(BaseModel):
    id: str
    status: str
    scenario: str
    started_at: datetime = Field(alias="startedAt")
    ended_at: Optional[datetime] = Field(default=None, alias="endedAt")
    requested_duration_sec: int = Field(alias="requestedDurationSec")
    teachers: int
    sub_admins: int = Field(alias="subAdmins")
    think_time_ms: Optional[int] = Field(default=None, alias="thinkTimeMs")
    ramp_up_users_per_sec: Optional[int] = Field(default=None, alias="rampUpUsersPerSec")
    template_name: Optional[str] = Field(default=None, alias="templateName")
    sandbox_template_id: Optional[str] = Field(default=None, alias="sandboxTemplateId")
    sandbox: bool
    sandbox_marker: Optional[str] = Field(default=None, alias="sandboxMarker")
    cleanup_seeded_data: bool = Field(default=False, alias="cleanupSeededData")
    summary: Optional[Dict[str, Any]] = None
    last_metrics: Optional[Dict[str, Any]] = Field(default=None, alias="lastMetrics")
    error: Optional[str] = None
    actions_recorded: int = Field(default=0, alias="actionsRecorded")
    recent_actions: List[SimulationActionOut] = Field(default_factory=list, alias="recentActions")

    model_config = ConfigDict(from_attributes=True, populate_by_name=True, serialize_by_alias=True)
