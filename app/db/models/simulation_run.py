from __future__ import annotations

from sqlalchemy import Boolean, CheckConstraint, DateTime, Index, Integer, JSON, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class SimulationRun(Base):
    __tablename__ = "simulation_runs"

    # NOTE: stored as TEXT for cross-db compatibility (SQLite in tests).
    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    scenario: Mapped[str] = mapped_column(String(50), nullable=False, default="mixed")

    started_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    ended_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    requested_duration_sec: Mapped[int] = mapped_column(Integer, nullable=False)
    teachers: Mapped[int] = mapped_column(Integer, nullable=False)
    sub_admins: Mapped[int] = mapped_column(Integer, nullable=False)
    think_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    ramp_up_users_per_sec: Mapped[int | None] = mapped_column(Integer, nullable=True)

    template_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    sandbox_template_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    sandbox: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sandbox_marker: Mapped[str | None] = mapped_column(String(100), nullable=True)
    cleanup_seeded_data: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    summary: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    last_metrics: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Monotonic count of every action recorded for the run; also the sequence
    # source for the bounded ring buffer in simulation_run_actions.
    actions_recorded: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(
            "status IN ('running','stopped','completed','failed')", name="chk_simulation_runs_status"
        ),
        CheckConstraint(
            "(status = 'running' AND ended_at IS NULL) OR status <> 'running'",
            name="chk_simulation_runs_ended_at",
        ),
        CheckConstraint("requested_duration_sec >= 10 AND requested_duration_sec <= 1800", name="chk_simulation_runs_duration"),
        CheckConstraint("teachers >= 0 AND teachers <= 100000", name="chk_simulation_runs_teachers"),
        CheckConstraint("sub_admins >= 0 AND sub_admins <= 10000", name="chk_simulation_runs_sub_admins"),
        CheckConstraint("actions_recorded >= 0", name="chk_simulation_runs_actions_recorded"),
        Index("ix_simulation_runs_started_at", "started_at"),
    )


class SimulationRunAction(Base):
    """One slot of a run's recent-actions ring buffer.

    `slot = seq % capacity`, so a run never owns more than `capacity` rows;
    ordering by `seq` gives arrival order.
    """

    __tablename__ = "simulation_run_actions"

    run_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    slot: Mapped[int] = mapped_column(Integer, primary_key=True)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    ok: Mapped[bool] = mapped_column(Boolean, nullable=False)
    ms: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("slot >= 0", name="chk_simulation_run_actions_slot"),
        CheckConstraint("ms >= 0", name="chk_simulation_run_actions_ms"),
        Index("ix_simulation_run_actions_run_seq", "run_id", "seq"),
    )
