from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Sequence, TypeVar

from sqlalchemy import delete, func, select


def _repo_root() -> Path:
    # scripts/cleanup_simulation_runs.py -> repo root
    return Path(__file__).resolve().parents[1]


# Ensure `import app...` works regardless of current working directory.
_ROOT = _repo_root()
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))


import app.db.session as db  # noqa: E402
from app.core.simulations import storage  # noqa: E402
from app.core.simulations.models import TERMINAL_RUN_STATUSES  # noqa: E402
from app.db.models.simulation_run import SimulationRun  # noqa: E402


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


T = TypeVar("T")


def _chunks(items: Sequence[T], n: int) -> Iterable[Sequence[T]]:
    if n <= 0:
        raise ValueError("chunk size must be > 0")
    for i in range(0, len(items), n):
        yield items[i : i + n]


async def _plan_deletions(*, cutoff: datetime) -> list[str]:
    # Running runs are never candidates, whatever their age.
    async with db.AsyncSessionLocal() as session:
        effective_time = func.coalesce(SimulationRun.ended_at, SimulationRun.started_at)
        rows = (
            await session.execute(
                select(SimulationRun.id)
                .where(SimulationRun.status.in_(sorted(TERMINAL_RUN_STATUSES)))
                .where(effective_time < cutoff)
                .order_by(effective_time.asc())
            )
        ).scalars().all()
    return [str(r) for r in rows]


async def _apply_deletions(*, run_ids: Sequence[str], chunk_size: int = 500) -> tuple[int, int]:
    deleted_runs = 0
    deleted_actions = 0
    for batch in _chunks(list(run_ids), chunk_size):
        deleted_actions += await storage.delete_run_actions(list(batch))
        async with db.AsyncSessionLocal() as session:
            res = await session.execute(delete(SimulationRun).where(SimulationRun.id.in_(batch)))
            # res.rowcount can be None depending on dialect
            deleted_runs += int(res.rowcount or 0)
            await session.commit()
    return deleted_runs, deleted_actions


async def main() -> int:
    parser = argparse.ArgumentParser(description="Delete old finished simulation runs and their recent actions")
    parser.add_argument(
        "--retention-days",
        type=int,
        default=30,
        help="Retention in days (older finished runs will be deleted). Default: 30",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print what would be deleted",
    )
    args = parser.parse_args()

    retention_days = int(args.retention_days)
    if retention_days < 0:
        raise SystemExit("--retention-days must be >= 0")

    cutoff = _utc_now() - timedelta(days=retention_days)
    try:
        planned = await _plan_deletions(cutoff=cutoff)
    except Exception as e:
        print(f"[WARN] DB cleanup skipped (DB unavailable): {e}")
        return 1

    print(f"Retention days: {retention_days}")
    print(f"Cutoff (UTC): {cutoff.isoformat()}")
    print(f"Runs to delete: {len(planned)}")
    if planned:
        print(f"Oldest candidate run_id: {planned[0]}")

    if args.dry_run:
        print("Dry run: no changes applied")
        return 0

    try:
        if planned:
            runs, actions = await _apply_deletions(run_ids=planned)
            print(f"Deleted runs: {runs} (recent actions: {actions})")
    finally:
        await db.engine.dispose()
    return 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
