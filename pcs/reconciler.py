"""Batch reconciler: recompute every school's progression from scratch.

Each school is evaluated against a fresh calculator run in its own session,
on a worker thread, with at most ``workers`` schools in flight. Schools whose
stored stage, flags or percentage disagree are corrected through the same
state machine used for incremental updates. A second run with no intervening
changes reports nothing.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from pcs.config import get_settings
from pcs.counts import compute_counts
from pcs.errors import NotFound
from pcs.models import School
from pcs.notifier import Notifier
from pcs.progression import ProgressionResult, announce, evaluate, update_progression

log = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    school_ids: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    checked: int = 0
    dry_run: bool = False

    @property
    def fixed_count(self) -> int:
        return len(self.school_ids)

    def as_dict(self) -> dict:
        return {
            "fixed_count": self.fixed_count,
            "school_ids": self.school_ids,
            "failed": self.failed,
            "checked": self.checked,
            "dry_run": self.dry_run,
        }


def needs_repair(session: Session, school_id: int) -> bool:
    school = session.get(School, school_id)
    if school is None:
        raise NotFound(f"School {school_id} not found")
    return evaluate(school, compute_counts(session, school_id, school.current_round)).changed


async def reconcile_all(
    factory: sessionmaker[Session],
    *,
    workers: int | None = None,
    dry_run: bool = False,
    notifier: Notifier | None = None,
) -> ReconcileReport:
    """Re-apply progression to every school, at most *workers* at a time."""
    workers = max(1, workers or get_settings().reconcile_workers)
    with factory() as session:
        school_ids = list(session.execute(select(School.id).order_by(School.id)).scalars().all())

    log.info("Reconciling %d schools (workers=%d, dry_run=%s)", len(school_ids), workers, dry_run)
    semaphore = asyncio.Semaphore(workers)

    def _inspect(school_id: int) -> bool:
        with factory() as session:
            return needs_repair(session, school_id)

    def _repair(school_id: int) -> ProgressionResult:
        with factory() as session:
            return update_progression(session, school_id, reason="reconcile")

    # Session work runs in worker threads; emails go out from the event loop.
    async def _one(school_id: int) -> bool:
        async with semaphore:
            if dry_run:
                return await asyncio.to_thread(_inspect, school_id)
            result = await asyncio.to_thread(_repair, school_id)
        announce(result, notifier)
        return result.changed

    outcomes = await asyncio.gather(*(_one(sid) for sid in school_ids), return_exceptions=True)

    report = ReconcileReport(checked=len(school_ids), dry_run=dry_run)
    for school_id, outcome in zip(school_ids, outcomes):
        if isinstance(outcome, BaseException):
            log.warning("Reconcile failed for school %s: %s", school_id, outcome)
            report.failed.append(school_id)
        elif outcome:
            report.school_ids.append(school_id)

    log.info("Reconcile %s: %d of %d schools %s", "dry run" if dry_run else "complete",
             report.fixed_count, report.checked, "need repair" if dry_run else "corrected")
    return report
