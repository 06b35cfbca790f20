"""Requirement satisfaction calculator.

For one school and one round, counts how many requirements of each stage are
satisfied. Three sources feed a stage's ``total``:

- approved evidence rows for the round (one per row),
- admin overrides for the round whose requirement is not already covered by
  an approved evidence row (an override never double-counts a requirement),
- for Investigate only, one item each for an approved audit and for an
  existing action plan (both round-independent).
"""
from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from pcs.errors import NotFound
from pcs.models import (
    STAGE_ORDER,
    AdminEvidenceOverride,
    AuditResponse,
    Evidence,
    EvidenceStatus,
    ReductionPromise,
    School,
    Stage,
)

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageCounts:
    stage: Stage
    submitted: int = 0
    approved: int = 0
    overridden: int = 0
    has_quiz: bool = False
    has_action_plan: bool = False

    @property
    def total(self) -> int:
        items = self.approved + self.overridden
        if self.stage is Stage.INVESTIGATE:
            items += int(self.has_quiz) + int(self.has_action_plan)
        return items

    def as_dict(self) -> dict:
        out = {
            "total": self.total, "approved": self.approved,
            "overridden": self.overridden, "submitted": self.submitted,
        }
        if self.stage is Stage.INVESTIGATE:
            out["has_quiz"] = self.has_quiz
            out["has_action_plan"] = self.has_action_plan
        return out


@dataclass(frozen=True)
class ProgressionCounts:
    school_id: int
    round_number: int
    inspire: StageCounts
    investigate: StageCounts
    act: StageCounts

    def __getitem__(self, stage: Stage) -> StageCounts:
        return getattr(self, stage.value)

    def as_dict(self) -> dict:
        return {
            "school_id": self.school_id,
            "round_number": self.round_number,
            **{stage.value: self[stage].as_dict() for stage in STAGE_ORDER},
        }


def count_uncovered_overrides(
    approved: Iterable[Evidence], overrides: Iterable[AdminEvidenceOverride],
) -> int:
    """Number of distinct overridden requirements not already met by approved evidence."""
    covered = {e.evidence_requirement_id for e in approved if e.evidence_requirement_id is not None}
    overridden = {o.evidence_requirement_id for o in overrides}
    return len(overridden - covered)


def has_approved_audit(session: Session, school_id: int) -> bool:
    row = session.execute(
        select(AuditResponse.id).where(
            AuditResponse.school_id == school_id,
            AuditResponse.status == "approved",
        ).limit(1)
    ).first()
    return row is not None


def has_action_plan(session: Session, school_id: int) -> bool:
    row = session.execute(
        select(ReductionPromise.id).where(ReductionPromise.school_id == school_id).limit(1)
    ).first()
    return row is not None


def compute_counts(session: Session, school_id: int, round_number: int | None = None) -> ProgressionCounts:
    """Count satisfied requirements per stage for *school_id* in *round_number*.

    The round defaults to the school's current round. Raises ``NotFound`` for
    an unknown school.
    """
    school = session.get(School, school_id)
    if school is None:
        raise NotFound(f"School {school_id} not found")
    if round_number is None:
        round_number = school.current_round or 1

    evidence = session.execute(
        select(Evidence)
        .where(Evidence.school_id == school_id, Evidence.round_number == round_number)
        .execution_options(populate_existing=True)
    ).scalars().all()
    overrides = session.execute(
        select(AdminEvidenceOverride).where(
            AdminEvidenceOverride.school_id == school_id,
            AdminEvidenceOverride.round_number == round_number,
        ).execution_options(populate_existing=True)
    ).scalars().all()
    quiz = has_approved_audit(session, school_id)
    plan = has_action_plan(session, school_id)

    per_stage: dict[Stage, StageCounts] = {}
    for stage in STAGE_ORDER:
        stage_rows = [e for e in evidence if e.stage == stage]
        approved = [e for e in stage_rows if e.status == EvidenceStatus.APPROVED]
        stage_overrides = [o for o in overrides if o.stage == stage]
        investigate = stage is Stage.INVESTIGATE
        per_stage[stage] = StageCounts(
            stage=stage,
            submitted=len(stage_rows),
            approved=len(approved),
            overridden=count_uncovered_overrides(approved, stage_overrides),
            has_quiz=quiz if investigate else False,
            has_action_plan=plan if investigate else False,
        )

    counts = ProgressionCounts(
        school_id=school_id, round_number=round_number,
        inspire=per_stage[Stage.INSPIRE],
        investigate=per_stage[Stage.INVESTIGATE],
        act=per_stage[Stage.ACT],
    )
    log.debug("Counts for school %s round %s: %s", school_id, round_number, counts.as_dict())
    return counts
