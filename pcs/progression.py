"""Progression state machine.

A school moves ``inspire -> investigate -> act -> awarded`` within a round.
Each step is gated by a threshold on the calculator's counts and by the
previous step's flag; flags are only ever set here, never cleared (clearing
belongs to :func:`pcs.rounds.start_new_round`).

Writes are an optimistic compare-and-swap on ``School.version``. When two
runs race for the same school, the loser's flush raises ``StaleDataError``;
it rolls back and re-evaluates against the winner's flags, which makes the
second pass a no-op. Side effects (certificate, celebration email) are tied
to the award transition, so only the winning run fires them.
"""
from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass

from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from pcs.certificates import issue_if_absent
from pcs.config import get_settings
from pcs.counts import ProgressionCounts, compute_counts
from pcs.errors import NotFound, TransientStoreError
from pcs.models import STAGE_ORDER, Certificate, School, Stage
from pcs.notifier import EmailMessage, Notifier, celebration_email, get_notifier
from pcs.utils import utc_now

log = logging.getLogger(__name__)

THRESHOLDS: dict[Stage, int] = {
    Stage.INSPIRE: 3,
    Stage.INVESTIGATE: 2,
    Stage.ACT: 3,
}

_FLAG = {
    Stage.INSPIRE: "inspire",
    Stage.INVESTIGATE: "investigate",
    Stage.ACT: "act",
}


@dataclass(frozen=True)
class Flags:
    inspire: bool = False
    investigate: bool = False
    act: bool = False
    award: bool = False
    audit_quiz: bool = False

    @classmethod
    def from_school(cls, school: School) -> Flags:
        return cls(
            inspire=bool(school.inspire_completed),
            investigate=bool(school.investigate_completed),
            act=bool(school.act_completed),
            award=bool(school.award_completed),
            audit_quiz=bool(school.audit_quiz_completed),
        )

    def completed(self, stage: Stage) -> bool:
        return getattr(self, _FLAG[stage])

    @property
    def progress_percentage(self) -> int:
        return progress_percentage(self.inspire, self.investigate, self.act)

    @property
    def current_stage(self) -> Stage:
        for stage in STAGE_ORDER:
            if not self.completed(stage):
                return stage
        return Stage.ACT


def progress_percentage(inspire: bool, investigate: bool, act: bool) -> int:
    if act:
        return 100
    if investigate:
        return 67
    if inspire:
        return 33
    return 0


def threshold_met(stage: Stage, counts: ProgressionCounts) -> bool:
    return counts[stage].total >= THRESHOLDS[stage]


# ---------------------------------------------------------------------------
# Transitions: each returns the new flags, or None when it does not apply
# ---------------------------------------------------------------------------


def complete_stage(stage: Stage, flags: Flags, counts: ProgressionCounts) -> Flags | None:
    if flags.completed(stage):
        return None
    idx = STAGE_ORDER.index(stage)
    if idx > 0 and not flags.completed(STAGE_ORDER[idx - 1]):
        return None
    if not threshold_met(stage, counts):
        return None
    changes = {_FLAG[stage]: True}
    if stage is Stage.INVESTIGATE and counts.investigate.has_quiz:
        changes["audit_quiz"] = True
    return dataclasses.replace(flags, **changes)


def grant_award(flags: Flags) -> Flags | None:
    if flags.award or not flags.act:
        return None
    return dataclasses.replace(flags, award=True)


@dataclass(frozen=True)
class ProgressionPlan:
    before: Flags
    after: Flags
    completed: tuple[Stage, ...]
    awarded: bool
    stage_before: Stage
    progress_before: int

    @property
    def changed(self) -> bool:
        return (
            self.after != self.before
            or self.stage_before != self.after.current_stage
            or self.progress_before != self.after.progress_percentage
        )


def evaluate(school: School, counts: ProgressionCounts) -> ProgressionPlan:
    """Decide which transitions fire for *school* given *counts*. Pure."""
    before = Flags.from_school(school)
    flags = before
    completed: list[Stage] = []
    for stage in STAGE_ORDER:
        nxt = complete_stage(stage, flags, counts)
        if nxt is not None:
            flags = nxt
            completed.append(stage)
    awarded = grant_award(flags)
    if awarded is not None:
        flags = awarded
    return ProgressionPlan(
        before=before,
        after=flags,
        completed=tuple(completed),
        awarded=awarded is not None,
        stage_before=school.current_stage,
        progress_before=school.progress_percentage or 0,
    )


def apply_plan(school: School, plan: ProgressionPlan) -> None:
    """Write *plan* onto *school*; derived fields are recomputed, never copied."""
    flags = plan.after
    school.inspire_completed = flags.inspire
    school.investigate_completed = flags.investigate
    school.act_completed = flags.act
    school.award_completed = flags.award
    school.audit_quiz_completed = flags.audit_quiz
    school.current_stage = flags.current_stage
    school.progress_percentage = flags.progress_percentage
    if plan.awarded:
        school.rounds_completed = (school.rounds_completed or 0) + 1
    school.updated_at = utc_now()


def achievement_snapshot(counts: ProgressionCounts) -> dict[str, int]:
    return {stage.value: counts[stage].total for stage in STAGE_ORDER}


@dataclass
class ProgressionResult:
    school: School
    plan: ProgressionPlan | None
    certificate: Certificate | None = None
    certificate_created: bool = False
    celebration: EmailMessage | None = None

    @property
    def changed(self) -> bool:
        return self.plan is not None and self.plan.changed


def _attempt(session: Session, school_id: int) -> ProgressionResult:
    school = session.get(School, school_id, populate_existing=True)
    if school is None:
        raise NotFound(f"School {school_id} not found")
    counts = compute_counts(session, school_id, school.current_round)
    plan = evaluate(school, counts)
    if not plan.changed:
        return ProgressionResult(school=school, plan=plan)

    round_number = school.current_round
    apply_plan(school, plan)
    session.flush()

    result = ProgressionResult(school=school, plan=plan)
    if plan.awarded:
        result.certificate, result.certificate_created = issue_if_absent(
            session, school_id, round_number, achievement_snapshot(counts),
        )
    return result


def update_progression(
    session: Session,
    school_id: int,
    *,
    reason: str | None = None,
    evidence_id: int | None = None,
) -> ProgressionResult:
    """Synchronous half of :func:`check_and_update_progression`. Commits on change.

    Does no notification itself; a winning award run carries its celebration
    email on ``result.celebration`` for the caller to send. Safe to run in a
    worker thread as long as *session* belongs to that thread.
    """
    if reason:
        log.debug("Progression check for school %s triggered by %s%s", school_id, reason,
                  f" (evidence {evidence_id})" if evidence_id else "")

    attempts = max(1, get_settings().write_attempts)
    for attempt in range(1, attempts + 1):
        try:
            result = _attempt(session, school_id)
            if result.changed:
                session.commit()
            break
        except StaleDataError:
            session.rollback()
            log.warning("School %s changed concurrently (attempt %d/%d); re-evaluating",
                        school_id, attempt, attempts)
        except DBAPIError as exc:
            session.rollback()
            raise TransientStoreError(f"Record store error while updating school {school_id}: {exc}") from exc
    else:
        raise TransientStoreError(f"School {school_id} kept changing; gave up after {attempts} attempts")

    plan = result.plan
    if result.changed and plan is not None:
        school = result.school
        if plan.completed:
            log.info("School %s completed %s in round %s (%d%%)", school_id,
                     ", ".join(s.value for s in plan.completed), school.current_round,
                     school.progress_percentage)
        if plan.awarded:
            log.info("School %s completed round %s (rounds completed: %s)",
                     school_id, school.current_round, school.rounds_completed)
            result.celebration = _round_complete_email(school, result.certificate)
    return result


def announce(result: ProgressionResult, notifier: Notifier | None = None) -> None:
    """Send whatever email a committed progression run produced."""
    if result.celebration is not None:
        (notifier or get_notifier()).send(result.celebration)


async def check_and_update_progression(
    session: Session,
    school_id: int,
    *,
    reason: str | None = None,
    evidence_id: int | None = None,
    notifier: Notifier | None = None,
) -> ProgressionResult:
    """Re-evaluate and persist a school's progression. Commits on change.

    Safe to call repeatedly and concurrently; only the run that commits the
    award transition issues the certificate and sends the celebration email.
    """
    result = update_progression(session, school_id, reason=reason, evidence_id=evidence_id)
    announce(result, notifier)
    return result


def _round_complete_email(school: School, certificate: Certificate | None) -> EmailMessage | None:
    contact = school.primary_contact
    if contact is None or not contact.email:
        log.info("School %s has no primary contact email; skipping celebration email", school.id)
        return None
    url = get_settings().certificate_url(certificate.id) if certificate is not None else None
    return celebration_email(contact.email, school.name, school.current_round, url)
