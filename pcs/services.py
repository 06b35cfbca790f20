"""Progression operations shared by the API and the CLI."""
from __future__ import annotations

import logging

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, sessionmaker

from pcs import certificates, overrides, reconciler, rounds
from pcs.counts import compute_counts
from pcs.db import store_errors
from pcs.errors import InvalidState, NotFound, TransientStoreError
from pcs.models import Certificate, Evidence, EvidenceRequirement, EvidenceStatus, School, Stage, User
from pcs.notifier import Notifier, evidence_approved_email, evidence_rejected_email, get_notifier
from pcs.progression import check_and_update_progression
from pcs.utils import utc_now

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def school_summary(school: School) -> dict:
    return {
        "id": school.id,
        "name": school.name,
        "country": school.country,
        "current_stage": school.current_stage.value,
        "current_round": school.current_round,
        "inspire_completed": school.inspire_completed,
        "investigate_completed": school.investigate_completed,
        "act_completed": school.act_completed,
        "award_completed": school.award_completed,
        "audit_quiz_completed": school.audit_quiz_completed,
        "progress_percentage": school.progress_percentage,
        "rounds_completed": school.rounds_completed,
    }


def evidence_summary(ev: Evidence) -> dict:
    return {
        "id": ev.id,
        "school_id": ev.school_id,
        "evidence_requirement_id": ev.evidence_requirement_id,
        "stage": ev.stage.value,
        "round_number": ev.round_number,
        "title": ev.title,
        "status": ev.status.value,
        "submitted_by": ev.submitted_by,
        "reviewed_by": ev.reviewed_by,
        "review_notes": ev.review_notes,
        "submitted_at": ev.submitted_at.isoformat() if ev.submitted_at else None,
        "reviewed_at": ev.reviewed_at.isoformat() if ev.reviewed_at else None,
    }


def get_or_raise(session: Session, model, entity_id: int, label: str = "Entity"):
    obj = session.get(model, entity_id)
    if obj is None:
        raise NotFound(f"{label} {entity_id} not found")
    return obj


def _requirement_for_stage(session: Session, requirement_id: int, stage: Stage) -> EvidenceRequirement:
    requirement = get_or_raise(session, EvidenceRequirement, requirement_id, "Evidence requirement")
    if requirement.stage != stage:
        raise InvalidState(
            f"Evidence requirement {requirement_id} belongs to {requirement.stage.value}, not {stage.value}"
        )
    return requirement


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


def get_school(session: Session, school_id: int) -> School:
    with store_errors(session, f"loading school {school_id}"):
        return get_or_raise(session, School, school_id, "School")


def get_progression_counts(session: Session, school_id: int, round_number: int | None = None) -> dict:
    with store_errors(session, f"counting requirements for school {school_id}"):
        counts = compute_counts(session, school_id, round_number)
    return counts.as_dict()


def submit_evidence(
    session: Session,
    school_id: int,
    stage: Stage,
    title: str,
    *,
    submitted_by: int | None = None,
    requirement_id: int | None = None,
) -> Evidence:
    """Record a pending submission for the school's current round. Commits."""
    school = get_or_raise(session, School, school_id, "School")
    if requirement_id is not None:
        _requirement_for_stage(session, requirement_id, stage)
    ev = Evidence(
        school_id=school_id, stage=stage, title=title, round_number=school.current_round,
        evidence_requirement_id=requirement_id, submitted_by=submitted_by,
        status=EvidenceStatus.PENDING, submitted_at=utc_now(),
    )
    session.add(ev)
    session.commit()
    return ev


async def review_evidence(
    session: Session,
    evidence_id: int,
    status: EvidenceStatus | str,
    reviewer_id: int | None,
    notes: str | None = None,
    *,
    notifier: Notifier | None = None,
) -> Evidence:
    """Approve or reject a pending submission, then re-run progression on approval.

    Repeating a review with the outcome already recorded is a no-op that still
    re-runs progression, so a caller may retry after ``TransientStoreError``.
    A different outcome for an already reviewed row raises ``InvalidState``.
    """
    status = EvidenceStatus(status)
    if status is EvidenceStatus.PENDING:
        raise ValueError("Review status must be 'approved' or 'rejected'")
    get_or_raise(session, Evidence, evidence_id, "Evidence")

    # Conditional update: exactly one reviewer moves a row out of pending.
    try:
        res = session.execute(
            update(Evidence)
            .where(Evidence.id == evidence_id, Evidence.status == EvidenceStatus.PENDING)
            .values(status=status, reviewed_by=reviewer_id, review_notes=notes, reviewed_at=utc_now())
        )
        reviewed_now = res.rowcount > 0
        if reviewed_now:
            session.commit()
        else:
            session.rollback()
        ev = session.get(Evidence, evidence_id, populate_existing=True)
    except DBAPIError as exc:
        session.rollback()
        raise TransientStoreError(f"Record store error while reviewing evidence {evidence_id}: {exc}") from exc

    if not reviewed_now and ev.status is not status:
        raise InvalidState(f"Evidence {evidence_id} has already been {ev.status.value}")

    notifier = notifier or get_notifier()
    if reviewed_now:
        log.info("Evidence %s for school %s %s by %s", evidence_id, ev.school_id, status.value, reviewer_id)
        _notify_submitter(session, ev, notifier)
    else:
        log.info("Evidence %s for school %s was already %s", evidence_id, ev.school_id, status.value)

    if status is EvidenceStatus.APPROVED:
        await check_and_update_progression(
            session, ev.school_id, reason="evidence_approved", evidence_id=evidence_id, notifier=notifier,
        )
    return ev


def _notify_submitter(session: Session, ev: Evidence, notifier: Notifier) -> None:
    if ev.submitted_by is None:
        return
    user = session.get(User, ev.submitted_by)
    school = session.get(School, ev.school_id)
    if user is None or not user.email or school is None:
        return
    if ev.status is EvidenceStatus.APPROVED:
        notifier.send(evidence_approved_email(user.email, school.name, ev.title))
    else:
        notifier.send(evidence_rejected_email(user.email, school.name, ev.title, ev.review_notes))


async def toggle_override(
    session: Session,
    school_id: int,
    requirement_id: int,
    stage: Stage | str,
    round_number: int | None,
    admin_id: int | None,
    *,
    notifier: Notifier | None = None,
) -> dict:
    """Flip an admin override, then re-run progression for the school.

    The toggle is committed first and is not repeatable, so a store failure
    during the progression step is logged and reported as
    ``progression_updated=False`` instead of failing the call; the next
    progression run or reconcile brings the flags up to date.
    """
    stage = Stage(stage)
    school = get_or_raise(session, School, school_id, "School")
    _requirement_for_stage(session, requirement_id, stage)
    if round_number is None:
        round_number = school.current_round

    result = overrides.toggle(session, school_id, requirement_id, stage, round_number, admin_id)
    payload = {"created": result.created, "override": overrides.override_summary(result.override)}
    try:
        await check_and_update_progression(
            session, school_id, reason="override_toggled", notifier=notifier or get_notifier(),
        )
    except TransientStoreError as exc:
        log.warning("Override toggled for school %s but progression was not updated: %s", school_id, exc)
        payload["progression_updated"] = False
    else:
        payload["progression_updated"] = True
    return payload


def list_overrides(session: Session, school_id: int, round_number: int | None = None) -> list[dict]:
    with store_errors(session, f"listing overrides for school {school_id}"):
        school = get_or_raise(session, School, school_id, "School")
        rows = overrides.list_overrides(session, school_id, round_number or school.current_round)
    return [overrides.override_summary(o) for o in rows]


def list_certificates(session: Session, school_id: int, round_number: int | None = None) -> list[dict]:
    with store_errors(session, f"listing certificates for school {school_id}"):
        get_or_raise(session, School, school_id, "School")
        rows = certificates.list_certificates(session, school_id, round_number)
    return [certificates.certificate_summary(c) for c in rows]


def get_certificate(session: Session, certificate_id: int) -> dict:
    with store_errors(session, f"loading certificate {certificate_id}"):
        cert = session.get(Certificate, certificate_id)
    if cert is None or cert.is_deleted:
        raise NotFound(f"Certificate {certificate_id} not found")
    return certificates.certificate_summary(cert)


def list_evidence(session: Session, school_id: int, round_number: int | None = None) -> list[dict]:
    query = select(Evidence).where(Evidence.school_id == school_id)
    if round_number is not None:
        query = query.where(Evidence.round_number == round_number)
    with store_errors(session, f"listing evidence for school {school_id}"):
        get_or_raise(session, School, school_id, "School")
        rows = session.execute(query.order_by(Evidence.id)).scalars().all()
    return [evidence_summary(e) for e in rows]


def start_new_round(session: Session, school_id: int) -> School:
    return rounds.start_new_round(session, school_id)


async def recalculate(
    session: Session, school_id: int, *, reason: str = "manual_admin", notifier: Notifier | None = None,
) -> School:
    """Re-run progression for one school, e.g. after an audit is approved (``reason="audit_completed"``)."""
    result = await check_and_update_progression(
        session, school_id, reason=reason, notifier=notifier or get_notifier(),
    )
    return result.school


async def reconcile_all(
    factory: sessionmaker[Session],
    *,
    dry_run: bool = False,
    workers: int | None = None,
    notifier: Notifier | None = None,
) -> dict:
    report = await reconciler.reconcile_all(
        factory, workers=workers, dry_run=dry_run, notifier=notifier or get_notifier(),
    )
    return report.as_dict()
