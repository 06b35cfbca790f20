"""Admin override ledger.

An override row marks one requirement as satisfied for one school and round,
independent of evidence. Rows are only ever inserted or deleted (toggle).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pcs.errors import ConstraintViolation
from pcs.models import AdminEvidenceOverride, Stage

log = logging.getLogger(__name__)


@dataclass
class ToggleResult:
    created: bool
    override: AdminEvidenceOverride


def find_override(
    session: Session, school_id: int, requirement_id: int, round_number: int,
) -> AdminEvidenceOverride | None:
    return session.execute(
        select(AdminEvidenceOverride).where(
            AdminEvidenceOverride.school_id == school_id,
            AdminEvidenceOverride.evidence_requirement_id == requirement_id,
            AdminEvidenceOverride.round_number == round_number,
        )
    ).scalars().first()


def toggle(
    session: Session, school_id: int, requirement_id: int, stage: Stage, round_number: int, admin_id: int | None,
) -> ToggleResult:
    """Delete the override if present, otherwise insert it. Commits."""
    existing = find_override(session, school_id, requirement_id, round_number)
    if existing is not None:
        session.delete(existing)
        session.commit()
        log.info("Admin %s removed override: school %s requirement %s round %s",
                 admin_id, school_id, requirement_id, round_number)
        return ToggleResult(created=False, override=existing)

    override = AdminEvidenceOverride(
        school_id=school_id, evidence_requirement_id=requirement_id,
        stage=stage, round_number=round_number, marked_by=admin_id,
    )
    session.add(override)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise ConstraintViolation(
            f"Override for school {school_id} requirement {requirement_id} round {round_number} "
            "was toggled concurrently"
        ) from exc
    log.info("Admin %s added override: school %s requirement %s (%s) round %s",
             admin_id, school_id, requirement_id, stage.value, round_number)
    return ToggleResult(created=True, override=override)


def list_overrides(session: Session, school_id: int, round_number: int | None = None) -> list[AdminEvidenceOverride]:
    query = select(AdminEvidenceOverride).where(AdminEvidenceOverride.school_id == school_id)
    if round_number is not None:
        query = query.where(AdminEvidenceOverride.round_number == round_number)
    return list(session.execute(query.order_by(AdminEvidenceOverride.id)).scalars().all())


def override_summary(o: AdminEvidenceOverride) -> dict:
    return {
        "id": o.id,
        "school_id": o.school_id,
        "evidence_requirement_id": o.evidence_requirement_id,
        "stage": o.stage.value,
        "round_number": o.round_number,
        "marked_by": o.marked_by,
    }
