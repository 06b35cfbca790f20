"""Certificate issuer: at most one round-completion certificate per school and round."""
from __future__ import annotations

import json
import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pcs.errors import ConstraintViolation
from pcs.models import Certificate, Stage
from pcs.utils import utc_now

log = logging.getLogger(__name__)

CERTIFICATE_STAGE = Stage.ACT
CERTIFICATE_PREFIX = "PCSR"


def certificate_number(school_id: int, round_number: int, now: datetime | None = None) -> str:
    """``PCSR<round>-<epoch millis>-<school id fragment>``."""
    millis = int((now or utc_now()).timestamp() * 1000)
    return f"{CERTIFICATE_PREFIX}{round_number}-{millis}-{str(school_id)[:8]}"


def find_round_certificate(session: Session, school_id: int, round_number: int) -> Certificate | None:
    return session.execute(
        select(Certificate).where(
            Certificate.school_id == school_id,
            Certificate.stage == CERTIFICATE_STAGE,
            Certificate.round_number == round_number,
        ).execution_options(populate_existing=True)
    ).scalars().first()


def issue_if_absent(
    session: Session, school_id: int, round_number: int, achievements: dict[str, int],
) -> tuple[Certificate, bool]:
    """Return ``(certificate, created)`` for the school's round certificate.

    The insert runs in a savepoint so that losing a race against the unique
    constraint only discards the duplicate row; the winner's certificate is
    then returned with ``created=False``. Caller must commit.
    """
    existing = find_round_certificate(session, school_id, round_number)
    if existing is not None:
        return existing, False

    now = utc_now()
    cert = Certificate(
        school_id=school_id,
        stage=CERTIFICATE_STAGE,
        round_number=round_number,
        certificate_number=certificate_number(school_id, round_number, now),
        title=f"Round {round_number} Completion Certificate",
        description=(
            f"Successfully completed all three stages (Inspire, Investigate, Act) in Round {round_number}"
        ),
        completed_date=now,
        metadata_json=json.dumps({"round": round_number, "achievements": achievements}),
    )
    try:
        with session.begin_nested():
            session.add(cert)
    except IntegrityError as exc:
        existing = find_round_certificate(session, school_id, round_number)
        if existing is None:
            raise ConstraintViolation(
                f"Certificate insert for school {school_id} round {round_number} rejected: {exc.orig}"
            ) from exc
        log.info("Certificate for school %s round %s already issued concurrently (%s)",
                 school_id, round_number, existing.certificate_number)
        return existing, False

    log.info("Issued certificate %s to school %s for round %s", cert.certificate_number, school_id, round_number)
    return cert, True


def list_certificates(session: Session, school_id: int, round_number: int | None = None) -> list[Certificate]:
    query = select(Certificate).where(Certificate.school_id == school_id, Certificate.is_deleted.is_(False))
    if round_number is not None:
        query = query.where(Certificate.round_number == round_number)
    return list(session.execute(query.order_by(Certificate.round_number, Certificate.id)).scalars().all())


def certificate_metadata(cert: Certificate) -> dict:
    """Decode the achievement snapshot; rows with missing or garbled metadata read as empty."""
    if not cert.metadata_json:
        return {}
    try:
        data = json.loads(cert.metadata_json)
    except json.JSONDecodeError:
        log.warning("Certificate %s has unreadable metadata", cert.id)
        return {}
    return data if isinstance(data, dict) else {}


def certificate_summary(cert: Certificate) -> dict:
    return {
        "id": cert.id,
        "school_id": cert.school_id,
        "stage": cert.stage.value,
        "round_number": cert.round_number,
        "certificate_number": cert.certificate_number,
        "title": cert.title,
        "description": cert.description,
        "completed_date": cert.completed_date.isoformat() if cert.completed_date else None,
        "metadata": certificate_metadata(cert),
    }
