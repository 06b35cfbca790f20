from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Generator

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from pcs import services
from pcs.db import get_session, get_session_factory, init_db
from pcs.errors import ConstraintViolation, InvalidState, NotFound, TransientStoreError
from pcs.notifier import get_notifier
from pcs.schemas import (
    CertificateOut,
    EvidenceCreate,
    EvidenceOut,
    EvidenceReview,
    OverrideOut,
    OverrideToggle,
    OverrideToggleOut,
    ProgressionCountsOut,
    ReconcileOut,
    SchoolOut,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield
    await get_notifier().drain()


app = FastAPI(
    title="Plastic Clever Schools progression",
    version="0.1.0",
    description=(
        "Stage gating, admin overrides, rounds and certificates for schools working through "
        "Inspire, Investigate and Act. All endpoints return JSON."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Progression", "description": "Requirement counts and progression recalculation."},
        {"name": "Evidence", "description": "Submit and review evidence."},
        {"name": "Overrides", "description": "Admin requirement overrides per round."},
        {"name": "Rounds", "description": "Round lifecycle and certificates."},
        {"name": "Admin", "description": "Batch repair operations."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & error mapping
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def session_factory():
    return get_session_factory()


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidState)
async def invalid_state_handler(request: Request, exc: InvalidState):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ConstraintViolation)
async def constraint_handler(request: Request, exc: ConstraintViolation):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(TransientStoreError)
async def transient_handler(request: Request, exc: TransientStoreError):
    log.warning("Transient store error: %s", exc)
    return JSONResponse(status_code=503, content={"detail": str(exc)}, headers={"Retry-After": "1"})


# ---------------------------------------------------------------------------
# Routes: Progression
# ---------------------------------------------------------------------------


@app.get("/api/schools/{school_id}", response_model=SchoolOut,
         tags=["Progression"], summary="Get a school's progression state")
async def get_school(school_id: int, session: Session = Depends(db_session)):
    return services.school_summary(services.get_school(session, school_id))


@app.get("/api/schools/{school_id}/progression", response_model=ProgressionCountsOut,
         tags=["Progression"], summary="Satisfied requirement counts per stage")
async def get_progression_counts(
    school_id: int,
    round_number: int | None = Query(None, ge=1, description="Defaults to the school's current round"),
    session: Session = Depends(db_session),
):
    return services.get_progression_counts(session, school_id, round_number)


@app.post("/api/schools/{school_id}/progression/recalculate", response_model=SchoolOut,
          tags=["Progression"], summary="Re-run the progression state machine for one school")
async def recalculate(school_id: int, session: Session = Depends(db_session)):
    return services.school_summary(await services.recalculate(session, school_id))


# ---------------------------------------------------------------------------
# Routes: Evidence
# ---------------------------------------------------------------------------


@app.get("/api/schools/{school_id}/evidence", response_model=list[EvidenceOut],
         tags=["Evidence"], summary="List a school's evidence, optionally for one round")
async def list_evidence(
    school_id: int, round_number: int | None = Query(None, ge=1), session: Session = Depends(db_session),
):
    return services.list_evidence(session, school_id, round_number)


@app.post("/api/schools/{school_id}/evidence", response_model=EvidenceOut, status_code=201,
          tags=["Evidence"], summary="Submit evidence for the current round")
async def submit_evidence(school_id: int, body: EvidenceCreate, session: Session = Depends(db_session)):
    ev = services.submit_evidence(
        session, school_id, body.stage, body.title,
        submitted_by=body.submitted_by, requirement_id=body.evidence_requirement_id,
    )
    return services.evidence_summary(ev)


@app.put("/api/evidence/{evidence_id}/review", response_model=EvidenceOut,
         tags=["Evidence"], summary="Approve or reject pending evidence")
async def review_evidence(evidence_id: int, body: EvidenceReview, session: Session = Depends(db_session)):
    ev = await services.review_evidence(session, evidence_id, body.status, body.reviewer_id, body.notes)
    return services.evidence_summary(ev)


# ---------------------------------------------------------------------------
# Routes: Overrides
# ---------------------------------------------------------------------------


@app.get("/api/schools/{school_id}/evidence-overrides", response_model=list[OverrideOut],
         tags=["Overrides"], summary="List admin overrides (current round by default)")
async def list_overrides(
    school_id: int, round_number: int | None = Query(None, ge=1), session: Session = Depends(db_session),
):
    return services.list_overrides(session, school_id, round_number)


@app.post("/api/schools/{school_id}/evidence-overrides/toggle", response_model=OverrideToggleOut,
          tags=["Overrides"], summary="Toggle an admin override and recalculate progression")
async def toggle_override(school_id: int, body: OverrideToggle, session: Session = Depends(db_session)):
    return await services.toggle_override(
        session, school_id, body.evidence_requirement_id, body.stage, body.round_number, body.admin_id,
    )


# ---------------------------------------------------------------------------
# Routes: Rounds & certificates
# ---------------------------------------------------------------------------


@app.post("/api/schools/{school_id}/rounds", response_model=SchoolOut,
          tags=["Rounds"], summary="Start the next round after an awarded round")
async def start_new_round(school_id: int, session: Session = Depends(db_session)):
    return services.school_summary(services.start_new_round(session, school_id))


@app.get("/api/schools/{school_id}/certificates", response_model=list[CertificateOut],
         tags=["Rounds"], summary="List a school's certificates, optionally for one round")
async def list_certificates(
    school_id: int, round_number: int | None = Query(None, ge=1), session: Session = Depends(db_session),
):
    return services.list_certificates(session, school_id, round_number)


@app.get("/api/certificates/{certificate_id}/download", response_model=CertificateOut,
         tags=["Rounds"], summary="Fetch one certificate (the link sent in the celebration email)")
async def download_certificate(certificate_id: int, session: Session = Depends(db_session)):
    return services.get_certificate(session, certificate_id)


# ---------------------------------------------------------------------------
# Routes: Admin
# ---------------------------------------------------------------------------


@app.post("/api/admin/reconcile", response_model=ReconcileOut,
          tags=["Admin"], summary="Recompute every school's progression and report corrections")
async def reconcile(dry_run: bool = Query(False), factory=Depends(session_factory)):
    return await services.reconcile_all(factory, dry_run=dry_run)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("pcs.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
