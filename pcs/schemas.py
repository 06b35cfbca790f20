"""Pydantic request/response schemas for the progression API."""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from pcs.models import Stage


class SchoolOut(BaseModel):
    id: int
    name: str
    country: str
    current_stage: str
    current_round: int
    inspire_completed: bool
    investigate_completed: bool
    act_completed: bool
    award_completed: bool
    audit_quiz_completed: bool
    progress_percentage: int
    rounds_completed: int


class StageCountsOut(BaseModel):
    total: int
    approved: int
    overridden: int
    submitted: int
    has_quiz: bool | None = None
    has_action_plan: bool | None = None


class ProgressionCountsOut(BaseModel):
    school_id: int
    round_number: int
    inspire: StageCountsOut
    investigate: StageCountsOut
    act: StageCountsOut


class EvidenceCreate(BaseModel):
    stage: Stage
    title: str
    submitted_by: int | None = None
    evidence_requirement_id: int | None = None


class EvidenceReview(BaseModel):
    status: Literal["approved", "rejected"]
    reviewer_id: int | None = None
    notes: str | None = None


class EvidenceOut(BaseModel):
    id: int
    school_id: int
    evidence_requirement_id: int | None = None
    stage: str
    round_number: int
    title: str
    status: str
    submitted_by: int | None = None
    reviewed_by: int | None = None
    review_notes: str | None = None
    submitted_at: str | None = None
    reviewed_at: str | None = None


class OverrideToggle(BaseModel):
    evidence_requirement_id: int
    stage: Stage
    round_number: int | None = Field(None, ge=1)
    admin_id: int | None = None


class OverrideOut(BaseModel):
    id: int | None = None
    school_id: int
    evidence_requirement_id: int
    stage: str
    round_number: int
    marked_by: int | None = None


class OverrideToggleOut(BaseModel):
    created: bool
    override: OverrideOut
    progression_updated: bool = True


class CertificateOut(BaseModel):
    id: int
    school_id: int
    stage: str
    round_number: int
    certificate_number: str
    title: str
    description: str
    completed_date: str | None = None
    metadata: dict[str, Any] = {}


class ReconcileOut(BaseModel):
    fixed_count: int
    school_ids: list[int]
    failed: list[int] = []
    checked: int = 0
    dry_run: bool = False
