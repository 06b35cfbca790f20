from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    Boolean, DateTime, Enum, ForeignKey, Integer, String, Text, UniqueConstraint, func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class Stage(str, enum.Enum):
    INSPIRE = "inspire"
    INVESTIGATE = "investigate"
    ACT = "act"


class EvidenceStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


STAGE_ORDER = (Stage.INSPIRE, Stage.INVESTIGATE, Stage.ACT)

_stage_type = Enum(Stage, name="stage", values_callable=lambda e: [m.value for m in e], native_enum=False)
_status_type = Enum(
    EvidenceStatus, name="evidence_status", values_callable=lambda e: [m.value for m in e], native_enum=False,
)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(300), default="")
    first_name: Mapped[str] = mapped_column(String(100), default="")
    last_name: Mapped[str] = mapped_column(String(100), default="")
    preferred_language: Mapped[str] = mapped_column(String(10), default="en")


class School(Base):
    __tablename__ = "schools"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    country: Mapped[str] = mapped_column(String(100), default="")
    primary_contact_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id"), nullable=True)

    current_stage: Mapped[Stage] = mapped_column(_stage_type, default=Stage.INSPIRE)
    current_round: Mapped[int] = mapped_column(Integer, default=1)
    inspire_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    investigate_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    act_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    award_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    audit_quiz_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    progress_percentage: Mapped[int] = mapped_column(Integer, default=0)
    rounds_completed: Mapped[int] = mapped_column(Integer, default=0)

    # Optimistic lock: every flag write is a compare-and-swap on this column.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    primary_contact: Mapped[User | None] = relationship("User")

    __mapper_args__ = {"version_id_col": version}


class EvidenceRequirement(Base):
    __tablename__ = "evidence_requirements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stage: Mapped[Stage] = mapped_column(_stage_type, nullable=False)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    order_index: Mapped[int] = mapped_column(Integer, default=0)


class Evidence(Base):
    __tablename__ = "evidence"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    school_id: Mapped[int] = mapped_column(Integer, ForeignKey("schools.id"), nullable=False, index=True)
    evidence_requirement_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("evidence_requirements.id"), nullable=True,
    )
    stage: Mapped[Stage] = mapped_column(_stage_type, nullable=False)
    round_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    title: Mapped[str] = mapped_column(String(300), default="")
    status: Mapped[EvidenceStatus] = mapped_column(_status_type, default=EvidenceStatus.PENDING)
    submitted_by: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id"), nullable=True)
    reviewed_by: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id"), nullable=True)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    submitted_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class AdminEvidenceOverride(Base):
    __tablename__ = "admin_evidence_overrides"
    __table_args__ = (
        UniqueConstraint("school_id", "evidence_requirement_id", "round_number", name="uq_override_round"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    school_id: Mapped[int] = mapped_column(Integer, ForeignKey("schools.id"), nullable=False, index=True)
    evidence_requirement_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("evidence_requirements.id"), nullable=False,
    )
    stage: Mapped[Stage] = mapped_column(_stage_type, nullable=False)
    round_number: Mapped[int] = mapped_column(Integer, nullable=False)
    marked_by: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class AuditResponse(Base):
    __tablename__ = "audit_responses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    school_id: Mapped[int] = mapped_column(Integer, ForeignKey("schools.id"), nullable=False, index=True)
    round_number: Mapped[int] = mapped_column(Integer, default=1)
    status: Mapped[str] = mapped_column(String(20), default="draft")  # draft | submitted | approved | rejected
    submitted_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class ReductionPromise(Base):
    __tablename__ = "reduction_promises"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    school_id: Mapped[int] = mapped_column(Integer, ForeignKey("schools.id"), nullable=False, index=True)
    round_number: Mapped[int] = mapped_column(Integer, default=1)
    plastic_item: Mapped[str] = mapped_column(String(200), default="")
    reduction_amount: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class Certificate(Base):
    __tablename__ = "certificates"
    __table_args__ = (
        UniqueConstraint("school_id", "stage", "round_number", name="uq_certificate_round"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    school_id: Mapped[int] = mapped_column(Integer, ForeignKey("schools.id"), nullable=False, index=True)
    stage: Mapped[Stage] = mapped_column(_stage_type, nullable=False)
    round_number: Mapped[int] = mapped_column(Integer, nullable=False)
    certificate_number: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(300), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    issued_by: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id"), nullable=True)
    completed_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    metadata_json: Mapped[str] = mapped_column(Text, default="{}")
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    issued_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
