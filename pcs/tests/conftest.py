from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from pcs.db import seed_requirements
from pcs.models import Base, EvidenceRequirement, School, Stage, User
from pcs.notifier import Notifier

# ---------------------------------------------------------------------------
# Fixtures: in-memory SQLite database with the default requirement catalog
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def factory(engine):
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    seed_requirements(factory)
    return factory


@pytest.fixture()
def session(factory):
    sess = factory()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def notifier():
    return MagicMock(spec=Notifier)


@pytest.fixture()
def contact(session: Session) -> User:
    user = User(email="head@greenfield.sch.uk", first_name="Ada", last_name="Okafor")
    session.add(user)
    session.commit()
    return user


@pytest.fixture()
def school(session: Session, contact: User) -> School:
    school = School(name="Greenfield Primary", country="United Kingdom", primary_contact_id=contact.id)
    session.add(school)
    session.commit()
    return school


@pytest.fixture()
def requirements(session: Session) -> dict[Stage, list[EvidenceRequirement]]:
    rows = session.execute(
        select(EvidenceRequirement).order_by(EvidenceRequirement.stage, EvidenceRequirement.order_index)
    ).scalars().all()
    out: dict[Stage, list[EvidenceRequirement]] = {stage: [] for stage in Stage}
    for row in rows:
        out[row.stage].append(row)
    return out


@pytest.fixture()
def file_factory(tmp_path):
    """File-backed database where every session gets its own connection."""
    eng = create_engine(f"sqlite:///{tmp_path / 'pcs.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    factory = sessionmaker(bind=eng, autoflush=False, expire_on_commit=False)
    seed_requirements(factory)
    yield factory
    eng.dispose()
