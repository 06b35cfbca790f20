from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, sessionmaker

from pcs.config import get_settings
from pcs.errors import TransientStoreError
from pcs.models import Base, EvidenceRequirement, Stage

# Default requirement catalog, in display order per stage.
DEFAULT_REQUIREMENTS: dict[Stage, tuple[str, ...]] = {
    Stage.INSPIRE: (
        "Assembly or lesson on plastic pollution",
        "Plastic Clever pledge displayed",
        "Whole-school awareness activity",
    ),
    Stage.INVESTIGATE: (
        "Plastic waste audit photos",
        "Litter pick or investigation report",
    ),
    Stage.ACT: (
        "Reduction campaign launched",
        "Community or local business outreach",
        "Single-use swap in place",
    ),
}

_lock = threading.Lock()
_engine: Engine | None = None
_SessionLocal: sessionmaker[Session] | None = None


def init_db(db_url: str | Path | None = None) -> None:
    """Create the engine and tables, then seed the requirement catalog.

    *db_url* may be a full SQLAlchemy URL or a path to a SQLite file. When
    omitted, the configured database is used.
    """
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        url = _resolve_url(db_url)
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        _engine = create_engine(url, connect_args=connect_args)
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
    seed_requirements(_SessionLocal)


def _resolve_url(db_url: str | Path | None) -> str:
    if db_url is None:
        settings = get_settings()
        if not settings.database_url_override:
            settings.data_dir.mkdir(parents=True, exist_ok=True)
        return settings.database_url
    if isinstance(db_url, Path) or "://" not in db_url:
        path = Path(db_url)
        path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{path}"
    return db_url


def get_session_factory() -> sessionmaker[Session]:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        return _SessionLocal


def get_session() -> Session:
    return get_session_factory()()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Usage (CLI, scripts, etc.)::

        with session_scope() as session:
            ...
    """
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def store_errors(session: Session, action: str) -> Generator[None, None, None]:
    """Re-raise record-store failures on read paths as ``TransientStoreError``."""
    try:
        yield
    except DBAPIError as exc:
        session.rollback()
        raise TransientStoreError(f"Record store error while {action}: {exc}") from exc


def seed_requirements(factory: sessionmaker[Session]) -> int:
    """Seed the default requirement catalog if the table is empty."""
    with factory() as session:
        count = session.execute(select(func.count(EvidenceRequirement.id))).scalar_one()
        if count > 0:
            return 0
        added = 0
        for stage, titles in DEFAULT_REQUIREMENTS.items():
            for idx, title in enumerate(titles):
                session.add(EvidenceRequirement(stage=stage, title=title, order_index=idx))
                added += 1
        session.commit()
        return added
