"""Round lifecycle: restart the program for a school that completed its round."""
from __future__ import annotations

import logging

from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from pcs.errors import InvalidState, NotFound, TransientStoreError
from pcs.models import School, Stage
from pcs.utils import utc_now

log = logging.getLogger(__name__)


def reset_round_flags(school: School) -> None:
    school.current_round = (school.current_round or 1) + 1
    school.current_stage = Stage.INSPIRE
    school.inspire_completed = False
    school.investigate_completed = False
    school.act_completed = False
    school.award_completed = False
    school.audit_quiz_completed = False
    school.progress_percentage = 0
    school.updated_at = utc_now()


def start_new_round(session: Session, school_id: int) -> School:
    """Advance *school_id* to its next round. Commits.

    Requires the current round to be awarded. Evidence, overrides and
    certificates of earlier rounds are left as they are.
    """
    school = session.get(School, school_id, populate_existing=True)
    if school is None:
        raise NotFound(f"School {school_id} not found")
    if not school.award_completed:
        raise InvalidState(
            f"School {school_id} has not completed round {school.current_round}; cannot start a new round"
        )

    previous = school.current_round
    reset_round_flags(school)
    try:
        session.commit()
    except StaleDataError as exc:
        session.rollback()
        raise InvalidState(f"School {school_id} changed while starting a new round; reload and retry") from exc
    except DBAPIError as exc:
        session.rollback()
        raise TransientStoreError(f"Record store error while starting a new round: {exc}") from exc

    log.info("School %s started round %s (previous round %s)", school_id, school.current_round, previous)
    return school
