"""Races between progression runs, reviews and certificate inserts.

These use a file-backed SQLite database so that each session gets its own
connection and the version-column compare-and-swap is exercised for real.
"""
from __future__ import annotations

import asyncio
import json
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import func, select

from pcs import certificates, progression, services
from pcs.certificates import certificate_number, issue_if_absent
from pcs.counts import compute_counts
from pcs.errors import TransientStoreError
from pcs.models import Certificate, Evidence, EvidenceStatus, School, Stage, User
from pcs.notifier import Notifier
from pcs.tests.factories import sent_kinds
from pcs.utils import utc_now


def _school_at_act(factory, *, approved_act: int, pending_act: int = 0) -> int:
    """Create a school with Inspire and Investigate done and some Act evidence."""
    with factory() as session:
        contact = User(email="eco@riverside.sch.uk", first_name="Sam", last_name="Reyes")
        session.add(contact)
        session.flush()
        school = School(
            name="Riverside Academy", country="Ireland", primary_contact_id=contact.id,
            inspire_completed=True, investigate_completed=True,
            current_stage=Stage.ACT, progress_percentage=67,
        )
        session.add(school)
        session.flush()
        for status, n in ((EvidenceStatus.APPROVED, approved_act), (EvidenceStatus.PENDING, pending_act)):
            for i in range(n):
                session.add(Evidence(
                    school_id=school.id, stage=Stage.ACT, round_number=1,
                    title=f"act {status.value} {i}", status=status,
                ))
        session.commit()
        return school.id


def _certificates(factory, school_id: int) -> list[Certificate]:
    with factory() as session:
        return list(session.execute(
            select(Certificate).where(Certificate.school_id == school_id)
        ).scalars().all())


class TestCompareAndSwap:
    @pytest.mark.asyncio
    async def test_loser_re_evaluates_and_fires_nothing(self, file_factory):
        school_id = _school_at_act(file_factory, approved_act=3)
        calls = {"n": 0}

        def racing_counts(session, sid, round_number=None):
            calls["n"] += 1
            if calls["n"] == 1:
                # A competing run commits the award between our read and our write.
                with file_factory() as other:
                    progression._attempt(other, sid)
                    other.commit()
            return compute_counts(session, sid, round_number)

        notifier = MagicMock(spec=Notifier)
        with file_factory() as session, \
                patch("pcs.progression.compute_counts", side_effect=racing_counts):
            result = await progression.check_and_update_progression(session, school_id, notifier=notifier)

            assert result.changed is False
            assert result.certificate is None
            assert result.school.award_completed is True
            assert result.school.rounds_completed == 1

        assert len(_certificates(file_factory, school_id)) == 1
        notifier.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_gives_up_when_school_keeps_changing(self, file_factory):
        school_id = _school_at_act(file_factory, approved_act=3)

        def always_racing(session, sid, round_number=None):
            with file_factory() as other:
                school = other.get(School, sid)
                school.updated_at = utc_now()
                other.commit()
            return compute_counts(session, sid, round_number)

        with file_factory() as session, \
                patch("pcs.progression.compute_counts", side_effect=always_racing):
            with pytest.raises(TransientStoreError) as exc_info:
                await progression.check_and_update_progression(
                    session, school_id, notifier=MagicMock(spec=Notifier),
                )
        assert exc_info.value.retryable is True
        assert _certificates(file_factory, school_id) == []

    def test_fifty_approvals_issue_one_certificate(self, file_factory):
        school_id = _school_at_act(file_factory, approved_act=2, pending_act=50)
        with file_factory() as session:
            pending = session.execute(
                select(Evidence.id).where(Evidence.status == EvidenceStatus.PENDING)
            ).scalars().all()
        notifier = MagicMock(spec=Notifier)

        def approve(evidence_id: int) -> None:
            # One reviewer per thread, each with its own session and event loop.
            with file_factory() as session:
                asyncio.run(services.review_evidence(
                    session, evidence_id, "approved", reviewer_id=None, notifier=notifier,
                ))

        with ThreadPoolExecutor(max_workers=10) as pool:
            futures = [pool.submit(approve, eid) for eid in pending]
        errors = [f.exception() for f in futures if f.exception() is not None]
        assert errors == []

        certs = _certificates(file_factory, school_id)
        assert len(certs) == 1
        assert json.loads(certs[0].metadata_json)["achievements"]["act"] >= 3
        assert sent_kinds(notifier) == ["round_complete"]
        with file_factory() as session:
            school = session.get(School, school_id)
            assert school.award_completed is True
            assert school.rounds_completed == 1
            approved = session.execute(
                select(func.count(Evidence.id)).where(Evidence.status == EvidenceStatus.APPROVED)
            ).scalar_one()
            assert approved == 52


class TestCertificateIssuer:
    def test_existing_certificate_returned(self, file_factory):
        school_id = _school_at_act(file_factory, approved_act=0)
        with file_factory() as session:
            first, created = issue_if_absent(session, school_id, 1, {"act": 3})
            session.commit()
            assert created is True

            again, created = issue_if_absent(session, school_id, 1, {"act": 3})
            assert created is False
            assert again.id == first.id

    def test_lost_insert_race_returns_winner(self, file_factory):
        school_id = _school_at_act(file_factory, approved_act=0)
        with file_factory() as session:
            session.add(Certificate(
                school_id=school_id, stage=Stage.ACT, round_number=1, certificate_number="PCSR1-manual",
            ))
            session.commit()

        real_find = certificates.find_round_certificate
        calls = {"n": 0}

        def stale_find(session, sid, round_number):
            calls["n"] += 1
            if calls["n"] == 1:
                return None
            return real_find(session, sid, round_number)

        with file_factory() as session, \
                patch("pcs.certificates.find_round_certificate", side_effect=stale_find):
            school = session.get(School, school_id)
            school.updated_at = utc_now()
            session.flush()
            cert, created = issue_if_absent(session, school_id, 1, {"act": 3})
            session.commit()

        assert created is False
        assert cert.certificate_number == "PCSR1-manual"
        assert len(_certificates(file_factory, school_id)) == 1

    def test_soft_deleted_certificate_is_hidden_but_not_reissued(self, file_factory):
        school_id = _school_at_act(file_factory, approved_act=0)
        with file_factory() as session:
            cert, _ = issue_if_absent(session, school_id, 1, {})
            cert.is_deleted = True
            session.commit()

            assert certificates.list_certificates(session, school_id) == []
            again, created = issue_if_absent(session, school_id, 1, {})
            assert created is False
            assert again.id == cert.id

    def test_rounds_get_separate_certificates(self, file_factory):
        school_id = _school_at_act(file_factory, approved_act=0)
        with file_factory() as session:
            one, _ = issue_if_absent(session, school_id, 1, {})
            two, _ = issue_if_absent(session, school_id, 2, {})
            session.commit()
        assert one.id != two.id
        assert two.title == "Round 2 Completion Certificate"

    def test_certificate_number_format(self):
        now = utc_now()
        number = certificate_number(123456789012, 2, now)
        assert number == f"PCSR2-{int(now.timestamp() * 1000)}-12345678"

    def test_summary_includes_achievement_snapshot(self, file_factory):
        school_id = _school_at_act(file_factory, approved_act=0)
        with file_factory() as session:
            cert, _ = issue_if_absent(session, school_id, 1, {"inspire": 3, "investigate": 2, "act": 4})
            session.commit()
            summary = certificates.certificate_summary(cert)
        assert summary["metadata"] == {"round": 1, "achievements": {"inspire": 3, "investigate": 2, "act": 4}}

    @pytest.mark.parametrize("raw", [None, "", "{not json", "[1, 2]"])
    def test_unreadable_metadata_reads_as_empty(self, raw):
        cert = Certificate(id=9, school_id=1, stage=Stage.ACT, round_number=1,
                           certificate_number="PCSR1-0-1", metadata_json=raw)
        assert certificates.certificate_metadata(cert) == {}
