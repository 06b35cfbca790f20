"""Integration tests for the FastAPI endpoints.

Uses TestClient against the in-memory database from conftest, with the
notifier replaced by a mock.
"""
from __future__ import annotations

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from pcs.errors import TransientStoreError
from pcs.models import School, Stage
from pcs.tests.factories import add_evidence


@pytest.fixture()
def client(factory, notifier):
    """FastAPI TestClient bound to the test session factory."""
    from pcs.app import app, db_session, session_factory

    def override_db_session():
        session = factory()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    app.dependency_overrides[session_factory] = lambda: factory
    with patch("pcs.app.init_db"), \
            patch("pcs.app.get_notifier", return_value=notifier), \
            patch("pcs.services.get_notifier", return_value=notifier):
        with TestClient(app, raise_server_exceptions=True) as c:
            yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def act_school(session, contact) -> School:
    """A school with Inspire and Investigate done and two approved Act items."""
    school = School(
        name="Harbour Primary", country="Wales", primary_contact_id=contact.id,
        inspire_completed=True, investigate_completed=True,
        current_stage=Stage.ACT, progress_percentage=67,
    )
    session.add(school)
    session.commit()
    for _ in range(2):
        add_evidence(session, school, Stage.ACT)
    return school


class TestSchoolEndpoints:
    def test_get_school(self, client, school):
        resp = client.get(f"/api/schools/{school.id}")
        assert resp.status_code == 200
        data = resp.json()
        assert data["name"] == "Greenfield Primary"
        assert data["current_stage"] == "inspire"
        assert data["current_round"] == 1
        assert data["progress_percentage"] == 0

    def test_unknown_school_404(self, client):
        resp = client.get("/api/schools/9999")
        assert resp.status_code == 404
        assert "not found" in resp.json()["detail"]

    def test_progression_counts(self, client, session, school):
        add_evidence(session, school, Stage.INSPIRE)
        resp = client.get(f"/api/schools/{school.id}/progression")
        assert resp.status_code == 200
        data = resp.json()
        assert data["round_number"] == 1
        assert data["inspire"]["total"] == 1
        assert data["investigate"]["has_quiz"] is False
        assert data["act"]["has_quiz"] is None

    def test_recalculate(self, client, session, school):
        for _ in range(3):
            add_evidence(session, school, Stage.INSPIRE)
        resp = client.post(f"/api/schools/{school.id}/progression/recalculate")
        assert resp.status_code == 200
        assert resp.json()["inspire_completed"] is True
        assert resp.json()["current_stage"] == "investigate"

    def test_transient_store_error_503(self, client, school):
        with patch("pcs.app.services.get_progression_counts", side_effect=TransientStoreError("database is locked")):
            resp = client.get(f"/api/schools/{school.id}/progression")
        assert resp.status_code == 503
        assert resp.headers["Retry-After"] == "1"

    def test_store_outage_on_read_is_503(self, client, school):
        broken = OperationalError("SELECT", {}, Exception("disk I/O error"))
        with patch("pcs.services.compute_counts", side_effect=broken):
            resp = client.get(f"/api/schools/{school.id}/progression")
        assert resp.status_code == 503
        assert "counting requirements" in resp.json()["detail"]


class TestEvidenceEndpoints:
    def test_submit_and_approve(self, client, school, contact, notifier):
        resp = client.post(f"/api/schools/{school.id}/evidence",
                           json={"stage": "inspire", "title": "Assembly slides", "submitted_by": contact.id})
        assert resp.status_code == 201
        evidence = resp.json()
        assert evidence["status"] == "pending"
        assert evidence["round_number"] == 1

        resp = client.put(f"/api/evidence/{evidence['id']}/review", json={"status": "approved", "notes": "Nice"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "approved"
        assert resp.json()["review_notes"] == "Nice"
        assert notifier.send.call_args.args[0].kind == "evidence_approved"

        resp = client.put(f"/api/evidence/{evidence['id']}/review", json={"status": "rejected"})
        assert resp.status_code == 409

    def test_review_status_validated(self, client, school):
        ev = client.post(f"/api/schools/{school.id}/evidence", json={"stage": "act", "title": "Swap"}).json()
        resp = client.put(f"/api/evidence/{ev['id']}/review", json={"status": "pending"})
        assert resp.status_code == 422

    def test_requirement_stage_mismatch_409(self, client, school, requirements):
        resp = client.post(f"/api/schools/{school.id}/evidence", json={
            "stage": "act", "title": "Swap", "evidence_requirement_id": requirements[Stage.INSPIRE][0].id,
        })
        assert resp.status_code == 409

    def test_list_evidence_by_round(self, client, session, school):
        add_evidence(session, school, Stage.INSPIRE)
        add_evidence(session, school, Stage.INSPIRE, round_number=2)
        assert len(client.get(f"/api/schools/{school.id}/evidence").json()) == 2
        assert len(client.get(f"/api/schools/{school.id}/evidence", params={"round_number": 2}).json()) == 1


class TestOverrideEndpoints:
    def test_toggle_on_and_off(self, client, school, requirements):
        body = {"evidence_requirement_id": requirements[Stage.INSPIRE][2].id, "stage": "inspire"}
        resp = client.post(f"/api/schools/{school.id}/evidence-overrides/toggle", json=body)
        assert resp.status_code == 200
        assert resp.json()["created"] is True
        assert resp.json()["progression_updated"] is True
        assert len(client.get(f"/api/schools/{school.id}/evidence-overrides").json()) == 1

        resp = client.post(f"/api/schools/{school.id}/evidence-overrides/toggle", json=body)
        assert resp.json()["created"] is False
        assert client.get(f"/api/schools/{school.id}/evidence-overrides").json() == []

    def test_toggle_completes_stage(self, client, session, school, requirements):
        inspire = requirements[Stage.INSPIRE]
        add_evidence(session, school, Stage.INSPIRE, requirement=inspire[0])
        add_evidence(session, school, Stage.INSPIRE, requirement=inspire[1])
        client.post(f"/api/schools/{school.id}/evidence-overrides/toggle",
                    json={"evidence_requirement_id": inspire[2].id, "stage": "inspire"})
        assert client.get(f"/api/schools/{school.id}").json()["inspire_completed"] is True

    def test_stage_mismatch_409(self, client, school, requirements):
        resp = client.post(f"/api/schools/{school.id}/evidence-overrides/toggle", json={
            "evidence_requirement_id": requirements[Stage.ACT][0].id, "stage": "inspire",
        })
        assert resp.status_code == 409


class TestRoundEndpoints:
    def test_new_round_before_award_409(self, client, school):
        resp = client.post(f"/api/schools/{school.id}/rounds")
        assert resp.status_code == 409

    def test_award_certificate_and_new_round(self, client, act_school, notifier):
        ev = client.post(f"/api/schools/{act_school.id}/evidence", json={"stage": "act", "title": "Refill station"})
        client.put(f"/api/evidence/{ev.json()['id']}/review", json={"status": "approved"})

        school = client.get(f"/api/schools/{act_school.id}").json()
        assert school["award_completed"] is True
        assert school["rounds_completed"] == 1
        assert notifier.send.call_args.args[0].kind == "round_complete"

        certs = client.get(f"/api/schools/{act_school.id}/certificates").json()
        assert len(certs) == 1
        assert certs[0]["round_number"] == 1
        assert certs[0]["metadata"]["achievements"]["act"] == 3
        assert f"/api/certificates/{certs[0]['id']}/download" in notifier.send.call_args.args[0].body
        assert client.get(f"/api/certificates/{certs[0]['id']}/download").json() == certs[0]
        assert client.get("/api/certificates/9999/download").status_code == 404

        resp = client.post(f"/api/schools/{act_school.id}/rounds")
        assert resp.status_code == 200
        assert resp.json()["current_round"] == 2
        assert resp.json()["award_completed"] is False
        assert client.get(f"/api/schools/{act_school.id}/certificates", params={"round_number": 1}).json() == certs


class TestAdminEndpoints:
    def test_reconcile(self, client, session, school):
        for _ in range(3):
            add_evidence(session, school, Stage.INSPIRE)

        dry = client.post("/api/admin/reconcile", params={"dry_run": True}).json()
        assert dry == {"fixed_count": 1, "school_ids": [school.id], "failed": [], "checked": 1, "dry_run": True}

        wet = client.post("/api/admin/reconcile").json()
        assert wet["fixed_count"] == 1
        assert client.post("/api/admin/reconcile").json()["fixed_count"] == 0
