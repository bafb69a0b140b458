"""
API tests for the bureau and scheduler routers.

1. Authentication and role checks
2. Pull endpoints (sandbox adapters) and error mapping
3. Snapshot, change, timeline and comparison reads
4. Auto-pull settings and the internal scheduler trigger
5. Score history and admin-managed bureau connections
"""
import json
import random
from datetime import date
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from app.auth import create_access_token
from app.database import get_db
from app.main import app
from app.models.db_models import ActivityLogDB, BureauConnectionDB
from app.models.ssot import Bureau
from app.routers.bureau import get_orchestrator
from app.routers.scheduler import INTERNAL_API_KEY
from app.services.bureau.adapters import BureauAdapter, load_bureau_config
from app.services.bureau.change_detector import ChangeThresholds
from app.services.bureau.errors import UpstreamError
from app.services.bureau.orchestrator import PullOrchestrator
from app.services.bureau.sandbox import SandboxAdapter
from app.services.bureau.score_history import ScoreHistoryService
from app.services.bureau.snapshot_store import SnapshotStore


@pytest.fixture
def adapters():
    return {bureau: SandboxAdapter(bureau, rng=random.Random(11 + i)) for i, bureau in enumerate(Bureau)}


@pytest.fixture
def client(session_factory, adapters):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    orchestrator = PullOrchestrator(session_factory, adapters=adapters, thresholds=ChangeThresholds())
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth(user):
    return {"Authorization": f"Bearer {create_access_token(user.id, user.email, user.role)}"}


@pytest.fixture
def changed_subject(db, subject, make_report, factories):
    """Subject with two Experian snapshots: a score drop and a new collection."""
    store = SnapshotStore(db, thresholds=ChangeThresholds())
    store.save(subject.id, Bureau.EXPERIAN, make_report(score=700))
    store.save(subject.id, Bureau.EXPERIAN, make_report(score=640, negative_items=[factories.negative_item()]))
    return subject


# =============================================================================
# TEST: AUTH
# =============================================================================

class TestAuth:

    def test_missing_token(self, client, subject):
        response = client.get(f"/bureau/snapshots/{subject.id}")
        assert response.status_code in (401, 403)

    def test_invalid_token(self, client, subject):
        response = client.get(f"/bureau/snapshots/{subject.id}", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_status_is_staff_only(self, client, subject, staff_user):
        assert client.get("/bureau/status", headers=auth(subject)).status_code == 403

        response = client.get("/bureau/status", headers=auth(staff_user))

        assert response.status_code == 200
        modes = {entry["bureau"]: entry["mode"] for entry in response.json()}
        assert modes == {"experian": "sandbox", "equifax": "sandbox", "transunion": "sandbox"}

    def test_client_cannot_read_other_subject(self, client, subject, other_subject):
        response = client.get(f"/bureau/snapshots/{other_subject.id}", headers=auth(subject))
        assert response.status_code == 403


# =============================================================================
# TEST: PULLS
# =============================================================================

class TestPulls:

    def test_staff_pulls_one_bureau(self, client, subject, staff_user):
        response = client.post(f"/bureau/pull/{subject.id}/equifax", headers=auth(staff_user))

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["sandbox"] is True
        assert body["bureau"] == "equifax"
        assert body["changes_count"] == 0

        history = client.get(f"/bureau/pull-history/{subject.id}", headers=auth(staff_user)).json()
        assert history[0]["status"] == "completed"
        assert history[0]["requested_by"] == staff_user.id
        assert history[0]["permissible_purpose"] == "19"

    def test_client_cannot_pull_for_subjects(self, client, subject):
        response = client.post(f"/bureau/pull/{subject.id}/experian", headers=auth(subject))
        assert response.status_code == 403

    def test_unknown_bureau(self, client, subject, staff_user):
        response = client.post(f"/bureau/pull/{subject.id}/innovis", headers=auth(staff_user))
        assert response.status_code == 422

    def test_unknown_subject(self, client, staff_user):
        response = client.post("/bureau/pull/no-such-subject/experian", headers=auth(staff_user))
        assert response.status_code == 404

    def test_upstream_failure_is_502(self, client, adapters, subject, staff_user):
        failing = MagicMock(spec=BureauAdapter)
        failing.is_live = True
        failing.pull.side_effect = UpstreamError("TransUnion report pull failed (503)", bureau="transunion",
                                                 status_code=503)
        adapters[Bureau.TRANSUNION] = failing

        response = client.post(f"/bureau/pull/{subject.id}/transunion", headers=auth(staff_user))

        assert response.status_code == 502
        assert "503" in response.json()["detail"]
        history = client.get(f"/bureau/pull-history/{subject.id}", headers=auth(staff_user)).json()
        assert history[0]["status"] == "failed"

    def test_pull_all(self, client, subject, staff_user):
        response = client.post(f"/bureau/pull-all/{subject.id}", headers=auth(staff_user))

        assert response.status_code == 200
        body = response.json()
        assert set(body["results"]) == {"experian", "equifax", "transunion"}
        assert sorted(body["succeeded"]) == ["equifax", "experian", "transunion"]
        assert body["cross_bureau_analysis"]["sufficient_data"] is True

    def test_client_pulls_own_report(self, client, subject):
        response = client.post("/bureau/pull-own/transunion", headers=auth(subject))

        assert response.status_code == 200
        history = client.get(f"/bureau/pull-history/{subject.id}", headers=auth(subject)).json()
        assert history[0]["pull_type"] == "client_self"
        assert history[0]["requested_by"] == subject.id


# =============================================================================
# TEST: SNAPSHOTS AND CHANGES
# =============================================================================

class TestReads:

    def test_latest_snapshots(self, client, changed_subject):
        response = client.get(f"/bureau/snapshots/{changed_subject.id}", headers=auth(changed_subject))

        assert response.status_code == 200
        snapshots = response.json()
        assert len(snapshots) == 1
        assert snapshots[0]["score"] == 640
        assert snapshots[0]["changes_count"] == 2

    def test_snapshot_history_and_detail(self, client, changed_subject):
        history = client.get(
            f"/bureau/snapshots/{changed_subject.id}/experian", headers=auth(changed_subject)
        ).json()

        assert [s["score"] for s in history] == [640, 700]
        assert history[0]["previous_snapshot_id"] == history[1]["snapshot_id"]

        detail = client.get(f"/bureau/snapshot/{history[0]['snapshot_id']}", headers=auth(changed_subject))
        assert detail.status_code == 200
        body = detail.json()
        assert body["report"]["score"]["value"] == 640
        assert [c["change_type"] for c in body["changes"]] == ["score_change", "new_negative_item"]

    def test_snapshot_not_found(self, client, staff_user):
        response = client.get("/bureau/snapshot/missing", headers=auth(staff_user))
        assert response.status_code == 404

    def test_snapshot_of_other_subject_is_forbidden(self, client, changed_subject, other_subject):
        history = client.get(
            f"/bureau/snapshots/{changed_subject.id}/experian", headers=auth(changed_subject)
        ).json()

        response = client.get(f"/bureau/snapshot/{history[0]['snapshot_id']}", headers=auth(other_subject))
        assert response.status_code == 403

    def test_change_history_filters(self, client, changed_subject):
        headers = auth(changed_subject)

        everything = client.get(f"/bureau/changes/{changed_subject.id}", headers=headers).json()
        negative = client.get(
            f"/bureau/changes/{changed_subject.id}", params={"category": "negative_item"}, headers=headers
        ).json()

        assert everything["total"] == 2
        assert negative["total"] == 1
        assert negative["changes"][0]["change_type"] == "new_negative_item"
        assert negative["changes"][0]["acknowledged"] is False

    def test_acknowledge(self, client, changed_subject, other_subject):
        headers = auth(changed_subject)
        change_id = client.get(f"/bureau/changes/{changed_subject.id}", headers=headers).json()["changes"][0][
            "change_id"
        ]

        assert client.post(f"/bureau/changes/{change_id}/acknowledge", headers=auth(other_subject)).status_code == 403

        response = client.post(f"/bureau/changes/{change_id}/acknowledge", headers=headers)
        assert response.status_code == 200
        assert response.json()["acknowledged"] is True

        assert client.post("/bureau/changes/missing/acknowledge", headers=headers).status_code == 404

    def test_timeline(self, client, changed_subject):
        response = client.get(f"/bureau/changes/{changed_subject.id}/timeline", headers=auth(changed_subject))

        assert response.status_code == 200
        timeline = response.json()
        assert len(timeline) == 1
        assert timeline[0]["change_count"] == 2
        assert timeline[0]["high_severity"] == 2

    def test_compare_with_one_bureau(self, client, changed_subject):
        response = client.get(f"/bureau/compare/{changed_subject.id}", headers=auth(changed_subject))

        assert response.status_code == 200
        assert response.json()["sufficient_data"] is False


# =============================================================================
# TEST: AUTO-PULL
# =============================================================================

class TestAutoPull:

    def test_get_defaults(self, client, subject):
        response = client.get(f"/bureau/auto-pull/{subject.id}", headers=auth(subject))

        assert response.status_code == 200
        assert response.json()["enabled"] is False

    def test_staff_updates_settings(self, client, subject, staff_user):
        response = client.put(
            f"/bureau/auto-pull/{subject.id}",
            json={"enabled": True, "frequency": "weekly", "bureaus": ["experian"]},
            headers=auth(staff_user),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["enabled"] is True
        assert body["bureaus"] == ["experian"]
        assert body["next_pull_date"] is not None

    def test_client_cannot_update_settings(self, client, subject):
        response = client.put(f"/bureau/auto-pull/{subject.id}", json={"enabled": True}, headers=auth(subject))
        assert response.status_code == 403

    def test_invalid_frequency(self, client, subject, staff_user):
        response = client.put(
            f"/bureau/auto-pull/{subject.id}", json={"enabled": True, "frequency": "daily"}, headers=auth(staff_user)
        )
        assert response.status_code == 400

    def test_unknown_subject(self, client, staff_user):
        response = client.put("/bureau/auto-pull/missing", json={"enabled": True}, headers=auth(staff_user))
        assert response.status_code == 404


class TestScheduler:

    def test_requires_internal_key(self, client):
        assert client.post("/internal/auto-pull/run").status_code == 422
        assert client.post("/internal/auto-pull/run", headers={"X-Internal-Key": "wrong"}).status_code == 403

    def test_run_with_nothing_due(self, client):
        response = client.post("/internal/auto-pull/run", headers={"X-Internal-Key": INTERNAL_API_KEY})

        assert response.status_code == 200
        assert response.json()["processed"] == 0


# =============================================================================
# TEST: SCORE HISTORY
# =============================================================================

class TestScoreHistory:

    def test_scores_newest_first(self, client, db, subject):
        service = ScoreHistoryService(db)
        service.record_score(subject.id, Bureau.EXPERIAN, 640, date(2025, 8, 1))
        service.record_score(subject.id, Bureau.EXPERIAN, 675, date(2025, 9, 1))
        service.record_score(subject.id, Bureau.EQUIFAX, 700, date(2025, 9, 1))
        db.commit()

        everything = client.get(f"/bureau/scores/{subject.id}", headers=auth(subject)).json()
        experian = client.get(
            f"/bureau/scores/{subject.id}", params={"bureau": "experian"}, headers=auth(subject)
        ).json()

        assert len(everything) == 3
        assert [s["score"] for s in experian] == [675, 640]
        assert experian[0]["previous_score"] == 640
        assert experian[0]["score_change"] == 35

    def test_other_subject_is_forbidden(self, client, subject, other_subject):
        response = client.get(f"/bureau/scores/{other_subject.id}", headers=auth(subject))
        assert response.status_code == 403


# =============================================================================
# TEST: BUREAU CONNECTIONS
# =============================================================================

class TestConnections:

    def test_status_without_stored_connections(self, client, staff_user):
        body = client.get("/bureau/status", headers=auth(staff_user)).json()
        assert [entry["connection"] for entry in body] == [None, None, None]

    def test_admin_saves_connection(self, client, db, admin_user):
        response = client.put(
            "/bureau/connections/experian",
            json={
                "api_url": "https://us-api.experian.com",
                "client_id": "exp-client",
                "client_secret": "s3cret",
                "subscriber_code": "SUB1",
            },
            headers=auth(admin_user),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["bureau"] == "experian"
        assert body["client_id"] == "exp-client"
        assert body["client_secret_ref"] == "bureau_experian_secret"
        assert body["updated_by"] == admin_user.id
        assert "s3cret" not in response.text

        row = db.query(BureauConnectionDB).one()
        assert "s3cret" not in json.dumps(row.credentials)
        audit = db.query(ActivityLogDB).one()
        assert audit.entity_type == "bureau_connection"
        assert audit.entity_id == row.id
        assert audit.actor_id == admin_user.id

    def test_status_includes_stored_connection(self, client, admin_user):
        client.put(
            "/bureau/connections/experian",
            json={"api_url": "https://us-api.experian.com", "client_id": "exp-client"},
            headers=auth(admin_user),
        )

        status = {e["bureau"]: e for e in client.get("/bureau/status", headers=auth(admin_user)).json()}

        assert status["experian"]["mode"] == "sandbox"
        assert status["experian"]["connection"]["api_url"] == "https://us-api.experian.com"
        assert status["experian"]["connection"]["is_active"] is True
        assert status["equifax"]["connection"] is None

    def test_second_save_updates_in_place(self, client, db, admin_user):
        client.put("/bureau/connections/equifax", json={"client_id": "first"}, headers=auth(admin_user))
        response = client.put(
            "/bureau/connections/equifax", json={"client_id": "second", "member_number": "M-9"},
            headers=auth(admin_user),
        )

        body = response.json()
        assert body["client_id"] == "second"
        assert body["member_number"] == "M-9"
        # Defaults to the configured provider URL
        assert body["api_url"] == load_bureau_config()[Bureau.EQUIFAX].base_url
        assert db.query(BureauConnectionDB).count() == 1
        assert db.query(ActivityLogDB).count() == 2

    def test_staff_cannot_save_connection(self, client, staff_user):
        response = client.put("/bureau/connections/experian", json={"client_id": "x"}, headers=auth(staff_user))
        assert response.status_code == 403

    def test_unknown_bureau(self, client, admin_user):
        response = client.put("/bureau/connections/innovis", json={}, headers=auth(admin_user))
        assert response.status_code == 422
