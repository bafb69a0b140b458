"""
Tests for Auto-Pull configuration and the scheduled run.

1. Defaults for subjects that were never configured
2. update() validation and next pull scheduling
3. due() selection
4. run_due() pulls through the orchestrator and tracks consecutive failures
"""
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from app.models.db_models import AutoPullConfigDB
from app.models.ssot import Bureau, PermissiblePurpose, PullAllResult, PullOutcome, PullType
from app.services.bureau.auto_pull import AutoPullService
from app.services.bureau.errors import NotFoundError

NOW = datetime(2025, 10, 1, 6, 0)


def pull_result(subject_id, succeeded=(), failed=()):
    result = PullAllResult(subject_id=subject_id)
    for bureau in succeeded:
        result.results[bureau] = PullOutcome(bureau=bureau, success=True)
    for bureau in failed:
        result.results[bureau] = PullOutcome(bureau=bureau, success=False, error="HTTP 503")
    return result


class TestConfiguration:

    def test_defaults_when_unconfigured(self, db, subject):
        config = AutoPullService(db).get(subject.id)

        assert config["enabled"] is False
        assert config["frequency"] == "monthly"
        assert config["bureaus"] == ["experian", "equifax", "transunion"]
        assert config["next_pull_date"] is None

    def test_enable_schedules_next_pull(self, db, subject, staff_user):
        config = AutoPullService(db).update(
            subject.id, enabled=True, frequency="weekly", bureaus=["transunion", "experian"],
            updated_by=staff_user.id, now=NOW,
        )

        assert config["enabled"] is True
        assert config["next_pull_date"] == NOW + timedelta(days=7)
        # Canonical bureau order
        assert config["bureaus"] == ["experian", "transunion"]

        row = db.query(AutoPullConfigDB).one()
        assert row.updated_by == staff_user.id

    def test_update_existing_config(self, db, subject):
        service = AutoPullService(db)
        service.update(subject.id, enabled=True, frequency="monthly", now=NOW)

        config = service.update(subject.id, enabled=False, frequency="quarterly", now=NOW)

        assert config["enabled"] is False
        assert config["next_pull_date"] is None
        assert db.query(AutoPullConfigDB).count() == 1

    @pytest.mark.parametrize("kwargs", [
        {"frequency": "daily"},
        {"bureaus": ["experian", "innovis"]},
        {"bureaus": []},
    ])
    def test_invalid_settings(self, db, subject, kwargs):
        with pytest.raises(ValueError):
            AutoPullService(db).update(subject.id, enabled=True, **kwargs)
        assert db.query(AutoPullConfigDB).count() == 0


class TestDue:

    def test_due_selects_enabled_past_configs(self, db, subject, other_subject, staff_user):
        service = AutoPullService(db)
        service.update(subject.id, enabled=True, frequency="weekly", now=NOW - timedelta(days=8))
        service.update(other_subject.id, enabled=True, frequency="monthly", now=NOW - timedelta(days=8))
        service.update(staff_user.id, enabled=False, now=NOW - timedelta(days=60))

        due = service.due(NOW)

        assert [c.subject_id for c in due] == [subject.id]


class TestRunDue:

    def test_pulls_due_subjects(self, db, subject):
        service = AutoPullService(db)
        service.update(subject.id, enabled=True, frequency="weekly", bureaus=["experian", "equifax"],
                       now=NOW - timedelta(days=7))
        orchestrator = MagicMock()
        orchestrator.pull_all.return_value = pull_result(
            subject.id, succeeded=[Bureau.EXPERIAN], failed=[Bureau.EQUIFAX]
        )

        summary = service.run_due(orchestrator, now=NOW)

        orchestrator.pull_all.assert_called_once_with(
            subject.id,
            requested_by=None,
            bureaus=[Bureau.EXPERIAN, Bureau.EQUIFAX],
            pull_type=PullType.AUTOMATIC,
            permissible_purpose=PermissiblePurpose.ACCOUNT_REVIEW,
        )
        assert summary["processed"] == 1
        assert summary["succeeded"] == 1
        assert summary["results"][0] == {
            "subject_id": subject.id, "succeeded": ["experian"], "failed": ["equifax"],
        }

        config = service.get(subject.id)
        assert config["last_pull_date"] == NOW
        assert config["next_pull_date"] == NOW + timedelta(days=7)
        assert config["consecutive_failures"] == 0

    def test_total_failure_increments_counter(self, db, subject):
        service = AutoPullService(db)
        service.update(subject.id, enabled=True, frequency="weekly", now=NOW - timedelta(days=7))
        orchestrator = MagicMock()
        orchestrator.pull_all.return_value = pull_result(subject.id, failed=list(Bureau))

        service.run_due(orchestrator, now=NOW)
        service.run_due(orchestrator, now=NOW + timedelta(days=7))

        assert service.get(subject.id)["consecutive_failures"] == 2

    def test_success_resets_counter(self, db, subject):
        service = AutoPullService(db)
        service.update(subject.id, enabled=True, frequency="weekly", now=NOW - timedelta(days=7))
        orchestrator = MagicMock()
        orchestrator.pull_all.side_effect = [
            pull_result(subject.id, failed=list(Bureau)),
            pull_result(subject.id, succeeded=[Bureau.TRANSUNION]),
        ]

        service.run_due(orchestrator, now=NOW)
        service.run_due(orchestrator, now=NOW + timedelta(days=7))

        assert service.get(subject.id)["consecutive_failures"] == 0

    def test_pipeline_error_is_recorded_and_run_continues(self, db, subject, other_subject):
        service = AutoPullService(db)
        service.update(subject.id, enabled=True, frequency="weekly", now=NOW - timedelta(days=9))
        service.update(other_subject.id, enabled=True, frequency="weekly", now=NOW - timedelta(days=8))
        orchestrator = MagicMock()
        orchestrator.pull_all.side_effect = [
            NotFoundError(f"Subject {subject.id} not found"),
            pull_result(other_subject.id, succeeded=list(Bureau)),
        ]

        summary = service.run_due(orchestrator, now=NOW)

        assert summary["processed"] == 2
        assert summary["failed"] == 1
        assert "not found" in summary["results"][0]["error"]
        assert service.get(subject.id)["consecutive_failures"] == 1
        assert service.get(other_subject.id)["consecutive_failures"] == 0

    def test_unexpected_error_is_recorded_and_run_continues(self, db, subject, other_subject):
        service = AutoPullService(db)
        service.update(subject.id, enabled=True, frequency="weekly", now=NOW - timedelta(days=9))
        service.update(other_subject.id, enabled=True, frequency="weekly", now=NOW - timedelta(days=8))
        orchestrator = MagicMock()
        orchestrator.pull_all.side_effect = [
            RuntimeError("database is locked"),
            pull_result(other_subject.id, succeeded=[Bureau.EXPERIAN]),
        ]

        summary = service.run_due(orchestrator, now=NOW)

        assert summary["processed"] == 2
        assert summary["failed"] == 1
        assert summary["results"][0]["error"] == "database is locked"
        failed = service.get(subject.id)
        assert failed["consecutive_failures"] == 1
        assert failed["next_pull_date"] == NOW + timedelta(days=7)
        assert service.get(other_subject.id)["last_pull_date"] == NOW

    def test_nothing_due(self, db, subject):
        AutoPullService(db).update(subject.id, enabled=True, frequency="monthly", now=NOW)
        orchestrator = MagicMock()

        summary = AutoPullService(db).run_due(orchestrator, now=NOW)

        assert summary == {"processed": 0, "succeeded": 0, "failed": 0, "results": []}
        orchestrator.pull_all.assert_not_called()
