"""
Tests for the Snapshot Store.

1. First save has no predecessor and no changes
2. Subsequent saves chain to the previous snapshot and persist changes
3. history / get / latest_snapshots reads
4. recompute_changes re-runs detection without writing
5. High-severity notifications, and notification failures not failing the save
6. A lost race on the predecessor is rolled back and retried
"""
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import IntegrityError

from app.models.db_models import ChangeDB, SnapshotDB, SnapshotHeadDB
from app.models.ssot import Bureau, ChangeType, Severity
from app.services.bureau import snapshot_store as store_module
from app.services.bureau.change_detector import ChangeThresholds
from app.services.bureau.snapshot_store import SnapshotStore


@pytest.fixture
def store(db):
    return SnapshotStore(db, thresholds=ChangeThresholds())


# =============================================================================
# TEST: SAVE AND CHAIN
# =============================================================================

class TestSave:

    def test_first_snapshot_has_no_predecessor(self, store, db, subject, make_report):
        snapshot = store.save(subject.id, Bureau.EXPERIAN, make_report(score=650))

        assert snapshot.previous_snapshot_id is None
        assert snapshot.changes == []
        assert snapshot.changes_count == 0
        assert db.query(SnapshotDB).count() == 1
        head = db.query(SnapshotHeadDB).one()
        assert head.latest_snapshot_id == snapshot.snapshot_id

    def test_second_snapshot_chains_and_records_changes(self, store, db, subject, make_report):
        first = store.save(subject.id, Bureau.EXPERIAN, make_report(score=620))
        second = store.save(subject.id, Bureau.EXPERIAN, make_report(score=580))

        assert second.previous_snapshot_id == first.snapshot_id
        assert second.changes_count == 1
        assert second.changes[0].change_type == ChangeType.SCORE_CHANGE

        rows = db.query(ChangeDB).all()
        assert len(rows) == 1
        assert rows[0].snapshot_id == second.snapshot_id
        assert rows[0].previous_snapshot_id == first.snapshot_id
        assert rows[0].severity == "high"
        assert rows[0].delta == -40

    def test_report_is_stored_verbatim(self, store, subject, make_report, factories):
        report = make_report(score=700, accounts=[factories.account(limit=5000)],
                             negative_items=[factories.negative_item()])
        saved = store.save(subject.id, Bureau.EXPERIAN, report, pull_id=None)

        loaded = store.get(saved.snapshot_id)

        assert loaded.report == report
        assert loaded.report.summary.utilization_rate == 20.0

    def test_bureaus_chain_independently(self, store, subject, make_report):
        experian = store.save(subject.id, Bureau.EXPERIAN, make_report(score=700))
        equifax = store.save(subject.id, Bureau.EQUIFAX, make_report(score=600, bureau=Bureau.EQUIFAX))

        assert equifax.previous_snapshot_id is None
        assert equifax.changes == []
        assert store.latest(subject.id, Bureau.EXPERIAN).snapshot_id == experian.snapshot_id

    def test_subjects_chain_independently(self, store, subject, other_subject, make_report):
        store.save(subject.id, Bureau.EXPERIAN, make_report(score=700))
        other = store.save(other_subject.id, Bureau.EXPERIAN, make_report(score=500))

        assert other.previous_snapshot_id is None


# =============================================================================
# TEST: READS
# =============================================================================

class TestReads:

    def test_history_is_newest_first(self, store, subject, make_report):
        ids = [store.save(subject.id, Bureau.EXPERIAN, make_report(score=s)).snapshot_id
               for s in (600, 610, 620, 630)]

        history = store.history(subject.id, Bureau.EXPERIAN)

        assert [s.snapshot_id for s in history] == list(reversed(ids))
        assert [s.report.score.value for s in history] == [630, 620, 610, 600]

    def test_history_respects_limit(self, store, subject, make_report):
        for score in (600, 610, 620):
            store.save(subject.id, Bureau.EXPERIAN, make_report(score=score))

        history = store.history(subject.id, Bureau.EXPERIAN, limit=2)

        assert [s.report.score.value for s in history] == [620, 610]

    def test_history_for_unknown_pair_is_empty(self, store, subject):
        assert store.history(subject.id, Bureau.TRANSUNION) == []
        assert store.latest(subject.id, Bureau.TRANSUNION) is None

    def test_get_unknown_snapshot(self, store):
        assert store.get("missing") is None

    def test_get_includes_persisted_changes(self, store, subject, make_report):
        store.save(subject.id, Bureau.EXPERIAN, make_report(score=620))
        second = store.save(subject.id, Bureau.EXPERIAN, make_report(score=655))

        loaded = store.get(second.snapshot_id)

        assert loaded.changes == second.changes
        assert loaded.changes[0].severity == Severity.MEDIUM

    def test_latest_snapshots(self, store, subject, make_report):
        store.save(subject.id, Bureau.EXPERIAN, make_report(score=600))
        newest = store.save(subject.id, Bureau.EXPERIAN, make_report(score=640))
        store.save(subject.id, Bureau.TRANSUNION, make_report(score=700, bureau=Bureau.TRANSUNION))

        latest = store.latest_snapshots(subject.id)

        assert set(latest) == {Bureau.EXPERIAN, Bureau.TRANSUNION}
        assert latest[Bureau.EXPERIAN].snapshot_id == newest.snapshot_id


# =============================================================================
# TEST: RECOMPUTE
# =============================================================================

class TestRecompute:

    def test_recompute_matches_stored_changes(self, store, db, subject, make_report, factories):
        store.save(subject.id, Bureau.EXPERIAN, make_report(score=700))
        second = store.save(subject.id, Bureau.EXPERIAN, make_report(
            score=650, negative_items=[factories.negative_item()]
        ))

        recomputed = store.recompute_changes(second.snapshot_id)

        assert recomputed == second.changes
        assert db.query(ChangeDB).count() == len(second.changes)

    def test_recompute_with_new_thresholds(self, db, subject, make_report):
        SnapshotStore(db, thresholds=ChangeThresholds()).save(subject.id, Bureau.EXPERIAN, make_report(score=620))
        second = SnapshotStore(db, thresholds=ChangeThresholds()).save(
            subject.id, Bureau.EXPERIAN, make_report(score=655)
        )

        strict = SnapshotStore(db, thresholds=ChangeThresholds(score_high_delta=30))
        recomputed = strict.recompute_changes(second.snapshot_id)

        assert second.changes[0].severity == Severity.MEDIUM
        assert recomputed[0].severity == Severity.HIGH

    def test_recompute_first_snapshot_is_empty(self, store, subject, make_report):
        first = store.save(subject.id, Bureau.EXPERIAN, make_report(score=700))
        assert store.recompute_changes(first.snapshot_id) == []

    def test_recompute_unknown_snapshot(self, store):
        assert store.recompute_changes("missing") == []


# =============================================================================
# TEST: NOTIFICATIONS
# =============================================================================

class TestNotifications:

    def test_high_severity_change_notifies(self, db, subject, make_report):
        sink = MagicMock()
        store = SnapshotStore(db, notification_sink=sink, thresholds=ChangeThresholds())

        store.save(subject.id, Bureau.EXPERIAN, make_report(score=700))
        store.save(subject.id, Bureau.EXPERIAN, make_report(score=640))

        sink.notify.assert_called_once()
        subject_id, title, body = sink.notify.call_args[0]
        assert subject_id == subject.id
        assert "experian" in title
        assert "Credit score decreased by 60 points" in body

    def test_medium_changes_do_not_notify(self, db, subject, make_report):
        sink = MagicMock()
        store = SnapshotStore(db, notification_sink=sink, thresholds=ChangeThresholds())

        store.save(subject.id, Bureau.EXPERIAN, make_report(score=700))
        store.save(subject.id, Bureau.EXPERIAN, make_report(score=680))

        sink.notify.assert_not_called()

    def test_notification_failure_does_not_fail_save(self, db, subject, make_report):
        sink = MagicMock()
        sink.notify.side_effect = RuntimeError("mail queue down")
        store = SnapshotStore(db, notification_sink=sink, thresholds=ChangeThresholds())

        store.save(subject.id, Bureau.EXPERIAN, make_report(score=700))
        second = store.save(subject.id, Bureau.EXPERIAN, make_report(score=600))

        assert store.latest(subject.id, Bureau.EXPERIAN).snapshot_id == second.snapshot_id


# =============================================================================
# TEST: CONCURRENT WRITERS
# =============================================================================

class TestConcurrentSave:
    """
    A second writer commits between our predecessor read and our insert.
    The interleaving is forced by running the competing save from inside
    change detection.
    """

    def _race_once(self, monkeypatch, session_factory, subject_id, report):
        real_detect = store_module.detect_changes
        state = {"raced": False}

        def racing_detect(previous, current, thresholds):
            if not state["raced"]:
                state["raced"] = True
                competitor = session_factory()
                try:
                    SnapshotStore(competitor, thresholds=ChangeThresholds()).save(
                        subject_id, Bureau.EXPERIAN, report
                    )
                finally:
                    competitor.close()
            return real_detect(previous, current, thresholds)

        monkeypatch.setattr(store_module, "detect_changes", racing_detect)

    def test_lost_race_is_retried_onto_the_new_head(self, monkeypatch, db, session_factory, subject,
                                                    make_report):
        store = SnapshotStore(db, thresholds=ChangeThresholds())
        base = store.save(subject.id, Bureau.EXPERIAN, make_report(score=600))

        self._race_once(monkeypatch, session_factory, subject.id, make_report(score=610))
        ours = store.save(subject.id, Bureau.EXPERIAN, make_report(score=620))

        rows = db.query(SnapshotDB).all()
        assert len(rows) == 3
        predecessors = [r.previous_snapshot_id for r in rows if r.previous_snapshot_id]
        assert len(predecessors) == len(set(predecessors)) == 2

        competitor = next(r for r in rows if r.score == 610)
        assert competitor.previous_snapshot_id == base.snapshot_id
        assert ours.previous_snapshot_id == competitor.id
        # Changes were computed against the competitor's report, not the stale one
        assert ours.changes[0].previous_value == 610
        assert store.latest(subject.id, Bureau.EXPERIAN).snapshot_id == ours.snapshot_id

    def test_gives_up_after_max_attempts(self, monkeypatch, db, session_factory, subject, make_report):
        store = SnapshotStore(db, thresholds=ChangeThresholds(), max_attempts=1)
        store.save(subject.id, Bureau.EXPERIAN, make_report(score=600))

        self._race_once(monkeypatch, session_factory, subject.id, make_report(score=610))
        with pytest.raises(IntegrityError):
            store.save(subject.id, Bureau.EXPERIAN, make_report(score=620))

        # The competitor's snapshot is intact and ours left nothing behind
        assert db.query(SnapshotDB).count() == 2
        assert store.latest(subject.id, Bureau.EXPERIAN).report.score.value == 610
