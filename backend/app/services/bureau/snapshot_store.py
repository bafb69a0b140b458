"""
Bureau Monitor - Snapshot Store

Persists each normalized report as an immutable snapshot and keeps the
per-(subject, bureau) predecessor chain intact under concurrent pulls.

save() in one transaction:
1. Lock the (subject, bureau) head row (created on first pull)
2. Read the current latest snapshot as the predecessor
3. Insert the new snapshot and its detected changes
4. Advance the head

The head lock serializes writers on PostgreSQL. Where row locks are not
available, the unique predecessor reference and the head primary key turn a
lost race into an IntegrityError; the transaction is rolled back and retried.
"""
import logging
from typing import Dict, List, Optional
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...models.db_models import ChangeDB, SnapshotDB, SnapshotHeadDB, utcnow
from ...models.ssot import (
    Bureau, Change, Report, Severity, Snapshot, change_from_dict, change_to_dict,
    report_from_dict, report_to_dict,
)
from .change_detector import ChangeThresholds, detect_changes
from .sinks import NotificationSink

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3


def _change_from_row(row: ChangeDB) -> Change:
    return change_from_dict({
        "change_type": row.change_type,
        "category": row.category,
        "severity": row.severity,
        "description": row.description,
        "previous_value": row.previous_value,
        "current_value": row.current_value,
        "delta": row.delta,
        "is_positive": row.is_positive,
    })


def snapshot_from_row(row: SnapshotDB, report: Optional[Report] = None,
                      changes: Optional[List[Change]] = None) -> Snapshot:
    return Snapshot(
        snapshot_id=row.id,
        subject_id=row.subject_id,
        bureau=Bureau(row.bureau),
        report=report or report_from_dict(row.report_data),
        previous_snapshot_id=row.previous_snapshot_id,
        pull_id=row.pull_id,
        changes_count=row.changes_count or 0,
        created_at=row.created_at,
        changes=changes if changes is not None else [_change_from_row(c) for c in row.changes],
    )


class SnapshotStore:
    """
    Snapshot persistence for one database session.

    Usage:
        store = SnapshotStore(db, notification_sink=DbNotificationSink(SessionLocal))
        snapshot = store.save(subject_id, Bureau.EXPERIAN, report, pull_id)
    """

    def __init__(
        self,
        db: Session,
        notification_sink: Optional[NotificationSink] = None,
        thresholds: Optional[ChangeThresholds] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self.db = db
        self.notification_sink = notification_sink
        self.thresholds = thresholds or ChangeThresholds.from_env()
        self.max_attempts = max_attempts

    # =========================================================================
    # WRITE
    # =========================================================================

    def save(self, subject_id: str, bureau: Bureau, report: Report, pull_id: Optional[str] = None) -> Snapshot:
        """
        Persist report as the new latest snapshot and commit.

        Raises:
            IntegrityError: the race was lost max_attempts times in a row
        """
        bureau = Bureau(bureau)
        for attempt in range(1, self.max_attempts + 1):
            try:
                snapshot = self._write(subject_id, bureau, report, pull_id)
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                if attempt >= self.max_attempts:
                    logger.error(
                        f"Snapshot save for {subject_id}/{bureau.value} lost the race {attempt} times; giving up"
                    )
                    raise
                logger.warning(
                    f"Concurrent snapshot write for {subject_id}/{bureau.value}; retrying (attempt {attempt + 1})"
                )
                continue

            logger.info(
                f"Saved snapshot {snapshot.snapshot_id} for {subject_id}/{bureau.value} "
                f"with {snapshot.changes_count} changes"
            )
            self._notify_high_severity(snapshot)
            return snapshot

        # max_attempts < 1
        raise ValueError("max_attempts must be at least 1")

    def _lock_head(self, subject_id: str, bureau: Bureau) -> SnapshotHeadDB:
        head = self.db.query(SnapshotHeadDB).filter(
            SnapshotHeadDB.subject_id == subject_id,
            SnapshotHeadDB.bureau == bureau.value,
        ).with_for_update().first()

        if head is None:
            head = SnapshotHeadDB(subject_id=subject_id, bureau=bureau.value, latest_snapshot_id=None)
            self.db.add(head)
            # A concurrent first pull collides on the primary key here
            self.db.flush()
        return head

    def _write(self, subject_id: str, bureau: Bureau, report: Report, pull_id: Optional[str]) -> Snapshot:
        head = self._lock_head(subject_id, bureau)

        previous_row = None
        if head.latest_snapshot_id:
            previous_row = self.db.query(SnapshotDB).filter(SnapshotDB.id == head.latest_snapshot_id).first()
        previous_report = report_from_dict(previous_row.report_data) if previous_row else None
        previous_id = previous_row.id if previous_row else None

        changes = detect_changes(previous_report, report, self.thresholds)

        row = SnapshotDB(
            id=str(uuid4()),
            subject_id=subject_id,
            bureau=bureau.value,
            report_id=report.report_id,
            report_date=report.report_date,
            score=report.score.value,
            sandbox=report.sandbox,
            report_data=report_to_dict(report),
            pull_id=pull_id,
            previous_snapshot_id=previous_id,
            changes_count=len(changes),
            created_at=utcnow(),
        )
        self.db.add(row)
        self.db.flush()

        for position, change in enumerate(changes):
            data = change_to_dict(change)
            self.db.add(ChangeDB(
                id=str(uuid4()),
                subject_id=subject_id,
                bureau=bureau.value,
                snapshot_id=row.id,
                previous_snapshot_id=previous_id,
                position=position,
                change_type=data["change_type"],
                category=data["category"],
                severity=data["severity"],
                description=data["description"],
                previous_value=data["previous_value"],
                current_value=data["current_value"],
                delta=data["delta"],
                is_positive=data["is_positive"],
                created_at=row.created_at,
            ))

        head.latest_snapshot_id = row.id
        head.updated_at = utcnow()
        self.db.flush()

        return snapshot_from_row(row, report=report, changes=changes)

    def _notify_high_severity(self, snapshot: Snapshot) -> None:
        high = [c for c in snapshot.changes if c.severity == Severity.HIGH]
        if not high or self.notification_sink is None:
            return
        try:
            self.notification_sink.notify(
                snapshot.subject_id,
                f"{len(high)} important change(s) detected on your {snapshot.bureau.value} report",
                "\n".join(c.description for c in high),
            )
        except Exception as e:
            # Notification is fire-and-forget; the snapshot is already committed
            logger.warning(f"Notification for snapshot {snapshot.snapshot_id} failed: {e}")

    # =========================================================================
    # READ
    # =========================================================================

    def _head_rows(self, subject_id: str) -> List[SnapshotHeadDB]:
        return self.db.query(SnapshotHeadDB).filter(
            SnapshotHeadDB.subject_id == subject_id,
            SnapshotHeadDB.latest_snapshot_id.isnot(None),
        ).all()

    def _row(self, snapshot_id: Optional[str]) -> Optional[SnapshotDB]:
        if not snapshot_id:
            return None
        return self.db.query(SnapshotDB).filter(SnapshotDB.id == snapshot_id).first()

    def latest(self, subject_id: str, bureau: Bureau) -> Optional[Snapshot]:
        head = self.db.query(SnapshotHeadDB).filter(
            SnapshotHeadDB.subject_id == subject_id,
            SnapshotHeadDB.bureau == Bureau(bureau).value,
        ).first()
        row = self._row(head.latest_snapshot_id) if head else None
        return snapshot_from_row(row) if row else None

    def latest_snapshots(self, subject_id: str) -> Dict[Bureau, Snapshot]:
        """Latest snapshot per bureau for a subject (bureaus never pulled are absent)."""
        result = {}
        for head in self._head_rows(subject_id):
            row = self._row(head.latest_snapshot_id)
            if row:
                result[Bureau(head.bureau)] = snapshot_from_row(row)
        return result

    def history(self, subject_id: str, bureau: Bureau, limit: int = 10) -> List[Snapshot]:
        """Newest-first walk of the predecessor chain."""
        latest = self.latest(subject_id, bureau)
        if latest is None:
            return []

        snapshots = [latest]
        next_id = latest.previous_snapshot_id
        while next_id and len(snapshots) < limit:
            row = self._row(next_id)
            if row is None:
                break
            snapshots.append(snapshot_from_row(row))
            next_id = row.previous_snapshot_id
        return snapshots

    def get(self, snapshot_id: str) -> Optional[Snapshot]:
        row = self._row(snapshot_id)
        return snapshot_from_row(row) if row else None

    def recompute_changes(self, snapshot_id: str) -> List[Change]:
        """Re-run detection against the stored predecessor. Writes nothing."""
        row = self._row(snapshot_id)
        if row is None:
            return []
        previous_row = self._row(row.previous_snapshot_id)
        previous_report = report_from_dict(previous_row.report_data) if previous_row else None
        return detect_changes(previous_report, report_from_dict(row.report_data), self.thresholds)
