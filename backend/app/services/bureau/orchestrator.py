"""
Bureau Monitor - Pull Orchestrator

pull_one pipeline for (subject, bureau):
    identity → PullRecord(in_progress) → adapter.pull → normalize
    → SnapshotStore.save → item sync → score history
    → PullRecord(completed) + audit entry

Any stage failure marks the PullRecord failed with the message, is logged,
and is re-raised. pull_all fans the bureaus out on a thread pool, one
database session per branch, isolates failures per bureau, then runs the
cross-bureau analysis when at least two bureaus succeeded.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from ...models.ssot import (
    Bureau, PermissiblePurpose, PullAllResult, PullOutcome, PullType,
)
from .adapters import BureauAdapter, BureauAvailability, bureau_availability, build_adapters
from .change_detector import ChangeThresholds
from .cross_bureau import CrossBureauAnalyzer
from .normalizer import normalize
from .pull_records import PullRecordService
from .score_history import ScoreHistoryService
from .sinks import (
    AuditSink, DbAuditSink, DbItemTracker, DbNotificationSink, DbSubjectProfileService, ItemTracker,
    NotificationSink, SubjectProfileService,
)
from .snapshot_store import SnapshotStore

logger = logging.getLogger(__name__)


class PullOrchestrator:
    """
    Coordinates adapter calls and the snapshot pipeline.

    session_factory is called once per pull so every branch of pull_all
    owns its session.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        adapters: Optional[Dict[Bureau, BureauAdapter]] = None,
        profiles: Optional[SubjectProfileService] = None,
        item_tracker: Optional[ItemTracker] = None,
        notification_sink: Optional[NotificationSink] = None,
        audit_sink: Optional[AuditSink] = None,
        thresholds: Optional[ChangeThresholds] = None,
    ):
        self.session_factory = session_factory
        self.adapters = adapters if adapters is not None else build_adapters()
        self.profiles = profiles or DbSubjectProfileService()
        self.item_tracker = item_tracker or DbItemTracker()
        self.notification_sink = notification_sink or DbNotificationSink(session_factory)
        self.audit_sink = audit_sink or DbAuditSink()
        self.thresholds = thresholds or ChangeThresholds.from_env()

    def bureau_availability(self) -> List[BureauAvailability]:
        """Configured mode per bureau, corrected for adapters injected at construction."""
        availability = bureau_availability()
        for entry in availability:
            adapter = self.adapters.get(entry.bureau)
            if adapter is not None:
                entry.mode = "live" if adapter.is_live else "sandbox"
        return availability

    # =========================================================================
    # SINGLE BUREAU
    # =========================================================================

    def pull_one(
        self,
        subject_id: str,
        bureau: Bureau,
        requested_by: Optional[str] = None,
        pull_type: PullType = PullType.MANUAL,
        permissible_purpose: PermissiblePurpose = PermissiblePurpose.WRITTEN_INSTRUCTION,
    ) -> PullOutcome:
        """
        Run the full pipeline for one bureau.

        Raises:
            NotFoundError: unknown subject (no PullRecord is created)
            BureauError / any stage exception: after the PullRecord is marked failed
        """
        bureau = Bureau(bureau)
        db = self.session_factory()
        try:
            return self._pull_one(db, subject_id, bureau, requested_by, pull_type, permissible_purpose)
        finally:
            db.close()

    def _pull_one(
        self,
        db: Session,
        subject_id: str,
        bureau: Bureau,
        requested_by: Optional[str],
        pull_type: PullType,
        permissible_purpose: PermissiblePurpose,
    ) -> PullOutcome:
        identity = self.profiles.get_identity(db, subject_id)

        adapter = self.adapters.get(bureau)
        if adapter is None:
            raise ValueError(f"No adapter registered for {bureau.value}")

        records = PullRecordService(db)
        record = records.start(subject_id, bureau, pull_type, requested_by, permissible_purpose)
        pull_id = record.id
        db.commit()
        logger.info(f"Pull {pull_id} started: {bureau.value} for subject {subject_id}")

        try:
            raw = adapter.pull(identity, permissible_purpose)
            report = normalize(bureau, raw)

            store = SnapshotStore(db, notification_sink=self.notification_sink, thresholds=self.thresholds)
            snapshot = store.save(subject_id, bureau, report, pull_id)

            self.item_tracker.upsert(db, subject_id, bureau, report.negative_items)
            ScoreHistoryService(db).record_score(subject_id, bureau, report.score.value, report.report_date)

            records.complete(pull_id, report.report_id, sandbox=report.sandbox)
            self.audit_sink.record(
                db,
                requested_by,
                "bureau_pull",
                snapshot.snapshot_id,
                f"Pulled {bureau.value} report {report.report_id} "
                f"({'sandbox' if report.sandbox else 'live'}, {snapshot.changes_count} changes)",
            )
            db.commit()
        except Exception as e:
            db.rollback()
            records.fail(pull_id, str(e))
            db.commit()
            logger.error(f"Pull {pull_id} failed: {bureau.value} for subject {subject_id}: {e}")
            raise

        logger.info(
            f"Pull {pull_id} completed: {bureau.value} report {report.report_id}, "
            f"{snapshot.changes_count} changes"
        )
        return PullOutcome(
            bureau=bureau,
            success=True,
            pull_id=pull_id,
            report_id=report.report_id,
            snapshot_id=snapshot.snapshot_id,
            sandbox=report.sandbox,
            changes=snapshot.changes,
        )

    # =========================================================================
    # ALL BUREAUS
    # =========================================================================

    def _pull_isolated(
        self,
        subject_id: str,
        bureau: Bureau,
        requested_by: Optional[str],
        pull_type: PullType,
        permissible_purpose: PermissiblePurpose,
    ) -> PullOutcome:
        try:
            return self.pull_one(subject_id, bureau, requested_by, pull_type, permissible_purpose)
        except Exception as e:
            # Already recorded on the PullRecord and logged by pull_one
            return PullOutcome(bureau=bureau, success=False, error=str(e))

    def pull_all(
        self,
        subject_id: str,
        requested_by: Optional[str] = None,
        bureaus: Optional[Iterable[Bureau]] = None,
        pull_type: PullType = PullType.MANUAL,
        permissible_purpose: PermissiblePurpose = PermissiblePurpose.WRITTEN_INSTRUCTION,
    ) -> PullAllResult:
        """
        Pull every bureau (or the given subset) concurrently.

        Raises:
            NotFoundError: unknown subject, before any bureau is called
        """
        targets = [Bureau(b) for b in (bureaus or list(Bureau))]
        if not targets:
            raise ValueError("At least one bureau is required")

        db = self.session_factory()
        try:
            self.profiles.get_identity(db, subject_id)
        finally:
            db.close()

        result = PullAllResult(subject_id=subject_id)
        with ThreadPoolExecutor(max_workers=len(targets), thread_name_prefix="bureau-pull") as pool:
            futures = {
                bureau: pool.submit(
                    self._pull_isolated, subject_id, bureau, requested_by, pull_type, permissible_purpose
                )
                for bureau in targets
            }
            for bureau, future in futures.items():
                result.results[bureau] = future.result()

        succeeded = result.succeeded
        logger.info(
            f"Pull-all for {subject_id}: {len(succeeded)}/{len(targets)} bureaus succeeded"
        )

        if len(succeeded) >= 2:
            db = self.session_factory()
            try:
                result.cross_bureau_analysis = CrossBureauAnalyzer(db).analyze(subject_id)
            finally:
                db.close()

        return result
