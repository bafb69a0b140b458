"""
Bureau Monitor - Pull Audit Trail

One PullRecord per attempt. Created in_progress at pull start and updated
exactly once, to completed or failed.
"""
import logging
from typing import List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.db_models import PullRecordDB, utcnow
from ...models.ssot import Bureau, PermissiblePurpose, PullStatus, PullType
from .errors import NotFoundError

logger = logging.getLogger(__name__)


class PullRecordService:

    def __init__(self, db: Session):
        self.db = db

    def start(
        self,
        subject_id: str,
        bureau: Bureau,
        pull_type: PullType = PullType.MANUAL,
        requested_by: Optional[str] = None,
        permissible_purpose: PermissiblePurpose = PermissiblePurpose.WRITTEN_INSTRUCTION,
    ) -> PullRecordDB:
        record = PullRecordDB(
            id=str(uuid4()),
            subject_id=subject_id,
            bureau=Bureau(bureau).value,
            pull_type=PullType(pull_type).value,
            status=PullStatus.IN_PROGRESS.value,
            requested_by=requested_by,
            permissible_purpose=PermissiblePurpose(permissible_purpose).value,
            started_at=utcnow(),
        )
        self.db.add(record)
        self.db.flush()
        return record

    def _open_record(self, pull_id: str) -> PullRecordDB:
        record = self.db.query(PullRecordDB).filter(PullRecordDB.id == pull_id).first()
        if not record:
            raise NotFoundError(f"Pull record {pull_id} not found")
        if record.status != PullStatus.IN_PROGRESS.value:
            raise ValueError(f"Pull record {pull_id} is already {record.status}")
        return record

    def complete(self, pull_id: str, report_id: str, sandbox: bool = False) -> PullRecordDB:
        record = self._open_record(pull_id)
        record.status = PullStatus.COMPLETED.value
        record.report_id = report_id
        record.sandbox = sandbox
        record.completed_at = utcnow()
        self.db.flush()
        return record

    def fail(self, pull_id: str, error_message: str) -> PullRecordDB:
        record = self._open_record(pull_id)
        record.status = PullStatus.FAILED.value
        record.error_message = error_message
        record.completed_at = utcnow()
        self.db.flush()
        return record

    def history(self, subject_id: str, limit: int = 20) -> List[PullRecordDB]:
        """Newest first."""
        return self.db.query(PullRecordDB).filter(
            PullRecordDB.subject_id == subject_id
        ).order_by(PullRecordDB.created_at.desc()).limit(limit).all()
