"""
Bureau Monitor - Change History

Read side of the persisted changes: filtered/paginated queries, a weekly
timeline per bureau, and acknowledgement (the only mutable field).
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy.orm import Session

from ...models.db_models import ChangeDB, utcnow
from ...models.ssot import Bureau, ChangeCategory, Severity
from .errors import NotFoundError

logger = logging.getLogger(__name__)


class ChangeHistoryService:

    def __init__(self, db: Session):
        self.db = db

    def query(
        self,
        subject_id: str,
        bureau: Optional[Bureau] = None,
        severity: Optional[Severity] = None,
        category: Optional[ChangeCategory] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Dict[str, Any]:
        """Newest first; within one snapshot, detector order."""
        query = self.db.query(ChangeDB).filter(ChangeDB.subject_id == subject_id)
        if bureau:
            query = query.filter(ChangeDB.bureau == Bureau(bureau).value)
        if severity:
            query = query.filter(ChangeDB.severity == Severity(severity).value)
        if category:
            query = query.filter(ChangeDB.category == ChangeCategory(category).value)

        total = query.count()
        changes = query.order_by(
            ChangeDB.created_at.desc(), ChangeDB.snapshot_id, ChangeDB.position
        ).offset(offset).limit(limit).all()

        return {"changes": changes, "total": total, "limit": limit, "offset": offset}

    def timeline(self, subject_id: str, months: int = 12, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Changes aggregated per ISO week (starting Monday) and bureau, newest week first.
        """
        now = now or utcnow()
        cutoff = now - relativedelta(months=months)
        rows = self.db.query(ChangeDB).filter(
            ChangeDB.subject_id == subject_id,
            ChangeDB.created_at > cutoff,
        ).all()

        buckets: Dict[tuple, Dict[str, Any]] = {}
        for row in rows:
            week = (row.created_at - timedelta(days=row.created_at.weekday())).date()
            key = (week, row.bureau)
            if key not in buckets:
                buckets[key] = {
                    "week": week,
                    "bureau": row.bureau,
                    "change_count": 0,
                    "high_severity": 0,
                    "positive_changes": 0,
                    "change_types": set(),
                }
            bucket = buckets[key]
            bucket["change_count"] += 1
            if row.severity == Severity.HIGH.value:
                bucket["high_severity"] += 1
            if row.is_positive:
                bucket["positive_changes"] += 1
            bucket["change_types"].add(row.change_type)

        timeline = []
        for (week, bureau) in sorted(buckets, key=lambda k: (k[0], k[1]), reverse=True):
            bucket = buckets[(week, bureau)]
            bucket["change_types"] = sorted(bucket["change_types"])
            timeline.append(bucket)
        return timeline

    def get(self, change_id: str) -> ChangeDB:
        change = self.db.query(ChangeDB).filter(ChangeDB.id == change_id).first()
        if not change:
            raise NotFoundError(f"Change {change_id} not found")
        return change

    def acknowledge(self, change_id: str, user_id: str) -> ChangeDB:
        """Mark a change as seen. Idempotent; the first acknowledgement wins."""
        change = self.get(change_id)
        if not change.acknowledged:
            change.acknowledged = True
            change.acknowledged_at = utcnow()
            change.acknowledged_by = user_id
            self.db.commit()
            logger.info(f"Change {change_id} acknowledged by {user_id}")
        return change
