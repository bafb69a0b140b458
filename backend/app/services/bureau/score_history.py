"""
Bureau Monitor - Score History

Every pulled score lands in credit_scores, one row per
(subject, bureau, report date), with the previous score and the delta.
"""
import logging
from datetime import date
from typing import List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.db_models import ScoreHistoryDB, utcnow
from ...models.ssot import Bureau

logger = logging.getLogger(__name__)


class ScoreHistoryService:

    def __init__(self, db: Session):
        self.db = db

    def _previous(self, subject_id: str, bureau: str, before: date) -> Optional[ScoreHistoryDB]:
        return self.db.query(ScoreHistoryDB).filter(
            ScoreHistoryDB.subject_id == subject_id,
            ScoreHistoryDB.bureau == bureau,
            ScoreHistoryDB.score_date < before,
        ).order_by(ScoreHistoryDB.score_date.desc()).first()

    def record_score(self, subject_id: str, bureau: Bureau, score: Optional[int],
                     score_date: date) -> Optional[ScoreHistoryDB]:
        """
        Record a score for a report date.

        A second pull on the same date updates the row only when the score
        moved. Reports without a score are not recorded.
        """
        if score is None:
            return None
        bureau_value = Bureau(bureau).value

        existing = self.db.query(ScoreHistoryDB).filter(
            ScoreHistoryDB.subject_id == subject_id,
            ScoreHistoryDB.bureau == bureau_value,
            ScoreHistoryDB.score_date == score_date,
        ).first()

        if existing:
            if existing.score != score:
                existing.score = score
                if existing.previous_score is not None:
                    existing.score_change = score - existing.previous_score
                existing.updated_at = utcnow()
                self.db.flush()
            return existing

        previous = self._previous(subject_id, bureau_value, score_date)
        row = ScoreHistoryDB(
            id=str(uuid4()),
            subject_id=subject_id,
            bureau=bureau_value,
            score=score,
            score_date=score_date,
            previous_score=previous.score if previous else None,
            score_change=score - previous.score if previous else None,
            data_source="bureau_import",
        )
        self.db.add(row)
        self.db.flush()
        logger.info(f"Recorded {bureau_value} score {score} for {subject_id} on {score_date}")
        return row

    def history(self, subject_id: str, bureau: Optional[Bureau] = None, limit: int = 50) -> List[ScoreHistoryDB]:
        query = self.db.query(ScoreHistoryDB).filter(ScoreHistoryDB.subject_id == subject_id)
        if bureau:
            query = query.filter(ScoreHistoryDB.bureau == Bureau(bureau).value)
        return query.order_by(ScoreHistoryDB.score_date.desc()).limit(limit).all()
