"""
Bureau Monitor - Auto-Pull Scheduling

Per-subject configuration for automatic pulls and the job that runs the
ones that are due. Invoked by the internal scheduler endpoint.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.db_models import AutoPullConfigDB, utcnow
from ...models.ssot import Bureau, PermissiblePurpose, PullType
from .errors import BureauError

logger = logging.getLogger(__name__)

FREQUENCY_DAYS = {
    "weekly": 7,
    "biweekly": 14,
    "monthly": 30,
    "quarterly": 90,
}

DEFAULT_FREQUENCY = "monthly"
ALL_BUREAUS = [b.value for b in Bureau]


def config_to_dict(config: Optional[AutoPullConfigDB], subject_id: str) -> Dict[str, Any]:
    if config is None:
        return {
            "subject_id": subject_id,
            "enabled": False,
            "frequency": DEFAULT_FREQUENCY,
            "bureaus": list(ALL_BUREAUS),
            "next_pull_date": None,
            "last_pull_date": None,
            "consecutive_failures": 0,
        }
    return {
        "subject_id": config.subject_id,
        "enabled": bool(config.enabled),
        "frequency": config.frequency,
        "bureaus": list(config.bureaus or []),
        "next_pull_date": config.next_pull_date,
        "last_pull_date": config.last_pull_date,
        "consecutive_failures": config.consecutive_failures or 0,
    }


class AutoPullService:

    def __init__(self, db: Session):
        self.db = db

    def _config(self, subject_id: str) -> Optional[AutoPullConfigDB]:
        return self.db.query(AutoPullConfigDB).filter(AutoPullConfigDB.subject_id == subject_id).first()

    def get(self, subject_id: str) -> Dict[str, Any]:
        """Current settings, or the defaults when never configured."""
        return config_to_dict(self._config(subject_id), subject_id)

    def update(
        self,
        subject_id: str,
        enabled: bool,
        frequency: str = DEFAULT_FREQUENCY,
        bureaus: Optional[Iterable[str]] = None,
        updated_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Save settings. next_pull_date = now + frequency when enabled.

        Raises:
            ValueError: unknown frequency or bureau
        """
        if frequency not in FREQUENCY_DAYS:
            raise ValueError(f"Invalid frequency '{frequency}'. Must be one of: {', '.join(FREQUENCY_DAYS)}")

        selected = list(bureaus) if bureaus is not None else list(ALL_BUREAUS)
        invalid = [b for b in selected if b not in ALL_BUREAUS]
        if invalid:
            raise ValueError(f"Invalid bureaus: {', '.join(invalid)}")
        if not selected:
            raise ValueError("At least one bureau is required")
        # Keep canonical order, drop duplicates
        selected = [b for b in ALL_BUREAUS if b in selected]

        now = now or utcnow()
        next_pull = now + timedelta(days=FREQUENCY_DAYS[frequency]) if enabled else None

        config = self._config(subject_id)
        if config is None:
            config = AutoPullConfigDB(id=str(uuid4()), subject_id=subject_id, consecutive_failures=0)
            self.db.add(config)
        config.enabled = enabled
        config.frequency = frequency
        config.bureaus = selected
        config.next_pull_date = next_pull
        config.updated_by = updated_by
        self.db.commit()

        logger.info(f"Auto-pull for {subject_id}: enabled={enabled}, frequency={frequency}, bureaus={selected}")
        return config_to_dict(config, subject_id)

    def due(self, now: Optional[datetime] = None) -> List[AutoPullConfigDB]:
        now = now or utcnow()
        return self.db.query(AutoPullConfigDB).filter(
            AutoPullConfigDB.enabled.is_(True),
            AutoPullConfigDB.next_pull_date.isnot(None),
            AutoPullConfigDB.next_pull_date <= now,
        ).order_by(AutoPullConfigDB.next_pull_date).all()

    def run_due(self, orchestrator, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Pull every enabled, due configuration through the orchestrator.

        A run where no bureau succeeds increments consecutive_failures;
        any success resets it. The next pull is scheduled either way.
        """
        now = now or utcnow()
        configs = self.due(now)
        results = []

        for config in configs:
            entry = {"subject_id": config.subject_id, "succeeded": [], "failed": []}
            try:
                outcome = orchestrator.pull_all(
                    config.subject_id,
                    requested_by=None,
                    bureaus=[Bureau(b) for b in config.bureaus],
                    pull_type=PullType.AUTOMATIC,
                    permissible_purpose=PermissiblePurpose.ACCOUNT_REVIEW,
                )
                entry["succeeded"] = [b.value for b in outcome.succeeded]
                entry["failed"] = [b.value for b, o in outcome.results.items() if not o.success]
            except BureauError as e:
                logger.error(f"Auto-pull for {config.subject_id} failed: {e}")
                entry["error"] = str(e)
            except Exception as e:
                # One subject's failure must not stop the rest of the run
                logger.exception(f"Auto-pull for {config.subject_id} failed unexpectedly: {e}")
                entry["error"] = str(e)

            if entry["succeeded"]:
                config.consecutive_failures = 0
            else:
                config.consecutive_failures = (config.consecutive_failures or 0) + 1
            config.last_pull_date = now
            config.next_pull_date = now + timedelta(days=FREQUENCY_DAYS.get(config.frequency, 30))
            self.db.commit()
            results.append(entry)

        logger.info(f"Auto-pull run: {len(configs)} subjects processed")
        return {
            "processed": len(configs),
            "succeeded": sum(1 for r in results if r["succeeded"]),
            "failed": sum(1 for r in results if not r["succeeded"]),
            "results": results,
        }
