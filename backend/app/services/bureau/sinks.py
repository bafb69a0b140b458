"""
Bureau Monitor - Collaborator Interfaces

The pull pipeline reads identities from, and writes into, tables it does
not own. Each collaborator is an interface with a database-backed default:

- SubjectProfileService  identity lookup (users table)
- ItemTracker            negative-item upsert (credit_items)
- NotificationSink       fire-and-forget notices (notifications)
- AuditSink              append-only activity log (activity_log)
"""
import logging
from abc import ABC, abstractmethod
from typing import Callable, List
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.db_models import ActivityLogDB, CreditItemDB, NotificationDB, UserDB, utcnow
from ...models.ssot import Bureau, NegativeItem, SubjectAddress, SubjectIdentity
from .errors import NotFoundError

logger = logging.getLogger(__name__)


# =============================================================================
# SUBJECT PROFILE SERVICE
# =============================================================================

class SubjectProfileService(ABC):

    @abstractmethod
    def get_identity(self, db: Session, subject_id: str) -> SubjectIdentity:
        """Raises NotFoundError for an unknown subject."""


class DbSubjectProfileService(SubjectProfileService):

    def get_identity(self, db: Session, subject_id: str) -> SubjectIdentity:
        user = db.query(UserDB).filter(UserDB.id == subject_id).first()
        if not user:
            raise NotFoundError(f"Subject {subject_id} not found")

        line1 = user.street_address or ""
        return SubjectIdentity(
            subject_id=user.id,
            first_name=user.first_name or "",
            last_name=user.last_name or "",
            date_of_birth=user.date_of_birth,
            national_id_last4=user.ssn_last_4,
            address=SubjectAddress(
                line1=line1,
                line2=user.unit or "",
                city=user.city or "",
                state=user.state or "",
                zip_code=user.zip_code or "",
            ),
        )


# =============================================================================
# ITEM TRACKER
# =============================================================================

class ItemTracker(ABC):

    @abstractmethod
    def upsert(self, db: Session, subject_id: str, bureau: Bureau, negative_items: List[NegativeItem]) -> int:
        """Idempotent upsert keyed by (subject, bureau, creditor, account number)."""


class DbItemTracker(ItemTracker):
    """
    Writes negative items into credit_items for dispute work.

    Existing rows get balance and date refreshed; their dispute status is
    left alone. Rows soft-deleted by the dispute workflow are not revived.
    """

    def upsert(self, db: Session, subject_id: str, bureau: Bureau, negative_items: List[NegativeItem]) -> int:
        bureau_value = Bureau(bureau).value
        touched = 0
        seen = set()

        for item in negative_items:
            key = (item.creditor, item.account_number or "")
            if key in seen:
                continue
            seen.add(key)

            existing = db.query(CreditItemDB).filter(
                CreditItemDB.subject_id == subject_id,
                CreditItemDB.bureau == bureau_value,
                CreditItemDB.creditor_name == item.creditor,
                CreditItemDB.account_number == (item.account_number or ""),
            ).first()

            if existing:
                if existing.deleted_at is not None:
                    continue
                if existing.balance != item.balance or existing.date_reported != item.date_reported:
                    existing.balance = item.balance
                    existing.date_reported = item.date_reported
                    existing.updated_at = utcnow()
                    touched += 1
                continue

            db.add(CreditItemDB(
                id=str(uuid4()),
                subject_id=subject_id,
                bureau=bureau_value,
                item_type=item.item_type.value,
                creditor_name=item.creditor,
                account_number=item.account_number or "",
                balance=item.balance,
                status="identified",
                date_reported=item.date_reported,
                description=f"Original creditor: {item.original_creditor}" if item.original_creditor else None,
            ))
            touched += 1

        db.flush()
        logger.info(f"Synced {touched} credit items for subject {subject_id} ({bureau_value})")
        return touched


# =============================================================================
# NOTIFICATION SINK
# =============================================================================

class NotificationSink(ABC):

    @abstractmethod
    def notify(self, subject_id: str, subject: str, body: str) -> None:
        ...


class DbNotificationSink(NotificationSink):
    """Queues an in-app notification in its own session."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def notify(self, subject_id: str, subject: str, body: str) -> None:
        db = self.session_factory()
        try:
            db.add(NotificationDB(
                id=str(uuid4()),
                recipient_id=subject_id,
                notification_type="report_change",
                channel="in_app",
                subject=subject,
                body=body,
            ))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


# =============================================================================
# AUDIT SINK
# =============================================================================

class AuditSink(ABC):

    @abstractmethod
    def record(self, db: Session, actor: str, action: str, entity_id: str, description: str,
               entity_type: str = "credit_report") -> None:
        ...


class DbAuditSink(AuditSink):

    def record(self, db: Session, actor: str, action: str, entity_id: str, description: str,
               entity_type: str = "credit_report") -> None:
        db.add(ActivityLogDB(
            id=str(uuid4()),
            actor_id=actor,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            description=description,
        ))
        db.flush()
