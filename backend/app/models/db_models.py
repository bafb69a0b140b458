"""
Bureau Monitor - SQLAlchemy ORM Models
PostgreSQL database models for persistent storage
"""
from datetime import datetime, timezone
from sqlalchemy import (
    Column, String, Integer, Float, DateTime, Text, JSON, ForeignKey, Boolean, Date,
    UniqueConstraint, Index,
)
from sqlalchemy.orm import relationship
from ..database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp (columns are TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class UserDB(Base):
    """User account; clients double as report subjects."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True)  # UUID
    email = Column(String(255), unique=True, nullable=False, index=True)
    role = Column(String(20), nullable=False, default="client")  # admin, staff, client
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # ==========================================================================
    # IDENTITY INFORMATION - Fed to bureau adapters
    # ==========================================================================
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    date_of_birth = Column(Date, nullable=True)
    ssn_last_4 = Column(String(4), nullable=True)  # Last 4 digits only

    # Current Address
    street_address = Column(String(255), nullable=True)
    unit = Column(String(50), nullable=True)  # Apt, Suite, etc.
    city = Column(String(100), nullable=True)
    state = Column(String(2), nullable=True)
    zip_code = Column(String(10), nullable=True)

    # Relationships
    snapshots = relationship("SnapshotDB", back_populates="subject", cascade="all, delete-orphan")


# =============================================================================
# PULL AUDIT TRAIL
# =============================================================================

class PullRecordDB(Base):
    """
    One attempt to fetch a report for (subject, bureau).
    Created at pull start, updated exactly once at completion or failure.
    """
    __tablename__ = "bureau_pull_history"

    id = Column(String(36), primary_key=True)  # UUID
    subject_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    bureau = Column(String(20), nullable=False, index=True)
    pull_type = Column(String(20), nullable=False, default="manual")
    status = Column(String(20), nullable=False, default="in_progress", index=True)
    report_id = Column(String(255), nullable=True)
    requested_by = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    permissible_purpose = Column(String(10), nullable=False, default="12")
    sandbox = Column(Boolean, default=False)
    error_message = Column(Text, nullable=True)

    started_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)


# =============================================================================
# SNAPSHOTS AND CHANGES
# =============================================================================

class SnapshotDB(Base):
    """
    Immutable normalized report for one successful pull.
    previous_snapshot_id links the per-(subject, bureau) history; it is unique
    so two snapshots can never claim the same predecessor.
    """
    __tablename__ = "credit_report_snapshots"
    __table_args__ = (
        Index("idx_snapshots_subject_bureau_created", "subject_id", "bureau", "created_at"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    subject_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    bureau = Column(String(20), nullable=False)

    report_id = Column(String(255), nullable=False)
    report_date = Column(Date, nullable=False)
    score = Column(Integer, nullable=True)
    sandbox = Column(Boolean, default=False)

    # Full canonical report
    report_data = Column(JSON, nullable=False)

    pull_id = Column(String(36), ForeignKey("bureau_pull_history.id", ondelete="SET NULL"), nullable=True)
    previous_snapshot_id = Column(
        String(36), ForeignKey("credit_report_snapshots.id", ondelete="SET NULL"),
        nullable=True, unique=True,
    )
    changes_count = Column(Integer, default=0)

    created_at = Column(DateTime, default=utcnow)

    # Relationships
    subject = relationship("UserDB", back_populates="snapshots")
    changes = relationship(
        "ChangeDB",
        back_populates="snapshot",
        foreign_keys="ChangeDB.snapshot_id",
        cascade="all, delete-orphan",
        order_by="ChangeDB.position",
    )


class SnapshotHeadDB(Base):
    """
    Pointer to the latest snapshot per (subject, bureau).
    Locked FOR UPDATE while a new snapshot is written.
    """
    __tablename__ = "credit_report_snapshot_heads"

    subject_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    bureau = Column(String(20), primary_key=True)
    latest_snapshot_id = Column(
        String(36), ForeignKey("credit_report_snapshots.id", ondelete="SET NULL"), nullable=True
    )
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class ChangeDB(Base):
    """
    One detected delta between two consecutive snapshots.
    Immutable except for acknowledgement.
    """
    __tablename__ = "credit_report_changes"

    id = Column(String(36), primary_key=True)  # UUID
    subject_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    bureau = Column(String(20), nullable=False, index=True)
    snapshot_id = Column(
        String(36), ForeignKey("credit_report_snapshots.id", ondelete="CASCADE"), nullable=False, index=True
    )
    previous_snapshot_id = Column(
        String(36), ForeignKey("credit_report_snapshots.id", ondelete="SET NULL"), nullable=True
    )
    position = Column(Integer, nullable=False, default=0)  # Detector output order

    change_type = Column(String(50), nullable=False)
    category = Column(String(30), nullable=False, index=True)
    severity = Column(String(10), nullable=False, index=True)
    description = Column(Text, nullable=False)
    previous_value = Column(JSON, nullable=True)
    current_value = Column(JSON, nullable=True)
    delta = Column(Float, nullable=True)
    is_positive = Column(Boolean, default=False)

    acknowledged = Column(Boolean, default=False)
    acknowledged_at = Column(DateTime, nullable=True)
    acknowledged_by = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)

    # Relationships
    snapshot = relationship("SnapshotDB", back_populates="changes", foreign_keys=[snapshot_id])


class ScoreHistoryDB(Base):
    """Scores imported from bureau reports, one row per (subject, bureau, report date)."""
    __tablename__ = "credit_scores"
    __table_args__ = (
        UniqueConstraint("subject_id", "bureau", "score_date", name="uq_credit_scores_subject_bureau_date"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    subject_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    bureau = Column(String(20), nullable=False)
    score = Column(Integer, nullable=False)
    score_date = Column(Date, nullable=False)
    previous_score = Column(Integer, nullable=True)
    score_change = Column(Integer, nullable=True)
    data_source = Column(String(30), default="bureau_import")

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


# =============================================================================
# COLLABORATOR TABLES (written, not owned, by the pull pipeline)
# =============================================================================

class CreditItemDB(Base):
    """Negative items tracked for dispute work. Upserted from each pull."""
    __tablename__ = "credit_items"
    __table_args__ = (
        UniqueConstraint(
            "subject_id", "bureau", "creditor_name", "account_number",
            name="uq_credit_items_subject_bureau_creditor_account",
        ),
    )

    id = Column(String(36), primary_key=True)  # UUID
    subject_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    bureau = Column(String(20), nullable=False)
    item_type = Column(String(30), nullable=False)
    creditor_name = Column(String(255), nullable=False)
    account_number = Column(String(50), nullable=False, default="")
    balance = Column(Float, default=0.0)
    status = Column(String(30), default="identified")
    date_reported = Column(Date, nullable=True)
    description = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime, nullable=True)


class NotificationDB(Base):
    """In-app notifications queued for delivery by the notification system."""
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True)  # UUID
    recipient_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    notification_type = Column(String(50), nullable=False, default="report_change")
    channel = Column(String(20), nullable=False, default="in_app")
    subject = Column(String(255), nullable=False)
    body = Column(Text, nullable=False)
    is_read = Column(Boolean, default=False)

    created_at = Column(DateTime, default=utcnow)


class ActivityLogDB(Base):
    """
    Append-only activity log.
    Records completed pulls and connection updates; never updated.
    """
    __tablename__ = "activity_log"

    id = Column(String(36), primary_key=True)  # UUID
    actor_id = Column(String(36), nullable=True, index=True)
    action = Column(String(100), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(36), nullable=True)
    description = Column(Text, nullable=False)

    created_at = Column(DateTime, default=utcnow)


# =============================================================================
# AUTO-PULL CONFIGURATION
# =============================================================================

class AutoPullConfigDB(Base):
    """Per-subject schedule for automatic bureau pulls."""
    __tablename__ = "bureau_auto_pull_config"

    id = Column(String(36), primary_key=True)  # UUID
    subject_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    enabled = Column(Boolean, default=False)
    frequency = Column(String(20), nullable=False, default="monthly")
    bureaus = Column(JSON, nullable=False)
    next_pull_date = Column(DateTime, nullable=True, index=True)
    last_pull_date = Column(DateTime, nullable=True)
    consecutive_failures = Column(Integer, default=0)
    updated_by = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


# =============================================================================
# BUREAU CONNECTIONS
# =============================================================================

class BureauConnectionDB(Base):
    """
    Admin-managed connection settings, one row per bureau.
    Credentials hold identifiers and a secret reference; the secret itself
    lives in the environment and is never stored here.
    """
    __tablename__ = "bureau_connections"

    id = Column(String(36), primary_key=True)  # UUID
    bureau = Column(String(20), unique=True, nullable=False, index=True)
    api_url = Column(Text, nullable=False)
    credentials = Column(JSON, nullable=False, default=dict)
    is_active = Column(Boolean, default=True)
    last_test_at = Column(DateTime, nullable=True)
    last_test_status = Column(String(20), nullable=True)  # success, failed, pending
    updated_by = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
