"""
Bureau Monitor - Bureau Integration API Router

Pulls, snapshots, change and score history, cross-bureau comparison,
auto-pull settings and bureau connections. All endpoints require
authentication; pulls and status are staff-only, connection updates are
admin-only, and clients may read only their own data.
"""
import logging
from datetime import date, datetime
from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..auth import ensure_subject_access, get_current_user, require_admin, require_staff
from ..database import SessionLocal, get_db
from ..models.db_models import ChangeDB, PullRecordDB, UserDB
from ..models.ssot import (
    Bureau, Change, ChangeCategory, CrossBureauAnalysis, PermissiblePurpose, PullAllResult, PullOutcome,
    PullType, Severity, Snapshot, report_to_dict,
)
from ..services.bureau import (
    AutoPullService, BureauConnectionService, BureauError, ChangeHistoryService, CrossBureauAnalyzer,
    NotFoundError, PullOrchestrator, PullRecordService, ScoreHistoryService, SnapshotStore,
)
from ..services.bureau.connections import connection_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bureau", tags=["bureau"])


# =============================================================================
# PYDANTIC MODELS FOR API
# =============================================================================

class BureauConnectionResponse(BaseModel):
    connection_id: str
    bureau: str
    api_url: str
    client_id: Optional[str] = None
    client_secret_ref: Optional[str] = None
    subscriber_code: Optional[str] = None
    member_number: Optional[str] = None
    is_active: bool = True
    last_test_at: Optional[datetime] = None
    last_test_status: Optional[str] = None
    updated_by: Optional[str] = None
    updated_at: Optional[datetime] = None


class BureauConnectionRequest(BaseModel):
    # No client secret: it is configured in the environment, never stored
    api_url: Optional[str] = None
    client_id: Optional[str] = None
    subscriber_code: Optional[str] = None
    member_number: Optional[str] = None


class BureauStatusResponse(BaseModel):
    bureau: str
    name: str
    configured: bool
    mode: str  # live / sandbox
    base_url: str
    connection: Optional[BureauConnectionResponse] = None


class ScoreHistoryResponse(BaseModel):
    bureau: str
    score: int
    score_date: date
    previous_score: Optional[int] = None
    score_change: Optional[int] = None


class ChangeResponse(BaseModel):
    change_type: str
    category: str
    severity: str
    description: str
    previous_value: Optional[Any] = None
    current_value: Optional[Any] = None
    delta: Optional[float] = None
    is_positive: bool = False
    # Present for persisted changes only
    change_id: Optional[str] = None
    bureau: Optional[str] = None
    snapshot_id: Optional[str] = None
    acknowledged: Optional[bool] = None
    acknowledged_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class PullOutcomeResponse(BaseModel):
    bureau: str
    success: bool
    pull_id: Optional[str] = None
    report_id: Optional[str] = None
    snapshot_id: Optional[str] = None
    sandbox: bool = False
    changes_count: int = 0
    changes: List[ChangeResponse] = []
    error: Optional[str] = None


class DiscrepancyResponse(BaseModel):
    discrepancy_type: str
    severity: str
    description: str
    values_by_bureau: dict


class CrossBureauResponse(BaseModel):
    subject_id: str
    sufficient_data: bool
    message: str
    bureaus_compared: List[str]
    scores: Dict[str, Optional[int]] = {}
    negative_item_counts: Dict[str, int] = {}
    max_score_spread: int = 0
    negative_item_spread: int = 0
    discrepancies: List[DiscrepancyResponse] = []
    analyzed_at: datetime


class PullAllResponse(BaseModel):
    subject_id: str
    results: Dict[str, PullOutcomeResponse]
    succeeded: List[str]
    cross_bureau_analysis: Optional[CrossBureauResponse] = None
    pulled_at: datetime


class SnapshotSummaryResponse(BaseModel):
    snapshot_id: str
    subject_id: str
    bureau: str
    report_id: str
    report_date: date
    score: Optional[int] = None
    sandbox: bool = False
    negative_item_count: int = 0
    utilization_rate: float = 0.0
    previous_snapshot_id: Optional[str] = None
    pull_id: Optional[str] = None
    changes_count: int = 0
    created_at: Optional[datetime] = None


class SnapshotDetailResponse(SnapshotSummaryResponse):
    report: dict
    changes: List[ChangeResponse] = []


class ChangeHistoryResponse(BaseModel):
    changes: List[ChangeResponse]
    total: int
    limit: int
    offset: int


class TimelineEntryResponse(BaseModel):
    week: date
    bureau: str
    change_count: int
    high_severity: int
    positive_changes: int
    change_types: List[str]


class PullRecordResponse(BaseModel):
    pull_id: str
    subject_id: str
    bureau: str
    pull_type: str
    status: str
    report_id: Optional[str] = None
    requested_by: Optional[str] = None
    permissible_purpose: str
    sandbox: bool = False
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class AutoPullConfigResponse(BaseModel):
    subject_id: str
    enabled: bool
    frequency: str
    bureaus: List[str]
    next_pull_date: Optional[datetime] = None
    last_pull_date: Optional[datetime] = None
    consecutive_failures: int = 0


class AutoPullUpdateRequest(BaseModel):
    enabled: bool
    frequency: str = "monthly"
    bureaus: Optional[List[str]] = None


# =============================================================================
# DEPENDENCIES AND HELPERS
# =============================================================================

@lru_cache(maxsize=1)
def get_orchestrator() -> PullOrchestrator:
    """One orchestrator per process; it opens its own sessions per pull."""
    return PullOrchestrator(SessionLocal)


def http_error(e: BureauError) -> HTTPException:
    """NotFound → 404; provider auth/upstream/normalization failures → 502."""
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=e.message)
    return HTTPException(status_code=502, detail=e.message)


def change_response(change: Change) -> ChangeResponse:
    return ChangeResponse(
        change_type=change.change_type.value,
        category=change.category.value,
        severity=change.severity.value,
        description=change.description,
        previous_value=change.previous_value,
        current_value=change.current_value,
        delta=change.delta,
        is_positive=change.is_positive,
    )


def change_row_response(row: ChangeDB) -> ChangeResponse:
    return ChangeResponse(
        change_id=row.id,
        bureau=row.bureau,
        snapshot_id=row.snapshot_id,
        change_type=row.change_type,
        category=row.category,
        severity=row.severity,
        description=row.description,
        previous_value=row.previous_value,
        current_value=row.current_value,
        delta=row.delta,
        is_positive=bool(row.is_positive),
        acknowledged=bool(row.acknowledged),
        acknowledged_at=row.acknowledged_at,
        created_at=row.created_at,
    )


def outcome_response(outcome: PullOutcome) -> PullOutcomeResponse:
    return PullOutcomeResponse(
        bureau=outcome.bureau.value,
        success=outcome.success,
        pull_id=outcome.pull_id,
        report_id=outcome.report_id,
        snapshot_id=outcome.snapshot_id,
        sandbox=outcome.sandbox,
        changes_count=len(outcome.changes),
        changes=[change_response(c) for c in outcome.changes],
        error=outcome.error,
    )


def analysis_response(analysis: CrossBureauAnalysis) -> CrossBureauResponse:
    return CrossBureauResponse(
        subject_id=analysis.subject_id,
        sufficient_data=analysis.sufficient_data,
        message=analysis.message,
        bureaus_compared=[b.value for b in analysis.bureaus_compared],
        scores=analysis.scores,
        negative_item_counts=analysis.negative_item_counts,
        max_score_spread=analysis.max_score_spread,
        negative_item_spread=analysis.negative_item_spread,
        discrepancies=[
            DiscrepancyResponse(
                discrepancy_type=d.discrepancy_type,
                severity=d.severity.value,
                description=d.description,
                values_by_bureau=d.values_by_bureau,
            )
            for d in analysis.discrepancies
        ],
        analyzed_at=analysis.analyzed_at,
    )


def pull_all_response(result: PullAllResult) -> PullAllResponse:
    return PullAllResponse(
        subject_id=result.subject_id,
        results={b.value: outcome_response(o) for b, o in result.results.items()},
        succeeded=[b.value for b in result.succeeded],
        cross_bureau_analysis=analysis_response(result.cross_bureau_analysis)
        if result.cross_bureau_analysis else None,
        pulled_at=result.pulled_at,
    )


def snapshot_fields(snapshot: Snapshot) -> dict:
    report = snapshot.report
    return {
        "snapshot_id": snapshot.snapshot_id,
        "subject_id": snapshot.subject_id,
        "bureau": snapshot.bureau.value,
        "report_id": report.report_id,
        "report_date": report.report_date,
        "score": report.score.value,
        "sandbox": report.sandbox,
        "negative_item_count": report.summary.negative_item_count,
        "utilization_rate": report.summary.utilization_rate,
        "previous_snapshot_id": snapshot.previous_snapshot_id,
        "pull_id": snapshot.pull_id,
        "changes_count": snapshot.changes_count,
        "created_at": snapshot.created_at,
    }


def pull_record_response(record: PullRecordDB) -> PullRecordResponse:
    return PullRecordResponse(
        pull_id=record.id,
        subject_id=record.subject_id,
        bureau=record.bureau,
        pull_type=record.pull_type,
        status=record.status,
        report_id=record.report_id,
        requested_by=record.requested_by,
        permissible_purpose=record.permissible_purpose,
        sandbox=bool(record.sandbox),
        error_message=record.error_message,
        started_at=record.started_at,
        completed_at=record.completed_at,
    )


# =============================================================================
# STATUS
# =============================================================================

@router.get("/status", response_model=List[BureauStatusResponse])
def get_bureau_status(
    db: Session = Depends(get_db),
    current_user: UserDB = Depends(require_staff),
    orchestrator: PullOrchestrator = Depends(get_orchestrator),
):
    """Live vs. sandbox mode per bureau, with the stored connection settings."""
    statuses = BureauConnectionService(db).status(orchestrator.bureau_availability())
    return [BureauStatusResponse(**entry) for entry in statuses]


@router.put("/connections/{bureau}", response_model=BureauConnectionResponse)
def update_bureau_connection(
    bureau: Bureau,
    request: BureauConnectionRequest,
    db: Session = Depends(get_db),
    current_user: UserDB = Depends(require_admin),
):
    """Save or update a bureau's connection settings (admin only)."""
    connection = BureauConnectionService(db).save(
        bureau,
        updated_by=current_user.id,
        api_url=request.api_url,
        client_id=request.client_id,
        subscriber_code=request.subscriber_code,
        member_number=request.member_number,
    )
    return BureauConnectionResponse(**connection_to_dict(connection))


# =============================================================================
# PULLS
# =============================================================================

@router.post("/pull/{subject_id}/{bureau}", response_model=PullOutcomeResponse)
def pull_bureau(
    subject_id: str,
    bureau: Bureau,
    permissible_purpose: PermissiblePurpose = PermissiblePurpose.WRITTEN_INSTRUCTION,
    current_user: UserDB = Depends(require_staff),
    orchestrator: PullOrchestrator = Depends(get_orchestrator),
):
    """Pull one bureau for a subject."""
    try:
        outcome = orchestrator.pull_one(
            subject_id, bureau, requested_by=current_user.id,
            pull_type=PullType.MANUAL, permissible_purpose=permissible_purpose,
        )
    except BureauError as e:
        raise http_error(e) from e
    return outcome_response(outcome)


@router.post("/pull-all/{subject_id}", response_model=PullAllResponse)
def pull_all_bureaus(
    subject_id: str,
    permissible_purpose: PermissiblePurpose = PermissiblePurpose.WRITTEN_INSTRUCTION,
    current_user: UserDB = Depends(require_staff),
    orchestrator: PullOrchestrator = Depends(get_orchestrator),
):
    """Pull all three bureaus concurrently, then compare them."""
    try:
        result = orchestrator.pull_all(
            subject_id, requested_by=current_user.id,
            pull_type=PullType.MANUAL, permissible_purpose=permissible_purpose,
        )
    except BureauError as e:
        raise http_error(e) from e
    return pull_all_response(result)


@router.post("/pull-own/{bureau}", response_model=PullOutcomeResponse)
def pull_own_report(
    bureau: Bureau,
    current_user: UserDB = Depends(get_current_user),
    orchestrator: PullOrchestrator = Depends(get_orchestrator),
):
    """A client pulls their own report (consumer written instruction)."""
    try:
        outcome = orchestrator.pull_one(
            current_user.id, bureau, requested_by=current_user.id,
            pull_type=PullType.CLIENT_SELF, permissible_purpose=PermissiblePurpose.WRITTEN_INSTRUCTION,
        )
    except BureauError as e:
        raise http_error(e) from e
    return outcome_response(outcome)


# =============================================================================
# SNAPSHOTS
# =============================================================================

@router.get("/snapshots/{subject_id}", response_model=List[SnapshotSummaryResponse])
def get_latest_snapshots(
    subject_id: str,
    db: Session = Depends(get_db),
    current_user: UserDB = Depends(get_current_user),
):
    """Latest snapshot per bureau."""
    ensure_subject_access(current_user, subject_id)
    snapshots = SnapshotStore(db).latest_snapshots(subject_id)
    return [
        SnapshotSummaryResponse(**snapshot_fields(snapshots[b]))
        for b in Bureau if b in snapshots
    ]


@router.get("/snapshots/{subject_id}/{bureau}", response_model=List[SnapshotSummaryResponse])
def get_snapshot_history(
    subject_id: str,
    bureau: Bureau,
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
    current_user: UserDB = Depends(get_current_user),
):
    """Snapshot chain for one bureau, newest first."""
    ensure_subject_access(current_user, subject_id)
    history = SnapshotStore(db).history(subject_id, bureau, limit=limit)
    return [SnapshotSummaryResponse(**snapshot_fields(s)) for s in history]


@router.get("/snapshot/{snapshot_id}", response_model=SnapshotDetailResponse)
def get_snapshot(
    snapshot_id: str,
    db: Session = Depends(get_db),
    current_user: UserDB = Depends(get_current_user),
):
    """Full canonical report and the changes detected when it was saved."""
    snapshot = SnapshotStore(db).get(snapshot_id)
    if not snapshot:
        raise HTTPException(status_code=404, detail="Snapshot not found")
    ensure_subject_access(current_user, snapshot.subject_id)
    return SnapshotDetailResponse(
        **snapshot_fields(snapshot),
        report=report_to_dict(snapshot.report),
        changes=[change_response(c) for c in snapshot.changes],
    )


# =============================================================================
# CHANGES
# =============================================================================

@router.get("/changes/{subject_id}", response_model=ChangeHistoryResponse)
def get_change_history(
    subject_id: str,
    bureau: Optional[Bureau] = None,
    severity: Optional[Severity] = None,
    category: Optional[ChangeCategory] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    current_user: UserDB = Depends(get_current_user),
):
    ensure_subject_access(current_user, subject_id)
    page = ChangeHistoryService(db).query(
        subject_id, bureau=bureau, severity=severity, category=category, limit=limit, offset=offset,
    )
    return ChangeHistoryResponse(
        changes=[change_row_response(row) for row in page["changes"]],
        total=page["total"],
        limit=page["limit"],
        offset=page["offset"],
    )


@router.get("/changes/{subject_id}/timeline", response_model=List[TimelineEntryResponse])
def get_change_timeline(
    subject_id: str,
    months: int = Query(12, ge=1, le=60),
    db: Session = Depends(get_db),
    current_user: UserDB = Depends(get_current_user),
):
    """Weekly change counts per bureau."""
    ensure_subject_access(current_user, subject_id)
    return [TimelineEntryResponse(**entry) for entry in ChangeHistoryService(db).timeline(subject_id, months)]


@router.post("/changes/{change_id}/acknowledge", response_model=ChangeResponse)
def acknowledge_change(
    change_id: str,
    db: Session = Depends(get_db),
    current_user: UserDB = Depends(get_current_user),
):
    service = ChangeHistoryService(db)
    try:
        change = service.get(change_id)
        ensure_subject_access(current_user, change.subject_id)
        change = service.acknowledge(change_id, current_user.id)
    except NotFoundError as e:
        raise http_error(e) from e
    return change_row_response(change)


# =============================================================================
# CROSS-BUREAU AND HISTORY
# =============================================================================

@router.get("/compare/{subject_id}", response_model=CrossBureauResponse)
def compare_bureaus(
    subject_id: str,
    db: Session = Depends(get_db),
    current_user: UserDB = Depends(get_current_user),
):
    ensure_subject_access(current_user, subject_id)
    return analysis_response(CrossBureauAnalyzer(db).analyze(subject_id))


@router.get("/pull-history/{subject_id}", response_model=List[PullRecordResponse])
def get_pull_history(
    subject_id: str,
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    current_user: UserDB = Depends(get_current_user),
):
    ensure_subject_access(current_user, subject_id)
    return [pull_record_response(r) for r in PullRecordService(db).history(subject_id, limit=limit)]


@router.get("/scores/{subject_id}", response_model=List[ScoreHistoryResponse])
def get_score_history(
    subject_id: str,
    bureau: Optional[Bureau] = None,
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    current_user: UserDB = Depends(get_current_user),
):
    """Recorded scores, newest report date first."""
    ensure_subject_access(current_user, subject_id)
    return [
        ScoreHistoryResponse(
            bureau=row.bureau,
            score=row.score,
            score_date=row.score_date,
            previous_score=row.previous_score,
            score_change=row.score_change,
        )
        for row in ScoreHistoryService(db).history(subject_id, bureau=bureau, limit=limit)
    ]


# =============================================================================
# AUTO-PULL SETTINGS
# =============================================================================

@router.get("/auto-pull/{subject_id}", response_model=AutoPullConfigResponse)
def get_auto_pull(
    subject_id: str,
    db: Session = Depends(get_db),
    current_user: UserDB = Depends(get_current_user),
):
    ensure_subject_access(current_user, subject_id)
    return AutoPullConfigResponse(**AutoPullService(db).get(subject_id))


@router.put("/auto-pull/{subject_id}", response_model=AutoPullConfigResponse)
def update_auto_pull(
    subject_id: str,
    request: AutoPullUpdateRequest,
    db: Session = Depends(get_db),
    current_user: UserDB = Depends(require_staff),
):
    if not db.query(UserDB).filter(UserDB.id == subject_id).first():
        raise HTTPException(status_code=404, detail="Subject not found")
    try:
        config = AutoPullService(db).update(
            subject_id,
            enabled=request.enabled,
            frequency=request.frequency,
            bureaus=request.bureaus,
            updated_by=current_user.id,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return AutoPullConfigResponse(**config)
