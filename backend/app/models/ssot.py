"""
Bureau Monitor - Single Source of Truth Models

These models are the ONLY data structures used throughout the pull pipeline.
No module may reference a raw provider payload after normalization.
No module may recompute logic from upstream SSOTs.
"""

from __future__ import annotations
import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional


# =============================================================================
# ENUMS
# =============================================================================

class Bureau(str, Enum):
    EXPERIAN = "experian"
    EQUIFAX = "equifax"
    TRANSUNION = "transunion"


class Severity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class NegativeItemType(str, Enum):
    """Fixed internal taxonomy for derogatory items."""
    COLLECTION = "collection"
    CHARGE_OFF = "charge_off"
    LATE_PAYMENT = "late_payment"
    BANKRUPTCY = "bankruptcy"
    FORECLOSURE = "foreclosure"
    REPOSSESSION = "repossession"
    INQUIRY = "inquiry"
    OTHER = "other"


class InquiryType(str, Enum):
    HARD = "hard"
    SOFT = "soft"


class ChangeType(str, Enum):
    SCORE_CHANGE = "score_change"
    NEW_NEGATIVE_ITEM = "new_negative_item"
    REMOVED_NEGATIVE_ITEM = "removed_negative_item"
    NEW_ACCOUNT = "new_account"
    BALANCE_CHANGE = "balance_change"
    NEW_INQUIRY = "new_inquiry"
    UTILIZATION_CHANGE = "utilization_change"


class ChangeCategory(str, Enum):
    SCORE = "score"
    NEGATIVE_ITEM = "negative_item"
    ACCOUNT = "account"
    INQUIRY = "inquiry"
    SUMMARY = "summary"


class PullStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class PullType(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"
    SCHEDULED = "scheduled"
    CLIENT_SELF = "client_self"


class PermissiblePurpose(str, Enum):
    """FCRA §604 permissible purpose codes."""
    CREDIT_TRANSACTION = "08"
    ACCOUNT_REVIEW = "12"
    WRITTEN_INSTRUCTION = "19"


SCORE_MIN = 300
SCORE_MAX = 850

# Reserved report-id prefix for reports synthesized by the sandbox adapter
SANDBOX_REPORT_PREFIX = "SANDBOX-"


def mask_account_number(account_number: Optional[str]) -> str:
    """Reduce an account number to ****NNNN (last 4 alphanumerics at most)."""
    if not account_number:
        return ""
    cleaned = re.sub(r"[^A-Za-z0-9]", "", str(account_number))
    if not cleaned:
        return ""
    return f"****{cleaned[-4:].upper()}"


# =============================================================================
# SUBJECT IDENTITY (input to adapters)
# =============================================================================

@dataclass
class SubjectAddress:
    line1: str = ""
    line2: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""


@dataclass
class SubjectIdentity:
    """Identity fields supplied by the profile system. Read-only."""
    subject_id: str
    first_name: str
    last_name: str
    date_of_birth: Optional[date] = None
    national_id_last4: Optional[str] = None
    address: SubjectAddress = field(default_factory=SubjectAddress)

    @property
    def masked_national_id(self) -> Optional[str]:
        if not self.national_id_last4:
            return None
        return f"***-**-{self.national_id_last4}"


# =============================================================================
# SSOT #1: CANONICAL REPORT (Output of Normalizer)
# =============================================================================

@dataclass
class ScoreFactor:
    code: str = ""
    description: str = ""


@dataclass
class CreditScore:
    value: Optional[int] = None  # [300, 850] or absent
    model: str = ""
    factors: List[ScoreFactor] = field(default_factory=list)


@dataclass
class ConsumerAddress:
    line1: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    address_type: str = "current"


@dataclass
class ReportConsumer:
    """Identity block as reported by the bureau."""
    first_name: str = ""
    last_name: str = ""
    date_of_birth: str = ""
    addresses: List[ConsumerAddress] = field(default_factory=list)


@dataclass
class Account:
    """Single tradeline as reported by one bureau."""
    creditor_name: str = ""
    account_number: str = ""  # masked
    account_type: str = ""
    balance: float = 0.0
    credit_limit: Optional[float] = None
    payment_status: str = ""
    status: str = ""  # open / closed / ""
    date_opened: Optional[date] = None
    last_reported: Optional[date] = None
    months_reviewed: int = 0

    @property
    def identity_key(self) -> tuple:
        return (self.creditor_name, self.account_number)


@dataclass
class NegativeItem:
    creditor: str = ""
    item_type: NegativeItemType = NegativeItemType.OTHER
    balance: float = 0.0
    date_reported: Optional[date] = None
    account_number: str = ""  # masked
    status: str = ""
    original_creditor: str = ""

    @property
    def identity_key(self) -> tuple:
        return (self.creditor, self.item_type.value, self.account_number)


@dataclass
class Inquiry:
    creditor: str = ""
    inquiry_date: Optional[date] = None
    inquiry_type: InquiryType = InquiryType.HARD

    @property
    def identity_key(self) -> tuple:
        return (self.creditor, self.inquiry_date.isoformat() if self.inquiry_date else "")


@dataclass
class PublicRecord:
    record_type: str = ""
    court: str = ""
    filed_date: Optional[date] = None
    amount: float = 0.0
    status: str = ""


@dataclass
class ReportSummary:
    """Aggregates computed from the normalized line items."""
    total_accounts: int = 0
    open_accounts: int = 0
    closed_accounts: int = 0
    total_balance: float = 0.0
    total_credit_limit: float = 0.0
    negative_item_count: int = 0
    hard_inquiry_count: int = 0
    utilization_rate: float = 0.0


@dataclass
class Report:
    """
    SSOT #1: The canonical report for one bureau pull.

    Everything downstream (snapshots, change detection, cross-bureau
    analysis, item sync) reads this and ONLY this.
    """
    bureau: Bureau
    report_id: str
    report_date: date = field(default_factory=date.today)
    generated_at: datetime = field(default_factory=datetime.now)
    consumer: ReportConsumer = field(default_factory=ReportConsumer)
    score: CreditScore = field(default_factory=CreditScore)
    accounts: List[Account] = field(default_factory=list)
    negative_items: List[NegativeItem] = field(default_factory=list)
    inquiries: List[Inquiry] = field(default_factory=list)
    public_records: List[PublicRecord] = field(default_factory=list)
    summary: ReportSummary = field(default_factory=ReportSummary)
    sandbox: bool = False


# =============================================================================
# SSOT #2: CHANGES (Output of Change Detector)
# =============================================================================

@dataclass
class Change:
    """One detected delta between two consecutive snapshots."""
    change_type: ChangeType
    category: ChangeCategory
    severity: Severity
    description: str
    previous_value: Any = None
    current_value: Any = None
    delta: Optional[float] = None
    is_positive: bool = False


# =============================================================================
# SSOT #3: SNAPSHOTS AND CROSS-BUREAU ANALYSIS
# =============================================================================

@dataclass
class Snapshot:
    """Immutable, persisted wrapper around one Report."""
    snapshot_id: str
    subject_id: str
    bureau: Bureau
    report: Report
    previous_snapshot_id: Optional[str] = None
    pull_id: Optional[str] = None
    changes_count: int = 0
    created_at: Optional[datetime] = None
    # Changes detected when this snapshot was written (populated by save only)
    changes: List[Change] = field(default_factory=list)


@dataclass
class CrossBureauDiscrepancy:
    discrepancy_type: str  # score_spread / negative_item_discrepancy
    severity: Severity
    description: str
    values_by_bureau: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CrossBureauAnalysis:
    subject_id: str = ""
    sufficient_data: bool = False
    message: str = ""
    bureaus_compared: List[Bureau] = field(default_factory=list)
    scores: Dict[str, Optional[int]] = field(default_factory=dict)
    negative_item_counts: Dict[str, int] = field(default_factory=dict)
    max_score_spread: int = 0
    negative_item_spread: int = 0
    discrepancies: List[CrossBureauDiscrepancy] = field(default_factory=list)
    analyzed_at: datetime = field(default_factory=datetime.now)


# =============================================================================
# PULL OUTCOMES (Output of Orchestrator)
# =============================================================================

@dataclass
class PullOutcome:
    bureau: Bureau
    success: bool
    pull_id: Optional[str] = None
    report_id: Optional[str] = None
    snapshot_id: Optional[str] = None
    sandbox: bool = False
    changes: List[Change] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class PullAllResult:
    subject_id: str
    results: Dict[Bureau, PullOutcome] = field(default_factory=dict)
    cross_bureau_analysis: Optional[CrossBureauAnalysis] = None
    pulled_at: datetime = field(default_factory=datetime.now)

    @property
    def succeeded(self) -> List[Bureau]:
        return [b for b, outcome in self.results.items() if outcome.success]


# =============================================================================
# SERIALIZATION
# =============================================================================

def to_json_dict(obj: Any) -> Any:
    """Convert an SSOT dataclass to a JSON-serializable dict."""
    def convert(value):
        if isinstance(value, dict):
            return {
                (k.value if isinstance(k, Enum) else k): convert(v)
                for k, v in value.items()
            }
        elif isinstance(value, (list, tuple)):
            return [convert(i) for i in value]
        elif isinstance(value, Enum):
            return value.value
        elif isinstance(value, (date, datetime)):
            return value.isoformat()
        return value
    return convert(asdict(obj))


def report_to_dict(report: Report) -> Dict[str, Any]:
    return to_json_dict(report)


def change_to_dict(change: Change) -> Dict[str, Any]:
    return to_json_dict(change)


def _date(value: Any) -> Optional[date]:
    if not value:
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(value)


def _datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def report_from_dict(data: Dict[str, Any]) -> Report:
    """Rebuild a Report from its canonical dict (the inverse of report_to_dict)."""
    consumer = data.get("consumer") or {}
    score = data.get("score") or {}
    summary = data.get("summary") or {}
    return Report(
        bureau=Bureau(data["bureau"]),
        report_id=data["report_id"],
        report_date=_date(data.get("report_date")) or date.today(),
        generated_at=_datetime(data["generated_at"]) if data.get("generated_at") else datetime.now(),
        consumer=ReportConsumer(
            first_name=consumer.get("first_name", ""),
            last_name=consumer.get("last_name", ""),
            date_of_birth=consumer.get("date_of_birth", ""),
            addresses=[ConsumerAddress(**a) for a in consumer.get("addresses", [])],
        ),
        score=CreditScore(
            value=score.get("value"),
            model=score.get("model", ""),
            factors=[ScoreFactor(**f) for f in score.get("factors", [])],
        ),
        accounts=[
            Account(
                creditor_name=a.get("creditor_name", ""),
                account_number=a.get("account_number", ""),
                account_type=a.get("account_type", ""),
                balance=a.get("balance", 0.0),
                credit_limit=a.get("credit_limit"),
                payment_status=a.get("payment_status", ""),
                status=a.get("status", ""),
                date_opened=_date(a.get("date_opened")),
                last_reported=_date(a.get("last_reported")),
                months_reviewed=a.get("months_reviewed", 0),
            )
            for a in data.get("accounts", [])
        ],
        negative_items=[
            NegativeItem(
                creditor=n.get("creditor", ""),
                item_type=NegativeItemType(n.get("item_type", "other")),
                balance=n.get("balance", 0.0),
                date_reported=_date(n.get("date_reported")),
                account_number=n.get("account_number", ""),
                status=n.get("status", ""),
                original_creditor=n.get("original_creditor", ""),
            )
            for n in data.get("negative_items", [])
        ],
        inquiries=[
            Inquiry(
                creditor=i.get("creditor", ""),
                inquiry_date=_date(i.get("inquiry_date")),
                inquiry_type=InquiryType(i.get("inquiry_type", "hard")),
            )
            for i in data.get("inquiries", [])
        ],
        public_records=[
            PublicRecord(
                record_type=p.get("record_type", ""),
                court=p.get("court", ""),
                filed_date=_date(p.get("filed_date")),
                amount=p.get("amount", 0.0),
                status=p.get("status", ""),
            )
            for p in data.get("public_records", [])
        ],
        summary=ReportSummary(**summary),
        sandbox=data.get("sandbox", False),
    )


def change_from_dict(data: Dict[str, Any]) -> Change:
    return Change(
        change_type=ChangeType(data["change_type"]),
        category=ChangeCategory(data["category"]),
        severity=Severity(data["severity"]),
        description=data.get("description", ""),
        previous_value=data.get("previous_value"),
        current_value=data.get("current_value"),
        delta=data.get("delta"),
        is_positive=data.get("is_positive", False),
    )
