"""
Bureau Monitor - Report Normalizer

Maps each bureau's raw JSON payload into the canonical Report (SSOT #1).
One pure mapping function per provider; no I/O.

Rules shared by every mapping:
- missing numbers become 0, missing strings become ""
- provider item-type codes collapse into NegativeItemType
- summary is aggregated from the normalized line items; provider summaries
  are ignored because they disagree with their own tradelines
"""
from __future__ import annotations
import logging
import re
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Union
from uuid import uuid4

from ...models.ssot import (
    Account, Bureau, ConsumerAddress, CreditScore, Inquiry, InquiryType, NegativeItem,
    NegativeItemType, PublicRecord, Report, ReportConsumer, ReportSummary, ScoreFactor,
    SANDBOX_REPORT_PREFIX, SCORE_MAX, SCORE_MIN, mask_account_number, report_from_dict,
)
from .errors import NormalizationError

logger = logging.getLogger(__name__)

RawPayload = Dict[str, Any]


# =============================================================================
# CONSTANTS
# =============================================================================

EXPERIAN_ACCOUNT_TYPES = {
    "01": "auto_loan",
    "02": "credit_card",
    "03": "mortgage",
    "04": "student_loan",
    "05": "personal_loan",
}

# Direct code lookups after lower-casing and collapsing separators to "_"
ITEM_TYPE_CODES = {
    "collection": NegativeItemType.COLLECTION,
    "collections": NegativeItemType.COLLECTION,
    "col": NegativeItemType.COLLECTION,
    "charge_off": NegativeItemType.CHARGE_OFF,
    "chargeoff": NegativeItemType.CHARGE_OFF,
    "charged_off": NegativeItemType.CHARGE_OFF,
    "co": NegativeItemType.CHARGE_OFF,
    "late_payment": NegativeItemType.LATE_PAYMENT,
    "late": NegativeItemType.LATE_PAYMENT,
    "delinquent": NegativeItemType.LATE_PAYMENT,
    "bankruptcy": NegativeItemType.BANKRUPTCY,
    "foreclosure": NegativeItemType.FORECLOSURE,
    "repossession": NegativeItemType.REPOSSESSION,
    "repo": NegativeItemType.REPOSSESSION,
    "inquiry": NegativeItemType.INQUIRY,
    "public_record": NegativeItemType.OTHER,
    "adverse": NegativeItemType.OTHER,
}

# Substring fallbacks, checked in order
ITEM_TYPE_KEYWORDS = [
    ("bankrupt", NegativeItemType.BANKRUPTCY),
    ("chapter", NegativeItemType.BANKRUPTCY),
    ("foreclos", NegativeItemType.FORECLOSURE),
    ("repos", NegativeItemType.REPOSSESSION),
    ("charge", NegativeItemType.CHARGE_OFF),
    ("collect", NegativeItemType.COLLECTION),
    ("late", NegativeItemType.LATE_PAYMENT),
    ("past_due", NegativeItemType.LATE_PAYMENT),
    ("inquir", NegativeItemType.INQUIRY),
]


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def _text(value: Any) -> str:
    """Stringify and trim, returning "" for missing values."""
    if value is None:
        return ""
    return re.sub(r"\s+", " ", str(value)).strip()


def _money(value: Any) -> float:
    """Parse a money amount, returning 0.0 when missing or unparseable."""
    if value is None or value == "":
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    cleaned = re.sub(r"[$,\s]", "", str(value))
    try:
        return float(cleaned)
    except ValueError:
        return 0.0


def _optional_money(value: Any) -> Optional[float]:
    """Credit limits stay absent when not reported (or reported as 0)."""
    amount = _money(value)
    return amount if amount > 0 else None


def _int(value: Any) -> int:
    if value is None or value == "":
        return 0
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def _date(value: Any) -> Optional[date]:
    """Parse a provider date; None when missing or unparseable."""
    text = _text(value)
    if not text:
        return None
    formats = ["%Y-%m-%d", "%m/%d/%Y", "%m%d%Y", "%Y%m%d", "%m/%d/%y", "%Y-%m-%dT%H:%M:%S"]
    for fmt in formats:
        try:
            return datetime.strptime(text[:19] if "T" in text else text, fmt).date()
        except ValueError:
            continue
    logger.debug(f"Unparseable date value: {text!r}")
    return None


def _score(value: Any) -> Optional[int]:
    """Score in [300, 850] or None."""
    score = _int(value)
    if SCORE_MIN <= score <= SCORE_MAX:
        return score
    return None


def _first(items: Any) -> Optional[Dict[str, Any]]:
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0]
    return None


def _node(value: Any) -> Dict[str, Any]:
    """An object node, or the first object of a list node; empty otherwise."""
    if isinstance(value, dict):
        return value
    return _first(value) or {}


def _list(value: Any) -> List[Dict[str, Any]]:
    if isinstance(value, list):
        return [v for v in value if isinstance(v, dict)]
    return []


def classify_item_type(code: Any) -> NegativeItemType:
    """Map a provider item-type code or label into the internal taxonomy."""
    key = re.sub(r"[\s\-/]+", "_", _text(code).lower())
    if not key:
        return NegativeItemType.OTHER
    if key in ITEM_TYPE_CODES:
        return ITEM_TYPE_CODES[key]
    for keyword, item_type in ITEM_TYPE_KEYWORDS:
        if keyword in key:
            return item_type
    return NegativeItemType.OTHER


def _negative_item(
    creditor: Any,
    item_type: NegativeItemType,
    balance: Any,
    date_reported: Any,
    account_number: Any,
    status: Any,
    original_creditor: Any = None,
) -> NegativeItem:
    return NegativeItem(
        creditor=_text(creditor) or "Unknown",
        item_type=item_type,
        balance=_money(balance),
        date_reported=_date(date_reported),
        account_number=mask_account_number(_text(account_number)),
        status=_text(status) or "open",
        original_creditor=_text(original_creditor),
    )


def summarize(
    accounts: List[Account],
    negative_items: List[NegativeItem],
    inquiries: List[Inquiry],
) -> ReportSummary:
    """Aggregate summary fields from normalized line items."""
    limited = [a for a in accounts if a.credit_limit and a.credit_limit > 0]
    total_limit = sum(a.credit_limit for a in limited)
    limited_balance = sum(a.balance for a in limited)
    utilization = round(limited_balance / total_limit * 100, 1) if total_limit > 0 else 0.0

    return ReportSummary(
        total_accounts=len(accounts),
        open_accounts=sum(1 for a in accounts if a.status == "open"),
        closed_accounts=sum(1 for a in accounts if a.status == "closed"),
        total_balance=round(sum(a.balance for a in accounts), 2),
        total_credit_limit=round(total_limit, 2),
        negative_item_count=len(negative_items),
        hard_inquiry_count=sum(1 for i in inquiries if i.inquiry_type == InquiryType.HARD),
        utilization_rate=utilization,
    )


def _report_id(bureau: Bureau, provider_id: Any) -> str:
    return _text(provider_id) or f"RPT-{bureau.value.upper()}-{uuid4()}"


def _build_report(
    bureau: Bureau,
    report_id: Any,
    report_date: Any,
    consumer: ReportConsumer,
    score: CreditScore,
    accounts: List[Account],
    negative_items: List[NegativeItem],
    inquiries: List[Inquiry],
    public_records: List[PublicRecord],
) -> Report:
    return Report(
        bureau=bureau,
        report_id=_report_id(bureau, report_id),
        report_date=_date(report_date) or date.today(),
        generated_at=datetime.now(),
        consumer=consumer,
        score=score,
        accounts=accounts,
        negative_items=negative_items,
        inquiries=inquiries,
        public_records=public_records,
        summary=summarize(accounts, negative_items, inquiries),
        sandbox=False,
    )


# =============================================================================
# EXPERIAN
# =============================================================================

def _experian_item_type(item: Dict[str, Any], is_public_record: bool) -> NegativeItemType:
    if is_public_record:
        classified = classify_item_type(item.get("type"))
        return classified if classified != NegativeItemType.OTHER else NegativeItemType.BANKRUPTCY
    if _text(item.get("accountType")).lower() == "collection":
        return NegativeItemType.COLLECTION
    classified = classify_item_type(item.get("type") or item.get("status"))
    return classified if classified != NegativeItemType.OTHER else NegativeItemType.CHARGE_OFF


def normalize_experian(raw: RawPayload) -> Report:
    """Experian Connect credit-profile payload → Report."""
    profile = _first(raw.get("creditProfile"))
    if profile is None:
        raise NormalizationError("Experian payload has no creditProfile", bureau=Bureau.EXPERIAN.value)
    identity = profile.get("consumerIdentity")
    if not isinstance(identity, dict):
        raise NormalizationError("Experian payload has no consumerIdentity", bureau=Bureau.EXPERIAN.value)

    name = _node(identity.get("name"))
    dob = identity.get("dob") or {}
    consumer = ReportConsumer(
        first_name=_text(name.get("firstName")),
        last_name=_text(name.get("surname")),
        date_of_birth=_text(dob.get("dob") if isinstance(dob, dict) else dob),
        addresses=[
            ConsumerAddress(
                line1=_text(a.get("streetName")),
                city=_text(a.get("cityName")),
                state=_text(a.get("stateCode")),
                zip_code=_text(a.get("zipCode")),
                address_type=_text(a.get("dwellingType")) or "current",
            )
            for a in _list(identity.get("address"))
        ],
    )

    model = _node(profile.get("riskModel"))
    score = CreditScore(
        value=_score(model.get("score")),
        model=_text(model.get("modelIndicator")) or "FICO Score 8",
        factors=[
            ScoreFactor(code=_text(f.get("factorCode")), description=_text(f.get("factorText")))
            for f in _list(model.get("scoreFactors"))
        ],
    )

    accounts = [
        Account(
            creditor_name=_text(t.get("creditorName")),
            account_number=mask_account_number(_text(t.get("accountNumber"))),
            account_type=EXPERIAN_ACCOUNT_TYPES.get(_text(t.get("accountType")), "other"),
            balance=_money(t.get("balanceAmount")),
            credit_limit=_optional_money(t.get("creditLimit")),
            payment_status=_text(t.get("paymentStatus")) or "unknown",
            status=_text(t.get("openIndicator")).lower(),
            date_opened=_date(t.get("dateOpened")),
            last_reported=_date(t.get("dateReported")),
            months_reviewed=_int(t.get("monthsReviewed")),
        )
        for t in _list(profile.get("tradeline"))
    ]

    public_record_items = _list(profile.get("publicRecord"))
    negative_items = [
        _negative_item(
            creditor=item.get("courtName") or item.get("creditorName"),
            item_type=_experian_item_type(item, is_public_record=True),
            balance=item.get("amount"),
            date_reported=item.get("dateFiled") or item.get("dateReported"),
            account_number=item.get("accountNumber") or item.get("referenceNumber"),
            status=item.get("status"),
        )
        for item in public_record_items
    ] + [
        _negative_item(
            creditor=item.get("creditorName"),
            item_type=_experian_item_type(item, is_public_record=False),
            balance=item.get("amount") or item.get("balanceAmount"),
            date_reported=item.get("dateReported"),
            account_number=item.get("accountNumber"),
            status=item.get("status"),
            original_creditor=item.get("originalCreditorName"),
        )
        for item in _list(profile.get("collection"))
    ]

    inquiries = [
        Inquiry(
            creditor=_text(inq.get("subscriberName")),
            inquiry_date=_date(inq.get("inquiryDate")),
            inquiry_type=InquiryType.HARD if _text(inq.get("inquiryType")) == "01" else InquiryType.SOFT,
        )
        for inq in _list(profile.get("inquiry"))
    ]

    public_records = [
        PublicRecord(
            record_type=_text(pr.get("type")) or "unknown",
            court=_text(pr.get("courtName")),
            filed_date=_date(pr.get("dateFiled")),
            amount=_money(pr.get("amount")),
            status=_text(pr.get("status")) or "unknown",
        )
        for pr in public_record_items
    ]

    return _build_report(
        Bureau.EXPERIAN, profile.get("reportId"), profile.get("reportDate"),
        consumer, score, accounts, negative_items, inquiries, public_records,
    )


# =============================================================================
# EQUIFAX
# =============================================================================

def normalize_equifax(raw: RawPayload) -> Report:
    """Equifax US consumer credit report payload → Report."""
    consumers = raw.get("consumers")
    report = _first(consumers.get("equifaxUSConsumerCreditReport")) if isinstance(consumers, dict) else None
    if report is None:
        raise NormalizationError(
            "Equifax payload has no consumers.equifaxUSConsumerCreditReport", bureau=Bureau.EQUIFAX.value
        )
    subject_name = report.get("subjectName")
    if not isinstance(subject_name, dict):
        raise NormalizationError("Equifax payload has no subjectName", bureau=Bureau.EQUIFAX.value)

    consumer = ReportConsumer(
        first_name=_text(subject_name.get("firstName")),
        last_name=_text(subject_name.get("lastName")),
        date_of_birth=_text(report.get("dateOfBirth")),
        addresses=[
            ConsumerAddress(
                line1=_text(a.get("streetAddress")),
                city=_text(a.get("city")),
                state=_text(a.get("state")),
                zip_code=_text(a.get("zip")),
                address_type=_text(a.get("addressType")) or "current",
            )
            for a in _list(report.get("addresses"))
        ],
    )

    model = _node(report.get("models"))
    score = CreditScore(
        value=_score(model.get("score")),
        model=_text(model.get("modelId")) or "FICO9",
        factors=[
            ScoreFactor(code=_text(r.get("reasonCode")), description=_text(r.get("reasonDescription")))
            for r in _list(model.get("reasons"))
        ],
    )

    open_closed = {"O": "open", "C": "closed"}
    accounts = [
        Account(
            creditor_name=_text(t.get("subscriberName")),
            account_number=mask_account_number(_text(t.get("accountNumber"))),
            account_type=_text(t.get("portfolioType")) or "unknown",
            balance=_money(t.get("balance")),
            credit_limit=_optional_money(t.get("creditLimit") or t.get("highCredit")),
            payment_status=_text(t.get("paymentStatus")) or "unknown",
            status=open_closed.get(_text(t.get("openClosed")).upper(), ""),
            date_opened=_date(t.get("dateOpened")),
            last_reported=_date(t.get("dateReported")),
            months_reviewed=_int(t.get("months")),
        )
        for t in _list(report.get("trades"))
    ]

    negative_items = [
        _negative_item(
            creditor=c.get("creditorName"),
            item_type=NegativeItemType.COLLECTION,
            balance=c.get("balance"),
            date_reported=c.get("dateReported"),
            account_number=c.get("accountNumber"),
            status=c.get("status"),
            original_creditor=c.get("originalCreditor"),
        )
        for c in _list(report.get("collections"))
    ] + [
        _negative_item(
            creditor=pr.get("courtName"),
            item_type=classify_item_type(pr.get("publicRecordType")),
            balance=pr.get("amount"),
            date_reported=pr.get("dateFiled"),
            account_number=pr.get("referenceNumber"),
            status=pr.get("status"),
        )
        for pr in _list(report.get("publicRecords"))
        if classify_item_type(pr.get("publicRecordType")) != NegativeItemType.OTHER
    ]

    inquiries = [
        Inquiry(
            creditor=_text(inq.get("subscriberName")),
            inquiry_date=_date(inq.get("inquiryDate")),
            inquiry_type=InquiryType.HARD if _text(inq.get("inquiryType")) == "individual" else InquiryType.SOFT,
        )
        for inq in _list(report.get("inquiries"))
    ]

    public_records = [
        PublicRecord(
            record_type=_text(pr.get("publicRecordType")) or "unknown",
            court=_text(pr.get("courtName")),
            filed_date=_date(pr.get("dateFiled")),
            amount=_money(pr.get("amount")),
            status=_text(pr.get("status")) or "unknown",
        )
        for pr in _list(report.get("publicRecords"))
    ]

    return _build_report(
        Bureau.EQUIFAX, report.get("reportNumber"), report.get("reportDate"),
        consumer, score, accounts, negative_items, inquiries, public_records,
    )


# =============================================================================
# TRANSUNION
# =============================================================================

def normalize_transunion(raw: RawPayload) -> Report:
    """TransUnion credit-report payload → Report."""
    report = raw.get("creditReport")
    if not isinstance(report, dict):
        raise NormalizationError("TransUnion payload has no creditReport", bureau=Bureau.TRANSUNION.value)
    identity = report.get("consumer")
    if not isinstance(identity, dict):
        raise NormalizationError("TransUnion payload has no consumer block", bureau=Bureau.TRANSUNION.value)

    consumer = ReportConsumer(
        first_name=_text(identity.get("firstName")),
        last_name=_text(identity.get("lastName")),
        date_of_birth=_text(identity.get("dateOfBirth")),
        addresses=[
            ConsumerAddress(
                line1=_text(a.get("street")),
                city=_text(a.get("city")),
                state=_text(a.get("state")),
                zip_code=_text(a.get("zip")),
                address_type=_text(a.get("type")) or "current",
            )
            for a in _list(identity.get("addresses"))
        ],
    )

    score_data = _node(report.get("creditScore"))
    score = CreditScore(
        value=_score(score_data.get("score")),
        model=_text(score_data.get("model")) or "VantageScore 3.0",
        factors=[
            ScoreFactor(code=_text(f.get("code")), description=_text(f.get("description")))
            for f in _list(score_data.get("factors"))
        ],
    )

    accounts = [
        Account(
            creditor_name=_text(t.get("creditorName")),
            account_number=mask_account_number(_text(t.get("accountNumber"))),
            account_type=_text(t.get("accountType")) or "unknown",
            balance=_money(t.get("currentBalance")),
            credit_limit=_optional_money(t.get("creditLimit")),
            payment_status=_text(t.get("paymentStatus")) or "unknown",
            status=_text(t.get("status")).lower(),
            date_opened=_date(t.get("dateOpened")),
            last_reported=_date(t.get("lastReported")),
            months_reviewed=_int(t.get("monthsReviewed")),
        )
        for t in _list(report.get("tradelines"))
    ]

    negative_items = [
        _negative_item(
            creditor=item.get("creditorName"),
            item_type=classify_item_type(item.get("type") or "collection"),
            balance=item.get("balance"),
            date_reported=item.get("dateReported"),
            account_number=item.get("accountNumber"),
            status=item.get("status"),
            original_creditor=item.get("originalCreditor"),
        )
        for item in _list(report.get("collections")) + _list(report.get("adverseItems"))
    ]

    inquiries = [
        Inquiry(
            creditor=_text(inq.get("subscriberName")),
            inquiry_date=_date(inq.get("inquiryDate")),
            inquiry_type=InquiryType.SOFT if _text(inq.get("type")).lower() == "soft" else InquiryType.HARD,
        )
        for inq in _list(report.get("inquiries"))
    ]

    public_records = [
        PublicRecord(
            record_type=_text(pr.get("type")) or "unknown",
            court=_text(pr.get("court")),
            filed_date=_date(pr.get("dateFiled")),
            amount=_money(pr.get("amount")),
            status=_text(pr.get("status")) or "unknown",
        )
        for pr in _list(report.get("publicRecords"))
    ]

    return _build_report(
        Bureau.TRANSUNION, report.get("reportId"), report.get("reportDate"),
        consumer, score, accounts, negative_items, inquiries, public_records,
    )


# =============================================================================
# DISPATCH
# =============================================================================

NORMALIZERS: Dict[Bureau, Callable[[RawPayload], Report]] = {
    Bureau.EXPERIAN: normalize_experian,
    Bureau.EQUIFAX: normalize_equifax,
    Bureau.TRANSUNION: normalize_transunion,
}


def is_sandbox_payload(raw: Union[RawPayload, Report]) -> bool:
    """Sandbox reports carry the reserved report-id prefix."""
    if isinstance(raw, Report):
        return raw.report_id.startswith(SANDBOX_REPORT_PREFIX)
    report_id = raw.get("report_id") if isinstance(raw, dict) else None
    return isinstance(report_id, str) and report_id.startswith(SANDBOX_REPORT_PREFIX)


def normalize(bureau: Bureau, raw: Union[RawPayload, Report]) -> Report:
    """
    Normalize a raw provider payload into the canonical Report.

    Sandbox reports are already canonical and pass through unchanged.

    Raises:
        NormalizationError: the payload lacks a structurally required root node
    """
    bureau = Bureau(bureau)
    if is_sandbox_payload(raw):
        if isinstance(raw, Report):
            return raw
        return report_from_dict(raw)
    if isinstance(raw, Report):
        # Canonical input that isn't sandbox was normalized already
        return raw
    if not isinstance(raw, dict):
        raise NormalizationError(f"{bureau.value} payload is not a JSON object", bureau=bureau.value)

    report = NORMALIZERS[bureau](raw)
    logger.info(
        f"Normalized {bureau.value} report {report.report_id}: "
        f"{len(report.accounts)} accounts, {len(report.negative_items)} negative items, "
        f"{len(report.inquiries)} inquiries"
    )
    return report
