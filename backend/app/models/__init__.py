"""Bureau Monitor - Data Models"""
from .ssot import (
    # Enums
    Bureau, Severity, NegativeItemType, InquiryType, ChangeType, ChangeCategory,
    PullStatus, PullType, PermissiblePurpose,
    # Adapter input
    SubjectAddress, SubjectIdentity,
    # SSOT #1: Canonical report
    ScoreFactor, CreditScore, ConsumerAddress, ReportConsumer, Account, NegativeItem,
    Inquiry, PublicRecord, ReportSummary, Report,
    # SSOT #2: Changes
    Change,
    # SSOT #3: Snapshots and analysis
    Snapshot, CrossBureauDiscrepancy, CrossBureauAnalysis,
    # Orchestrator output
    PullOutcome, PullAllResult,
)

__all__ = [
    "Bureau", "Severity", "NegativeItemType", "InquiryType", "ChangeType", "ChangeCategory",
    "PullStatus", "PullType", "PermissiblePurpose",
    "SubjectAddress", "SubjectIdentity",
    "ScoreFactor", "CreditScore", "ConsumerAddress", "ReportConsumer", "Account", "NegativeItem",
    "Inquiry", "PublicRecord", "ReportSummary", "Report",
    "Change",
    "Snapshot", "CrossBureauDiscrepancy", "CrossBureauAnalysis",
    "PullOutcome", "PullAllResult",
]
