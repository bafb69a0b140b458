"""
Bureau Monitor - Sandbox Adapter

Synthesizes plausible canonical reports for environments without live
bureau credentials. Output is already canonical (report id prefixed with
SANDBOX-) so the normalizer passes it through untouched.
"""
from __future__ import annotations
import hashlib
import logging
import random
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from ...models.ssot import (
    Account, Bureau, ConsumerAddress, CreditScore, Inquiry, InquiryType, NegativeItem, NegativeItemType,
    PermissiblePurpose, Report, ReportConsumer, ScoreFactor, SubjectIdentity, SANDBOX_REPORT_PREFIX,
    SCORE_MAX, SCORE_MIN, mask_account_number, report_to_dict,
)
from .adapters import BureauAdapter
from .normalizer import summarize

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _SandboxCreditor:
    name: str
    account_type: str
    balance: float


CREDITORS = [
    _SandboxCreditor("Chase Bank", "credit_card", 2500),
    _SandboxCreditor("Bank of America", "mortgage", 185000),
    _SandboxCreditor("Capital One", "credit_card", 1200),
    _SandboxCreditor("Wells Fargo", "auto_loan", 15000),
    _SandboxCreditor("Discover", "credit_card", 800),
    _SandboxCreditor("American Express", "credit_card", 3200),
    _SandboxCreditor("SoFi", "personal_loan", 5000),
    _SandboxCreditor("Synchrony Financial", "retail_card", 450),
]

# (creditor, type, balance, date reported)
NEGATIVE_ITEM_POOL = [
    ("ABC Collections", NegativeItemType.COLLECTION, 850.0, date(2025, 3, 15)),
    ("XYZ Medical", NegativeItemType.COLLECTION, 1200.0, date(2024, 11, 20)),
    ("Capital One", NegativeItemType.LATE_PAYMENT, 0.0, date(2025, 6, 10)),
    ("Midland Credit", NegativeItemType.CHARGE_OFF, 2340.0, date(2024, 8, 5)),
]

INQUIRIES = [
    ("Chase Bank", date(2025, 9, 12), InquiryType.HARD),
    ("Auto Dealer Finance", date(2025, 7, 20), InquiryType.HARD),
    ("Bank of America", date(2025, 5, 3), InquiryType.SOFT),
]

SCORE_FACTORS = [
    ScoreFactor("14", "Length of time accounts have been established"),
    ScoreFactor("01", "Amount owed on accounts is too high"),
    ScoreFactor("09", "Too many accounts with balances"),
    ScoreFactor("40", "Derogatory public records or collections"),
]


def _negative_item_count(score: int, rng: random.Random) -> int:
    """0-1 items for strong scores, 1-2 mid-range, 3-4 below 650."""
    if score >= 740:
        return rng.randint(0, 1)
    if score >= 650:
        return rng.randint(1, 2)
    return rng.randint(3, 4)


def _stable_account_number(subject_id: str, bureau: Bureau, creditor: str) -> str:
    # Same subject + bureau + creditor always yields the same number,
    # so repeated sandbox pulls keep item identity stable
    digest = hashlib.sha256(f"{subject_id}:{bureau.value}:{creditor}".encode()).hexdigest()
    return mask_account_number(digest[:10])


def generate_sandbox_report(
    bureau: Bureau,
    identity: SubjectIdentity,
    rng: Optional[random.Random] = None,
) -> Report:
    """Build a canonical Report with a bounded randomized score."""
    rng = rng or random.Random()
    bureau = Bureau(bureau)
    today = date.today()

    base_score = 580 + rng.randint(0, 199)
    score = max(SCORE_MIN, min(SCORE_MAX, base_score + rng.randint(-15, 14)))

    accounts: List[Account] = []
    for i, creditor in enumerate(CREDITORS):
        revolving = "card" in creditor.account_type
        accounts.append(Account(
            creditor_name=creditor.name,
            account_number=f"****{str(1000 + i * 111)[-4:]}",
            account_type=creditor.account_type,
            balance=creditor.balance,
            credit_limit=creditor.balance * 3 if revolving else None,
            payment_status="current",
            status="closed" if i == len(CREDITORS) - 1 else "open",
            date_opened=date(2018 + rng.randint(0, 5), 1 + rng.randint(0, 8), 1),
            last_reported=today,
            months_reviewed=12 + rng.randint(0, 47),
        ))

    picked = rng.sample(NEGATIVE_ITEM_POOL, _negative_item_count(score, rng))
    negative_items = [
        NegativeItem(
            creditor=creditor,
            item_type=item_type,
            balance=balance,
            date_reported=reported,
            account_number=_stable_account_number(identity.subject_id, bureau, creditor),
            status="open",
            original_creditor=f"Original: {creditor}" if item_type == NegativeItemType.COLLECTION else "",
        )
        for creditor, item_type, balance, reported in picked
    ]

    inquiries = [Inquiry(creditor=c, inquiry_date=d, inquiry_type=t) for c, d, t in INQUIRIES]

    address = identity.address
    consumer = ReportConsumer(
        first_name=identity.first_name,
        last_name=identity.last_name,
        date_of_birth=identity.date_of_birth.isoformat() if identity.date_of_birth else "",
        addresses=[ConsumerAddress(
            line1=address.line1 or "123 Main St",
            city=address.city or "Dallas",
            state=address.state or "TX",
            zip_code=address.zip_code or "75001",
            address_type="current",
        )],
    )

    return Report(
        bureau=bureau,
        report_id=f"{SANDBOX_REPORT_PREFIX}{bureau.value.upper()}-{uuid4()}",
        report_date=today,
        generated_at=datetime.now(),
        consumer=consumer,
        score=CreditScore(
            value=score,
            model="VantageScore 3.0" if bureau == Bureau.TRANSUNION else "FICO Score 8",
            factors=list(SCORE_FACTORS),
        ),
        accounts=accounts,
        negative_items=negative_items,
        inquiries=inquiries,
        public_records=[],
        summary=summarize(accounts, negative_items, inquiries),
        sandbox=True,
    )


class SandboxAdapter(BureauAdapter):
    """Stands in for a bureau with no live credentials."""

    def __init__(self, bureau: Bureau, rng: Optional[random.Random] = None):
        self.bureau = Bureau(bureau)
        self._rng = rng or random.Random()

    @property
    def is_live(self) -> bool:
        return False

    def pull(
        self,
        identity: SubjectIdentity,
        permissible_purpose: PermissiblePurpose = PermissiblePurpose.WRITTEN_INSTRUCTION,
    ) -> Dict[str, Any]:
        report = generate_sandbox_report(self.bureau, identity, self._rng)
        logger.info(
            f"Sandbox mode: simulated {self.bureau.value} report {report.report_id} "
            f"for subject {identity.subject_id} (score {report.score.value})"
        )
        return report_to_dict(report)
