"""
Bureau Monitor - Change Detector

Diffs two consecutive reports for the same (subject, bureau).
Pure and deterministic: re-run for audit/backfill without re-pulling.

Checks run in a fixed order, which is the output order:
1. score_change
2. new_negative_item
3. removed_negative_item
4. new_account
5. balance_change
6. new_inquiry (hard only)
7. utilization_change
"""
from __future__ import annotations
import logging
import os
from dataclasses import dataclass
from typing import List, Optional

from ...models.ssot import (
    Change, ChangeCategory, ChangeType, InquiryType, Report, Severity,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeThresholds:
    """Materiality thresholds for score, balance and utilization changes."""
    # Lowest high band that still grades a 35-point move as medium
    score_high_delta: int = 35          # |delta| above this is high
    balance_absolute: float = 500.0     # emit when |delta| exceeds this
    balance_percent: float = 10.0       # ... or percent change exceeds this
    balance_high_percent: float = 25.0  # high when percent exceeds this
    utilization_points: float = 5.0     # emit when the rate moves at least this much
    utilization_high_points: float = 15.0

    @classmethod
    def from_env(cls) -> "ChangeThresholds":
        defaults = cls()
        return cls(
            score_high_delta=int(os.getenv("CHANGE_SCORE_HIGH_DELTA", defaults.score_high_delta)),
            balance_absolute=float(os.getenv("CHANGE_BALANCE_ABSOLUTE", defaults.balance_absolute)),
            balance_percent=float(os.getenv("CHANGE_BALANCE_PERCENT", defaults.balance_percent)),
            balance_high_percent=float(os.getenv("CHANGE_BALANCE_HIGH_PERCENT", defaults.balance_high_percent)),
            utilization_points=float(os.getenv("CHANGE_UTILIZATION_POINTS", defaults.utilization_points)),
            utilization_high_points=float(
                os.getenv("CHANGE_UTILIZATION_HIGH_POINTS", defaults.utilization_high_points)
            ),
        )


DEFAULT_THRESHOLDS = ChangeThresholds()


def _money(value: float) -> str:
    return f"${value:,.2f}"


def _score_changes(previous: Report, current: Report, thresholds: ChangeThresholds) -> List[Change]:
    prev_score = previous.score.value
    curr_score = current.score.value
    if prev_score == curr_score:
        return []

    if prev_score is None or curr_score is None:
        # Score appeared or disappeared; no numeric delta to grade
        return [Change(
            change_type=ChangeType.SCORE_CHANGE,
            category=ChangeCategory.SCORE,
            severity=Severity.MEDIUM,
            description=f"Credit score changed from {prev_score or 'unavailable'} to {curr_score or 'unavailable'}",
            previous_value=prev_score,
            current_value=curr_score,
        )]

    delta = curr_score - prev_score
    return [Change(
        change_type=ChangeType.SCORE_CHANGE,
        category=ChangeCategory.SCORE,
        severity=Severity.HIGH if abs(delta) > thresholds.score_high_delta else Severity.MEDIUM,
        description=(
            f"Credit score {'increased' if delta > 0 else 'decreased'} by {abs(delta)} points "
            f"({prev_score} → {curr_score})"
        ),
        previous_value=prev_score,
        current_value=curr_score,
        delta=delta,
        is_positive=delta > 0,
    )]


def _negative_item_changes(previous: Report, current: Report) -> List[Change]:
    prev_keys = {item.identity_key for item in previous.negative_items}
    curr_keys = {item.identity_key for item in current.negative_items}
    changes = []

    for item in current.negative_items:
        if item.identity_key not in prev_keys:
            changes.append(Change(
                change_type=ChangeType.NEW_NEGATIVE_ITEM,
                category=ChangeCategory.NEGATIVE_ITEM,
                severity=Severity.HIGH,
                description=(
                    f"New {item.item_type.value.replace('_', ' ')} from {item.creditor} "
                    f"({_money(item.balance)})"
                ),
                current_value={
                    "creditor": item.creditor,
                    "item_type": item.item_type.value,
                    "balance": item.balance,
                    "account_number": item.account_number,
                },
            ))

    for item in previous.negative_items:
        if item.identity_key not in curr_keys:
            changes.append(Change(
                change_type=ChangeType.REMOVED_NEGATIVE_ITEM,
                category=ChangeCategory.NEGATIVE_ITEM,
                severity=Severity.HIGH,
                description=f"{item.item_type.value.replace('_', ' ').title()} from {item.creditor} removed from report",
                previous_value={
                    "creditor": item.creditor,
                    "item_type": item.item_type.value,
                    "balance": item.balance,
                    "account_number": item.account_number,
                },
                is_positive=True,
            ))

    return changes


def _new_accounts(previous: Report, current: Report) -> List[Change]:
    prev_keys = {account.identity_key for account in previous.accounts}
    return [
        Change(
            change_type=ChangeType.NEW_ACCOUNT,
            category=ChangeCategory.ACCOUNT,
            severity=Severity.LOW,
            description=f"New {account.account_type or 'account'} opened with {account.creditor_name}",
            current_value={
                "creditor_name": account.creditor_name,
                "account_number": account.account_number,
                "account_type": account.account_type,
                "balance": account.balance,
            },
        )
        for account in current.accounts
        if account.identity_key not in prev_keys
    ]


def _balance_changes(previous: Report, current: Report, thresholds: ChangeThresholds) -> List[Change]:
    prev_by_key = {account.identity_key: account for account in previous.accounts}
    changes = []

    for account in current.accounts:
        prev = prev_by_key.get(account.identity_key)
        if prev is None:
            continue
        delta = account.balance - prev.balance
        percent = abs(delta) / prev.balance * 100 if prev.balance > 0 else 0.0
        if abs(delta) <= thresholds.balance_absolute and percent <= thresholds.balance_percent:
            continue

        changes.append(Change(
            change_type=ChangeType.BALANCE_CHANGE,
            category=ChangeCategory.ACCOUNT,
            severity=Severity.HIGH if percent > thresholds.balance_high_percent else Severity.MEDIUM,
            description=(
                f"{account.creditor_name} balance {'increased' if delta > 0 else 'decreased'} by "
                f"{_money(abs(delta))} ({_money(prev.balance)} → {_money(account.balance)})"
            ),
            previous_value=prev.balance,
            current_value=account.balance,
            delta=round(delta, 2),
            is_positive=delta < 0,
        ))

    return changes


def _new_inquiries(previous: Report, current: Report) -> List[Change]:
    prev_keys = {inquiry.identity_key for inquiry in previous.inquiries}
    return [
        Change(
            change_type=ChangeType.NEW_INQUIRY,
            category=ChangeCategory.INQUIRY,
            severity=Severity.MEDIUM,
            description=f"New hard inquiry from {inquiry.creditor}",
            current_value={
                "creditor": inquiry.creditor,
                "inquiry_date": inquiry.inquiry_date.isoformat() if inquiry.inquiry_date else None,
            },
        )
        for inquiry in current.inquiries
        if inquiry.inquiry_type == InquiryType.HARD and inquiry.identity_key not in prev_keys
    ]


def _utilization_change(previous: Report, current: Report, thresholds: ChangeThresholds) -> List[Change]:
    prev_rate = previous.summary.utilization_rate
    curr_rate = current.summary.utilization_rate
    delta = round(curr_rate - prev_rate, 1)
    if abs(delta) < thresholds.utilization_points:
        return []

    return [Change(
        change_type=ChangeType.UTILIZATION_CHANGE,
        category=ChangeCategory.SUMMARY,
        severity=Severity.HIGH if abs(delta) > thresholds.utilization_high_points else Severity.MEDIUM,
        description=f"Credit utilization {'increased' if delta > 0 else 'decreased'} from {prev_rate}% to {curr_rate}%",
        previous_value=prev_rate,
        current_value=curr_rate,
        delta=delta,
        is_positive=delta < 0,
    )]


def detect_changes(
    previous: Optional[Report],
    current: Report,
    thresholds: ChangeThresholds = DEFAULT_THRESHOLDS,
) -> List[Change]:
    """
    Ordered list of changes from previous to current.

    Returns [] on a first pull (previous is None).
    """
    if previous is None:
        return []

    changes: List[Change] = []
    changes.extend(_score_changes(previous, current, thresholds))
    changes.extend(_negative_item_changes(previous, current))
    changes.extend(_new_accounts(previous, current))
    changes.extend(_balance_changes(previous, current, thresholds))
    changes.extend(_new_inquiries(previous, current))
    changes.extend(_utilization_change(previous, current, thresholds))

    logger.debug(f"Detected {len(changes)} changes for {current.bureau.value} report {current.report_id}")
    return changes
