"""
Bureau Monitor - Cross-Bureau Analyzer

Compares the latest report from each bureau for one subject.

Discrepancy rules:
- score_spread               max - min score; medium above 40, high above 80
- negative_item_discrepancy  max - min negative item count; medium above 2

Read-only. Fewer than two bureaus with data yields an explicit
insufficient-data result, not an error.
"""
import logging
from datetime import datetime
from typing import Dict, Mapping

from sqlalchemy.orm import Session

from ...models.ssot import Bureau, CrossBureauAnalysis, CrossBureauDiscrepancy, Report, Severity
from .snapshot_store import SnapshotStore

logger = logging.getLogger(__name__)

SCORE_SPREAD_MEDIUM = 40
SCORE_SPREAD_HIGH = 80
NEGATIVE_ITEM_SPREAD_MEDIUM = 2


def analyze_reports(reports_by_bureau: Mapping[Bureau, Report], subject_id: str = "") -> CrossBureauAnalysis:
    """Pure core: discrepancy signals across the given reports."""
    bureaus = sorted(reports_by_bureau, key=lambda b: Bureau(b).value)
    if len(bureaus) < 2:
        return CrossBureauAnalysis(
            subject_id=subject_id,
            sufficient_data=False,
            message="Need at least 2 bureau reports for cross-bureau analysis",
            bureaus_compared=[Bureau(b) for b in bureaus],
            analyzed_at=datetime.now(),
        )

    scores: Dict[str, object] = {}
    negative_counts: Dict[str, int] = {}
    for bureau in bureaus:
        report = reports_by_bureau[bureau]
        key = Bureau(bureau).value
        scores[key] = report.score.value
        negative_counts[key] = len(report.negative_items)

    discrepancies = []

    known_scores = [s for s in scores.values() if s is not None]
    score_spread = max(known_scores) - min(known_scores) if len(known_scores) >= 2 else 0
    if score_spread > SCORE_SPREAD_MEDIUM:
        discrepancies.append(CrossBureauDiscrepancy(
            discrepancy_type="score_spread",
            severity=Severity.HIGH if score_spread > SCORE_SPREAD_HIGH else Severity.MEDIUM,
            description=f"Score varies by {score_spread} points across bureaus",
            values_by_bureau={b: s for b, s in scores.items() if s is not None},
        ))

    item_spread = max(negative_counts.values()) - min(negative_counts.values())
    if item_spread > NEGATIVE_ITEM_SPREAD_MEDIUM:
        discrepancies.append(CrossBureauDiscrepancy(
            discrepancy_type="negative_item_discrepancy",
            severity=Severity.MEDIUM,
            description=f"Negative item count varies by {item_spread} across bureaus",
            values_by_bureau=dict(negative_counts),
        ))

    return CrossBureauAnalysis(
        subject_id=subject_id,
        sufficient_data=True,
        message=f"Compared {len(bureaus)} bureaus; {len(discrepancies)} discrepancies found",
        bureaus_compared=[Bureau(b) for b in bureaus],
        scores=scores,
        negative_item_counts=negative_counts,
        max_score_spread=score_spread,
        negative_item_spread=item_spread,
        discrepancies=discrepancies,
        analyzed_at=datetime.now(),
    )


class CrossBureauAnalyzer:
    """Runs analyze_reports over the latest stored snapshot per bureau."""

    def __init__(self, db: Session):
        self.db = db

    def analyze(self, subject_id: str) -> CrossBureauAnalysis:
        snapshots = SnapshotStore(self.db).latest_snapshots(subject_id)
        analysis = analyze_reports({b: s.report for b, s in snapshots.items()}, subject_id=subject_id)
        logger.info(
            f"Cross-bureau analysis for {subject_id}: {len(analysis.bureaus_compared)} bureaus, "
            f"{len(analysis.discrepancies)} discrepancies"
        )
        return analysis
