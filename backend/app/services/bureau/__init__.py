"""Bureau Monitor - Bureau Pull Pipeline

Adapter → Normalizer → Snapshot Store → Change Detector → persisted Changes,
coordinated by the PullOrchestrator. Cross-bureau analysis reads the latest
snapshot per bureau.
"""
from .errors import (
    BureauError,
    AuthenticationError,
    UpstreamError,
    NormalizationError,
    NotFoundError,
)
from .adapters import (
    BureauAdapter,
    BureauAvailability,
    BureauConfig,
    TokenCache,
    bureau_availability,
    build_adapter,
    build_adapters,
    load_bureau_config,
    shared_token_cache,
)
from .sandbox import SandboxAdapter, generate_sandbox_report
from .normalizer import normalize, classify_item_type, summarize
from .change_detector import ChangeThresholds, detect_changes
from .snapshot_store import SnapshotStore
from .cross_bureau import CrossBureauAnalyzer, analyze_reports
from .pull_records import PullRecordService
from .score_history import ScoreHistoryService
from .change_history import ChangeHistoryService
from .auto_pull import AutoPullService, FREQUENCY_DAYS
from .connections import BureauConnectionService
from .orchestrator import PullOrchestrator

__all__ = [
    "BureauError",
    "AuthenticationError",
    "UpstreamError",
    "NormalizationError",
    "NotFoundError",
    "BureauAdapter",
    "BureauAvailability",
    "BureauConfig",
    "TokenCache",
    "bureau_availability",
    "build_adapter",
    "build_adapters",
    "load_bureau_config",
    "shared_token_cache",
    "SandboxAdapter",
    "generate_sandbox_report",
    "normalize",
    "classify_item_type",
    "summarize",
    "ChangeThresholds",
    "detect_changes",
    "SnapshotStore",
    "CrossBureauAnalyzer",
    "analyze_reports",
    "PullRecordService",
    "ScoreHistoryService",
    "ChangeHistoryService",
    "AutoPullService",
    "FREQUENCY_DAYS",
    "BureauConnectionService",
    "PullOrchestrator",
]
