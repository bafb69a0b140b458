"""
Scheduler API Routes

Internal endpoints for system-automatic tasks.
Auto-pull runs for subjects whose next pull date has passed.
"""
import logging
import os

from fastapi import APIRouter, Depends, HTTPException, Header
from sqlalchemy.orm import Session

from ..database import get_db
from ..services.bureau import AutoPullService, PullOrchestrator
from .bureau import get_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/internal", tags=["scheduler"])


# =============================================================================
# INTERNAL API KEY VALIDATION
# =============================================================================

INTERNAL_API_KEY = os.getenv("INTERNAL_API_KEY", "scheduler-internal-key-change-in-production")


async def verify_internal_key(x_internal_key: str = Header(...)):
    """Verify internal API key for scheduler endpoints."""
    if x_internal_key != INTERNAL_API_KEY:
        raise HTTPException(status_code=403, detail="Invalid internal API key")
    return True


# =============================================================================
# SCHEDULER ENDPOINTS (SYSTEM-ONLY)
# =============================================================================

@router.post("/auto-pull/run", response_model=dict)
def run_auto_pulls(
    db: Session = Depends(get_db),
    orchestrator: PullOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_internal_key),
):
    """
    Run every enabled auto-pull whose next pull date has passed.

    System-automatic - no user confirmation required.
    """
    result = AutoPullService(db).run_due(orchestrator)
    logger.info(f"Auto-pull run finished: {result['processed']} processed, {result['failed']} failed")
    return result
