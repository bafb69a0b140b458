"""
Bureau Monitor - FastAPI Application

Main entry point for the Bureau Monitor backend.

Architecture:
- Bureau Adapter → raw provider JSON
- Normalizer → Report (SSOT #1)
- Snapshot Store + Change Detector → Snapshot, Change (SSOT #2)
- Cross-Bureau Analyzer → CrossBureauAnalysis (SSOT #3)
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .routers import bureau_router, scheduler_router
from .database import init_db
from .services.bureau import bureau_availability

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    for entry in bureau_availability():
        logger.info(f"{entry.name}: {entry.mode} mode ({entry.base_url})")
    yield

# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Bureau Monitor",
    description="""
    Bureau Monitor - Credit Bureau Integration

    Pulls credit reports from Experian, Equifax and TransUnion, keeps every
    pull as an immutable snapshot, and surfaces material changes between
    consecutive snapshots and discrepancies across bureaus.

    ## Pipeline
    1. **Adapters**: Subject identity → provider request → raw report
    2. **Normalizer**: Raw report → Report (SSOT #1)
    3. **Snapshot Store**: Report → Snapshot + Changes (SSOT #2)
    4. **Cross-Bureau Analyzer**: Latest snapshots → discrepancies (SSOT #3)

    ## Key Principles
    - Snapshots are immutable and chained per (subject, bureau)
    - Change detection is pure and can be re-run without re-pulling
    - Bureaus without credentials run in explicit sandbox mode
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(bureau_router)
app.include_router(scheduler_router)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Bureau Monitor",
        "version": "1.0.0",
        "description": "Credit Bureau Integration",
        "docs": "/docs",
        "architecture": {
            "ssot_1": "Report - Output of Normalizer",
            "ssot_2": "Snapshot and Changes - Output of Snapshot Store",
            "ssot_3": "CrossBureauAnalysis - Output of Cross-Bureau Analyzer"
        }
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


# For running with: python -m app.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
