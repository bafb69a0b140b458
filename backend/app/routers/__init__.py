"""Bureau Monitor - API Routers"""
from .bureau import router as bureau_router
from .scheduler import router as scheduler_router

__all__ = [
    "bureau_router",
    "scheduler_router",
]
