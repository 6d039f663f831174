"""API endpoint modules for version 1."""

from .fountain import router as fountain_router
from .realtime import router as realtime_router
from .stats import router as stats_router

__all__ = [
    "fountain_router",
    "stats_router",
    "realtime_router",
]
