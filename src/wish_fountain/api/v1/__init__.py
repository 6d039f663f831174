"""Version 1 API endpoints."""

from .endpoints import fountain_router, realtime_router, stats_router

__all__ = [
    "fountain_router",
    "stats_router",
    "realtime_router",
]
