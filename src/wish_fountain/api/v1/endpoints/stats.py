"""Aggregate statistics and leaderboards."""

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query

from wish_fountain.core.settings import settings
from wish_fountain.services.fountain import require_wallet
from wish_fountain.services.stats import StatsAggregator, get_stats_aggregator

MAX_LEADERBOARD_LIMIT = 100
RECENT_EVENTS_LIMIT = 10

router = APIRouter(tags=["stats"])


def get_stats_aggregator_dep() -> StatsAggregator:
    """Return the shared statistics aggregator."""
    return get_stats_aggregator()


StatsDep = Annotated[StatsAggregator, Depends(get_stats_aggregator_dep)]


@router.get("/stats")
async def get_global_stats(stats: StatsDep) -> dict[str, int]:
    """Return the pool balance and lifetime totals across all wallets."""
    return await stats.global_stats()


@router.get("/stats/{wallet_address}")
async def get_wallet_stats(
    wallet_address: str,
    stats: StatsDep,
    limit: Annotated[int, Query(ge=0, le=MAX_LEADERBOARD_LIMIT)] = RECENT_EVENTS_LIMIT,
) -> dict[str, Any]:
    """Return one wallet's totals together with its most recent resolved sessions."""
    wallet_address = require_wallet(wallet_address)
    user_stats = await stats.user_stats(wallet_address)
    return {
        "walletAddress": wallet_address,
        **user_stats.as_response(),
        "recentEvents": await stats.recent_events(wallet_address, limit),
    }


@router.get("/leaderboard")
async def get_leaderboard(
    stats: StatsDep,
    limit: Annotated[int | None, Query(ge=1, le=MAX_LEADERBOARD_LIMIT)] = None,
) -> dict[str, list[dict[str, Any]]]:
    return await stats.leaderboard(limit or settings.leaderboard_default_limit)
