"""Event log and statistics aggregation for resolved sessions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Final

from wish_fountain.services.session_store import (
    GLOBAL_STATS_KEY,
    LEADERBOARD_BIGGEST_KEY,
    LEADERBOARD_PLAYED_KEY,
    LEADERBOARD_WON_KEY,
    POOL_KEY,
    SessionStore,
    event_index_key,
    event_key,
    get_session_store,
    user_key,
)

logger = logging.getLogger(__name__)

JACKPOT_TIER: Final[str] = "JACKPOT"
MAX_EVENT_KEY_ATTEMPTS: Final[int] = 1000


@dataclass(frozen=True)
class GambleEvent:
    """One resolved session, as written to the append-only log."""

    wallet_address: str
    timestamp: int
    session_id: str
    amount_gambled: int
    tier: str
    multiplier: float
    payout: int
    payout_tx: str | None
    burn_tx: str

    def to_record(self) -> dict[str, Any]:
        return {
            "walletAddress": self.wallet_address,
            "timestamp": self.timestamp,
            "sessionId": self.session_id,
            "amountGambled": self.amount_gambled,
            "result": {
                "tier": self.tier,
                "multiplier": self.multiplier,
                "amount": self.payout,
            },
            "payoutTx": self.payout_tx,
            "burnTx": self.burn_tx,
        }


@dataclass
class UserStats:
    total_gambled: int = 0
    total_won: int = 0
    games_played: int = 0
    biggest_win: int = 0

    @classmethod
    def from_hash(cls, fields: dict[str, int]) -> UserStats:
        return cls(
            total_gambled=fields.get("totalGambled", 0),
            total_won=fields.get("totalWon", 0),
            games_played=fields.get("gamesPlayed", 0),
            biggest_win=fields.get("biggestWin", 0),
        )

    def as_response(self) -> dict[str, int]:
        return {
            "totalGambled": self.total_gambled,
            "totalWon": self.total_won,
            "gamesPlayed": self.games_played,
            "biggestWin": self.biggest_win,
        }


class StatsAggregator:
    """Appends gamble events and rolls them into per-wallet and global aggregates.

    Every counter is updated with an atomic store primitive, so concurrent
    resolutions never lose increments.
    """

    def __init__(self, store: SessionStore | None = None) -> None:
        self._store = store or get_session_store()

    async def record(self, event: GambleEvent) -> str:
        """Persist ``event`` and update all aggregates. Returns the event key."""
        key = await self._append(event)

        await self._store.hincrby_many(
            user_key(event.wallet_address),
            {
                "totalGambled": event.amount_gambled,
                "totalWon": event.payout,
                "gamesPlayed": 1,
            },
        )
        await self._store.hset_max(user_key(event.wallet_address), "biggestWin", event.payout)

        await self._store.hincrby_many(
            GLOBAL_STATS_KEY,
            {
                "gamesPlayed": 1,
                "totalGambled": event.amount_gambled,
                "totalWon": event.payout,
                "jackpotsWon": 1 if event.tier == JACKPOT_TIER else 0,
            },
        )
        await self._store.hset_max(GLOBAL_STATS_KEY, "biggestWin", event.payout)

        await self._store.zincrby(LEADERBOARD_WON_KEY, event.wallet_address, event.payout)
        await self._store.zincrby(LEADERBOARD_PLAYED_KEY, event.wallet_address, 1)
        await self._store.zset_max(LEADERBOARD_BIGGEST_KEY, event.wallet_address, event.payout)

        pool = await self._store.incr(POOL_KEY, event.amount_gambled - event.payout)
        logger.debug("Recorded %s for %s; pool now %d", event.tier, event.wallet_address, pool)
        return key

    async def _append(self, event: GambleEvent) -> str:
        # Same-millisecond events for one wallet get the next free timestamp slot.
        record = event.to_record()
        for offset in range(MAX_EVENT_KEY_ATTEMPTS):
            key = event_key(event.wallet_address, event.timestamp + offset)
            if await self._store.put_if_absent(key, record):
                await self._store.zadd(
                    event_index_key(event.wallet_address), key, event.timestamp + offset
                )
                return key
        raise RuntimeError(f"Could not allocate an event key for {event.wallet_address}")

    async def fountain_pool(self) -> int:
        return await self._store.get_int(POOL_KEY)

    async def user_stats(self, wallet: str) -> UserStats:
        return UserStats.from_hash(await self._store.hgetall(user_key(wallet)))

    async def global_stats(self) -> dict[str, int]:
        fields = await self._store.hgetall(GLOBAL_STATS_KEY)
        return {
            "fountainPool": await self.fountain_pool(),
            "totalGamesPlayed": fields.get("gamesPlayed", 0),
            "totalWISHGambled": fields.get("totalGambled", 0),
            "biggestWinEver": fields.get("biggestWin", 0),
            "jackpotsWon": fields.get("jackpotsWon", 0),
        }

    async def leaderboard(self, limit: int) -> dict[str, list[dict[str, Any]]]:
        """Rank wallets by total won, games played and biggest single win."""

        async def _ranked(key: str, field: str) -> list[dict[str, Any]]:
            rows = await self._store.ztop(key, limit)
            return [{"walletAddress": wallet, field: int(score)} for wallet, score in rows]

        return {
            "topWinners": await _ranked(LEADERBOARD_WON_KEY, "totalWon"),
            "mostActive": await _ranked(LEADERBOARD_PLAYED_KEY, "gamesPlayed"),
            "luckiest": await _ranked(LEADERBOARD_BIGGEST_KEY, "biggestWin"),
        }

    async def recent_events(self, wallet: str, limit: int) -> list[dict[str, Any]]:
        """Return up to ``limit`` of the wallet's most recent events, newest first."""
        rows = await self._store.ztop(event_index_key(wallet), limit)
        events = []
        for key, _ in rows:
            record = await self._store.get(key)
            if record is not None:
                events.append(record)
        return events


class _StatsSingleton:
    _instance: StatsAggregator | None = None

    @classmethod
    def get_instance(cls) -> StatsAggregator:
        if cls._instance is None:
            cls._instance = StatsAggregator()
        return cls._instance


def get_stats_aggregator() -> StatsAggregator:
    return _StatsSingleton.get_instance()
