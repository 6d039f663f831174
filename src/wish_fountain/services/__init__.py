"""Business logic services for the Wish Fountain application."""

from .fountain import SessionLifecycleManager
from .payout import PayoutIssuer
from .presence import PresenceHub
from .session_store import MemorySessionStore, RedisSessionStore, SessionStore
from .stats import StatsAggregator
from .verifier import TransactionVerifier

__all__ = [
    "SessionLifecycleManager",
    "PayoutIssuer",
    "PresenceHub",
    "SessionStore",
    "MemorySessionStore",
    "RedisSessionStore",
    "StatsAggregator",
    "TransactionVerifier",
]
