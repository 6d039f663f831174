"""Session lifecycle: start, resolve and clear fountain sessions.

A session moves ``pending -> resolved`` exactly once. Three store keys guard
that transition:

- ``pending:<wallet>`` is created with an atomic create-if-absent, so a wallet
  holds at most one pending session.
- ``resolving:<id>`` is a short-lived claim taken before any chain work, so two
  concurrent resolves of one session cannot both roll and pay.
- ``burn:<signature>`` binds a burn transaction to the first session it
  resolved, so one burn cannot fund two sessions.

A synchronous payout is preceded by a ``payoutAttempt`` marker on the pending
session record. A retry that finds the marker completes the record without
paying again and flags the payout ``unreconciled``.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Final

from solders.pubkey import Pubkey

from wish_fountain.core.fairness import RandomnessEngine
from wish_fountain.core.settings import settings
from wish_fountain.services.errors import (
    AlreadyResolvedError,
    BurnNotVerifiedError,
    BurnReplayError,
    PayoutError,
    ResolutionInProgressError,
    SessionConflictError,
    SessionNotFoundError,
    ValidationError,
)
from wish_fountain.services.payout import PayoutIssuer, get_payout_issuer
from wish_fountain.services.presence import PresenceHub, get_presence_hub
from wish_fountain.services.session_store import (
    SessionStore,
    burn_key,
    get_session_store,
    pending_key,
    resolving_key,
    session_key,
)
from wish_fountain.services.stats import GambleEvent, StatsAggregator, get_stats_aggregator
from wish_fountain.services.verifier import (
    BurnExpectation,
    TransactionVerifier,
    get_transaction_verifier,
)

logger = logging.getLogger(__name__)

STATUS_PENDING: Final[str] = "pending"
STATUS_RESOLVED: Final[str] = "resolved"

PAYOUT_NONE: Final[str] = "none"
PAYOUT_SENT: Final[str] = "sent"
PAYOUT_UNCONFIRMED: Final[str] = "unconfirmed"
PAYOUT_PENDING: Final[str] = "pending"
PAYOUT_FAILED: Final[str] = "failed"
PAYOUT_UNRECONCILED: Final[str] = "unreconciled"

FAILED_PREFIX: Final[str] = "FAILED_"
PENDING_PREFIX: Final[str] = "PENDING_"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class FountainConfig:
    """Immutable session rules."""

    exact_stake: int
    burn_address: str
    token_mint: str | None
    stale_after_ms: int
    claim_ttl_seconds: int
    background_payouts: bool


def load_fountain_config() -> FountainConfig:
    return FountainConfig(
        exact_stake=settings.exact_stake,
        burn_address=settings.burn_address,
        token_mint=settings.wish_token_mint,
        stale_after_ms=settings.session_stale_ms,
        claim_ttl_seconds=settings.resolve_claim_ttl_seconds,
        background_payouts=settings.payout_mode == "background",
    )


def require_wallet(wallet_address: str | None) -> str:
    wallet = (wallet_address or "").strip()
    if not wallet:
        raise ValidationError("Wallet address required")
    try:
        Pubkey.from_string(wallet)
    except ValueError as exc:
        raise ValidationError("Invalid wallet address") from exc
    return wallet


class SessionLifecycleManager:
    """Coordinates the store, verifier, randomness, payouts and stats for one session."""

    def __init__(
        self,
        store: SessionStore | None = None,
        engine: RandomnessEngine | None = None,
        verifier: TransactionVerifier | None = None,
        payouts: PayoutIssuer | None = None,
        stats: StatsAggregator | None = None,
        presence: PresenceHub | None = None,
        *,
        config: FountainConfig | None = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._store = store or get_session_store()
        self._engine = engine or RandomnessEngine()
        self._verifier = verifier or get_transaction_verifier()
        self._payouts = payouts or get_payout_issuer()
        self._stats = stats or (StatsAggregator(store) if store else get_stats_aggregator())
        self._presence = presence or get_presence_hub()
        self.config = config or load_fountain_config()
        self._clock = clock
        self._payout_tasks: set[asyncio.Task[None]] = set()

    # --- start -------------------------------------------------------------------

    async def start(self, wallet_address: str | None, client_seed: str | None = None) -> dict[str, Any]:
        """Open a pending session for ``wallet_address`` and publish the server commit.

        Raises:
            ValidationError: the wallet address is missing or not a public key.
            SessionConflictError: the wallet already holds a fresh pending session.
        """
        wallet = require_wallet(wallet_address)
        now = self._clock()

        lock = await self._store.get(pending_key(wallet))
        if lock is not None:
            age = now - int(lock.get("timestamp", 0))
            if age < self.config.stale_after_ms:
                raise SessionConflictError(lock.get("sessionId"), age)
            await self._evict_stale(wallet, lock, age)

        server_seed, server_commit = self._engine.new_server_seed()
        session_id = str(uuid.uuid4())
        client_seed = client_seed or self._engine.new_client_seed()
        record = {
            "sessionId": session_id,
            "walletAddress": wallet,
            "serverSeed": server_seed,
            "serverCommit": server_commit,
            "clientSeed": client_seed,
            "status": STATUS_PENDING,
            "timestamp": now,
        }

        await self._store.put(session_key(session_id), record)
        lock_value = {"sessionId": session_id, "timestamp": now}
        if not await self._store.put_if_absent(pending_key(wallet), lock_value):
            # Another start for this wallet won the race.
            await self._store.delete(session_key(session_id))
            winner = await self._store.get(pending_key(wallet)) or {}
            winner_age = now - int(winner["timestamp"]) if "timestamp" in winner else None
            raise SessionConflictError(winner.get("sessionId"), winner_age)

        logger.info("Session %s started for %s", session_id, wallet)
        return {
            "sessionId": session_id,
            "serverCommit": server_commit,
            "clientSeed": client_seed,
            "burnAddress": self.config.burn_address,
            "exactStake": self.config.exact_stake,
            "message": (
                f"Send exactly {self.config.exact_stake} $WISH tokens to burn address, "
                "then call /resolve"
            ),
        }

    async def _evict_stale(self, wallet: str, lock: dict[str, Any], age: int) -> None:
        stale_id = lock.get("sessionId")
        if stale_id and await self._store.get(resolving_key(stale_id)) is not None:
            # The stale session is mid-resolution; its lock is released when that finishes.
            raise SessionConflictError(stale_id, age)
        if not await self._store.delete_if_equals(pending_key(wallet), lock):
            return
        if stale_id:
            stale = await self._store.get(session_key(stale_id))
            if stale is not None and stale.get("status") == STATUS_PENDING:
                await self._store.delete(session_key(stale_id))
        logger.warning("Evicted stale session %s for %s (age %d ms)", stale_id, wallet, age)

    # --- resolve -----------------------------------------------------------------

    async def resolve(self, session_id: str | None, tx_signature: str | None) -> dict[str, Any]:
        """Verify the burn, roll, pay and reveal.

        Payout failures never fail the resolution; the session records a
        ``FAILED_<uuid>`` reference instead. A retry after a partial failure
        reuses the burn that was first rolled and never pays twice.

        Raises:
            ValidationError: either argument is missing.
            SessionNotFoundError: no session under ``session_id``.
            AlreadyResolvedError: the session is no longer pending.
            ResolutionInProgressError: another request holds the resolution claim.
            BurnNotVerifiedError: the burn did not verify; the session stays pending.
            BurnReplayError: the burn already resolved another session.
        """
        if not session_id or not tx_signature:
            raise ValidationError("Session ID and transaction signature required")

        session = await self._load_pending(session_id)

        claim = {"sessionId": session_id, "token": uuid.uuid4().hex}
        claimed = await self._store.put_if_absent(
            resolving_key(session_id), claim, ttl_seconds=self.config.claim_ttl_seconds
        )
        if not claimed:
            raise ResolutionInProgressError(session_id)
        try:
            # The record may have changed between the first read and the claim.
            session = await self._load_pending(session_id)
            return await self._resolve_claimed(session, tx_signature)
        finally:
            await self._store.delete_if_equals(resolving_key(session_id), claim)

    async def _load_pending(self, session_id: str) -> dict[str, Any]:
        session = await self._store.get(session_key(session_id))
        if session is None:
            raise SessionNotFoundError(session_id)
        if session.get("status") != STATUS_PENDING:
            raise AlreadyResolvedError(session_id)
        return session

    async def _resolve_claimed(self, session: dict[str, Any], tx_signature: str) -> dict[str, Any]:
        session_id = session["sessionId"]
        wallet = session["walletAddress"]
        stake = self.config.exact_stake

        attempt = session.pop("payoutAttempt", None)
        if attempt is None:
            expectation = BurnExpectation(owner=wallet, mint=self.config.token_mint, amount=stake)
            verification = await self._verifier.verify(tx_signature, expectation)
            if not verification:
                logger.warning(
                    "Burn %s not verified for session %s: %s",
                    tx_signature,
                    session_id,
                    verification.reason,
                )
                raise BurnNotVerifiedError(verification.reason)
            await self._claim_burn(tx_signature, session_id)
        elif attempt["burnTx"] != tx_signature:
            logger.warning(
                "Session %s already rolled with burn %s; ignoring %s",
                session_id,
                attempt["burnTx"],
                tx_signature,
            )
            tx_signature = attempt["burnTx"]

        outcome = self._engine.roll(session["serverSeed"], session["clientSeed"], tx_signature)
        payout = outcome.payout_for(stake)

        if payout <= 0:
            payout_fields = {"payoutTx": None, "payoutStatus": PAYOUT_NONE}
        elif attempt is not None:
            # An earlier attempt reached the payout and stopped before recording it.
            payout_fields = {"payoutTx": attempt["reference"], "payoutStatus": PAYOUT_UNRECONCILED}
            logger.error(
                "Session %s may already have paid %d to %s; recorded as %s for reconciliation",
                session_id,
                payout,
                wallet,
                attempt["reference"],
            )
        elif self.config.background_payouts:
            payout_fields = {
                "payoutTx": f"{PENDING_PREFIX}{uuid.uuid4()}",
                "payoutStatus": PAYOUT_PENDING,
            }
        else:
            await self._mark_payout_started(session, tx_signature)
            payout_fields = await self._issue_payout(wallet, payout, session_id)
        payout_tx, payout_status = payout_fields["payoutTx"], payout_fields["payoutStatus"]

        resolved_at = self._clock()
        session.update(
            {
                "status": STATUS_RESOLVED,
                "result": {
                    "tier": outcome.tier.name,
                    "multiplier": float(outcome.multiplier),
                    "roll": outcome.roll,
                },
                "payout": payout,
                **payout_fields,
                "burnTx": tx_signature,
                "resolvedAt": resolved_at,
            }
        )
        await self._store.put(session_key(session_id), session)
        await self._store.delete_if_equals(
            pending_key(wallet), {"sessionId": session_id, "timestamp": session["timestamp"]}
        )
        logger.info(
            "Session %s resolved: %s (roll %.10f), payout %d, tx %s",
            session_id,
            outcome.tier.name,
            outcome.roll,
            payout,
            payout_tx,
        )

        await self._record(
            GambleEvent(
                wallet_address=wallet,
                timestamp=resolved_at,
                session_id=session_id,
                amount_gambled=stake,
                tier=outcome.tier.name,
                multiplier=float(outcome.multiplier),
                payout=payout,
                payout_tx=payout_tx,
                burn_tx=tx_signature,
            )
        )

        if payout_status == PAYOUT_PENDING and payout_tx is not None:
            self._schedule_payout(session_id, wallet, payout, payout_tx)

        return {
            "success": True,
            "sessionId": session_id,
            "serverSeed": session["serverSeed"],
            "serverCommit": session["serverCommit"],
            "clientSeed": session["clientSeed"],
            "burnTx": tx_signature,
            "payoutTx": payout_tx,
            "result": {
                "tier": outcome.tier.name,
                "multiplier": float(outcome.multiplier),
                "payout": payout,
                "message": outcome.tier.message,
            },
            "timestamp": resolved_at,
        }

    async def _claim_burn(self, tx_signature: str, session_id: str) -> None:
        if await self._store.put_if_absent(burn_key(tx_signature), {"sessionId": session_id}):
            return
        owner = await self._store.get(burn_key(tx_signature)) or {}
        if owner.get("sessionId") == session_id:
            # An earlier attempt for this session claimed the burn and then stopped short.
            return
        logger.warning(
            "Burn %s replayed for session %s (already used by %s)",
            tx_signature,
            session_id,
            owner.get("sessionId"),
        )
        raise BurnReplayError(tx_signature)

    async def _record(self, event: GambleEvent) -> None:
        # The session is already resolved and persisted; aggregates are secondary.
        try:
            await self._stats.record(event)
        except Exception:
            logger.error(
                "Failed to record stats for session %s", event.session_id, exc_info=True
            )
            return
        self._presence.publish(
            {
                "type": "fountainUpdate",
                "pool": await self._stats.fountain_pool(),
                "lastWinners": {
                    "walletAddress": event.wallet_address,
                    "tier": event.tier,
                    "payout": event.payout,
                },
            }
        )

    # --- payouts -----------------------------------------------------------------

    async def _mark_payout_started(self, session: dict[str, Any], tx_signature: str) -> None:
        """Persist a marker so a retry after a lost write never pays the session twice."""
        attempt = {
            "burnTx": tx_signature,
            "reference": f"{PENDING_PREFIX}{uuid.uuid4()}",
            "startedAt": self._clock(),
        }
        await self._store.put(session_key(session["sessionId"]), {**session, "payoutAttempt": attempt})

    async def _issue_payout(self, wallet: str, amount: int, session_id: str) -> dict[str, Any]:
        try:
            receipt = await self._payouts.payout(wallet, amount)
        except PayoutError as exc:
            reference = f"{FAILED_PREFIX}{uuid.uuid4()}"
            logger.error(
                "Payout of %d to %s for session %s failed, recorded as %s (chain tx %s): %s",
                amount,
                wallet,
                session_id,
                reference,
                exc.signature,
                exc,
                exc_info=True,
            )
            fields = {"payoutTx": reference, "payoutStatus": PAYOUT_FAILED}
            if exc.signature:
                fields["payoutChainTx"] = exc.signature
            return fields
        status = PAYOUT_SENT if receipt.confirmed else PAYOUT_UNCONFIRMED
        return {"payoutTx": receipt.signature, "payoutStatus": status}

    def _schedule_payout(self, session_id: str, wallet: str, amount: int, placeholder: str) -> None:
        task = asyncio.create_task(
            self._complete_payout(session_id, wallet, amount, placeholder),
            name=f"payout-{session_id}",
        )
        self._payout_tasks.add(task)
        task.add_done_callback(self._payout_tasks.discard)

    async def _complete_payout(
        self, session_id: str, wallet: str, amount: int, placeholder: str
    ) -> None:
        payout_fields = await self._issue_payout(wallet, amount, session_id)
        record = await self._store.get(session_key(session_id))
        if record is None or record.get("payoutTx") != placeholder:
            logger.error(
                "Session %s changed before payout %s could be recorded",
                session_id,
                payout_fields["payoutTx"],
            )
            return
        record.update(payout_fields)
        await self._store.put(session_key(session_id), record)
        logger.info(
            "Session %s payout %s recorded as %s", session_id, placeholder, payout_fields["payoutTx"]
        )

    @property
    def pending_payouts(self) -> int:
        return len(self._payout_tasks)

    async def drain(self) -> None:
        """Wait for every background payout to finish."""
        if not self._payout_tasks:
            return
        logger.info("Waiting for %d background payouts", len(self._payout_tasks))
        results = await asyncio.gather(*list(self._payout_tasks), return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                logger.error("Background payout task failed: %s", result, exc_info=result)

    # --- clear and audit ---------------------------------------------------------

    async def clear(self, wallet_address: str | None) -> dict[str, Any]:
        """Drop the wallet's pending lock and the session it points at, whatever its age."""
        wallet = (wallet_address or "").strip()
        if not wallet:
            raise ValidationError("Wallet address required")
        lock = await self._store.get(pending_key(wallet))
        if lock is not None:
            await self._store.delete(pending_key(wallet))
            if lock.get("sessionId"):
                await self._store.delete(session_key(lock["sessionId"]))
            logger.info("Cleared session %s for %s", lock.get("sessionId"), wallet)
        return {"success": True, "message": "Session cleared"}

    async def get_session(self, session_id: str) -> dict[str, Any]:
        """Return the session record, withholding the server seed while it is pending."""
        session = await self._store.get(session_key(session_id))
        if session is None:
            raise SessionNotFoundError(session_id)
        if session.get("status") == STATUS_PENDING:
            session.pop("serverSeed", None)
        return session


class _SessionManagerSingleton:
    _instance: SessionLifecycleManager | None = None

    @classmethod
    def get_instance(cls) -> SessionLifecycleManager:
        if cls._instance is None:
            cls._instance = SessionLifecycleManager()
        return cls._instance


def get_session_manager() -> SessionLifecycleManager:
    """Return the process-wide session manager."""
    return _SessionManagerSingleton.get_instance()
