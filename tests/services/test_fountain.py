import asyncio
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import EXACT_STAKE, STALE_AFTER_MS, FakeClock, new_signature, new_wallet

from wish_fountain.core.fairness import commit, compute_roll, tier_for_roll
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
from wish_fountain.services.fountain import SessionLifecycleManager
from wish_fountain.services.session_store import (
    MemorySessionStore,
    burn_key,
    pending_key,
    resolving_key,
    session_key,
)
from wish_fountain.services.stats import StatsAggregator
from wish_fountain.services.verifier import VerificationResult

JACKPOT_ROLL = 0.00000005
LOSING_ROLL = 0.5


def _stored_keys(store: MemorySessionStore, prefix: str = "") -> list[str]:
    return sorted(key for key in store._values if key.startswith(prefix))


# --- start -------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_start_returns_commit_but_never_the_seed(
    manager: SessionLifecycleManager, store: MemorySessionStore, wallet: str
) -> None:
    response = await manager.start(wallet)

    assert "serverSeed" not in response
    assert response["exactStake"] == EXACT_STAKE
    assert response["burnAddress"] == "11111111111111111111111111111111"
    assert response["message"] == "Send exactly 1000 $WISH tokens to burn address, then call /resolve"

    record = await store.get(session_key(response["sessionId"]))
    assert record["status"] == "pending"
    assert commit(record["serverSeed"]) == response["serverCommit"]
    assert await store.get(pending_key(wallet)) == {
        "sessionId": response["sessionId"],
        "timestamp": record["timestamp"],
    }


@pytest.mark.asyncio
async def test_start_keeps_supplied_client_seed(manager: SessionLifecycleManager, wallet: str) -> None:
    response = await manager.start(wallet, "my-lucky-seed")
    assert response["clientSeed"] == "my-lucky-seed"


@pytest.mark.asyncio
async def test_start_generates_client_seed_when_absent(manager: SessionLifecycleManager, wallet: str) -> None:
    response = await manager.start(wallet)
    assert response["clientSeed"]


@pytest.mark.parametrize("wallet_address", [None, "", "   ", "not-a-wallet"])
@pytest.mark.asyncio
async def test_start_rejects_missing_or_malformed_wallet(
    manager: SessionLifecycleManager, store: MemorySessionStore, wallet_address: str | None
) -> None:
    with pytest.raises(ValidationError):
        await manager.start(wallet_address)
    assert _stored_keys(store) == []


@pytest.mark.asyncio
async def test_second_start_within_window_conflicts(
    manager: SessionLifecycleManager, clock: FakeClock, wallet: str
) -> None:
    first = await manager.start(wallet)
    clock.advance(60_000)

    with pytest.raises(SessionConflictError) as exc_info:
        await manager.start(wallet)

    assert exc_info.value.details() == {"sessionId": first["sessionId"], "age": 60_000}


@pytest.mark.asyncio
async def test_start_after_window_evicts_stale_session(
    manager: SessionLifecycleManager, store: MemorySessionStore, clock: FakeClock, wallet: str
) -> None:
    first = await manager.start(wallet)
    clock.advance(STALE_AFTER_MS)

    second = await manager.start(wallet)

    assert second["sessionId"] != first["sessionId"]
    assert await store.get(session_key(first["sessionId"])) is None
    assert (await store.get(pending_key(wallet)))["sessionId"] == second["sessionId"]


@pytest.mark.asyncio
async def test_stale_session_mid_resolution_is_not_evicted(
    manager: SessionLifecycleManager, store: MemorySessionStore, clock: FakeClock, wallet: str
) -> None:
    first = await manager.start(wallet)
    await store.put_if_absent(resolving_key(first["sessionId"]), {"token": "other"}, ttl_seconds=60)
    clock.advance(STALE_AFTER_MS + 1)

    with pytest.raises(SessionConflictError):
        await manager.start(wallet)
    assert await store.get(session_key(first["sessionId"])) is not None


@pytest.mark.asyncio
async def test_concurrent_starts_leave_one_pending_session(
    manager: SessionLifecycleManager, store: MemorySessionStore, wallet: str
) -> None:
    results = await asyncio.gather(
        *(manager.start(wallet) for _ in range(5)), return_exceptions=True
    )

    winners = [result for result in results if isinstance(result, dict)]
    assert len(winners) == 1
    assert all(isinstance(result, SessionConflictError) for result in results if result not in winners)

    session_keys = _stored_keys(store, "session:")
    assert session_keys == [session_key(winners[0]["sessionId"])]


@pytest.mark.asyncio
async def test_losing_the_lock_race_removes_the_orphan_record(
    manager: SessionLifecycleManager, store: MemorySessionStore, wallet: str, mocker
) -> None:
    real_put_if_absent = store.put_if_absent

    async def racing_put_if_absent(key, value, *, ttl_seconds=None):
        if key == pending_key(wallet):
            await real_put_if_absent(key, {"sessionId": "rival", "timestamp": value["timestamp"]})
        return await real_put_if_absent(key, value, ttl_seconds=ttl_seconds)

    mocker.patch.object(store, "put_if_absent", side_effect=racing_put_if_absent)

    with pytest.raises(SessionConflictError) as exc_info:
        await manager.start(wallet)

    assert exc_info.value.session_id == "rival"
    assert _stored_keys(store, "session:") == []


# --- resolve -----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_losing_roll_resolves_without_payout(
    manager: SessionLifecycleManager,
    store: MemorySessionStore,
    stats: StatsAggregator,
    payouts: AsyncMock,
    fixed_roll,
    wallet: str,
    burn_signature: str,
) -> None:
    fixed_roll(LOSING_ROLL)
    started = await manager.start(wallet)

    reveal = await manager.resolve(started["sessionId"], burn_signature)

    assert reveal["success"] is True
    assert reveal["result"]["tier"] == "LOSE"
    assert reveal["result"]["payout"] == 0
    assert reveal["payoutTx"] is None
    assert reveal["burnTx"] == burn_signature
    payouts.payout.assert_not_called()

    record = await store.get(session_key(started["sessionId"]))
    assert record["status"] == "resolved"
    assert record["payoutStatus"] == "none"
    assert await store.get(pending_key(wallet)) is None

    user = await stats.user_stats(wallet)
    assert (user.games_played, user.total_gambled, user.total_won) == (1, 1000, 0)
    assert await stats.fountain_pool() == 1000


@pytest.mark.asyncio
async def test_jackpot_pays_fifteen_million_once(
    manager: SessionLifecycleManager,
    store: MemorySessionStore,
    payouts: AsyncMock,
    fixed_roll,
    wallet: str,
    burn_signature: str,
) -> None:
    fixed_roll(JACKPOT_ROLL)
    started = await manager.start(wallet)

    reveal = await manager.resolve(started["sessionId"], burn_signature)

    payouts.payout.assert_awaited_once_with(wallet, 15_000_000)
    assert reveal["result"] == {
        "tier": "JACKPOT",
        "multiplier": 15000.0,
        "payout": 15_000_000,
        "message": "LEGENDARY JACKPOT!!! The fountain grants your ultimate wish!",
    }
    record = await store.get(session_key(started["sessionId"]))
    assert record["payoutTx"] == reveal["payoutTx"]
    assert record["payoutStatus"] == "sent"


@pytest.mark.asyncio
async def test_reveal_lets_client_recompute_the_roll(
    manager: SessionLifecycleManager, wallet: str, burn_signature: str
) -> None:
    started = await manager.start(wallet, "client-seed")
    reveal = await manager.resolve(started["sessionId"], burn_signature)

    assert commit(reveal["serverSeed"]) == started["serverCommit"]
    roll = compute_roll(reveal["serverSeed"], reveal["clientSeed"], reveal["burnTx"])
    assert tier_for_roll(roll).name == reveal["result"]["tier"]


@pytest.mark.asyncio
async def test_second_resolve_is_rejected_and_pays_nothing(
    manager: SessionLifecycleManager, payouts: AsyncMock, fixed_roll, wallet: str, burn_signature: str
) -> None:
    fixed_roll(JACKPOT_ROLL)
    started = await manager.start(wallet)
    await manager.resolve(started["sessionId"], burn_signature)

    with pytest.raises(AlreadyResolvedError):
        await manager.resolve(started["sessionId"], burn_signature)
    assert payouts.payout.await_count == 1


@pytest.mark.asyncio
async def test_concurrent_resolves_pay_at_most_once(
    manager: SessionLifecycleManager,
    verifier: AsyncMock,
    payouts: AsyncMock,
    fixed_roll,
    wallet: str,
    burn_signature: str,
) -> None:
    fixed_roll(JACKPOT_ROLL)

    async def slow_verify(signature, expectation=None):
        await asyncio.sleep(0.01)
        return VerificationResult(True)

    verifier.verify.side_effect = slow_verify
    started = await manager.start(wallet)

    results = await asyncio.gather(
        *(manager.resolve(started["sessionId"], burn_signature) for _ in range(3)),
        return_exceptions=True,
    )

    successes = [result for result in results if isinstance(result, dict)]
    assert len(successes) == 1
    assert all(
        isinstance(result, (ResolutionInProgressError, AlreadyResolvedError))
        for result in results
        if not isinstance(result, dict)
    )
    assert payouts.payout.await_count == 1


@pytest.mark.asyncio
async def test_resolving_claim_is_released(
    manager: SessionLifecycleManager, store: MemorySessionStore, wallet: str, burn_signature: str
) -> None:
    started = await manager.start(wallet)
    await manager.resolve(started["sessionId"], burn_signature)
    assert await store.get(resolving_key(started["sessionId"])) is None


@pytest.mark.asyncio
async def test_resolve_unknown_session(manager: SessionLifecycleManager, burn_signature: str) -> None:
    with pytest.raises(SessionNotFoundError):
        await manager.resolve("no-such-session", burn_signature)


@pytest.mark.parametrize(("session_id", "signature"), [(None, "sig"), ("id", None), ("", "")])
@pytest.mark.asyncio
async def test_resolve_requires_both_fields(
    manager: SessionLifecycleManager, session_id: str | None, signature: str | None
) -> None:
    with pytest.raises(ValidationError):
        await manager.resolve(session_id, signature)


@pytest.mark.asyncio
async def test_failed_verification_leaves_session_pending(
    manager: SessionLifecycleManager,
    store: MemorySessionStore,
    verifier: AsyncMock,
    payouts: AsyncMock,
    wallet: str,
    burn_signature: str,
) -> None:
    started = await manager.start(wallet)
    verifier.verify.return_value = VerificationResult(False, "Transaction not found")

    with pytest.raises(BurnNotVerifiedError) as exc_info:
        await manager.resolve(started["sessionId"], burn_signature)

    assert exc_info.value.details() == {"reason": "Transaction not found"}
    record = await store.get(session_key(started["sessionId"]))
    assert record["status"] == "pending"
    assert await store.get(pending_key(wallet)) is not None
    assert await store.get(burn_key(burn_signature)) is None
    payouts.payout.assert_not_called()

    # A retry with a good burn succeeds.
    verifier.verify.return_value = VerificationResult(True)
    reveal = await manager.resolve(started["sessionId"], burn_signature)
    assert reveal["success"] is True


@pytest.mark.asyncio
async def test_verifier_receives_stake_expectation(
    manager: SessionLifecycleManager, verifier: AsyncMock, wallet: str, burn_signature: str
) -> None:
    started = await manager.start(wallet)
    await manager.resolve(started["sessionId"], burn_signature)

    signature, expectation = verifier.verify.await_args.args
    assert signature == burn_signature
    assert expectation.owner == wallet
    assert expectation.amount == EXACT_STAKE


@pytest.mark.asyncio
async def test_burn_cannot_resolve_two_sessions(
    manager: SessionLifecycleManager, payouts: AsyncMock, fixed_roll, burn_signature: str
) -> None:
    fixed_roll(JACKPOT_ROLL)
    first = await manager.start(new_wallet())
    second = await manager.start(new_wallet())
    await manager.resolve(first["sessionId"], burn_signature)

    with pytest.raises(BurnReplayError):
        await manager.resolve(second["sessionId"], burn_signature)
    assert payouts.payout.await_count == 1


@pytest.mark.asyncio
async def test_payout_failure_records_sentinel_and_still_resolves(
    manager: SessionLifecycleManager,
    store: MemorySessionStore,
    payouts: AsyncMock,
    fixed_roll,
    wallet: str,
    burn_signature: str,
) -> None:
    fixed_roll(JACKPOT_ROLL)
    payouts.payout.side_effect = PayoutError("pool empty")
    started = await manager.start(wallet)

    reveal = await manager.resolve(started["sessionId"], burn_signature)

    assert reveal["success"] is True
    assert reveal["payoutTx"].startswith("FAILED_")
    record = await store.get(session_key(started["sessionId"]))
    assert record["status"] == "resolved"
    assert record["payoutStatus"] == "failed"
    assert record["payoutTx"] == reveal["payoutTx"]


@pytest.mark.asyncio
async def test_failed_payout_keeps_chain_signature(
    manager: SessionLifecycleManager,
    store: MemorySessionStore,
    payouts: AsyncMock,
    fixed_roll,
    wallet: str,
    burn_signature: str,
) -> None:
    fixed_roll(JACKPOT_ROLL)
    payouts.payout.side_effect = PayoutError("transfer landed with an error", signature="chain-sig")
    started = await manager.start(wallet)

    reveal = await manager.resolve(started["sessionId"], burn_signature)

    record = await store.get(session_key(started["sessionId"]))
    assert reveal["payoutTx"].startswith("FAILED_")
    assert record["payoutChainTx"] == "chain-sig"


def _fail_put_once(mocker, store: MemorySessionStore, predicate) -> list[str]:
    real_put = store.put
    failed: list[str] = []

    async def flaky_put(key, value, *, ttl_seconds=None):
        if not failed and predicate(value):
            failed.append(key)
            raise ConnectionError("store unavailable")
        return await real_put(key, value, ttl_seconds=ttl_seconds)

    mocker.patch.object(store, "put", side_effect=flaky_put)
    return failed


@pytest.mark.asyncio
async def test_retry_after_lost_resolved_write_does_not_pay_twice(
    manager: SessionLifecycleManager,
    store: MemorySessionStore,
    stats: StatsAggregator,
    verifier: AsyncMock,
    payouts: AsyncMock,
    fixed_roll,
    mocker,
    wallet: str,
    burn_signature: str,
) -> None:
    fixed_roll(JACKPOT_ROLL)
    started = await manager.start(wallet)
    failed = _fail_put_once(mocker, store, lambda value: value.get("status") == "resolved")

    with pytest.raises(ConnectionError):
        await manager.resolve(started["sessionId"], burn_signature)
    assert failed == [session_key(started["sessionId"])]
    assert (await store.get(session_key(started["sessionId"])))["status"] == "pending"

    reveal = await manager.resolve(started["sessionId"], burn_signature)

    payouts.payout.assert_awaited_once_with(wallet, 15_000_000)
    assert verifier.verify.await_count == 1
    assert reveal["result"]["payout"] == 15_000_000
    record = await store.get(session_key(started["sessionId"]))
    assert record["status"] == "resolved"
    assert record["payoutStatus"] == "unreconciled"
    assert record["payoutTx"] == reveal["payoutTx"]
    assert reveal["payoutTx"].startswith("PENDING_")
    assert "payoutAttempt" not in record
    assert await store.get(pending_key(wallet)) is None
    assert (await stats.user_stats(wallet)).games_played == 1


@pytest.mark.asyncio
async def test_retry_with_other_signature_keeps_first_burn(
    manager: SessionLifecycleManager,
    store: MemorySessionStore,
    payouts: AsyncMock,
    fixed_roll,
    mocker,
    wallet: str,
    burn_signature: str,
) -> None:
    fixed_roll(JACKPOT_ROLL)
    started = await manager.start(wallet)
    _fail_put_once(mocker, store, lambda value: value.get("status") == "resolved")
    with pytest.raises(ConnectionError):
        await manager.resolve(started["sessionId"], burn_signature)

    reveal = await manager.resolve(started["sessionId"], new_signature(b"another burn"))

    assert reveal["burnTx"] == burn_signature
    assert payouts.payout.await_count == 1


@pytest.mark.asyncio
async def test_retry_after_failed_marker_write_pays_once(
    manager: SessionLifecycleManager,
    store: MemorySessionStore,
    payouts: AsyncMock,
    fixed_roll,
    mocker,
    wallet: str,
    burn_signature: str,
) -> None:
    fixed_roll(JACKPOT_ROLL)
    started = await manager.start(wallet)
    _fail_put_once(mocker, store, lambda value: "payoutAttempt" in value)

    with pytest.raises(ConnectionError):
        await manager.resolve(started["sessionId"], burn_signature)
    payouts.payout.assert_not_called()

    reveal = await manager.resolve(started["sessionId"], burn_signature)

    payouts.payout.assert_awaited_once_with(wallet, 15_000_000)
    record = await store.get(session_key(started["sessionId"]))
    assert record["payoutStatus"] == "sent"
    assert record["payoutTx"] == reveal["payoutTx"]


@pytest.mark.asyncio
async def test_unconfirmed_payout_is_recorded(
    manager: SessionLifecycleManager,
    store: MemorySessionStore,
    payouts: AsyncMock,
    fixed_roll,
    wallet: str,
    burn_signature: str,
) -> None:
    from wish_fountain.services.payout import PayoutReceipt

    fixed_roll(JACKPOT_ROLL)
    payouts.payout.side_effect = None
    payouts.payout.return_value = PayoutReceipt("sig", 15_000_000 * 10**6, confirmed=False)
    started = await manager.start(wallet)

    reveal = await manager.resolve(started["sessionId"], burn_signature)

    assert reveal["payoutTx"] == "sig"
    assert (await store.get(session_key(started["sessionId"])))["payoutStatus"] == "unconfirmed"


@pytest.mark.asyncio
async def test_resolution_publishes_fountain_update(
    manager: SessionLifecycleManager, presence: MagicMock, fixed_roll, wallet: str, burn_signature: str
) -> None:
    fixed_roll(LOSING_ROLL)
    started = await manager.start(wallet)
    await manager.resolve(started["sessionId"], burn_signature)

    (message,), _ = presence.publish.call_args
    assert message["type"] == "fountainUpdate"
    assert message["pool"] == 1000
    assert message["lastWinners"]["walletAddress"] == wallet


@pytest.mark.asyncio
async def test_stats_failure_does_not_fail_resolution(
    manager: SessionLifecycleManager,
    store: MemorySessionStore,
    stats: StatsAggregator,
    mocker,
    wallet: str,
    burn_signature: str,
) -> None:
    mocker.patch.object(stats, "record", side_effect=RuntimeError("store hiccup"))
    started = await manager.start(wallet)

    reveal = await manager.resolve(started["sessionId"], burn_signature)

    assert reveal["success"] is True
    assert (await store.get(session_key(started["sessionId"])))["status"] == "resolved"


@pytest.mark.asyncio
async def test_new_session_allowed_after_resolution(
    manager: SessionLifecycleManager, wallet: str, burn_signature: str
) -> None:
    started = await manager.start(wallet)
    await manager.resolve(started["sessionId"], burn_signature)
    again = await manager.start(wallet)
    assert again["sessionId"] != started["sessionId"]


# --- background payouts ------------------------------------------------------------


@pytest.mark.asyncio
async def test_background_payout_patches_session_record(
    manager: SessionLifecycleManager,
    store: MemorySessionStore,
    payouts: AsyncMock,
    fixed_roll,
    wallet: str,
    burn_signature: str,
) -> None:
    manager.config = replace(manager.config, background_payouts=True)
    fixed_roll(JACKPOT_ROLL)
    started = await manager.start(wallet)

    reveal = await manager.resolve(started["sessionId"], burn_signature)
    assert reveal["payoutTx"].startswith("PENDING_")

    await manager.drain()

    payouts.payout.assert_awaited_once_with(wallet, 15_000_000)
    record = await store.get(session_key(started["sessionId"]))
    assert record["payoutStatus"] == "sent"
    assert not record["payoutTx"].startswith("PENDING_")
    assert manager.pending_payouts == 0


@pytest.mark.asyncio
async def test_background_payout_failure_patches_sentinel(
    manager: SessionLifecycleManager,
    store: MemorySessionStore,
    payouts: AsyncMock,
    fixed_roll,
    wallet: str,
    burn_signature: str,
) -> None:
    manager.config = replace(manager.config, background_payouts=True)
    payouts.payout.side_effect = PayoutError("rpc down")
    fixed_roll(JACKPOT_ROLL)
    started = await manager.start(wallet)

    await manager.resolve(started["sessionId"], burn_signature)
    await manager.drain()

    record = await store.get(session_key(started["sessionId"]))
    assert record["payoutTx"].startswith("FAILED_")
    assert record["payoutStatus"] == "failed"


# --- clear and audit ---------------------------------------------------------------


@pytest.mark.asyncio
async def test_clear_removes_lock_and_session(
    manager: SessionLifecycleManager, store: MemorySessionStore, wallet: str
) -> None:
    started = await manager.start(wallet)

    assert await manager.clear(wallet) == {"success": True, "message": "Session cleared"}
    assert await store.get(pending_key(wallet)) is None
    assert await store.get(session_key(started["sessionId"])) is None
    # A fresh session can start immediately.
    await manager.start(wallet)


@pytest.mark.asyncio
async def test_clear_without_session_succeeds(manager: SessionLifecycleManager) -> None:
    assert (await manager.clear(new_wallet()))["success"] is True


@pytest.mark.asyncio
async def test_clear_requires_wallet(manager: SessionLifecycleManager) -> None:
    with pytest.raises(ValidationError):
        await manager.clear("")


@pytest.mark.asyncio
async def test_get_session_withholds_seed_until_resolved(
    manager: SessionLifecycleManager, wallet: str
) -> None:
    started = await manager.start(wallet)
    pending = await manager.get_session(started["sessionId"])
    assert "serverSeed" not in pending
    assert pending["serverCommit"] == started["serverCommit"]

    await manager.resolve(started["sessionId"], new_signature(b"another burn"))
    resolved = await manager.get_session(started["sessionId"])
    assert commit(resolved["serverSeed"]) == started["serverCommit"]


@pytest.mark.asyncio
async def test_get_session_unknown(manager: SessionLifecycleManager) -> None:
    with pytest.raises(SessionNotFoundError):
        await manager.get_session("missing")
