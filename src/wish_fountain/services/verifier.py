"""Burn transaction verification."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from solders.signature import Signature

from wish_fountain.core.settings import settings
from wish_fountain.services.chain import SolanaRpcClient, get_rpc_client
from wish_fountain.services.errors import ChainError

logger = logging.getLogger(__name__)

SPL_TOKEN_PROGRAMS = frozenset({"spl-token", "spl-token-2022"})
BURN_INSTRUCTION_TYPES = frozenset({"burn", "burnChecked"})


@dataclass(frozen=True)
class BurnExpectation:
    """What a valid stake burn must look like."""

    owner: str
    mint: str | None
    amount: int  # whole tokens


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    reason: str = ""

    def __bool__(self) -> bool:
        return self.verified


def _iter_parsed_instructions(transaction: dict[str, Any]) -> Iterator[dict[str, Any]]:
    message = (transaction.get("transaction") or {}).get("message") or {}
    yield from message.get("instructions") or []
    for inner in (transaction.get("meta") or {}).get("innerInstructions") or []:
        yield from inner.get("instructions") or []


def _burned_amount(info: dict[str, Any]) -> int | None:
    raw = info.get("amount")
    if raw is None:
        raw = (info.get("tokenAmount") or {}).get("amount")
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def find_burns(transaction: dict[str, Any]) -> list[dict[str, Any]]:
    """Return the ``info`` blocks of every SPL-token burn in a jsonParsed transaction."""
    burns = []
    for instruction in _iter_parsed_instructions(transaction):
        if instruction.get("program") not in SPL_TOKEN_PROGRAMS:
            continue
        parsed = instruction.get("parsed")
        if not isinstance(parsed, dict) or parsed.get("type") not in BURN_INSTRUCTION_TYPES:
            continue
        burns.append(parsed.get("info") or {})
    return burns


class TransactionVerifier:
    """Confirms a claimed burn transaction landed without error."""

    def __init__(self, client: SolanaRpcClient | None = None, *, strict: bool | None = None) -> None:
        self._client = client or get_rpc_client()
        self.strict = settings.burn_verify_strict if strict is None else strict

    async def verify(
        self, signature: str, expectation: BurnExpectation | None = None
    ) -> VerificationResult:
        """Check that ``signature`` is a confirmed, successful (and, if strict, matching) burn.

        RPC failures count as "not verified"; they never raise.
        """
        try:
            Signature.from_string(signature)
        except ValueError:
            return VerificationResult(False, "Malformed transaction signature")

        try:
            transaction = await self._client.get_transaction(signature)
        except ChainError as exc:
            logger.warning("Burn lookup failed for %s: %s", signature, exc)
            return VerificationResult(False, "Transaction lookup failed")

        if not transaction:
            logger.info("Burn transaction not found: %s", signature)
            return VerificationResult(False, "Transaction not found")
        if (transaction.get("meta") or {}).get("err") is not None:
            logger.info("Burn transaction failed on-chain: %s", signature)
            return VerificationResult(False, "Transaction failed on-chain")

        if self.strict and expectation is not None:
            result = await self._match_burn(transaction, expectation)
            if not result:
                logger.warning("Burn %s rejected: %s", signature, result.reason)
                return result

        logger.info("Burn transaction verified: %s", signature)
        return VerificationResult(True)

    async def _match_burn(
        self, transaction: dict[str, Any], expectation: BurnExpectation
    ) -> VerificationResult:
        if not expectation.mint:
            return VerificationResult(False, "Token mint not configured")
        try:
            decimals = await self._client.get_token_decimals(expectation.mint)
        except ChainError as exc:
            logger.warning("Mint lookup failed for %s: %s", expectation.mint, exc)
            return VerificationResult(False, "Token mint lookup failed")
        expected_raw = expectation.amount * 10**decimals

        burns = find_burns(transaction)
        if not burns:
            return VerificationResult(False, "No token burn in transaction")
        for info in burns:
            authority = info.get("authority") or info.get("multisigAuthority")
            if info.get("mint") != expectation.mint:
                continue
            if authority != expectation.owner:
                continue
            if _burned_amount(info) == expected_raw:
                return VerificationResult(True)
        return VerificationResult(False, "Burn does not match stake, wallet or mint")


def get_transaction_verifier() -> TransactionVerifier:
    return TransactionVerifier()
