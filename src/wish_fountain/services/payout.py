"""Token payouts from the custodial pool wallet.

A payout is a single transaction: an optional associated-token-account
creation for the recipient followed by a ``TransferChecked`` from the pool's
token account. Amounts are converted to base units with the mint's on-chain
decimal precision.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Final

from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from wish_fountain.core.settings import settings
from wish_fountain.services.chain import SolanaRpcClient, get_rpc_client
from wish_fountain.services.errors import ChainError, PayoutError

logger = logging.getLogger(__name__)

TOKEN_PROGRAM_ID: Final[Pubkey] = Pubkey.from_string(
    "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
)
ASSOCIATED_TOKEN_PROGRAM_ID: Final[Pubkey] = Pubkey.from_string(
    "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"
)
SYS_PROGRAM_ID: Final[Pubkey] = Pubkey.from_string("11111111111111111111111111111111")

CREATE_ATA_DISCRIMINATOR: Final[int] = 0
TRANSFER_CHECKED_DISCRIMINATOR: Final[int] = 12
CONFIRMED_STATUSES: Final[frozenset[str]] = frozenset({"confirmed", "finalized"})


@dataclass(frozen=True)
class PayoutConfig:
    """Immutable configuration for payouts."""

    pool_private_key: str | None
    token_mint: str | None
    confirm_timeout_seconds: float
    confirm_poll_seconds: float


@dataclass(frozen=True)
class PayoutReceipt:
    """Outcome of a submitted payout."""

    signature: str
    raw_amount: int
    confirmed: bool


def load_payout_config() -> PayoutConfig:
    return PayoutConfig(
        pool_private_key=settings.pool_wallet_private_key,
        token_mint=settings.wish_token_mint,
        confirm_timeout_seconds=float(settings.payout_confirm_timeout_seconds),
        confirm_poll_seconds=float(settings.payout_confirm_poll_seconds),
    )


def load_keypair(secret: str) -> Keypair:
    """Parse a keypair given as a JSON byte array (``[1,2,...]``) or a base58 string."""
    cleaned = secret.strip()
    try:
        if cleaned.startswith("["):
            return Keypair.from_bytes(bytes(json.loads(cleaned)))
        return Keypair.from_base58_string(cleaned)
    except (ValueError, TypeError) as exc:
        raise PayoutError(f"Pool wallet private key is malformed: {exc}") from exc


def derive_ata(owner: Pubkey, mint: Pubkey) -> Pubkey:
    return Pubkey.find_program_address(
        [bytes(owner), bytes(TOKEN_PROGRAM_ID), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )[0]


def build_create_ata_ix(payer: Pubkey, owner: Pubkey, mint: Pubkey, ata: Pubkey) -> Instruction:
    metas = [
        AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
        AccountMeta(pubkey=ata, is_signer=False, is_writable=True),
        AccountMeta(pubkey=owner, is_signer=False, is_writable=False),
        AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
        AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pubkey=TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(
        program_id=ASSOCIATED_TOKEN_PROGRAM_ID,
        data=bytes([CREATE_ATA_DISCRIMINATOR]),
        accounts=metas,
    )


def build_transfer_checked_ix(
    source: Pubkey,
    mint: Pubkey,
    dest: Pubkey,
    owner: Pubkey,
    amount: int,
    decimals: int,
) -> Instruction:
    data = bytes([TRANSFER_CHECKED_DISCRIMINATOR]) + amount.to_bytes(8, "little") + bytes([decimals])
    metas = [
        AccountMeta(pubkey=source, is_signer=False, is_writable=True),
        AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
        AccountMeta(pubkey=dest, is_signer=False, is_writable=True),
        AccountMeta(pubkey=owner, is_signer=True, is_writable=False),
    ]
    return Instruction(program_id=TOKEN_PROGRAM_ID, data=data, accounts=metas)


class PayoutIssuer:
    """Builds, signs and submits token transfers from the pool wallet."""

    def __init__(
        self,
        client: SolanaRpcClient | None = None,
        config: PayoutConfig | None = None,
    ) -> None:
        self._client = client or get_rpc_client()
        self.config = config or load_payout_config()
        self._pool_keypair: Keypair | None = None

    def _pool(self) -> Keypair:
        if self._pool_keypair is None:
            if not self.config.pool_private_key:
                raise PayoutError("Pool wallet private key not configured")
            self._pool_keypair = load_keypair(self.config.pool_private_key)
        return self._pool_keypair

    async def payout(self, recipient_wallet: str, amount: int) -> PayoutReceipt:
        """Transfer ``amount`` whole tokens to ``recipient_wallet``.

        Raises:
            PayoutError: construction, submission or on-chain execution failed.
                A confirmation timeout is not an error.
        """
        if amount <= 0:
            raise PayoutError(f"Refusing to pay non-positive amount {amount}")
        if not self.config.token_mint:
            raise PayoutError("Token mint not configured")

        pool = self._pool()
        try:
            mint = Pubkey.from_string(self.config.token_mint)
            recipient = Pubkey.from_string(recipient_wallet)
        except ValueError as exc:
            raise PayoutError(f"Invalid payout address: {exc}") from exc

        pool_ata = derive_ata(pool.pubkey(), mint)
        recipient_ata = derive_ata(recipient, mint)

        try:
            decimals = await self._client.get_token_decimals(str(mint))
            instructions: list[Instruction] = []
            if await self._client.get_account_info(str(recipient_ata)) is None:
                logger.info("Creating token account for recipient %s", recipient_wallet)
                instructions.append(
                    build_create_ata_ix(pool.pubkey(), recipient, mint, recipient_ata)
                )
            raw_amount = amount * 10**decimals
            instructions.append(
                build_transfer_checked_ix(
                    pool_ata, mint, recipient_ata, pool.pubkey(), raw_amount, decimals
                )
            )

            blockhash = await self._client.get_latest_blockhash()
            message = MessageV0.try_compile(pool.pubkey(), instructions, [], Hash.from_string(blockhash))
            transaction = VersionedTransaction(message, [pool])
            signature = await self._client.send_transaction(bytes(transaction))
        except (ChainError, ValueError) as exc:
            raise PayoutError(f"Payout to {recipient_wallet} failed: {exc}") from exc

        logger.info(
            "Payout submitted: %s tokens (%s base units) to %s sig=%s",
            amount,
            raw_amount,
            recipient_wallet,
            signature,
        )
        confirmed = await self._await_confirmation(signature)
        return PayoutReceipt(signature=signature, raw_amount=raw_amount, confirmed=confirmed)

    async def _await_confirmation(self, signature: str) -> bool:
        """Poll until confirmed or the timeout passes. Never resubmits."""
        deadline = time.monotonic() + self.config.confirm_timeout_seconds
        while True:
            try:
                status = await self._client.get_signature_status(signature)
            except ChainError as exc:
                logger.warning("Status lookup for payout %s failed: %s", signature, exc)
                status = None

            if status is not None:
                if status.get("err") is not None:
                    raise PayoutError(
                        f"Payout transaction {signature} failed on-chain: {status['err']}",
                        signature=signature,
                    )
                if status.get("confirmationStatus") in CONFIRMED_STATUSES:
                    return True

            if time.monotonic() >= deadline:
                logger.warning(
                    "Payout %s not confirmed within %.1fs; it may still land",
                    signature,
                    self.config.confirm_timeout_seconds,
                )
                return False
            await asyncio.sleep(self.config.confirm_poll_seconds)


def get_payout_issuer() -> PayoutIssuer:
    return PayoutIssuer()
