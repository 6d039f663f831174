"""Provably-fair roll derivation.

The server commits to ``sha256(server_seed)`` before the player burns their
stake. Once the burn signature exists the roll is fixed by
``sha256(server_seed + client_seed + signature)``: the server cannot steer the
outcome because it never sees the signature before committing, and the player
cannot steer it because the signature is not predictable.
"""
from __future__ import annotations

import hashlib
import hmac
import secrets
import uuid
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from typing import Final

ROLL_BYTES: Final[int] = 8
ROLL_SCALE: Final[int] = 256**ROLL_BYTES
SERVER_SEED_BYTES: Final[int] = 32
COMMIT_HEX_LENGTH: Final[int] = 64


@dataclass(frozen=True)
class PayoutTier:
    """A named payout bracket and the cumulative probability bound that selects it."""

    name: str
    upper_bound: float | None
    multiplier: Decimal
    message: str


# Cumulative bounds, checked in ascending order with strict ``<``; first match wins.
TIER_TABLE: Final[tuple[PayoutTier, ...]] = (
    PayoutTier(
        "JACKPOT", 0.0000001, Decimal("15000"),
        "LEGENDARY JACKPOT!!! The fountain grants your ultimate wish!",
    ),
    PayoutTier(
        "MAJOR WIN", 0.0014999, Decimal("180"),
        "MAJOR WIN! The spirits favor you greatly!",
    ),
    PayoutTier(
        "LARGE WIN", 0.0049999, Decimal("25"),
        "LARGE WIN! Your wish echoes through the realm!",
    ),
    PayoutTier(
        "MEDIUM WIN", 0.0099999, Decimal("9"),
        "MEDIUM WIN! The fountain smiles upon you!",
    ),
    PayoutTier("SMALL WIN C", 0.0119999, Decimal("1.65"), "Your coins return with friends!"),
    PayoutTier("SMALL WIN B", 0.0199999, Decimal("1.28"), "Your coins return with friends!"),
    PayoutTier("SMALL WIN A", 0.0999999, Decimal("1.10"), "Your coins return with friends!"),
    PayoutTier("BREAK EVEN", 0.3999999, Decimal("1.00"), "Your coins return to you."),
    PayoutTier("LOSE", None, Decimal("0"), "The fountain keeps your wishes for now..."),
)

TIERS_BY_NAME: Final[dict[str, PayoutTier]] = {tier.name: tier for tier in TIER_TABLE}


@dataclass(frozen=True)
class RollOutcome:
    """Result of a single roll: the uniform value and the tier it maps to."""

    roll: float
    tier: PayoutTier

    @property
    def multiplier(self) -> Decimal:
        return self.tier.multiplier

    def payout_for(self, stake: int) -> int:
        return payout_for(self.tier.multiplier, stake)


def commit(server_seed: str) -> str:
    """Return the public commitment (SHA-256 hex digest) for a server seed."""
    return hashlib.sha256(server_seed.encode("utf-8")).hexdigest()


def compute_roll(server_seed: str, client_seed: str, signature: str) -> float:
    """Derive a uniform value in [0, 1) from the three seed inputs.

    The first eight digest bytes are read as a base-256 fraction, i.e.
    ``sum(b[i] / 256**(i + 1))``.
    """
    combined = f"{server_seed}{client_seed}{signature}".encode()
    digest = hashlib.sha256(combined).digest()
    return int.from_bytes(digest[:ROLL_BYTES], "big") / ROLL_SCALE


def tier_for_roll(roll: float) -> PayoutTier:
    """Map a roll onto the payout table."""
    for tier in TIER_TABLE:
        if tier.upper_bound is None or roll < tier.upper_bound:
            return tier
    return TIER_TABLE[-1]  # pragma: no cover - LOSE has no bound


def payout_for(multiplier: Decimal, stake: int) -> int:
    """Return ``floor(stake * multiplier)`` in whole tokens."""
    return int((Decimal(stake) * multiplier).to_integral_value(rounding=ROUND_FLOOR))


def generate_server_seed() -> str:
    return secrets.token_hex(SERVER_SEED_BYTES)


def generate_client_seed() -> str:
    return str(uuid.uuid4())


class RandomnessEngine:
    """Deterministic roll derivation plus seed generation for new sessions."""

    def new_server_seed(self) -> tuple[str, str]:
        """Return a fresh ``(server_seed, server_commit)`` pair."""
        seed = generate_server_seed()
        return seed, commit(seed)

    def new_client_seed(self) -> str:
        return generate_client_seed()

    def compute_roll(self, server_seed: str, client_seed: str, signature: str) -> float:
        return compute_roll(server_seed, client_seed, signature)

    def roll(self, server_seed: str, client_seed: str, signature: str) -> RollOutcome:
        """Return the tier selected by the three inputs. Pure for fixed inputs."""
        value = self.compute_roll(server_seed, client_seed, signature)
        return RollOutcome(roll=value, tier=tier_for_roll(value))


def verify_reveal(
    server_seed: str,
    server_commit: str,
    client_seed: str,
    signature: str,
) -> RollOutcome | None:
    """Recompute a revealed roll.

    Returns:
        The outcome if ``server_seed`` matches ``server_commit``, otherwise None.
    """
    if not hmac.compare_digest(commit(server_seed), server_commit.lower()):
        return None
    value = compute_roll(server_seed, client_seed, signature)
    return RollOutcome(roll=value, tier=tier_for_roll(value))
