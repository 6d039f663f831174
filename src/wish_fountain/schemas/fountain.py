"""Schemas for fountain session requests and responses."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class StartRequest(_WireModel):
    """Request payload for opening a session. Missing wallets are rejected by the service."""

    wallet_address: str | None = Field(default=None, alias="walletAddress")
    client_seed: str | None = Field(default=None, alias="clientSeed")


class StartResponse(_WireModel):
    """Commit half of the protocol; the server seed is withheld until resolution."""

    session_id: str = Field(alias="sessionId")
    server_commit: str = Field(alias="serverCommit")
    client_seed: str = Field(alias="clientSeed")
    burn_address: str = Field(alias="burnAddress")
    exact_stake: int = Field(alias="exactStake")
    message: str


class ResolveRequest(_WireModel):
    session_id: str | None = Field(default=None, alias="sessionId")
    tx_signature: str | None = Field(default=None, alias="txSignature")


class ClearRequest(_WireModel):
    wallet_address: str | None = Field(default=None, alias="walletAddress")


class VerifyRequest(_WireModel):
    """A revealed session, as returned by resolve, to be recomputed independently."""

    server_seed: str = Field(alias="serverSeed", min_length=1)
    server_commit: str = Field(alias="serverCommit", min_length=1)
    client_seed: str = Field(alias="clientSeed", min_length=1)
    tx_signature: str = Field(alias="txSignature", min_length=1)


class VerifyResponse(_WireModel):
    valid: bool
    roll: float | None = None
    tier: str | None = None
    multiplier: float | None = None
    payout: int | None = None
