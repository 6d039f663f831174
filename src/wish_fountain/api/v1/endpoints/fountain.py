"""Session endpoints: start, resolve, clear, audit and verify."""

from typing import Annotated, Any

from fastapi import APIRouter, Depends

from wish_fountain.core.fairness import verify_reveal
from wish_fountain.core.settings import settings
from wish_fountain.schemas.fountain import (
    ClearRequest,
    ResolveRequest,
    StartRequest,
    StartResponse,
    VerifyRequest,
    VerifyResponse,
)
from wish_fountain.services.fountain import SessionLifecycleManager, get_session_manager

router = APIRouter(prefix="/fountain", tags=["fountain"])


def get_session_manager_dep() -> SessionLifecycleManager:
    """Return the shared session lifecycle manager."""
    return get_session_manager()


SessionManagerDep = Annotated[SessionLifecycleManager, Depends(get_session_manager_dep)]


@router.post("/start", response_model=StartResponse)
async def start_session(payload: StartRequest, manager: SessionManagerDep) -> dict[str, Any]:
    """Open a pending session and return the server commit.

    The server seed itself is withheld until the session resolves.
    """
    return await manager.start(payload.wallet_address, payload.client_seed)


@router.post("/resolve")
async def resolve_session(payload: ResolveRequest, manager: SessionManagerDep) -> dict[str, Any]:
    """Verify the burn, roll the outcome, pay out and reveal the server seed."""
    return await manager.resolve(payload.session_id, payload.tx_signature)


@router.post("/clear")
async def clear_session(payload: ClearRequest, manager: SessionManagerDep) -> dict[str, Any]:
    return await manager.clear(payload.wallet_address)


@router.get("/session/{session_id}")
async def get_session(session_id: str, manager: SessionManagerDep) -> dict[str, Any]:
    """Return the stored session record. Pending sessions omit the server seed."""
    return await manager.get_session(session_id)


@router.post("/verify", response_model=VerifyResponse)
async def verify_session(payload: VerifyRequest) -> VerifyResponse:
    """Recompute a revealed roll so clients can audit a resolution.

    ``valid`` is False when the seed does not hash to the commit.
    """
    outcome = verify_reveal(
        payload.server_seed,
        payload.server_commit,
        payload.client_seed,
        payload.tx_signature,
    )
    if outcome is None:
        return VerifyResponse(valid=False)
    return VerifyResponse(
        valid=True,
        roll=outcome.roll,
        tier=outcome.tier.name,
        multiplier=float(outcome.multiplier),
        payout=outcome.payout_for(settings.exact_stake),
    )
