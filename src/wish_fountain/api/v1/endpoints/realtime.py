"""WebSocket channel for player presence and fountain updates.

Best effort only: the socket reader feeds commands into the presence hub and a
separate writer task drains the connection's outbox.
"""

import asyncio
import contextlib
import json
import logging
import uuid
from typing import Annotated, Any

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from wish_fountain.services.presence import Outbox, PresenceHub, get_presence_hub
from wish_fountain.services.stats import StatsAggregator, get_stats_aggregator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


def get_presence_hub_dep() -> PresenceHub:
    """Return the shared presence hub."""
    return get_presence_hub()


def get_stats_aggregator_dep() -> StatsAggregator:
    return get_stats_aggregator()


PresenceDep = Annotated[PresenceHub, Depends(get_presence_hub_dep)]
StatsDep = Annotated[StatsAggregator, Depends(get_stats_aggregator_dep)]


async def _drain_outbox(websocket: WebSocket, outbox: Outbox) -> None:
    while True:
        message = await outbox.get()
        try:
            await websocket.send_json(message)
        except (WebSocketDisconnect, RuntimeError):
            return


def _coordinate(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


async def _handle_message(
    connection_id: str,
    message: dict[str, Any],
    presence: PresenceHub,
    stats: StatsAggregator,
) -> None:
    kind = message.get("type")
    if kind == "join":
        wallet = message.get("walletAddress")
        await presence.join(connection_id, wallet if isinstance(wallet, str) else None)
    elif kind == "move":
        x, y = _coordinate(message.get("x")), _coordinate(message.get("y"))
        if x is not None and y is not None:
            await presence.move(connection_id, x, y)
    elif kind == "gamble":
        presence.publish(
            {
                "type": "fountainUpdate",
                "pool": await stats.fountain_pool(),
                "lastWinners": message.get("result"),
            }
        )
    else:
        logger.debug("Ignoring realtime message of type %r from %s", kind, connection_id)


@router.websocket("/ws")
async def presence_socket(websocket: WebSocket, presence: PresenceDep, stats: StatsDep) -> None:
    await websocket.accept()
    connection_id = str(uuid.uuid4())
    outbox = presence.open_outbox()
    await presence.connect(connection_id, outbox)
    writer = asyncio.create_task(_drain_outbox(websocket, outbox))
    logger.debug("Realtime connection %s opened", connection_id)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                logger.debug("Dropping malformed realtime frame from %s", connection_id)
                continue
            if isinstance(message, dict):
                await _handle_message(connection_id, message, presence, stats)
    except WebSocketDisconnect:
        logger.debug("Realtime connection %s closed", connection_id)
    finally:
        writer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await writer
        if presence.running:
            await presence.disconnect(connection_id)
