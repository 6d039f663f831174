"""Best-effort realtime presence for the fountain plaza.

A single actor task owns the connection registry and the player map. Callers
never touch that state directly; they submit commands to the actor's queue.
Outbound messages go into a bounded per-connection outbox that the
connection's own writer drains, so a slow socket can drop messages but can
never stall the actor or the HTTP request path.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Final

from wish_fountain.core.settings import settings

logger = logging.getLogger(__name__)

SPAWN_X: Final[float] = 400
SPAWN_Y: Final[float] = 300

Outbox = asyncio.Queue  # of dict[str, Any]


@dataclass
class Player:
    id: str
    wallet_address: str | None
    x: float = SPAWN_X
    y: float = SPAWN_Y
    sprite: str = "player"

    def to_message(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "walletAddress": self.wallet_address,
            "x": self.x,
            "y": self.y,
            "sprite": self.sprite,
        }


@dataclass(frozen=True)
class _Command:
    handler: Callable[..., Any]
    args: tuple[Any, ...]
    reply: asyncio.Future[Any] | None


class PresenceHub:
    """Connection registry and player positions, owned by one task."""

    def __init__(self, outbox_size: int | None = None) -> None:
        self.outbox_size = outbox_size or settings.presence_outbox_size
        self._outboxes: dict[str, Outbox] = {}
        self._players: dict[str, Player] = {}
        self._commands: asyncio.Queue[_Command | None] | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the actor loop."""
        if not self.running:
            self._commands = asyncio.Queue()
            self._task = asyncio.create_task(self._run(self._commands))

    async def stop(self) -> None:
        """Stop the actor loop after it finishes queued commands."""
        if self._task is None or self._commands is None:
            return
        await self._commands.put(None)
        await self._task
        self._task = None
        self._commands = None
        self._outboxes.clear()
        self._players.clear()

    def open_outbox(self) -> Outbox:
        return asyncio.Queue(maxsize=self.outbox_size)

    # --- public API --------------------------------------------------------------

    async def connect(self, connection_id: str, outbox: Outbox) -> None:
        await self._call(self._on_connect, connection_id, outbox)

    async def join(self, connection_id: str, wallet_address: str | None) -> dict[str, Any]:
        return await self._call(self._on_join, connection_id, wallet_address)

    async def move(self, connection_id: str, x: float, y: float) -> None:
        await self._call(self._on_move, connection_id, x, y)

    async def disconnect(self, connection_id: str) -> None:
        await self._call(self._on_disconnect, connection_id)

    async def players(self) -> list[dict[str, Any]]:
        return await self._call(self._on_players)

    def publish(self, message: dict[str, Any], exclude: str | None = None) -> None:
        """Queue a broadcast without waiting for it. Dropped if the hub is not running."""
        if not self.running or self._commands is None:
            logger.debug("Presence hub not running; dropping %s", message.get("type"))
            return
        self._commands.put_nowait(_Command(self._on_broadcast, (message, exclude), None))

    # --- actor internals ---------------------------------------------------------

    async def _call(self, handler: Callable[..., Any], *args: Any) -> Any:
        if not self.running or self._commands is None:
            raise RuntimeError("Presence hub is not running")
        reply: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        await self._commands.put(_Command(handler, args, reply))
        return await reply

    async def _run(self, commands: asyncio.Queue[_Command | None]) -> None:
        while True:
            command = await commands.get()
            if command is None:
                return
            try:
                result = command.handler(*command.args)
            except Exception as exc:
                logger.error("Presence command %s failed: %s", command.handler.__name__, exc)
                if command.reply is not None and not command.reply.done():
                    command.reply.set_exception(exc)
                continue
            if command.reply is not None and not command.reply.done():
                command.reply.set_result(result)

    def _deliver(self, connection_id: str, message: dict[str, Any]) -> None:
        outbox = self._outboxes.get(connection_id)
        if outbox is None:
            return
        try:
            outbox.put_nowait(message)
        except asyncio.QueueFull:
            logger.debug("Outbox full for %s; dropping %s", connection_id, message.get("type"))

    def _on_broadcast(self, message: dict[str, Any], exclude: str | None) -> None:
        for connection_id in list(self._outboxes):
            if connection_id != exclude:
                self._deliver(connection_id, message)

    def _on_connect(self, connection_id: str, outbox: Outbox) -> None:
        self._outboxes[connection_id] = outbox

    def _on_join(self, connection_id: str, wallet_address: str | None) -> dict[str, Any]:
        player = Player(id=connection_id, wallet_address=wallet_address)
        others = [existing.to_message() for existing in self._players.values()]
        self._players[connection_id] = player
        snapshot = player.to_message()
        self._deliver(
            connection_id,
            {"type": "joined", "playerId": connection_id, "player": snapshot, "players": others},
        )
        self._on_broadcast({"type": "playerJoined", "player": snapshot}, connection_id)
        return snapshot

    def _on_move(self, connection_id: str, x: float, y: float) -> None:
        player = self._players.get(connection_id)
        if player is None:
            return
        player.x = x
        player.y = y
        self._on_broadcast(
            {"type": "playerMoved", "playerId": connection_id, "x": x, "y": y},
            connection_id,
        )

    def _on_disconnect(self, connection_id: str) -> None:
        self._outboxes.pop(connection_id, None)
        if self._players.pop(connection_id, None) is not None:
            self._on_broadcast({"type": "playerLeft", "playerId": connection_id}, connection_id)

    def _on_players(self) -> list[dict[str, Any]]:
        return [player.to_message() for player in self._players.values()]


class _PresenceHubSingleton:
    _instance: PresenceHub | None = None

    @classmethod
    def get_instance(cls) -> PresenceHub:
        if cls._instance is None:
            cls._instance = PresenceHub()
        return cls._instance


def get_presence_hub() -> PresenceHub:
    """Return the process-wide presence hub."""
    return _PresenceHubSingleton.get_instance()
