"""Route host voice commands to nodes and node events to guild sessions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol

import aiohttp

from .config import NodeOptions
from .node import NodeConnection
from .player import PlayerSession
from .signals import Signal

__all__ = [
    "Router",
    "ShardTransport",
    "JoinRequest",
    "LeaveRequest",
    "VoiceServerUpdate",
    "VOICE_STATE_UPDATE",
]

# Discord gateway opcode for voice state updates.
VOICE_STATE_UPDATE = 4


def _default_logger() -> logging.Logger:
    return logging.getLogger("lavabridge.router")


class ShardTransport(Protocol):
    """The part of the host chat client the router needs."""

    async def send(self, shard: int, op: int, data: Dict[str, Any]) -> None:
        ...


@dataclass(slots=True)
class JoinRequest:
    guild_id: str
    channel_id: str
    shard: int = 0
    host: Optional[str] = None
    self_mute: bool = False
    self_deaf: bool = False
    payload: Optional[Dict[str, Any]] = None
    op: int = VOICE_STATE_UPDATE

    def to_payload(self) -> Dict[str, Any]:
        if self.payload is not None:
            return self.payload
        return {
            "guild_id": str(self.guild_id),
            "channel_id": str(self.channel_id),
            "self_mute": self.self_mute,
            "self_deaf": self.self_deaf,
        }


@dataclass(slots=True)
class LeaveRequest:
    guild_id: str
    shard: int = 0
    payload: Optional[Dict[str, Any]] = None
    op: int = VOICE_STATE_UPDATE

    def to_payload(self) -> Dict[str, Any]:
        if self.payload is not None:
            return self.payload
        return {
            "guild_id": str(self.guild_id),
            "channel_id": None,
            "self_mute": False,
            "self_deaf": False,
        }


@dataclass(slots=True)
class VoiceServerUpdate:
    """Coordinates a node needs to open its own voice connection."""

    guild_id: str
    session_id: str
    event: Dict[str, Any]


class Router:
    """Own the node connections and guild sessions of one bot.

    ``on_error(node, exc)`` carries node-level errors and host transport
    failures (``node`` is None for the latter).
    """

    def __init__(
        self,
        transport: ShardTransport,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.transport = transport
        self.logger = logger or _default_logger()
        self.nodes: Dict[str, NodeConnection] = {}
        self.sessions: Dict[str, PlayerSession] = {}
        self.on_error = Signal("router-error")
        self._subscriptions: Dict[str, List[Callable[[], None]]] = {}

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------
    async def register_node(
        self,
        options: NodeOptions,
        *,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> NodeConnection:
        """Create, subscribe and open a node connection keyed by host."""

        orphans: List[PlayerSession] = []
        if options.host in self.nodes:
            self.logger.warning(
                "Replacing existing node registration", extra={"host": options.host}
            )
            orphans = await self._release_node(options.host)

        node = NodeConnection(options, session=session)
        for player in orphans:
            player.node = node
        self._subscriptions[options.host] = [
            node.on_message.connect(self.demultiplex),
            node.on_error.connect(self.on_error.emit),
        ]
        self.nodes[options.host] = node
        self.logger.info(
            "Registered node", extra={"host": options.host, "url": node.url}
        )
        await node.open()
        return node

    async def remove_node(self, host: str) -> None:
        """Close the node under ``host`` and unbind the sessions it served."""

        for player in await self._release_node(host):
            player.node = None

    async def _release_node(self, host: str) -> List[PlayerSession]:
        node = self.nodes.pop(host, None)
        if node is None:
            return []
        for unsubscribe in self._subscriptions.pop(host, []):
            unsubscribe()
        await node.close()
        self.logger.info("Removed node", extra={"host": host})

        orphans = [s for s in self.sessions.values() if s.node is node]
        # The next node has not seen these guilds' voice updates.
        for player in orphans:
            player.ready = False
        return orphans

    def ideal_node(self) -> Optional[NodeConnection]:
        """Return the ready node with the lowest penalty, if any."""

        candidates = [node for node in self.nodes.values() if node.ready]
        if not candidates:
            return None
        return min(candidates, key=lambda node: node.penalty)

    async def close(self) -> None:
        for host in list(self.nodes):
            await self.remove_node(host)
        for session in self.sessions.values():
            session.detach()
        self.sessions.clear()

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------
    def get_session(self, guild_id: Any) -> Optional[PlayerSession]:
        return self.sessions.get(str(guild_id))

    def _session_for(self, message: Dict[str, Any]) -> Optional[PlayerSession]:
        guild_id = message.get("guildId")
        session = self.sessions.get(str(guild_id)) if guild_id is not None else None
        if session is None:
            self.logger.debug(
                "Dropping message for unknown guild",
                extra={"guild_id": guild_id, "op": message.get("op")},
            )
        return session

    async def demultiplex(self, node: NodeConnection, message: Dict[str, Any]) -> None:
        op = message.get("op")
        if not op:
            return

        if op == "playerUpdate":
            session = self._session_for(message)
            if session is not None:
                session.update_state(message.get("state") or {})
            return

        if op == "event":
            session = self._session_for(message)
            if session is None:
                return
            event_type = message.get("type")
            handlers = {
                "TrackEndEvent": session.on_end,
                "TrackExceptionEvent": session.on_exception,
                "TrackStuckEvent": session.on_stuck,
            }
            handler = handlers.get(event_type)
            if handler is None:
                self.logger.debug(
                    "Unhandled event type",
                    extra={"host": node.host, "type": event_type},
                )
                await session.warned.emit(event_type, message)
                return
            await handler(message)
            return

        self.logger.debug("Unhandled op from node", extra={"host": node.host, "op": op})

    # ------------------------------------------------------------------
    # Host operations
    # ------------------------------------------------------------------
    async def _forward(self, shard: int, op: int, payload: Dict[str, Any]) -> None:
        try:
            await self.transport.send(shard, op, payload)
        except Exception as exc:
            self.logger.error(
                "Host transport failed",
                extra={"shard": shard, "op": op, "error": str(exc)},
            )
            await self.on_error.emit(None, exc)

    async def join(self, request: JoinRequest) -> Optional[PlayerSession]:
        """Ask the host to join voice and return the guild's session."""

        guild_id = str(request.guild_id)
        await self._forward(request.shard, request.op, request.to_payload())

        session = self.get_session(guild_id)
        if session is not None and session.node is not None:
            return session

        if request.host is not None:
            node = self.nodes.get(request.host)
        else:
            node = self.ideal_node()
        if node is None:
            self.logger.warning(
                "No node available for guild",
                extra={"guild_id": guild_id, "host": request.host},
            )
            return session

        if session is not None:
            session.node = node
            self.logger.info(
                "Rebound player session",
                extra={"guild_id": guild_id, "host": node.host},
            )
            return session

        session = PlayerSession(node, guild_id, request.channel_id)
        self.sessions[guild_id] = session
        self.logger.info(
            "Created player session",
            extra={"guild_id": guild_id, "host": node.host},
        )
        return session

    async def leave(self, request: LeaveRequest) -> None:
        guild_id = str(request.guild_id)
        session = self.get_session(guild_id)
        if session is None:
            return
        await self._forward(request.shard, request.op, request.to_payload())
        session.detach()
        self.sessions.pop(guild_id, None)
        self.logger.info("Removed player session", extra={"guild_id": guild_id})

    async def voice_server_update(self, update: VoiceServerUpdate) -> None:
        session = self.get_session(update.guild_id)
        if session is None:
            self.logger.debug(
                "Dropping voice server update for unknown guild",
                extra={"guild_id": update.guild_id},
            )
            return
        await session.connect(update.session_id, update.event)
