"""Per-guild playback session driven through a node connection."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any, Dict, Optional

from .signals import Signal

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .node import NodeConnection

__all__ = ["PlayerSession"]

logger = logging.getLogger("lavabridge.player")


def _now_ms() -> int:
    return int(time.time() * 1000)


class PlayerSession:
    """Playback state for one guild.

    Every control method sends exactly one command to the bound node. The node
    is authoritative: nothing is validated here and failures come back as
    ``TrackExceptionEvent`` payloads.
    """

    def __init__(
        self,
        node: Optional["NodeConnection"],
        guild_id: str,
        channel_id: Optional[str],
    ) -> None:
        self.node = node
        self.guild_id = str(guild_id)
        self.channel_id = None if channel_id is None else str(channel_id)
        self.ready = False
        self.playing = False
        self.paused = False
        self.track: Optional[str] = None
        self.state: Dict[str, Any] = {}
        self.timestamp = _now_ms()

        self.ended = Signal("end")
        self.errored = Signal("error")
        self.warned = Signal("warn")

    def __repr__(self) -> str:
        host = self.node.host if self.node is not None else None
        return (
            f"<PlayerSession guild={self.guild_id} channel={self.channel_id} "
            f"node={host} playing={self.playing} paused={self.paused}>"
        )

    @property
    def position(self) -> int:
        """Last playback position reported by the node, in milliseconds."""
        return int(self.state.get("position") or 0)

    def detach(self) -> None:
        self.ended.clear()
        self.errored.clear()
        self.warned.clear()

    async def _send(self, op: str, **fields: Any) -> bool:
        if self.node is None:
            logger.debug(
                "Dropping command; session has no node",
                extra={"guild_id": self.guild_id, "op": op},
            )
            return False
        payload: Dict[str, Any] = {"op": op, "guildId": self.guild_id}
        payload.update(fields)
        return await self.node.send(payload)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    async def connect(self, session_id: str, event: Dict[str, Any]) -> None:
        await self._send("voiceUpdate", sessionId=session_id, event=event)
        self.ready = True

    async def play(self, track: str, **options: Any) -> None:
        await self._send("play", track=track, **options)
        self.track = track
        self.playing = True
        if "pause" in options:
            self.paused = bool(options["pause"])
        self.timestamp = _now_ms()

    async def stop(self) -> None:
        await self._send("stop")
        self.playing = False
        self.track = None

    async def pause(self, pause: bool = True) -> None:
        if pause == self.paused:
            return
        await self._send("pause", pause=pause)
        self.paused = pause

    async def resume(self) -> None:
        await self.pause(False)

    async def volume(self, volume: int) -> None:
        await self._send("volume", volume=volume)

    async def seek(self, position: int) -> None:
        await self._send("seek", position=position)

    # ------------------------------------------------------------------
    # Node notifications
    # ------------------------------------------------------------------
    def update_state(self, state: Dict[str, Any]) -> None:
        self.state = state

    async def on_end(self, message: Dict[str, Any]) -> None:
        # A replaced track is followed by the replacement already playing.
        if message.get("reason") != "replaced":
            self.playing = False
            self.track = None
        await self.ended.emit(message)

    async def on_exception(self, message: Dict[str, Any]) -> None:
        logger.warning(
            "Track exception reported by node",
            extra={"guild_id": self.guild_id, "error": message.get("error")},
        )
        await self.errored.emit(message)

    async def on_stuck(self, message: Dict[str, Any]) -> None:
        logger.info(
            "Track stuck; stopping",
            extra={"guild_id": self.guild_id, "threshold": message.get("thresholdMs")},
        )
        await self.stop()
        await self.ended.emit(message)
