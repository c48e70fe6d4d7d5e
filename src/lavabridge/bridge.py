"""Nextcord integration: gateway transport and voice event delivery."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from nextcord.ext import commands

from .config import node_options_from_env
from .router import Router, VoiceServerUpdate

__all__ = ["NextcordTransport", "VoiceBridge", "setup"]

logger = logging.getLogger("lavabridge.bridge")


class NextcordTransport:
    """Send raw gateway payloads through the bot's shard websocket."""

    def __init__(self, bot: commands.Bot) -> None:
        self.bot = bot

    async def send(self, shard: int, op: int, data: Dict[str, Any]) -> None:
        # Both Client and AutoShardedClient resolve the shard websocket here.
        ws = self.bot._get_websocket(shard_id=shard)
        if ws is None:
            raise RuntimeError(f"No gateway connection for shard {shard}")
        await ws.send_as_json({"op": op, "d": data})


class VoiceBridge(commands.Cog):
    """Feed the router the voice coordinates Discord sends the bot.

    The bot must be created with ``enable_debug_events=True`` so raw gateway
    dispatches reach ``on_socket_raw_receive``.
    """

    def __init__(self, bot: commands.Bot, router: Optional[Router] = None) -> None:
        self.bot = bot
        self.router = router or Router(NextcordTransport(bot))
        self._voice_sessions: Dict[str, str] = {}
        self._close_task: Optional[asyncio.Task] = None

    @commands.Cog.listener()
    async def on_ready(self) -> None:
        if self.router.nodes or self.bot.user is None:
            return
        options = node_options_from_env(user_id=str(self.bot.user.id))
        await self.router.register_node(options)

    @commands.Cog.listener()
    async def on_socket_raw_receive(self, msg: Any) -> None:
        await self.handle_gateway_payload(msg)

    async def handle_gateway_payload(self, msg: Any) -> None:
        if isinstance(msg, (bytes, str)):
            try:
                data = json.loads(msg)
            except ValueError:
                return
        else:
            data = msg
        if not isinstance(data, dict):
            return

        event = data.get("t")
        payload = data.get("d") or {}
        if event == "VOICE_STATE_UPDATE":
            self._on_voice_state(payload)
        elif event == "VOICE_SERVER_UPDATE":
            await self._on_voice_server(payload)

    def _on_voice_state(self, payload: Dict[str, Any]) -> None:
        user = self.bot.user
        if user is None or str(payload.get("user_id")) != str(user.id):
            return
        guild_id = payload.get("guild_id")
        if guild_id is None:
            return
        if payload.get("channel_id") is None:
            self._voice_sessions.pop(str(guild_id), None)
            return
        self._voice_sessions[str(guild_id)] = payload.get("session_id")

    async def _on_voice_server(self, payload: Dict[str, Any]) -> None:
        guild_id = str(payload.get("guild_id"))
        session_id = self._voice_sessions.get(guild_id)
        if session_id is None:
            logger.debug(
                "Voice server update before voice state", extra={"guild_id": guild_id}
            )
            return
        await self.router.voice_server_update(
            VoiceServerUpdate(guild_id=guild_id, session_id=session_id, event=payload)
        )

    async def close(self) -> None:
        self._voice_sessions.clear()
        await self.router.close()

    def cog_unload(self) -> None:
        self._close_task = asyncio.ensure_future(self.close())


def setup(bot: commands.Bot) -> None:
    bot.add_cog(VoiceBridge(bot))
