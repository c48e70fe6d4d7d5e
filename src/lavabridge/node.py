"""WebSocket link to one external audio node."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import aiohttp

from .config import NodeOptions
from .errors import ConnectionFailure, LinkError, ParseError, SerializeError
from .metrics import NodeMetrics
from .signals import Signal

__all__ = ["NodeConnection", "NodeState", "NORMAL_CLOSURE", "ABNORMAL_CLOSURE"]

NORMAL_CLOSURE = 1000
ABNORMAL_CLOSURE = 1006

_CLOSERS = (
    aiohttp.WSMsgType.CLOSE,
    aiohttp.WSMsgType.CLOSING,
    aiohttp.WSMsgType.CLOSED,
)


def _default_logger() -> logging.Logger:
    return logging.getLogger("lavabridge.node")


class NodeState(Enum):
    CONNECTING = "connecting"
    READY = "ready"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"


def _is_silent_failure(exc: BaseException) -> bool:
    """Connection refused and server hang-up are retried without reporting."""

    if isinstance(exc, (ConnectionRefusedError, aiohttp.ServerDisconnectedError)):
        return True
    if isinstance(exc, aiohttp.ClientConnectorError):
        return isinstance(exc.os_error, ConnectionRefusedError)
    return False


class NodeConnection:
    """Own one WebSocket link to a node and keep it alive.

    Signals (every listener receives the connection as first argument):

    ``on_ready(node)``
        The socket opened.
    ``on_message(node, payload)``
        A decoded, non-stats payload arrived.
    ``on_error(node, exc)``
        A frame could not be parsed, a payload could not be encoded or a
        connection attempt failed for a reason other than refusal.
    ``on_disconnect(node, reason)``
        The node closed the socket normally; no reconnect follows.
    ``on_reconnecting(node)``
        The reconnect delay elapsed and a new attempt starts.
    """

    def __init__(
        self,
        options: NodeOptions,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        logger: Optional[logging.Logger] = None,
        metrics: Optional[NodeMetrics] = None,
    ) -> None:
        self.options = options
        self.host = options.host
        self.url = options.url
        self.shards = options.shards
        self.user_id = options.user_id
        self.password = options.password
        self.reconnect_interval = options.reconnect_interval
        self.logger = logger or _default_logger()
        self.metrics = metrics or NodeMetrics()

        self.ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self.ready = False
        self.state = NodeState.DISCONNECTED
        self.stats: Dict[str, Any] = {"players": 0, "playingPlayers": 0}

        self.on_ready = Signal("ready")
        self.on_message = Signal("message")
        self.on_error = Signal("error")
        self.on_disconnect = Signal("disconnect")
        self.on_reconnecting = Signal("reconnecting")

        self._session = session
        self._owns_session = session is None
        self._task: Optional[asyncio.Task] = None
        self._closing = False
        self._failure: Optional[asyncio.Future] = None

    def __repr__(self) -> str:
        return (
            f"<NodeConnection host={self.host} url={self.url} "
            f"state={self.state.name} shards={self.shards} user={self.user_id}>"
        )

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": self.password,
            "Num-Shards": str(self.shards),
            "User-Id": str(self.user_id),
        }

    @property
    def penalty(self) -> float:
        """Load score used to pick the least busy node. Lower is better."""

        playing = self.stats.get("playingPlayers") or 0
        cpu = self.stats.get("cpu") or {}
        system_load = cpu.get("systemLoad") or 0
        cpu_penalty = 1.05 ** (100 * system_load) * 10 - 10
        return float(playing) + cpu_penalty

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def open(self) -> None:
        """Start the background task that connects and keeps the link up."""

        if self._task is not None and not self._task.done():
            return
        self._closing = False
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        self.state = NodeState.CONNECTING
        self._task = asyncio.create_task(
            self._run(), name=f"lavabridge-node-{self.host}"
        )
        self._task.add_done_callback(self._on_task_done)

    async def wait_closed(self) -> None:
        """Wait until the link reached its terminal state."""

        task = self._task
        if task is not None:
            # Failures are reported on on_error by the done callback.
            await asyncio.wait({task})

    async def close(self) -> None:
        """Cancel any pending reconnect and close the socket normally."""

        self._closing = True
        task, self._task = self._task, None
        # A listener running inside the link task may close its own node.
        if task is asyncio.current_task():
            task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        ws, self.ws = self.ws, None
        if ws is not None and not ws.closed:
            await ws.close(code=NORMAL_CLOSURE)
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

        self.ready = False
        self.state = NodeState.DISCONNECTED
        self.logger.info("Node link closed", extra={"host": self.host})

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is None:
            return
        exc = task.exception()
        self.ws = None
        self.ready = False
        self.state = NodeState.DISCONNECTED
        self.logger.error(
            "Node link stopped unexpectedly",
            exc_info=exc,
            extra={"host": self.host},
        )
        self._failure = asyncio.ensure_future(
            self.on_error.emit(
                self, LinkError("Node link stopped unexpectedly", cause=exc)
            )
        )

    async def _run(self) -> None:
        while not self._closing:
            if not await self._connect_once():
                return
            self.state = NodeState.RECONNECTING
            self.metrics.incr_reconnects()
            self.logger.info(
                "Reconnecting to node",
                extra={"host": self.host, "delay": self.reconnect_interval},
            )
            await asyncio.sleep(self.reconnect_interval)
            await self.on_reconnecting.emit(self)

    async def _connect_once(self) -> bool:
        """Run one connection attempt. Returns whether to reconnect."""

        self.state = NodeState.CONNECTING
        assert self._session is not None
        try:
            ws = await self._session.ws_connect(self.url, headers=self.headers)
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
            await self._handle_connect_error(exc)
            return True

        self.ws = ws
        await self._handle_open()
        code, reason = await self._read_loop(ws)
        return await self._handle_close(code, reason)

    async def _handle_connect_error(self, exc: BaseException) -> None:
        if _is_silent_failure(exc):
            self.logger.debug(
                "Node refused connection",
                extra={"host": self.host, "url": self.url},
            )
            return
        self.logger.warning(
            "Failed to connect to node",
            extra={"host": self.host, "url": self.url, "error": str(exc)},
        )
        await self.on_error.emit(
            self,
            ConnectionFailure(
                f"Could not connect to {self.url}", host=self.host, cause=exc
            ),
        )

    async def _handle_open(self) -> None:
        self.ready = True
        self.state = NodeState.READY
        self.logger.info("Node link ready", extra={"host": self.host, "url": self.url})
        await self.on_ready.emit(self)

    async def _read_loop(
        self, ws: aiohttp.ClientWebSocketResponse
    ) -> Tuple[int, str]:
        reason = ""
        close_code: Optional[int] = None
        while True:
            msg = await ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                await self._handle_frame(msg.data)
            elif msg.type == aiohttp.WSMsgType.BINARY:
                await self._handle_frame(msg.data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                # The close that follows drives reconnection.
                self.logger.debug(
                    "Socket error on node link",
                    extra={"host": self.host, "error": str(msg.data)},
                )
            elif msg.type in _CLOSERS:
                if msg.type == aiohttp.WSMsgType.CLOSE:
                    if isinstance(msg.data, int):
                        close_code = msg.data
                    if isinstance(msg.extra, str):
                        reason = msg.extra
                break
            else:
                self.logger.debug(
                    "Unexpected frame type from node",
                    extra={"host": self.host, "type": str(msg.type)},
                )

        if ws.close_code is not None:
            close_code = ws.close_code
        if not ws.closed:
            await ws.close()
        if close_code is None:
            close_code = ABNORMAL_CLOSURE
        return close_code, reason

    async def _handle_frame(self, data: Any) -> None:
        self.metrics.incr_frames()
        try:
            payload = json.loads(data)
        except (TypeError, ValueError) as exc:
            self.metrics.incr_parse_errors()
            self.logger.warning(
                "Malformed frame from node",
                extra={"host": self.host, "error": str(exc)},
            )
            await self.on_error.emit(
                self, ParseError("Malformed frame from node", frame=data, cause=exc)
            )
            return

        if not isinstance(payload, dict):
            self.logger.debug("Ignoring non-object frame", extra={"host": self.host})
            return
        if payload.get("op") == "stats":
            self.stats = payload
            return
        await self.on_message.emit(self, payload)

    async def _handle_close(self, code: int, reason: str) -> bool:
        self.ready = False
        self.ws = None
        self.metrics.record_close(code)
        if self._closing:
            return False
        if code != NORMAL_CLOSURE:
            self.logger.warning(
                "Node link closed abnormally",
                extra={"host": self.host, "code": code, "reason": reason},
            )
            return True

        self.state = NodeState.DISCONNECTED
        self.logger.info(
            "Node link disconnected",
            extra={"host": self.host, "code": code, "reason": reason},
        )
        await self.on_disconnect.emit(self, reason)
        return False

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------
    async def send(self, message: Any) -> bool:
        """Encode and send one command. Returns whether it was written."""

        try:
            payload = json.dumps(message)
        except (TypeError, ValueError) as exc:
            self.logger.warning(
                "Failed to encode command",
                extra={"host": self.host, "error": str(exc)},
            )
            await self.on_error.emit(
                self,
                SerializeError("Failed to encode command", payload=message, cause=exc),
            )
            return False

        op = message.get("op") if isinstance(message, dict) else None
        ws = self.ws
        if ws is None or ws.closed:
            self.metrics.incr_dropped()
            self.logger.debug(
                "Dropping command; node link not ready",
                extra={"host": self.host, "op": op},
            )
            return False

        try:
            await ws.send_str(payload)
        except (ConnectionError, aiohttp.ClientError) as exc:
            self.metrics.incr_dropped()
            self.logger.debug(
                "Dropping command; write failed",
                extra={"host": self.host, "op": op, "error": str(exc)},
            )
            return False

        self.metrics.incr_sent()
        self.logger.debug("Sent command", extra={"host": self.host, "op": op})
        return True
