"""Pytest configuration shared across the test suite."""

from __future__ import annotations

import asyncio
import inspect
import json
import pathlib
import sys
from typing import Any, Iterable, List, Optional

import aiohttp
import pytest


# Ensure the src layout is importable without an installed package.
ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    """Execute ``async def`` tests on a fresh event loop.

    This mirrors the minimal behaviour offered by ``pytest-asyncio`` so the
    suite can run without needing the third-party plugin installed.
    """

    test_function = pyfuncitem.obj
    if not inspect.iscoroutinefunction(test_function):
        return None

    kwargs = {
        name: pyfuncitem.funcargs[name]
        for name in pyfuncitem._fixtureinfo.argnames
    }
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(test_function(**kwargs))
        loop.run_until_complete(loop.shutdown_asyncgens())
    finally:
        asyncio.set_event_loop(None)
        loop.close()
    return True


def pytest_configure(config: pytest.Config) -> None:
    """Ensure the ``asyncio`` marker is recognised to avoid warnings."""

    config.addinivalue_line(
        "markers",
        "asyncio: mark a test as using asyncio. Provided for compatibility.",
    )


# ----------------------------------------------------------------------
# Fakes for the aiohttp websocket client
# ----------------------------------------------------------------------
def text_frame(payload: Any) -> aiohttp.WSMessage:
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return aiohttp.WSMessage(aiohttp.WSMsgType.TEXT, data, None)


def close_frame(code: int, reason: str = "") -> aiohttp.WSMessage:
    return aiohttp.WSMessage(aiohttp.WSMsgType.CLOSE, code, reason)


class FakeWebSocket:
    """Replays scripted frames, then idles until fed, dropped or closed."""

    def __init__(self, frames: Iterable[aiohttp.WSMessage] = ()) -> None:
        self._frames: asyncio.Queue = asyncio.Queue()
        for frame in frames:
            self._frames.put_nowait(frame)
        self.close_code: Optional[int] = None
        self.closed = False
        self.sent: List[Any] = []

    def feed(self, frame: aiohttp.WSMessage) -> None:
        self._frames.put_nowait(frame)

    def drop(self) -> None:
        """Lose the connection without a close frame."""
        self.feed(aiohttp.WSMessage(aiohttp.WSMsgType.CLOSED, None, None))

    async def receive(self) -> aiohttp.WSMessage:
        msg = await self._frames.get()
        if msg.type == aiohttp.WSMsgType.CLOSE:
            self.closed = True
            self.close_code = msg.data
        return msg

    async def send_str(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self, *, code: int = 1000, message: bytes = b"") -> bool:
        if not self.closed:
            self.closed = True
            self.close_code = code
            self.drop()
        return True


class FakeClientSession:
    """Hands out scripted sockets (or raises scripted errors) per connect."""

    def __init__(self, sockets: Iterable[Any] = ()) -> None:
        self._sockets = list(sockets)
        self.connects: List[tuple] = []
        self.closed = False

    async def ws_connect(self, url: str, *, headers: Optional[dict] = None) -> Any:
        self.connects.append((url, headers))
        item = self._sockets.pop(0) if self._sockets else FakeWebSocket()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True


class FakeTransport:
    def __init__(self, error: Optional[BaseException] = None) -> None:
        self.calls: List[tuple] = []
        self.error = error

    async def send(self, shard: int, op: int, data: dict) -> None:
        self.calls.append((shard, op, data))
        if self.error is not None:
            raise self.error


class FakeNode:
    """Records commands instead of writing them to a socket."""

    def __init__(self, host: str = "a", log: Optional[list] = None) -> None:
        self.host = host
        self.sent: List[dict] = []
        self.log = log if log is not None else []

    async def send(self, message: dict) -> bool:
        self.sent.append(message)
        self.log.append(("send", message))
        return True


async def wait_for_state(node: Any, state: Any, attempts: int = 100) -> None:
    for _ in range(attempts):
        if node.state is state:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"node never reached {state}")


@pytest.fixture
def fakes():
    """Namespace of fake collaborators for tests."""

    class _Fakes:
        WebSocket = FakeWebSocket
        ClientSession = FakeClientSession
        Transport = FakeTransport
        Node = FakeNode
        text = staticmethod(text_frame)
        close = staticmethod(close_frame)
        wait_for_state = staticmethod(wait_for_state)

    return _Fakes
