import asyncio
from types import SimpleNamespace

import aiohttp
import pytest

from lavabridge.config import NodeOptions
from lavabridge.errors import ConnectionFailure, LinkError, ParseError, SerializeError
from lavabridge.node import NodeConnection, NodeState


def make_options(**overrides) -> NodeOptions:
    values = dict(
        host="a",
        gateway="localhost:2333",
        password="youshallnotpass",
        user_id="1234",
        shards=2,
        reconnect_interval=0.01,
    )
    values.update(overrides)
    return NodeOptions(**values)


def record(signal, sink):
    signal.connect(lambda *args: sink.append(args[1:]))


@pytest.fixture
def fast_sleep(monkeypatch):
    delays = []
    real_sleep = asyncio.sleep

    async def _sleep(delay, *args, **kwargs):
        delays.append(delay)
        await real_sleep(0)

    monkeypatch.setattr(asyncio, "sleep", _sleep)
    return delays


def test_url_and_headers():
    node = NodeConnection(make_options())
    assert node.url == "ws://localhost:2333"
    assert node.headers == {
        "Authorization": "youshallnotpass",
        "Num-Shards": "2",
        "User-Id": "1234",
    }
    assert node.ready is False
    assert node.stats == {"players": 0, "playingPlayers": 0}


def test_full_url_gateway_is_kept():
    node = NodeConnection(make_options(gateway="wss://node.example:443"))
    assert node.url == "wss://node.example:443"


@pytest.mark.asyncio
async def test_frames_are_parsed_and_stats_replaced(fakes):
    stats = {"op": "stats", "players": 3, "playingPlayers": 1, "uptime": 10}
    event = {"op": "event", "guildId": "g1", "type": "TrackEndEvent"}
    ws = fakes.WebSocket(
        [
            fakes.text("not json"),
            fakes.text(stats),
            fakes.text(event),
            fakes.close(1000, "bye"),
        ]
    )
    session = fakes.ClientSession([ws])
    node = NodeConnection(make_options(), session=session)
    ready, messages, errors, disconnects = [], [], [], []
    node.on_ready.connect(lambda n: ready.append(n))
    record(node.on_message, messages)
    record(node.on_error, errors)
    record(node.on_disconnect, disconnects)

    await node.open()
    await asyncio.wait_for(node.wait_closed(), timeout=1)

    assert ready == [node]
    assert session.connects == [(node.url, node.headers)]
    assert node.stats == stats
    assert messages == [(event,)]
    assert len(errors) == 1
    assert isinstance(errors[0][0], ParseError)
    assert disconnects == [("bye",)]
    assert node.state is NodeState.DISCONNECTED
    assert node.ready is False
    assert node.ws is None
    snapshot = node.metrics.snapshot()
    assert snapshot["frames_received"] == 3
    assert snapshot["parse_errors"] == 1
    assert snapshot["last_close_code"] == 1000


@pytest.mark.asyncio
async def test_normal_close_never_reconnects(fakes, fast_sleep):
    session = fakes.ClientSession([fakes.WebSocket([fakes.close(1000)])])
    node = NodeConnection(make_options(), session=session)
    reconnecting = []
    node.on_reconnecting.connect(lambda n: reconnecting.append(n))

    await node.open()
    await asyncio.wait_for(node.wait_closed(), timeout=1)

    assert len(session.connects) == 1
    assert reconnecting == []
    assert fast_sleep == []
    assert node.metrics.reconnects == 0


@pytest.mark.asyncio
async def test_abnormal_close_reconnects_once_after_interval(fakes, fast_sleep):
    session = fakes.ClientSession(
        [
            fakes.WebSocket([fakes.close(4000, "restart")]),
            fakes.WebSocket([fakes.close(1000)]),
        ]
    )
    node = NodeConnection(make_options(reconnect_interval=10.0), session=session)
    ready, reconnecting, disconnects = [], [], []
    node.on_ready.connect(lambda n: ready.append(n))
    node.on_reconnecting.connect(lambda n: reconnecting.append(n))
    record(node.on_disconnect, disconnects)

    await node.open()
    await asyncio.wait_for(node.wait_closed(), timeout=1)

    assert len(session.connects) == 2
    assert fast_sleep == [10.0]
    assert reconnecting == [node]
    assert len(ready) == 2
    assert disconnects == [("",)]
    assert node.metrics.reconnects == 1


@pytest.mark.asyncio
async def test_dropped_connection_without_close_code_reconnects(fakes, fast_sleep):
    dropped = fakes.WebSocket()
    session = fakes.ClientSession([dropped, fakes.WebSocket([fakes.close(1000)])])
    node = NodeConnection(make_options(), session=session)

    await node.open()
    await fakes.wait_for_state(node, NodeState.READY)
    dropped.drop()
    await asyncio.wait_for(node.wait_closed(), timeout=1)

    assert len(session.connects) == 2
    assert node.metrics.reconnects == 1


def connector_error(os_error):
    conn_key = SimpleNamespace(host="localhost", port=2333, is_ssl=False, ssl=True)
    return aiohttp.ClientConnectorError(conn_key, os_error)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "failure",
    [
        ConnectionRefusedError(),
        connector_error(ConnectionRefusedError(111, "Connection refused")),
        aiohttp.ServerDisconnectedError(),
    ],
    ids=["refused", "connector-refused", "server-disconnected"],
)
async def test_transient_failures_are_retried_silently(fakes, fast_sleep, failure):
    session = fakes.ClientSession([failure, fakes.WebSocket([fakes.close(1000)])])
    node = NodeConnection(make_options(), session=session)
    errors = []
    record(node.on_error, errors)

    await node.open()
    await asyncio.wait_for(node.wait_closed(), timeout=1)

    assert errors == []
    assert len(session.connects) == 2
    assert node.metrics.reconnects == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "failure",
    [
        OSError("network unreachable"),
        connector_error(OSError(101, "Network is unreachable")),
    ],
    ids=["os-error", "connector-unreachable"],
)
async def test_other_connect_failures_are_reported_and_retried(
    fakes, fast_sleep, failure
):
    session = fakes.ClientSession([failure, fakes.WebSocket([fakes.close(1000)])])
    node = NodeConnection(make_options(), session=session)
    errors = []
    record(node.on_error, errors)

    await node.open()
    await asyncio.wait_for(node.wait_closed(), timeout=1)

    assert len(errors) == 1
    reported = errors[0][0]
    assert isinstance(reported, ConnectionFailure)
    assert reported.host == "a"
    assert reported.cause is failure
    assert len(session.connects) == 2


@pytest.mark.asyncio
async def test_unexpected_link_failure_is_reported(fakes):
    ws = fakes.WebSocket()

    async def broken_close(**kwargs):
        raise RuntimeError("close failed")

    ws.close = broken_close
    node = NodeConnection(make_options(), session=fakes.ClientSession([ws]))
    errors = []
    failed = asyncio.Event()

    def on_error(_node, exc):
        errors.append(exc)
        failed.set()

    node.on_error.connect(on_error)
    await node.open()
    await fakes.wait_for_state(node, NodeState.READY)

    ws.drop()
    await asyncio.wait_for(failed.wait(), timeout=1)

    assert isinstance(errors[0], LinkError)
    assert isinstance(errors[0].cause, RuntimeError)
    assert node.state is NodeState.DISCONNECTED
    assert node.ready is False
    await node.close()


@pytest.mark.asyncio
async def test_close_cancels_pending_reconnect(fakes):
    session = fakes.ClientSession([fakes.WebSocket([fakes.close(4000)])])
    node = NodeConnection(make_options(reconnect_interval=60), session=session)
    reconnecting = []
    node.on_reconnecting.connect(lambda n: reconnecting.append(n))

    await node.open()
    await fakes.wait_for_state(node, NodeState.RECONNECTING)
    await node.close()
    await asyncio.sleep(0)

    assert node.state is NodeState.DISCONNECTED
    assert reconnecting == []
    assert len(session.connects) == 1
    # A caller-supplied session is left open for its owner.
    assert session.closed is False


@pytest.mark.asyncio
async def test_send_writes_json_when_ready(fakes):
    ws = fakes.WebSocket()
    node = NodeConnection(make_options(), session=fakes.ClientSession([ws]))

    await node.open()
    await fakes.wait_for_state(node, NodeState.READY)
    assert await node.send({"op": "stop", "guildId": "g1"}) is True
    await node.close()

    assert ws.sent == [{"op": "stop", "guildId": "g1"}]
    assert ws.closed is True
    assert node.metrics.commands_sent == 1


@pytest.mark.asyncio
async def test_send_without_connection_is_dropped():
    node = NodeConnection(make_options())
    errors = []
    record(node.on_error, errors)

    assert await node.send({"op": "stop", "guildId": "g1"}) is False

    assert errors == []
    assert node.metrics.commands_dropped == 1


@pytest.mark.asyncio
async def test_send_unserialisable_payload_reports_error(fakes):
    ws = fakes.WebSocket()
    node = NodeConnection(make_options())
    node.ws = ws
    errors = []
    record(node.on_error, errors)

    assert await node.send({"op": "play", "track": object()}) is False

    assert ws.sent == []
    assert len(errors) == 1
    assert isinstance(errors[0][0], SerializeError)


def test_penalty_prefers_idle_nodes():
    busy = NodeConnection(make_options(host="busy"))
    idle = NodeConnection(make_options(host="idle"))
    busy.stats = {"op": "stats", "players": 5, "playingPlayers": 4, "cpu": {"systemLoad": 0.5}}
    idle.stats = {"op": "stats", "players": 1, "playingPlayers": 0}

    assert idle.penalty == 0
    assert busy.penalty > idle.penalty
