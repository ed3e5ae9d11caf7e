import asyncio
import json
from pathlib import Path

import pytest
import pytest_asyncio
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed

from conftest import DevClient, eventually
from hotloop.build.incremental_compiler import ProgramIR
from hotloop.core.errors import ProtocolError
from hotloop.core.event_bus import EventBus
from hotloop.core.events import ClientConnected, ClientDisconnected, Diagnostic
from hotloop.preview.protocol import (
    CLOSE_GOING_AWAY,
    CLOSE_HEARTBEAT_TIMEOUT,
    CLOSE_PROTOCOL_ERROR,
    CLOSE_TRY_AGAIN_LATER,
    CLOSE_VERSION_MISMATCH,
    Ack,
    CompileError,
    Goodbye,
    Hello,
    Ping,
    Pong,
    Ready,
    Reload,
    StateReport,
    Welcome,
    check_version,
    decode_client_message,
    decode_server_message,
    encode,
    read_hello,
)
from hotloop.preview.websocket_server import DevServer
from hotloop.state.state_manager import NodeState, StateDiff, StateSnapshot


def program(version: int) -> ProgramIR:
    return ProgramIR(version=version, units={Path("/app/main.oui"): {"v": version}})


@pytest_asyncio.fixture
async def bus():
    bus = EventBus()
    yield bus
    await bus.close()


@pytest_asyncio.fixture
async def start_server(bus):
    servers = []

    async def start(**kwargs) -> DevServer:
        server = DevServer(port=0, event_bus=bus, **kwargs)
        await server.start()
        servers.append(server)
        return server

    yield start
    for server in servers:
        await server.stop()


@pytest_asyncio.fixture
async def open_client():
    clients = []

    async def open_(server: DevServer, client_id=None, version: int = 1, handshake: bool = True) -> DevClient:
        client = DevClient(await connect(server.address))
        clients.append(client)
        if handshake:
            await client.send(Hello(protocol_version=version, client_id=client_id))
        return client

    yield open_
    for client in clients:
        await client.close()


class TestHandshake:
    @pytest.mark.asyncio
    async def test_hello_gets_welcome_and_publishes_connect(self, bus, start_server, open_client):
        events = bus.subscribe("test")
        server = await start_server()

        client = await open_client(server, client_id="tab-1")
        welcome = await client.recv()

        assert isinstance(welcome, Welcome)
        assert welcome.client_id == "tab-1"
        assert welcome.server_id == server.server_id
        assert server.client_count() == 1
        assert isinstance(events.get_nowait(), ClientConnected)

    @pytest.mark.asyncio
    async def test_version_mismatch_closes_without_any_payload(self, start_server, open_client):
        server = await start_server(heartbeat_interval=0.05)
        client = await open_client(server, version=2)
        await asyncio.sleep(0.1)
        await server.broadcast_reload(program(1))
        await server.broadcast_compile_error([Diagnostic(Path("a.oui"), "bad")])

        with pytest.raises(ConnectionClosed):
            await client.recv()

        assert client.websocket.close_code == CLOSE_VERSION_MISMATCH
        assert "mismatch" in client.websocket.close_reason
        assert server.client_count() == 0

    @pytest.mark.asyncio
    async def test_first_frame_must_be_hello(self, start_server, open_client):
        server = await start_server()
        client = await open_client(server, handshake=False)
        await client.send(Ready())

        assert await client.wait_closed() == CLOSE_VERSION_MISMATCH

    @pytest.mark.asyncio
    @pytest.mark.parametrize("frame", [
        '{"type": "hello"}',
        "not json",
        '{"type": "hello", "protocol_version": "1"}',
    ])
    async def test_malformed_hello_closes_as_version_mismatch(self, start_server, open_client, frame):
        server = await start_server()
        client = await open_client(server, handshake=False)
        await client.websocket.send(frame)

        assert await client.wait_closed() == CLOSE_VERSION_MISMATCH
        assert server.client_count() == 0

    @pytest.mark.asyncio
    async def test_connections_beyond_limit_are_refused(self, start_server, open_client):
        server = await start_server(max_clients=1)
        first = await open_client(server)
        await first.recv_kind(Welcome)

        second = await open_client(server, handshake=False)

        assert await second.wait_closed() == CLOSE_TRY_AGAIN_LATER
        assert server.client_count() == 1


class TestDelivery:
    @pytest.mark.asyncio
    async def test_reload_waits_for_ready(self, start_server, open_client):
        server = await start_server()
        client = await open_client(server)
        await client.recv_kind(Welcome)

        await server.broadcast_reload(program(1), StateDiff(preserved=("count",)))
        assert await client.nothing_within(0.1)

        await client.send(Ready(capabilities=["state"]))
        reload = await client.recv_kind(Reload)

        assert reload.version == 1
        assert reload.ir["units"] == {"/app/main.oui": {"v": 1}}
        assert reload.state_diff == {"preserved": ["count"], "reset": [], "added": []}

    @pytest.mark.asyncio
    async def test_slow_client_gets_only_latest_reload(self, start_server, open_client):
        """A client that has not sent ready yet skips straight to the newest reload.

        A ready client that simply has not acked is covered by
        test_unacked_reload_holds_back_newer_ones.
        """
        server = await start_server()
        fast = await open_client(server, client_id="fast")
        slow = await open_client(server, client_id="slow")
        await fast.recv_kind(Welcome)
        await slow.recv_kind(Welcome)
        await fast.send(Ready())

        await server.broadcast_reload(program(1))
        assert (await fast.recv_kind(Reload)).version == 1
        await fast.send(Ack(applied=True, version=1))
        await server.broadcast_reload(program(2))
        assert (await fast.recv_kind(Reload)).version == 2

        await slow.send(Ready())
        assert (await slow.recv_kind(Reload)).version == 2
        assert await slow.nothing_within(0.2)
        assert server.clients["fast"].delivered == [1, 2]
        assert server.clients["slow"].delivered == [2]

    @pytest.mark.asyncio
    async def test_unacked_reload_holds_back_newer_ones(self, start_server, open_client):
        server = await start_server(ack_timeout=5.0)
        client = await open_client(server)
        await client.recv_kind(Welcome)
        await client.send(Ready())
        await server.broadcast_reload(program(1))
        await client.recv_kind(Reload)

        await server.broadcast_reload(program(2))
        await server.broadcast_reload(program(3))
        assert await client.nothing_within(0.2)

        await client.send(Ack(applied=True, version=1))
        assert (await client.recv_kind(Reload)).version == 3
        assert await client.nothing_within(0.2)

    @pytest.mark.asyncio
    async def test_ack_timeout_releases_next_reload(self, start_server, open_client):
        server = await start_server(ack_timeout=0.2)
        client = await open_client(server)
        await client.recv_kind(Welcome)
        await client.send(Ready())
        await server.broadcast_reload(program(1))
        await client.recv_kind(Reload)

        await server.broadcast_reload(program(2))

        assert (await client.recv_kind(Reload, timeout=2)).version == 2

    @pytest.mark.asyncio
    async def test_compile_error_is_delivered_before_ready(self, start_server, open_client):
        server = await start_server()
        client = await open_client(server)
        await client.recv_kind(Welcome)

        await server.broadcast_compile_error(
            [Diagnostic(Path("/app/a.oui"), "bad token", line=3)],
            overlay={"title": "Failed to compile: 1 error"},
        )
        message = await client.recv_kind(CompileError)

        assert message.diagnostics[0]["message"] == "bad token"
        assert message.diagnostics[0]["path"] == "/app/a.oui"
        assert message.overlay["title"] == "Failed to compile: 1 error"

    @pytest.mark.asyncio
    async def test_state_report_feeds_per_client_diff(self, start_server, open_client):
        server = await start_server()
        client = await open_client(server, client_id="tab")
        await client.recv_kind(Welcome)
        reported = StateSnapshot(nodes={"count": NodeState("int", 4)})
        await client.send(StateReport(snapshot=reported.to_dict()))
        await client.send(Ready())
        await eventually(lambda: server.clients["tab"].last_snapshot is not None)

        await server.broadcast_reload(
            program(1), StateDiff(), diff_for=lambda snapshot: StateDiff(preserved=tuple(snapshot.nodes)),
        )

        assert (await client.recv_kind(Reload)).state_diff["preserved"] == ["count"]


class TestConnectionHealth:
    @pytest.mark.asyncio
    async def test_missed_heartbeat_closes_only_that_client(self, bus, start_server, open_client):
        events = bus.subscribe("test")
        server = await start_server(heartbeat_interval=0.1, heartbeat_timeout=0.2)
        healthy = await open_client(server, client_id="healthy")
        silent = await open_client(server, client_id="silent")
        await healthy.recv_kind(Welcome)
        await silent.recv_kind(Welcome)

        async def answer_pings():
            while True:
                ping = await healthy.recv_kind(Ping, timeout=5)
                await healthy.send(Pong(timestamp=ping.timestamp))

        responder = asyncio.create_task(answer_pings())
        try:
            assert await silent.wait_closed(timeout=3) == CLOSE_HEARTBEAT_TIMEOUT
            await asyncio.sleep(0.3)
            assert not responder.done()
            assert list(server.clients) == ["healthy"]
        finally:
            responder.cancel()
            await asyncio.gather(responder, return_exceptions=True)

        disconnects = []
        while (event := events.get_nowait()) is not None:
            if isinstance(event, ClientDisconnected):
                disconnects.append(event)
        assert [(e.client_id, e.code) for e in disconnects] == [("silent", CLOSE_HEARTBEAT_TIMEOUT)]

    @pytest.mark.asyncio
    async def test_malformed_message_closes_only_that_client(self, start_server, open_client):
        server = await start_server()
        broken = await open_client(server, client_id="broken")
        fine = await open_client(server, client_id="fine")
        await broken.recv_kind(Welcome)
        await fine.recv_kind(Welcome)

        await broken.websocket.send("{not json")

        assert await broken.wait_closed() == CLOSE_PROTOCOL_ERROR
        await eventually(lambda: server.client_count() == 1)
        await server.broadcast_compile_error([Diagnostic(Path("a.oui"), "bad")])
        assert isinstance(await fine.recv_kind(CompileError), CompileError)

    @pytest.mark.asyncio
    async def test_stop_says_goodbye_and_closes_going_away(self, bus):
        server = DevServer(port=0, event_bus=bus)
        await server.start()
        client = DevClient(await connect(server.address))
        await client.send(Hello(protocol_version=1))
        await client.recv_kind(Welcome)

        await server.stop("restarting")

        goodbye = await client.recv_kind(Goodbye)
        assert goodbye.reason == "restarting"
        assert await client.wait_closed() == CLOSE_GOING_AWAY
        assert not server.running


class TestProtocol:
    def test_messages_are_tagged_json(self):
        frame = json.loads(encode(Reload(version=3, ir={"units": {}}, state_diff={})))

        assert frame == {"type": "reload", "version": 3, "ir": {"units": {}}, "state_diff": {}}

    def test_decode_client_message(self):
        message = decode_client_message('{"type": "ack", "applied": false, "version": 2, "error": "boom"}')

        assert message == Ack(applied=False, version=2, error="boom")

    @pytest.mark.parametrize("frame", [
        "not json",
        "[1, 2]",
        '{"type": "reload", "version": 1}',
        '{"type": 5}',
        '{"type": "ack"}',
    ])
    def test_bad_client_frames_raise_protocol_error(self, frame):
        with pytest.raises(ProtocolError) as excinfo:
            decode_client_message(frame)

        assert excinfo.value.close_code == CLOSE_PROTOCOL_ERROR

    def test_read_hello_treats_bad_frames_as_mismatch(self):
        assert read_hello('{"type": "hello", "protocol_version": 1}', 1).protocol_version == 1

        with pytest.raises(ProtocolError) as excinfo:
            read_hello('{"type": "hello"}', 1)

        assert excinfo.value.close_code == CLOSE_VERSION_MISMATCH

    def test_check_version(self):
        assert check_version(Hello(protocol_version=1), 1).protocol_version == 1

        with pytest.raises(ProtocolError) as excinfo:
            check_version(Hello(protocol_version=2), 1)

        assert excinfo.value.close_code == CLOSE_VERSION_MISMATCH
        assert str(excinfo.value) == "Protocol version mismatch: server 1, client 2"
