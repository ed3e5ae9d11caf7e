import asyncio
import logging
import time
import uuid
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from ..core.config_manager import DEFAULT_WS_PORT, PROTOCOL_VERSION, HotReloadConfig
from ..core.errors import ProtocolError
from ..core.event_bus import EventBus
from ..core.events import ClientConnected, ClientDisconnected, Diagnostic, HotReloadEvent
from ..state.state_manager import StateDiff, StateSnapshot
from .protocol import (
    CLOSE_GOING_AWAY,
    CLOSE_HEARTBEAT_TIMEOUT,
    CLOSE_PROTOCOL_ERROR,
    CLOSE_TRY_AGAIN_LATER,
    Ack,
    ClientError,
    CompileError,
    Goodbye,
    Message,
    Ping,
    Pong,
    Ready,
    Reload,
    StateReport,
    Welcome,
    decode_client_message,
    encode,
    read_hello,
)

logger = logging.getLogger(__name__)

HANDSHAKE_TIMEOUT = 10.0


def _close_reason(text: str) -> str:
    # Close frame reasons are limited to 123 bytes
    return text.encode("utf-8")[:120].decode("utf-8", errors="ignore")


class ClientSession:
    """Per-connection delivery state: FIFO outbox, ready/ack gating, heartbeat"""

    def __init__(self, client_id: str, websocket: ServerConnection, address: str):
        self.id = client_id
        self.websocket = websocket
        self.address = address
        self.connected_at = time.time()
        self.capabilities: List[str] = []
        self.ready = False
        self.awaiting_ack: Optional[int] = None
        self.ack_deadline = 0.0
        self.last_snapshot: Optional[StateSnapshot] = None
        self.delivered: List[int] = []  # reload versions sent, in order
        self.closed = False
        self._outbox: Deque[Message] = deque()
        self._wakeup = asyncio.Event()
        self._pong = asyncio.Event()
        self._send_lock = asyncio.Lock()

    def enqueue(self, message: Message):
        if isinstance(message, Reload):
            superseded = [m.version for m in self._outbox if isinstance(m, Reload)]
            if superseded:
                logger.debug(f"Client {self.id}: reload {message.version} supersedes {superseded}")
                self._outbox = deque(m for m in self._outbox if not isinstance(m, Reload))
        self._outbox.append(message)
        self._wakeup.set()

    @property
    def pending(self) -> List[Message]:
        return list(self._outbox)

    def _next_deliverable(self) -> Optional[Message]:
        if not self._outbox:
            return None
        head = self._outbox[0]
        if isinstance(head, Reload):
            if not self.ready:
                return None
            if self.awaiting_ack is not None:
                if time.monotonic() < self.ack_deadline:
                    return None
                logger.warning(f"Client {self.id} did not ack reload {self.awaiting_ack} in time")
                self.awaiting_ack = None
        return self._outbox.popleft()

    def _gate_timeout(self) -> Optional[float]:
        if self._outbox and self.ready and self.awaiting_ack is not None:
            return max(self.ack_deadline - time.monotonic(), 0.0)
        return None

    async def send_now(self, message: Message):
        async with self._send_lock:
            await self.websocket.send(encode(message))


class DevServer:
    def __init__(self, host: str = "127.0.0.1", port: int = DEFAULT_WS_PORT,
                 event_bus: Optional[EventBus] = None,
                 heartbeat_interval: float = 30.0, heartbeat_timeout: float = 10.0,
                 ack_timeout: float = 5.0, max_clients: int = 10,
                 protocol_version: int = PROTOCOL_VERSION):
        self.host = host
        self.port = port
        self.event_bus = event_bus
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_timeout = heartbeat_timeout
        self.ack_timeout = ack_timeout
        self.max_clients = max_clients
        self.protocol_version = protocol_version
        self.server_id = uuid.uuid4().hex
        self.clients: Dict[str, ClientSession] = {}
        self._server: Optional[Server] = None
        self._tasks: Dict[str, List[asyncio.Task]] = {}

    @classmethod
    def from_config(cls, config: HotReloadConfig, event_bus: Optional[EventBus] = None) -> "DevServer":
        return cls(
            host=config.ws_host,
            port=config.ws_port,
            event_bus=event_bus,
            heartbeat_interval=config.heartbeat_interval_ms / 1000,
            heartbeat_timeout=config.heartbeat_timeout_ms / 1000,
            ack_timeout=config.ack_timeout_ms / 1000,
            max_clients=config.max_clients,
            protocol_version=config.protocol_version,
        )

    @property
    def running(self) -> bool:
        return self._server is not None

    @property
    def address(self) -> str:
        return f"ws://{self.host}:{self.port}"

    async def start(self):
        """Start listening; port 0 picks a free port"""
        if self._server is not None:
            raise RuntimeError("Dev server already running")
        # Heartbeats are part of the protocol, so library-level pings are off
        self._server = await serve(self._handle_client, self.host, self.port, ping_interval=None)
        sockets = list(self._server.sockets)
        if sockets:
            self.port = sockets[0].getsockname()[1]
        logger.info(f"Hot reload server listening on {self.address}")

    async def stop(self, reason: str = "server shutting down"):
        """Say goodbye to every client, close them, stop listening"""
        if self._server is None:
            return
        sessions = list(self.clients.values())
        await asyncio.gather(*(self._close_session(s, CLOSE_GOING_AWAY, reason) for s in sessions),
                             return_exceptions=True)
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        logger.info("Hot reload server stopped")

    async def broadcast_reload(self, program: Any, state_diff: Optional[StateDiff] = None,
                               diff_for: Optional[Callable[[StateSnapshot], StateDiff]] = None) -> int:
        """Queue a reload for every client; newer reloads supersede queued ones"""
        ir = program.to_dict()
        for session in list(self.clients.values()):
            diff = state_diff
            if diff_for is not None and session.last_snapshot is not None:
                try:
                    diff = diff_for(session.last_snapshot)
                except Exception as e:
                    logger.warning(f"Per-client state diff failed for {session.id}: {e}")
            session.enqueue(Reload(
                version=program.version,
                ir=ir,
                state_diff=diff.to_dict() if diff is not None else {},
            ))
        return len(self.clients)

    async def broadcast_compile_error(self, diagnostics: Sequence[Diagnostic],
                                      overlay: Optional[Dict[str, Any]] = None) -> int:
        message = CompileError(diagnostics=[d.to_dict() for d in diagnostics], overlay=overlay)
        for session in list(self.clients.values()):
            session.enqueue(message)
        return len(self.clients)

    def client_count(self) -> int:
        return len(self.clients)

    async def _publish(self, event: HotReloadEvent):
        if self.event_bus is not None:
            await self.event_bus.publish(event)

    async def _handle_client(self, websocket: ServerConnection):
        """Handle individual client connections"""
        remote = websocket.remote_address
        address = f"{remote[0]}:{remote[1]}" if remote else ""
        if len(self.clients) >= self.max_clients:
            logger.warning(f"Max clients reached, rejecting connection from {address}")
            await websocket.close(CLOSE_TRY_AGAIN_LATER, "too many clients")
            return

        try:
            raw = await asyncio.wait_for(websocket.recv(), timeout=HANDSHAKE_TIMEOUT)
            hello = read_hello(raw, self.protocol_version)
        except ProtocolError as e:
            logger.warning(f"Rejected client {address}: {e}")
            await websocket.close(e.close_code, _close_reason(str(e)))
            return
        except asyncio.TimeoutError:
            logger.warning(f"Client {address} sent no hello within {HANDSHAKE_TIMEOUT}s")
            await websocket.close(CLOSE_PROTOCOL_ERROR, "handshake timeout")
            return
        except ConnectionClosed:
            return

        session = ClientSession(hello.client_id or uuid.uuid4().hex, websocket, address)
        if session.id in self.clients:
            session.id = f"{session.id}-{uuid.uuid4().hex[:8]}"
        self.clients[session.id] = session

        code: Optional[int] = None
        reason = ""
        try:
            await session.send_now(Welcome(
                protocol_version=self.protocol_version,
                server_id=self.server_id,
                client_id=session.id,
            ))
            logger.info(f"Client {session.id} connected from {address}")
            await self._publish(ClientConnected(client_id=session.id, address=address))
            self._tasks[session.id] = [
                asyncio.create_task(self._writer(session)),
                asyncio.create_task(self._heartbeat(session)),
            ]
            async for raw in websocket:
                try:
                    self._process_message(session, decode_client_message(raw))
                except ProtocolError as e:
                    code, reason = e.close_code, str(e)
                    logger.warning(f"Closing client {session.id}: {e}")
                    await websocket.close(code, _close_reason(reason))
                    break
        except ConnectionClosed:
            pass
        finally:
            session.closed = True
            for task in self._tasks.pop(session.id, []):
                task.cancel()
            self.clients.pop(session.id, None)
            if code is None:
                code = websocket.close_code
                reason = websocket.close_reason or reason
            logger.info(f"Client {session.id} disconnected ({code})")
            await self._publish(ClientDisconnected(client_id=session.id, reason=reason, code=code))

    def _process_message(self, session: ClientSession, message: Message):
        """Process incoming messages"""
        if isinstance(message, Ready):
            session.ready = True
            session.capabilities = list(message.capabilities)
            session._wakeup.set()
        elif isinstance(message, Ack):
            if not message.applied:
                logger.warning(f"Client {session.id} failed to apply reload {message.version}: {message.error}")
            session.awaiting_ack = None
            session._wakeup.set()
        elif isinstance(message, Pong):
            session._pong.set()
        elif isinstance(message, StateReport):
            try:
                session.last_snapshot = StateSnapshot.from_dict(message.snapshot)
            except (KeyError, TypeError, AttributeError) as e:
                raise ProtocolError(f"Malformed state_report: {e}") from e
        elif isinstance(message, ClientError):
            logger.warning(f"Client {session.id} reported error: {message.message}")
        else:
            raise ProtocolError(f"Unexpected {message.type} after handshake")

    async def _writer(self, session: ClientSession):
        """Deliver queued messages in order, holding reloads behind the ack gate"""
        try:
            while not session.closed:
                session._wakeup.clear()
                message = session._next_deliverable()
                if message is None:
                    try:
                        await asyncio.wait_for(session._wakeup.wait(), session._gate_timeout())
                    except asyncio.TimeoutError:
                        pass
                    continue
                await session.send_now(message)
                if isinstance(message, Reload):
                    session.awaiting_ack = message.version
                    session.ack_deadline = time.monotonic() + self.ack_timeout
                    session.delivered.append(message.version)
        except ConnectionClosed:
            pass

    async def _heartbeat(self, session: ClientSession):
        try:
            while not session.closed:
                await asyncio.sleep(self.heartbeat_interval)
                session._pong.clear()
                await session.send_now(Ping())
                try:
                    await asyncio.wait_for(session._pong.wait(), self.heartbeat_timeout)
                except asyncio.TimeoutError:
                    logger.warning(f"Client {session.id} missed heartbeat, closing")
                    await session.websocket.close(CLOSE_HEARTBEAT_TIMEOUT, "heartbeat timeout")
                    return
        except ConnectionClosed:
            pass

    async def _close_session(self, session: ClientSession, code: int, reason: str):
        try:
            await session.send_now(Goodbye(reason=reason))
        except ConnectionClosed:
            pass
        await session.websocket.close(code, _close_reason(reason))
