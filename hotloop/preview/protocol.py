"""
Wire protocol between the dev server and live client instances.

Every frame is a JSON object tagged by "type". The client opens with
"hello" carrying its protocol version; nothing else is exchanged unless the
version matches PROTOCOL_VERSION.
"""

import dataclasses
import json
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, ClassVar, Dict, List, Optional, Type

from ..core.config_manager import PROTOCOL_VERSION
from ..core.errors import ProtocolError

# Close codes
CLOSE_GOING_AWAY = 1001
CLOSE_PROTOCOL_ERROR = 1002
CLOSE_TRY_AGAIN_LATER = 1013
CLOSE_VERSION_MISMATCH = 4001
CLOSE_HEARTBEAT_TIMEOUT = 4002


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Message:
    type: ClassVar[str] = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, **{f.name: getattr(self, f.name) for f in dataclasses.fields(self)}}


# Server -> client

@dataclass
class Welcome(Message):
    type: ClassVar[str] = "welcome"
    protocol_version: int
    server_id: str
    client_id: str


@dataclass
class Reload(Message):
    type: ClassVar[str] = "reload"
    version: int
    ir: Dict[str, Any]
    state_diff: Dict[str, Any]


@dataclass
class CompileError(Message):
    type: ClassVar[str] = "compile_error"
    diagnostics: List[Dict[str, Any]]
    overlay: Optional[Dict[str, Any]] = None


@dataclass
class Ping(Message):
    type: ClassVar[str] = "ping"
    timestamp: int = field(default_factory=_now_ms)


@dataclass
class Goodbye(Message):
    type: ClassVar[str] = "goodbye"
    reason: str


# Client -> server

@dataclass
class Hello(Message):
    type: ClassVar[str] = "hello"
    protocol_version: int
    client_id: Optional[str] = None


@dataclass
class Ready(Message):
    type: ClassVar[str] = "ready"
    capabilities: List[str] = field(default_factory=list)


@dataclass
class Ack(Message):
    type: ClassVar[str] = "ack"
    applied: bool
    version: Optional[int] = None
    error: Optional[str] = None


@dataclass
class Pong(Message):
    type: ClassVar[str] = "pong"
    timestamp: int = 0


@dataclass
class StateReport(Message):
    type: ClassVar[str] = "state_report"
    snapshot: Dict[str, Any]


@dataclass
class ClientError(Message):
    type: ClassVar[str] = "client_error"
    message: str
    stack: Optional[str] = None


SERVER_MESSAGES: Dict[str, Type[Message]] = {
    cls.type: cls for cls in (Welcome, Reload, CompileError, Ping, Goodbye)
}
CLIENT_MESSAGES: Dict[str, Type[Message]] = {
    cls.type: cls for cls in (Hello, Ready, Ack, Pong, StateReport, ClientError)
}


def _json_default(value: Any) -> Any:
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, MappingProxyType):
        return dict(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode(message: Message) -> str:
    return json.dumps(message.to_dict(), default=_json_default)


def _decode(text: Any, registry: Dict[str, Type[Message]]) -> Message:
    if isinstance(text, bytes):
        try:
            text = text.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Frame is not UTF-8: {e}") from e
    try:
        data = json.loads(text)
    except (TypeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"Invalid JSON frame: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError("Frame must be a JSON object")
    kind = data.pop("type", None)
    cls = registry.get(kind) if isinstance(kind, str) else None
    if cls is None:
        raise ProtocolError(f"Unknown message type: {kind!r}")
    names = {f.name for f in dataclasses.fields(cls)}
    try:
        return cls(**{k: v for k, v in data.items() if k in names})
    except TypeError as e:
        raise ProtocolError(f"Malformed {kind} message: {e}") from e


def decode_client_message(text: Any) -> Message:
    return _decode(text, CLIENT_MESSAGES)


def decode_server_message(text: Any) -> Message:
    return _decode(text, SERVER_MESSAGES)


def check_version(message: Message, expected: int = PROTOCOL_VERSION) -> Hello:
    """Validate the opening frame of a connection"""
    if not isinstance(message, Hello):
        raise ProtocolError(
            f"Expected hello with protocol_version, got {message.type}",
            close_code=CLOSE_VERSION_MISMATCH,
        )
    if message.protocol_version != expected:
        raise ProtocolError(
            f"Protocol version mismatch: server {expected}, client {message.protocol_version}",
            close_code=CLOSE_VERSION_MISMATCH,
        )
    return message


def read_hello(text: Any, expected: int = PROTOCOL_VERSION) -> Hello:
    """Decode and validate the opening frame; any failure closes as a version mismatch"""
    try:
        message = decode_client_message(text)
    except ProtocolError as e:
        raise ProtocolError(f"Invalid hello: {e}", close_code=CLOSE_VERSION_MISMATCH) from e
    return check_version(message, expected)
