import asyncio
import json
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed

from hotloop.build.incremental_compiler import ProgramIR, UnitOutput
from hotloop.core.errors import StateApplyError
from hotloop.core.events import Diagnostic, Severity
from hotloop.preview.protocol import Ping, Pong, decode_server_message, encode
from hotloop.state.state_manager import NodeSchema, NodeState, StateSchema, StateSnapshot


class SourceCompiler:
    """Toy compile-one-file capability over real files.

    Directives, one per line:
        import <file>               dependency on a sibling file
        state <id> <type> <json>    declares a state node and its default
        error: <message>            error diagnostic on that line
        warning: <message>          warning diagnostic on that line
    """

    def __init__(self):
        self.calls: List[Path] = []

    def __call__(self, path: Path) -> UnitOutput:
        self.calls.append(path)
        text = path.read_text()
        dependencies = set()
        diagnostics = []
        state = {}
        for number, raw in enumerate(text.splitlines(), 1):
            line = raw.strip()
            if line.startswith("import "):
                dependencies.add((path.parent / line.split()[1]).resolve())
            elif line.startswith("state "):
                _, node_id, type_tag, default = line.split(" ", 3)
                state[node_id] = [type_tag, json.loads(default)]
            elif line.startswith("error:"):
                diagnostics.append(Diagnostic(path, line[6:].strip(), line=number, column=1))
            elif line.startswith("warning:"):
                diagnostics.append(Diagnostic(path, line[8:].strip(), line=number, column=1,
                                              severity=Severity.WARNING))
        return UnitOutput(
            ir={"file": path.name, "source": text, "state": state},
            dependencies=frozenset(dependencies),
            diagnostics=tuple(diagnostics),
        )


def schema_from_program(program: ProgramIR) -> StateSchema:
    nodes = {}
    for ir in program.units.values():
        for node_id, (type_tag, default) in ir["state"].items():
            nodes[node_id] = NodeSchema(type_tag=type_tag, default=default)
    return StateSchema(nodes=nodes)


class FakeApplication:
    """Live application double: holds state, records loads and applies"""

    def __init__(self, state: Optional[Dict[str, NodeState]] = None,
                 schema_for: Callable[[ProgramIR], StateSchema] = schema_from_program):
        self.state: Dict[str, NodeState] = dict(state or {})
        self.schema_for = schema_for
        self.loaded: List[int] = []
        self.applied: List[StateSnapshot] = []
        self.fail_once: List[str] = []

    def capture(self) -> StateSnapshot:
        return StateSnapshot(nodes=self.state)

    def load(self, program: ProgramIR) -> StateSchema:
        self.loaded.append(program.version)
        return self.schema_for(program)

    def apply(self, snapshot: StateSnapshot) -> None:
        if self.fail_once:
            failed, self.fail_once = self.fail_once, []
            raise StateApplyError("cannot merge nodes", failed)
        self.applied.append(snapshot)
        self.state = dict(snapshot.nodes)


class DevClient:
    """Minimal live client speaking the wire protocol"""

    def __init__(self, websocket: ClientConnection):
        self.websocket = websocket

    async def send(self, message):
        await self.websocket.send(encode(message))

    async def recv(self, timeout: float = 2.0):
        return decode_server_message(await asyncio.wait_for(self.websocket.recv(), timeout))

    async def recv_kind(self, kind, timeout: float = 2.0):
        """Next message of the given class, skipping heartbeats"""
        while True:
            message = await self.recv(timeout)
            if isinstance(message, Ping) and kind is not Ping:
                await self.send(Pong(timestamp=message.timestamp))
                continue
            assert isinstance(message, kind), f"expected {kind.__name__}, got {message!r}"
            return message

    async def nothing_within(self, timeout: float) -> bool:
        try:
            message = await self.recv(timeout)
        except asyncio.TimeoutError:
            return True
        return isinstance(message, Ping)

    async def wait_closed(self, timeout: float = 2.0) -> int:
        try:
            while True:
                await asyncio.wait_for(self.websocket.recv(), timeout)
        except ConnectionClosed:
            pass
        return self.websocket.close_code

    async def close(self):
        await self.websocket.close()


async def eventually(condition, timeout: float = 2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture(scope="function")
def test_dir(tmp_path: Path) -> Path:
    return tmp_path.resolve()


@pytest.fixture
def source_compiler() -> SourceCompiler:
    return SourceCompiler()


@pytest.fixture
def write_source(test_dir: Path) -> Callable[[str, str], Path]:
    def write(name: str, content: str) -> Path:
        path = test_dir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        return path
    return write
