"""
Event and change types shared by the hot reload components.

Everything published on the EventBus is a HotReloadEvent subclass. The
filesystem side produces WatchEvents, which the watcher coalesces into
ChangeBatches before publishing them as FileChanged.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar, Dict, Iterable, Iterator, Optional, Tuple

if TYPE_CHECKING:
    from ..state.state_manager import StateDiff


class WatchEventKind(Enum):
    CREATED = "created"
    MODIFIED = "modified"
    REMOVED = "removed"
    RENAMED = "renamed"


@dataclass(frozen=True)
class WatchEvent:
    path: Path
    kind: WatchEventKind
    timestamp: float = field(default_factory=time.monotonic)


class ChangeBatch:
    """One entry per path, latest kind wins"""

    def __init__(self, events: Iterable[WatchEvent] = ()):
        self._events: Dict[Path, WatchEvent] = {}
        for event in events:
            self._add(event)

    def _add(self, event: WatchEvent):
        # Keep first-seen position, replace with the latest event
        self._events[Path(event.path)] = event

    @classmethod
    def of(cls, paths: Iterable[Path], kind: WatchEventKind = WatchEventKind.MODIFIED) -> "ChangeBatch":
        return cls(WatchEvent(Path(p), kind) for p in paths)

    def merge(self, other: "ChangeBatch") -> "ChangeBatch":
        """Union of paths; for paths in both, the later batch's kind wins"""
        return ChangeBatch(list(self) + list(other))

    @property
    def paths(self) -> Tuple[Path, ...]:
        return tuple(self._events)

    def kind_of(self, path: Path) -> Optional[WatchEventKind]:
        event = self._events.get(Path(path))
        return event.kind if event else None

    def as_dict(self) -> Dict[Path, WatchEventKind]:
        return {path: event.kind for path, event in self._events.items()}

    def __iter__(self) -> Iterator[WatchEvent]:
        return iter(list(self._events.values()))

    def __len__(self) -> int:
        return len(self._events)

    def __contains__(self, path: object) -> bool:
        return Path(path) in self._events if isinstance(path, (str, Path)) else False

    def __bool__(self) -> bool:
        return bool(self._events)

    def __repr__(self) -> str:
        entries = ", ".join(f"{p}: {k.name}" for p, k in self.as_dict().items())
        return f"ChangeBatch({{{entries}}})"


class Severity(Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    HINT = "hint"


@dataclass(frozen=True)
class Diagnostic:
    path: Path
    message: str
    line: int = 0  # 1-indexed, 0 when unknown
    column: int = 0
    end_line: Optional[int] = None
    end_column: Optional[int] = None
    severity: Severity = Severity.ERROR
    code: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.severity is Severity.ERROR

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": str(self.path),
            "message": self.message,
            "line": self.line,
            "column": self.column,
            "end_line": self.end_line,
            "end_column": self.end_column,
            "severity": self.severity.value,
            "code": self.code,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Diagnostic":
        return cls(
            path=Path(data["path"]),
            message=data["message"],
            line=data.get("line", 0),
            column=data.get("column", 0),
            end_line=data.get("end_line"),
            end_column=data.get("end_column"),
            severity=Severity(data.get("severity", "error")),
            code=data.get("code"),
        )


class HotReloadEvent:
    """Base of the events carried on the EventBus"""

    kind: ClassVar[str] = "event"


@dataclass(frozen=True)
class FileChanged(HotReloadEvent):
    kind: ClassVar[str] = "file_changed"
    batch: ChangeBatch


@dataclass(frozen=True)
class CompileStarted(HotReloadEvent):
    kind: ClassVar[str] = "compile_started"
    paths: Tuple[Path, ...]
    trigger: str = "watch"


@dataclass(frozen=True)
class CompileSucceeded(HotReloadEvent):
    kind: ClassVar[str] = "compile_succeeded"
    version: int
    recompiled: Tuple[Path, ...]
    removed: Tuple[Path, ...] = ()
    duration_ms: float = 0.0


@dataclass(frozen=True)
class CompileFailed(HotReloadEvent):
    kind: ClassVar[str] = "compile_failed"
    diagnostics: Tuple[Diagnostic, ...]


@dataclass(frozen=True)
class StateApplied(HotReloadEvent):
    kind: ClassVar[str] = "state_applied"
    diff: "StateDiff"
    failed: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ClientConnected(HotReloadEvent):
    kind: ClassVar[str] = "client_connected"
    client_id: str
    address: str = ""


@dataclass(frozen=True)
class ClientDisconnected(HotReloadEvent):
    kind: ClassVar[str] = "client_disconnected"
    client_id: str
    reason: str = ""
    code: Optional[int] = None
