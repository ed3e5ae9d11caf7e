from pathlib import Path
from typing import Iterable, List, Optional, Sequence


class HotReloadError(Exception):
    """Base class for hot reload failures"""


class ConfigError(HotReloadError, ValueError):
    """Invalid hot reload configuration"""


class WatchError(HotReloadError):
    """A filesystem watch could not be established on a root"""

    def __init__(self, path: Path, reason: str):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"Failed to watch path {self.path}: {reason}")


class CompileAborted(HotReloadError):
    """Compile stopped at a per-file checkpoint; nothing was committed"""

    def __init__(self, completed: Sequence[Path], remaining: Sequence[Path]):
        self.completed = list(completed)
        self.remaining = list(remaining)
        super().__init__(
            f"Compile aborted after {len(self.completed)} file(s), "
            f"{len(self.remaining)} not compiled"
        )


class ProtocolError(HotReloadError):
    """Version mismatch or malformed message on a client connection"""

    def __init__(self, message: str, close_code: int = 1002):
        self.close_code = close_code
        super().__init__(message)


class StateApplyError(HotReloadError):
    """The live application could not merge part of a snapshot"""

    def __init__(self, message: str, node_ids: Optional[Iterable[str]] = None):
        self.node_ids: List[str] = list(node_ids or [])
        super().__init__(message)


class RuntimeStoppedError(HotReloadError):
    """Operation on a runtime (or its handle) after it stopped"""
