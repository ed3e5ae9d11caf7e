import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from watchfiles import Change, awatch

from ..core.errors import WatchError
from ..core.event_bus import EventBus
from ..core.events import ChangeBatch, FileChanged, WatchEvent, WatchEventKind

logger = logging.getLogger(__name__)

BatchHandler = Callable[[ChangeBatch], Awaitable[None]]

_CHANGE_KINDS = {
    Change.added: WatchEventKind.CREATED,
    Change.modified: WatchEventKind.MODIFIED,
    Change.deleted: WatchEventKind.REMOVED,
}

# How long watchfiles groups raw notifications before handing them over;
# the quiescence window itself is enforced by ChangeDebouncer
_RAW_STEP_MS = 10
_RAW_DEBOUNCE_MS = 50


class ChangeDebouncer:
    """Coalesces events and flushes one batch per quiescence window"""

    def __init__(self, debounce_ms: int, on_flush: BatchHandler):
        self.window = debounce_ms / 1000
        self.on_flush = on_flush
        self._pending: Dict[Path, WatchEvent] = {}
        self._last_event = 0.0
        self._wakeup = asyncio.Event()

    @property
    def pending(self) -> ChangeBatch:
        return ChangeBatch(self._pending.values())

    def push(self, event: WatchEvent):
        """Add an event to the open window, extending it"""
        self._pending[Path(event.path)] = event
        self._last_event = asyncio.get_running_loop().time()
        self._wakeup.set()

    def discard(self):
        self._pending.clear()
        self._wakeup.clear()

    async def run(self):
        loop = asyncio.get_running_loop()
        while True:
            await self._wakeup.wait()
            while True:
                remaining = self._last_event + self.window - loop.time()
                if remaining <= 0:
                    break
                await asyncio.sleep(remaining)
            self._wakeup.clear()
            batch = ChangeBatch(self._pending.values())
            self._pending = {}
            if not batch:
                continue
            logger.debug(f"Flushing {batch}")
            try:
                await self.on_flush(batch)
            except Exception as e:
                logger.error(f"Error handling change batch: {e}")


class FileWatcher:
    def __init__(self, roots: Iterable[Path] = (), event_bus: Optional[EventBus] = None,
                 debounce_ms: int = 150,
                 extensions: Sequence[str] = ("oui",),
                 ignore_dirs: Sequence[str] = ("target", "node_modules", ".git", ".oxide", "__pycache__"),
                 on_batch: Optional[BatchHandler] = None):
        self.watched_paths: List[Path] = [Path(r) for r in roots]
        self.event_bus = event_bus
        self.extensions = {e.lstrip(".") for e in extensions}
        self.ignore_dirs = set(ignore_dirs)
        self.on_batch = on_batch
        self.debouncer = ChangeDebouncer(debounce_ms, self._flush)
        self.batches_emitted = 0
        self._stop_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    def add_path(self, path: str):
        """Add a path to watch; takes effect on the next start()"""
        self.watched_paths.append(Path(path))

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self):
        """Start watching; an unwatchable root raises WatchError"""
        if self._tasks:
            raise RuntimeError("File watcher already running")
        if not self.watched_paths:
            raise WatchError(Path("."), "no watch roots configured")
        for root in self.watched_paths:
            if not root.exists():
                raise WatchError(root, "path does not exist")
            if not (root.is_dir() or root.is_file()):
                raise WatchError(root, "not a file or directory")
        self._stop_event = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self._watch_loop()),
            asyncio.create_task(self.debouncer.run()),
        ]
        logger.info(f"Watching {len(self.watched_paths)} path(s): "
                    f"{', '.join(str(p) for p in self.watched_paths)}")

    async def stop(self):
        """Stop watching for changes and drop anything not yet flushed"""
        self._stop_event.set()
        self.debouncer.discard()
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if tasks:
            logger.info("File watcher stopped")

    def _relative_parts(self, path: Path) -> Tuple[str, ...]:
        # Only components below the watch root count; the root's own
        # ancestors may be named like an ignored directory
        for root in self.watched_paths:
            for base in (root, root.resolve()):
                try:
                    return path.relative_to(base).parts
                except ValueError:
                    continue
        return path.parts

    def should_ignore(self, path: Path) -> bool:
        if any(part in self.ignore_dirs for part in self._relative_parts(path)):
            return True
        # Editor swap and temporary files
        if path.name.startswith('.') or path.name.endswith('~'):
            return True
        if self.extensions and path.suffix.lstrip('.') not in self.extensions:
            return True
        return False

    def scan(self) -> List[Path]:
        """Every existing file under the roots that passes the filters"""
        found: Set[Path] = set()
        for root in self.watched_paths:
            candidates = [root] if root.is_file() else root.rglob('*')
            for path in candidates:
                if path.is_file() and not self.should_ignore(path):
                    found.add(path.resolve())
        return sorted(found)

    def _watch_filter(self, change: Change, path: str) -> bool:
        return not self.should_ignore(Path(path))

    async def _watch_loop(self):
        while not self._stop_event.is_set():
            try:
                async for changes in awatch(
                    *self.watched_paths,
                    watch_filter=self._watch_filter,
                    stop_event=self._stop_event,
                    debounce=_RAW_DEBOUNCE_MS,
                    step=_RAW_STEP_MS,
                    recursive=True,
                ):
                    self._handle_changes(changes)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if self._stop_event.is_set():
                    return
                logger.error(f"Error in file watcher, restarting: {e}")
                await asyncio.sleep(0.5)

    def _handle_changes(self, changes: Set[Tuple[Change, str]]):
        # A raw group is an unordered set; settle each path's kind from the
        # kinds seen plus whether the file exists now
        grouped: Dict[Path, Set[WatchEventKind]] = {}
        for change, raw_path in changes:
            kind = _CHANGE_KINDS.get(change)
            if kind is not None:
                grouped.setdefault(Path(raw_path), set()).add(kind)
        for path, kinds in sorted(grouped.items()):
            try:
                exists = path.exists()
                if WatchEventKind.REMOVED in kinds and not exists:
                    kind = WatchEventKind.REMOVED
                elif WatchEventKind.CREATED in kinds:
                    kind = WatchEventKind.CREATED
                else:
                    kind = WatchEventKind.MODIFIED
                self.debouncer.push(WatchEvent(path.resolve(), kind))
            except OSError as e:
                logger.warning(f"Skipping notification for {path}: {e}")

    async def _flush(self, batch: ChangeBatch):
        self.batches_emitted += 1
        if self.event_bus is not None:
            await self.event_bus.publish(FileChanged(batch=batch))
        if self.on_batch is not None:
            await self.on_batch(batch)
