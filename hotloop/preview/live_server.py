"""
Hot reload runtime.

Owns the watcher, compiler, state manager, dev server and overlay, and runs
the compile -> apply -> broadcast pipeline one batch at a time. Batches that
arrive while a compile is in flight are merged and run right after it.
"""

import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from ..build.incremental_compiler import CompileFn, IncrementalCompiler, ProgramIR
from ..core.config_manager import HotReloadConfig
from ..core.errors import CompileAborted, RuntimeStoppedError
from ..core.event_bus import EventBus, OverflowPolicy, Subscription
from ..core.events import (
    ChangeBatch,
    CompileFailed,
    CompileStarted,
    CompileSucceeded,
    FileChanged,
    HotReloadEvent,
    StateApplied,
    WatchEventKind,
)
from ..monitoring.metrics import ReloadMetrics
from ..state.state_manager import LiveApplication, StateDiff, StateManager, StateSchema, StateSnapshot
from .error_overlay import ErrorOverlay, OverlayModel, read_sources
from .file_watcher import FileWatcher
from .websocket_server import DevServer

logger = logging.getLogger(__name__)


class RuntimeStatus(Enum):
    CREATED = "created"
    IDLE = "idle"
    COMPILING = "compiling"
    BROADCASTING = "broadcasting"
    STOPPED = "stopped"


class HotReloadHandle:
    """Control surface for a running runtime; dead once the runtime stops"""

    def __init__(self, runtime: "HotReloadRuntime"):
        self._runtime = runtime

    def status(self) -> RuntimeStatus:
        return self._runtime.status

    async def reload(self, paths: Optional[Iterable[Path]] = None):
        """Queue a manual reload of `paths`, or of every known source"""
        await self._runtime.request_reload(paths)

    async def stop(self, reason: str = "runtime stopped"):
        await self._runtime.stop(reason)

    async def wait_idle(self, timeout: Optional[float] = None):
        await self._runtime.wait_idle(timeout)

    def capture_state(self) -> StateSnapshot:
        """Snapshot the live application now; kept in the state history"""
        return self._runtime.capture_state()

    def has_errors(self) -> bool:
        return self._runtime.overlay.model.error_count > 0

    @property
    def overlay(self) -> OverlayModel:
        return self._runtime.overlay.model

    @property
    def program(self) -> ProgramIR:
        return self._runtime.compiler.program

    def subscribe(self, name: Optional[str] = None) -> Subscription:
        if self._runtime.status is RuntimeStatus.STOPPED:
            raise RuntimeStoppedError("Runtime is stopped")
        return self._runtime.event_bus.subscribe(name)


class HotReloadRuntime:
    def __init__(self, config: HotReloadConfig, compile_fn: CompileFn,
                 application: Optional[LiveApplication] = None,
                 event_bus: Optional[EventBus] = None):
        self.config = config
        self.application = application
        self.event_bus = event_bus or EventBus(
            maxsize=config.bus_queue_size,
            policy=OverflowPolicy(config.bus_overflow),
        )
        self.watcher = FileWatcher(
            config.watch_roots,
            event_bus=self.event_bus,
            debounce_ms=config.debounce_ms,
            extensions=config.extensions,
            ignore_dirs=config.ignore_dirs,
        )
        self.compiler = IncrementalCompiler(compile_fn)
        self.state_manager = StateManager(enabled=config.state_preservation, max_history=config.state_history)
        self.server = DevServer.from_config(config, self.event_bus)
        self.overlay = ErrorOverlay()
        self.metrics = ReloadMetrics(slow_compile_ms=config.slow_compile_ms)
        self.status = RuntimeStatus.CREATED
        self._schema: Optional[StateSchema] = None
        self._pending: Optional[ChangeBatch] = None
        self._pending_trigger = "watch"
        self._work = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._stopping = False
        self._subscription: Optional[Subscription] = None
        self._tasks: List[asyncio.Task] = []
        self._handle: Optional[HotReloadHandle] = None

    @property
    def handle(self) -> HotReloadHandle:
        if self._handle is None:
            raise RuntimeError("Runtime has not been started")
        return self._handle

    async def start(self) -> HotReloadHandle:
        """Establish the watch, start the server, queue the initial build"""
        if self.status is RuntimeStatus.STOPPED:
            raise RuntimeStoppedError("Runtime cannot be restarted")
        if self.status is not RuntimeStatus.CREATED:
            raise RuntimeError("Runtime already started")
        logging.getLogger("hotloop").setLevel(self.config.log_level)

        await self.watcher.start()
        try:
            await self.server.start()
        except OSError:
            await self.watcher.stop()
            raise

        self._subscription = self.event_bus.subscribe("runtime", policy=OverflowPolicy.BACKPRESSURE)
        self._tasks = [
            asyncio.create_task(self._consume_events()),
            asyncio.create_task(self._pipeline()),
        ]
        self.status = RuntimeStatus.IDLE
        self._handle = HotReloadHandle(self)

        initial = self.watcher.scan()
        if initial:
            self._enqueue(ChangeBatch.of(initial, WatchEventKind.CREATED), trigger="initial")
        logger.info(f"Hot reload runtime started ({len(initial)} source file(s))")
        return self._handle

    async def stop(self, reason: str = "runtime stopped"):
        """Stop watching, finish or abort the compile, close every client"""
        if self.status in (RuntimeStatus.STOPPED, RuntimeStatus.CREATED):
            self.status = RuntimeStatus.STOPPED
            return
        self._stopping = True
        await self.watcher.stop()

        # The pipeline notices _stopping at its next per-file checkpoint
        self._work.set()
        consumer, pipeline = self._tasks
        await asyncio.gather(pipeline, return_exceptions=True)

        await self.server.stop(reason)
        if self._subscription is not None:
            self.event_bus.unsubscribe(self._subscription)
        await asyncio.gather(consumer, return_exceptions=True)
        await self.event_bus.close()
        self._tasks = []
        self.status = RuntimeStatus.STOPPED
        self._idle.set()
        logger.info(f"Hot reload runtime stopped: {reason}")

    async def request_reload(self, paths: Optional[Iterable[Path]] = None):
        if self.status is RuntimeStatus.STOPPED or self._stopping:
            raise RuntimeStoppedError("Runtime is stopped")
        if self.status is RuntimeStatus.CREATED:
            raise RuntimeError("Runtime has not been started")
        if paths is None:
            targets = set(self.compiler.units) | set(self.watcher.scan())
        else:
            targets = {Path(p).resolve() for p in paths}
        if not targets:
            logger.info("Manual reload requested but there are no sources")
            return
        self._enqueue(ChangeBatch.of(sorted(targets), WatchEventKind.MODIFIED), trigger="manual")

    async def wait_idle(self, timeout: Optional[float] = None):
        """Wait until no batch is pending or compiling"""
        await asyncio.wait_for(self._idle.wait(), timeout)

    def _enqueue(self, batch: ChangeBatch, trigger: str = "watch"):
        if self._pending is None:
            self._pending = batch
            self._pending_trigger = trigger
        else:
            self._pending = self._pending.merge(batch)
            if trigger == "manual":
                self._pending_trigger = trigger
            logger.debug(f"Merged into pending batch ({len(self._pending)} path(s))")
        self._idle.clear()
        self._work.set()

    async def _publish(self, event: HotReloadEvent):
        await self.event_bus.publish(event)

    async def _consume_events(self):
        async for event in self._subscription:
            if isinstance(event, FileChanged):
                self._enqueue(event.batch)

    async def _pipeline(self):
        while not self._stopping:
            await self._work.wait()
            self._work.clear()
            if self._stopping:
                break
            batch, trigger = self._pending, self._pending_trigger
            self._pending = None
            if not batch:
                self._idle.set()
                continue
            try:
                await self._run_cycle(batch, trigger)
            except CompileAborted as e:
                self.metrics.increment('compiles_aborted')
                logger.info(f"Compile aborted for shutdown: {e}")
            except Exception:
                logger.exception("Hot reload cycle failed")
            finally:
                if not self._stopping:
                    self.status = RuntimeStatus.IDLE
                if self._pending is None:
                    self._idle.set()

    async def _run_cycle(self, batch: ChangeBatch, trigger: str):
        self.status = RuntimeStatus.COMPILING
        start = self.metrics.time()
        await self._publish(CompileStarted(paths=batch.paths, trigger=trigger))
        logger.info(f"Compiling {len(batch)} changed path(s) ({trigger})")

        result = await self.compiler.compile(batch, should_abort=lambda: self._stopping)
        units = len(result.recompiled) if result.success else len(result.attempted)
        await self.metrics.record_compile(result.duration * 1000, units, result.success)

        if not result.success:
            model = self.overlay.show(result.diagnostics, read_sources(result.diagnostics))
            logger.info(f"Compile failed: {model.title}")
            await self._publish(CompileFailed(diagnostics=result.diagnostics))
            await self.server.broadcast_compile_error(result.diagnostics, model.to_dict())
            return
        if self._stopping:
            return

        self.status = RuntimeStatus.BROADCASTING
        diff = None
        if self.application is not None:
            diff, failed = self._swap_program(result.program)
            await self._publish(StateApplied(diff=diff, failed=failed))
        for warning in result.warnings:
            logger.info(f"{warning.path}:{warning.line}: {warning.message}")
        self.overlay.clear()
        await self._publish(CompileSucceeded(
            version=result.program.version,
            recompiled=result.recompiled,
            removed=result.removed,
            duration_ms=result.duration * 1000,
        ))
        clients = await self.server.broadcast_reload(
            result.program, diff,
            diff_for=self._diff_for if self._schema is not None else None,
        )
        self.metrics.increment('reloads_broadcast')
        self.metrics.record('reload_time_ms', (self.metrics.time() - start) * 1000)
        logger.info(f"Reload v{result.program.version} queued for {clients} client(s)")

    def capture_state(self) -> StateSnapshot:
        if self.application is None:
            raise RuntimeError("No live application attached")
        return self.state_manager.capture(self.application)

    def _swap_program(self, program: ProgramIR) -> Tuple[StateDiff, Tuple[str, ...]]:
        """Capture live state, load the new program, carry state forward

        Host failures here never stop the reload; state falls back to reset.
        """
        snapshot = None
        if self.state_manager.enabled:
            try:
                snapshot = self.capture_state()
            except Exception as e:
                logger.warning(f"State capture failed, state will reset: {e}")
        try:
            schema = self.application.load(program)
        except Exception as e:
            logger.error(f"Live application failed to load v{program.version}: {e}")
            self._schema = None
            return StateDiff(), ()
        self._schema = schema
        try:
            report = self.state_manager.reconcile(self.application, snapshot, schema)
        except Exception as e:
            logger.error(f"Applying state for v{program.version} failed, state resets: {e}")
            nodes = tuple(schema.nodes)
            self.metrics.increment('state_resets', len(nodes))
            return StateDiff(reset=nodes), nodes
        if report.diff.reset:
            self.metrics.increment('state_resets', len(report.diff.reset))
        return report.diff, report.failed

    def _diff_for(self, snapshot: StateSnapshot) -> StateDiff:
        return self.state_manager.compute_diff(snapshot, self._schema)
