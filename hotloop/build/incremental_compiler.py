"""
Incremental compiler for hot reload.

Recompiles only the files touched by a change batch plus everything that
transitively depends on them, reusing cached IR for every other unit. A batch
either commits completely or leaves the cache and the active program alone.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Set, Tuple, Union

from ..core.errors import CompileAborted
from ..core.events import ChangeBatch, Diagnostic, Severity, WatchEventKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UnitOutput:
    """What the compile-one-file capability returns for a path"""
    ir: Any
    dependencies: FrozenSet[Path] = frozenset()
    diagnostics: Tuple[Diagnostic, ...] = ()

    @property
    def failed(self) -> bool:
        return any(d.severity is Severity.ERROR for d in self.diagnostics)


CompileFn = Callable[[Path], UnitOutput]


@dataclass(frozen=True)
class CompiledUnit:
    path: Path
    ir: Any
    dependencies: FrozenSet[Path]
    compiled_at: float


@dataclass(frozen=True)
class ProgramIR:
    version: int
    units: Mapping[Path, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "units", MappingProxyType(dict(self.units)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "units": {str(path): ir for path, ir in self.units.items()},
        }


@dataclass(frozen=True)
class CompileSuccess:
    program: ProgramIR
    recompiled: Tuple[Path, ...]
    removed: Tuple[Path, ...] = ()
    warnings: Tuple[Diagnostic, ...] = ()
    duration: float = 0.0
    success: bool = field(default=True, init=False)


@dataclass(frozen=True)
class CompileFailure:
    diagnostics: Tuple[Diagnostic, ...]
    attempted: Tuple[Path, ...] = ()
    duration: float = 0.0
    success: bool = field(default=False, init=False)


CompileResult = Union[CompileSuccess, CompileFailure]


@dataclass
class CacheStats:
    entries: int
    dependency_edges: int
    program_version: int


class IncrementalCompiler:
    def __init__(self, compile_fn: CompileFn):
        self.compile_fn = compile_fn
        self._units: Dict[Path, CompiledUnit] = {}
        # dependency path -> units that read it
        self._dependents: Dict[Path, Set[Path]] = {}
        self._program = ProgramIR(version=0)
        # Paths of batches that did not commit; folded into the next compile
        self._dirty = ChangeBatch()

    @property
    def program(self) -> ProgramIR:
        """The active (last successfully committed) program"""
        return self._program

    @property
    def units(self) -> Mapping[Path, CompiledUnit]:
        return MappingProxyType(self._units)

    def get_unit(self, path: Path) -> Optional[CompiledUnit]:
        return self._units.get(Path(path))

    @property
    def dirty_paths(self) -> Tuple[Path, ...]:
        """Paths still waiting for a successful compile"""
        return self._dirty.paths

    def dependents_of(self, path: Path) -> FrozenSet[Path]:
        return frozenset(self._dependents.get(Path(path), ()))

    def recompile_set(self, batch: ChangeBatch) -> List[Path]:
        """Batch paths plus the transitive closure of their dependents"""
        seeds = list(batch.paths)
        closure: List[Path] = []
        seen: Set[Path] = set()
        queue = deque(seeds)
        while queue:
            path = queue.popleft()
            if path in seen:
                continue
            seen.add(path)
            closure.append(path)
            for dependent in sorted(self._dependents.get(path, ())):
                if dependent not in seen:
                    queue.append(dependent)
        return closure

    async def compile(self, batch: ChangeBatch,
                      should_abort: Optional[Callable[[], bool]] = None) -> CompileResult:
        """Recompile the batch closure; commit only if every file succeeds

        Paths from earlier batches that failed or were aborted are compiled
        again with this one, so a file that compiled cleanly next to a broken
        one is not left on its old IR.
        """
        start = time.monotonic()
        if self._dirty:
            batch = self._dirty.merge(batch)
        self._dirty = batch
        closure = self.recompile_set(batch)
        removed = [p for p in closure if batch.kind_of(p) is WatchEventKind.REMOVED]
        to_compile = [p for p in closure if p not in removed]

        outputs: Dict[Path, UnitOutput] = {}
        failures: List[Diagnostic] = []
        warnings: List[Diagnostic] = []
        for index, path in enumerate(to_compile):
            if should_abort is not None and should_abort():
                raise CompileAborted(to_compile[:index], to_compile[index:])
            output = await self._compile_one(path)
            if output.failed:
                failures.extend(output.diagnostics)
            else:
                warnings.extend(output.diagnostics)
                outputs[path] = output

        duration = time.monotonic() - start
        if failures:
            logger.info(
                f"Compile failed: {len(failures)} diagnostic(s) across "
                f"{len({d.path for d in failures})} file(s); cache left unchanged"
            )
            return CompileFailure(
                diagnostics=tuple(failures),
                attempted=tuple(to_compile),
                duration=duration,
            )

        self._dirty = ChangeBatch()
        self._commit(outputs, removed)
        logger.debug(
            f"Compiled {len(outputs)} file(s), removed {len(removed)}, "
            f"reused {len(self._units) - len(outputs)} in {duration * 1000:.1f}ms"
        )
        return CompileSuccess(
            program=self._program,
            recompiled=tuple(outputs),
            removed=tuple(removed),
            warnings=tuple(warnings),
            duration=duration,
        )

    async def _compile_one(self, path: Path) -> UnitOutput:
        """Run the capability in a worker thread; exceptions become diagnostics"""
        try:
            output = await asyncio.to_thread(self.compile_fn, path)
        except Exception as e:
            logger.debug(f"Compiler raised for {path}: {e}")
            return UnitOutput(ir=None, diagnostics=(
                Diagnostic(path=path, message=str(e) or type(e).__name__, code=type(e).__name__),
            ))
        if not isinstance(output, UnitOutput):
            return UnitOutput(ir=None, diagnostics=(
                Diagnostic(path=path, message=f"Compiler returned {type(output).__name__}, expected UnitOutput"),
            ))
        return output

    def _commit(self, outputs: Dict[Path, UnitOutput], removed: Iterable[Path]):
        now = time.time()
        for path in removed:
            unit = self._units.pop(path, None)
            if unit is not None:
                self._unlink(path, unit.dependencies)
        for path, output in outputs.items():
            old = self._units.get(path)
            if old is not None:
                self._unlink(path, old.dependencies)
            deps = frozenset(Path(d) for d in output.dependencies) - {path}
            self._units[path] = CompiledUnit(path=path, ir=output.ir, dependencies=deps, compiled_at=now)
            for dep in deps:
                self._dependents.setdefault(dep, set()).add(path)

        merged = {path: self._units[path].ir for path in sorted(self._units)}
        self._program = ProgramIR(version=self._program.version + 1, units=merged)

    def _unlink(self, path: Path, dependencies: Iterable[Path]):
        for dep in dependencies:
            dependents = self._dependents.get(dep)
            if dependents is None:
                continue
            dependents.discard(path)
            if not dependents:
                del self._dependents[dep]

    def cache_stats(self) -> CacheStats:
        return CacheStats(
            entries=len(self._units),
            dependency_edges=sum(len(d) for d in self._dependents.values()),
            program_version=self._program.version,
        )

    def clear_cache(self):
        """Drop every cached unit; the next compile must rebuild from scratch"""
        self._units.clear()
        self._dependents.clear()
        self._program = ProgramIR(version=0)
        self._dirty = ChangeBatch()
        logger.debug("Cleared compiler cache")
