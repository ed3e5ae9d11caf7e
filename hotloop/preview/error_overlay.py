import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from ..core.events import Diagnostic, Severity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceLine:
    number: int
    content: str
    is_error_line: bool


@dataclass(frozen=True)
class SourceSnippet:
    lines: Tuple[SourceLine, ...]
    highlight_index: int
    highlight_columns: Optional[Tuple[int, int]] = None

    @classmethod
    def from_source(cls, source: str, line: int, column: int, end_column: Optional[int] = None,
                    context_lines: int = 2) -> "SourceSnippet":
        lines = source.splitlines()
        error_index = max(line - 1, 0)
        start = max(error_index - context_lines, 0)
        end = min(error_index + context_lines + 1, len(lines))
        snippet = tuple(
            SourceLine(number=i + 1, content=lines[i], is_error_line=(i + 1 == line))
            for i in range(start, end)
        )
        columns = None
        if column > 0:
            columns = (column, end_column if end_column and end_column > column else column + 1)
        return cls(lines=snippet, highlight_index=error_index - start, highlight_columns=columns)


@dataclass(frozen=True)
class OverlayEntry:
    message: str
    file: Path
    span: Tuple[int, int, Optional[int], Optional[int]]  # line, column, end_line, end_column
    severity: Severity
    code: Optional[str] = None
    snippet: Optional[SourceSnippet] = None

    @property
    def location(self) -> str:
        line, column = self.span[0], self.span[1]
        if line <= 0:
            return str(self.file)
        return f"{self.file}:{line}:{column}"


@dataclass(frozen=True)
class OverlayModel:
    entries: Tuple[OverlayEntry, ...] = ()
    error_count: int = 0
    warning_count: int = 0
    truncated: int = 0  # entries left out by max_errors

    @property
    def visible(self) -> bool:
        return bool(self.entries)

    @property
    def title(self) -> str:
        if not self.entries:
            return ""
        parts = []
        if self.error_count:
            parts.append(f"{self.error_count} error{'s' if self.error_count != 1 else ''}")
        if self.warning_count:
            parts.append(f"{self.warning_count} warning{'s' if self.warning_count != 1 else ''}")
        return "Failed to compile: " + ", ".join(parts) if self.error_count else ", ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "error_count": self.error_count,
            "warning_count": self.warning_count,
            "truncated": self.truncated,
            "entries": [
                {
                    "message": e.message,
                    "file": str(e.file),
                    "location": e.location,
                    "span": list(e.span),
                    "severity": e.severity.value,
                    "code": e.code,
                    "snippet": None if e.snippet is None else {
                        "lines": [{"number": ln.number, "content": ln.content, "is_error_line": ln.is_error_line}
                                  for ln in e.snippet.lines],
                        "highlight_index": e.snippet.highlight_index,
                        "highlight_columns": e.snippet.highlight_columns,
                    },
                }
                for e in self.entries
            ],
        }


_SEVERITY_ORDER = {Severity.ERROR: 0, Severity.WARNING: 1, Severity.INFO: 2, Severity.HINT: 3}

EMPTY_OVERLAY = OverlayModel()


def build_overlay(diagnostics: Sequence[Diagnostic],
                  sources: Optional[Mapping[Path, str]] = None,
                  max_errors: int = 10,
                  show_warnings: bool = True,
                  context_lines: int = 2) -> OverlayModel:
    """Turn compiler diagnostics into a display model; no I/O"""
    sources = sources or {}
    kept = [d for d in diagnostics if show_warnings or d.severity is Severity.ERROR]
    # Stable sort keeps compiler order within a severity
    kept.sort(key=lambda d: _SEVERITY_ORDER[d.severity])

    entries = []
    for diagnostic in kept[:max_errors]:
        snippet = None
        source = sources.get(Path(diagnostic.path))
        if source is not None and diagnostic.line > 0:
            snippet = SourceSnippet.from_source(
                source, diagnostic.line, diagnostic.column, diagnostic.end_column, context_lines
            )
        entries.append(OverlayEntry(
            message=diagnostic.message,
            file=Path(diagnostic.path),
            span=(diagnostic.line, diagnostic.column, diagnostic.end_line, diagnostic.end_column),
            severity=diagnostic.severity,
            code=diagnostic.code,
            snippet=snippet,
        ))

    return OverlayModel(
        entries=tuple(entries),
        error_count=sum(1 for d in kept if d.severity is Severity.ERROR),
        warning_count=sum(1 for d in kept if d.severity is Severity.WARNING),
        truncated=max(len(kept) - max_errors, 0),
    )


def read_sources(diagnostics: Sequence[Diagnostic]) -> Dict[Path, str]:
    """Best-effort read of the files diagnostics point at"""
    sources: Dict[Path, str] = {}
    for path in {Path(d.path) for d in diagnostics if d.line > 0}:
        try:
            sources[path] = path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            logger.debug(f"No snippet for {path}: {e}")
    return sources


@dataclass
class ErrorOverlay:
    """Holds the current overlay until a successful compile clears it

    Dismissing hides the overlay but keeps its diagnostics; the next failed
    compile shows it again.
    """
    max_errors: int = 10
    show_warnings: bool = True
    context_lines: int = 2
    model: OverlayModel = field(default=EMPTY_OVERLAY)
    dismissed: bool = False
    selected_index: int = 0

    def show(self, diagnostics: Sequence[Diagnostic],
             sources: Optional[Mapping[Path, str]] = None) -> OverlayModel:
        self.model = build_overlay(
            diagnostics, sources,
            max_errors=self.max_errors,
            show_warnings=self.show_warnings,
            context_lines=self.context_lines,
        )
        self.dismissed = False
        self.selected_index = 0
        logger.debug(f"Showing error overlay with {len(self.model.entries)} diagnostic(s)")
        return self.model

    def clear(self):
        self.model = EMPTY_OVERLAY
        self.dismissed = False
        self.selected_index = 0

    def dismiss(self):
        if self.model.visible:
            self.dismissed = True
            logger.debug("Error overlay dismissed")

    @property
    def visible(self) -> bool:
        return self.model.visible and not self.dismissed

    @property
    def entries(self) -> List[OverlayEntry]:
        return list(self.model.entries)

    def next(self):
        if self.model.entries:
            self.selected_index = (self.selected_index + 1) % len(self.model.entries)

    def previous(self):
        if self.model.entries:
            self.selected_index = (self.selected_index - 1) % len(self.model.entries)

    @property
    def selected(self) -> Optional[OverlayEntry]:
        if not self.model.entries:
            return None
        return self.model.entries[self.selected_index]
