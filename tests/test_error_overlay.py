from pathlib import Path

from hotloop.core.events import Diagnostic, Severity
from hotloop.preview.error_overlay import (
    EMPTY_OVERLAY,
    ErrorOverlay,
    SourceSnippet,
    build_overlay,
    read_sources,
)

SOURCE = "\n".join(f"line {n}" for n in range(1, 11))


def test_entry_carries_message_location_and_snippet():
    path = Path("/app/main.oui")
    diagnostic = Diagnostic(path, "unexpected token", line=5, column=3, end_column=7, code="E101")

    model = build_overlay([diagnostic], {path: SOURCE})

    assert model.visible
    assert model.title == "Failed to compile: 1 error"
    entry = model.entries[0]
    assert entry.message == "unexpected token"
    assert entry.location == "/app/main.oui:5:3"
    assert entry.span == (5, 3, None, 7)
    assert [ln.number for ln in entry.snippet.lines] == [3, 4, 5, 6, 7]
    assert entry.snippet.lines[entry.snippet.highlight_index].is_error_line
    assert entry.snippet.highlight_columns == (3, 7)


def test_errors_sort_before_warnings_and_respect_limit():
    path = Path("/app/a.oui")
    diagnostics = [
        Diagnostic(path, "unused import", line=1, severity=Severity.WARNING),
        Diagnostic(path, "first error", line=2),
        Diagnostic(path, "second error", line=3),
    ]

    model = build_overlay(diagnostics, max_errors=2)

    assert [e.message for e in model.entries] == ["first error", "second error"]
    assert model.truncated == 1
    assert model.title == "Failed to compile: 2 errors, 1 warning"


def test_warnings_can_be_hidden():
    path = Path("/app/a.oui")
    model = build_overlay(
        [Diagnostic(path, "shadowed", severity=Severity.WARNING), Diagnostic(path, "broken")],
        show_warnings=False,
    )

    assert [e.message for e in model.entries] == ["broken"]
    assert model.warning_count == 0


def test_snippet_is_clamped_at_file_edges():
    snippet = SourceSnippet.from_source(SOURCE, line=1, column=0)

    assert [ln.number for ln in snippet.lines] == [1, 2, 3]
    assert snippet.highlight_index == 0
    assert snippet.highlight_columns is None


def test_diagnostic_without_line_has_no_snippet():
    path = Path("/app/a.oui")

    entry = build_overlay([Diagnostic(path, "compiler crashed")], {path: SOURCE}).entries[0]

    assert entry.snippet is None
    assert entry.location == "/app/a.oui"


def test_to_dict_is_plain_data():
    path = Path("/app/a.oui")
    data = build_overlay([Diagnostic(path, "bad", line=2, column=1)], {path: SOURCE}).to_dict()

    assert data["error_count"] == 1
    assert data["entries"][0]["file"] == "/app/a.oui"
    assert data["entries"][0]["severity"] == "error"
    assert data["entries"][0]["snippet"]["lines"][0]["content"] == "line 1"


def test_read_sources_skips_unreadable_files(test_dir, write_source):
    present = write_source("a.oui", "text")
    diagnostics = [Diagnostic(present, "x", line=1), Diagnostic(test_dir / "gone.oui", "y", line=1)]

    assert read_sources(diagnostics) == {present: "text"}


def test_overlay_shows_until_cleared():
    overlay = ErrorOverlay(max_errors=1)
    overlay.show([Diagnostic(Path("a.oui"), "one"), Diagnostic(Path("a.oui"), "two")])

    assert overlay.visible
    assert len(overlay.entries) == 1

    overlay.clear()
    assert not overlay.visible
    assert overlay.model is EMPTY_OVERLAY


def test_dismiss_hides_but_keeps_diagnostics():
    overlay = ErrorOverlay()
    overlay.show([Diagnostic(Path("a.oui"), "one")])

    overlay.dismiss()

    assert not overlay.visible
    assert overlay.model.error_count == 1

    overlay.show([Diagnostic(Path("a.oui"), "two")])
    assert overlay.visible


def test_navigation_wraps_around_entries():
    overlay = ErrorOverlay()
    assert overlay.selected is None
    overlay.show([Diagnostic(Path("a.oui"), m) for m in ("one", "two", "three")])

    overlay.previous()
    assert overlay.selected.message == "three"
    overlay.next()
    overlay.next()
    assert overlay.selected.message == "two"
    assert overlay.selected_index == 1
