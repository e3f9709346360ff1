"""
Translation of raw sqlfluff output into LSP diagnostics and text edits.

Lint output is accepted in any of sqlfluff's machine-readable formats; the
format is recognized from the output itself:

- ``json``: a list of files, each with a ``violations`` list
- ``github-annotation``: a JSON list of annotations
- ``github-annotation-native``: ``::warning ...::message`` lines, grouped per
  file between ``::group::`` and ``::endgroup::``; nothing at all for a clean file

Format output is the fixed SQL, turned into minimal line-level edits.

A broken analyzer output never raises: it degrades to a single diagnostic at
the start of the document.
"""

from __future__ import annotations

import difflib
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from lsprotocol import types

from sqlfluff_lsp.analyzer import AnalyzerMode, RawOutput

logger = logging.getLogger("sqlfluff-lsp.translator")

DIAGNOSTIC_SOURCE = "sqlfluff"
SERVER_SOURCE = "sqlfluff-lsp"
UNPARSEABLE_MESSAGE = "analyzer output unparseable"
NATIVE_ANNOTATION_FORMAT = "github-annotation-native"

# Rule codes sqlfluff uses for files it could not parse or template.
_ERROR_CODES = frozenset({"PRS", "TMP"})

_ANNOTATION_SEVERITIES = {
    "failure": types.DiagnosticSeverity.Error,
    "error": types.DiagnosticSeverity.Error,
    "warning": types.DiagnosticSeverity.Warning,
    "notice": types.DiagnosticSeverity.Information,
}

_CODE_PREFIX = re.compile(r"^(?P<code>[A-Z]+[0-9]*):\s*(?P<message>.*)$", re.DOTALL)
_NATIVE_ANNOTATION = re.compile(r"^::(?P<level>\w+)\s+(?P<properties>.*?)::(?P<message>.*)$")
_NATIVE_GROUP = re.compile(r"^::(?:group::.*|endgroup::)$")
_LINE = re.compile(r"[^\r\n]*(?:\r\n|\r|\n)|[^\r\n]+")


class UnparseableOutput(ValueError):
    """Raised internally when analyzer output does not match any known shape."""

    pass


@dataclass
class Translation:
    """
    Result of translating one analyzer run.

    Attributes:
        diagnostics: Diagnostics for lint runs, or the synthetic unparseable one
        edits: Text edits for format runs
        unparseable: Whether the output could not be understood
    """

    diagnostics: list[types.Diagnostic] = field(default_factory=list)
    edits: list[types.TextEdit] = field(default_factory=list)
    unparseable: bool = False


def translate(raw: RawOutput, mode: AnalyzerMode, text: str) -> Translation:
    """
    Translate the output of one analyzer run.

    Args:
        raw: Captured analyzer output
        mode: Whether the run was a lint or a format run
        text: The snapshot text the analyzer was run on

    Returns:
        Diagnostics (lint) or edits (format); on unparseable output, no results
        and a single diagnostic at the start of the document
    """
    try:
        if mode is AnalyzerMode.LINT:
            return Translation(
                diagnostics=parse_lint_output(raw.stdout, text, output_format=raw.output_format)
            )
        return Translation(edits=compute_edits(text, parse_format_output(raw.stdout, text)))
    except UnparseableOutput as e:
        logger.warning(f"Could not parse sqlfluff {mode.value} output: {e}")
        return Translation(
            diagnostics=[error_diagnostic(UNPARSEABLE_MESSAGE)],
            unparseable=True,
        )


def error_diagnostic(message: str) -> types.Diagnostic:
    """Build an error diagnostic anchored at the start of the document."""
    return types.Diagnostic(
        range=types.Range(
            start=types.Position(line=0, character=0),
            end=types.Position(line=0, character=0),
        ),
        message=message,
        severity=types.DiagnosticSeverity.Error,
        source=SERVER_SOURCE,
    )


# =============================================================================
# Lint output
# =============================================================================


def parse_lint_output(
    stdout: str, text: str, output_format: Optional[str] = None
) -> list[types.Diagnostic]:
    """
    Parse lint output in any supported format.

    Args:
        stdout: Output of ``sqlfluff lint``
        text: The linted text
        output_format: The ``--format`` the output was requested in, if known

    Raises:
        UnparseableOutput: If the output matches no known format
    """
    content = stdout.strip()
    if not content:
        if output_format == NATIVE_ANNOTATION_FORMAT:
            return []
        raise UnparseableOutput("empty output")

    if content.startswith("::"):
        return _parse_native_annotations(content, text)

    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise UnparseableOutput(f"invalid JSON: {e}") from e

    if not isinstance(data, list):
        raise UnparseableOutput(f"expected a list, got {type(data).__name__}")

    lines = split_lines(text)
    try:
        if all(isinstance(item, dict) and "violations" in item for item in data):
            return [
                _violation_diagnostic(violation, lines)
                for file_result in data
                for violation in file_result["violations"]
            ]
        return [_annotation_diagnostic(annotation, lines) for annotation in data]
    except (KeyError, TypeError, ValueError) as e:
        raise UnparseableOutput(f"unexpected entry: {e!r}") from e


def _violation_diagnostic(violation: dict[str, Any], lines: list[str]) -> types.Diagnostic:
    """Convert one entry of sqlfluff's ``json`` format."""
    code = violation.get("code")
    severity = types.DiagnosticSeverity.Warning
    if code in _ERROR_CODES:
        severity = types.DiagnosticSeverity.Error

    return _make_diagnostic(
        lines,
        start_line=int(violation["start_line_no"]),
        start_column=int(violation["start_line_pos"]),
        end_line=_optional_int(violation.get("end_line_no")),
        end_column=_optional_int(violation.get("end_line_pos")),
        message=str(violation["description"]),
        severity=severity,
        code=code,
    )


def _annotation_diagnostic(annotation: dict[str, Any], lines: list[str]) -> types.Diagnostic:
    """Convert one entry of sqlfluff's ``github-annotation`` format."""
    code, message = _split_code(str(annotation["message"]))
    level = str(annotation.get("annotation_level", "warning")).lower()

    return _make_diagnostic(
        lines,
        start_line=int(annotation["start_line"]),
        start_column=int(annotation["start_column"]),
        end_line=_optional_int(annotation.get("end_line")),
        end_column=_optional_int(annotation.get("end_column")),
        message=message,
        severity=_ANNOTATION_SEVERITIES.get(level, types.DiagnosticSeverity.Warning),
        code=code,
    )


def _parse_native_annotations(content: str, text: str) -> list[types.Diagnostic]:
    """Parse sqlfluff's ``github-annotation-native`` lines."""
    lines = split_lines(text)
    diagnostics: list[types.Diagnostic] = []

    for output_line in content.splitlines():
        output_line = output_line.strip()
        if not output_line or _NATIVE_GROUP.match(output_line):
            continue
        match = _NATIVE_ANNOTATION.match(output_line)
        if match is None:
            raise UnparseableOutput(f"unexpected line: {output_line!r}")

        properties = dict(
            item.split("=", 1) for item in match.group("properties").split(",") if "=" in item
        )
        code, message = _split_code(match.group("message"))
        level = match.group("level").lower()

        try:
            diagnostics.append(
                _make_diagnostic(
                    lines,
                    start_line=int(properties["line"]),
                    start_column=int(properties["col"]),
                    end_line=_optional_int(properties.get("endLine")),
                    end_column=_optional_int(properties.get("endColumn")),
                    message=message,
                    severity=_ANNOTATION_SEVERITIES.get(level, types.DiagnosticSeverity.Warning),
                    code=code,
                )
            )
        except (KeyError, ValueError) as e:
            raise UnparseableOutput(f"unexpected line: {output_line!r}") from e

    return diagnostics


def _make_diagnostic(
    lines: list[str],
    *,
    start_line: int,
    start_column: int,
    end_line: Optional[int],
    end_column: Optional[int],
    message: str,
    severity: types.DiagnosticSeverity,
    code: Optional[str],
) -> types.Diagnostic:
    """Build a diagnostic from 1-based sqlfluff line/column numbers."""
    start = _to_position(lines, start_line, start_column)

    if end_line is None or end_column is None:
        character = start.character + 1
        if start.line < len(lines):
            character = min(character, utf16_length(lines[start.line]))
        end = types.Position(line=start.line, character=character)
    else:
        end = _to_position(lines, end_line, end_column)

    if (end.line, end.character) < (start.line, start.character):
        end = start

    return types.Diagnostic(
        range=types.Range(start=start, end=end),
        message=message,
        severity=severity,
        source=DIAGNOSTIC_SOURCE,
        code=code,
    )


def _to_position(lines: list[str], line: int, column: int) -> types.Position:
    """Convert a 1-based line and code-point column to a clamped LSP position."""
    line_index = max(0, line - 1)
    column_index = max(0, column - 1)

    if line_index >= len(lines):
        if not lines:
            return types.Position(line=0, character=0)
        line_index = len(lines) - 1
        column_index = len(lines[line_index])

    line_text = lines[line_index]
    return types.Position(
        line=line_index,
        character=utf16_length(line_text[: min(column_index, len(line_text))]),
    )


def _split_code(message: str) -> tuple[Optional[str], str]:
    """Split ``"LT01: Message"`` into ``("LT01", "Message")``."""
    match = _CODE_PREFIX.match(message.strip())
    if match is None:
        return None, message.strip()
    return match.group("code"), match.group("message")


def _optional_int(value: Any) -> Optional[int]:
    return None if value is None else int(value)


def utf16_length(text: str) -> int:
    """Length of ``text`` in UTF-16 code units, the unit of LSP columns."""
    return len(text.encode("utf-16-le")) // 2


def split_lines(text: str, keepends: bool = False) -> list[str]:
    """Split on the line terminators LSP recognizes (\\n, \\r\\n and \\r) only."""
    lines = _LINE.findall(text)
    if keepends:
        return lines
    return [line.rstrip("\r\n") for line in lines]


# =============================================================================
# Format output
# =============================================================================


def parse_format_output(stdout: str, text: str) -> str:
    """
    Return the formatted text produced by ``sqlfluff fix``.

    Raises:
        UnparseableOutput: If sqlfluff printed nothing for a non-blank document
    """
    if not stdout.strip() and text.strip():
        raise UnparseableOutput("no formatted text for a non-empty document")
    return stdout


def compute_edits(original: str, formatted: str) -> list[types.TextEdit]:
    """
    Compute line-level edits turning ``original`` into ``formatted``.

    Every edit is expressed against the original text and the edits do not
    overlap, so a client can apply them as one batch.

    Args:
        original: The document text
        formatted: The text sqlfluff produced

    Returns:
        The edits, empty when both texts are identical
    """
    if original == formatted:
        return []

    old_lines = split_lines(original, keepends=True)
    new_lines = split_lines(formatted, keepends=True)
    matcher = difflib.SequenceMatcher(a=old_lines, b=new_lines, autojunk=False)

    edits: list[types.TextEdit] = []
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            continue
        edits.append(
            types.TextEdit(
                range=types.Range(
                    start=_line_start(old_lines, i1),
                    end=_line_start(old_lines, i2),
                ),
                new_text="".join(new_lines[j1:j2]),
            )
        )
    return edits


def _line_start(lines: list[str], index: int) -> types.Position:
    """Position of the start of line ``index``, or the end of the document."""
    if index < len(lines):
        return types.Position(line=index, character=0)
    if not lines:
        return types.Position(line=0, character=0)

    last = lines[-1]
    if last.endswith(("\n", "\r")):
        return types.Position(line=len(lines), character=0)
    return types.Position(line=len(lines) - 1, character=utf16_length(last))
