"""
Pytest configuration and shared fixtures for sqlfluff-lsp tests.

The dispatcher is exercised without a transport: ``FakeInvoker`` stands in
for the sqlfluff process and ``RecordingClient`` captures what would be sent
to the editor.
"""

import asyncio
import json
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import pytest
from lsprotocol import types

from sqlfluff_lsp.analyzer import AnalyzerMode, RawOutput
from sqlfluff_lsp.config import ServerConfig
from sqlfluff_lsp.dispatcher import Dispatcher, ServerContext
from sqlfluff_lsp.translator import split_lines

Response = Union[RawOutput, Exception]


# =============================================================================
# Fakes
# =============================================================================


@dataclass
class InvokerCall:
    """One recorded analyzer invocation."""

    mode: AnalyzerMode
    text: str
    dialect: Optional[str]
    filename: Optional[str]
    config_path: Optional[str]


def default_response(mode: AnalyzerMode, text: str) -> RawOutput:
    """A clean lint run, or a format run that changes nothing."""
    if mode is AnalyzerMode.LINT:
        return RawOutput(stdout=json.dumps([{"filepath": "stdin", "violations": []}]))
    return RawOutput(stdout=text)


class FakeInvoker:
    """
    Scripted analyzer.

    ``respond`` computes the output of each run from its mode and text and
    may return an exception to raise instead. Every run can be slowed down
    with ``delay`` to open race windows.
    """

    def __init__(
        self,
        respond: Optional[Callable[[AnalyzerMode, str], Response]] = None,
        delay: float = 0.0,
    ) -> None:
        self.respond = respond or default_response
        self.delay = delay
        self.calls: list[InvokerCall] = []
        self.cancelled: list[InvokerCall] = []
        self.completed: list[InvokerCall] = []
        self.active = 0
        self.max_active = 0
        self.started = asyncio.Event()

    async def run(
        self,
        mode: AnalyzerMode,
        text: str,
        *,
        dialect: Optional[str],
        filename: Optional[str] = None,
        config_path: Optional[str] = None,
    ) -> RawOutput:
        call = InvokerCall(mode, text, dialect, filename, config_path)
        self.calls.append(call)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.started.set()

        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            result = self.respond(mode, text)
        except asyncio.CancelledError:
            self.cancelled.append(call)
            raise
        finally:
            self.active -= 1

        self.completed.append(call)
        if isinstance(result, Exception):
            raise result
        return result

    def texts(self, mode: AnalyzerMode = AnalyzerMode.LINT) -> list[str]:
        """Texts the analyzer was run on, in order."""
        return [call.text for call in self.calls if call.mode is mode]


@dataclass
class Publication:
    uri: str
    diagnostics: list[types.Diagnostic]
    version: Optional[int]


@dataclass
class RecordingClient:
    """Captures outgoing notifications."""

    published: list[Publication] = field(default_factory=list)
    messages: list[tuple[str, types.MessageType]] = field(default_factory=list)

    def publish_diagnostics(
        self, uri: str, diagnostics: list[types.Diagnostic], version: Optional[int]
    ) -> None:
        self.published.append(Publication(uri, list(diagnostics), version))

    def show_message(self, message: str, message_type: types.MessageType) -> None:
        self.messages.append((message, message_type))

    def for_uri(self, uri: str) -> list[Publication]:
        return [p for p in self.published if p.uri == uri]


# =============================================================================
# Harness
# =============================================================================


@dataclass
class Harness:
    """A dispatcher wired to fakes, with shortcuts for client messages."""

    dispatcher: Dispatcher
    invoker: FakeInvoker
    client: RecordingClient

    @property
    def store(self):
        return self.dispatcher.store

    async def initialize(
        self,
        root_uri: Optional[str] = None,
        options: Optional[dict[str, Any]] = None,
    ) -> None:
        self.dispatcher.initialize(
            types.InitializeParams(
                process_id=None,
                capabilities=types.ClientCapabilities(),
                root_uri=root_uri,
                initialization_options=options,
            )
        )
        await self.dispatcher.initialized(types.InitializedParams())

    def open(self, uri: str, text: str, version: int = 1) -> None:
        self.dispatcher.did_open(
            types.DidOpenTextDocumentParams(
                text_document=types.TextDocumentItem(
                    uri=uri, language_id="sql", version=version, text=text
                )
            )
        )

    def change(self, uri: str, version: int, text: str) -> None:
        """Send a full-text change."""
        self.changes(uri, version, [types.TextDocumentContentChangeWholeDocument(text=text)])

    def changes(
        self, uri: str, version: int, changes: list[types.TextDocumentContentChangeEvent]
    ) -> None:
        self.dispatcher.did_change(
            types.DidChangeTextDocumentParams(
                text_document=types.VersionedTextDocumentIdentifier(uri=uri, version=version),
                content_changes=changes,
            )
        )

    def save(self, uri: str, text: Optional[str] = None) -> None:
        self.dispatcher.did_save(
            types.DidSaveTextDocumentParams(
                text_document=types.TextDocumentIdentifier(uri=uri), text=text
            )
        )

    def close(self, uri: str) -> None:
        self.dispatcher.did_close(
            types.DidCloseTextDocumentParams(text_document=types.TextDocumentIdentifier(uri=uri))
        )

    async def format(self, uri: str) -> Optional[list[types.TextEdit]]:
        return await self.dispatcher.formatting(
            types.DocumentFormattingParams(
                text_document=types.TextDocumentIdentifier(uri=uri),
                options=types.FormattingOptions(tab_size=4, insert_spaces=True),
            )
        )

    async def settle(self) -> None:
        """Wait for every scheduled lint run to finish."""
        await self.dispatcher.scheduler.wait_idle()


@pytest.fixture
def harness_factory():
    """
    Factory fixture for dispatcher harnesses.

    Must be called inside the running event loop of the test.
    """

    def _create(
        invoker: Optional[FakeInvoker] = None,
        *,
        dialect: Optional[str] = "ansi",
        debounce: float = 0.0,
        max_workers: int = 4,
        **config: Any,
    ) -> Harness:
        invoker = invoker or FakeInvoker()
        client = RecordingClient()
        context = ServerContext(
            config=ServerConfig(
                dialect=dialect, debounce=debounce, max_workers=max_workers, **config
            ),
            invoker=invoker,
            client=client,
        )
        return Harness(Dispatcher(context), invoker, client)

    return _create


# =============================================================================
# sqlfluff output builders
# =============================================================================


@pytest.fixture
def violation():
    """Factory fixture for entries of sqlfluff's ``json`` lint format."""

    def _create(
        code: str = "LT01",
        description: str = "Expected only single space.",
        start: tuple[int, int] = (1, 1),
        end: Optional[tuple[int, int]] = None,
    ) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "start_line_no": start[0],
            "start_line_pos": start[1],
            "code": code,
            "description": description,
            "name": "layout.spacing",
            "warning": False,
            "fixes": [],
        }
        if end is not None:
            entry["end_line_no"] = end[0]
            entry["end_line_pos"] = end[1]
        return entry

    return _create


@pytest.fixture
def lint_output():
    """Build the raw output of a ``sqlfluff lint --format=json`` run."""

    def _create(*violations: dict[str, Any], filepath: str = "stdin") -> RawOutput:
        return RawOutput(
            stdout=json.dumps([{"filepath": filepath, "violations": list(violations)}]),
            returncode=1 if violations else 0,
        )

    return _create


# =============================================================================
# Text edits
# =============================================================================


def _offset(lines: list[str], position: types.Position) -> int:
    if position.line >= len(lines):
        return sum(len(line) for line in lines)
    prefix = sum(len(line) for line in lines[: position.line])
    # Test texts are ASCII, so UTF-16 columns equal code point offsets.
    return prefix + position.character


@pytest.fixture
def apply_edits():
    """Apply a batch of non-overlapping text edits, all relative to ``text``."""

    def _apply(text: str, edits: list[types.TextEdit]) -> str:
        lines = split_lines(text, keepends=True)
        spans = sorted(
            ((_offset(lines, e.range.start), _offset(lines, e.range.end), e.new_text) for e in edits),
            reverse=True,
        )
        for start, end, new_text in spans:
            text = text[:start] + new_text + text[end:]
        return text

    return _apply


@pytest.fixture
def fake_invoker():
    """The ``FakeInvoker`` class, for building scripted analyzers."""
    return FakeInvoker
