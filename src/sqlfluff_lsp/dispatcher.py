"""
Protocol engine of the sqlfluff language server.

The ``Dispatcher`` implements every LSP method the server handles on top of
an explicit ``ServerContext``. It does not know about the JSON-RPC transport:
the pygls server in ``sqlfluff_lsp.server`` routes messages to it and
implements ``LanguageClient`` for the outgoing notifications. Tests drive it
directly with a fake analyzer and a recording client.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Optional, Protocol

from lsprotocol import types

from sqlfluff_lsp.analyzer import AnalyzerInvoker, AnalyzerMode
from sqlfluff_lsp.config import ServerConfig, resolve_dialect, uri_to_path
from sqlfluff_lsp.documents import DocumentStore, Snapshot
from sqlfluff_lsp.errors import (
    AlreadyOpen,
    AnalyzerError,
    BinaryNotFound,
    ContentModified,
    DocumentStateError,
    InvalidRequest,
    RequestFailed,
    ServerNotInitialized,
    UnknownDocument,
)
from sqlfluff_lsp.scheduler import LintScheduler
from sqlfluff_lsp.translator import UNPARSEABLE_MESSAGE, error_diagnostic, translate

logger = logging.getLogger("sqlfluff-lsp.dispatcher")

NO_DIALECT_MESSAGE = (
    "No SQL dialect configured. Set 'dialect' in a .sqlfluff file, "
    "pass --dialect to the server or set the 'dialect' initialization option."
)


class ServerState(Enum):
    """Lifecycle of a connection."""

    UNINITIALIZED = auto()
    INITIALIZING = auto()
    INITIALIZED = auto()
    SHUTTING_DOWN = auto()
    EXITED = auto()


class LanguageClient(Protocol):
    """Outgoing notifications the dispatcher sends to the editor."""

    def publish_diagnostics(
        self, uri: str, diagnostics: list[types.Diagnostic], version: Optional[int]
    ) -> None: ...

    def show_message(self, message: str, message_type: types.MessageType) -> None: ...


@dataclass
class ServerContext:
    """
    Process-wide state shared by every handler.

    Attributes:
        config: Server configuration, updated by the client's initialization options
        store: Open documents
        invoker: Runs the external analyzer
        client: Sends notifications to the editor
        workspace_root: Root folder of the workspace, once known
    """

    config: ServerConfig
    invoker: AnalyzerInvoker
    client: LanguageClient
    store: DocumentStore = field(default_factory=DocumentStore)
    workspace_root: Optional[Path] = None


class Dispatcher:
    """
    Routes LSP requests and notifications to the document store, the lint
    scheduler and the analyzer.

    Notification handlers never raise: document state errors are logged and
    ignored. Request handlers raise ``ProtocolError`` subclasses, which the
    transport turns into JSON-RPC error responses.
    """

    def __init__(self, context: ServerContext) -> None:
        self.context = context
        self.state = ServerState.UNINITIALIZED
        self._reported_missing_binary = False
        self.scheduler = LintScheduler(
            context.store,
            self._lint,
            self._publish,
            debounce=context.config.debounce,
            max_workers=context.config.max_workers,
        )

    @property
    def store(self) -> DocumentStore:
        return self.context.store

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def initialize(self, params: types.InitializeParams) -> None:
        """Handle the ``initialize`` request."""
        if self.state is not ServerState.UNINITIALIZED:
            raise InvalidRequest("Server is already initialized.")

        self.context.workspace_root = _workspace_root(params)
        self.context.config = self.context.config.with_options(params.initialization_options)
        self.state = ServerState.INITIALIZING

        client = params.client_info.name if params.client_info else "unknown client"
        logger.info(f"Initializing for {client}, workspace {self.context.workspace_root}")

    async def initialized(self, params: types.InitializedParams) -> None:  # noqa: ARG002
        """Handle the ``initialized`` notification."""
        if self.state is not ServerState.INITIALIZING:
            logger.warning(f"Ignoring 'initialized' in state {self.state.name}")
            return

        self.state = ServerState.INITIALIZED

        dialect = await asyncio.to_thread(
            resolve_dialect,
            self.context.config.dialect,
            None,
            self.context.workspace_root,
        )
        if dialect is None:
            logger.warning(NO_DIALECT_MESSAGE)
            self.context.client.show_message(NO_DIALECT_MESSAGE, types.MessageType.Warning)
        else:
            logger.info(f"Default SQL dialect: {dialect}")

    def shutdown(self) -> None:
        """Handle the ``shutdown`` request."""
        self._require_ready()
        logger.info("Shutting down")
        self.state = ServerState.SHUTTING_DOWN
        self.scheduler.cancel_all()

    def exit(self) -> int:
        """Move to the final state and return the process exit code."""
        code = 0 if self.state is ServerState.SHUTTING_DOWN else 1
        self.state = ServerState.EXITED
        return code

    def _require_ready(self) -> None:
        """Reject requests that are illegal in the current state."""
        if self.state is ServerState.UNINITIALIZED:
            raise ServerNotInitialized()
        if self.state in (ServerState.SHUTTING_DOWN, ServerState.EXITED):
            raise InvalidRequest("Server is shutting down.")

    def _accepts_notifications(self, method: str) -> bool:
        if self.state in (ServerState.INITIALIZING, ServerState.INITIALIZED):
            return True
        logger.warning(f"Dropping '{method}' in state {self.state.name}")
        return False

    # =========================================================================
    # Document Synchronization
    # =========================================================================

    def did_open(self, params: types.DidOpenTextDocumentParams) -> None:
        """Handle document open notification."""
        if not self._accepts_notifications(types.TEXT_DOCUMENT_DID_OPEN):
            return

        document = params.text_document
        logger.info(f"Document opened: {document.uri}")

        try:
            self.store.open(
                document.uri,
                document.text,
                dialect=self.context.config.dialect,
                client_version=document.version,
            )
        except AlreadyOpen as e:
            logger.warning(f"{e.message}; resetting it")
            self.scheduler.cancel(document.uri)
            self.store.reopen(
                document.uri,
                document.text,
                dialect=self.context.config.dialect,
                client_version=document.version,
            )

        self.scheduler.schedule(document.uri)

    def did_change(self, params: types.DidChangeTextDocumentParams) -> None:
        """Handle document change notification."""
        if not self._accepts_notifications(types.TEXT_DOCUMENT_DID_CHANGE):
            return

        uri = params.text_document.uri
        try:
            version = self.store.change(
                uri, params.content_changes, client_version=params.text_document.version
            )
        except DocumentStateError as e:
            logger.warning(e.message)
            return

        logger.debug(f"Document changed: {uri} (version {version})")
        self.scheduler.schedule(uri)

    def did_save(self, params: types.DidSaveTextDocumentParams) -> None:
        """Handle document save notification; lints right away."""
        if not self._accepts_notifications(types.TEXT_DOCUMENT_DID_SAVE):
            return

        uri = params.text_document.uri
        logger.info(f"Document saved: {uri}")

        try:
            snapshot = self.store.get_snapshot(uri)
            if params.text is not None and params.text != snapshot.text:
                logger.warning(
                    f"Saved text of {uri} differs from client version "
                    f"{snapshot.client_version}; publishing unversioned diagnostics"
                )
                self.store.replace_text(uri, params.text)
            self.scheduler.schedule(uri, immediate=True)
        except DocumentStateError as e:
            logger.warning(e.message)

    def did_close(self, params: types.DidCloseTextDocumentParams) -> None:
        """Handle document close notification."""
        if not self._accepts_notifications(types.TEXT_DOCUMENT_DID_CLOSE):
            return

        uri = params.text_document.uri
        logger.info(f"Document closed: {uri}")

        self.scheduler.cancel(uri)
        try:
            self.store.close(uri)
        except UnknownDocument as e:
            logger.warning(e.message)
            return

        # Clear diagnostics
        self.context.client.publish_diagnostics(uri, [], None)

    # =========================================================================
    # Formatting
    # =========================================================================

    async def formatting(
        self, params: types.DocumentFormattingParams
    ) -> Optional[list[types.TextEdit]]:
        """
        Handle document formatting request.

        Cancelling the coroutine (``$/cancelRequest``) kills the sqlfluff
        process and propagates ``asyncio.CancelledError``.
        """
        self._require_ready()

        uri = params.text_document.uri
        try:
            snapshot = self.store.get_snapshot(uri)
        except UnknownDocument as e:
            logger.warning(e.message)
            return None

        dialect = await self._resolve_dialect(snapshot)
        if dialect is None:
            raise RequestFailed(NO_DIALECT_MESSAGE)

        try:
            async with self.scheduler.worker_slot():
                raw = await self.context.invoker.run(
                    AnalyzerMode.FORMAT,
                    snapshot.text,
                    dialect=dialect,
                    filename=uri,
                    config_path=self.context.config.config_path,
                )
        except asyncio.CancelledError:
            logger.info(f"Formatting cancelled: {uri}")
            raise
        except AnalyzerError as e:
            logger.error(f"Formatting {uri} failed: {e.message}")
            raise RequestFailed(f"sqlfluff fix failed: {e.message}") from e

        translation = translate(raw, AnalyzerMode.FORMAT, snapshot.text)
        if translation.unparseable:
            raise RequestFailed(UNPARSEABLE_MESSAGE)

        if not self.store.is_current_version(uri, snapshot.version):
            raise ContentModified(f"{uri} changed while it was being formatted.")

        return translation.edits

    # =========================================================================
    # Linting
    # =========================================================================

    async def _resolve_dialect(self, snapshot: Snapshot) -> Optional[str]:
        return await asyncio.to_thread(
            resolve_dialect,
            snapshot.dialect,
            snapshot.uri,
            self.context.workspace_root,
        )

    async def _lint(self, snapshot: Snapshot) -> list[types.Diagnostic]:
        """Compute the diagnostics of a snapshot; analyzer failures become diagnostics."""
        dialect = await self._resolve_dialect(snapshot)
        if dialect is None:
            return [error_diagnostic(NO_DIALECT_MESSAGE)]

        try:
            raw = await self.context.invoker.run(
                AnalyzerMode.LINT,
                snapshot.text,
                dialect=dialect,
                filename=snapshot.uri,
                config_path=self.context.config.config_path,
            )
        except BinaryNotFound as e:
            logger.error(e.message)
            if not self._reported_missing_binary:
                self._reported_missing_binary = True
                self.context.client.show_message(e.message, types.MessageType.Error)
            return [error_diagnostic(e.message)]
        except AnalyzerError as e:
            logger.error(f"Linting {snapshot.uri} failed: {e.message}")
            return [error_diagnostic(e.message)]

        return translate(raw, AnalyzerMode.LINT, snapshot.text).diagnostics

    def _publish(self, snapshot: Snapshot, diagnostics: list[types.Diagnostic]) -> None:
        logger.debug(
            f"Publishing {len(diagnostics)} diagnostics for {snapshot.uri} "
            f"(version {snapshot.published_version})"
        )
        self.context.client.publish_diagnostics(
            snapshot.uri, diagnostics, snapshot.published_version
        )


def _workspace_root(params: types.InitializeParams) -> Optional[Path]:
    """Pick the workspace root from the initialize parameters."""
    if params.workspace_folders:
        return uri_to_path(params.workspace_folders[0].uri)
    if params.root_uri:
        return uri_to_path(params.root_uri)
    if params.root_path:
        return Path(params.root_path)
    return None
