"""
sqlfluff Language Server Protocol (LSP) Server.

This module wires the protocol engine to pygls (Python Language Server),
which owns the JSON-RPC framing, the stdio/TCP transports and request
cancellation. It provides:

- Document synchronization (open, change, save, close)
- Diagnostics from ``sqlfluff lint``, pushed as the documents change
- Document formatting through ``sqlfluff fix``
"""

from __future__ import annotations

import logging
from typing import Optional

from lsprotocol import types
from pygls.lsp.server import LanguageServer

from sqlfluff_lsp import __version__
from sqlfluff_lsp.analyzer import AnalyzerInvoker, SqlfluffInvoker
from sqlfluff_lsp.config import ServerConfig
from sqlfluff_lsp.dispatcher import Dispatcher, ServerContext

logger = logging.getLogger("sqlfluff-lsp")

SERVER_NAME = "sqlfluff-lsp"


class ServerClient:
    """Sends the dispatcher's outgoing notifications through a pygls server."""

    def __init__(self, server: LanguageServer) -> None:
        self._server = server

    def publish_diagnostics(
        self, uri: str, diagnostics: list[types.Diagnostic], version: Optional[int]
    ) -> None:
        self._server.text_document_publish_diagnostics(
            types.PublishDiagnosticsParams(uri=uri, diagnostics=diagnostics, version=version)
        )

    def show_message(self, message: str, message_type: types.MessageType) -> None:
        self._server.window_show_message(
            types.ShowMessageParams(type=message_type, message=message)
        )


class SqlfluffLanguageServer(LanguageServer):
    """
    Language Server Protocol implementation for sqlfluff.

    pygls handles the lifecycle messages itself and then calls the features
    registered here; every handler forwards to the ``Dispatcher``.

    Args:
        config: Server configuration from the command line
        invoker: Analyzer to use instead of running the sqlfluff executable
    """

    def __init__(
        self, config: ServerConfig, invoker: Optional[AnalyzerInvoker] = None
    ) -> None:
        super().__init__(
            name=SERVER_NAME,
            version=f"v{__version__}",
        )

        # Rebuilt from the client's initialization options unless injected
        self._owns_invoker = invoker is None

        self.dispatcher = Dispatcher(
            ServerContext(
                config=config,
                invoker=invoker or SqlfluffInvoker.from_config(config),
                client=ServerClient(self),
            )
        )

        self._register_handlers()

    def _register_handlers(self) -> None:
        """
        Register all LSP request and notification handlers.

        pygls tags each handler with attributes, so the handlers are plain
        functions forwarding to the dispatcher. The coroutine ones run as
        tasks that ``$/cancelRequest`` can cancel.
        """
        dispatcher = self.dispatcher

        # Lifecycle
        @self.feature(types.INITIALIZE)
        def on_initialize(params: types.InitializeParams) -> None:
            self._on_initialize(params)

        @self.feature(types.INITIALIZED)
        async def on_initialized(params: types.InitializedParams) -> None:
            await dispatcher.initialized(params)

        @self.feature(types.SHUTDOWN)
        def on_shutdown(params: None) -> None:
            self._on_shutdown(params)

        # Document synchronization
        @self.feature(types.TEXT_DOCUMENT_DID_OPEN)
        def did_open(params: types.DidOpenTextDocumentParams) -> None:
            dispatcher.did_open(params)

        @self.feature(types.TEXT_DOCUMENT_DID_CHANGE)
        def did_change(params: types.DidChangeTextDocumentParams) -> None:
            dispatcher.did_change(params)

        @self.feature(types.TEXT_DOCUMENT_DID_SAVE)
        def did_save(params: types.DidSaveTextDocumentParams) -> None:
            dispatcher.did_save(params)

        @self.feature(types.TEXT_DOCUMENT_DID_CLOSE)
        def did_close(params: types.DidCloseTextDocumentParams) -> None:
            dispatcher.did_close(params)

        # Formatting
        @self.feature(types.TEXT_DOCUMENT_FORMATTING)
        async def formatting(
            params: types.DocumentFormattingParams,
        ) -> Optional[list[types.TextEdit]]:
            return await dispatcher.formatting(params)

    def _on_initialize(self, params: types.InitializeParams) -> None:
        """Handle initialize request."""
        self.dispatcher.initialize(params)

        if self._owns_invoker:
            context = self.dispatcher.context
            context.invoker = SqlfluffInvoker.from_config(context.config)
            logger.debug(f"Using sqlfluff executable {context.invoker.executable}")

    def _on_shutdown(self, params: None) -> None:  # noqa: ARG002
        """Handle shutdown request."""
        self.dispatcher.shutdown()


def create_server(
    config: Optional[ServerConfig] = None, invoker: Optional[AnalyzerInvoker] = None
) -> SqlfluffLanguageServer:
    """Create and configure a sqlfluff language server instance."""
    return SqlfluffLanguageServer(config or ServerConfig(), invoker)
