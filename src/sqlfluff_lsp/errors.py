"""
Error types for the sqlfluff language server.

Three families are used throughout the server:

- ``ProtocolError``: reported to the client as a JSON-RPC error response.
- ``DocumentStateError``: logged and ignored, usually a benign race between
  client notifications.
- ``AnalyzerError``: a failed sqlfluff run, turned into a diagnostic (lint)
  or a request error (formatting).
"""

from typing import Optional

from pygls.exceptions import JsonRpcException


class SqlfluffLspError(Exception):
    """Base exception for errors raised by the server's own components."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


# =============================================================================
# Protocol errors
# =============================================================================


class ProtocolError(JsonRpcException):
    """A JSON-RPC error sent back to the client as the response to a request."""

    CODE = -32603
    MESSAGE = "Internal error."

    def __init__(self, message: Optional[str] = None, data: object = None) -> None:
        super().__init__(message=message or self.MESSAGE, code=self.CODE, data=data)


class ServerNotInitialized(ProtocolError):
    """Raised for any request received before ``initialize``."""

    CODE = -32002
    MESSAGE = "Server not initialized."


class InvalidRequest(ProtocolError):
    """Raised for requests that are illegal in the current lifecycle state."""

    CODE = -32600
    MESSAGE = "Invalid request."


class ContentModified(ProtocolError):
    """Raised when a document changed while a request was computing its result."""

    CODE = -32801
    MESSAGE = "Content modified."


class RequestFailed(ProtocolError):
    """Raised when a syntactically valid request could not be fulfilled."""

    CODE = -32803
    MESSAGE = "Request failed."


# =============================================================================
# Document state errors
# =============================================================================


class DocumentStateError(SqlfluffLspError):
    """Raised by the document store when an operation does not fit its state."""

    def __init__(self, message: str, uri: str) -> None:
        self.uri = uri
        super().__init__(message)


class UnknownDocument(DocumentStateError):
    """The URI is not open."""

    def __init__(self, uri: str) -> None:
        super().__init__(f"Document is not open: {uri}", uri)


class AlreadyOpen(DocumentStateError):
    """The URI is already open."""

    def __init__(self, uri: str) -> None:
        super().__init__(f"Document is already open: {uri}", uri)


class StaleVersion(DocumentStateError):
    """A change carried a client version that does not advance the document."""

    def __init__(self, uri: str, current: int, received: int) -> None:
        self.current = current
        self.received = received
        super().__init__(
            f"Ignoring change for {uri}: version {received} does not follow {current}",
            uri,
        )


# =============================================================================
# Analyzer errors
# =============================================================================


class AnalyzerError(SqlfluffLspError):
    """Base class for failures of the external sqlfluff process."""

    pass


class BinaryNotFound(AnalyzerError):
    """The sqlfluff executable could not be located."""

    def __init__(self, executable: str) -> None:
        self.executable = executable
        super().__init__(
            f"Could not find the sqlfluff executable '{executable}'. "
            "Install sqlfluff or pass --sqlfluff-path."
        )


class NonZeroExit(AnalyzerError):
    """sqlfluff exited with a return code that signals a failure."""

    def __init__(self, returncode: int, stderr: str) -> None:
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no output"
        super().__init__(f"sqlfluff exited with code {returncode}: {detail}")


class AnalyzerTimeout(AnalyzerError):
    """sqlfluff did not finish within the configured time limit."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"sqlfluff did not finish within {timeout:g} seconds")
