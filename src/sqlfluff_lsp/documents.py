"""
In-memory state of the documents open in the editor.

The store is the only mutable state shared between the protocol handlers and
the lint tasks. Tasks never read a live document: they work on a frozen
``Snapshot`` and ask the store whether their generation is still current
before publishing anything.
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import Optional

from lsprotocol import types
from pygls.workspace import TextDocument

from sqlfluff_lsp.errors import AlreadyOpen, StaleVersion, UnknownDocument

logger = logging.getLogger("sqlfluff-lsp.documents")


@dataclass(frozen=True, slots=True)
class Snapshot:
    """
    Immutable copy of a document handed to a lint or format run.

    Attributes:
        uri: Document URI
        text: Full text at the time of the snapshot
        version: Store version (0 on open, +1 per accepted change)
        client_version: Last version number sent by the client, if any
        dialect: Default dialect recorded when the document was opened
        generation: Lint generation at the time of the snapshot
        client_in_sync: False once the text was replaced by a save that did not
            match the client's buffer at ``client_version``
    """

    uri: str
    text: str
    version: int
    client_version: Optional[int]
    dialect: Optional[str]
    generation: int
    client_in_sync: bool = True

    @property
    def published_version(self) -> Optional[int]:
        """
        Version to attach to diagnostics computed from this snapshot.

        None when no client version describes the text.
        """
        if not self.client_in_sync:
            return None
        return self.client_version if self.client_version is not None else self.version


@dataclass
class Document:
    """Mutable state of one open document, owned by the store."""

    text_document: TextDocument
    version: int
    client_version: Optional[int]
    dialect: Optional[str]
    generation: int
    client_in_sync: bool = True

    @property
    def text(self) -> str:
        return self.text_document.source


class DocumentStore:
    """
    Holds the authoritative text and version of every open document.

    Every document also carries a lint generation. ``begin_task`` assigns a
    fresh generation drawn from a store-wide counter, so a number is never
    reused even when a URI is closed and opened again; a task whose captured
    generation no longer matches has been superseded.
    """

    def __init__(self) -> None:
        self._documents: dict[str, Document] = {}
        self._generations = itertools.count(1)

    def __contains__(self, uri: object) -> bool:
        return uri in self._documents

    def __len__(self) -> int:
        return len(self._documents)

    def uris(self) -> Iterator[str]:
        """Iterate over the URIs of all open documents."""
        return iter(list(self._documents))

    def open(
        self,
        uri: str,
        text: str,
        dialect: Optional[str] = None,
        client_version: Optional[int] = None,
    ) -> int:
        """
        Register a newly opened document.

        Args:
            uri: Document URI
            text: Initial text
            dialect: Default dialect for the document
            client_version: Version number sent by the client

        Returns:
            The store version, always 0

        Raises:
            AlreadyOpen: If the URI is already tracked
        """
        if uri in self._documents:
            raise AlreadyOpen(uri)

        self._documents[uri] = Document(
            text_document=TextDocument(uri, source=text, version=client_version),
            version=0,
            client_version=client_version,
            dialect=dialect,
            generation=next(self._generations),
        )
        logger.debug(f"Opened {uri}")
        return 0

    def reopen(
        self,
        uri: str,
        text: str,
        dialect: Optional[str] = None,
        client_version: Optional[int] = None,
    ) -> int:
        """Reset a document as if it had been closed and opened again."""
        self._documents.pop(uri, None)
        return self.open(uri, text, dialect, client_version)

    def change(
        self,
        uri: str,
        changes: Iterable[types.TextDocumentContentChangeEvent],
        client_version: Optional[int] = None,
    ) -> int:
        """
        Apply full-text or incremental changes to a document.

        Changes are applied in order, as the protocol requires. The document
        is left untouched if the client version does not advance.

        Args:
            uri: Document URI
            changes: Content change events from ``didChange``
            client_version: Version number sent by the client

        Returns:
            The new store version

        Raises:
            UnknownDocument: If the URI is not open
            StaleVersion: If ``client_version`` does not increase
        """
        document = self._get(uri)

        if (
            client_version is not None
            and document.client_version is not None
            and client_version <= document.client_version
        ):
            raise StaleVersion(uri, document.client_version, client_version)

        for change in changes:
            document.text_document.apply_change(change)

        document.version += 1
        if client_version is not None:
            document.client_version = client_version
            document.client_in_sync = True
            document.text_document.version = client_version

        return document.version

    def replace_text(self, uri: str, text: str) -> int:
        """
        Replace the whole text of a document with text the client sent on save.

        The client's version number no longer describes the text, so
        diagnostics are published without a version until the next change.

        Raises:
            UnknownDocument: If the URI is not open
        """
        version = self.change(uri, [types.TextDocumentContentChangeWholeDocument(text=text)])
        self._documents[uri].client_in_sync = False
        return version

    def close(self, uri: str) -> None:
        """
        Forget a document.

        Raises:
            UnknownDocument: If the URI is not open
        """
        self._get(uri)
        del self._documents[uri]
        logger.debug(f"Closed {uri}")

    def get_snapshot(self, uri: str) -> Snapshot:
        """
        Take an immutable copy of a document.

        Raises:
            UnknownDocument: If the URI is not open
        """
        document = self._get(uri)
        return Snapshot(
            uri=uri,
            text=document.text,
            version=document.version,
            client_version=document.client_version,
            dialect=document.dialect,
            generation=document.generation,
            client_in_sync=document.client_in_sync,
        )

    def begin_task(self, uri: str) -> int:
        """
        Start a new lint generation for a document, superseding earlier ones.

        Raises:
            UnknownDocument: If the URI is not open
        """
        document = self._get(uri)
        document.generation = next(self._generations)
        return document.generation

    def is_current(self, uri: str, generation: int) -> bool:
        """Whether ``generation`` is still the latest one for an open document."""
        document = self._documents.get(uri)
        return document is not None and document.generation == generation

    def is_current_version(self, uri: str, version: int) -> bool:
        """Whether an open document is still at the given store version."""
        document = self._documents.get(uri)
        return document is not None and document.version == version

    def _get(self, uri: str) -> Document:
        try:
            return self._documents[uri]
        except KeyError:
            raise UnknownDocument(uri) from None
