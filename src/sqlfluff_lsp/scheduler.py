"""
Per-document scheduling of lint runs.

Each open document has at most one current lint task. Scheduling a new one:

1. takes a fresh generation from the document store,
2. cancels the earlier tasks (killing their sqlfluff process if they had one),
3. waits for those tasks to unwind and for the debounce window,
4. takes a slot from the bounded worker pool and snapshots the document,
5. publishes only if its generation is still the current one.

A burst of edits therefore costs one sqlfluff run on the final text, and a
result computed for an older text never reaches the client.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from functools import partial

from lsprotocol import types

from sqlfluff_lsp.documents import DocumentStore, Snapshot
from sqlfluff_lsp.errors import UnknownDocument

logger = logging.getLogger("sqlfluff-lsp.scheduler")

LintFunction = Callable[[Snapshot], Awaitable[list[types.Diagnostic]]]
PublishFunction = Callable[[Snapshot, list[types.Diagnostic]], None]


class LintScheduler:
    """
    Runs debounced, superseding lint tasks on a bounded pool of workers.

    Args:
        store: Document store providing snapshots and generations
        lint: Coroutine function computing the diagnostics of a snapshot
        publish: Called with the snapshot and its diagnostics when still current
        debounce: Quiescence window in seconds before a change is linted
        max_workers: Maximum number of analyzer runs at once, shared with
            formatting requests through ``worker_slot``
    """

    def __init__(
        self,
        store: DocumentStore,
        lint: LintFunction,
        publish: PublishFunction,
        *,
        debounce: float,
        max_workers: int,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")

        self._store = store
        self._lint = lint
        self._publish = publish
        self._debounce = debounce
        self._slots = asyncio.Semaphore(max_workers)
        # Unfinished tasks per URI, oldest first; only the last one is current.
        self._tasks: dict[str, list[asyncio.Task[None]]] = {}

    def __contains__(self, uri: object) -> bool:
        return uri in self._tasks

    def worker_slot(self) -> asyncio.Semaphore:
        """The pool semaphore; ``async with`` it around an analyzer run."""
        return self._slots

    def schedule(self, uri: str, *, immediate: bool = False) -> asyncio.Task[None]:
        """
        Schedule a lint run for a document, superseding any earlier one.

        Must be called from the event loop.

        Args:
            uri: Document URI
            immediate: Skip the debounce window (explicit saves)

        Returns:
            The new task

        Raises:
            UnknownDocument: If the document is not open
        """
        generation = self._store.begin_task(uri)

        earlier = self._tasks.setdefault(uri, [])
        for task in earlier:
            task.cancel()

        delay = 0.0 if immediate else self._debounce
        task = asyncio.get_running_loop().create_task(
            self._run(uri, generation, delay, list(earlier)),
            name=f"lint:{uri}",
        )
        earlier.append(task)
        task.add_done_callback(partial(self._forget, uri))
        return task

    def cancel(self, uri: str) -> None:
        """Cancel the lint tasks of a document, if any."""
        for task in self._tasks.get(uri, ()):
            task.cancel()

    def cancel_all(self) -> None:
        """Cancel every lint task."""
        for uri in list(self._tasks):
            self.cancel(uri)

    async def wait_idle(self) -> None:
        """Wait until no lint task is pending or running."""
        while self._tasks:
            await asyncio.wait([task for tasks in self._tasks.values() for task in tasks])

    async def _run(
        self,
        uri: str,
        generation: int,
        delay: float,
        earlier: list[asyncio.Task[None]],
    ) -> None:
        # Never overlap with a superseded run of the same document.
        if earlier:
            await asyncio.wait(earlier)

        if delay > 0:
            await asyncio.sleep(delay)

        async with self._slots:
            if not self._store.is_current(uri, generation):
                return
            try:
                snapshot = self._store.get_snapshot(uri)
            except UnknownDocument:
                return

            diagnostics = await self._lint(snapshot)

        if not self._store.is_current(uri, generation):
            logger.debug(f"Dropping stale diagnostics for {uri} (version {snapshot.version})")
            return

        self._publish(snapshot, diagnostics)

    def _forget(self, uri: str, task: asyncio.Task[None]) -> None:
        tasks = self._tasks.get(uri)
        if tasks is not None and task in tasks:
            tasks.remove(task)
            if not tasks:
                del self._tasks[uri]

        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Lint task for {uri} failed", exc_info=error)
