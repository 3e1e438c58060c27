"""Lifecycle tracking for the engine's background asyncio tasks.

The session controller runs each reply under the ``active_stream`` name so a
stop request can find and cancel it. Title generation and other side work is
spawned anonymously and only needs to be awaited or cancelled on shutdown.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine, Iterable
import contextlib
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)


def _unfinished(tasks: Iterable[asyncio.Task[Any]]) -> list[asyncio.Task[Any]]:
    return [task for task in tasks if not task.done()]


async def _drain(task: asyncio.Task[Any]) -> None:
    with contextlib.suppress(asyncio.CancelledError):
        await task


class TaskManager:
    """Track the named stream task and anonymous fire-and-forget work.

    Spawning under a name that is already taken replaces the tracked task
    without cancelling the old one. Anonymous tasks drop out on completion.
    """

    def __init__(self) -> None:
        self._by_name: dict[str, asyncio.Task[Any]] = {}
        self._background: set[asyncio.Task[Any]] = set()

    def spawn(
        self, coro: Coroutine[Any, Any, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Schedule ``coro`` on the running loop and start tracking it."""
        task = asyncio.create_task(coro, name=name)
        if name is None:
            self._background.add(task)
            task.add_done_callback(self._on_background_done)
        else:
            self._by_name[name] = task
        return task

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled() or task.exception() is None:
            return
        error = task.exception()
        LOGGER.warning(
            "task.anonymous.exception",
            extra={
                "event": "task.anonymous.exception",
                "task_name": task.get_name(),
                "error_type": type(error).__name__,
                "error": str(error),
            },
        )

    def _live(self) -> list[asyncio.Task[Any]]:
        return _unfinished([*self._by_name.values(), *self._background])

    def get(self, name: str) -> asyncio.Task[Any] | None:
        return self._by_name.get(name)

    @property
    def pending(self) -> int:
        return len(self._live())

    async def cancel(self, name: str) -> None:
        """Cancel a named task and wait for it to unwind."""
        task = self._by_name.pop(name, None)
        if task is not None and not task.done():
            task.cancel()
            await _drain(task)

    async def wait(self, name: str) -> None:
        """Wait for a named task to finish without cancelling it.

        The waiter being cancelled does not cancel the task itself.
        """
        task = self._by_name.get(name)
        if task is None:
            return
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    async def cancel_all(self) -> None:
        live = self._live()
        for task in live:
            task.cancel()
        for task in live:
            await _drain(task)
        self._by_name.clear()
        self._background.clear()

    async def await_all(self) -> None:
        """Await every tracked task, including anonymous ones spawned meanwhile."""
        live = self._live()
        while live:
            await asyncio.gather(*live, return_exceptions=True)
            live = self._live()

    def discard(self, name: str) -> None:
        self._by_name.pop(name, None)
