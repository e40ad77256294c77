"""Supervision of fire-and-forget asyncio tasks.

Provisioning rounds, delayed follow-up rounds and ``always``-policy
persistence all run as background tasks that no request awaits.  Every such
task is spawned through a :class:`TaskSupervisor`, which keeps a strong
reference until it finishes and routes any exception to a single error sink:
a ``background_task_failed`` log record plus an optional callback (for
metrics or tests).
"""

from __future__ import annotations

import asyncio
import contextvars
from typing import Any, Callable, Coroutine, Optional

import structlog

logger = structlog.get_logger(__name__)

ErrorSink = Callable[[str, BaseException], None]


class TaskSupervisor:
    """Owns background tasks and reports their failures.

    Args:
        on_error: Optional callable receiving ``(task_name, exception)`` for
            every task that ends with an exception other than cancellation.
    """

    def __init__(self, on_error: Optional[ErrorSink] = None) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()
        self._on_error = on_error

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        """Schedule ``coro`` on the running loop and track it until done.

        The task runs in an empty context: request-scoped values such as the
        bound ``request_id`` stay with the request that triggered the work.
        """
        task = asyncio.get_running_loop().create_task(
            coro, name=name, context=contextvars.Context()
        )
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        logger.error(
            "background_task_failed",
            task=task.get_name(),
            error=str(exc),
            exc_info=exc,
        )
        if self._on_error is not None:
            self._on_error(task.get_name(), exc)

    @property
    def pending(self) -> int:
        """Number of tasks still running."""
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until no tracked task remains, including tasks spawned meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self, grace: float = 0.0) -> None:
        """Cancel every outstanding task and wait for them to unwind.

        Args:
            grace: Seconds granted to running tasks (an in-flight pool write,
                say) to finish on their own before they are cancelled.
        """
        if grace > 0 and self._tasks:
            try:
                await asyncio.wait_for(self.drain(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning(
                    "background_tasks_cancelled", pending=self.pending, grace=grace
                )
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
