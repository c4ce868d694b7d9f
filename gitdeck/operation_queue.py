"""Per-repository FIFO operation queue.

Each repository id has its own queue: at most one task runs for a repository at
a time and tasks start in submission order.  Queues of different repositories
never wait on each other.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from .command_runner import CancellationToken
from .exceptions import OperationCancelled
from .models import ActiveOperation, new_id, utc_now

logger = logging.getLogger(__name__)

DEFAULT_TASK_TIMEOUT = 30.0
HARD_STOP_GRACE = 5.0

TaskBody = Callable[[CancellationToken], Awaitable[Any]]
StartFn = Callable[[str, ActiveOperation], None]
FinishFn = Callable[[str, str], None]


@dataclass
class _QueuedTask:
    repository_id: str
    name: str
    body: TaskBody
    timeout: float
    future: asyncio.Future
    id: str = field(default_factory=lambda: new_id("op"))
    token: CancellationToken = field(default_factory=CancellationToken)
    operation: Optional[ActiveOperation] = None


def _noop_start(repository_id: str, operation: ActiveOperation) -> None:
    return


def _noop_finish(repository_id: str, operation_id: str) -> None:
    return


class OperationQueue:
    def __init__(
        self,
        on_start: StartFn = _noop_start,
        on_finish: FinishFn = _noop_finish,
        hard_stop_grace: float = HARD_STOP_GRACE,
    ) -> None:
        self._on_start = on_start
        self._on_finish = on_finish
        self._hard_stop_grace = hard_stop_grace
        self._pending: dict[str, deque[_QueuedTask]] = {}
        self._running: dict[str, _QueuedTask] = {}
        self._runners: set[asyncio.Task] = set()

    async def enqueue(
        self,
        repository_id: str,
        name: str,
        body: TaskBody,
        timeout: float = DEFAULT_TASK_TIMEOUT,
    ) -> Any:
        future = asyncio.get_running_loop().create_future()
        task = _QueuedTask(repository_id, name, body, timeout, future)
        self._pending.setdefault(repository_id, deque()).append(task)
        logger.debug("Queued %s (%s) for %s", name, task.id, repository_id)
        self._pump(repository_id)
        return await future

    def cancel_repository(self, repository_id: str) -> None:
        running = self._running.get(repository_id)
        if running is not None:
            logger.info("Cancelling %s for %s", running.name, repository_id)
            running.token.cancel()
        pending = self._pending.pop(repository_id, deque())
        for task in pending:
            if not task.future.done():
                task.future.set_exception(
                    OperationCancelled(f"{task.name} cancelled before execution")
                )

    def active_operation(self, repository_id: str) -> Optional[ActiveOperation]:
        running = self._running.get(repository_id)
        return running.operation if running is not None else None

    def pending_count(self, repository_id: str) -> int:
        return len(self._pending.get(repository_id, ()))

    def is_busy(self, repository_id: str) -> bool:
        return repository_id in self._running or self.pending_count(repository_id) > 0

    def _pump(self, repository_id: str) -> None:
        if repository_id in self._running:
            return
        pending = self._pending.get(repository_id)
        while pending:
            task = pending.popleft()
            if task.future.done():
                # The caller went away while the task was waiting.
                continue
            if not pending:
                self._pending.pop(repository_id, None)
            self._start(task)
            return
        self._pending.pop(repository_id, None)

    def _start(self, task: _QueuedTask) -> None:
        task.operation = ActiveOperation(id=task.id, name=task.name, started_at=utc_now())
        self._running[task.repository_id] = task
        self._on_start(task.repository_id, task.operation)
        runner = asyncio.ensure_future(self._run(task))
        self._runners.add(runner)
        runner.add_done_callback(self._runners.discard)

    async def _run(self, task: _QueuedTask) -> None:
        loop = asyncio.get_running_loop()
        timer = loop.call_later(task.timeout, task.token.cancel)
        body = asyncio.ensure_future(task.body(task.token))
        try:
            done, _ = await asyncio.wait({body}, timeout=task.timeout + self._hard_stop_grace)
            if not done:
                logger.warning(
                    "%s for %s ignored cancellation, stopping it", task.name, task.repository_id
                )
                body.cancel()
                await asyncio.gather(body, return_exceptions=True)
            self._settle(task, body)
        finally:
            timer.cancel()
            self._running.pop(task.repository_id, None)
            self._on_finish(task.repository_id, task.id)
            self._pump(task.repository_id)

    def _settle(self, task: _QueuedTask, body: asyncio.Future) -> None:
        if task.future.done():
            if not body.cancelled():
                body.exception()
            return
        if body.cancelled():
            task.future.set_exception(OperationCancelled(f"{task.name} timed out"))
            return
        error = body.exception()
        if error is not None:
            task.future.set_exception(error)
        else:
            task.future.set_result(body.result())
