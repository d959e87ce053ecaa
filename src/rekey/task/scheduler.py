"""Bounded-parallelism task schedulers.

Two interchangeable front ends run tasks with at most ``parallelism`` in
flight:

- :class:`IteratingTaskScheduler` pulls tasks from a (possibly lazy and
  unbounded) iterator, taking the next one only when a running task
  completes. This gives natural backpressure against the task source.
- :class:`TaskQueue` accepts tasks pushed with :meth:`TaskQueue.submit`,
  parking the overflow in a FIFO waiting queue.

Both call each task's ``complete()`` as soon as its ``execute()`` returns,
and fire the completion callback exactly once when all work is done.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import deque
from collections.abc import AsyncIterable, AsyncIterator, Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from rekey import metrics
from rekey.errors import QueueFullError, SchedulerError

logger = logging.getLogger(__name__)


class ProcessTask(Protocol):
    """A unit of work the schedulers can run."""

    id: str

    async def execute(self) -> Any:
        ...

    async def complete(self) -> None:
        ...


class SchedulerState(Enum):
    """Lifecycle of a scheduler."""

    NEW = "new"
    FILLING = "filling"
    STEADY = "steady"
    DRAINING = "draining"
    STOPPED = "stopped"


@dataclass
class SchedulerReport:
    """Summary handed to the completion callback.

    Attributes:
        submitted: Tasks started.
        completed: Tasks whose complete() ran, failed ones included.
        failed: Tasks whose execute() raised.
        cancelled: Tasks cancelled after the shutdown timeout.
        peak_in_flight: Highest number of tasks running at once.
        elapsed: Seconds from start to completion.
    """

    submitted: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    peak_in_flight: int = 0
    elapsed: float = 0.0


CompletionCallback = Callable[[SchedulerReport], Any]


async def _iterate(items: Iterable[Any]) -> AsyncIterator[Any]:
    for item in items:
        yield item


async def _close_quietly(task: ProcessTask) -> None:
    try:
        await task.complete()
    except Exception:
        logger.exception("failed to complete task %s", task.id)


async def _notify(callback: CompletionCallback | None, report: SchedulerReport) -> None:
    if callback is None:
        return
    result = callback(report)
    if inspect.isawaitable(result):
        await result


class IteratingTaskScheduler:
    """Runs tasks pulled from an iterator with bounded parallelism.

    All pulls from the source, and the completion bookkeeping that triggers
    them, happen under one lock, so two tasks finishing together never
    over-pull and an async generator source is never advanced concurrently.

    Attributes:
        parallelism: Maximum number of tasks in flight.
        shutdown_timeout: Seconds to wait for in-flight tasks while draining
            before cancelling them.
        state: Current lifecycle state.
        in_flight: Number of tasks currently running.
    """

    def __init__(
        self,
        parallelism: int,
        source: AsyncIterable[ProcessTask] | Iterable[ProcessTask],
        on_complete: CompletionCallback | None = None,
        shutdown_timeout: float = 15.0,
    ) -> None:
        if parallelism < 1:
            raise SchedulerError(f"parallelism must be at least 1, got {parallelism}")
        self.parallelism = parallelism
        self.shutdown_timeout = shutdown_timeout
        if isinstance(source, AsyncIterable):
            self._source: AsyncIterator[ProcessTask] = source.__aiter__()
        else:
            self._source = _iterate(source)
        self._on_complete = on_complete
        self._lock = asyncio.Lock()
        self._drain_event = asyncio.Event()
        self._running: set[asyncio.Task] = set()
        self._accepting = True
        self._exhausted = False
        self.state = SchedulerState.NEW
        self.in_flight = 0
        self.report = SchedulerReport()

    async def run(self) -> SchedulerReport:
        """Run every task from the source, then drain and fire the callback.

        Returns:
            The final SchedulerReport.

        Raises:
            SchedulerError: If the scheduler was already started.
        """
        if self.state is not SchedulerState.NEW:
            raise SchedulerError("scheduler can only be run once")

        start = time.perf_counter()
        self.state = SchedulerState.FILLING
        async with self._lock:
            for _ in range(self.parallelism):
                task = await self._pull()
                if task is None:
                    break
                self._submit(task)
            if self.in_flight == 0:
                self._drain_event.set()
            elif self.state is SchedulerState.FILLING:
                self.state = SchedulerState.STEADY

        try:
            await self._drain_event.wait()
        except asyncio.CancelledError:
            self._accepting = False
            running = list(self._running)
            for task in running:
                task.cancel()
            await asyncio.gather(*running, return_exceptions=True)
            raise

        await self._drain()
        self.report.elapsed = time.perf_counter() - start
        self.state = SchedulerState.STOPPED
        await _notify(self._on_complete, self.report)
        return self.report

    def request_stop(self) -> None:
        """Stop pulling new tasks and start draining the ones in flight."""
        if self.state in (SchedulerState.DRAINING, SchedulerState.STOPPED):
            return
        logger.info("stop requested, %d tasks in flight", self.in_flight)
        self._accepting = False
        self._drain_event.set()

    async def _pull(self) -> ProcessTask | None:
        """Take the next task from the source. Caller must hold the lock."""
        if self._exhausted or not self._accepting:
            return None
        try:
            return await self._source.__anext__()
        except StopAsyncIteration:
            self._exhausted = True
            return None
        except Exception:
            # A failing source ends the run; tasks already running still finish.
            logger.exception("task source failed, no further tasks will be scheduled")
            self._exhausted = True
            return None

    def _submit(self, task: ProcessTask) -> None:
        self.in_flight += 1
        self.report.submitted += 1
        self.report.peak_in_flight = max(self.report.peak_in_flight, self.in_flight)
        metrics.set_in_flight(self.in_flight)
        logger.info("submitting task %d: %s", self.report.submitted, task.id)
        running = asyncio.create_task(self._run_task(task), name=f"rekey-task-{task.id}")
        self._running.add(running)
        running.add_done_callback(self._running.discard)

    async def _run_task(self, task: ProcessTask) -> None:
        status = "completed"
        closing: asyncio.Future | None = None
        try:
            try:
                await task.execute()
            except Exception:
                logger.exception("task %s failed", task.id)
                status = "failed"

            async with self._lock:
                closing = asyncio.ensure_future(_close_quietly(task))
                await asyncio.shield(closing)
                self._finish(task, status)

                following = await self._pull()
                if following is not None:
                    self._submit(following)
                elif self.in_flight == 0:
                    self._drain_event.set()
        finally:
            # cancelled before or while completing: the store is still closed exactly once
            if closing is None:
                closing = asyncio.ensure_future(_close_quietly(task))
            if not closing.done():
                await asyncio.shield(closing)

    def _finish(self, task: ProcessTask, status: str) -> None:
        """Count a completed task. Caller must hold the lock."""
        self.in_flight -= 1
        self.report.completed += 1
        if status == "failed":
            self.report.failed += 1
        metrics.set_in_flight(self.in_flight)
        metrics.record_task(status)
        logger.info(
            "completing task %s: %d in flight, %d completed",
            task.id,
            self.in_flight,
            self.report.completed,
        )

    async def _drain(self) -> None:
        self.state = SchedulerState.DRAINING
        self._accepting = False
        logger.info("shutting down task scheduler")

        current = asyncio.current_task()
        pending = {t for t in self._running if t is not current}
        if not pending:
            return

        _, pending = await asyncio.wait(pending, timeout=self.shutdown_timeout)
        if pending:
            logger.warning(
                "cancelling %d tasks still running after %.1f seconds",
                len(pending),
                self.shutdown_timeout,
            )
            for running in pending:
                running.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            self.report.cancelled += len(pending)


class TaskQueue:
    """Runs pushed tasks with bounded parallelism.

    Tasks beyond ``parallelism`` wait in a FIFO queue; each completion
    starts the oldest waiting task. Call :meth:`close` once every task has
    been submitted, then await :meth:`join`.

    All bookkeeping runs on the event loop between awaits, which makes it
    the queue's single serialization point.

    Attributes:
        parallelism: Maximum number of tasks in process.
        max_waiting: Capacity of the waiting queue.
    """

    def __init__(
        self,
        parallelism: int,
        on_complete: CompletionCallback | None = None,
        max_waiting: int = 512,
    ) -> None:
        if parallelism < 1:
            raise SchedulerError(f"parallelism must be at least 1, got {parallelism}")
        self.parallelism = parallelism
        self.max_waiting = max_waiting
        self._on_complete = on_complete
        self._in_process: set[str] = set()
        self._waiting: deque[ProcessTask] = deque()
        self._running: set[asyncio.Task] = set()
        self._closed = False
        self._done = asyncio.Event()
        self._notified = False
        self._start_time: float | None = None
        self.report = SchedulerReport()

    @property
    def in_process(self) -> int:
        return len(self._in_process)

    @property
    def waiting(self) -> int:
        return len(self._waiting)

    def submit(self, task: ProcessTask) -> None:
        """Start task now if a slot is free, otherwise queue it.

        Raises:
            SchedulerError: If the queue was closed.
            QueueFullError: If the waiting queue is at capacity.
        """
        if self._closed:
            raise SchedulerError("cannot submit to a closed task queue")
        if self._start_time is None:
            self._start_time = time.perf_counter()
        if len(self._in_process) < self.parallelism:
            self._start(task)
        elif len(self._waiting) >= self.max_waiting:
            raise QueueFullError(self.max_waiting)
        else:
            self._waiting.append(task)

    def close(self) -> None:
        """Declare that no more tasks will be submitted."""
        self._closed = True
        self._check_done()

    async def join(self, timeout: float | None = None) -> SchedulerReport:
        """Wait until the queue is closed and every task has completed.

        The completion callback fires once, on the first join to return.

        Args:
            timeout: Seconds to wait. On expiry the queue is closed, waiting
                tasks are completed without running and running tasks are
                cancelled; both count as cancelled. None waits indefinitely.
        """
        try:
            await asyncio.wait_for(self._done.wait(), timeout)
        except asyncio.TimeoutError:
            await self._cancel(timeout)
        if not self._notified:
            self._notified = True
            if self._start_time is not None:
                self.report.elapsed = time.perf_counter() - self._start_time
            await _notify(self._on_complete, self.report)
        return self.report

    def _start(self, task: ProcessTask) -> None:
        self._in_process.add(task.id)
        self.report.submitted += 1
        self.report.peak_in_flight = max(self.report.peak_in_flight, len(self._in_process))
        metrics.set_in_flight(len(self._in_process))
        running = asyncio.create_task(self._run(task), name=f"rekey-task-{task.id}")
        self._running.add(running)
        running.add_done_callback(self._running.discard)

    async def _run(self, task: ProcessTask) -> None:
        status = "completed"
        closing: asyncio.Future | None = None
        try:
            try:
                await task.execute()
            except Exception:
                logger.exception("task %s failed", task.id)
                status = "failed"
            closing = asyncio.ensure_future(_close_quietly(task))
            await asyncio.shield(closing)
        finally:
            if closing is None:
                closing = asyncio.ensure_future(_close_quietly(task))
            if not closing.done():
                await asyncio.shield(closing)

        self._in_process.discard(task.id)
        self.report.completed += 1
        if status == "failed":
            self.report.failed += 1
        metrics.record_task(status)

        if self._waiting:
            self._start(self._waiting.popleft())
        else:
            metrics.set_in_flight(len(self._in_process))
            self._check_done()

    async def _cancel(self, timeout: float) -> None:
        self._closed = True
        waiting = list(self._waiting)
        self._waiting.clear()
        running = [task for task in self._running if task.cancel()]
        logger.warning(
            "cancelling %d tasks still running after %.1f seconds, dropping %d waiting",
            len(running),
            timeout,
            len(waiting),
        )
        await asyncio.gather(*running, return_exceptions=True)
        for task in waiting:
            await _close_quietly(task)

        self.report.cancelled += len(waiting) + len(running)
        self._in_process.clear()
        metrics.set_in_flight(0)
        self._done.set()

    def _check_done(self) -> None:
        if self._closed and not self._in_process and not self._waiting:
            self._done.set()
