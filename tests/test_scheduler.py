"""Tests for the bounded-parallelism schedulers."""

import asyncio

import pytest

from rekey.errors import QueueFullError, SchedulerError
from rekey.task.scheduler import (
    IteratingTaskScheduler,
    SchedulerReport,
    SchedulerState,
    TaskQueue,
)


class Tracker:
    """Counts how many fake tasks run at once."""

    def __init__(self) -> None:
        self.running = 0
        self.peak = 0
        self.executed: list[str] = []
        self.completed: list[str] = []


class FakeTask:
    def __init__(
        self,
        tracker: Tracker,
        name: str,
        delay: float = 0.002,
        fail: bool = False,
        complete_delay: float = 0,
    ) -> None:
        self.id = name
        self.tracker = tracker
        self.delay = delay
        self.fail = fail
        self.complete_delay = complete_delay

    async def execute(self):
        self.tracker.running += 1
        self.tracker.peak = max(self.tracker.peak, self.tracker.running)
        try:
            await asyncio.sleep(self.delay)
            if self.fail:
                raise RuntimeError(f"task {self.id} failed")
            self.tracker.executed.append(self.id)
            return self
        finally:
            self.tracker.running -= 1

    async def complete(self):
        if self.complete_delay:
            await asyncio.sleep(self.complete_delay)
        self.tracker.completed.append(self.id)


def _tasks(tracker, count, **kwargs):
    return [FakeTask(tracker, f"t{i}", **kwargs) for i in range(count)]


class TestIteratingTaskScheduler:
    """Tests for the iterator-pull scheduler."""

    async def test_backpressure(self):
        """Never more than parallelism tasks run; all complete; callback fires once."""
        tracker = Tracker()
        reports: list[SchedulerReport] = []
        scheduler = IteratingTaskScheduler(3, _tasks(tracker, 20), on_complete=reports.append)

        report = await scheduler.run()

        assert tracker.peak <= 3
        assert report.peak_in_flight == 3
        assert len(tracker.executed) == 20
        assert sorted(tracker.completed) == sorted(f"t{i}" for i in range(20))
        assert report.submitted == report.completed == 20
        assert reports == [report]
        assert scheduler.state is SchedulerState.STOPPED

    async def test_pulls_lazily_from_async_source(self):
        tracker = Tracker()
        pulled = 0

        async def source():
            nonlocal pulled
            for task in _tasks(tracker, 10):
                pulled += 1
                # never more than parallelism pulled ahead of completions
                assert pulled - len(tracker.completed) <= 2
                yield task

        report = await IteratingTaskScheduler(2, source()).run()

        assert report.completed == 10
        assert tracker.peak <= 2

    async def test_fewer_tasks_than_parallelism(self):
        tracker = Tracker()
        report = await IteratingTaskScheduler(8, _tasks(tracker, 3)).run()
        assert report.completed == 3
        assert report.peak_in_flight == 3

    async def test_empty_source_fires_callback(self):
        reports = []
        report = await IteratingTaskScheduler(4, [], on_complete=reports.append).run()
        assert report.submitted == 0
        assert reports == [report]

    async def test_async_callback(self):
        seen = []

        async def on_complete(report):
            seen.append(report.completed)

        await IteratingTaskScheduler(2, _tasks(Tracker(), 5), on_complete=on_complete).run()
        assert seen == [5]

    async def test_failed_task_is_completed_and_counted(self):
        tracker = Tracker()
        tasks = _tasks(tracker, 4)
        tasks[1].fail = True

        report = await IteratingTaskScheduler(2, tasks).run()

        assert report.completed == 4
        assert report.failed == 1
        assert "t1" in tracker.completed

    async def test_failing_source_stops_scheduling(self):
        tracker = Tracker()

        async def source():
            yield FakeTask(tracker, "first")
            raise RuntimeError("listing failed")

        report = await IteratingTaskScheduler(2, source()).run()
        assert report.completed == 1

    async def test_request_stop_drains_in_flight(self):
        tracker = Tracker()
        scheduler = IteratingTaskScheduler(2, _tasks(tracker, 50, delay=0.01))

        async def stop_soon():
            await asyncio.sleep(0.015)
            scheduler.request_stop()

        stopper = asyncio.create_task(stop_soon())
        report = await scheduler.run()
        await stopper

        assert report.submitted < 50
        assert report.completed == report.submitted
        assert tracker.running == 0

    async def test_shutdown_timeout_cancels_stragglers(self):
        tracker = Tracker()
        tasks = [FakeTask(tracker, "slow", delay=10.0)]
        scheduler = IteratingTaskScheduler(1, tasks, shutdown_timeout=0.01)

        async def stop_soon():
            await asyncio.sleep(0.01)
            scheduler.request_stop()

        stopper = asyncio.create_task(stop_soon())
        report = await scheduler.run()
        await stopper

        assert report.cancelled == 1
        assert tracker.completed == ["slow"]

    async def test_cancelled_while_completing_still_closes(self):
        """Tasks cancelled in complete() or waiting on the lock still close their store."""
        tracker = Tracker()
        tasks = _tasks(tracker, 3, complete_delay=0.3)
        scheduler = IteratingTaskScheduler(3, tasks, shutdown_timeout=0.05)

        async def stop_soon():
            await asyncio.sleep(0.01)
            scheduler.request_stop()

        stopper = asyncio.create_task(stop_soon())
        report = await scheduler.run()
        await stopper

        assert report.cancelled == 3
        assert sorted(tracker.completed) == ["t0", "t1", "t2"]

    async def test_runs_once(self):
        scheduler = IteratingTaskScheduler(1, [])
        await scheduler.run()
        with pytest.raises(SchedulerError):
            await scheduler.run()

    def test_invalid_parallelism(self):
        with pytest.raises(SchedulerError):
            IteratingTaskScheduler(0, [])


class TestTaskQueue:
    """Tests for the push-style queue."""

    async def test_backpressure(self):
        tracker = Tracker()
        reports = []
        queue = TaskQueue(3, on_complete=reports.append)
        for task in _tasks(tracker, 12):
            queue.submit(task)
        assert queue.in_process == 3
        assert queue.waiting == 9
        queue.close()

        report = await queue.join()

        assert tracker.peak <= 3
        assert report.completed == 12
        assert len(tracker.completed) == 12
        assert reports == [report]

    async def test_fifo_start_order(self):
        tracker = Tracker()
        queue = TaskQueue(1)
        for task in _tasks(tracker, 5, delay=0):
            queue.submit(task)
        queue.close()
        await queue.join()
        assert tracker.executed == [f"t{i}" for i in range(5)]

    async def test_callback_fires_once(self):
        reports = []
        queue = TaskQueue(2, on_complete=reports.append)
        queue.submit(FakeTask(Tracker(), "a"))
        queue.close()
        await queue.join()
        await queue.join()
        assert len(reports) == 1

    async def test_close_empty_queue(self):
        queue = TaskQueue(2)
        queue.close()
        report = await queue.join()
        assert report.submitted == 0

    async def test_submit_after_close(self):
        queue = TaskQueue(1)
        queue.close()
        with pytest.raises(SchedulerError):
            queue.submit(FakeTask(Tracker(), "late"))

    async def test_waiting_queue_capacity(self):
        tracker = Tracker()
        queue = TaskQueue(1, max_waiting=1)
        queue.submit(FakeTask(tracker, "a"))
        queue.submit(FakeTask(tracker, "b"))
        with pytest.raises(QueueFullError):
            queue.submit(FakeTask(tracker, "c"))
        queue.close()
        await queue.join()

    async def test_failed_task(self):
        tracker = Tracker()
        queue = TaskQueue(2)
        queue.submit(FakeTask(tracker, "bad", fail=True))
        queue.submit(FakeTask(tracker, "good"))
        queue.close()
        report = await queue.join()
        assert report.failed == 1
        assert report.completed == 2

    async def test_join_timeout_cancels_hung_tasks(self):
        """A hung task is cancelled on timeout and its store still closed."""
        tracker = Tracker()
        reports = []
        queue = TaskQueue(1, on_complete=reports.append)
        queue.submit(FakeTask(tracker, "hung", delay=10.0))
        queue.submit(FakeTask(tracker, "queued"))
        queue.close()

        report = await queue.join(timeout=0.05)

        assert report.cancelled == 2
        assert report.completed == 0
        assert sorted(tracker.completed) == ["hung", "queued"]
        assert tracker.executed == []
        assert queue.in_process == queue.waiting == 0
        assert reports == [report]

    async def test_join_timeout_not_reached(self):
        tracker = Tracker()
        queue = TaskQueue(2)
        for task in _tasks(tracker, 3):
            queue.submit(task)
        queue.close()

        report = await queue.join(timeout=5.0)

        assert report.completed == 3
        assert report.cancelled == 0
