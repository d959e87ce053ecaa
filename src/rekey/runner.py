"""Run orchestration: wires configuration, store, mapper and scheduler."""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from collections import Counter
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime, timezone

from rekey.audit import AuditLog
from rekey.config import RekeyConfig
from rekey.lookup.loader import FileLoader
from rekey.lookup.table import LookupTable
from rekey.mapping import KeyMapper, create_mapper
from rekey.models import RenameOutcome
from rekey.store import StoreFactory, create_store_factory
from rekey.store.backend import ObjectStore
from rekey.task.remediation import RemediationTask
from rekey.task.scheduler import IteratingTaskScheduler, SchedulerReport

logger = logging.getLogger(__name__)


@dataclass
class RunReport:
    """Summary of a finished remediation run.

    Attributes:
        bucket: The remediated bucket.
        outcomes: Number of objects per outcome.
        tasks: Scheduler summary.
        objects_after: Objects in the bucket after the run.
        elapsed: Seconds from start to completion.
        interrupted: True if a stop was requested before the source ran dry.
    """

    bucket: str
    outcomes: Counter = field(default_factory=Counter)
    tasks: SchedulerReport = field(default_factory=SchedulerReport)
    objects_after: int = 0
    elapsed: float = 0.0
    interrupted: bool = False

    @property
    def objects_processed(self) -> int:
        return sum(self.outcomes.values())

    def count(self, outcome: RenameOutcome) -> int:
        return self.outcomes.get(outcome, 0)


def build_lookup_table(config: RekeyConfig) -> LookupTable | None:
    """Load the lookup table when the lookup strategy is selected.

    Raises:
        LookupLoadError: If the input file cannot be read.
    """
    if config.remediation.strategy != "lookup":
        return None
    loader = FileLoader(config.lookup.path, config.lookup.pattern, config.lookup.skip)
    table = LookupTable()
    table.load(loader.load())
    return table


class Remediation:
    """One remediation run over a bucket.

    Attributes:
        config: The run configuration.
        store_factory: Creates a fresh, uninitialised store per task.
        mapper: The key mapper shared by all tasks.
        audit: Audit sink shared by all tasks.
    """

    def __init__(
        self,
        config: RekeyConfig,
        mapper: KeyMapper,
        store_factory: StoreFactory | None = None,
        audit: AuditLog | None = None,
    ) -> None:
        self.config = config
        self.mapper = mapper
        self.store_factory = store_factory or create_store_factory(config.store)
        self.audit = audit or AuditLog()
        self.started_at: datetime | None = None
        self.scheduler: IteratingTaskScheduler | None = None
        self.report = RunReport(bucket=config.store.bucket)

    async def tasks(self, listing: ObjectStore) -> AsyncIterator[RemediationTask]:
        """Create one task per listing page, each with its own store."""
        async for page in listing.list():
            store = self.store_factory()
            await store.init(verify=False)
            task = RemediationTask(
                store=store,
                mapper=self.mapper,
                objects=page,
                audit=self.audit,
                started_at=self.started_at if self.config.remediation.guard_modified else None,
                tally=self.report.outcomes,
            )
            yield task

    async def run(self) -> RunReport:
        """Remediate the whole bucket.

        Raises:
            StoreSetupError: If the bucket cannot be reached.
        """
        bucket = self.config.store.bucket
        report = self.report

        listing = self.store_factory()
        await listing.init(verify=True)

        start = time.perf_counter()
        self.started_at = datetime.now(timezone.utc)
        logger.info("remediation of bucket %s started", bucket)

        async def on_complete(tasks: SchedulerReport) -> None:
            report.elapsed = time.perf_counter() - start
            logger.info(
                "remediation of bucket %s completed in %.3f milliseconds",
                bucket,
                report.elapsed * 1000,
            )
            try:
                report.objects_after = await listing.count()
            except Exception:
                logger.exception("failed to count objects in bucket %s", bucket)
                return
            logger.info("%d objects in bucket %s after remediation", report.objects_after, bucket)

        source = self.tasks(listing)
        try:
            self.scheduler = IteratingTaskScheduler(
                self.config.remediation.parallelism,
                source,
                on_complete=on_complete,
                shutdown_timeout=self.config.remediation.shutdown_timeout,
            )
            if report.interrupted:
                self.scheduler.request_stop()
            report.tasks = await self.scheduler.run()
        finally:
            await source.aclose()
            await listing.close()

        return report

    def request_stop(self) -> None:
        """Stop scheduling new tasks; in-flight tasks finish or time out."""
        self.report.interrupted = True
        if self.scheduler is not None:
            self.scheduler.request_stop()


async def run_remediation(
    config: RekeyConfig,
    store_factory: StoreFactory | None = None,
    audit: AuditLog | None = None,
    stop_signals: tuple[signal.Signals, ...] = (),
) -> RunReport:
    """Load the mapping inputs and remediate the configured bucket.

    The lookup table, if any, is cleared when the run ends.

    Args:
        config: The run configuration.
        store_factory: Creates stores; defaults to the backend selected by
            config.store.
        audit: Audit sink; defaults to the ``rekey.audit`` logger.
        stop_signals: Signals that stop scheduling and drain the run.

    Returns:
        The RunReport of the finished run.
    """
    table = build_lookup_table(config)
    mapper = create_mapper(config.remediation, table)
    remediation = Remediation(config, mapper, store_factory=store_factory, audit=audit)

    loop = asyncio.get_running_loop()
    for sig in stop_signals:
        loop.add_signal_handler(sig, remediation.request_stop)
    try:
        return await remediation.run()
    finally:
        for sig in stop_signals:
            loop.remove_signal_handler(sig)
        if table is not None:
            table.clear()
