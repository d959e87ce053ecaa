"""Remediation task: renames the objects of one listing page."""

from __future__ import annotations

import logging
import time
import uuid
from collections import Counter
from collections.abc import Iterable
from datetime import datetime
from typing import TYPE_CHECKING

from rekey import metrics
from rekey.audit import AuditLog, AuditRecord
from rekey.mapping.base import KeyMapper, Verdict
from rekey.models import ObjectRecord, RenameOutcome, normalize_etag

if TYPE_CHECKING:
    from rekey.store.backend import ObjectStore

logger = logging.getLogger(__name__)


class RemediationTask:
    """Remediates a fixed partition of objects against its own store.

    Objects are processed one at a time in list order, so the audit lines
    of one task appear in a stable order. Every object yields exactly one
    outcome and one audit record.

    Attributes:
        id: Unique diagnostic identifier.
        objects: The partition, never modified after construction.
        store: The object store owned by this task.
        mapper: The key mapper shared by all tasks of a run.
        started_at: Run start time; objects modified after it are left alone.
        outcomes: Outcome per object, in processing order.
        tally: Optional run-wide counter updated with every outcome.
    """

    def __init__(
        self,
        store: ObjectStore,
        mapper: KeyMapper,
        objects: Iterable[ObjectRecord],
        audit: AuditLog | None = None,
        started_at: datetime | None = None,
        tally: Counter | None = None,
    ) -> None:
        self.id = str(uuid.uuid4())
        self.store = store
        self.mapper = mapper
        self.objects: tuple[ObjectRecord, ...] = tuple(objects)
        self.audit = audit or AuditLog()
        self.started_at = started_at
        self.outcomes: list[RenameOutcome] = []
        self.tally = tally

    def __repr__(self) -> str:
        return f"RemediationTask(id={self.id!r}, objects={len(self.objects)})"

    async def execute(self) -> RemediationTask:
        """Remediate every object of the partition.

        Returns:
            The task itself, so the scheduler can complete it.
        """
        for obj in self.objects:
            await self.remediate(obj)
        return self

    async def complete(self) -> None:
        """Release the task's store."""
        await self.store.close()

    async def remediate(self, obj: ObjectRecord) -> RenameOutcome:
        """Remediate one object and record the outcome.

        Returns:
            The recorded outcome.
        """
        start = time.perf_counter()
        destination: str | None = None

        if self._modified_after_start(obj):
            logger.warning(
                "object %s modified at %s after run start %s, skipping",
                obj.key,
                obj.last_modified,
                self.started_at,
            )
            outcome = RenameOutcome.CONCURRENT_MODIFICATION
        else:
            result = self.mapper.map(obj.key)
            destination = result.destination
            if result.verdict is Verdict.UNMAPPABLE:
                outcome = RenameOutcome.UNMAPPABLE
            elif result.verdict is Verdict.ALREADY_CORRECT:
                outcome = RenameOutcome.ALREADY_CORRECT
            elif result.verdict is Verdict.AUDIT:
                outcome = RenameOutcome.SKIPPED
            else:
                outcome = await self._rename(obj, destination)

        elapsed_ms = (time.perf_counter() - start) * 1000
        self._record(obj, destination, outcome, elapsed_ms)
        return outcome

    def _modified_after_start(self, obj: ObjectRecord) -> bool:
        if self.started_at is None or obj.last_modified is None:
            return False
        return obj.last_modified > self.started_at

    async def _rename(self, obj: ObjectRecord, destination: str) -> RenameOutcome:
        try:
            return await self.store.rename(obj, destination)
        except Exception:
            logger.exception("unexpected error renaming %s to %s", obj.key, destination)
            return RenameOutcome.CLIENT_ERROR

    def _record(
        self,
        obj: ObjectRecord,
        destination: str | None,
        outcome: RenameOutcome,
        elapsed_ms: float,
    ) -> None:
        self.outcomes.append(outcome)
        if self.tally is not None:
            self.tally[outcome] += 1
        self.audit.write(
            AuditRecord(
                source_key=obj.key,
                destination_key=destination,
                source_etag=normalize_etag(obj.etag),
                source_size=obj.size,
                outcome=outcome,
                elapsed_ms=elapsed_ms,
            )
        )
        metrics.record_outcome(
            outcome.label,
            size=obj.size,
            copied=outcome is RenameOutcome.SUCCESS,
        )
        logger.debug(
            "remediated %s",
            obj.key,
            extra={
                "task_id": self.id,
                "key": obj.key,
                "outcome": outcome.label,
                "elapsed_ms": round(elapsed_ms, 3),
            },
        )
