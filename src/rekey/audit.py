"""Audit records written once per remediated object."""

from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass

from rekey.logging_config import AUDIT_LOGGER_NAME
from rekey.models import RenameOutcome

AUDIT_FIELDS = (
    "source_key",
    "destination_key",
    "source_etag",
    "source_size",
    "outcome_code",
    "elapsed_ms",
)


@dataclass(frozen=True)
class AuditRecord:
    """What happened to one object.

    Attributes:
        source_key: The key the object had when it was listed.
        destination_key: The resolved target key, or None if unmappable.
        source_etag: The listed fingerprint, quotes stripped.
        source_size: The listed size in bytes.
        outcome: The recorded outcome.
        elapsed_ms: Wall time spent on this object.
    """

    source_key: str
    destination_key: str | None
    source_etag: str
    source_size: int
    outcome: RenameOutcome
    elapsed_ms: float

    def to_row(self) -> list[str]:
        return [
            self.source_key,
            self.destination_key or "",
            self.source_etag,
            str(self.source_size),
            str(int(self.outcome)),
            f"{self.elapsed_ms:.3f}",
        ]

    def to_line(self) -> str:
        """Render the record as a single CSV line without a trailing newline."""
        buf = io.StringIO()
        csv.writer(buf, lineterminator="").writerow(self.to_row())
        return buf.getvalue()


class AuditLog:
    """Sink for audit records.

    Records are emitted through the ``rekey.audit`` logger. Logging handlers
    serialize emission, so concurrent tasks may share one AuditLog.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger(AUDIT_LOGGER_NAME)

    def write(self, record: AuditRecord) -> None:
        self.logger.info(record.to_line())
