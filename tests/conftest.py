"""Shared pytest fixtures for rekey tests.

Stores are in-memory MemoryBucket instances or S3Bucket instances with a
mocked aiobotocore client, so no test needs network access.
"""

import logging

import pytest

from rekey.audit import AuditRecord
from rekey.config import RekeyConfig, RemediationConfig, StoreConfig
from rekey.logging_config import AUDIT_LOGGER_NAME
from rekey.store.memory import MemoryBucket, MemoryBucketState


class RecordingAudit:
    """AuditLog stand-in that keeps records in memory."""

    def __init__(self) -> None:
        self.records: list[AuditRecord] = []

    def write(self, record: AuditRecord) -> None:
        self.records.append(record)

    def by_key(self) -> dict[str, AuditRecord]:
        return {r.source_key: r for r in self.records}


@pytest.fixture
def audit() -> RecordingAudit:
    return RecordingAudit()


@pytest.fixture
def state() -> MemoryBucketState:
    return MemoryBucketState()


@pytest.fixture
def config() -> RekeyConfig:
    """A small-scale configuration: tiny pages and low parallelism."""
    return RekeyConfig(
        store=StoreConfig(bucket="delivery", max_keys=2),
        remediation=RemediationConfig(parallelism=2, shutdown_timeout=5.0),
    )


@pytest.fixture
def store_factory(state: MemoryBucketState, config: RekeyConfig):
    """Create MemoryBucket views over the shared state, remembering each one."""
    created: list[MemoryBucket] = []

    def factory() -> MemoryBucket:
        store = MemoryBucket(
            state=state,
            bucket_name=config.store.bucket,
            max_keys=config.store.max_keys,
            max_part_size=config.store.max_part_size,
            multipart_threshold=config.store.multipart_threshold,
            skip_multipart=config.store.skip_multipart,
        )
        created.append(store)
        return store

    factory.created = created
    return factory


@pytest.fixture
def restore_logging():
    """Put root and audit logger handlers back after a test reconfigures them."""
    root = logging.getLogger()
    audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)
    saved = (root.level, root.handlers[:], audit_logger.handlers[:], audit_logger.propagate)
    yield
    for handler in audit_logger.handlers[:]:
        if handler not in saved[2]:
            handler.close()
    root.setLevel(saved[0])
    root.handlers[:] = saved[1]
    audit_logger.handlers[:] = saved[2]
    audit_logger.propagate = saved[3]
