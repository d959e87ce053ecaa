"""In-memory object store for rekey.

Implements the ObjectStore protocol over a Python dictionary and follows the
same rename protocol as the S3 store: multipart routing, skip-multipart,
fingerprint verification and delete-after-verify. Several MemoryBucket
instances may share one backing dictionary, which mirrors one bucket seen
through several clients.

Fault injection (``fail_copy``, ``fail_delete``, ``corrupt``) lets callers
rehearse error handling without a real store.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field
from datetime import datetime

from rekey.models import (
    EMPTY_ETAG,
    ObjectRecord,
    RenameOutcome,
    etag_part_count,
    expected_copy_etag,
    is_multipart_etag,
    normalize_etag,
    split_parts,
)

logger = logging.getLogger(__name__)


class MemoryStoreError(Exception):
    """Raised by an injected fault in the memory store."""


@dataclass
class MemoryBucketState:
    """Shared contents of one in-memory bucket.

    Attributes:
        objects: key -> ObjectRecord currently stored.
        mutations: Number of copy and delete calls that changed the bucket.
        fail_copy: Keys whose copy raises.
        fail_delete: Keys whose delete raises.
        corrupt: Keys whose copy produces a wrong fingerprint.
    """

    objects: dict[str, ObjectRecord] = field(default_factory=dict)
    mutations: int = 0
    fail_copy: set[str] = field(default_factory=set)
    fail_delete: set[str] = field(default_factory=set)
    corrupt: set[str] = field(default_factory=set)

    def put(
        self,
        key: str,
        size: int = 0,
        etag: str | None = None,
        last_modified: datetime | None = None,
    ) -> ObjectRecord:
        """Store an object, deriving a plain MD5-style ETag from the key if none given."""
        if etag is None:
            etag = hashlib.md5(key.encode()).hexdigest()
        record = ObjectRecord(key=key, etag=f'"{etag}"', size=size, last_modified=last_modified)
        self.objects[key] = record
        return record


class MemoryBucket:
    """Object store backed by a MemoryBucketState.

    Attributes:
        bucket_name: Name reported in logs.
        max_keys: Maximum keys per listing page.
        max_part_size: Byte size of each multipart copy range.
        multipart_threshold: Objects at least this large are copied in parts.
        skip_multipart: Skip objects that need a multipart copy.
    """

    def __init__(
        self,
        state: MemoryBucketState | None = None,
        bucket_name: str = "memory",
        max_keys: int = 1000,
        max_part_size: int = 50 * 1024 * 1024,
        multipart_threshold: int = 100 * 1024 * 1024,
        skip_multipart: bool = False,
    ) -> None:
        self.state = state if state is not None else MemoryBucketState()
        self.bucket_name = bucket_name
        self.max_keys = max_keys
        self.max_part_size = max_part_size
        self.multipart_threshold = multipart_threshold
        self.skip_multipart = skip_multipart
        self.opened = False
        self.closed = False

    @classmethod
    def seeded(cls, keys: Iterable[str], size: int = 0, **kwargs) -> MemoryBucket:
        """Create a bucket holding one object per key."""
        state = MemoryBucketState()
        for key in keys:
            state.put(key, size=size)
        return cls(state=state, **kwargs)

    async def init(self, verify: bool = True) -> None:
        self.opened = True

    async def close(self) -> None:
        self.closed = True

    async def list(self) -> AsyncIterator[list[ObjectRecord]]:
        """Yield a snapshot of the bucket in key order, max_keys per page."""
        snapshot = [self.state.objects[k] for k in sorted(self.state.objects)]
        for start in range(0, len(snapshot), self.max_keys):
            yield snapshot[start : start + self.max_keys]

    async def count(self) -> int:
        return len(self.state.objects)

    def requires_multipart(self, source: ObjectRecord) -> bool:
        if source.size == 0:
            return False
        return source.size >= self.multipart_threshold or is_multipart_etag(source.etag)

    async def rename(self, source: ObjectRecord, destination_key: str) -> RenameOutcome:
        if destination_key == source.key:
            return RenameOutcome.ALREADY_CORRECT

        multipart = self.requires_multipart(source)
        if multipart and self.skip_multipart:
            logger.info("multipart copy disabled, skipping %s (%d bytes)", source.key, source.size)
            return RenameOutcome.SKIPPED

        try:
            if multipart:
                verified = self._multipart_copy(source, destination_key)
            else:
                verified = self._copy(source, destination_key)
        except MemoryStoreError:
            logger.exception("Error while attempting to copy %s to %s", source.key, destination_key)
            return RenameOutcome.CLIENT_ERROR

        if not verified:
            return RenameOutcome.ETAG_MISMATCH

        try:
            self._delete(source.key)
        except MemoryStoreError:
            logger.exception("Error while attempting to delete %s", source.key)
            return RenameOutcome.CLIENT_ERROR

        return RenameOutcome.SUCCESS

    def _check(self, source: ObjectRecord) -> None:
        if source.key not in self.state.objects:
            raise MemoryStoreError(f"NoSuchKey: {source.key}")
        if source.key in self.state.fail_copy:
            raise MemoryStoreError(f"injected copy failure for {source.key}")

    def _copy(self, source: ObjectRecord, destination_key: str) -> bool:
        self._check(source)
        stored = self.state.objects[source.key]
        if stored.size == 0 and is_multipart_etag(stored.etag):
            etag = EMPTY_ETAG
        else:
            etag = normalize_etag(stored.etag)
        if source.key in self.state.corrupt:
            etag = hashlib.md5(etag.encode()).hexdigest()
        self.state.put(destination_key, size=source.size, etag=etag)
        self.state.mutations += 1
        return etag == expected_copy_etag(source)

    def _multipart_copy(self, source: ObjectRecord, destination_key: str) -> bool:
        self._check(source)
        parts = split_parts(source.size, self.max_part_size)
        digest = hashlib.md5()
        for part in parts:
            digest.update(part.copy_range(source.size, self.max_part_size).encode())
        count = len(parts) + (1 if source.key in self.state.corrupt else 0)
        etag = f"{digest.hexdigest()}-{count}"
        self.state.put(destination_key, size=source.size, etag=etag)
        self.state.mutations += 1
        return etag_part_count(etag) == len(parts)

    def _delete(self, key: str) -> None:
        if key in self.state.fail_delete:
            raise MemoryStoreError(f"injected delete failure for {key}")
        self.state.objects.pop(key, None)
        self.state.mutations += 1
