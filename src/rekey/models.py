"""Data model types for rekey.

These dataclasses represent the objects read from a bucket listing, the
byte ranges used by a multipart copy, and the per-object outcome recorded
by a remediation run.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum
from typing import Any


def normalize_etag(etag: str | None) -> str:
    """Strip the surrounding double quotes S3 puts around ETag values."""
    if not etag:
        return ""
    return etag.strip('"')


def is_multipart_etag(etag: str | None) -> bool:
    """Return True if the ETag has the ``<digest>-<partCount>`` form."""
    return "-" in normalize_etag(etag)


def etag_part_count(etag: str | None) -> int | None:
    """Return the part count encoded in a multipart ETag.

    Returns:
        The integer after the dash, or None if the ETag is not a
        multipart fingerprint or the suffix is not a number.
    """
    value = normalize_etag(etag)
    _, sep, suffix = value.rpartition("-")
    if not sep or not suffix.isdigit():
        return None
    return int(suffix)


# A single-request copy of an empty object always yields the MD5 of no bytes.
EMPTY_ETAG = hashlib.md5(b"").hexdigest()


def expected_copy_etag(source: "ObjectRecord") -> str:
    """Return the ETag a single-request copy of source must produce.

    Normally this is the source ETag itself. A zero-byte object uploaded
    in one multipart part carries a ``<digest>-1`` ETag that a plain copy
    cannot reproduce; its copy is checked against the empty-content MD5.
    """
    if source.size == 0 and is_multipart_etag(source.etag):
        return EMPTY_ETAG
    return normalize_etag(source.etag)


class RenameOutcome(IntEnum):
    """Result of remediating one object.

    The integer values are the status codes written to the audit log.
    """

    SUCCESS = 0
    SKIPPED = 1
    UNMAPPABLE = 2
    ALREADY_CORRECT = 3
    CONCURRENT_MODIFICATION = 5
    CLIENT_ERROR = -1
    ETAG_MISMATCH = -2

    @property
    def label(self) -> str:
        """Lower-case name used as a metric label."""
        return self.name.lower()


@dataclass(frozen=True)
class ObjectRecord:
    """Snapshot of an object taken from a listing page.

    Attributes:
        key: The object key.
        etag: The object's fingerprint as returned by the store (may be quoted).
        size: Size in bytes.
        last_modified: Last-modified timestamp, if the listing provided one.
    """

    key: str
    etag: str = ""
    size: int = 0
    last_modified: datetime | None = None

    @classmethod
    def from_listing(cls, entry: dict[str, Any]) -> "ObjectRecord":
        """Build a record from one ``Contents`` entry of ``list_objects_v2``."""
        return cls(
            key=entry["Key"],
            etag=entry.get("ETag", ""),
            size=int(entry.get("Size", 0)),
            last_modified=entry.get("LastModified"),
        )


@dataclass(frozen=True)
class ObjectPart:
    """One fixed-size byte range of a source object being copied.

    Attributes:
        number: 1-based part number.
        offset: Byte offset of the first byte of the range.
    """

    number: int
    offset: int

    def copy_range(self, size: int, max_part_size: int) -> str:
        """Return the inclusive ``bytes=start-end`` range for this part."""
        end = min(self.offset + max_part_size - 1, size - 1)
        return f"bytes={self.offset}-{end}"


@dataclass(frozen=True)
class CompletedPart:
    """A part that was copied successfully.

    Attributes:
        number: The part number.
        etag: The normalized ETag returned for the part.
    """

    number: int
    etag: str

    def to_manifest(self) -> dict[str, Any]:
        """Render the entry expected by ``complete_multipart_upload``."""
        return {"ETag": self.etag, "PartNumber": self.number}


def split_parts(size: int, max_part_size: int) -> list[ObjectPart]:
    """Partition ``[0, size)`` into contiguous ranges of ``max_part_size``.

    Args:
        size: Total object size in bytes.
        max_part_size: Size of every part except possibly the last.

    Returns:
        Parts numbered from 1; ``ceil(size / max_part_size)`` of them.

    Raises:
        ValueError: If max_part_size is not positive.
    """
    if max_part_size <= 0:
        raise ValueError(f"max_part_size must be positive, got {max_part_size}")
    return [
        ObjectPart(number=number, offset=offset)
        for number, offset in enumerate(range(0, size, max_part_size), 1)
    ]
