"""Key mapper protocol and shared helpers."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

PATH_SEPARATOR = "/"


class Verdict(Enum):
    """What a mapper decided about a key."""

    REMAP = "remap"
    ALREADY_CORRECT = "already_correct"
    UNMAPPABLE = "unmappable"
    AUDIT = "audit"


@dataclass(frozen=True)
class MappingResult:
    """Decision for one key.

    Attributes:
        verdict: The mapper's decision.
        destination: The target key. Equal to the key itself for
            ALREADY_CORRECT and AUDIT, None for UNMAPPABLE.
    """

    verdict: Verdict
    destination: str | None = None

    @classmethod
    def remap(cls, destination: str) -> MappingResult:
        return cls(Verdict.REMAP, destination)

    @classmethod
    def already_correct(cls, key: str) -> MappingResult:
        return cls(Verdict.ALREADY_CORRECT, key)

    @classmethod
    def unmappable(cls) -> MappingResult:
        return cls(Verdict.UNMAPPABLE, None)

    @classmethod
    def audit(cls, key: str) -> MappingResult:
        return cls(Verdict.AUDIT, key)


class KeyMapper(Protocol):
    """Decides whether and how to rewrite an object key.

    Implementations must be pure and safe to call from concurrent tasks.
    """

    def map(self, key: str) -> MappingResult:
        ...


def root_segment(key: str) -> str:
    """Return the text before the first path separator, or the whole key."""
    head, _, _ = key.partition(PATH_SEPARATOR)
    return head


def is_unsigned_int(value: str) -> bool:
    """Return True if value is a non-empty string of ASCII digits."""
    return value.isascii() and value.isdigit()
