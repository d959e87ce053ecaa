"""In-memory lookup table for the table-driven key mapping."""

import logging
import time
from collections.abc import Iterable

logger = logging.getLogger(__name__)


class LookupTable:
    """Maps numeric id strings to key fragments.

    The table is filled once before remediation starts and only read
    afterwards, so concurrent tasks may share it without locking. It is
    owned by the run and passed to the mapper explicitly.
    """

    def __init__(self, entries: dict[str, str] | None = None) -> None:
        self._entries: dict[str, str] = dict(entries or {})
        self._fragments: set[str] | None = None

    def load(self, pairs: Iterable[tuple[str, str]]) -> int:
        """Add every ``(id, fragment)`` pair. Later duplicates overwrite earlier ones.

        Returns:
            The table size after loading.
        """
        start = time.perf_counter()
        for key, value in pairs:
            self._entries[key] = value
        self._fragments = None
        logger.info("%d key value pairs loaded into memory", len(self._entries))
        logger.debug("%.3f milliseconds to load in memory", (time.perf_counter() - start) * 1000)
        return len(self._entries)

    def get(self, key: str) -> str | None:
        return self._entries.get(key)

    def is_fragment(self, value: str) -> bool:
        """True if value is a fragment some id maps to, i.e. an already rewritten root."""
        if self._fragments is None:
            self._fragments = set(self._entries.values())
        return value in self._fragments

    def clear(self) -> None:
        """Drop all entries at the end of a run."""
        self._entries.clear()
        self._fragments = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries
