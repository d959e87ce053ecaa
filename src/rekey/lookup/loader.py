"""Line-oriented loader for lookup table input files."""

import itertools
import logging
import re
from collections.abc import Iterator
from pathlib import Path

from rekey.errors import LookupLoadError

logger = logging.getLogger(__name__)


class FileLoader:
    """Reads ``(id, fragment)`` pairs from a text file.

    Each line after the first ``skip`` lines is matched against ``pattern``
    in full; group 1 is the id and group 2 the key fragment. Lines that do
    not match are ignored.

    Attributes:
        path: The input file.
        pattern: Compiled line pattern with two groups.
        skip: Number of header lines to skip.
    """

    def __init__(self, path: str | Path, pattern: str, skip: int = 0) -> None:
        self.path = Path(path)
        try:
            self.pattern = re.compile(pattern)
        except re.error as exc:
            raise LookupLoadError(f"Invalid lookup pattern {pattern!r}: {exc}") from exc
        self.skip = skip
        if self.pattern.groups < 2:
            raise LookupLoadError(
                f"Lookup pattern must define two groups, got {self.pattern.groups}: {pattern!r}"
            )

    def load(self) -> Iterator[tuple[str, str]]:
        """Yield id/fragment pairs in file order.

        Raises:
            LookupLoadError: If the file cannot be opened.
        """
        logger.info(
            "loading from file '%s' with pattern '%s' skipping %d lines",
            self.path,
            self.pattern.pattern,
            self.skip,
        )
        try:
            fh = open(self.path, "r", encoding="utf-8")
        except OSError as exc:
            raise LookupLoadError(f"Failed to load file {self.path}: {exc}") from exc

        with fh:
            for line in itertools.islice(fh, self.skip, None):
                match = self.pattern.fullmatch(line.rstrip("\r\n"))
                if match:
                    yield match.group(1), match.group(2)
