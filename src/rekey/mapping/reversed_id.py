"""Self-describing key mapping.

Prefixes each key with two 4-character directories derived from its
numeric root segment, so the result can be re-verified without a table::

    101062745/v00001/content/data/400094393.jp2
    -> 5472/6010/101062745/v00001/content/data/400094393.jp2

The root id is left-padded to 8 digits with zeros and reversed; the first
and second groups of four characters become the two prefix directories.
Reversing spreads sequential ids evenly across prefixes.
"""

import logging

from rekey.mapping.base import (
    PATH_SEPARATOR,
    MappingResult,
    is_unsigned_int,
    root_segment,
)

logger = logging.getLogger(__name__)

_PAD_WIDTH = 8
_HALF = 4


def reversed_prefix(nss: str) -> tuple[str, str]:
    """Return the two prefix directories for a numeric root id.

    Args:
        nss: The numeric root segment.

    Returns:
        The first and second 4-character groups of the reversed,
        zero-padded id.
    """
    reversed_nss = nss.rjust(_PAD_WIDTH, "0")[::-1]
    return reversed_nss[:_HALF], reversed_nss[_HALF:_PAD_WIDTH]


def verify_key(key: str) -> bool:
    """Return True if key already carries the prefix its root id implies."""
    path = key.split(PATH_SEPARATOR)
    if len(path) < 3:
        return False
    first, second, nss = path[0], path[1], path[2]
    if len(first) != _HALF or not is_unsigned_int(first):
        return False
    if len(second) != _HALF or not is_unsigned_int(second):
        return False
    if not is_unsigned_int(nss):
        return False
    return reversed_prefix(nss) == (first, second)


def map_key(key: str) -> str:
    """Return the prefixed form of key.

    Raises:
        ValueError: If the root segment is not an unsigned integer.
    """
    nss = root_segment(key)
    if not is_unsigned_int(nss):
        raise ValueError(f"root segment {nss!r} of {key!r} is not an unsigned integer")
    first, second = reversed_prefix(nss)
    return f"{first}{PATH_SEPARATOR}{second}{PATH_SEPARATOR}{key}"


class ReversedIdMapper:
    """KeyMapper for the self-describing strategy.

    Attributes:
        verify_only: Report compliance without ever proposing a rename.
    """

    def __init__(self, verify_only: bool = False) -> None:
        self.verify_only = verify_only

    def map(self, key: str) -> MappingResult:
        if verify_key(key):
            return MappingResult.already_correct(key)

        if self.verify_only:
            return MappingResult.audit(key)

        try:
            return MappingResult.remap(map_key(key))
        except ValueError:
            logger.warning("key %s has no numeric root segment, skipping", key)
            return MappingResult.unmappable()
