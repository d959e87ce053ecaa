"""Table-driven key mapping.

Replaces a legacy numeric id used as the root segment with the fragment
the lookup table resolves it to::

    0400171120/v1/content/data/400171120.png
    -> 12887296/v1/content/data/400171120.png   (given 400171120 -> 12887296)

Ids may be zero-padded in keys but are stored unpadded in the table. A key
whose root segment already is one of the table's fragments was rewritten by
an earlier run and is left alone.
"""

import logging

from rekey.lookup.table import LookupTable
from rekey.mapping.base import PATH_SEPARATOR, MappingResult, root_segment

logger = logging.getLogger(__name__)


def canonical_id(segment: str) -> str:
    """Strip leading zeros from a root segment."""
    return segment.lstrip("0")


class LookupTableMapper:
    """KeyMapper for the table-driven strategy.

    Attributes:
        table: The loaded lookup table, shared read-only across tasks.
    """

    def __init__(self, table: LookupTable) -> None:
        self.table = table

    def map(self, key: str) -> MappingResult:
        segment = root_segment(key)
        if self.table.is_fragment(segment):
            return MappingResult.already_correct(key)
        lookup_id = canonical_id(segment)

        fragment = self.table.get(lookup_id)
        if fragment is None:
            logger.warning("key %s not found in lookup table, skipping %s", lookup_id, key)
            return MappingResult.unmappable()

        if PATH_SEPARATOR not in key:
            # a bare id has no folder to replace
            logger.warning("key %s has no root folder, skipping", key)
            return MappingResult.unmappable()

        destination = key.replace(
            segment + PATH_SEPARATOR, fragment + PATH_SEPARATOR, 1
        )
        return MappingResult.remap(destination)
