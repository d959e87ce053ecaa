"""Key mapping strategies for rekey."""

from typing import TYPE_CHECKING

from rekey.mapping.base import KeyMapper, MappingResult, Verdict
from rekey.mapping.lookup import LookupTableMapper
from rekey.mapping.reversed_id import ReversedIdMapper

if TYPE_CHECKING:
    from rekey.config import RemediationConfig
    from rekey.lookup.table import LookupTable

__all__ = [
    "create_mapper",
    "KeyMapper",
    "LookupTableMapper",
    "MappingResult",
    "ReversedIdMapper",
    "Verdict",
]


def create_mapper(
    config: "RemediationConfig", table: "LookupTable | None" = None
) -> KeyMapper:
    """Create the key mapper selected by configuration.

    Args:
        config: The remediation configuration.
        table: The loaded lookup table, required for the lookup strategy.

    Returns:
        A KeyMapper instance.

    Raises:
        ValueError: If the lookup strategy is selected without a table.
    """
    if config.strategy == "lookup":
        if table is None:
            raise ValueError("lookup strategy requires a loaded lookup table")
        return LookupTableMapper(table)
    return ReversedIdMapper(verify_only=config.verify_only)
