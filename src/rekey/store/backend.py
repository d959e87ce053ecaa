"""Abstract object store protocol for rekey."""

from typing import AsyncIterator, Protocol

from rekey.models import ObjectRecord, RenameOutcome


class ObjectStore(Protocol):
    """Protocol defining the object store interface used by remediation.

    An ObjectStore is scoped to a single bucket. Each remediation task owns
    its own instance, so implementations need no locking around store calls.
    """

    async def init(self, verify: bool = True) -> None:
        """Open the connection to the store.

        Args:
            verify: Whether to check that the bucket is reachable.

        Raises:
            StoreSetupError: If the bucket cannot be reached.
        """
        ...

    async def close(self) -> None:
        """Release any pooled connections. Idempotent; never raises."""
        ...

    def list(self) -> AsyncIterator[list[ObjectRecord]]:
        """Iterate over every object in the bucket, one listing page at a time.

        Returns:
            An async iterator of pages, each holding at most ``max_keys``
            records, in store order.
        """
        ...

    async def count(self) -> int:
        """Count the objects in the bucket by walking every listing page."""
        ...

    async def rename(self, source: ObjectRecord, destination_key: str) -> RenameOutcome:
        """Copy source to destination_key, verify the copy, then delete source.

        Args:
            source: The object to rename.
            destination_key: The key the object should have.

        Returns:
            The outcome of the rename. Store errors are reported as
            ``CLIENT_ERROR`` rather than raised.
        """
        ...
