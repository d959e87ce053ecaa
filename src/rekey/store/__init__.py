"""Object store backends for rekey."""

from collections.abc import Callable
from typing import TYPE_CHECKING

from rekey.store.backend import ObjectStore

if TYPE_CHECKING:
    from rekey.config import StoreConfig

__all__ = ["ObjectStore", "StoreFactory", "create_store_factory"]

StoreFactory = Callable[[], ObjectStore]


def create_store_factory(config: "StoreConfig") -> StoreFactory:
    """Create a store factory based on configuration.

    The runner calls the factory once for the listing and once per task,
    so every store it returns must reach the same bucket. For the memory
    backend all stores therefore share one MemoryBucketState.

    Args:
        config: The store configuration.

    Returns:
        A callable returning a fresh, uninitialised ObjectStore.

    Raises:
        ValueError: If the backend is unknown.
    """
    backend = config.backend

    if backend == "s3":
        from rekey.store.aws import S3Bucket

        return lambda: S3Bucket.from_config(config)

    elif backend == "memory":
        from rekey.store.memory import MemoryBucket, MemoryBucketState

        state = MemoryBucketState()
        return lambda: MemoryBucket(
            state=state,
            bucket_name=config.bucket,
            max_keys=config.max_keys,
            max_part_size=config.max_part_size,
            multipart_threshold=config.multipart_threshold,
            skip_multipart=config.skip_multipart,
        )

    raise ValueError(f"Unknown store backend: {backend}")
