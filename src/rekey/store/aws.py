"""Amazon S3 object store for rekey.

Talks to one S3 (or S3-compatible) bucket through aiobotocore. Renames are
server-side: ``copy_object`` for small objects, and a multipart upload
assembled from ``upload_part_copy`` ranges for large ones. Nothing is
downloaded.

Credentials are resolved via the standard AWS credential chain
(env vars, ~/.aws/credentials, IAM role, etc.) unless given explicitly.
"""

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

from aiobotocore.config import AioConfig
from aiobotocore.session import AioSession
from botocore.exceptions import BotoCoreError, ClientError

from rekey.errors import StoreSetupError
from rekey.models import (
    CompletedPart,
    ObjectPart,
    ObjectRecord,
    RenameOutcome,
    etag_part_count,
    expected_copy_etag,
    is_multipart_etag,
    normalize_etag,
    split_parts,
)

if TYPE_CHECKING:
    from rekey.config import StoreConfig

logger = logging.getLogger(__name__)

# Errors that mean "the store said no" or "the store could not be reached".
_STORE_ERRORS = (ClientError, BotoCoreError)


class S3Bucket:
    """Object store scoped to a single S3 bucket.

    Attributes:
        bucket_name: The bucket to remediate.
        region: The AWS region for the bucket.
        max_keys: Maximum keys per listing page.
        max_part_size: Byte size of each multipart copy range.
        multipart_threshold: Objects at least this large are copied in parts.
        skip_multipart: Skip objects that need a multipart copy instead of copying them.
        max_part_concurrency: Concurrent part copies per rename (0 = unbounded).
    """

    def __init__(
        self,
        bucket_name: str,
        region: str = "us-east-1",
        endpoint_url: str = "",
        use_path_style: bool = False,
        access_key_id: str = "",
        secret_access_key: str = "",
        max_keys: int = 1000,
        max_part_size: int = 50 * 1024 * 1024,
        multipart_threshold: int = 100 * 1024 * 1024,
        skip_multipart: bool = False,
        max_part_concurrency: int = 10,
        connect_timeout: float = 60.0,
        read_timeout: float = 60.0,
    ) -> None:
        self.bucket_name = bucket_name
        self.region = region
        self.endpoint_url = endpoint_url
        self.use_path_style = use_path_style
        self.access_key_id = access_key_id
        self.secret_access_key = secret_access_key
        self.max_keys = max_keys
        self.max_part_size = max_part_size
        self.multipart_threshold = multipart_threshold
        self.skip_multipart = skip_multipart
        self.max_part_concurrency = max_part_concurrency
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self._session = AioSession()
        self._client = None
        self._client_ctx = None

    @classmethod
    def from_config(cls, config: "StoreConfig") -> "S3Bucket":
        """Create an S3Bucket from the store section of the configuration."""
        return cls(
            bucket_name=config.bucket,
            region=config.region,
            endpoint_url=config.endpoint_url,
            use_path_style=config.use_path_style,
            access_key_id=config.access_key_id,
            secret_access_key=config.secret_access_key,
            max_keys=config.max_keys,
            max_part_size=config.max_part_size,
            multipart_threshold=config.multipart_threshold,
            skip_multipart=config.skip_multipart,
            max_part_concurrency=config.max_part_concurrency,
            connect_timeout=config.connect_timeout,
            read_timeout=config.read_timeout,
        )

    async def init(self, verify: bool = True) -> None:
        """Create the aiobotocore S3 client and optionally verify the bucket.

        Args:
            verify: Call head_bucket to make sure the bucket is reachable.

        Raises:
            StoreSetupError: If the endpoint is malformed or the bucket
                does not exist or is inaccessible.
        """
        client_kwargs: dict = {
            "region_name": self.region,
            "config": AioConfig(
                connect_timeout=self.connect_timeout,
                read_timeout=self.read_timeout,
                max_pool_connections=max(10, self.max_part_concurrency),
                s3={"addressing_style": "path"} if self.use_path_style else None,
            ),
        }
        if self.endpoint_url:
            client_kwargs["endpoint_url"] = self.endpoint_url

        # Use explicit credentials if provided, otherwise fall back to chain
        if self.access_key_id and self.secret_access_key:
            session = AioSession()
            session.set_credentials(self.access_key_id, self.secret_access_key)
            self._session = session

        try:
            self._client_ctx = self._session.create_client("s3", **client_kwargs)
            self._client = await self._client_ctx.__aenter__()
        except ValueError as e:
            # botocore rejects malformed endpoint URLs with ValueError
            self._client = None
            self._client_ctx = None
            raise StoreSetupError(self.bucket_name, str(e)) from e

        if not verify:
            return

        try:
            await self._client.head_bucket(Bucket=self.bucket_name)
        except _STORE_ERRORS as e:
            if isinstance(e, ClientError):
                reason = e.response.get("Error", {}).get("Code", "")
            else:
                reason = str(e)
            await self.close()
            raise StoreSetupError(self.bucket_name, reason) from e

        logger.info(
            "S3 bucket initialized: bucket=%s region=%s endpoint='%s'",
            self.bucket_name,
            self.region,
            self.endpoint_url,
        )

    async def close(self) -> None:
        """Close the aiobotocore client. Errors are logged, not raised."""
        if self._client_ctx is None:
            return
        ctx = self._client_ctx
        self._client = None
        self._client_ctx = None
        try:
            await ctx.__aexit__(None, None, None)
        except Exception:
            logger.exception("Error while closing S3 client for bucket %s", self.bucket_name)

    async def list(self) -> AsyncIterator[list[ObjectRecord]]:
        """Yield every object in the bucket, one non-empty listing page at a time."""
        paginator = self._client.get_paginator("list_objects_v2")
        async for page in paginator.paginate(
            Bucket=self.bucket_name,
            PaginationConfig={"PageSize": self.max_keys},
        ):
            contents = page.get("Contents", [])
            if not contents:
                continue
            yield [ObjectRecord.from_listing(entry) for entry in contents]

    async def count(self) -> int:
        """Count all objects in the bucket."""
        total = 0
        async for page in self.list():
            total += len(page)
        return total

    def requires_multipart(self, source: ObjectRecord) -> bool:
        """Return True if source must be copied with the multipart protocol.

        Objects uploaded in parts carry a ``<digest>-<n>`` ETag that a
        single copy_object can never reproduce, so they are copied in parts
        regardless of size.
        """
        if source.size == 0:
            return False
        return source.size >= self.multipart_threshold or is_multipart_etag(source.etag)

    async def rename(self, source: ObjectRecord, destination_key: str) -> RenameOutcome:
        """Copy, verify, then delete the source object.

        On an ETag mismatch the destination copy is left in place for
        inspection and the source is kept.
        """
        if destination_key == source.key:
            return RenameOutcome.ALREADY_CORRECT

        multipart = self.requires_multipart(source)
        if multipart and self.skip_multipart:
            logger.info(
                "multipart copy disabled, skipping %s (%d bytes)", source.key, source.size
            )
            return RenameOutcome.SKIPPED

        try:
            if multipart:
                verified = await self._multipart_copy(source, destination_key)
            else:
                verified = await self._copy(source, destination_key)
        except _STORE_ERRORS:
            logger.exception("Error while attempting to copy %s to %s", source.key, destination_key)
            return RenameOutcome.CLIENT_ERROR

        if not verified:
            return RenameOutcome.ETAG_MISMATCH

        logger.debug("copy success: source object %s to destination object %s", source.key, destination_key)

        try:
            await self._client.delete_object(Bucket=self.bucket_name, Key=source.key)
        except _STORE_ERRORS:
            logger.exception("Error while attempting to delete %s", source.key)
            return RenameOutcome.CLIENT_ERROR

        return RenameOutcome.SUCCESS

    async def _copy(self, source: ObjectRecord, destination_key: str) -> bool:
        """Single-request server-side copy. Returns whether the ETags match."""
        resp = await self._client.copy_object(
            Bucket=self.bucket_name,
            Key=destination_key,
            CopySource={"Bucket": self.bucket_name, "Key": source.key},
        )
        source_etag = expected_copy_etag(source)
        destination_etag = normalize_etag(resp.get("CopyObjectResult", {}).get("ETag", ""))
        if destination_etag != source_etag:
            logger.error(
                "copy failure: source etag %s does not match destination etag %s",
                source_etag,
                destination_etag,
            )
            return False
        return True

    async def _multipart_copy(self, source: ObjectRecord, destination_key: str) -> bool:
        """Copy source in byte ranges and assemble them at destination_key.

        Parts are copied concurrently, at most ``max_part_concurrency`` at a
        time, and completed in ascending part order. The upload is aborted
        if any step fails.

        Returns:
            Whether the completed ETag encodes the number of parts copied.
        """
        create = await self._client.create_multipart_upload(
            Bucket=self.bucket_name, Key=destination_key
        )
        upload_id = create["UploadId"]
        parts = split_parts(source.size, self.max_part_size)

        limiter = (
            asyncio.Semaphore(self.max_part_concurrency)
            if self.max_part_concurrency > 0
            else contextlib.nullcontext()
        )

        try:
            results = await asyncio.gather(
                *(
                    self._copy_part(source, destination_key, upload_id, part, limiter)
                    for part in parts
                ),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, BaseException):
                    raise result

            completed = sorted(results, key=lambda p: p.number)
            resp = await self._client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=destination_key,
                UploadId=upload_id,
                MultipartUpload={"Parts": [p.to_manifest() for p in completed]},
            )
        except Exception:
            try:
                await self._client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=destination_key,
                    UploadId=upload_id,
                )
            except Exception:
                logger.warning("Failed to abort multipart upload %s for %s", upload_id, destination_key)
            raise

        destination_etag = normalize_etag(resp.get("ETag", ""))
        if etag_part_count(destination_etag) != len(parts):
            logger.error(
                "copy failure: destination etag %s did not match expected number of parts %d",
                destination_etag,
                len(parts),
            )
            return False
        return True

    async def _copy_part(
        self,
        source: ObjectRecord,
        destination_key: str,
        upload_id: str,
        part: ObjectPart,
        limiter,
    ) -> CompletedPart:
        async with limiter:
            resp = await self._client.upload_part_copy(
                Bucket=self.bucket_name,
                Key=destination_key,
                UploadId=upload_id,
                PartNumber=part.number,
                CopySource={"Bucket": self.bucket_name, "Key": source.key},
                CopySourceRange=part.copy_range(source.size, self.max_part_size),
            )
        return CompletedPart(
            number=part.number,
            etag=normalize_etag(resp["CopyPartResult"]["ETag"]),
        )
