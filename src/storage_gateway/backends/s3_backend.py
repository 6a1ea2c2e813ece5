import logging
from typing import BinaryIO, Optional
from urllib.parse import urlparse

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from storage_gateway.backends.base import (
    StorageBackend,
    StorageContext,
    StorageResult,
    split_physical_path,
)
from storage_gateway.models import BackendType, StorageNode, StorageReference
from storage_gateway.utils.io import run_io_bound, spool_stream

logger = logging.getLogger(__name__)

DEFAULT_REGION = "us-east-1"
_SDK_ERRORS = (ClientError, BotoCoreError, OSError)
_MISSING_CODES = {"404", "NoSuchKey", "NotFound", "NoSuchBucket"}


def extract_region(endpoint_url: str | None) -> str:
    """
    Регион из адреса AWS: s3.eu-west-1.amazonaws.com, s3-eu-west-1.amazonaws.com.
    Для прочих адресов и глобального s3.amazonaws.com - us-east-1.
    """
    if not endpoint_url:
        return DEFAULT_REGION
    host = urlparse(endpoint_url if "://" in endpoint_url else f"https://{endpoint_url}").hostname or ""
    if not host.endswith(".amazonaws.com"):
        return DEFAULT_REGION
    parts = host.split(".")
    if len(parts) > 1:
        region_part = parts[1]
        if region_part.startswith("s3-"):
            return region_part[3:]
        if region_part not in ("s3", "amazonaws"):
            return region_part
    if parts[0].startswith("s3-"):
        return parts[0][3:]
    return DEFAULT_REGION


def _error_code(e: ClientError) -> str:
    return str(e.response.get("Error", {}).get("Code", ""))


class S3Backend(StorageBackend):
    """Object store B (boto3). Физический путь: bucket/key."""

    backend_type = BackendType.S3

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._clients: dict[tuple[str, str], object] = {}
        self._known_buckets: set[tuple[str, str]] = set()

    @staticmethod
    def region_for(node: StorageNode) -> str:
        return node.region or extract_region(node.endpoint_url)

    async def _client(self, node: StorageNode, public: bool = False):
        url = node.public_url if public and node.public_url else node.endpoint_url
        cache_key = (node.node_id, url)
        client = self._clients.get(cache_key)
        if client is None:
            access_key, secret_key = await self._node_credentials(node)
            # boto3.client не потокобезопасен при создании, поэтому только из event loop
            client = boto3.session.Session().client(
                "s3",
                endpoint_url=url,
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=self.region_for(node),
                config=BotoConfig(signature_version="s3v4", s3={"addressing_style": "path"}),
            )
            self._clients[cache_key] = client
        return client

    async def _ensure_bucket(self, client, node: StorageNode, bucket: str):
        if (node.node_id, bucket) in self._known_buckets:
            return
        try:
            await run_io_bound(client.head_bucket, Bucket=bucket)
        except ClientError as e:
            if _error_code(e) not in _MISSING_CODES:
                raise
            logger.info("Creating bucket %s on node %s", bucket, node.node_id)
            region = self.region_for(node)
            kwargs = {"Bucket": bucket}
            if region != DEFAULT_REGION:
                kwargs["CreateBucketConfiguration"] = {"LocationConstraint": region}
            try:
                await run_io_bound(client.create_bucket, **kwargs)
            except ClientError as ce:
                if _error_code(ce) not in ("BucketAlreadyOwnedByYou", "BucketAlreadyExists"):
                    raise
        self._known_buckets.add((node.node_id, bucket))

    async def check_connection(self, node: StorageNode) -> None:
        logger.debug("Checking S3 node %s...", node.node_id)
        try:
            client = await self._client(node)
            if node.bucket:
                await self._ensure_bucket(client, node, node.bucket)
            else:
                await run_io_bound(client.list_buckets)
        except _SDK_ERRORS as e:
            raise self._error("S3 connection check failed", node.node_id, e) from None

    async def store(self, stream: BinaryIO, context: StorageContext) -> StorageResult:
        node = context.target_node
        bucket = context.bucket or node.bucket
        if not bucket:
            raise self._error("No bucket configured for S3 node", node.node_id)
        key = context.object_key
        try:
            client = await self._client(node)
            await self._ensure_bucket(client, node, bucket)
            response = await run_io_bound(
                client.put_object,
                Bucket=bucket,
                Key=key,
                Body=stream,
                ContentLength=context.file_size,
                ContentType=context.content_type,
            )
        except _SDK_ERRORS as e:
            raise self._error("Failed to store object", node.node_id, e) from None
        logger.debug("Stored %d bytes on S3 node %s", context.file_size, node.node_id)
        return StorageResult(
            physical_path=f"{bucket}/{key}",
            bucket=bucket,
            etag=(response.get("ETag") or "").strip('"') or None,
            bytes_written=context.file_size,
            region=self.region_for(node),
        )

    async def retrieve(self, reference: StorageReference, decrypted_path: str) -> BinaryIO:
        node = await self._resolve_node(reference)
        bucket, key = split_physical_path(decrypted_path)
        client = await self._client(node)

        def _download():
            body = client.get_object(Bucket=bucket, Key=key)["Body"]
            try:
                buffer, _ = spool_stream(body, self._spool_max_memory)
                return buffer
            finally:
                body.close()

        try:
            return await run_io_bound(_download)
        except _SDK_ERRORS as e:
            raise self._error("Failed to retrieve object", node.node_id, e) from None

    async def _delete(self, node: StorageNode, decrypted_path: str) -> None:
        bucket, key = split_physical_path(decrypted_path)
        try:
            client = await self._client(node)
            await run_io_bound(client.delete_object, Bucket=bucket, Key=key)
        except _SDK_ERRORS as e:
            raise self._error("Failed to delete object", node.node_id, e) from None

    async def exists(self, reference: StorageReference, decrypted_path: str) -> bool:
        node = await self._resolve_node(reference)
        bucket, key = split_physical_path(decrypted_path)
        try:
            client = await self._client(node)
            await run_io_bound(client.head_object, Bucket=bucket, Key=key)
            return True
        except ClientError as e:
            if _error_code(e) in _MISSING_CODES:
                return False
            raise self._error("Failed to stat object", node.node_id, e) from None
        except _SDK_ERRORS as e:
            raise self._error("Failed to stat object", node.node_id, e) from None

    async def generate_presigned_url(
        self, reference: StorageReference, decrypted_path: str, expires_in: int
    ) -> Optional[str]:
        node = await self._resolve_node(reference)
        bucket, key = split_physical_path(decrypted_path)
        try:
            client = await self._client(node, public=True)
            return await run_io_bound(
                client.generate_presigned_url,
                "get_object",
                Params={"Bucket": bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except _SDK_ERRORS as e:
            raise self._error("Failed to presign object", node.node_id, e) from None
