import logging
from datetime import timedelta
from typing import BinaryIO, Optional
from urllib.parse import urlparse

import urllib3
from minio import Minio
from minio.error import S3Error

from storage_gateway.backends.base import (
    StorageBackend,
    StorageContext,
    StorageResult,
    split_physical_path,
)
from storage_gateway.models import BackendType, StorageNode, StorageReference
from storage_gateway.utils.io import run_io_bound, spool_stream

logger = logging.getLogger(__name__)
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

DEFAULT_REGION = "us-east-1"
# SDK-ошибки, которые превращаются в BackendError
_SDK_ERRORS = (S3Error, urllib3.exceptions.HTTPError, OSError, ValueError)


def _endpoint(url: str) -> tuple[str, bool]:
    """'https://minio:9000' -> ('minio:9000', True); без схемы считаем http."""
    parsed = urlparse(url if "://" in url else f"http://{url}")
    return parsed.netloc, parsed.scheme == "https"


class MinioBackend(StorageBackend):
    """Object store A. Физический путь: bucket/key."""

    backend_type = BackendType.MINIO

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._clients: dict[tuple[str, str], Minio] = {}
        self._known_buckets: set[tuple[str, str]] = set()

    async def _client(self, node: StorageNode, public: bool = False) -> Minio:
        url = node.public_url if public and node.public_url else node.endpoint_url
        cache_key = (node.node_id, url)
        client = self._clients.get(cache_key)
        if client is None:
            access_key, secret_key = await self._node_credentials(node)
            endpoint, secure = _endpoint(url)
            http_client = None
            if secure:
                http_client = urllib3.PoolManager(cert_reqs="CERT_NONE")
            client = Minio(
                endpoint=endpoint,
                access_key=access_key,
                secret_key=secret_key,
                secure=secure,
                # С явным регионом presign не ходит в сеть за bucket location
                region=node.region or DEFAULT_REGION,
                http_client=http_client,
            )
            self._clients[cache_key] = client
        return client

    async def _ensure_bucket(self, client: Minio, node: StorageNode, bucket: str):
        if (node.node_id, bucket) in self._known_buckets:
            return
        exists = await run_io_bound(client.bucket_exists, bucket)
        if not exists:
            logger.info("Creating bucket %s on node %s", bucket, node.node_id)
            try:
                await run_io_bound(client.make_bucket, bucket)
            except S3Error as e:
                # параллельный запрос мог успеть создать бакет
                if e.code not in ("BucketAlreadyOwnedByYou", "BucketAlreadyExists"):
                    raise
        self._known_buckets.add((node.node_id, bucket))

    async def check_connection(self, node: StorageNode) -> None:
        """Проверяет соединение с MinIO и наличие бакета ноды."""
        logger.debug("Checking MinIO node %s...", node.node_id)
        try:
            client = await self._client(node)
            if node.bucket:
                await run_io_bound(client.bucket_exists, node.bucket)
            else:
                await run_io_bound(client.list_buckets)
        except _SDK_ERRORS as e:
            raise self._error("MinIO connection check failed", node.node_id, e) from None

    async def store(self, stream: BinaryIO, context: StorageContext) -> StorageResult:
        node = context.target_node
        bucket = context.bucket or node.bucket
        if not bucket:
            raise self._error("No bucket configured for MinIO node", node.node_id)
        key = context.object_key
        try:
            client = await self._client(node)
            await self._ensure_bucket(client, node, bucket)
            result = await run_io_bound(
                client.put_object,
                bucket,
                key,
                stream,
                context.file_size,
                content_type=context.content_type,
            )
        except _SDK_ERRORS as e:
            raise self._error("Failed to store object", node.node_id, e) from None
        logger.debug("Stored %d bytes on MinIO node %s", context.file_size, node.node_id)
        return StorageResult(
            physical_path=f"{bucket}/{key}",
            bucket=bucket,
            etag=result.etag,
            bytes_written=context.file_size,
            region=node.region,
        )

    async def retrieve(self, reference: StorageReference, decrypted_path: str) -> BinaryIO:
        node = await self._resolve_node(reference)
        bucket, key = split_physical_path(decrypted_path)
        client = await self._client(node)

        def _download():
            resp = client.get_object(bucket, key)
            try:
                buffer, _ = spool_stream(resp, self._spool_max_memory)
                return buffer
            finally:
                resp.close()
                resp.release_conn()

        try:
            return await run_io_bound(_download)
        except _SDK_ERRORS as e:
            raise self._error("Failed to retrieve object", node.node_id, e) from None

    async def _delete(self, node: StorageNode, decrypted_path: str) -> None:
        bucket, key = split_physical_path(decrypted_path)
        try:
            client = await self._client(node)
            await run_io_bound(client.remove_object, bucket, key)
        except _SDK_ERRORS as e:
            raise self._error("Failed to delete object", node.node_id, e) from None

    async def exists(self, reference: StorageReference, decrypted_path: str) -> bool:
        node = await self._resolve_node(reference)
        bucket, key = split_physical_path(decrypted_path)
        try:
            client = await self._client(node)
            await run_io_bound(client.stat_object, bucket, key)
            return True
        except S3Error as e:
            if e.code in ("NoSuchKey", "NoSuchBucket", "NoSuchObject"):
                return False
            raise self._error("Failed to stat object", node.node_id, e) from None
        except _SDK_ERRORS as e:
            raise self._error("Failed to stat object", node.node_id, e) from None

    async def generate_presigned_url(
        self, reference: StorageReference, decrypted_path: str, expires_in: int
    ) -> Optional[str]:
        """Временная ссылка; подписывается под публичный адрес ноды, если он задан."""
        node = await self._resolve_node(reference)
        bucket, key = split_physical_path(decrypted_path)
        try:
            client = await self._client(node, public=True)
            return await run_io_bound(
                client.presigned_get_object,
                bucket,
                key,
                expires=timedelta(seconds=expires_in),
            )
        except _SDK_ERRORS as e:
            raise self._error("Failed to presign object", node.node_id, e) from None

