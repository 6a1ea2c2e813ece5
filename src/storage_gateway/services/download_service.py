import logging
from typing import List, Optional
from uuid import UUID

from storage_gateway.backends import BackendRouter
from storage_gateway.config import GatewayOptions
from storage_gateway.exceptions import FileNotFound, InvalidStateError, UnauthorizedError
from storage_gateway.models import FileAggregate, FileDownloadResult, FileStatus, NodeStatus
from storage_gateway.ports import CachePort, EventPublisher, FileMetadataStore, NodeRegistry
from storage_gateway.security import PathEncryptionService
from storage_gateway.services.cache import owner_files_key, owner_files_pattern

logger = logging.getLogger(__name__)


class FileDownloadService:
    def __init__(
        self,
        metadata: FileMetadataStore,
        registry: NodeRegistry,
        router: BackendRouter,
        paths: PathEncryptionService,
        events: EventPublisher,
        cache: CachePort,
        options: GatewayOptions | None = None,
    ):
        self._metadata = metadata
        self._registry = registry
        self._router = router
        self._paths = paths
        self._events = events
        self._cache = cache
        self._options = options or GatewayOptions()

    async def get_file(self, file_id: UUID, owner_id: UUID) -> FileAggregate:
        """Файл владельца; чужой файл - Unauthorized, а не NotFound."""
        aggregate = await self._metadata.find_by_id(file_id)
        if aggregate is None:
            raise FileNotFound(f"File {file_id} not found")
        if not aggregate.is_owned_by(owner_id):
            logger.warning("Owner %s attempted to access file %s", owner_id, file_id)
            raise UnauthorizedError(f"Access to file {file_id} denied")
        return aggregate

    async def _downloadable(self, file_id: UUID, owner_id: UUID) -> tuple[FileAggregate, str]:
        aggregate = await self.get_file(file_id, owner_id)
        if not aggregate.can_be_downloaded():
            raise InvalidStateError(f"File {file_id} is {aggregate.metadata.status.value}")
        node = await self._registry.get(aggregate.node_id)
        if node.status != NodeStatus.ACTIVE:
            raise InvalidStateError(f"Storage node {node.node_id} is {node.status.value}")
        ref = aggregate.storage_reference
        path = await self._paths.decrypt_path(ref.encrypted_path, ref.encryption_key_ref)
        return aggregate, path

    async def download(self, file_id: UUID, owner_id: UUID) -> FileDownloadResult:
        aggregate, path = await self._downloadable(file_id, owner_id)
        stream = await self._router.retrieve(aggregate.storage_reference, path)
        logger.info("File downloaded", extra={"file_id": str(file_id), "owner_id": str(owner_id)})
        return FileDownloadResult(
            stream=stream,
            file_name=aggregate.metadata.name,
            content_type=aggregate.metadata.content_type,
            size=aggregate.metadata.size_bytes,
            checksum=aggregate.checksum,
        )

    async def generate_download_url(self, file_id: UUID, owner_id: UUID, expires_in: Optional[int] = None) -> str:
        aggregate, path = await self._downloadable(file_id, owner_id)
        expires_in = expires_in or self._options.presign_expiry_seconds
        url = await self._router.generate_presigned_url(aggregate.storage_reference, path, expires_in)
        if url is None:
            raise InvalidStateError(
                f"Backend {aggregate.backend_type.value} does not support presigned URLs"
            )
        return url

    async def list_files(self, owner_id: UUID, limit: Optional[int] = None, offset: int = 0) -> List[FileAggregate]:
        """ACTIVE-файлы владельца. Read-through кэш; промах или ошибка кэша идут в хранилище."""
        key = f"{owner_files_key(owner_id)}:{limit}:{offset}"
        cached = await self._cache.get(key)
        if cached is not None:
            return cached
        files = await self._metadata.list_by_owner(owner_id, limit=limit, offset=offset)
        await self._cache.set(key, files, self._options.cache_ttl_seconds)
        return files

    async def delete_file(self, file_id: UUID, owner_id: UUID) -> None:
        """Мягкое удаление: байты в бэкенде остаются, строка помечается DELETED."""
        aggregate = await self.get_file(file_id, owner_id)
        if aggregate.metadata.status == FileStatus.DELETED:
            return
        await self._metadata.soft_delete(file_id)
        await self._cache.delete_by_pattern(owner_files_pattern(owner_id))
        await self._events.publish_deleted(file_id, owner_id)
        logger.info("File deleted", extra={"file_id": str(file_id), "owner_id": str(owner_id)})
