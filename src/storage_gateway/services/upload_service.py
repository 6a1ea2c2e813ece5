import logging
from datetime import datetime, timezone
from typing import BinaryIO
from uuid import uuid4

from storage_gateway.backends import BackendRouter, StorageContext, StorageResult
from storage_gateway.config import GatewayOptions
from storage_gateway.exceptions import DuplicateChecksumError, InvalidStateError, ValidationFailure
from storage_gateway.models import (
    ChecksumAlgorithm,
    FileAggregate,
    FileChecksum,
    FileMetadata,
    FileStatus,
    FileUploadCommand,
    FileUploadResult,
    StorageNode,
    StorageReference,
)
from storage_gateway.ports import CachePort, EventPublisher, FileMetadataStore, NodeRegistry
from storage_gateway.security import PathEncryptionService
from storage_gateway.services.cache import owner_files_pattern
from storage_gateway.services.checksum import compute_checksum_async
from storage_gateway.services.paths import bucket_for, file_base_path
from storage_gateway.services.selection import NodeSelector
from storage_gateway.utils.io import run_io_bound, spool_stream

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class FileUploadService:
    """
    Загрузка файла целиком.

    Поток один раз копируется в перечитываемый буфер: из него считается
    SHA-256, и он же уходит в бэкенд. Содержимое с уже известной суммой
    не пишется повторно (дедупликация по checksum).
    """

    def __init__(
        self,
        metadata: FileMetadataStore,
        registry: NodeRegistry,
        selector: NodeSelector,
        router: BackendRouter,
        paths: PathEncryptionService,
        events: EventPublisher,
        cache: CachePort,
        options: GatewayOptions | None = None,
    ):
        self._metadata = metadata
        self._registry = registry
        self._selector = selector
        self._router = router
        self._paths = paths
        self._events = events
        self._cache = cache
        self._options = options or GatewayOptions()

    async def upload(self, command: FileUploadCommand) -> FileUploadResult:
        buffer, size = await run_io_bound(spool_stream, command.stream, self._options.spool_max_memory_bytes)
        try:
            if command.declared_size is not None and command.declared_size != size:
                raise ValidationFailure(
                    f"Declared size {command.declared_size} does not match actual size {size}"
                )
            checksum = await compute_checksum_async(
                buffer, ChecksumAlgorithm.SHA256, self._options.checksum_buffer_size
            )
            return await self._upload_buffer(command, buffer, size, checksum)
        finally:
            buffer.close()

    async def upload_spooled(
        self,
        command: FileUploadCommand,
        buffer: BinaryIO,
        size: int,
    ) -> FileUploadResult:
        """Для уже собранного буфера (сборка чанков): без повторного копирования."""
        checksum = await compute_checksum_async(
            buffer, ChecksumAlgorithm.SHA256, self._options.checksum_buffer_size
        )
        return await self._upload_buffer(command, buffer, size, checksum)

    async def _upload_buffer(
        self,
        command: FileUploadCommand,
        buffer: BinaryIO,
        size: int,
        checksum: FileChecksum,
    ) -> FileUploadResult:
        existing = await self._metadata.find_by_checksum(checksum)
        if existing is not None:
            return await self._deduplicated(existing)

        candidates = await self._registry.find_available(command.preferred_backend)
        node = self._selector.select(candidates, command.preferred_backend)

        file_id = uuid4()
        now = _utcnow()
        context = StorageContext(
            file_name=command.file_name,
            content_type=command.content_type,
            file_size=size,
            target_node=node,
            bucket=bucket_for(node, now, self._options.bucket_prefix),
            base_path=file_base_path(command.owner_id, file_id, now),
        )
        stored = await self._router.store(buffer, context)

        try:
            encrypted = await self._paths.encrypt_path(stored.physical_path)
            aggregate = FileAggregate(
                file_id=file_id,
                metadata=FileMetadata(
                    name=command.file_name,
                    content_type=command.content_type,
                    size_bytes=size,
                    owner_id=command.owner_id,
                    created_at=now,
                    updated_at=now,
                    status=FileStatus.ACTIVE,
                ),
                storage_reference=StorageReference(
                    backend_type=node.backend_type,
                    node_id=node.node_id,
                    encrypted_path=encrypted.encrypted_path,
                    encryption_key_ref=encrypted.key_ref,
                    bucket=stored.bucket,
                    region=stored.region,
                ),
                checksum=checksum,
            )
            saved = await self._metadata.save(aggregate)
        except DuplicateChecksumError:
            # Параллельная загрузка того же содержимого успела раньше
            await self._discard(node, stored)
            winner = await self._metadata.find_by_checksum(checksum)
            if winner is None:
                raise
            logger.info("Concurrent upload of %s resolved to existing file %s", checksum, winner.file_id)
            return await self._deduplicated(winner)
        except Exception:
            await self._discard(node, stored)
            raise

        try:
            await self._registry.update_capacity(node.node_id, size, 1)
        except Exception:
            # файл уже сохранён; счётчики ноды догонит следующая загрузка
            logger.error("Failed to update capacity of node %s", node.node_id, exc_info=True)

        await self._events.publish_uploaded(saved.file_id, command.owner_id)
        await self._events.publish_virus_scan_request(saved.file_id, saved.storage_reference)
        await self._cache.delete_by_pattern(owner_files_pattern(command.owner_id))

        logger.info(
            "File uploaded",
            extra={"file_id": str(saved.file_id), "node_id": node.node_id, "owner_id": str(command.owner_id)},
        )
        return self._result(saved, deduplicated=False)

    async def _deduplicated(self, existing: FileAggregate) -> FileUploadResult:
        status = existing.metadata.status
        if status == FileStatus.QUARANTINED:
            raise InvalidStateError(f"File {existing.file_id} with identical content is quarantined")
        if status == FileStatus.DELETED:
            restored = await self._metadata.update_status(existing.file_id, FileStatus.ACTIVE)
            existing = restored or existing
            await self._cache.delete_by_pattern(owner_files_pattern(existing.metadata.owner_id))
            logger.info("Restored deleted file %s on duplicate upload", existing.file_id)
        logger.info("Deduplicated upload resolved to file %s", existing.file_id)
        return self._result(existing, deduplicated=True)

    async def _discard(self, node: StorageNode, stored: StorageResult) -> None:
        try:
            await self._router.discard(node, stored.physical_path)
        except Exception:
            logger.warning("Failed to remove orphaned object on node %s", node.node_id, exc_info=True)

    @staticmethod
    def _result(aggregate: FileAggregate, deduplicated: bool) -> FileUploadResult:
        return FileUploadResult(
            file_id=aggregate.file_id,
            file_name=aggregate.metadata.name,
            size=aggregate.metadata.size_bytes,
            content_type=aggregate.metadata.content_type,
            checksum=aggregate.checksum.digest,
            storage_node_id=aggregate.node_id,
            uploaded_at=aggregate.metadata.created_at,
            deduplicated=deduplicated,
        )
