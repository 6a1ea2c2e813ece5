import logging
from datetime import datetime, timezone
from typing import BinaryIO, List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncEngine

from storage_gateway.backends import BackendRouter
from storage_gateway.config import GatewayConfig, StorageNodeSeed
from storage_gateway.db.base import Base
from storage_gateway.exceptions import DatabaseError, StorageGatewayError, ValidationFailure
from storage_gateway.models import (
    BackendType,
    FileAggregate,
    FileChunk,
    FileDownloadResult,
    FileUploadCommand,
    FileUploadResult,
    NodeStatus,
    StorageNode,
    UploadSession,
)
from storage_gateway.ports import FileMetadataStore, KeyStore, NodeRegistry, UploadSessionStore
from storage_gateway.services import ChunkedUploadService, FileDownloadService, FileUploadService

logger = logging.getLogger(__name__)


def node_from_seed(seed: StorageNodeSeed) -> StorageNode:
    return StorageNode(
        node_id=seed.id,
        backend_type=seed.type,
        endpoint_url=seed.endpoint,
        public_url=seed.public_endpoint,
        access_key=seed.access_key,
        secret_key=seed.secret_key,
        bucket=seed.bucket,
        region=seed.region,
        total_capacity_bytes=seed.total_capacity_bytes,
        status=seed.status,
    )


class GatewayClient:
    """
    Единая точка доступа к шлюзу: загрузка, скачивание, чанки, реестр нод.
    Собирается фабрикой create_gateway_client().
    """

    def __init__(
        self,
        config: GatewayConfig,
        metadata: FileMetadataStore,
        registry: NodeRegistry,
        sessions: UploadSessionStore,
        key_store: KeyStore,
        router: BackendRouter,
        uploads: FileUploadService,
        downloads: FileDownloadService,
        chunked: ChunkedUploadService,
        engine: AsyncEngine | None = None,
    ):
        self.config = config
        self.metadata = metadata
        self.registry = registry
        self.sessions = sessions
        self.key_store = key_store
        self.router = router
        self.uploads = uploads
        self.downloads = downloads
        self.chunked = chunked
        self._engine = engine

    async def aclose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()

    async def __aenter__(self) -> "GatewayClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # ――― служебное ――― #

    async def create_tables(self) -> None:
        """Замена миграций: create_all по всем ORM-моделям."""
        if self._engine is None:
            return
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def check_connections(self, record_health: bool = False) -> dict[str, str]:
        """
        Проверяет PostgreSQL и каждую зарегистрированную ноду.
        С record_health=True результат пишется в реестр; недоступная нода становится OFFLINE.
        """
        statuses = {}

        if self._engine is None:
            statuses["postgres"] = "disabled (in-memory metadata)"
        else:
            try:
                await self.metadata.check_connection()
                statuses["postgres"] = "ok"
            except DatabaseError as e:
                statuses["postgres"] = f"failed: {e}"
                return statuses

        for node in await self.registry.list_all():
            healthy = True
            try:
                await self.router.check_connection(node)
                statuses[node.node_id] = "ok"
            except StorageGatewayError as e:
                healthy = False
                statuses[node.node_id] = f"failed: {e}"
            if record_health:
                await self.registry.record_health_check(node.node_id, datetime.now(tz=timezone.utc), healthy)

        return statuses

    # ――― реестр нод ――― #

    async def register_node(self, node: StorageNode | StorageNodeSeed) -> StorageNode:
        if isinstance(node, StorageNodeSeed):
            node = node_from_seed(node)
        return await self.registry.register(node)

    async def seed_nodes(self) -> List[StorageNode]:
        """Регистрирует ноды из конфигурации; уже известные пропускаются."""
        registered = []
        for seed in self.config.nodes:
            if await self.registry.find(seed.id) is not None:
                logger.debug("Storage node %s already registered", seed.id)
                continue
            try:
                registered.append(await self.register_node(seed))
            except ValidationFailure:
                logger.info("Storage node %s registered concurrently", seed.id)
        return registered

    async def list_nodes(self) -> List[StorageNode]:
        return await self.registry.list_all()

    async def set_node_status(self, node_id: str, status: NodeStatus) -> StorageNode:
        node = await self.registry.update_status(node_id, status)
        logger.info("Storage node %s is now %s", node_id, status.value)
        return node

    # ――― файлы ――― #

    async def upload(
        self,
        owner_id: UUID,
        file_name: str,
        stream: BinaryIO | bytes,
        content_type: str = "application/octet-stream",
        declared_size: Optional[int] = None,
        preferred_backend: Optional[BackendType] = None,
    ) -> FileUploadResult:
        command = FileUploadCommand(
            owner_id=owner_id,
            file_name=file_name,
            content_type=content_type,
            stream=stream,
            declared_size=declared_size,
            preferred_backend=preferred_backend,
        )
        return await self.uploads.upload(command)

    async def download(self, file_id: UUID, owner_id: UUID) -> FileDownloadResult:
        return await self.downloads.download(file_id, owner_id)

    async def generate_download_url(self, file_id: UUID, owner_id: UUID, expires_in: Optional[int] = None) -> str:
        return await self.downloads.generate_download_url(file_id, owner_id, expires_in)

    async def get_file(self, file_id: UUID, owner_id: UUID) -> FileAggregate:
        return await self.downloads.get_file(file_id, owner_id)

    async def list_files(self, owner_id: UUID, limit: Optional[int] = None, offset: int = 0) -> List[FileAggregate]:
        return await self.downloads.list_files(owner_id, limit=limit, offset=offset)

    async def delete_file(self, file_id: UUID, owner_id: UUID) -> None:
        await self.downloads.delete_file(file_id, owner_id)

    # ――― загрузка по частям ――― #

    async def initiate_upload(
        self,
        owner_id: UUID,
        file_name: str,
        total_size: int,
        total_chunks: int,
        content_type: str = "application/octet-stream",
        folder_id: Optional[UUID] = None,
        preferred_backend: Optional[BackendType] = None,
    ) -> UploadSession:
        return await self.chunked.initiate_upload(
            owner_id, file_name, total_size, total_chunks,
            content_type=content_type, folder_id=folder_id, preferred_backend=preferred_backend,
        )

    async def upload_chunk(
        self,
        session_id: UUID,
        owner_id: UUID,
        chunk_number: int,
        stream: BinaryIO | bytes,
        declared_checksum: Optional[str] = None,
    ) -> FileChunk:
        return await self.chunked.upload_chunk(session_id, owner_id, chunk_number, stream, declared_checksum)

    async def get_session(self, session_id: UUID, owner_id: UUID) -> UploadSession:
        return await self.chunked.get_session(session_id, owner_id)

    async def get_uploaded_chunks(self, session_id: UUID, owner_id: UUID) -> List[int]:
        return await self.chunked.get_uploaded_chunks(session_id, owner_id)

    async def get_missing_chunks(self, session_id: UUID, owner_id: UUID) -> List[int]:
        return await self.chunked.get_missing_chunks(session_id, owner_id)

    async def complete_upload(self, session_id: UUID, owner_id: UUID) -> FileUploadResult:
        return await self.chunked.complete_upload(session_id, owner_id)

    async def cancel_upload(self, session_id: UUID, owner_id: UUID) -> None:
        await self.chunked.cancel_upload(session_id, owner_id)

    async def expire_sessions(self, now: Optional[datetime] = None) -> int:
        return await self.chunked.expire_sessions(now)
