import logging
from uuid import UUID

from storage_gateway.models import StorageReference
from storage_gateway.ports import EventPublisher

logger = logging.getLogger(__name__)


class LoggingEventPublisher:
    """Публикатор по умолчанию: пишет события структурированным логом."""

    async def publish_uploaded(self, file_id: UUID, owner_id: UUID) -> None:
        logger.info("file uploaded", extra={"event": "file.uploaded", "file_id": str(file_id), "owner_id": str(owner_id)})

    async def publish_deleted(self, file_id: UUID, owner_id: UUID) -> None:
        logger.info("file deleted", extra={"event": "file.deleted", "file_id": str(file_id), "owner_id": str(owner_id)})

    async def publish_virus_scan_request(self, file_id: UUID, reference: StorageReference) -> None:
        # Только зашифрованная ссылка, расшифровывает сам сканер
        logger.info(
            "virus scan requested",
            extra={
                "event": "file.virus_scan_requested",
                "file_id": str(file_id),
                "node_id": reference.node_id,
                "backend_type": reference.backend_type.value,
            },
        )


class SafeEventPublisher:
    """Fire-and-forget: ошибка шины логируется и не ломает загрузку."""

    def __init__(self, inner: EventPublisher):
        self._inner = inner

    async def publish_uploaded(self, file_id: UUID, owner_id: UUID) -> None:
        try:
            await self._inner.publish_uploaded(file_id, owner_id)
        except Exception:
            logger.warning("Failed to publish uploaded event for %s", file_id, exc_info=True)

    async def publish_deleted(self, file_id: UUID, owner_id: UUID) -> None:
        try:
            await self._inner.publish_deleted(file_id, owner_id)
        except Exception:
            logger.warning("Failed to publish deleted event for %s", file_id, exc_info=True)

    async def publish_virus_scan_request(self, file_id: UUID, reference: StorageReference) -> None:
        try:
            await self._inner.publish_virus_scan_request(file_id, reference)
        except Exception:
            logger.warning("Failed to publish virus scan request for %s", file_id, exc_info=True)
