"""
Возобновляемая загрузка по частям.

INITIATED --первый чанк--> IN_PROGRESS --complete_upload--> COMPLETED
любое состояние --cancel_upload--> FAILED
INITIATED / IN_PROGRESS --now > expires_at--> EXPIRED (проверяется лениво при каждом обращении)

Каждый чанк - обычный маленький объект в бэкенде. Его путь шифруется
ключом сессии, строка чанка и счётчик сессии пишутся одной транзакцией.
"""

import logging
import shutil
from datetime import datetime, timedelta, timezone
from typing import BinaryIO, List, Optional
from uuid import UUID

from storage_gateway.backends import BackendRouter, StorageContext
from storage_gateway.config import GatewayOptions
from storage_gateway.exceptions import InvalidStateError, SessionNotFound, ValidationFailure
from storage_gateway.models import (
    BackendType,
    ChecksumAlgorithm,
    ChunkStatus,
    FileChunk,
    FileUploadCommand,
    FileUploadResult,
    OPEN_STATUSES,
    SessionStatus,
    StorageNode,
    StorageReference,
    UploadSession,
)
from storage_gateway.ports import NodeRegistry, UploadSessionStore
from storage_gateway.security import EncryptionService, PathEncryptionService
from storage_gateway.services.checksum import compute_checksum_async
from storage_gateway.services.paths import bucket_for, chunk_base_path, chunk_file_name
from storage_gateway.services.selection import NodeSelector
from storage_gateway.services.upload_service import FileUploadService
from storage_gateway.utils.io import COPY_BUFFER_SIZE, new_spool, run_io_bound, spool_stream

logger = logging.getLogger(__name__)

CHUNK_CONTENT_TYPE = "application/octet-stream"


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class ChunkedUploadService:
    def __init__(
        self,
        sessions: UploadSessionStore,
        registry: NodeRegistry,
        selector: NodeSelector,
        router: BackendRouter,
        encryption: EncryptionService,
        paths: PathEncryptionService,
        uploads: FileUploadService,
        options: GatewayOptions | None = None,
    ):
        self._sessions = sessions
        self._registry = registry
        self._selector = selector
        self._router = router
        self._encryption = encryption
        self._paths = paths
        self._uploads = uploads
        self._options = options or GatewayOptions()

    # --- жизненный цикл сессии ---

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
        now = _utcnow()
        # Валидируем до генерации ключа, чтобы не плодить ключи на мусорных запросах
        if total_chunks <= 0:
            raise ValidationFailure("total_chunks must be positive")
        if total_size < 0:
            raise ValidationFailure("total_size cannot be negative")
        key_ref = await self._encryption.generate_key()
        session = UploadSession(
            owner_id=owner_id,
            folder_id=folder_id,
            file_name=file_name,
            content_type=content_type,
            total_size=total_size,
            total_chunks=total_chunks,
            preferred_backend=preferred_backend,
            encryption_key_ref=key_ref,
            created_at=now,
            expires_at=now + timedelta(hours=self._options.session_expiry_hours),
        )
        saved = await self._sessions.save(session)
        logger.info(
            "Upload session initiated (%d chunks, %d bytes)", total_chunks, total_size,
            extra={"session_id": str(saved.session_id), "owner_id": str(owner_id)},
        )
        return saved

    async def get_session(self, session_id: UUID, owner_id: UUID) -> UploadSession:
        session = await self._require_session(session_id, owner_id)
        return await self._expire_if_overdue(session, _utcnow())

    async def upload_chunk(
        self,
        session_id: UUID,
        owner_id: UUID,
        chunk_number: int,
        stream: BinaryIO | bytes,
        declared_checksum: Optional[str] = None,
    ) -> FileChunk:
        now = _utcnow()
        session = await self._require_writable(session_id, owner_id, now)
        if not 0 <= chunk_number < session.total_chunks:
            raise InvalidStateError(
                f"Chunk number {chunk_number} is outside 0..{session.total_chunks - 1}"
            )

        buffer, size = await run_io_bound(spool_stream, stream, self._options.spool_max_memory_bytes)
        try:
            checksum = await compute_checksum_async(
                buffer, ChecksumAlgorithm.SHA256, self._options.checksum_buffer_size
            )
            if declared_checksum and declared_checksum.strip().lower() != checksum.digest:
                raise ValidationFailure(f"Checksum mismatch for chunk {chunk_number}")

            candidates = await self._registry.find_available(session.preferred_backend)
            node = self._selector.select(candidates, session.preferred_backend)
            context = StorageContext(
                file_name=chunk_file_name(session.file_name, chunk_number),
                content_type=CHUNK_CONTENT_TYPE,
                file_size=size,
                target_node=node,
                bucket=bucket_for(node, now, self._options.bucket_prefix),
                base_path=chunk_base_path(session.session_id, now),
            )
            stored = await self._router.store(buffer, context)
        finally:
            buffer.close()

        try:
            location = await self._paths.encrypt_path(stored.physical_path, session.encryption_key_ref)
            chunk = FileChunk(
                session_id=session.session_id,
                chunk_number=chunk_number,
                total_chunks=session.total_chunks,
                size=size,
                checksum=checksum.digest,
                node_id=node.node_id,
                backend_type=node.backend_type,
                encrypted_location=location.encrypted_path,
                status=ChunkStatus.COMPLETED,
                uploaded_at=now,
            )
            updated, replaced = await self._sessions.record_chunk(chunk, now)
        except Exception:
            await self._discard(node, stored.physical_path)
            raise

        if replaced is not None:
            await self._cleanup_replaced(session, replaced, node, stored.physical_path)

        logger.info(
            "Chunk %d/%d stored on node %s", chunk_number + 1, session.total_chunks, node.node_id,
            extra={"session_id": str(session_id), "chunk_number": chunk_number},
        )
        logger.debug("Session %s progress: %.1f%%", session_id, updated.progress)
        return chunk

    async def get_uploaded_chunks(self, session_id: UUID, owner_id: UUID) -> List[int]:
        await self._require_session(session_id, owner_id)
        return [c.chunk_number for c in await self._sessions.list_completed_chunks(session_id)]

    async def get_missing_chunks(self, session_id: UUID, owner_id: UUID) -> List[int]:
        session = await self._require_session(session_id, owner_id)
        uploaded = {c.chunk_number for c in await self._sessions.list_completed_chunks(session_id)}
        return [n for n in range(session.total_chunks) if n not in uploaded]

    async def complete_upload(self, session_id: UUID, owner_id: UUID) -> FileUploadResult:
        now = _utcnow()
        session = await self._require_writable(session_id, owner_id, now)
        if session.status != SessionStatus.IN_PROGRESS:
            raise InvalidStateError(f"Upload session {session_id} is {session.status.value}")

        # Сверяемся с сохранёнными строками, а не только со счётчиком
        chunks = await self._sessions.list_completed_chunks(session_id)
        recorded = {c.chunk_number for c in chunks}
        missing = [n for n in range(session.total_chunks) if n not in recorded]
        if missing:
            raise InvalidStateError(f"Upload session {session_id} is missing chunks: {missing}")

        buffer = new_spool(self._options.spool_max_memory_bytes)
        try:
            for chunk in sorted(chunks, key=lambda c: c.chunk_number):
                await self._append_chunk(session, chunk, buffer)
            size = buffer.tell()
            if size != session.total_size:
                raise InvalidStateError(
                    f"Assembled size {size} does not match declared total size {session.total_size}"
                )
            buffer.seek(0)
            command = FileUploadCommand(
                owner_id=session.owner_id,
                file_name=session.file_name,
                content_type=session.content_type,
                stream=buffer,
                declared_size=size,
                preferred_backend=session.preferred_backend,
            )
            result = await self._uploads.upload_spooled(command, buffer, size)
        finally:
            buffer.close()

        await self._purge_chunks(session, chunks)
        await self._sessions.update_status(
            session_id,
            SessionStatus.COMPLETED,
            expected=frozenset({SessionStatus.IN_PROGRESS}),
            file_id=result.file_id,
            completed_at=now,
        )
        logger.info(
            "Upload session completed as file %s", result.file_id,
            extra={"session_id": str(session_id), "file_id": str(result.file_id)},
        )
        return result

    async def cancel_upload(self, session_id: UUID, owner_id: UUID) -> None:
        session = await self._require_session(session_id, owner_id)
        chunks = await self._sessions.list_chunks(session_id)
        await self._purge_chunks(session, chunks)
        await self._sessions.update_status(session_id, SessionStatus.FAILED)
        logger.info("Upload session cancelled", extra={"session_id": str(session_id)})

    async def expire_sessions(self, now: Optional[datetime] = None, batch_size: int = 100) -> int:
        """Фоновая уборка просроченных сессий. Корректность от неё не зависит."""
        now = now or _utcnow()
        expired = 0
        while True:
            batch = await self._sessions.find_expired(now, limit=batch_size)
            if not batch:
                break
            for session in batch:
                try:
                    await self._sessions.update_status(
                        session.session_id, SessionStatus.EXPIRED, expected=OPEN_STATUSES
                    )
                except InvalidStateError:
                    # сессию успели завершить или отменить
                    continue
                await self._purge_chunks(session, await self._sessions.list_chunks(session.session_id))
                expired += 1
            if len(batch) < batch_size:
                break
        if expired:
            logger.info("Expired %d upload sessions", expired)
        return expired

    # --- внутреннее ---

    async def _require_session(self, session_id: UUID, owner_id: UUID) -> UploadSession:
        session = await self._sessions.find_by_id_and_owner(session_id, owner_id)
        if session is None:
            raise SessionNotFound(f"Upload session {session_id} not found")
        return session

    async def _expire_if_overdue(self, session: UploadSession, now: datetime) -> UploadSession:
        if session.is_open and session.is_expired(now):
            logger.info("Upload session expired", extra={"session_id": str(session.session_id)})
            try:
                return await self._sessions.update_status(
                    session.session_id, SessionStatus.EXPIRED, expected=OPEN_STATUSES
                )
            except InvalidStateError:
                return await self._require_session(session.session_id, session.owner_id)
        return session

    async def _require_writable(self, session_id: UUID, owner_id: UUID, now: datetime) -> UploadSession:
        session = await self._expire_if_overdue(await self._require_session(session_id, owner_id), now)
        if session.status == SessionStatus.EXPIRED:
            raise InvalidStateError(f"Upload session {session_id} has expired")
        if session.status not in OPEN_STATUSES:
            raise InvalidStateError(f"Upload session {session_id} is {session.status.value}")
        return session

    def _chunk_reference(self, session: UploadSession, chunk: FileChunk) -> StorageReference:
        return StorageReference(
            backend_type=chunk.backend_type,
            node_id=chunk.node_id,
            encrypted_path=chunk.encrypted_location,
            encryption_key_ref=session.encryption_key_ref,
        )

    async def _append_chunk(self, session: UploadSession, chunk: FileChunk, buffer: BinaryIO) -> None:
        reference = self._chunk_reference(session, chunk)
        path = await self._paths.decrypt_path(reference.encrypted_path, reference.encryption_key_ref)
        part = await self._router.retrieve(reference, path)
        try:
            await run_io_bound(shutil.copyfileobj, part, buffer, COPY_BUFFER_SIZE)
        finally:
            part.close()

    async def _purge_chunks(self, session: UploadSession, chunks: List[FileChunk]) -> None:
        """Артефакты удаляются best-effort, строки - всегда."""
        for chunk in chunks:
            await self._delete_chunk_artifact(session, chunk)
        await self._sessions.delete_chunks(session.session_id)

    async def _delete_chunk_artifact(self, session: UploadSession, chunk: FileChunk) -> None:
        try:
            reference = self._chunk_reference(session, chunk)
            path = await self._paths.decrypt_path(reference.encrypted_path, reference.encryption_key_ref)
            await self._router.delete(reference, path)
        except Exception:
            logger.warning(
                "Failed to delete chunk %d artifact on node %s", chunk.chunk_number, chunk.node_id,
                exc_info=True, extra={"session_id": str(session.session_id)},
            )

    async def _cleanup_replaced(
        self, session: UploadSession, replaced: FileChunk, node: StorageNode, new_path: str
    ) -> None:
        # Тот же ключ на той же ноде уже перезаписан новым чанком
        if replaced.node_id == node.node_id:
            try:
                old_path = await self._paths.decrypt_path(replaced.encrypted_location, session.encryption_key_ref)
            except Exception:
                logger.warning("Cannot decrypt replaced chunk location", exc_info=True)
                return
            if old_path == new_path:
                return
        await self._delete_chunk_artifact(session, replaced)

    async def _discard(self, node: StorageNode, physical_path: str) -> None:
        try:
            await self._router.discard(node, physical_path)
        except Exception:
            logger.warning("Failed to remove orphaned chunk on node %s", node.node_id, exc_info=True)
