"""
Контракты внешних зависимостей шлюза.

Реализации: SQLAlchemy-репозитории (repositories/pg_*), in-memory варианты
(repositories/memory_repository.py), кэш и события (services/cache.py,
services/events.py). Сервисы получают их через конструктор.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Protocol
from uuid import UUID

from storage_gateway.models import (
    BackendType,
    EncryptionKey,
    FileAggregate,
    FileChecksum,
    FileChunk,
    FileStatus,
    NodeStatus,
    SessionStatus,
    StorageNode,
    StorageReference,
    UploadSession,
)


class FileMetadataStore(Protocol):
    async def save(self, aggregate: FileAggregate) -> FileAggregate:
        """Raises DuplicateChecksumError when the checksum is already taken."""

    async def find_by_id(self, file_id: UUID) -> Optional[FileAggregate]: ...

    async def find_by_checksum(self, checksum: FileChecksum) -> Optional[FileAggregate]: ...

    async def find_by_id_and_owner(self, file_id: UUID, owner_id: UUID) -> Optional[FileAggregate]: ...

    async def list_by_owner(self, owner_id: UUID, limit: int | None = None, offset: int = 0) -> list[FileAggregate]: ...

    async def update_status(self, file_id: UUID, status: FileStatus) -> Optional[FileAggregate]: ...

    async def soft_delete(self, file_id: UUID) -> bool: ...

    async def exists(self, file_id: UUID) -> bool: ...


class NodeRegistry(Protocol):
    async def list_all(self) -> list[StorageNode]: ...

    async def find_by_type_and_status(self, backend_type: BackendType, status: NodeStatus) -> list[StorageNode]: ...

    async def find_available(self, preferred_type: BackendType | None = None) -> list[StorageNode]: ...

    async def find(self, node_id: str) -> Optional[StorageNode]: ...

    async def get(self, node_id: str) -> StorageNode:
        """Raises NodeNotFound."""

    async def register(self, node: StorageNode) -> StorageNode: ...

    async def update_status(self, node_id: str, status: NodeStatus) -> StorageNode: ...

    async def update_capacity(self, node_id: str, delta_bytes: int, delta_files: int = 1) -> StorageNode: ...

    async def record_health_check(self, node_id: str, checked_at: datetime, healthy: bool) -> StorageNode: ...


class UploadSessionStore(Protocol):
    async def save(self, session: UploadSession) -> UploadSession: ...

    async def find_by_id_and_owner(self, session_id: UUID, owner_id: UUID) -> Optional[UploadSession]: ...

    async def update_status(
        self,
        session_id: UUID,
        status: SessionStatus,
        *,
        expected: frozenset[SessionStatus] | None = None,
        file_id: UUID | None = None,
        completed_at: datetime | None = None,
    ) -> UploadSession:
        """Compare-and-set on status; raises InvalidStateError when `expected` does not match."""

    async def record_chunk(self, chunk: FileChunk, now: datetime) -> tuple[UploadSession, Optional[FileChunk]]:
        """
        Upserts the chunk row and recomputes uploaded_chunks from persisted rows
        under one per-session transaction. Returns the session and the chunk it
        replaced, if any.
        """

    async def list_chunks(self, session_id: UUID) -> list[FileChunk]: ...

    async def list_completed_chunks(self, session_id: UUID) -> list[FileChunk]: ...

    async def delete_chunks(self, session_id: UUID) -> int: ...

    async def find_expired(self, now: datetime, limit: int = 100) -> list[UploadSession]: ...


class KeyStore(Protocol):
    async def generate_key(self, key_ref: str | None = None) -> EncryptionKey:
        """Creates and stores fresh key material; a random ref is used when none is given."""

    async def get_key(self, key_ref: str) -> bytes:
        """Raises KeyNotFoundError."""

    async def has_key(self, key_ref: str) -> bool: ...


class EventPublisher(Protocol):
    async def publish_uploaded(self, file_id: UUID, owner_id: UUID) -> None: ...

    async def publish_deleted(self, file_id: UUID, owner_id: UUID) -> None: ...

    async def publish_virus_scan_request(self, file_id: UUID, reference: StorageReference) -> None: ...


class CachePort(Protocol):
    async def get(self, key: str) -> Any: ...

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def delete_by_pattern(self, pattern: str) -> int: ...
