"""In-memory adapters for every persistence port.

Used when ``gateway.metadata_backend = "memory"`` and by the unit tests.
Every store is bounded and guarded by an ``asyncio.Lock``; values are
immutable pydantic models or copies, so callers never share mutable state
with the store. Data is not persisted across restarts.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from storage_gateway.exceptions import (
    DatabaseError,
    DuplicateChecksumError,
    EncryptionError,
    InvalidStateError,
    KeyNotFoundError,
    NodeNotFound,
    SessionNotFound,
    ValidationFailure,
)
from storage_gateway.models import (
    BackendType,
    ChunkStatus,
    EncryptionAlgorithm,
    EncryptionKey,
    FileAggregate,
    FileChecksum,
    FileChunk,
    FileStatus,
    NodeStatus,
    OPEN_STATUSES,
    SessionStatus,
    StorageNode,
    UploadSession,
)
from storage_gateway.security import CredentialEncryptionService
from storage_gateway.security.cipher import AesGcmCipher

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 100_000


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class InMemoryFileMetadataStore:
    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        self._files: dict[UUID, FileAggregate] = {}
        self._by_checksum: dict[FileChecksum, UUID] = {}
        self._max_entries = max_entries
        self._lock = asyncio.Lock()

    async def save(self, aggregate: FileAggregate) -> FileAggregate:
        async with self._lock:
            owner = self._by_checksum.get(aggregate.checksum)
            if owner is not None and owner != aggregate.file_id:
                raise DuplicateChecksumError(f"File with checksum {aggregate.checksum} already exists")
            if aggregate.file_id not in self._files and len(self._files) >= self._max_entries:
                raise DatabaseError("In-memory file store is full")
            self._files[aggregate.file_id] = aggregate
            self._by_checksum[aggregate.checksum] = aggregate.file_id
            return aggregate

    async def find_by_id(self, file_id: UUID) -> Optional[FileAggregate]:
        return self._files.get(file_id)

    async def find_by_checksum(self, checksum: FileChecksum) -> Optional[FileAggregate]:
        file_id = self._by_checksum.get(checksum)
        return self._files.get(file_id) if file_id else None

    async def find_by_id_and_owner(self, file_id: UUID, owner_id: UUID) -> Optional[FileAggregate]:
        aggregate = self._files.get(file_id)
        if aggregate is None or not aggregate.is_owned_by(owner_id):
            return None
        return aggregate

    async def list_by_owner(self, owner_id: UUID, limit: int | None = None, offset: int = 0) -> list[FileAggregate]:
        files = [
            f for f in self._files.values()
            if f.is_owned_by(owner_id) and f.metadata.status == FileStatus.ACTIVE
        ]
        files.sort(key=lambda f: f.metadata.created_at, reverse=True)
        end = None if limit is None else offset + limit
        return files[offset:end]

    async def update_status(self, file_id: UUID, status: FileStatus) -> Optional[FileAggregate]:
        async with self._lock:
            aggregate = self._files.get(file_id)
            if aggregate is None:
                return None
            updated = aggregate.with_status(status)
            self._files[file_id] = updated
            return updated

    async def soft_delete(self, file_id: UUID) -> bool:
        return await self.update_status(file_id, FileStatus.DELETED) is not None

    async def exists(self, file_id: UUID) -> bool:
        return file_id in self._files


class InMemoryNodeRegistry:
    def __init__(self, credentials: CredentialEncryptionService, max_entries: int = 1024) -> None:
        self._credentials = credentials
        self._nodes: dict[str, StorageNode] = {}
        self._max_entries = max_entries
        self._lock = asyncio.Lock()

    async def list_all(self) -> list[StorageNode]:
        return [self._nodes[k] for k in sorted(self._nodes)]

    async def find_by_type_and_status(self, backend_type: BackendType, status: NodeStatus) -> list[StorageNode]:
        return [n for n in await self.list_all() if n.backend_type == backend_type and n.status == status]

    async def find_available(self, preferred_type: BackendType | None = None) -> list[StorageNode]:
        return [
            n for n in await self.list_all()
            if n.is_available and (preferred_type is None or n.backend_type == preferred_type)
        ]

    async def find(self, node_id: str) -> Optional[StorageNode]:
        return self._nodes.get(node_id)

    async def get(self, node_id: str) -> StorageNode:
        node = self._nodes.get(node_id)
        if node is None:
            raise NodeNotFound(f"Storage node {node_id} not found")
        return node

    async def register(self, node: StorageNode) -> StorageNode:
        encrypted = node.model_copy(
            update={
                "access_key": await self._credentials.encrypt_credential(node.access_key),
                "secret_key": await self._credentials.encrypt_credential(node.secret_key),
            }
        )
        async with self._lock:
            if node.node_id in self._nodes:
                raise ValidationFailure(f"Storage node {node.node_id} already registered")
            if len(self._nodes) >= self._max_entries:
                raise DatabaseError("In-memory node registry is full")
            self._nodes[node.node_id] = encrypted
        logger.info("Registered storage node %s (%s)", node.node_id, node.backend_type.value)
        return encrypted

    async def update_status(self, node_id: str, status: NodeStatus) -> StorageNode:
        return await self._update(node_id, status=status)

    async def record_health_check(self, node_id: str, checked_at: datetime, healthy: bool) -> StorageNode:
        values = {"last_health_check": checked_at}
        if not healthy:
            values["status"] = NodeStatus.OFFLINE
        return await self._update(node_id, **values)

    async def update_capacity(self, node_id: str, delta_bytes: int, delta_files: int = 1) -> StorageNode:
        async with self._lock:
            node = self._get_locked(node_id)
            used = max(node.used_capacity_bytes + delta_bytes, 0)
            updated = node.model_copy(
                update={
                    "used_capacity_bytes": used,
                    "file_count": max(node.file_count + delta_files, 0),
                    "updated_at": _utcnow(),
                }
            )
            if updated.status == NodeStatus.ACTIVE and updated.is_full:
                logger.warning("Storage node %s reached capacity threshold, marking FULL", node_id)
                updated = updated.model_copy(update={"status": NodeStatus.FULL})
            self._nodes[node_id] = updated
            return updated

    async def _update(self, node_id: str, **values) -> StorageNode:
        async with self._lock:
            node = self._get_locked(node_id)
            updated = node.model_copy(update={**values, "updated_at": _utcnow()})
            self._nodes[node_id] = updated
            return updated

    def _get_locked(self, node_id: str) -> StorageNode:
        node = self._nodes.get(node_id)
        if node is None:
            raise NodeNotFound(f"Storage node {node_id} not found")
        return node


class InMemoryUploadSessionStore:
    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        self._sessions: dict[UUID, UploadSession] = {}
        self._chunks: dict[UUID, dict[int, FileChunk]] = {}
        self._max_entries = max_entries
        self._lock = asyncio.Lock()
        # Запись чанков одной сессии сериализуется на её собственном замке;
        # замок живёт, пока его кто-то держит или ждёт
        self._session_locks: weakref.WeakValueDictionary[UUID, asyncio.Lock] = weakref.WeakValueDictionary()

    async def save(self, session: UploadSession) -> UploadSession:
        async with self._lock:
            if session.session_id not in self._sessions and len(self._sessions) >= self._max_entries:
                if not self._evict_finished():
                    raise DatabaseError("In-memory upload session store is full")
            self._sessions[session.session_id] = session.model_copy()
            self._chunks.setdefault(session.session_id, {})
            return session.model_copy()

    async def find_by_id_and_owner(self, session_id: UUID, owner_id: UUID) -> Optional[UploadSession]:
        session = self._sessions.get(session_id)
        if session is None or session.owner_id != owner_id:
            return None
        return session.model_copy()

    async def update_status(
        self,
        session_id: UUID,
        status: SessionStatus,
        *,
        expected: frozenset[SessionStatus] | None = None,
        file_id: UUID | None = None,
        completed_at: datetime | None = None,
    ) -> UploadSession:
        async with self._session_lock(session_id):
            session = self._get_session(session_id)
            if expected is not None and session.status not in expected:
                raise InvalidStateError(
                    f"Upload session {session_id} is {session.status.value}, cannot move to {status.value}"
                )
            update = {"status": status}
            if file_id is not None:
                update["file_id"] = file_id
            if completed_at is not None:
                update["completed_at"] = completed_at
            updated = session.model_copy(update=update)
            self._sessions[session_id] = updated
            return updated.model_copy()

    async def record_chunk(self, chunk: FileChunk, now: datetime) -> tuple[UploadSession, Optional[FileChunk]]:
        async with self._session_lock(chunk.session_id):
            session = self._get_session(chunk.session_id)
            if session.status not in OPEN_STATUSES:
                raise InvalidStateError(f"Upload session {chunk.session_id} is {session.status.value}")
            if session.is_expired(now):
                raise InvalidStateError(f"Upload session {chunk.session_id} has expired")
            chunks = self._chunks.setdefault(chunk.session_id, {})
            replaced = chunks.get(chunk.chunk_number)
            chunks[chunk.chunk_number] = chunk.model_copy()
            completed = sum(1 for c in chunks.values() if c.status == ChunkStatus.COMPLETED)
            updated = session.model_copy(update={"uploaded_chunks": completed, "status": SessionStatus.IN_PROGRESS})
            self._sessions[chunk.session_id] = updated
            return updated.model_copy(), replaced

    async def list_chunks(self, session_id: UUID) -> list[FileChunk]:
        chunks = self._chunks.get(session_id, {})
        return [chunks[n].model_copy() for n in sorted(chunks)]

    async def list_completed_chunks(self, session_id: UUID) -> list[FileChunk]:
        return [c for c in await self.list_chunks(session_id) if c.status == ChunkStatus.COMPLETED]

    async def delete_chunks(self, session_id: UUID) -> int:
        if session_id not in self._sessions:
            return len(self._chunks.pop(session_id, {}))
        async with self._session_lock(session_id):
            return len(self._chunks.pop(session_id, {}))

    async def find_expired(self, now: datetime, limit: int = 100) -> list[UploadSession]:
        expired = [
            s for s in self._sessions.values()
            if s.status in OPEN_STATUSES and s.is_expired(now)
        ]
        expired.sort(key=lambda s: s.expires_at)
        return [s.model_copy() for s in expired[:limit]]

    def _get_session(self, session_id: UUID) -> UploadSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(f"Upload session {session_id} not found")
        return session

    def _session_lock(self, session_id: UUID) -> asyncio.Lock:
        # для неизвестной сессии замок не создаётся
        self._get_session(session_id)
        lock = self._session_locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._session_locks[session_id] = lock
        return lock

    def _evict_finished(self) -> bool:
        """Освобождает место под новую сессию за счёт самой старой завершённой."""
        finished = [s for s in self._sessions.values() if s.status not in OPEN_STATUSES]
        if not finished:
            return False
        oldest = min(finished, key=lambda s: s.created_at)
        del self._sessions[oldest.session_id]
        self._chunks.pop(oldest.session_id, None)
        logger.debug("Evicted finished upload session %s", oldest.session_id)
        return True


class InMemoryKeyStore:
    """Ключи живут только в памяти процесса; при переполнении отказывает, а не вытесняет."""

    VAULT_ID = "memory"

    def __init__(self, max_keys: int = DEFAULT_MAX_ENTRIES, cipher: AesGcmCipher | None = None) -> None:
        self._keys: dict[str, bytes] = {}
        self._max_keys = max_keys
        self._cipher = cipher or AesGcmCipher()
        self._lock = asyncio.Lock()

    async def generate_key(self, key_ref: str | None = None) -> EncryptionKey:
        key_ref = key_ref or f"key-{uuid4()}"
        async with self._lock:
            if key_ref in self._keys:
                raise EncryptionError(f"Key {key_ref} already exists")
            if len(self._keys) >= self._max_keys:
                raise EncryptionError("In-memory key store is full")
            self._keys[key_ref] = self._cipher.generate_key_bytes()
        logger.info("Generated encryption key %s", key_ref)
        return EncryptionKey(key_ref=key_ref, vault_id=self.VAULT_ID, algorithm=EncryptionAlgorithm.AES_256_GCM)

    async def get_key(self, key_ref: str) -> bytes:
        key = self._keys.get(key_ref)
        if key is None:
            raise KeyNotFoundError(f"Encryption key not found: {key_ref}")
        return key

    async def has_key(self, key_ref: str) -> bool:
        return key_ref in self._keys
