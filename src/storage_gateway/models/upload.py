from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from pydantic import Field, model_validator

from .base import Entity, FileName
from .node import BackendType


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class SessionStatus(str, enum.Enum):
    INITIATED = "INITIATED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


# Состояния, в которых сессия ещё принимает чанки
OPEN_STATUSES = frozenset({SessionStatus.INITIATED, SessionStatus.IN_PROGRESS})


class ChunkStatus(str, enum.Enum):
    PENDING = "PENDING"
    UPLOADING = "UPLOADING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class UploadSession(Entity):
    session_id: UUID = Field(default_factory=uuid4)
    owner_id: UUID
    folder_id: Optional[UUID] = None
    file_name: FileName
    content_type: str = "application/octet-stream"
    total_size: int = Field(ge=0)
    total_chunks: int = Field(gt=0)
    uploaded_chunks: int = Field(0, ge=0)
    status: SessionStatus = SessionStatus.INITIATED
    preferred_backend: Optional[BackendType] = None
    encryption_key_ref: str = Field(min_length=1)
    file_id: Optional[UUID] = None
    created_at: datetime = Field(default_factory=_utcnow)
    expires_at: datetime
    completed_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_counters(self) -> "UploadSession":
        if self.uploaded_chunks > self.total_chunks:
            raise ValueError("uploaded_chunks cannot exceed total_chunks")
        return self

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or _utcnow()) > self.expires_at

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def all_chunks_uploaded(self) -> bool:
        return self.uploaded_chunks == self.total_chunks

    @property
    def progress(self) -> float:
        return self.uploaded_chunks / self.total_chunks * 100.0


class FileChunk(Entity):
    id: UUID = Field(default_factory=uuid4)
    session_id: UUID
    chunk_number: int = Field(ge=0)
    total_chunks: int = Field(gt=0)
    size: int = Field(ge=0)
    checksum: str
    node_id: str
    backend_type: BackendType
    # Зашифрованный ключом сессии физический путь чанка
    encrypted_location: str
    status: ChunkStatus = ChunkStatus.PENDING
    uploaded_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_number(self) -> "FileChunk":
        if self.chunk_number >= self.total_chunks:
            raise ValueError("chunk_number must be lower than total_chunks")
        return self

    @property
    def is_completed(self) -> bool:
        return self.status == ChunkStatus.COMPLETED

    @property
    def is_last(self) -> bool:
        return self.chunk_number == self.total_chunks - 1
