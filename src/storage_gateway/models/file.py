from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from pydantic import Field

from .base import ValueObject
from .checksum import FileChecksum
from .node import BackendType


class FileStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    QUARANTINED = "QUARANTINED"
    DELETED = "DELETED"


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class FileMetadata(ValueObject):
    name: str = Field(min_length=1)
    content_type: str = Field(min_length=1)
    size_bytes: int = Field(ge=0)
    owner_id: UUID
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    status: FileStatus = FileStatus.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.status == FileStatus.ACTIVE


class StorageReference(ValueObject):
    """
    Единственная ссылка из метаданных на физические байты.
    Путь хранится только в зашифрованном виде, ключ - косвенно, по key_ref.
    """

    backend_type: BackendType
    node_id: str = Field(min_length=1)
    encrypted_path: str = Field(min_length=1)
    encryption_key_ref: str = Field(min_length=1)
    bucket: Optional[str] = None
    region: Optional[str] = None


class FileAggregate(ValueObject):
    """Aggregate root: all reads and writes of a file's metadata go through it."""

    file_id: UUID = Field(default_factory=uuid4)
    metadata: FileMetadata
    storage_reference: StorageReference
    checksum: FileChecksum

    @property
    def node_id(self) -> str:
        return self.storage_reference.node_id

    @property
    def backend_type(self) -> BackendType:
        return self.storage_reference.backend_type

    def can_be_downloaded(self) -> bool:
        return self.metadata.is_active

    def is_owned_by(self, owner_id: UUID) -> bool:
        return self.metadata.owner_id == owner_id

    def verify_checksum(self, other: FileChecksum) -> bool:
        return self.checksum == other

    def with_status(self, status: FileStatus) -> "FileAggregate":
        metadata = self.metadata.model_copy(update={"status": status, "updated_at": _utcnow()})
        return self.model_copy(update={"metadata": metadata})
