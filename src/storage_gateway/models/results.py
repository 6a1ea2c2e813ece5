from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from .base import FileName, ValueObject
from .checksum import FileChecksum
from .node import BackendType


class FileUploadCommand(ValueObject):
    """То, что шлюз принимает от вызывающей стороны."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    owner_id: UUID
    file_name: FileName
    content_type: str = Field("application/octet-stream", min_length=1)
    stream: Any
    declared_size: Optional[int] = Field(None, ge=0)
    preferred_backend: Optional[BackendType] = None


class FileUploadResult(BaseModel):
    file_id: UUID
    file_name: str
    size: int
    content_type: str
    checksum: str
    storage_node_id: str
    uploaded_at: datetime
    deduplicated: bool = False


class FileDownloadResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    # файловый объект в начальной позиции; закрывает вызывающий
    stream: Any
    file_name: str
    content_type: str
    size: int
    checksum: FileChecksum

    def read_all(self) -> bytes:
        try:
            return self.stream.read()
        finally:
            self.stream.close()

    def verify_integrity(self, data: bytes) -> bool:
        """Сверяет полученные байты с сохранённой контрольной суммой."""
        digest = hashlib.new(self.checksum.algorithm.hashlib_name, data).hexdigest()
        return digest == self.checksum.digest
