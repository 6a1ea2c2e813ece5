from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Optional

from pydantic import Field

from .base import ValueObject

# Нода перестаёт принимать запись начиная с этого заполнения
FULL_THRESHOLD_PERCENT = 95.0


class BackendType(str, enum.Enum):
    MINIO = "MINIO"   # object store A
    S3 = "S3"         # object store B
    SFTP = "SFTP"     # transfer server


class NodeStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    FULL = "FULL"
    MAINTENANCE = "MAINTENANCE"
    OFFLINE = "OFFLINE"


class StorageNode(ValueObject):
    node_id: str = Field(min_length=1, max_length=50)
    backend_type: BackendType
    endpoint_url: str = Field(min_length=1)
    public_url: Optional[str] = None
    # Оба поля хранятся зашифрованными (см. CredentialEncryptionService)
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    bucket: Optional[str] = None
    region: Optional[str] = None
    total_capacity_bytes: int = Field(gt=0)
    used_capacity_bytes: int = Field(0, ge=0)
    file_count: int = Field(0, ge=0)
    status: NodeStatus = NodeStatus.ACTIVE
    last_health_check: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))

    def __repr_args__(self):
        for name, value in super().__repr_args__():
            if name in ("access_key", "secret_key") and value is not None:
                yield name, "***"
            else:
                yield name, value

    @property
    def used_capacity_percent(self) -> float:
        return self.used_capacity_bytes / self.total_capacity_bytes * 100.0

    @property
    def available_capacity_bytes(self) -> int:
        return max(self.total_capacity_bytes - self.used_capacity_bytes, 0)

    @property
    def is_full(self) -> bool:
        return self.used_capacity_percent >= FULL_THRESHOLD_PERCENT

    @property
    def is_available(self) -> bool:
        """Нода годится для новой записи: ACTIVE и не заполнена."""
        return self.status == NodeStatus.ACTIVE and not self.is_full
