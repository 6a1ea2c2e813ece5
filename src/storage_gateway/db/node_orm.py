from datetime import datetime
from typing import Optional

from sqlalchemy import String, Text, BigInteger, DateTime, Index
from sqlalchemy import Enum as PgEnum
from sqlalchemy.orm import Mapped, mapped_column

from storage_gateway.db.base import Base, CreatedAt, UpdatedAt
from storage_gateway.models.node import BackendType, NodeStatus, StorageNode


class StorageNodeORM(Base):
    __tablename__ = "storage_nodes"

    node_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    backend_type: Mapped[BackendType] = mapped_column(PgEnum(BackendType, name="backend_type_enum"), nullable=False)
    endpoint_url: Mapped[str] = mapped_column(String(500), nullable=False)
    public_url: Mapped[Optional[str]] = mapped_column(String(500))

    # Зашифрованы CredentialEncryptionService, в открытом виде не хранятся
    access_key: Mapped[Optional[str]] = mapped_column(Text)
    secret_key: Mapped[Optional[str]] = mapped_column(Text)

    bucket: Mapped[Optional[str]] = mapped_column(String(255))
    region: Mapped[Optional[str]] = mapped_column(String(64))

    total_capacity_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    used_capacity_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    file_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")

    status: Mapped[NodeStatus] = mapped_column(
        PgEnum(NodeStatus, name="node_status_enum"), nullable=False, default=NodeStatus.ACTIVE
    )
    last_health_check: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created: Mapped[CreatedAt]
    edited: Mapped[UpdatedAt]

    __table_args__ = (
        Index("idx_storage_nodes_type_status", "backend_type", "status"),
    )

    @classmethod
    def from_domain(cls, node: StorageNode) -> "StorageNodeORM":
        return cls(
            node_id=node.node_id,
            backend_type=node.backend_type,
            endpoint_url=node.endpoint_url,
            public_url=node.public_url,
            access_key=node.access_key,
            secret_key=node.secret_key,
            bucket=node.bucket,
            region=node.region,
            total_capacity_bytes=node.total_capacity_bytes,
            used_capacity_bytes=node.used_capacity_bytes,
            file_count=node.file_count,
            status=node.status,
            last_health_check=node.last_health_check,
        )

    def to_domain(self) -> StorageNode:
        return StorageNode(
            node_id=self.node_id,
            backend_type=self.backend_type,
            endpoint_url=self.endpoint_url,
            public_url=self.public_url,
            access_key=self.access_key,
            secret_key=self.secret_key,
            bucket=self.bucket,
            region=self.region,
            total_capacity_bytes=self.total_capacity_bytes,
            used_capacity_bytes=self.used_capacity_bytes,
            file_count=self.file_count,
            status=self.status,
            last_health_check=self.last_health_check,
            created_at=self.created,
            updated_at=self.edited,
        )
