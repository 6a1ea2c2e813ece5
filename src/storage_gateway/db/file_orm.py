from uuid import UUID
from typing import Optional

from sqlalchemy import String, Text, BigInteger, ForeignKey, Index, UniqueConstraint
from sqlalchemy import Enum as PgEnum
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from storage_gateway.db.base import Base, CreatedAt, UpdatedAt
from storage_gateway.models import (
    BackendType,
    ChecksumAlgorithm,
    FileAggregate,
    FileChecksum,
    FileMetadata,
    FileStatus,
    StorageReference,
)


class StoredFileORM(Base):
    """Одна строка на уникальное содержимое: checksum уникален, это и есть дедупликация."""

    __tablename__ = "stored_files"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)

    name: Mapped[str] = mapped_column(String, nullable=False)
    content_type: Mapped[str] = mapped_column(String(255), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    owner_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    status: Mapped[FileStatus] = mapped_column(
        PgEnum(FileStatus, name="file_status_enum"), nullable=False, default=FileStatus.ACTIVE
    )

    checksum_algorithm: Mapped[ChecksumAlgorithm] = mapped_column(
        PgEnum(ChecksumAlgorithm, name="checksum_algorithm_enum"), nullable=False
    )
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    # StorageReference: путь только в зашифрованном виде
    backend_type: Mapped[BackendType] = mapped_column(PgEnum(BackendType, name="backend_type_enum"), nullable=False)
    node_id: Mapped[str] = mapped_column(
        ForeignKey("storage_nodes.node_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    encrypted_path: Mapped[str] = mapped_column(Text, nullable=False)
    encryption_key_ref: Mapped[str] = mapped_column(String(100), nullable=False)
    bucket: Mapped[Optional[str]] = mapped_column(String(255))
    region: Mapped[Optional[str]] = mapped_column(String(64))

    created: Mapped[CreatedAt]
    edited: Mapped[UpdatedAt]

    __table_args__ = (
        UniqueConstraint("content_hash", name="uq_stored_files_content_hash"),
        Index("idx_stored_files_owner_status", "owner_id", "status"),
    )

    @classmethod
    def from_domain(cls, aggregate: FileAggregate) -> "StoredFileORM":
        md = aggregate.metadata
        ref = aggregate.storage_reference
        return cls(
            id=aggregate.file_id,
            name=md.name,
            content_type=md.content_type,
            size_bytes=md.size_bytes,
            owner_id=md.owner_id,
            status=md.status,
            checksum_algorithm=aggregate.checksum.algorithm,
            content_hash=aggregate.checksum.digest,
            backend_type=ref.backend_type,
            node_id=ref.node_id,
            encrypted_path=ref.encrypted_path,
            encryption_key_ref=ref.encryption_key_ref,
            bucket=ref.bucket,
            region=ref.region,
            created=md.created_at,
            edited=md.updated_at,
        )

    def to_domain(self) -> FileAggregate:
        return FileAggregate(
            file_id=self.id,
            metadata=FileMetadata(
                name=self.name,
                content_type=self.content_type,
                size_bytes=self.size_bytes,
                owner_id=self.owner_id,
                created_at=self.created,
                updated_at=self.edited,
                status=self.status,
            ),
            storage_reference=StorageReference(
                backend_type=self.backend_type,
                node_id=self.node_id,
                encrypted_path=self.encrypted_path,
                encryption_key_ref=self.encryption_key_ref,
                bucket=self.bucket,
                region=self.region,
            ),
            checksum=FileChecksum(algorithm=self.checksum_algorithm, digest=self.content_hash),
        )
