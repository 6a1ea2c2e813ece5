from datetime import datetime
from uuid import UUID
from typing import Optional, List

from sqlalchemy import String, Text, BigInteger, Integer, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy import Enum as PgEnum
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from storage_gateway.db.base import Base, CreatedAt, UpdatedAt
from storage_gateway.models import BackendType, ChunkStatus, FileChunk, SessionStatus, UploadSession


class UploadSessionORM(Base):
    __tablename__ = "upload_sessions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    owner_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    folder_id: Mapped[Optional[UUID]] = mapped_column(PG_UUID(as_uuid=True))

    file_name: Mapped[str] = mapped_column(String, nullable=False)
    content_type: Mapped[str] = mapped_column(String(255), nullable=False)
    total_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False)
    uploaded_chunks: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    status: Mapped[SessionStatus] = mapped_column(
        PgEnum(SessionStatus, name="upload_session_status_enum"), nullable=False, default=SessionStatus.INITIATED
    )
    preferred_backend: Mapped[Optional[BackendType]] = mapped_column(PgEnum(BackendType, name="backend_type_enum"))
    encryption_key_ref: Mapped[str] = mapped_column(String(100), nullable=False)

    # Заполняется при complete_upload; FK не ставим, файл мог быть дедуплицирован в чужую строку
    file_id: Mapped[Optional[UUID]] = mapped_column(PG_UUID(as_uuid=True))

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created: Mapped[CreatedAt]
    edited: Mapped[UpdatedAt]

    chunks: Mapped[List["FileChunkORM"]] = relationship(
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("idx_upload_sessions_status_expires", "status", "expires_at"),
    )

    @classmethod
    def from_domain(cls, session: UploadSession) -> "UploadSessionORM":
        return cls(
            id=session.session_id,
            owner_id=session.owner_id,
            folder_id=session.folder_id,
            file_name=session.file_name,
            content_type=session.content_type,
            total_size=session.total_size,
            total_chunks=session.total_chunks,
            uploaded_chunks=session.uploaded_chunks,
            status=session.status,
            preferred_backend=session.preferred_backend,
            encryption_key_ref=session.encryption_key_ref,
            file_id=session.file_id,
            expires_at=session.expires_at,
            completed_at=session.completed_at,
            created=session.created_at,
        )

    def to_domain(self) -> UploadSession:
        return UploadSession(
            session_id=self.id,
            owner_id=self.owner_id,
            folder_id=self.folder_id,
            file_name=self.file_name,
            content_type=self.content_type,
            total_size=self.total_size,
            total_chunks=self.total_chunks,
            uploaded_chunks=self.uploaded_chunks,
            status=self.status,
            preferred_backend=self.preferred_backend,
            encryption_key_ref=self.encryption_key_ref,
            file_id=self.file_id,
            created_at=self.created,
            expires_at=self.expires_at,
            completed_at=self.completed_at,
        )


class FileChunkORM(Base):
    __tablename__ = "file_chunks"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    session_id: Mapped[UUID] = mapped_column(
        ForeignKey("upload_sessions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    chunk_number: Mapped[int] = mapped_column(Integer, nullable=False)
    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False)
    size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    checksum: Mapped[str] = mapped_column(String(64), nullable=False)

    node_id: Mapped[str] = mapped_column(String(50), nullable=False)
    backend_type: Mapped[BackendType] = mapped_column(PgEnum(BackendType, name="backend_type_enum"), nullable=False)
    encrypted_location: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[ChunkStatus] = mapped_column(
        PgEnum(ChunkStatus, name="chunk_status_enum"), nullable=False, default=ChunkStatus.PENDING
    )
    uploaded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    session: Mapped["UploadSessionORM"] = relationship(back_populates="chunks")

    __table_args__ = (
        UniqueConstraint("session_id", "chunk_number", name="uq_file_chunks_session_number"),
    )

    @classmethod
    def from_domain(cls, chunk: FileChunk) -> "FileChunkORM":
        return cls(
            id=chunk.id,
            session_id=chunk.session_id,
            chunk_number=chunk.chunk_number,
            total_chunks=chunk.total_chunks,
            size=chunk.size,
            checksum=chunk.checksum,
            node_id=chunk.node_id,
            backend_type=chunk.backend_type,
            encrypted_location=chunk.encrypted_location,
            status=chunk.status,
            uploaded_at=chunk.uploaded_at,
        )

    def to_domain(self) -> FileChunk:
        return FileChunk(
            id=self.id,
            session_id=self.session_id,
            chunk_number=self.chunk_number,
            total_chunks=self.total_chunks,
            size=self.size,
            checksum=self.checksum,
            node_id=self.node_id,
            backend_type=self.backend_type,
            encrypted_location=self.encrypted_location,
            status=self.status,
            uploaded_at=self.uploaded_at,
        )
