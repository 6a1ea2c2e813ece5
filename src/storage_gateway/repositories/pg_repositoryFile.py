import logging
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select, update, func, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

from storage_gateway.db.base import get_session
from storage_gateway.db.file_orm import StoredFileORM
from storage_gateway.exceptions import DatabaseError, DuplicateChecksumError
from storage_gateway.models import FileAggregate, FileChecksum, FileStatus

logger = logging.getLogger(__name__)


class FileMetadataRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def check_connection(self):
        """Проверяет соединение с базой данных, выполняя простой запрос."""
        logger.debug("Checking PostgreSQL connection...")
        async with get_session(self._session_factory) as session:
            try:
                await session.execute(text("SELECT 1"))
                logger.debug("PostgreSQL connection successful.")
            except SQLAlchemyError as e:
                logger.error(f"PostgreSQL connection failed: {e}")
                raise DatabaseError("Failed to connect to the database.") from e

    async def save(self, aggregate: FileAggregate) -> FileAggregate:
        async with get_session(self._session_factory) as session:
            orm = StoredFileORM.from_domain(aggregate)
            try:
                session.add(orm)
                await session.commit()
                await session.refresh(orm)
                return orm.to_domain()
            except IntegrityError as e:
                await session.rollback()
                # Проигравший в гонке за уникальный content_hash
                if "uq_stored_files_content_hash" in str(e.orig):
                    raise DuplicateChecksumError(
                        f"File with checksum {aggregate.checksum} already exists"
                    ) from e
                raise DatabaseError(f"Failed to save file metadata: {e}") from e
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError(f"Failed to save file metadata: {e}") from e

    async def find_by_id(self, file_id: UUID) -> Optional[FileAggregate]:
        async with get_session(self._session_factory) as session:
            res = await session.execute(select(StoredFileORM).where(StoredFileORM.id == file_id))
            orm = res.scalar_one_or_none()
            return orm.to_domain() if orm else None

    async def find_by_checksum(self, checksum: FileChecksum) -> Optional[FileAggregate]:
        async with get_session(self._session_factory) as session:
            stmt = select(StoredFileORM).where(StoredFileORM.content_hash == checksum.digest)
            orm = (await session.execute(stmt)).scalar_one_or_none()
            if orm is None or orm.checksum_algorithm != checksum.algorithm:
                return None
            return orm.to_domain()

    async def find_by_id_and_owner(self, file_id: UUID, owner_id: UUID) -> Optional[FileAggregate]:
        async with get_session(self._session_factory) as session:
            stmt = select(StoredFileORM).where(
                StoredFileORM.id == file_id,
                StoredFileORM.owner_id == owner_id,
            )
            orm = (await session.execute(stmt)).scalar_one_or_none()
            return orm.to_domain() if orm else None

    async def list_by_owner(self, owner_id: UUID, limit: int | None = None, offset: int = 0) -> List[FileAggregate]:
        """Только ACTIVE-файлы владельца, новые сверху."""
        async with get_session(self._session_factory) as session:
            stmt = (
                select(StoredFileORM)
                .where(StoredFileORM.owner_id == owner_id, StoredFileORM.status == FileStatus.ACTIVE)
                .order_by(StoredFileORM.created.desc(), StoredFileORM.id)
                .offset(offset)
            )
            if limit is not None:
                stmt = stmt.limit(limit)
            rows = (await session.execute(stmt)).scalars().all()
            return [r.to_domain() for r in rows]

    async def update_status(self, file_id: UUID, status: FileStatus) -> Optional[FileAggregate]:
        async with get_session(self._session_factory) as session:
            try:
                q = (
                    update(StoredFileORM)
                    .where(StoredFileORM.id == file_id)
                    .values(status=status, edited=func.now())
                    .returning(StoredFileORM)
                )
                res = await session.execute(q)
                orm = res.scalar_one_or_none()
                await session.commit()
                return orm.to_domain() if orm else None
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError(str(e)) from e

    async def soft_delete(self, file_id: UUID) -> bool:
        updated = await self.update_status(file_id, FileStatus.DELETED)
        return updated is not None

    async def exists(self, file_id: UUID) -> bool:
        async with get_session(self._session_factory) as session:
            stmt = select(func.count()).select_from(StoredFileORM).where(StoredFileORM.id == file_id)
            return (await session.execute(stmt)).scalar_one() > 0
