import logging
from datetime import datetime
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select, delete, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

from storage_gateway.db.base import get_session
from storage_gateway.db.upload_orm import UploadSessionORM, FileChunkORM
from storage_gateway.db.uow import AsyncUnitOfWork
from storage_gateway.exceptions import DatabaseError, InvalidStateError, SessionNotFound
from storage_gateway.models import (
    ChunkStatus,
    FileChunk,
    OPEN_STATUSES,
    SessionStatus,
    UploadSession,
)

logger = logging.getLogger(__name__)


class UploadSessionRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def save(self, upload: UploadSession) -> UploadSession:
        async with get_session(self._session_factory) as session:
            orm = UploadSessionORM.from_domain(upload)
            try:
                session.add(orm)
                await session.commit()
                await session.refresh(orm)
                return orm.to_domain()
            except IntegrityError as e:
                await session.rollback()
                raise DatabaseError(f"Failed to save upload session: {e}") from e

    async def find_by_id_and_owner(self, session_id: UUID, owner_id: UUID) -> Optional[UploadSession]:
        async with get_session(self._session_factory) as session:
            stmt = select(UploadSessionORM).where(
                UploadSessionORM.id == session_id,
                UploadSessionORM.owner_id == owner_id,
            )
            orm = (await session.execute(stmt)).scalar_one_or_none()
            return orm.to_domain() if orm else None

    async def update_status(
        self,
        session_id: UUID,
        status: SessionStatus,
        *,
        expected: frozenset[SessionStatus] | None = None,
        file_id: UUID | None = None,
        completed_at: datetime | None = None,
    ) -> UploadSession:
        try:
            async with AsyncUnitOfWork(self._session_factory) as uow:
                orm = await self._lock_session(uow, session_id)
                if expected is not None and orm.status not in expected:
                    raise InvalidStateError(
                        f"Upload session {session_id} is {orm.status.value}, cannot move to {status.value}"
                    )
                orm.status = status
                if file_id is not None:
                    orm.file_id = file_id
                if completed_at is not None:
                    orm.completed_at = completed_at
                await uow.session.flush()
                await uow.session.refresh(orm)
                result = orm.to_domain()
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to update upload session {session_id}: {e}") from e
        return result

    async def record_chunk(self, chunk: FileChunk, now: datetime) -> Tuple[UploadSession, Optional[FileChunk]]:
        """
        Одна транзакция на чанк: advisory-lock + FOR UPDATE по сессии, upsert строки чанка,
        пересчёт uploaded_chunks по COMPLETED-строкам. Возвращает сессию и вытесненный чанк.
        """
        try:
            async with AsyncUnitOfWork(self._session_factory, lock_key=chunk.session_id) as uow:
                orm = await self._lock_session(uow, chunk.session_id)
                if orm.status not in OPEN_STATUSES:
                    raise InvalidStateError(f"Upload session {chunk.session_id} is {orm.status.value}")
                if now > orm.expires_at:
                    raise InvalidStateError(f"Upload session {chunk.session_id} has expired")

                stmt = select(FileChunkORM).where(
                    FileChunkORM.session_id == chunk.session_id,
                    FileChunkORM.chunk_number == chunk.chunk_number,
                )
                previous = (await uow.session.execute(stmt)).scalar_one_or_none()
                replaced = previous.to_domain() if previous else None
                if previous is not None:
                    await uow.session.delete(previous)
                    await uow.session.flush()

                uow.session.add(FileChunkORM.from_domain(chunk))
                await uow.session.flush()

                count_stmt = select(func.count()).select_from(FileChunkORM).where(
                    FileChunkORM.session_id == chunk.session_id,
                    FileChunkORM.status == ChunkStatus.COMPLETED,
                )
                orm.uploaded_chunks = (await uow.session.execute(count_stmt)).scalar_one()
                orm.status = SessionStatus.IN_PROGRESS
                await uow.session.flush()
                await uow.session.refresh(orm)
                result = orm.to_domain()
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to record chunk {chunk.chunk_number} of {chunk.session_id}: {e}") from e
        return result, replaced

    async def list_chunks(self, session_id: UUID) -> List[FileChunk]:
        async with get_session(self._session_factory) as session:
            stmt = (
                select(FileChunkORM)
                .where(FileChunkORM.session_id == session_id)
                .order_by(FileChunkORM.chunk_number)
            )
            return [r.to_domain() for r in (await session.execute(stmt)).scalars().all()]

    async def list_completed_chunks(self, session_id: UUID) -> List[FileChunk]:
        async with get_session(self._session_factory) as session:
            stmt = (
                select(FileChunkORM)
                .where(FileChunkORM.session_id == session_id, FileChunkORM.status == ChunkStatus.COMPLETED)
                .order_by(FileChunkORM.chunk_number)
            )
            return [r.to_domain() for r in (await session.execute(stmt)).scalars().all()]

    async def delete_chunks(self, session_id: UUID) -> int:
        async with get_session(self._session_factory) as session:
            try:
                res = await session.execute(delete(FileChunkORM).where(FileChunkORM.session_id == session_id))
                await session.commit()
                return res.rowcount
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError(str(e)) from e

    async def find_expired(self, now: datetime, limit: int = 100) -> List[UploadSession]:
        async with get_session(self._session_factory) as session:
            stmt = (
                select(UploadSessionORM)
                .where(UploadSessionORM.status.in_(list(OPEN_STATUSES)), UploadSessionORM.expires_at < now)
                .order_by(UploadSessionORM.expires_at)
                .limit(limit)
            )
            return [r.to_domain() for r in (await session.execute(stmt)).scalars().all()]

    @staticmethod
    async def _lock_session(uow: AsyncUnitOfWork, session_id: UUID) -> UploadSessionORM:
        stmt = select(UploadSessionORM).where(UploadSessionORM.id == session_id).with_for_update()
        orm = (await uow.session.execute(stmt)).scalar_one_or_none()
        if orm is None:
            raise SessionNotFound(f"Upload session {session_id} not found")
        return orm
