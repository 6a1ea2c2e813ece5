import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

from storage_gateway.db.base import get_session
from storage_gateway.db.node_orm import StorageNodeORM
from storage_gateway.db.uow import AsyncUnitOfWork
from storage_gateway.exceptions import DatabaseError, NodeNotFound, ValidationFailure
from storage_gateway.models import BackendType, NodeStatus, StorageNode, FULL_THRESHOLD_PERCENT
from storage_gateway.security import CredentialEncryptionService

logger = logging.getLogger(__name__)


class NodeRepository:
    """
    Реестр нод хранения.

    Учётные данные шифруются в register(); всё, что отдаётся наружу,
    содержит их в зашифрованном виде. Расшифровывает только бэкенд.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        credentials: CredentialEncryptionService,
    ):
        self._session_factory = session_factory
        self._credentials = credentials

    async def list_all(self) -> List[StorageNode]:
        async with get_session(self._session_factory) as session:
            rows = (await session.execute(select(StorageNodeORM).order_by(StorageNodeORM.node_id))).scalars().all()
            return [r.to_domain() for r in rows]

    async def find_by_type_and_status(self, backend_type: BackendType, status: NodeStatus) -> List[StorageNode]:
        async with get_session(self._session_factory) as session:
            stmt = (
                select(StorageNodeORM)
                .where(StorageNodeORM.backend_type == backend_type, StorageNodeORM.status == status)
                .order_by(StorageNodeORM.node_id)
            )
            rows = (await session.execute(stmt)).scalars().all()
            return [r.to_domain() for r in rows]

    async def find_available(self, preferred_type: BackendType | None = None) -> List[StorageNode]:
        async with get_session(self._session_factory) as session:
            stmt = select(StorageNodeORM).where(
                StorageNodeORM.status == NodeStatus.ACTIVE,
                StorageNodeORM.used_capacity_bytes * 100
                < StorageNodeORM.total_capacity_bytes * FULL_THRESHOLD_PERCENT,
            )
            if preferred_type is not None:
                stmt = stmt.where(StorageNodeORM.backend_type == preferred_type)
            rows = (await session.execute(stmt.order_by(StorageNodeORM.node_id))).scalars().all()
            return [r.to_domain() for r in rows]

    async def find(self, node_id: str) -> Optional[StorageNode]:
        async with get_session(self._session_factory) as session:
            orm = await session.get(StorageNodeORM, node_id)
            return orm.to_domain() if orm else None

    async def get(self, node_id: str) -> StorageNode:
        node = await self.find(node_id)
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
        async with get_session(self._session_factory) as session:
            orm = StorageNodeORM.from_domain(encrypted)
            try:
                session.add(orm)
                await session.commit()
                await session.refresh(orm)
            except IntegrityError as e:
                await session.rollback()
                raise ValidationFailure(f"Storage node {node.node_id} already registered") from e
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError(f"Failed to register node {node.node_id}: {e}") from e
        logger.info("Registered storage node %s (%s)", node.node_id, node.backend_type.value)
        return orm.to_domain()

    async def update_status(self, node_id: str, status: NodeStatus) -> StorageNode:
        return await self._update(node_id, status=status)

    async def record_health_check(self, node_id: str, checked_at: datetime, healthy: bool) -> StorageNode:
        values = {"last_health_check": checked_at}
        if not healthy:
            values["status"] = NodeStatus.OFFLINE
        return await self._update(node_id, **values)

    async def update_capacity(self, node_id: str, delta_bytes: int, delta_files: int = 1) -> StorageNode:
        """Read-modify-write под блокировкой строки ноды."""
        try:
            async with AsyncUnitOfWork(self._session_factory) as uow:
                stmt = select(StorageNodeORM).where(StorageNodeORM.node_id == node_id).with_for_update()
                orm = (await uow.session.execute(stmt)).scalar_one_or_none()
                if orm is None:
                    raise NodeNotFound(f"Storage node {node_id} not found")
                orm.used_capacity_bytes = max(orm.used_capacity_bytes + delta_bytes, 0)
                orm.file_count = max(orm.file_count + delta_files, 0)
                if (
                    orm.status == NodeStatus.ACTIVE
                    and orm.used_capacity_bytes * 100 >= orm.total_capacity_bytes * FULL_THRESHOLD_PERCENT
                ):
                    logger.warning("Storage node %s reached capacity threshold, marking FULL", node_id)
                    orm.status = NodeStatus.FULL
                await uow.session.flush()
                await uow.session.refresh(orm)
                node = orm.to_domain()
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to update capacity of node {node_id}: {e}") from e
        return node

    async def _update(self, node_id: str, **values) -> StorageNode:
        async with get_session(self._session_factory) as session:
            try:
                q = (
                    update(StorageNodeORM)
                    .where(StorageNodeORM.node_id == node_id)
                    .values(**values, edited=func.now())
                    .returning(StorageNodeORM)
                )
                orm = (await session.execute(q)).scalar_one_or_none()
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError(str(e)) from e
            if orm is None:
                raise NodeNotFound(f"Storage node {node_id} not found")
            return orm.to_domain()
