from __future__ import annotations

from typing import Optional
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storage_gateway.db.base import is_postgres


class AsyncUnitOfWork:
    """
    Одна транзакция: commit на выходе, rollback при исключении.

    С lock_key сразу берёт транзакционный advisory-lock
    (pg_advisory_xact_lock), так что операции над одной сессией
    загрузки или одной нодой идут строго по очереди между процессами.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], lock_key: UUID | str | None = None):
        self._sf = session_factory
        self._lock_key = lock_key
        self.session: Optional[AsyncSession] = None

    async def __aenter__(self) -> "AsyncUnitOfWork":
        self.session = self._sf()
        await self.session.__aenter__()
        if self._lock_key:
            await self.advisory_lock(self._lock_key)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        try:
            if exc is not None:
                await self.session.rollback()
            else:
                await self.session.commit()
        finally:
            await self.session.__aexit__(exc_type, exc, tb)

    async def advisory_lock(self, key: UUID | str) -> None:
        # снимается сам на commit/rollback; вне PostgreSQL блокировок нет
        if not is_postgres(self.session):
            return
        await self.session.execute(text("SELECT pg_advisory_xact_lock(hashtext(:k))"), {"k": str(key)})
