import logging
from uuid import uuid4

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

from storage_gateway.db.base import get_session
from storage_gateway.db.key_orm import EncryptionKeyORM
from storage_gateway.exceptions import DatabaseError, EncryptionError, KeyNotFoundError
from storage_gateway.models import EncryptionAlgorithm, EncryptionKey
from storage_gateway.security.cipher import AesGcmCipher

logger = logging.getLogger(__name__)

VAULT_ID = "postgres"


class DatabaseKeyStore:
    """
    Ключи файлов и сессий в таблице encryption_keys.
    Байты ключа хранятся только обёрнутыми мастер-ключом из конфигурации.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        master_key: bytes,
        cipher: AesGcmCipher | None = None,
    ):
        self._session_factory = session_factory
        self._master_key = master_key
        self._cipher = cipher or AesGcmCipher()

    async def generate_key(self, key_ref: str | None = None) -> EncryptionKey:
        key_ref = key_ref or f"key-{uuid4()}"
        wrapped = self._cipher.wrap_key(self._cipher.generate_key_bytes(), self._master_key)
        async with get_session(self._session_factory) as session:
            try:
                session.add(EncryptionKeyORM(key_ref=key_ref, algorithm=EncryptionAlgorithm.AES_256_GCM, wrapped_key=wrapped))
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise EncryptionError(f"Key {key_ref} already exists") from e
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError(f"Failed to store key {key_ref}: {e}") from e
        logger.info("Generated encryption key %s", key_ref)
        return EncryptionKey(key_ref=key_ref, vault_id=VAULT_ID, algorithm=EncryptionAlgorithm.AES_256_GCM)

    async def get_key(self, key_ref: str) -> bytes:
        async with get_session(self._session_factory) as session:
            orm = await session.get(EncryptionKeyORM, key_ref)
        if orm is None:
            raise KeyNotFoundError(f"Encryption key not found: {key_ref}")
        return self._cipher.unwrap_key(orm.wrapped_key, self._master_key)

    async def has_key(self, key_ref: str) -> bool:
        async with get_session(self._session_factory) as session:
            stmt = select(func.count()).select_from(EncryptionKeyORM).where(EncryptionKeyORM.key_ref == key_ref)
            return (await session.execute(stmt)).scalar_one() > 0
