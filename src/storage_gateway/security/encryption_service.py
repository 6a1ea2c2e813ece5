import logging
from typing import NamedTuple, Optional

from storage_gateway.exceptions import EncryptionError, KeyNotFoundError
from storage_gateway.models.crypto import EncryptedData
from storage_gateway.ports import KeyStore
from storage_gateway.security.cipher import AesGcmCipher

logger = logging.getLogger(__name__)


class EncryptionService:
    """Шифр + хранилище ключей. Ключи передаются только по ссылке."""

    def __init__(self, key_store: KeyStore, cipher: AesGcmCipher | None = None):
        self._keys = key_store
        self._cipher = cipher or AesGcmCipher()

    @property
    def key_store(self) -> KeyStore:
        return self._keys

    async def generate_key(self, key_ref: str | None = None) -> str:
        key = await self._keys.generate_key(key_ref)
        return key.key_ref

    async def encrypt(self, plaintext: str, key_ref: str) -> str:
        key = await self._keys.get_key(key_ref)
        return self._cipher.encrypt(plaintext, key).serialize()

    async def decrypt(self, serialized: str, key_ref: str) -> str:
        data = EncryptedData.deserialize(serialized)
        key = await self._keys.get_key(key_ref)
        plaintext = self._cipher.decrypt(data, key)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise EncryptionError("Decrypted payload is not valid UTF-8") from e


class EncryptedPath(NamedTuple):
    encrypted_path: str
    key_ref: str


class PathEncryptionService:
    """Физические пути шифруются до того, как попадут в метаданные."""

    def __init__(self, encryption: EncryptionService):
        self._encryption = encryption

    async def encrypt_path(self, plain_path: str, key_ref: str | None = None) -> EncryptedPath:
        # Без key_ref - свежий ключ на каждый файл
        if key_ref is None:
            key_ref = await self._encryption.generate_key()
        encrypted = await self._encryption.encrypt(plain_path, key_ref)
        return EncryptedPath(encrypted, key_ref)

    async def decrypt_path(self, encrypted_path: str, key_ref: str) -> str:
        return await self._encryption.decrypt(encrypted_path, key_ref)


class CredentialEncryptionService:
    """
    Шифрует access/secret ключи нод перед записью в реестр.
    Использует один выделенный ключ, который создаётся при первом обращении.
    """

    def __init__(self, encryption: EncryptionService, key_ref: str = "key-credentials-master"):
        self._encryption = encryption
        self._key_ref = key_ref

    async def _ensure_key(self) -> str:
        if not await self._encryption.key_store.has_key(self._key_ref):
            logger.info("Credential encryption key not found, generating new key")
            try:
                await self._encryption.generate_key(self._key_ref)
            except EncryptionError:
                # другой процесс успел создать ключ первым
                if not await self._encryption.key_store.has_key(self._key_ref):
                    raise
        return self._key_ref

    async def encrypt_credential(self, plain: Optional[str]) -> Optional[str]:
        if not plain:
            return None
        key_ref = await self._ensure_key()
        encrypted = await self._encryption.encrypt(plain, key_ref)
        logger.debug("Credential encrypted successfully")
        return encrypted

    async def decrypt_credential(self, encrypted: Optional[str]) -> Optional[str]:
        if not encrypted:
            return None
        try:
            return await self._encryption.decrypt(encrypted, self._key_ref)
        except KeyNotFoundError:
            logger.error("Credential key %s is missing; node credentials cannot be read", self._key_ref)
            raise
