"""AES-256-GCM primitive shared by path, credential and key-wrapping encryption."""

import base64
import binascii
import os
import logging

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from storage_gateway.exceptions import EncryptionError
from storage_gateway.models.crypto import EncryptedData, EncryptionAlgorithm

logger = logging.getLogger(__name__)

KEY_SIZE_BYTES = 32   # 256 bit
IV_SIZE_BYTES = 12    # 96 bit, рекомендуемый для GCM
TAG_SIZE_BYTES = 16   # 128 bit, AESGCM дописывает тег в конец шифротекста


class AesGcmCipher:
    algorithm = EncryptionAlgorithm.AES_256_GCM.value

    @staticmethod
    def generate_key_bytes() -> bytes:
        return AESGCM.generate_key(bit_length=KEY_SIZE_BYTES * 8)

    def encrypt(self, plaintext: str | bytes, key: bytes) -> EncryptedData:
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")
        _check_key(key)
        iv = os.urandom(IV_SIZE_BYTES)
        try:
            ciphertext = AESGCM(key).encrypt(iv, plaintext, None)
        except (ValueError, OverflowError) as e:
            raise EncryptionError("Encryption failed") from e
        return EncryptedData(algorithm=self.algorithm, iv=iv, ciphertext=ciphertext)

    def decrypt(self, data: EncryptedData, key: bytes) -> bytes:
        """Fails closed: wrong key, tampered data or foreign format all raise EncryptionError."""
        if data.algorithm != self.algorithm:
            raise EncryptionError(f"Unsupported algorithm tag: {data.algorithm}")
        if len(data.iv) != IV_SIZE_BYTES:
            raise EncryptionError("Invalid IV length")
        if len(data.ciphertext) < TAG_SIZE_BYTES:
            raise EncryptionError("Ciphertext too short")
        _check_key(key)
        try:
            return AESGCM(key).decrypt(data.iv, data.ciphertext, None)
        except InvalidTag as e:
            logger.warning("Authentication tag mismatch on decrypt")
            raise EncryptionError("Decryption failed: authentication tag mismatch") from e

    def wrap_key(self, key: bytes, master_key: bytes) -> str:
        """Шифрует ключ мастер-ключом: base64(iv || ciphertext)."""
        data = self.encrypt(key, master_key)
        return base64.b64encode(data.iv + data.ciphertext).decode("ascii")

    def unwrap_key(self, wrapped: str, master_key: bytes) -> bytes:
        try:
            combined = base64.b64decode(wrapped, validate=True)
        except (binascii.Error, ValueError) as e:
            raise EncryptionError("Wrapped key is not valid base64") from e
        if len(combined) <= IV_SIZE_BYTES + TAG_SIZE_BYTES:
            raise EncryptionError("Wrapped key is truncated")
        data = EncryptedData(
            algorithm=self.algorithm,
            iv=combined[:IV_SIZE_BYTES],
            ciphertext=combined[IV_SIZE_BYTES:],
        )
        return self.decrypt(data, master_key)


def _check_key(key: bytes) -> None:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE_BYTES:
        raise EncryptionError("Encryption key must be 32 bytes")


def generate_master_key() -> str:
    """Криптостойкий 256-битный мастер-ключ в base64."""
    return base64.b64encode(os.urandom(KEY_SIZE_BYTES)).decode("ascii")


def validate_master_key(master_key: str | None) -> bool:
    if not master_key:
        return False
    try:
        return len(base64.b64decode(master_key, validate=True)) == KEY_SIZE_BYTES
    except (binascii.Error, ValueError):
        return False


def decode_master_key(master_key: str | None) -> bytes:
    if not validate_master_key(master_key):
        raise EncryptionError("Master key must be base64 of 32 random bytes")
    return base64.b64decode(master_key)
