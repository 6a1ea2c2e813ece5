from __future__ import annotations

import base64
import binascii
import enum

from pydantic import Field

from storage_gateway.exceptions import CorruptedDataError, ValidationFailure

from .base import ValueObject


class EncryptionAlgorithm(str, enum.Enum):
    AES_256_GCM = "AES-256-GCM"


class EncryptionKey(ValueObject):
    """Ссылка на ключ в хранилище ключей. Самих байт ключа здесь нет."""

    key_ref: str = Field(min_length=1)
    vault_id: str = Field(min_length=1)
    algorithm: EncryptionAlgorithm = EncryptionAlgorithm.AES_256_GCM


class EncryptedData(ValueObject):
    algorithm: str = Field(min_length=1)
    iv: bytes = Field(min_length=1)
    ciphertext: bytes = Field(min_length=1)

    def serialize(self) -> str:
        """algorithm:base64(iv):base64(ciphertext)"""
        iv_b64 = base64.b64encode(self.iv).decode("ascii")
        ct_b64 = base64.b64encode(self.ciphertext).decode("ascii")
        return f"{self.algorithm}:{iv_b64}:{ct_b64}"

    @classmethod
    def deserialize(cls, serialized: str) -> "EncryptedData":
        if not isinstance(serialized, str):
            raise CorruptedDataError("Encrypted blob must be a string")
        parts = serialized.split(":", 2)
        if len(parts) != 3 or not all(parts):
            raise CorruptedDataError("Invalid encrypted data format")
        algorithm, iv_b64, ct_b64 = parts
        try:
            iv = base64.b64decode(iv_b64, validate=True)
            ciphertext = base64.b64decode(ct_b64, validate=True)
            return cls(algorithm=algorithm, iv=iv, ciphertext=ciphertext)
        except (binascii.Error, ValueError, ValidationFailure) as e:
            raise CorruptedDataError("Invalid encrypted data encoding") from e
