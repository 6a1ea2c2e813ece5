from .cipher import AesGcmCipher, generate_master_key, validate_master_key, decode_master_key
from .encryption_service import (
    EncryptionService,
    EncryptedPath,
    PathEncryptionService,
    CredentialEncryptionService,
)

__all__ = [
    "AesGcmCipher", "generate_master_key", "validate_master_key", "decode_master_key",
    "EncryptionService", "EncryptedPath", "PathEncryptionService", "CredentialEncryptionService",
]
