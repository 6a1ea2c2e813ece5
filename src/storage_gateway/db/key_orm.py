from sqlalchemy import String, Text
from sqlalchemy import Enum as PgEnum
from sqlalchemy.orm import Mapped, mapped_column

from storage_gateway.db.base import Base, CreatedAt
from storage_gateway.models import EncryptionAlgorithm


class EncryptionKeyORM(Base):
    """Ключ, обёрнутый мастер-ключом: base64(iv || ciphertext)."""

    __tablename__ = "encryption_keys"

    key_ref: Mapped[str] = mapped_column(String(100), primary_key=True)
    algorithm: Mapped[EncryptionAlgorithm] = mapped_column(
        PgEnum(EncryptionAlgorithm, name="encryption_algorithm_enum"),
        nullable=False,
        default=EncryptionAlgorithm.AES_256_GCM,
    )
    wrapped_key: Mapped[str] = mapped_column(Text, nullable=False)

    created: Mapped[CreatedAt]
