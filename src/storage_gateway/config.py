# Файл: src/storage_gateway/config.py

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal, Optional

from storage_gateway.models.node import BackendType, NodeStatus


# --- 1. Настройки PostgreSQL (метаданные, реестр нод, сессии, ключи) ---
class PostgresConfig(BaseModel):
    user: str = "postgres"
    password: str = "postgres"
    host: str = "localhost"
    port: int = 5432
    db: str = "storage_gateway"

    pool_size: int = 5
    max_overflow: int = 5
    pool_timeout: int = 30
    pool_recycle: int = 1800
    pool_pre_ping: bool = True
    application_name: str = "storage_gateway"

    def get_pg_dsn(self) -> str:
        """Собирает DSN для SQLAlchemy из полей этого объекта."""
        return f"postgresql+asyncpg://{self.user}:{self.password}@{self.host}:{self.port}/{self.db}"


# --- 2. Шифрование путей и учётных данных нод ---
class EncryptionConfig(BaseModel):
    # base64 от 32 байт; генерируется командой `storage-gateway generate-master-key`
    master_key: Optional[str] = None
    credential_key_ref: str = "key-credentials-master"
    key_store: Literal["memory", "database"] = "database"
    max_memory_keys: int = 100_000


# --- 3. Параметры самого шлюза ---
class GatewayOptions(BaseModel):
    metadata_backend: Literal["postgres", "memory"] = "postgres"
    selection_strategy: Literal["least_used", "round_robin"] = "least_used"
    session_expiry_hours: int = Field(24, gt=0)
    spool_max_memory_bytes: int = 8 * 1024 * 1024
    checksum_buffer_size: int = 8192
    presign_expiry_seconds: int = 3600
    cache_ttl_seconds: int = 60
    cache_max_entries: int = 1024
    bucket_prefix: str = "files"


# --- 4. Описание ноды, которую `init` регистрирует при старте ---
class StorageNodeSeed(BaseModel):
    id: str
    type: BackendType
    endpoint: str
    public_endpoint: Optional[str] = None
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    bucket: Optional[str] = None
    region: Optional[str] = None
    total_capacity_bytes: int = Field(1024 ** 4, gt=0)
    status: NodeStatus = NodeStatus.ACTIVE


# --- 5. Основной класс для явной передачи конфигурации в фабрику ---
class GatewayConfig(BaseModel):
    postgres: PostgresConfig = Field(default_factory=PostgresConfig)
    encryption: EncryptionConfig = Field(default_factory=EncryptionConfig)
    gateway: GatewayOptions = Field(default_factory=GatewayOptions)
    nodes: list[StorageNodeSeed] = Field(default_factory=list)


# --- 6. Settings читает всё то же самое из окружения / .env ---
class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    log_level: str = Field("INFO", alias="LOG_LEVEL")

    postgres: PostgresConfig = Field(default_factory=PostgresConfig)
    encryption: EncryptionConfig = Field(default_factory=EncryptionConfig)
    gateway: GatewayOptions = Field(default_factory=GatewayOptions)
    # NODES='[{"id": "minio-1", "type": "MINIO", "endpoint": "http://localhost:9000", ...}]'
    nodes: list[StorageNodeSeed] = Field(default_factory=list)

    def to_gateway_config(self) -> GatewayConfig:
        return GatewayConfig(
            postgres=self.postgres,
            encryption=self.encryption,
            gateway=self.gateway,
            nodes=self.nodes,
        )


# Ленивая инициализация: ошибки валидации не должны всплывать при импорте.
_cached_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Возвращает синглтон-экземпляр настроек, создавая его при первом вызове.
    """
    global _cached_settings
    if _cached_settings is None:
        _cached_settings = Settings()
    return _cached_settings


def reset_settings() -> None:
    """Сбрасывает кэш настроек (нужно тестам, которые меняют окружение)."""
    global _cached_settings
    _cached_settings = None
