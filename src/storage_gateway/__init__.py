# Файл: src/storage_gateway/__init__.py

from typing import Callable, Mapping, Optional

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from .client import GatewayClient
from .config import get_settings, GatewayConfig, PostgresConfig, EncryptionConfig, GatewayOptions, StorageNodeSeed
from .backends import BackendRouter, StorageBackend, MinioBackend, S3Backend, SftpBackend
from .models import BackendType
from .ports import CachePort, EventPublisher
from .repositories import (
    FileMetadataRepository,
    NodeRepository,
    UploadSessionRepository,
    DatabaseKeyStore,
    InMemoryFileMetadataStore,
    InMemoryNodeRegistry,
    InMemoryUploadSessionStore,
    InMemoryKeyStore,
)
from .security import (
    AesGcmCipher,
    EncryptionService,
    PathEncryptionService,
    CredentialEncryptionService,
    decode_master_key,
)
from .services import (
    NodeSelector,
    create_strategy,
    InMemoryTTLCache,
    SafeCache,
    LoggingEventPublisher,
    SafeEventPublisher,
    FileUploadService,
    FileDownloadService,
    ChunkedUploadService,
)

from .exceptions import *

BackendFactory = Callable[..., StorageBackend]

DEFAULT_BACKENDS: dict[BackendType, BackendFactory] = {
    BackendType.MINIO: MinioBackend,
    BackendType.S3: S3Backend,
    BackendType.SFTP: SftpBackend,
}


def create_gateway_client(
    config: Optional[GatewayConfig] = None,
    *,
    backends: Optional[Mapping[BackendType, BackendFactory]] = None,
    event_publisher: Optional[EventPublisher] = None,
    cache: Optional[CachePort] = None,
) -> GatewayClient:
    """
    Фабричная функция: собирает весь граф зависимостей шлюза.

    :param config: Единый объект с настройками.
                   Если не предоставлен, используются переменные окружения.
    :param backends: Подмена адаптеров по типу бэкенда; каждая фабрика
                     получает (registry, credentials, spool_max_memory).
    :param event_publisher: Шина событий; по умолчанию - структурированный лог.
    :param cache: Кэш листингов; по умолчанию - in-memory TTL.
    :return: Сконфигурированный экземпляр GatewayClient.
    """
    if config is None:
        config = get_settings().to_gateway_config()
    options = config.gateway
    cipher = AesGcmCipher()

    # 1. Хранилища: PostgreSQL или память
    engine = None
    if options.metadata_backend == "postgres":
        engine = create_async_engine(
            config.postgres.get_pg_dsn(),
            pool_size=config.postgres.pool_size,
            max_overflow=config.postgres.max_overflow,
            pool_timeout=config.postgres.pool_timeout,
            pool_recycle=config.postgres.pool_recycle,
            pool_pre_ping=config.postgres.pool_pre_ping,
            connect_args={
                "server_settings": {
                    "application_name": config.postgres.application_name
                }
            },
        )
        session_factory = async_sessionmaker(bind=engine, expire_on_commit=False)

        if config.encryption.key_store == "database":
            key_store = DatabaseKeyStore(session_factory, decode_master_key(config.encryption.master_key), cipher)
        else:
            key_store = InMemoryKeyStore(config.encryption.max_memory_keys, cipher)
        encryption = EncryptionService(key_store, cipher)
        credentials = CredentialEncryptionService(encryption, config.encryption.credential_key_ref)

        metadata = FileMetadataRepository(session_factory)
        registry = NodeRepository(session_factory, credentials)
        sessions = UploadSessionRepository(session_factory)
    else:
        # Без базы ключи тоже живут только в памяти
        key_store = InMemoryKeyStore(config.encryption.max_memory_keys, cipher)
        encryption = EncryptionService(key_store, cipher)
        credentials = CredentialEncryptionService(encryption, config.encryption.credential_key_ref)

        metadata = InMemoryFileMetadataStore()
        registry = InMemoryNodeRegistry(credentials)
        sessions = InMemoryUploadSessionStore()

    paths = PathEncryptionService(encryption)

    # 2. Адаптеры бэкендов и роутер
    factories = {**DEFAULT_BACKENDS, **(backends or {})}
    router = BackendRouter({
        backend_type: factory(registry, credentials, options.spool_max_memory_bytes)
        for backend_type, factory in factories.items()
    })

    # 3. Сервисы
    selector = NodeSelector(create_strategy(options.selection_strategy))
    events = SafeEventPublisher(event_publisher or LoggingEventPublisher())
    listing_cache = SafeCache(cache or InMemoryTTLCache(options.cache_max_entries))

    uploads = FileUploadService(metadata, registry, selector, router, paths, events, listing_cache, options)
    downloads = FileDownloadService(metadata, registry, router, paths, events, listing_cache, options)
    chunked = ChunkedUploadService(sessions, registry, selector, router, encryption, paths, uploads, options)

    # 4. Собираем и возвращаем клиент
    return GatewayClient(
        config=config,
        metadata=metadata,
        registry=registry,
        sessions=sessions,
        key_store=key_store,
        router=router,
        uploads=uploads,
        downloads=downloads,
        chunked=chunked,
        engine=engine,
    )


__all__ = [
    "GatewayClient", "create_gateway_client",
    "GatewayConfig", "PostgresConfig", "EncryptionConfig", "GatewayOptions", "StorageNodeSeed",
    "BackendType",
    "StorageGatewayError", "NotFoundError", "FileNotFound", "SessionNotFound", "NodeNotFound",
    "UnauthorizedError", "InvalidStateError", "NoAvailableNodesError", "BackendError",
    "EncryptionError", "KeyNotFoundError", "CorruptedDataError", "ValidationFailure", "DatabaseError",
]
