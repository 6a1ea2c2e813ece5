"""
Интеграционные тесты: SQLAlchemy-репозитории и MinioBackend против настоящих
PostgreSQL и MinIO из testcontainers. Без Docker пропускаются.
"""
import hashlib

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from storage_gateway import GatewayClient, create_gateway_client
from storage_gateway.config import EncryptionConfig, GatewayConfig, GatewayOptions, PostgresConfig, StorageNodeSeed
from storage_gateway.db.base import Base
from storage_gateway.exceptions import InvalidStateError, ValidationFailure
from storage_gateway.models import BackendType, SessionStatus
from storage_gateway.security import generate_master_key

pytestmark = [pytest.mark.asyncio, pytest.mark.integration]


@pytest.fixture
def pg_config(postgres_container, minio_container) -> GatewayConfig:
    minio = minio_container.get_config()
    return GatewayConfig(
        postgres=PostgresConfig(
            user=postgres_container.username,
            password=postgres_container.password,
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            db=postgres_container.dbname,
        ),
        encryption=EncryptionConfig(master_key=generate_master_key(), key_store="database"),
        gateway=GatewayOptions(metadata_backend="postgres"),
        nodes=[
            StorageNodeSeed(
                id="minio-1",
                type=BackendType.MINIO,
                endpoint=minio["endpoint"],
                access_key=minio["access_key"],
                secret_key=minio["secret_key"],
                bucket="test-bucket",
            )
        ],
    )


@pytest_asyncio.fixture(scope="function")
async def pg_client(pg_config) -> GatewayClient:
    """
    Клиент на PostgreSQL + MinIO. Таблицы создаются перед тестом
    и удаляются после него для полной изоляции.
    """
    client = create_gateway_client(pg_config)
    await client.create_tables()
    await client.seed_nodes()
    yield client
    await client.aclose()

    engine = create_async_engine(pg_config.postgres.get_pg_dsn())
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


async def test_connections_are_healthy(pg_client: GatewayClient):
    statuses = await pg_client.check_connections(record_health=True)

    assert statuses == {"postgres": "ok", "minio-1": "ok"}
    node = (await pg_client.list_nodes())[0]
    assert node.last_health_check is not None
    # учётные данные в реестре только зашифрованные
    assert node.secret_key != "minioadmin"


async def test_full_lifecycle(pg_client: GatewayClient, owner_id):
    # --- ARRANGE ---
    content = b"This is a test file for the full lifecycle." * 100

    # --- ACT ---
    first = await pg_client.upload(owner_id, "lifecycle.log", content, "text/plain")
    second = await pg_client.upload(owner_id, "copy.log", content, "text/plain")
    download = await pg_client.download(first.file_id, owner_id)

    # --- ASSERT ---
    assert first.checksum == hashlib.sha256(content).hexdigest()
    assert second.file_id == first.file_id
    assert second.deduplicated is True
    assert download.read_all() == content
    node = await pg_client.registry.get("minio-1")
    assert node.used_capacity_bytes == len(content)
    assert node.file_count == 1

    url = await pg_client.generate_download_url(first.file_id, owner_id, expires_in=300)
    assert url.startswith("http")
    assert "test-bucket" in url

    await pg_client.delete_file(first.file_id, owner_id)
    assert await pg_client.list_files(owner_id) == []
    with pytest.raises(InvalidStateError):
        await pg_client.download(first.file_id, owner_id)


async def test_keys_survive_client_restart(pg_client: GatewayClient, pg_config, owner_id):
    result = await pg_client.upload(owner_id, "persisted.txt", b"wrapped keys live in postgres")

    async with create_gateway_client(pg_config) as restarted:
        download = await restarted.download(result.file_id, owner_id)
        assert download.read_all() == b"wrapped keys live in postgres"


async def test_chunked_upload(pg_client: GatewayClient, owner_id):
    parts = [b"a" * 1024, b"b" * 1024, b"c" * 10]
    session = await pg_client.initiate_upload(owner_id, "chunked.bin", sum(map(len, parts)), len(parts))

    for number in (2, 0):
        await pg_client.upload_chunk(session.session_id, owner_id, number, parts[number])
    assert await pg_client.get_missing_chunks(session.session_id, owner_id) == [1]
    # повторная загрузка чанка не увеличивает счётчик
    await pg_client.upload_chunk(session.session_id, owner_id, 0, parts[0])
    assert (await pg_client.get_session(session.session_id, owner_id)).uploaded_chunks == 2

    await pg_client.upload_chunk(session.session_id, owner_id, 1, parts[1])
    result = await pg_client.complete_upload(session.session_id, owner_id)

    assert (await pg_client.download(result.file_id, owner_id)).read_all() == b"".join(parts)
    completed = await pg_client.get_session(session.session_id, owner_id)
    assert completed.status == SessionStatus.COMPLETED
    assert completed.file_id == result.file_id
    assert await pg_client.sessions.list_chunks(session.session_id) == []


async def test_duplicate_node_registration(pg_client: GatewayClient, pg_config):
    with pytest.raises(ValidationFailure):
        await pg_client.register_node(pg_config.nodes[0])
    # повторный seed просто пропускает известные ноды
    assert await pg_client.seed_nodes() == []
