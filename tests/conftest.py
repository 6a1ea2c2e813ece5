import io
from typing import Optional
from uuid import uuid4

import pytest
import pytest_asyncio

from storage_gateway import GatewayClient, create_gateway_client
from storage_gateway.backends import StorageBackend, StorageResult
from storage_gateway.config import EncryptionConfig, GatewayConfig, GatewayOptions, reset_settings
from storage_gateway.models import BackendType, NodeStatus, StorageNode


class InMemoryBackend(StorageBackend):
    """
    Тестовый бэкенд: объекты лежат в словаре (node_id, path) -> bytes.
    Физический путь строится так же, как у объектных хранилищ: bucket/key.
    """

    backend_type = BackendType.MINIO

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.objects: dict[tuple[str, str], bytes] = {}
        self.fail_store = False
        self.unreachable: set[str] = set()

    async def store(self, stream, context):
        node = context.target_node
        if self.fail_store:
            raise self._error("Injected store failure", node.node_id)
        bucket = context.bucket or "default"
        path = f"{bucket}/{context.object_key}"
        data = stream.read()
        self.objects[(node.node_id, path)] = data
        return StorageResult(physical_path=path, bucket=bucket, bytes_written=len(data))

    async def retrieve(self, reference, decrypted_path):
        node = await self._resolve_node(reference)
        try:
            return io.BytesIO(self.objects[(node.node_id, decrypted_path)])
        except KeyError:
            raise self._error("Object not found", node.node_id) from None

    async def _delete(self, node, decrypted_path):
        self.objects.pop((node.node_id, decrypted_path), None)

    async def exists(self, reference, decrypted_path):
        return (reference.node_id, decrypted_path) in self.objects

    async def generate_presigned_url(self, reference, decrypted_path, expires_in) -> Optional[str]:
        return f"memory://{reference.node_id}/{decrypted_path}?expires={expires_in}"

    async def check_connection(self, node):
        if node.node_id in self.unreachable:
            raise self._error("Node unreachable", node.node_id)


class NoPresignBackend(InMemoryBackend):
    """Как SFTP: подписанных ссылок нет."""

    backend_type = BackendType.SFTP

    async def generate_presigned_url(self, reference, decrypted_path, expires_in) -> Optional[str]:
        return None


TEST_BACKENDS = {
    BackendType.MINIO: InMemoryBackend,
    BackendType.S3: InMemoryBackend,
    BackendType.SFTP: NoPresignBackend,
}


def make_node(
    node_id: str,
    backend_type: BackendType = BackendType.MINIO,
    used_percent: float = 0,
    status: NodeStatus = NodeStatus.ACTIVE,
    total: int = 1_000_000,
    bucket: Optional[str] = None,
) -> StorageNode:
    return StorageNode(
        node_id=node_id,
        backend_type=backend_type,
        endpoint_url=f"http://{node_id}:9000",
        access_key="access",
        secret_key="secret",
        bucket=bucket,
        total_capacity_bytes=total,
        used_capacity_bytes=int(total * used_percent / 100),
        status=status,
    )


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Кэш настроек не должен протекать между тестами, меняющими окружение."""
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def gateway_config() -> GatewayConfig:
    return GatewayConfig(
        encryption=EncryptionConfig(key_store="memory"),
        gateway=GatewayOptions(metadata_backend="memory", spool_max_memory_bytes=1024),
    )


@pytest.fixture
def owner_id():
    return uuid4()


@pytest_asyncio.fixture(scope="function")
async def client(gateway_config) -> GatewayClient:
    """
    Собирает GatewayClient через настоящую фабрику, но с in-memory
    хранилищами и тестовым бэкендом вместо MinIO/S3/SFTP.
    """
    client = create_gateway_client(gateway_config, backends=TEST_BACKENDS)
    yield client
    await client.aclose()


@pytest_asyncio.fixture(scope="function")
async def minio_node(client: GatewayClient) -> StorageNode:
    return await client.register_node(make_node("minio-1"))


def backend_of(client: GatewayClient, backend_type: BackendType = BackendType.MINIO) -> InMemoryBackend:
    return client.router.for_type(backend_type)


# ――― контейнеры для интеграционных тестов ――― #

@pytest.fixture(scope="session")
def postgres_container():
    """PostgreSQL в Docker на всю сессию; без Docker тесты пропускаются."""
    from testcontainers.postgres import PostgresContainer

    container = PostgresContainer("postgres:15")
    try:
        container.start()
    except Exception as e:
        pytest.skip(f"Docker is not available: {e}")
    yield container
    container.stop()


@pytest.fixture(scope="session")
def minio_container():
    from testcontainers.minio import MinioContainer

    container = MinioContainer("minio/minio:latest", access_key="minioadmin", secret_key="minioadmin")
    try:
        container.start()
    except Exception as e:
        pytest.skip(f"Docker is not available: {e}")
    yield container
    container.stop()
