import hashlib
import io
from uuid import uuid4

import pytest

from storage_gateway import GatewayClient
from storage_gateway.exceptions import (
    BackendError,
    FileNotFound,
    InvalidStateError,
    NoAvailableNodesError,
    UnauthorizedError,
    ValidationFailure,
)
from storage_gateway.models import BackendType, FileStatus, NodeStatus
from storage_gateway.services import checksum_bytes

from conftest import backend_of, make_node

# Помечаем все тесты в этом файле для работы с asyncio
pytestmark = pytest.mark.asyncio


async def test_full_lifecycle(client: GatewayClient, minio_node, owner_id):
    """
    Полный жизненный цикл файла: загрузка, скачивание, листинг, удаление.
    """
    # --- ARRANGE ---
    content = b"This is a test file for the full lifecycle."

    # 1. Загрузка
    # --- ACT ---
    result = await client.upload(owner_id, "lifecycle.log", io.BytesIO(content), "text/plain", declared_size=len(content))

    # --- ASSERT ---
    assert result.file_name == "lifecycle.log"
    assert result.size == len(content)
    assert result.content_type == "text/plain"
    assert result.checksum == hashlib.sha256(content).hexdigest()
    assert result.storage_node_id == "minio-1"
    assert result.deduplicated is False

    # 2. Скачивание
    # --- ACT ---
    download = await client.download(result.file_id, owner_id)

    # --- ASSERT ---
    assert download.file_name == "lifecycle.log"
    assert download.size == len(content)
    data = download.read_all()
    assert data == content
    assert download.verify_integrity(data)

    # 3. Листинг
    files = await client.list_files(owner_id)
    assert [f.file_id for f in files] == [result.file_id]

    # 4. Удаление
    await client.delete_file(result.file_id, owner_id)

    assert await client.list_files(owner_id) == []
    deleted = await client.get_file(result.file_id, owner_id)
    assert deleted.metadata.status == FileStatus.DELETED
    # мягкое удаление: байты в бэкенде остаются
    assert len(backend_of(client).objects) == 1


async def test_download_of_deleted_file_is_invalid_state(client: GatewayClient, minio_node, owner_id):
    result = await client.upload(owner_id, "gone.txt", b"soon deleted")
    await client.delete_file(result.file_id, owner_id)

    with pytest.raises(InvalidStateError):
        await client.download(result.file_id, owner_id)
    # повторное удаление - не ошибка
    await client.delete_file(result.file_id, owner_id)


async def test_same_content_is_deduplicated(client: GatewayClient, minio_node, owner_id):
    # --- ARRANGE ---
    content = b"identical bytes"

    # --- ACT ---
    first = await client.upload(owner_id, "a.bin", content)
    second = await client.upload(owner_id, "b.bin", io.BytesIO(content))

    # --- ASSERT ---
    assert second.file_id == first.file_id
    assert second.deduplicated is True
    assert second.file_name == "a.bin"
    node = await client.registry.get("minio-1")
    assert node.used_capacity_bytes == len(content)
    assert node.file_count == 1
    assert len(backend_of(client).objects) == 1


async def test_duplicate_of_deleted_file_restores_it(client: GatewayClient, minio_node, owner_id):
    first = await client.upload(owner_id, "a.bin", b"come back")
    await client.delete_file(first.file_id, owner_id)

    second = await client.upload(owner_id, "a.bin", b"come back")

    assert second.file_id == first.file_id
    assert second.deduplicated is True
    assert [f.file_id for f in await client.list_files(owner_id)] == [first.file_id]


async def test_duplicate_of_quarantined_file_is_rejected(client: GatewayClient, minio_node, owner_id):
    first = await client.upload(owner_id, "virus.exe", b"EICAR")
    await client.metadata.update_status(first.file_id, FileStatus.QUARANTINED)

    with pytest.raises(InvalidStateError):
        await client.upload(owner_id, "again.exe", b"EICAR")
    with pytest.raises(InvalidStateError):
        await client.download(first.file_id, owner_id)


async def test_concurrent_duplicate_resolves_to_winner(client: GatewayClient, minio_node, owner_id, monkeypatch):
    """Проигравшая гонку загрузка удаляет свой объект и возвращает победителя."""
    # --- ARRANGE ---
    winner = await client.upload(owner_id, "race.bin", b"raced content")
    real_lookup = client.metadata.find_by_checksum
    calls = []

    async def stale_lookup(checksum):
        calls.append(checksum)
        # первая проверка "не видит" победителя, как при настоящей гонке
        return None if len(calls) == 1 else await real_lookup(checksum)

    monkeypatch.setattr(client.metadata, "find_by_checksum", stale_lookup)

    # --- ACT ---
    loser = await client.upload(owner_id, "race-2.bin", b"raced content")

    # --- ASSERT ---
    assert loser.file_id == winner.file_id
    assert loser.deduplicated is True
    assert len(backend_of(client).objects) == 1


async def test_metadata_holds_only_encrypted_path(client: GatewayClient, minio_node, owner_id):
    result = await client.upload(owner_id, "private.txt", b"top secret")

    aggregate = await client.get_file(result.file_id, owner_id)
    reference = aggregate.storage_reference

    assert reference.encrypted_path.startswith("AES-256-GCM:")
    assert str(owner_id) not in reference.encrypted_path
    assert "private.txt" not in reference.encrypted_path
    assert reference.node_id == "minio-1"
    assert reference.backend_type == BackendType.MINIO
    assert aggregate.verify_checksum(checksum_bytes(b"top secret"))
    assert not aggregate.verify_checksum(checksum_bytes(b"other"))
    ((_, physical_path),) = backend_of(client).objects.keys()
    assert physical_path.endswith(f"users/{owner_id}/{result.file_id}/private.txt")


async def test_declared_size_mismatch_is_rejected(client: GatewayClient, minio_node, owner_id):
    with pytest.raises(ValidationFailure):
        await client.upload(owner_id, "short.txt", b"12345", declared_size=10)

    assert backend_of(client).objects == {}


async def test_upload_without_nodes_fails(client: GatewayClient, owner_id):
    with pytest.raises(NoAvailableNodesError):
        await client.upload(owner_id, "nowhere.txt", b"data")


async def test_preferred_backend_is_honoured(client: GatewayClient, minio_node, owner_id):
    await client.register_node(make_node("s3-1", BackendType.S3, used_percent=50))

    result = await client.upload(owner_id, "s3.txt", b"to s3", preferred_backend=BackendType.S3)

    assert result.storage_node_id == "s3-1"
    assert (await client.get_file(result.file_id, owner_id)).backend_type == BackendType.S3


async def test_store_failure_leaves_no_metadata(client: GatewayClient, minio_node, owner_id):
    backend_of(client).fail_store = True

    with pytest.raises(BackendError) as exc_info:
        await client.upload(owner_id, "fail.txt", b"never stored")

    assert exc_info.value.retryable is True
    assert exc_info.value.node_id == "minio-1"
    assert await client.list_files(owner_id) == []
    assert (await client.registry.get("minio-1")).file_count == 0


async def test_foreign_and_missing_files(client: GatewayClient, minio_node, owner_id):
    result = await client.upload(owner_id, "mine.txt", b"mine")

    with pytest.raises(UnauthorizedError):
        await client.download(result.file_id, uuid4())
    with pytest.raises(UnauthorizedError):
        await client.delete_file(result.file_id, uuid4())
    with pytest.raises(FileNotFound):
        await client.get_file(uuid4(), owner_id)


async def test_download_from_inactive_node_is_rejected(client: GatewayClient, minio_node, owner_id):
    result = await client.upload(owner_id, "maint.txt", b"under maintenance")
    await client.set_node_status("minio-1", NodeStatus.MAINTENANCE)

    with pytest.raises(InvalidStateError):
        await client.download(result.file_id, owner_id)


async def test_presigned_url(client: GatewayClient, minio_node, owner_id):
    result = await client.upload(owner_id, "link.txt", b"share me")

    url = await client.generate_download_url(result.file_id, owner_id, expires_in=60)

    assert url.startswith("memory://minio-1/")
    assert url.endswith("?expires=60")


async def test_presigned_url_unsupported_backend(client: GatewayClient, owner_id):
    await client.register_node(make_node("sftp-1", BackendType.SFTP))
    result = await client.upload(owner_id, "sftp.txt", b"no links")

    with pytest.raises(InvalidStateError):
        await client.generate_download_url(result.file_id, owner_id)


async def test_list_files_paginates(client: GatewayClient, minio_node, owner_id):
    ids = {(await client.upload(owner_id, f"{i}.txt", f"file {i}".encode())).file_id for i in range(3)}

    page = await client.list_files(owner_id, limit=2, offset=0)
    rest = await client.list_files(owner_id, limit=2, offset=2)

    assert len(page) == 2
    assert len(rest) == 1
    assert {f.file_id for f in page} | {f.file_id for f in rest} == ids
    assert page[0].metadata.created_at >= page[1].metadata.created_at >= rest[0].metadata.created_at
    assert await client.list_files(uuid4()) == []


@pytest.mark.parametrize(
    "file_name",
    ["../../../../etc/cron.d/evil", "nested/name.txt", "..\\windows.ini", "nul\x00byte.txt", "..", "."],
)
async def test_file_name_must_be_a_single_segment(client: GatewayClient, minio_node, owner_id, file_name):
    with pytest.raises(ValidationFailure):
        await client.upload(owner_id, file_name, b"escape attempt")

    assert backend_of(client).objects == {}


async def test_dots_inside_file_name_are_allowed(client: GatewayClient, minio_node, owner_id):
    result = await client.upload(owner_id, "archive..tar.gz", b"dots")

    assert result.file_name == "archive..tar.gz"
