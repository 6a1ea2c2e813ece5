import errno
import io
import logging
import stat
from types import SimpleNamespace

import paramiko
import pytest
from botocore.response import StreamingBody
from botocore.stub import Stubber
from minio.error import S3Error

from storage_gateway.backends import MinioBackend, S3Backend, SftpBackend, StorageContext, sftp_path
from storage_gateway.exceptions import BackendError
from storage_gateway.models import BackendType, StorageReference
from storage_gateway.repositories import InMemoryKeyStore, InMemoryNodeRegistry
from storage_gateway.security import CredentialEncryptionService, EncryptionService

from conftest import make_node

pytestmark = pytest.mark.asyncio

BASE_PATH = "2024/3/5/users/owner/fid"
SECRET_NAME = "secret-name.pdf"


async def _adapter(cls, node):
    """Адаптер поверх in-memory реестра; нода возвращается с зашифрованными ключами."""
    credentials = CredentialEncryptionService(EncryptionService(InMemoryKeyStore()))
    registry = InMemoryNodeRegistry(credentials)
    registered = await registry.register(node)
    return cls(registry, credentials), registered


def _context(node, file_name, size):
    return StorageContext(
        file_name=file_name,
        content_type="application/pdf",
        file_size=size,
        target_node=node,
        base_path=BASE_PATH,
    )


def _reference(node):
    return StorageReference(
        backend_type=node.backend_type, node_id=node.node_id, encrypted_path="x", encryption_key_ref="k"
    )


# ――― S3 через botocore Stubber ――― #

async def test_s3_bucket_is_created_lazily_once():
    # --- ARRANGE ---
    backend, node = await _adapter(S3Backend, make_node("s3-1", BackendType.S3, bucket="media"))
    client = await backend._client(node)

    with Stubber(client) as stubber:
        stubber.add_client_error(
            "head_bucket", service_error_code="404", http_status_code=404, expected_params={"Bucket": "media"}
        )
        stubber.add_response("create_bucket", {})
        stubber.add_response("put_object", {"ETag": '"etag-1"'})
        # второй файл: бакет уже известен, head_bucket не повторяется
        stubber.add_response("put_object", {"ETag": '"etag-2"'})

        # --- ACT ---
        first = await backend.store(io.BytesIO(b"one"), _context(node, "a.txt", 3))
        second = await backend.store(io.BytesIO(b"two"), _context(node, "b.txt", 3))

        stubber.assert_no_pending_responses()

    # --- ASSERT ---
    assert first.physical_path == f"media/{BASE_PATH}/a.txt"
    assert first.bucket == "media"
    assert first.etag == "etag-1"
    assert first.region == "us-east-1"
    assert second.etag == "etag-2"


async def test_s3_retrieve_exists_delete():
    backend, node = await _adapter(S3Backend, make_node("s3-1", BackendType.S3, bucket="media"))
    client = await backend._client(node)
    path = f"media/{BASE_PATH}/a.txt"

    with Stubber(client) as stubber:
        stubber.add_response("get_object", {"Body": StreamingBody(io.BytesIO(b"payload"), 7), "ContentLength": 7})
        stubber.add_response("head_object", {"ContentLength": 7})
        stubber.add_client_error("head_object", service_error_code="404", http_status_code=404)
        stubber.add_response("delete_object", {}, {"Bucket": "media", "Key": f"{BASE_PATH}/a.txt"})

        stream = await backend.retrieve(_reference(node), path)
        assert stream.read() == b"payload"
        assert await backend.exists(_reference(node), path) is True
        assert await backend.exists(_reference(node), path) is False
        await backend.delete(_reference(node), path)

        stubber.assert_no_pending_responses()


async def test_s3_presigned_url():
    backend, node = await _adapter(S3Backend, make_node("s3-1", BackendType.S3, bucket="media"))

    url = await backend.generate_presigned_url(_reference(node), f"media/{BASE_PATH}/a.txt", 60)

    assert url.startswith("http://s3-1:9000/media/")
    assert "X-Amz-Expires=60" in url


async def test_s3_errors_are_mapped_without_leaking_path(caplog):
    # --- ARRANGE ---
    backend, node = await _adapter(S3Backend, make_node("s3-1", BackendType.S3, bucket="media"))
    client = await backend._client(node)
    path = f"media/{BASE_PATH}/{SECRET_NAME}"

    with Stubber(client) as stubber:
        stubber.add_client_error(
            "get_object",
            service_error_code="AccessDenied",
            service_message=f"Access Denied for {path}",
            http_status_code=403,
        )

        # --- ACT ---
        with caplog.at_level(logging.DEBUG):
            with pytest.raises(BackendError) as exc_info:
                await backend.retrieve(_reference(node), path)

    # --- ASSERT ---
    error = exc_info.value
    assert error.code == "AccessDenied"
    assert error.node_id == "s3-1"
    assert error.retryable is True
    assert error.__cause__ is None
    assert SECRET_NAME not in str(error)
    assert SECRET_NAME not in caplog.text
    assert "ClientError (code=AccessDenied)" in caplog.text


# ――― MinIO с подменённым клиентом ――― #

def _s3_error(code, object_name):
    return S3Error(
        code=code,
        message="S3 operation failed",
        resource=f"/files-2024-03/{object_name}",
        request_id="req",
        host_id="host",
        response=None,
        bucket_name="files-2024-03",
        object_name=object_name,
    )


class RaisingMinio:
    def __init__(self, code):
        self.code = code

    def get_object(self, bucket, key):
        raise _s3_error(self.code, key)

    def stat_object(self, bucket, key):
        raise _s3_error(self.code, key)


async def test_minio_failure_log_has_no_object_path(caplog):
    # --- ARRANGE ---
    backend, node = await _adapter(MinioBackend, make_node("minio-x"))
    backend._clients[(node.node_id, node.endpoint_url)] = RaisingMinio("NoSuchKey")
    path = f"files-2024-03/{BASE_PATH}/{SECRET_NAME}"

    # --- ACT ---
    with caplog.at_level(logging.DEBUG):
        with pytest.raises(BackendError) as exc_info:
            await backend.retrieve(_reference(node), path)

    # --- ASSERT ---
    assert exc_info.value.code == "NoSuchKey"
    assert SECRET_NAME not in caplog.text
    assert "S3Error (code=NoSuchKey)" in caplog.text


async def test_minio_missing_object_does_not_exist():
    backend, node = await _adapter(MinioBackend, make_node("minio-x"))
    backend._clients[(node.node_id, node.endpoint_url)] = RaisingMinio("NoSuchKey")

    assert await backend.exists(_reference(node), f"files-2024-03/{BASE_PATH}/a.txt") is False


# ――― SFTP с поддельным paramiko-клиентом ――― #

class FakeSftp:
    """Файловая система SFTP-сервера в памяти: каталоги и файлы по абсолютным путям."""

    def __init__(self, root="/srv/files"):
        self.dirs = {"/", "/srv", root}
        self.files: dict[str, bytes] = {}
        self.fail_writes = False

    def stat(self, path):
        if path in self.dirs:
            return SimpleNamespace(st_mode=stat.S_IFDIR | 0o755)
        if path in self.files:
            return SimpleNamespace(st_mode=stat.S_IFREG | 0o644, st_size=len(self.files[path]))
        raise FileNotFoundError(errno.ENOENT, "No such file", path)

    def mkdir(self, path):
        self.dirs.add(path)

    def putfo(self, fl, remotepath, file_size=0, callback=None, confirm=True):
        if self.fail_writes:
            raise PermissionError(errno.EACCES, "Permission denied", remotepath)
        parent = remotepath.rsplit("/", 1)[0] or "/"
        if parent not in self.dirs:
            raise FileNotFoundError(errno.ENOENT, "No such file", remotepath)
        self.files[remotepath] = fl.read()
        return SimpleNamespace(st_size=len(self.files[remotepath]))

    def getfo(self, remotepath, fl):
        if remotepath not in self.files:
            raise FileNotFoundError(errno.ENOENT, "No such file", remotepath)
        fl.write(self.files[remotepath])
        return len(self.files[remotepath])

    def remove(self, path):
        if path not in self.files:
            raise FileNotFoundError(errno.ENOENT, "No such file", path)
        del self.files[path]

    def close(self):
        pass


class FakeSshClient:
    def __init__(self, sftp):
        self._sftp = sftp
        self.closed = False

    def open_sftp(self):
        return self._sftp

    def close(self):
        self.closed = True


@pytest.fixture
def fake_sftp():
    return FakeSftp()


async def _sftp_adapter(fake_sftp):
    backend, node = await _adapter(SftpBackend, make_node("sftp-1", BackendType.SFTP, bucket="/srv/files"))
    connections = []

    def connect(node, username, password):
        assert (username, password) == ("access", "secret")
        client = FakeSshClient(fake_sftp)
        connections.append(client)
        return client

    backend._connect = connect
    return backend, node, connections


async def test_sftp_store_creates_directories_under_root(fake_sftp):
    # --- ARRANGE ---
    backend, node, connections = await _sftp_adapter(fake_sftp)

    # --- ACT ---
    result = await backend.store(io.BytesIO(b"remote bytes"), _context(node, "a.txt", 12))

    # --- ASSERT ---
    expected = f"/srv/files/{BASE_PATH}/a.txt"
    assert result.physical_path == expected
    assert result.bucket is None
    assert result.bytes_written == 12
    assert fake_sftp.files == {expected: b"remote bytes"}
    assert f"/srv/files/{BASE_PATH}" in fake_sftp.dirs
    # соединение на операцию, и оно закрыто
    assert [c.closed for c in connections] == [True]


async def test_sftp_retrieve_exists_delete(fake_sftp):
    backend, node, _ = await _sftp_adapter(fake_sftp)
    stored = await backend.store(io.BytesIO(b"abc"), _context(node, "a.txt", 3))
    reference = _reference(node)

    assert (await backend.retrieve(reference, stored.physical_path)).read() == b"abc"
    assert await backend.exists(reference, stored.physical_path) is True

    await backend.delete(reference, stored.physical_path)
    assert await backend.exists(reference, stored.physical_path) is False
    # повторное удаление отсутствующего файла - не ошибка
    await backend.delete(reference, stored.physical_path)


async def test_sftp_has_no_presigned_urls(fake_sftp):
    backend, node, connections = await _sftp_adapter(fake_sftp)

    assert await backend.generate_presigned_url(_reference(node), "/srv/files/a.txt", 60) is None
    assert connections == []


async def test_sftp_errors_are_mapped_without_leaking_path(fake_sftp, caplog):
    # --- ARRANGE ---
    backend, node, _ = await _sftp_adapter(fake_sftp)
    fake_sftp.fail_writes = True

    # --- ACT ---
    with caplog.at_level(logging.DEBUG):
        with pytest.raises(BackendError) as exc_info:
            await backend.store(io.BytesIO(b"abc"), _context(node, SECRET_NAME, 3))

    # --- ASSERT ---
    assert exc_info.value.code == str(errno.EACCES)
    assert exc_info.value.backend_type == "SFTP"
    assert SECRET_NAME not in caplog.text
    assert "PermissionError" in caplog.text


async def test_sftp_missing_file_on_retrieve(fake_sftp):
    backend, node, _ = await _sftp_adapter(fake_sftp)

    with pytest.raises(BackendError) as exc_info:
        await backend.retrieve(_reference(node), "/srv/files/absent.txt")

    assert exc_info.value.code == str(errno.ENOENT)


async def test_sftp_connection_failure():
    backend, node = await _adapter(SftpBackend, make_node("sftp-1", BackendType.SFTP, bucket="/srv/files"))

    def refuse(node, username, password):
        raise paramiko.SSHException("Authentication failed")

    backend._connect = refuse

    with pytest.raises(BackendError) as exc_info:
        await backend.check_connection(node)

    assert exc_info.value.node_id == "sftp-1"
    assert "SFTP connection check failed" in str(exc_info.value)


async def test_sftp_path_cannot_leave_node_root():
    assert sftp_path("/srv/files", "2024/a.txt") == "/srv/files/2024/a.txt"
    assert sftp_path("/srv/files", "") == "/srv/files"
    for key in ("../../etc/cron.d/evil", "2024/../../x", "/../../etc/passwd"):
        with pytest.raises(BackendError):
            sftp_path("/srv/files", key)
