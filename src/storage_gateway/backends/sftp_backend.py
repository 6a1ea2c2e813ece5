import logging
import posixpath
import stat
from typing import BinaryIO, Callable, Optional, TypeVar
from urllib.parse import urlparse

import paramiko

from storage_gateway.backends.base import (
    StorageBackend,
    StorageContext,
    StorageResult,
    sftp_path,
)
from storage_gateway.models import BackendType, StorageNode, StorageReference
from storage_gateway.utils.io import new_spool, run_io_bound

logger = logging.getLogger(__name__)

DEFAULT_PORT = 22
CONNECT_TIMEOUT = 15
_SDK_ERRORS = (paramiko.SSHException, OSError)

T = TypeVar("T")


def _host_port(endpoint_url: str) -> tuple[str, int]:
    """'sftp://host:2222', 'host:2222' или просто 'host'."""
    parsed = urlparse(endpoint_url if "://" in endpoint_url else f"sftp://{endpoint_url}")
    return parsed.hostname or endpoint_url, parsed.port or DEFAULT_PORT


def _makedirs(sftp: paramiko.SFTPClient, directory: str) -> None:
    current = ""
    for part in directory.strip("/").split("/"):
        if not part:
            continue
        current = f"{current}/{part}"
        try:
            attrs = sftp.stat(current)
            if not stat.S_ISDIR(attrs.st_mode or 0):
                raise NotADirectoryError(current)
        except FileNotFoundError:
            sftp.mkdir(current)


class SftpBackend(StorageBackend):
    """
    Transfer server. Бакет ноды - корневой каталог на сервере,
    физический путь - абсолютный путь файла. Presign не поддерживается.
    Соединение открывается на каждую операцию.
    """

    backend_type = BackendType.SFTP

    def _connect(self, node: StorageNode, username: Optional[str], password: Optional[str]) -> paramiko.SSHClient:
        host, port = _host_port(node.endpoint_url)
        client = paramiko.SSHClient()
        client.load_system_host_keys()
        # ключ неизвестного хоста принимается при первом подключении
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        client.connect(
            hostname=host,
            port=port,
            username=username,
            password=password,
            timeout=CONNECT_TIMEOUT,
            allow_agent=False,
            look_for_keys=False,
        )
        return client

    async def _with_sftp(self, node: StorageNode, fn: Callable[[paramiko.SFTPClient], T]) -> T:
        username, password = await self._node_credentials(node)

        def _run():
            client = self._connect(node, username, password)
            try:
                sftp = client.open_sftp()
                try:
                    return fn(sftp)
                finally:
                    sftp.close()
            finally:
                client.close()

        return await run_io_bound(_run)

    async def check_connection(self, node: StorageNode) -> None:
        logger.debug("Checking SFTP node %s...", node.node_id)
        root = sftp_path(node.bucket, "")
        try:
            await self._with_sftp(node, lambda sftp: sftp.stat(root))
        except _SDK_ERRORS as e:
            raise self._error("SFTP connection check failed", node.node_id, e) from None

    async def store(self, stream: BinaryIO, context: StorageContext) -> StorageResult:
        node = context.target_node
        root = context.bucket or node.bucket
        remote_path = sftp_path(root, context.object_key)

        def _upload(sftp: paramiko.SFTPClient):
            _makedirs(sftp, posixpath.dirname(remote_path))
            return sftp.putfo(stream, remote_path, file_size=context.file_size, confirm=True)

        try:
            await self._with_sftp(node, _upload)
        except _SDK_ERRORS as e:
            raise self._error("Failed to store file", node.node_id, e) from None
        logger.debug("Stored %d bytes on SFTP node %s", context.file_size, node.node_id)
        return StorageResult(
            physical_path=remote_path,
            bucket=None,
            etag=None,
            bytes_written=context.file_size,
            region=None,
        )

    async def retrieve(self, reference: StorageReference, decrypted_path: str) -> BinaryIO:
        node = await self._resolve_node(reference)

        def _download(sftp: paramiko.SFTPClient):
            buffer = new_spool(self._spool_max_memory)
            sftp.getfo(decrypted_path, buffer)
            buffer.seek(0)
            return buffer

        try:
            return await self._with_sftp(node, _download)
        except _SDK_ERRORS as e:
            raise self._error("Failed to retrieve file", node.node_id, e) from None

    async def _delete(self, node: StorageNode, decrypted_path: str) -> None:
        def _remove(sftp: paramiko.SFTPClient):
            try:
                sftp.remove(decrypted_path)
            except FileNotFoundError:
                logger.debug("File already absent on SFTP node %s", node.node_id)

        try:
            await self._with_sftp(node, _remove)
        except _SDK_ERRORS as e:
            raise self._error("Failed to delete file", node.node_id, e) from None

    async def exists(self, reference: StorageReference, decrypted_path: str) -> bool:
        node = await self._resolve_node(reference)

        def _stat(sftp: paramiko.SFTPClient) -> bool:
            try:
                sftp.stat(decrypted_path)
                return True
            except FileNotFoundError:
                return False

        try:
            return await self._with_sftp(node, _stat)
        except _SDK_ERRORS as e:
            raise self._error("Failed to stat file", node.node_id, e) from None

    async def generate_presigned_url(
        self, reference: StorageReference, decrypted_path: str, expires_in: int
    ) -> Optional[str]:
        return None
