"""Uniform contract for the physical storage adapters."""

from __future__ import annotations

import abc
import logging
import posixpath
from typing import BinaryIO, Optional

from pydantic import Field

from storage_gateway.exceptions import BackendError
from storage_gateway.models import BackendType, StorageNode, StorageReference
from storage_gateway.models.base import FileName, ValueObject
from storage_gateway.ports import NodeRegistry
from storage_gateway.security import CredentialEncryptionService
from storage_gateway.utils.io import DEFAULT_SPOOL_MAX_MEMORY

logger = logging.getLogger(__name__)


class StorageContext(ValueObject):
    """Куда и что кладём. Нода уже выбрана селектором."""

    file_name: FileName
    content_type: str = Field(min_length=1)
    file_size: int = Field(ge=0)
    target_node: StorageNode
    bucket: Optional[str] = None
    base_path: str = ""

    @property
    def object_key(self) -> str:
        return object_key(self.base_path, self.file_name)


class StorageResult(ValueObject):
    physical_path: str
    bucket: Optional[str] = None
    etag: Optional[str] = None
    bytes_written: int = 0
    region: Optional[str] = None


def object_key(base_path: str | None, file_name: str) -> str:
    base = (base_path or "").strip("/")
    return f"{base}/{file_name}" if base else file_name


def split_physical_path(physical_path: str) -> tuple[str, str]:
    """'bucket/key/with/slashes' -> ('bucket', 'key/with/slashes')"""
    bucket, sep, key = physical_path.lstrip("/").partition("/")
    if not sep or not bucket or not key:
        raise BackendError("Malformed object path")
    return bucket, key


def sftp_path(root: str | None, key: str) -> str:
    base = posixpath.normpath(posixpath.join("/", (root or "").strip("/")))
    path = posixpath.normpath(posixpath.join(base, key))
    if path != base and not path.startswith(base.rstrip("/") + "/"):
        raise BackendError("Remote path escapes the node root directory")
    return path


def sdk_error_code(exc: BaseException) -> str | None:
    """Код ошибки SDK без текста: S3Error.code, ClientError Error.Code, errno."""
    code = getattr(exc, "code", None)
    if code is None:
        response = getattr(exc, "response", None)
        if isinstance(response, dict):
            code = response.get("Error", {}).get("Code")
    if code is None and isinstance(exc, OSError):
        code = exc.errno
    return None if code is None else str(code)


class StorageBackend(abc.ABC):
    """
    Базовый адаптер. Ноду для чтения берёт из реестра (только чтение),
    учётные данные расшифровывает через CredentialEncryptionService.
    """

    backend_type: BackendType

    def __init__(
        self,
        registry: NodeRegistry,
        credentials: CredentialEncryptionService,
        spool_max_memory: int = DEFAULT_SPOOL_MAX_MEMORY,
    ):
        self._registry = registry
        self._credentials = credentials
        self._spool_max_memory = spool_max_memory

    @abc.abstractmethod
    async def store(self, stream: BinaryIO, context: StorageContext) -> StorageResult: ...

    @abc.abstractmethod
    async def retrieve(self, reference: StorageReference, decrypted_path: str) -> BinaryIO: ...

    async def delete(self, reference: StorageReference, decrypted_path: str) -> None:
        await self._delete(await self._resolve_node(reference), decrypted_path)

    async def discard(self, node: StorageNode, decrypted_path: str) -> None:
        """Удаление по ноде, когда ссылки ещё нет (откат неудачной загрузки)."""
        await self._delete(node, decrypted_path)

    @abc.abstractmethod
    async def _delete(self, node: StorageNode, decrypted_path: str) -> None: ...

    @abc.abstractmethod
    async def exists(self, reference: StorageReference, decrypted_path: str) -> bool: ...

    @abc.abstractmethod
    async def generate_presigned_url(
        self, reference: StorageReference, decrypted_path: str, expires_in: int
    ) -> Optional[str]: ...

    @abc.abstractmethod
    async def check_connection(self, node: StorageNode) -> None: ...

    async def _resolve_node(self, reference: StorageReference) -> StorageNode:
        return await self._registry.get(reference.node_id)

    async def _node_credentials(self, node: StorageNode) -> tuple[Optional[str], Optional[str]]:
        access_key = await self._credentials.decrypt_credential(node.access_key)
        secret_key = await self._credentials.decrypt_credential(node.secret_key)
        return access_key, secret_key

    def _error(self, message: str, node_id: str | None, exc: BaseException | None = None) -> BackendError:
        # Текст SDK-исключений содержит бакет и ключ, поэтому в лог и в
        # BackendError попадают только тип и код. Вызывающие пишут `from None`.
        code = None
        if exc is not None:
            code = sdk_error_code(exc)
            logger.error(
                "%s backend failure on node %s: %s (code=%s)",
                self.backend_type.value, node_id, type(exc).__name__, code,
            )
        return BackendError(message, backend_type=self.backend_type.value, node_id=node_id, code=code)
