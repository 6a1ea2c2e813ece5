import logging
from typing import BinaryIO, Mapping, Optional

from storage_gateway.backends.base import StorageBackend, StorageContext, StorageResult
from storage_gateway.exceptions import ValidationFailure
from storage_gateway.models import BackendType, StorageNode, StorageReference

logger = logging.getLogger(__name__)


class BackendRouter:
    """Диспатч по BackendType. Таблица обязана покрывать все типы."""

    def __init__(self, backends: Mapping[BackendType, StorageBackend]):
        missing = [t.value for t in BackendType if t not in backends]
        if missing:
            raise ValidationFailure(f"No storage backend registered for: {', '.join(missing)}")
        self._backends = dict(backends)

    def for_type(self, backend_type: BackendType) -> StorageBackend:
        return self._backends[backend_type]

    async def store(self, stream: BinaryIO, context: StorageContext) -> StorageResult:
        return await self.for_type(context.target_node.backend_type).store(stream, context)

    async def retrieve(self, reference: StorageReference, decrypted_path: str) -> BinaryIO:
        return await self.for_type(reference.backend_type).retrieve(reference, decrypted_path)

    async def delete(self, reference: StorageReference, decrypted_path: str) -> None:
        await self.for_type(reference.backend_type).delete(reference, decrypted_path)

    async def discard(self, node: StorageNode, decrypted_path: str) -> None:
        await self.for_type(node.backend_type).discard(node, decrypted_path)

    async def exists(self, reference: StorageReference, decrypted_path: str) -> bool:
        return await self.for_type(reference.backend_type).exists(reference, decrypted_path)

    async def generate_presigned_url(
        self, reference: StorageReference, decrypted_path: str, expires_in: int
    ) -> Optional[str]:
        return await self.for_type(reference.backend_type).generate_presigned_url(
            reference, decrypted_path, expires_in
        )

    async def check_connection(self, node: StorageNode) -> None:
        await self.for_type(node.backend_type).check_connection(node)
