from .base import Base, get_session
from .uow import AsyncUnitOfWork
from .node_orm import StorageNodeORM
from .file_orm import StoredFileORM
from .upload_orm import UploadSessionORM, FileChunkORM
from .key_orm import EncryptionKeyORM

__all__ = [
    "Base", "get_session", "AsyncUnitOfWork",
    "StorageNodeORM", "StoredFileORM", "UploadSessionORM", "FileChunkORM", "EncryptionKeyORM",
]
