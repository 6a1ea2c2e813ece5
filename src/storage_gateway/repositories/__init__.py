from .pg_repositoryFile import FileMetadataRepository
from .pg_repositoryNode import NodeRepository
from .pg_repositoryUpload import UploadSessionRepository
from .pg_repositoryKey import DatabaseKeyStore
from .memory_repository import (
    InMemoryFileMetadataStore,
    InMemoryNodeRegistry,
    InMemoryUploadSessionStore,
    InMemoryKeyStore,
)

__all__ = [
    "FileMetadataRepository",
    "NodeRepository",
    "UploadSessionRepository",
    "DatabaseKeyStore",
    "InMemoryFileMetadataStore",
    "InMemoryNodeRegistry",
    "InMemoryUploadSessionStore",
    "InMemoryKeyStore",
]
