from .checksum import ChecksumAlgorithm, FileChecksum
from .node import BackendType, NodeStatus, StorageNode, FULL_THRESHOLD_PERCENT
from .file import FileStatus, FileMetadata, StorageReference, FileAggregate
from .upload import SessionStatus, ChunkStatus, UploadSession, FileChunk, OPEN_STATUSES
from .crypto import EncryptionAlgorithm, EncryptionKey, EncryptedData
from .results import FileUploadCommand, FileUploadResult, FileDownloadResult

__all__ = [
    "ChecksumAlgorithm", "FileChecksum",
    "BackendType", "NodeStatus", "StorageNode", "FULL_THRESHOLD_PERCENT",
    "FileStatus", "FileMetadata", "StorageReference", "FileAggregate",
    "SessionStatus", "ChunkStatus", "UploadSession", "FileChunk", "OPEN_STATUSES",
    "EncryptionAlgorithm", "EncryptionKey", "EncryptedData",
    "FileUploadCommand", "FileUploadResult", "FileDownloadResult",
]
