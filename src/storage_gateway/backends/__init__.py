from .base import StorageBackend, StorageContext, StorageResult, object_key, split_physical_path, sftp_path
from .minio_backend import MinioBackend
from .s3_backend import S3Backend, extract_region
from .sftp_backend import SftpBackend
from .router import BackendRouter

__all__ = [
    "StorageBackend", "StorageContext", "StorageResult",
    "object_key", "split_physical_path", "sftp_path",
    "MinioBackend", "S3Backend", "extract_region", "SftpBackend",
    "BackendRouter",
]
