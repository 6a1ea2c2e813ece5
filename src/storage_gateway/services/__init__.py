from .checksum import compute_checksum, compute_checksum_async, checksum_bytes
from storage_gateway.utils.io import spool_stream
from .selection import NodeSelector, LeastUsedStrategy, RoundRobinStrategy, SelectionStrategy, create_strategy
from .cache import InMemoryTTLCache, SafeCache
from .events import LoggingEventPublisher, SafeEventPublisher
from .upload_service import FileUploadService
from .download_service import FileDownloadService
from .chunked_upload_service import ChunkedUploadService

__all__ = [
    "compute_checksum", "compute_checksum_async", "checksum_bytes", "spool_stream",
    "NodeSelector", "LeastUsedStrategy", "RoundRobinStrategy", "SelectionStrategy", "create_strategy",
    "InMemoryTTLCache", "SafeCache",
    "LoggingEventPublisher", "SafeEventPublisher",
    "FileUploadService", "FileDownloadService", "ChunkedUploadService",
]
