from datetime import datetime
from uuid import UUID

from storage_gateway.models import StorageNode


def file_base_path(owner_id: UUID, file_id: UUID, now: datetime) -> str:
    """2024/3/5/users/<owner>/<file_id> - id файла в пути, чтобы ключи не пересекались."""
    return f"{now.year}/{now.month}/{now.day}/users/{owner_id}/{file_id}"


def chunk_base_path(session_id: UUID, now: datetime) -> str:
    return f"{now.year}/{now.month}/{now.day}/uploads/{session_id}"


def chunk_file_name(file_name: str, chunk_number: int) -> str:
    return f"{file_name}_chunk_{chunk_number}"


def bucket_for(node: StorageNode, now: datetime, prefix: str = "files") -> str:
    """Бакет ноды, если задан, иначе помесячный: files-2024-03."""
    return node.bucket or f"{prefix}-{now.year}-{now.month:02d}"
