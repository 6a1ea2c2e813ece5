import enum


class ErrorKind(str, enum.Enum):
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    INVALID_STATE = "invalid_state"
    NO_AVAILABLE_NODES = "no_available_nodes"
    BACKEND_FAILURE = "backend_failure"
    ENCRYPTION_FAILURE = "encryption_failure"
    VALIDATION_FAILURE = "validation_failure"
    DATABASE_FAILURE = "database_failure"


class StorageGatewayError(Exception):
    """Base class."""

    kind: ErrorKind = ErrorKind.INVALID_STATE
    retryable: bool = False


class NotFoundError(StorageGatewayError):
    kind = ErrorKind.NOT_FOUND


class FileNotFound(NotFoundError):
    pass


class SessionNotFound(NotFoundError):
    pass


class NodeNotFound(NotFoundError):
    pass


class UnauthorizedError(StorageGatewayError):
    kind = ErrorKind.UNAUTHORIZED


class InvalidStateError(StorageGatewayError):
    kind = ErrorKind.INVALID_STATE


class NoAvailableNodesError(StorageGatewayError):
    kind = ErrorKind.NO_AVAILABLE_NODES
    retryable = True


class BackendError(StorageGatewayError):
    """Any adapter-level I/O failure, tagged with the backend that produced it."""

    kind = ErrorKind.BACKEND_FAILURE
    retryable = True

    def __init__(
        self,
        message: str,
        backend_type: str | None = None,
        node_id: str | None = None,
        code: str | None = None,
    ):
        super().__init__(message)
        self.backend_type = backend_type
        self.node_id = node_id
        self.code = code

    def __str__(self) -> str:
        base = super().__str__()
        if self.backend_type or self.node_id:
            return f"[{self.backend_type or '?'}:{self.node_id or '?'}] {base}"
        return base


class EncryptionError(StorageGatewayError):
    kind = ErrorKind.ENCRYPTION_FAILURE


class KeyNotFoundError(EncryptionError):
    pass


class CorruptedDataError(EncryptionError):
    pass


class ValidationFailure(StorageGatewayError):
    kind = ErrorKind.VALIDATION_FAILURE


class DatabaseError(StorageGatewayError):
    kind = ErrorKind.DATABASE_FAILURE
    retryable = True


class DuplicateChecksumError(DatabaseError):
    """Another aggregate with the same checksum won the unique index."""

    retryable = False


__all__ = [
    "ErrorKind",
    "StorageGatewayError",
    "NotFoundError",
    "FileNotFound",
    "SessionNotFound",
    "NodeNotFound",
    "UnauthorizedError",
    "InvalidStateError",
    "NoAvailableNodesError",
    "BackendError",
    "EncryptionError",
    "KeyNotFoundError",
    "CorruptedDataError",
    "ValidationFailure",
    "DatabaseError",
    "DuplicateChecksumError",
]
