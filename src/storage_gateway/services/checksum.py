import hashlib
from typing import BinaryIO

from storage_gateway.models.checksum import ChecksumAlgorithm, FileChecksum
from storage_gateway.utils.io import run_io_bound

DEFAULT_BUFFER_SIZE = 8192


def compute_checksum(
    stream: BinaryIO,
    algorithm: ChecksumAlgorithm = ChecksumAlgorithm.SHA256,
    buffer_size: int = DEFAULT_BUFFER_SIZE,
) -> FileChecksum:
    """
    Читает поток до конца блоками по buffer_size и возвращает дайджест.

    Поток после вызова исчерпан: перемотать его (или дать перечитываемый
    буфер) - забота вызывающего. Ошибки чтения не глотаются, частичный
    дайджест никогда не возвращается.
    """
    digest = hashlib.new(algorithm.hashlib_name)
    while True:
        block = stream.read(buffer_size)
        if not block:
            break
        digest.update(block)
    return FileChecksum(algorithm=algorithm, digest=digest.hexdigest())


def checksum_bytes(data: bytes, algorithm: ChecksumAlgorithm = ChecksumAlgorithm.SHA256) -> FileChecksum:
    return FileChecksum(algorithm=algorithm, digest=hashlib.new(algorithm.hashlib_name, data).hexdigest())


async def compute_checksum_async(
    buffer: BinaryIO,
    algorithm: ChecksumAlgorithm = ChecksumAlgorithm.SHA256,
    buffer_size: int = DEFAULT_BUFFER_SIZE,
) -> FileChecksum:
    """Хэширует перематываемый буфер в executor'е и возвращает его в начало."""
    buffer.seek(0)
    try:
        return await run_io_bound(compute_checksum, buffer, algorithm, buffer_size)
    finally:
        buffer.seek(0)
