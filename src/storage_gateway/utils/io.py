import asyncio
import shutil
import tempfile
from functools import partial
from typing import Any, BinaryIO, Callable

DEFAULT_SPOOL_MAX_MEMORY = 8 * 1024 * 1024
COPY_BUFFER_SIZE = 64 * 1024


async def run_io_bound(func: Callable[..., Any], *args, **kwargs):
    """Блокирующие вызовы SDK (minio, boto3, paramiko) уходят в executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, partial(func, *args, **kwargs))


def new_spool(max_memory: int = DEFAULT_SPOOL_MAX_MEMORY) -> BinaryIO:
    return tempfile.SpooledTemporaryFile(max_size=max_memory, mode="w+b")


def spool_stream(source: BinaryIO | bytes, max_memory: int = DEFAULT_SPOOL_MAX_MEMORY) -> tuple[BinaryIO, int]:
    """
    Копирует поток в перечитываемый буфер (память до max_memory, дальше диск).
    Возвращает буфер, перемотанный в начало, и число байт.
    """
    buffer = new_spool(max_memory)
    if isinstance(source, (bytes, bytearray, memoryview)):
        buffer.write(source)
    else:
        shutil.copyfileobj(source, buffer, COPY_BUFFER_SIZE)
    size = buffer.tell()
    buffer.seek(0)
    return buffer, size
