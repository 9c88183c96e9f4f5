"""Object storage for uploaded documents.

The pipeline only needs upload/download/remove by key, so the default
backend is a directory on local disk. Blocking file IO runs in a worker
thread.
"""
import asyncio
import logging
from pathlib import Path

from . import config

logger = logging.getLogger(__name__)


class StorageObjectNotFound(Exception):
    pass


class LocalStorage:
    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()

    def _path(self, key: str) -> Path:
        if not key or key.startswith('/'):
            raise ValueError(f'invalid storage key: {key!r}')
        p = (self.root / key).resolve()
        if self.root not in p.parents:
            raise ValueError(f'storage key escapes storage root: {key!r}')
        return p

    def _write(self, key: str, data: bytes) -> None:
        p = self._path(key)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(data)

    def _read(self, key: str) -> bytes:
        p = self._path(key)
        try:
            return p.read_bytes()
        except FileNotFoundError:
            raise StorageObjectNotFound(key) from None

    def _unlink(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    async def upload(self, key: str, data: bytes) -> str:
        await asyncio.to_thread(self._write, key, data)
        logger.info('stored %d bytes at %s', len(data), key)
        return key

    async def download(self, key: str) -> bytes:
        return await asyncio.to_thread(self._read, key)

    async def remove(self, key: str) -> None:
        await asyncio.to_thread(self._unlink, key)


_default_storage: LocalStorage | None = None


def get_storage() -> LocalStorage:
    global _default_storage
    if _default_storage is None:
        _default_storage = LocalStorage(config.STORAGE_DIR)
    return _default_storage
