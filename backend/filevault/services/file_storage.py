"""Ciphertext blob storage on the local filesystem.

Blobs are addressed by a storage ref (a bare file name under the storage root),
never by an absolute path, so the metadata store does not leak the layout.
Every operation is bounded by a timeout and reports ``StorageUnavailable``
instead of hanging.
"""
import asyncio
import logging
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict

import aiofiles
import aiofiles.os

from filevault.config import Settings
from filevault.errors import NotFound, StorageUnavailable

logger = logging.getLogger(__name__)

BLOB_SUFFIX = ".enc"


class FileStorageService:
    """Handles ciphertext read/write/delete under a single storage root."""

    def __init__(self, base_path: str, timeout: float = 30.0, storage_type: str = "local"):
        if storage_type != "local":
            raise ValueError(f"Unknown storage type: {storage_type}")
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "FileStorageService":
        return cls(
            settings.FILE_STORAGE_PATH,
            timeout=settings.STORAGE_TIMEOUT_SECONDS,
            storage_type=settings.FILE_STORAGE_TYPE,
        )

    def _path_for(self, storage_ref: str) -> Path:
        # Refs are generated here; anything with a path component is foreign.
        if not storage_ref or os.path.basename(storage_ref) != storage_ref or storage_ref in (".", ".."):
            raise StorageUnavailable(f"Invalid storage ref '{storage_ref}'")
        return self.base_path / storage_ref

    async def _bounded(self, coro, action: str, storage_ref: str):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise StorageUnavailable(f"Timed out after {self.timeout}s during {action} of {storage_ref}") from e

    async def save(self, ciphertext: bytes) -> str:
        """Write ciphertext to a fresh blob. Returns the storage ref."""
        storage_ref = f"{uuid.uuid4().hex}{BLOB_SUFFIX}"
        path = self._path_for(storage_ref)
        tmp_path = path.with_name(path.name + ".part")

        async def _write():
            async with aiofiles.open(tmp_path, "wb") as f:
                await f.write(ciphertext)
            await aiofiles.os.replace(tmp_path, path)

        try:
            await self._bounded(_write(), "save", storage_ref)
        except OSError as e:
            raise StorageUnavailable(f"Could not write blob {storage_ref}: {e}") from e
        finally:
            if tmp_path.exists():
                tmp_path.unlink(missing_ok=True)
        return storage_ref

    async def read(self, storage_ref: str) -> bytes:
        """Read ciphertext bytes for a storage ref."""
        path = self._path_for(storage_ref)

        async def _read():
            async with aiofiles.open(path, "rb") as f:
                return await f.read()

        try:
            return await self._bounded(_read(), "read", storage_ref)
        except FileNotFoundError as e:
            raise NotFound(f"Blob {storage_ref} is missing") from e
        except OSError as e:
            raise StorageUnavailable(f"Could not read blob {storage_ref}: {e}") from e

    async def write(self, storage_ref: str, ciphertext: bytes) -> None:
        """Overwrite an existing blob in place (maintenance and tests only)."""
        path = self._path_for(storage_ref)

        async def _write():
            async with aiofiles.open(path, "wb") as f:
                await f.write(ciphertext)

        try:
            await self._bounded(_write(), "write", storage_ref)
        except OSError as e:
            raise StorageUnavailable(f"Could not write blob {storage_ref}: {e}") from e

    async def delete(self, storage_ref: str) -> bool:
        """Delete a blob. Missing blobs are not an error; returns whether one was removed."""
        path = self._path_for(storage_ref)
        try:
            await self._bounded(aiofiles.os.remove(path), "delete", storage_ref)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageUnavailable(f"Could not delete blob {storage_ref}: {e}") from e
        return True

    async def exists(self, storage_ref: str) -> bool:
        return await self._bounded(aiofiles.os.path.exists(self._path_for(storage_ref)), "stat", storage_ref)

    async def list_blobs(self) -> Dict[str, datetime]:
        """Map every stored blob ref to its modification time (UTC)."""

        def _scan() -> Dict[str, datetime]:
            blobs = {}
            for entry in os.scandir(self.base_path):
                if entry.is_file() and entry.name.endswith(BLOB_SUFFIX):
                    blobs[entry.name] = datetime.fromtimestamp(entry.stat().st_mtime, tz=timezone.utc)
            return blobs

        try:
            return await self._bounded(asyncio.to_thread(_scan), "scan", str(self.base_path))
        except OSError as e:
            raise StorageUnavailable(f"Could not scan {self.base_path}: {e}") from e
