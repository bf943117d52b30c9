# services/chunk_store.py
import asyncio
import logging
import os
import re
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

from models.errors import InvalidArgument, StorageFailure

logger = logging.getLogger(__name__)

_UPLOAD_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9-]*$")


class ChunkStore:
    """Filesystem storage for chunk bytes, one file per (upload_id, chunk_index)"""

    def __init__(self, chunks_dir):
        self.chunks_dir = Path(chunks_dir)

    @staticmethod
    def _check_upload_id(upload_id: str) -> None:
        if not _UPLOAD_ID_RE.match(upload_id):
            raise InvalidArgument(f"Malformed upload id: {upload_id!r}")

    def chunk_path(self, upload_id: str, chunk_index: int) -> Path:
        self._check_upload_id(upload_id)
        return self.chunks_dir / f"{upload_id}-{chunk_index}"

    async def save(self, upload_id: str, chunk_index: int, data: bytes) -> Path:
        """Write a chunk; the file only appears under its final name once complete"""
        path = self.chunk_path(upload_id, chunk_index)
        tmp_path = path.with_name(f".{path.name}.{uuid4().hex}.tmp")

        def _write():
            try:
                self.chunks_dir.mkdir(parents=True, exist_ok=True)
                tmp_path.write_bytes(data)
                os.replace(tmp_path, path)
            except OSError:
                tmp_path.unlink(missing_ok=True)
                raise

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise StorageFailure(f"Failed to store chunk {chunk_index} of {upload_id}: {e}") from e
        return path

    async def exists(self, upload_id: str, chunk_index: int) -> bool:
        return await asyncio.to_thread(self.chunk_path(upload_id, chunk_index).is_file)

    async def read(self, upload_id: str, chunk_index: int) -> Optional[bytes]:
        """Return the chunk bytes, or None when the chunk is not stored"""
        path = self.chunk_path(upload_id, chunk_index)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageFailure(f"Failed to read chunk {chunk_index} of {upload_id}: {e}") from e

    async def delete(self, upload_id: str, chunk_index: int) -> bool:
        path = self.chunk_path(upload_id, chunk_index)
        try:
            await asyncio.to_thread(path.unlink)
            return True
        except FileNotFoundError:
            return False

    async def list_indices(self, upload_id: str) -> List[int]:
        """Indices of every chunk currently stored for an upload, ascending"""
        prefix = f"{upload_id}-"
        self._check_upload_id(upload_id)

        def _scan():
            indices = []
            for path in self.chunks_dir.glob(f"{prefix}*"):
                suffix = path.name[len(prefix):]
                if suffix.isdigit():
                    indices.append(int(suffix))
            return sorted(indices)

        return await asyncio.to_thread(_scan)

    async def delete_all(self, upload_id: str) -> int:
        """Remove every chunk of an upload; returns how many were removed"""
        removed = 0
        for index in await self.list_indices(upload_id):
            try:
                if await self.delete(upload_id, index):
                    removed += 1
            except OSError as e:
                logger.error(f"Failed to delete chunk {index} of {upload_id}: {e}")
        return removed
