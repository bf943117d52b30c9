# services/assembly_service.py
import asyncio
import hashlib
import logging
import os
from datetime import date
from pathlib import Path
from typing import Dict, Optional
from uuid import uuid4

from models.errors import IntegrityFailure, MissingChunk, StorageFailure
from models.upload_models import AssemblyResult
from services.chunk_store import ChunkStore
from services.file_type import check_file_type

logger = logging.getLogger(__name__)

HASH_BLOCK_SIZE = 1024 * 1024


class DedupIndex:
    """Content hash -> published artifact path.

    Lookups are advisory: two concurrent assemblies of identical bytes may both
    miss and publish, leaving one unreferenced artifact for retention to remove.
    The index does no I/O; AssemblyEngine checks that a hit still exists.
    """

    def __init__(self):
        self._paths: Dict[str, str] = {}

    def lookup(self, content_hash: str) -> Optional[str]:
        return self._paths.get(content_hash)

    def register(self, content_hash: str, path: str) -> None:
        self._paths.setdefault(content_hash, path)

    def forget(self, content_hash: str, path: str) -> None:
        if self._paths.get(content_hash) == path:
            del self._paths[content_hash]

    def __len__(self):
        return len(self._paths)


class AssemblyEngine:
    """Merges stored chunks into a hashed, deduplicated artifact"""

    def __init__(
        self,
        chunk_store: ChunkStore,
        complete_dir,
        public_base_url: str = "/uploads/complete",
        hash_algorithm: str = "sha256",
        dedup_index: Optional[DedupIndex] = None,
    ):
        self.chunk_store = chunk_store
        self.complete_dir = Path(complete_dir)
        self.public_base_url = public_base_url.rstrip("/")
        # fail at startup rather than at the first finalize
        hashlib.new(hash_algorithm)
        self.hash_algorithm = hash_algorithm
        self.dedup_index = dedup_index or DedupIndex()

    def url_for(self, path) -> str:
        relative = Path(path).relative_to(self.complete_dir).as_posix()
        return f"{self.public_base_url}/{relative}"

    @staticmethod
    def unique_name(file_name: str) -> str:
        """`photo.jpg` -> `photo-<token>.jpg`; directory parts of the name are dropped"""
        original = Path(file_name.replace("\\", "/")).name or "upload"
        suffix = Path(original).suffix
        base = original[: -len(suffix)] if suffix else original
        return f"{base}-{uuid4().hex[:12]}{suffix}"

    def hash_file(self, path) -> str:
        digest = hashlib.new(self.hash_algorithm)
        with open(path, "rb") as fh:
            for block in iter(lambda: fh.read(HASH_BLOCK_SIZE), b""):
                digest.update(block)
        return digest.hexdigest()

    async def assemble(
        self,
        upload_id: str,
        total_chunks: int,
        file_name: str,
        declared_mime_type: str,
        expected_hash: Optional[str] = None,
    ) -> AssemblyResult:
        """Stream chunks 0..total_chunks-1 into a new artifact and publish it.

        Chunks are deleted as soon as they are copied. On any failure the
        partially written file is removed, so nothing half-written is ever
        visible under an artifact name or in the dedup index.
        """
        first_chunk = await self.chunk_store.read(upload_id, 0)
        if first_chunk is None:
            raise MissingChunk(upload_id, 0)
        check_file_type(first_chunk, declared_mime_type)

        date_dir = self.complete_dir / date.today().isoformat()
        final_path = date_dir / self.unique_name(file_name)
        part_path = date_dir / f".{final_path.name}.part"

        try:
            await asyncio.to_thread(date_dir.mkdir, parents=True, exist_ok=True)
            await self._write_chunks(upload_id, total_chunks, part_path)
            content_hash = await asyncio.to_thread(self.hash_file, part_path)
        except OSError as e:
            await self._remove_quietly(part_path)
            raise StorageFailure(f"Failed to assemble {upload_id}: {e}") from e
        except BaseException:
            # MissingChunk, StorageFailure from a chunk read, or cancellation
            await self._remove_quietly(part_path)
            raise

        if expected_hash and expected_hash.lower() != content_hash:
            await self._remove_quietly(part_path)
            raise IntegrityFailure(expected_hash, content_hash)

        existing = await self._lookup_duplicate(content_hash)
        if existing is not None:
            await self._remove_quietly(part_path)
            logger.info(f"Upload {upload_id} duplicates existing artifact {existing}")
            return AssemblyResult(
                path=existing,
                content_hash=content_hash,
                url=self.url_for(existing),
                is_duplicate=True,
            )

        try:
            await asyncio.to_thread(os.replace, part_path, final_path)
        except OSError as e:
            await self._remove_quietly(part_path)
            raise StorageFailure(f"Failed to publish artifact for {upload_id}: {e}") from e

        self.dedup_index.register(content_hash, str(final_path))
        return AssemblyResult(
            path=str(final_path),
            content_hash=content_hash,
            url=self.url_for(final_path),
            is_duplicate=False,
        )

    async def _lookup_duplicate(self, content_hash: str) -> Optional[str]:
        existing = self.dedup_index.lookup(content_hash)
        if existing is not None and not await self.artifact_exists(existing):
            # removed by retention
            self.dedup_index.forget(content_hash, existing)
            return None
        return existing

    async def _write_chunks(self, upload_id: str, total_chunks: int, part_path: Path) -> None:
        sink = await asyncio.to_thread(open, part_path, "wb")
        try:
            for index in range(total_chunks):
                data = await self.chunk_store.read(upload_id, index)
                if data is None:
                    raise MissingChunk(upload_id, index)
                await asyncio.to_thread(sink.write, data)
                await self.chunk_store.delete(upload_id, index)
        finally:
            await asyncio.to_thread(sink.close)

    async def artifact_exists(self, path: Optional[str]) -> bool:
        if not path:
            return False
        return await asyncio.to_thread(os.path.isfile, path)

    async def discard(self, path: str, content_hash: Optional[str]) -> bool:
        """Delete a published artifact and its dedup entry"""
        if content_hash:
            self.dedup_index.forget(content_hash, path)
        try:
            await asyncio.to_thread(os.remove, path)
        except FileNotFoundError:
            return False
        logger.info(f"Removed artifact {path}")
        return True

    @staticmethod
    async def _remove_quietly(path: Path) -> None:
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError as e:
            logger.error(f"Failed to remove partial artifact {path}: {e}")
