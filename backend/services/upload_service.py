# services/upload_service.py
import asyncio
import logging
from typing import Dict, List, Optional
from uuid import uuid4

from models.errors import (
    ArtifactMissing,
    IncompleteUpload,
    IntegrityFailure,
    InvalidArgument,
    InvalidState,
    UploadConflict,
    UploadNotFound,
)
from models.upload_models import (
    AssemblyResult,
    ChunkReceipt,
    FinalizeResult,
    UploadSession,
    utcnow,
)
from services.assembly_service import AssemblyEngine
from services.chunk_store import ChunkStore
from services.file_type import check_file_type
from services.status_store import StatusStore

logger = logging.getLogger(__name__)


class UploadService:
    """Lifecycle of chunked uploads: init, chunks, pause/resume, finalize, cancel"""

    def __init__(
        self,
        status_store: StatusStore,
        chunk_store: ChunkStore,
        assembly_engine: AssemblyEngine,
        allowed_type_prefixes: Optional[List[str]] = None,
        max_chunk_size: Optional[int] = None,
    ):
        self.status_store = status_store
        self.chunk_store = chunk_store
        self.assembly_engine = assembly_engine
        self.allowed_type_prefixes = allowed_type_prefixes or []
        self.max_chunk_size = max_chunk_size
        # finalize calls in flight, shared by concurrent callers for the same upload
        self._finalizing: Dict[str, asyncio.Task] = {}

    async def _require_session(self, upload_id: str) -> UploadSession:
        session = await self.status_store.get(upload_id)
        if session is None:
            raise UploadNotFound(upload_id)
        return session

    async def init_upload(
        self,
        file_name: Optional[str],
        file_size: Optional[int],
        declared_mime_type: Optional[str],
        total_chunks: Optional[int],
        user_id: Optional[str] = None,
    ) -> UploadSession:
        """Create a new upload session; the id is always generated here"""
        missing = [
            name
            for name, value in (
                ("file_name", file_name),
                ("file_size", file_size),
                ("declared_mime_type", declared_mime_type),
                ("total_chunks", total_chunks),
            )
            if value is None or (isinstance(value, str) and not value.strip())
        ]
        if missing:
            raise InvalidArgument(f"Missing required fields: {', '.join(missing)}")
        if total_chunks < 1:
            raise InvalidArgument("total_chunks must be at least 1")
        if file_size < 0:
            raise InvalidArgument("file_size must not be negative")
        if self.allowed_type_prefixes and not any(
            declared_mime_type.startswith(prefix) for prefix in self.allowed_type_prefixes
        ):
            raise InvalidArgument(f"File type {declared_mime_type} is not allowed")

        upload_id = str(uuid4())
        now = utcnow()
        session = await self.status_store.save(
            upload_id,
            {
                "file_name": file_name,
                "file_size": file_size,
                "declared_mime_type": declared_mime_type,
                "total_chunks": total_chunks,
                "user_id": user_id,
                "received_chunks": set(),
                "created_at": now,
                "last_activity_at": now,
            },
            create=True,
        )
        logger.info(
            f"Upload initialized: {file_name} ({upload_id}, {file_size} bytes, "
            f"{declared_mime_type}, {total_chunks} chunks)"
        )
        return session

    async def receive_chunk(self, upload_id: str, chunk_index: int, data: bytes) -> ChunkReceipt:
        """Store one chunk; re-delivering a received index is a no-op success"""
        session = await self._require_session(upload_id)

        if session.is_completed:
            raise InvalidState(f"Upload {upload_id} is already completed")
        if session.is_paused:
            raise UploadConflict(f"Upload {upload_id} is paused")
        if not 0 <= chunk_index < session.total_chunks:
            raise InvalidArgument(
                f"Chunk index {chunk_index} out of range [0, {session.total_chunks})"
            )
        if not data:
            raise InvalidArgument("Chunk is empty")
        if self.max_chunk_size and len(data) > self.max_chunk_size:
            raise InvalidArgument(f"Chunk exceeds {self.max_chunk_size} bytes")

        if chunk_index in session.received_chunks:
            return ChunkReceipt(
                upload_id=upload_id,
                chunk_index=chunk_index,
                received_count=len(session.received_chunks),
                total_chunks=session.total_chunks,
                duplicate=True,
            )

        if chunk_index == 0:
            check_file_type(data, session.declared_mime_type)

        await self.chunk_store.save(upload_id, chunk_index, data)
        updated = await self.status_store.save(
            upload_id,
            {"received_chunks": {chunk_index}, "last_activity_at": utcnow()},
        )
        if updated is None:
            # cancelled while the chunk was being written
            await self.chunk_store.delete(upload_id, chunk_index)
            raise UploadNotFound(upload_id)

        logger.debug(
            f"Chunk received: {upload_id}-{chunk_index} "
            f"({len(updated.received_chunks)}/{updated.total_chunks})"
        )
        return ChunkReceipt(
            upload_id=upload_id,
            chunk_index=chunk_index,
            received_count=len(updated.received_chunks),
            total_chunks=updated.total_chunks,
        )

    async def pause_upload(self, upload_id: str) -> UploadSession:
        session = await self._require_session(upload_id)
        if session.is_completed:
            raise InvalidState(f"Cannot pause completed upload {upload_id}")
        if session.is_paused:
            return session

        updated = await self.status_store.save(
            upload_id, {"is_paused": True, "last_activity_at": utcnow()}
        )
        if updated is None:
            raise UploadNotFound(upload_id)
        logger.info(f"Upload paused: {upload_id}")
        return updated

    async def resume_upload(self, upload_id: str) -> UploadSession:
        """Un-pause; the returned session tells the caller which chunks remain"""
        session = await self._require_session(upload_id)
        if session.is_completed:
            raise InvalidState(f"Cannot resume completed upload {upload_id}")
        if not session.is_paused:
            return session

        updated = await self.status_store.save(
            upload_id, {"is_paused": False, "last_activity_at": utcnow()}
        )
        if updated is None:
            raise UploadNotFound(upload_id)
        logger.info(
            f"Upload resumed: {upload_id} "
            f"({len(updated.received_chunks)}/{updated.total_chunks} chunks received)"
        )
        return updated

    async def finalize_upload(
        self, upload_id: str, expected_hash: Optional[str] = None
    ) -> FinalizeResult:
        """Assemble the artifact once every chunk is present.

        Concurrent calls for the same upload share one assembly. A completed
        upload returns its recorded artifact without touching chunk storage.
        """
        task = self._finalizing.get(upload_id)
        if task is None:
            task = asyncio.ensure_future(self._finalize(upload_id, expected_hash))
            self._finalizing[upload_id] = task
            task.add_done_callback(lambda _: self._finalizing.pop(upload_id, None))
        result = await asyncio.shield(task)
        # a caller that joined another caller's assembly still gets its own hash checked
        if expected_hash and expected_hash.lower() != result.content_hash:
            raise IntegrityFailure(expected_hash, result.content_hash)
        return result

    async def _finalize(self, upload_id: str, expected_hash: Optional[str]) -> FinalizeResult:
        session = await self._require_session(upload_id)

        if session.is_completed:
            if await self.assembly_engine.artifact_exists(session.final_artifact_path):
                return self._result(session)
            stored = await self.chunk_store.list_indices(upload_id)
            if stored != list(range(session.total_chunks)):
                raise ArtifactMissing(
                    f"Artifact for upload {upload_id} is missing and its chunks are gone"
                )
            logger.warning(f"Artifact for {upload_id} vanished, re-assembling from stored chunks")
        else:
            missing = session.missing_chunks
            if missing:
                raise IncompleteUpload(missing, session.total_chunks)

        result = await self.assembly_engine.assemble(
            upload_id,
            session.total_chunks,
            session.file_name,
            session.declared_mime_type,
            expected_hash=expected_hash,
        )

        # a cancel that landed during assembly wins
        if await self.status_store.get(upload_id) is None:
            await self._discard_orphan(upload_id, result)
            raise UploadNotFound(upload_id, f"Upload {upload_id} was cancelled during finalize")

        now = utcnow()
        completed = await self.status_store.save(
            upload_id,
            {
                "is_completed": True,
                "is_paused": False,
                "final_artifact_path": result.path,
                "artifact_url": result.url,
                "content_hash": result.content_hash,
                "is_duplicate": result.is_duplicate,
                "completed_at": now,
                "last_activity_at": now,
            },
        )
        if completed is None:
            await self._discard_orphan(upload_id, result)
            raise UploadNotFound(upload_id, f"Upload {upload_id} was cancelled during finalize")

        elapsed = (now - session.created_at).total_seconds()
        logger.info(
            f"File assembled: {session.file_name} ({upload_id}, hash={result.content_hash}, "
            f"duplicate={result.is_duplicate}, {elapsed:.0f}s)"
        )
        return self._result(completed)

    async def _discard_orphan(self, upload_id: str, result: AssemblyResult) -> None:
        # a duplicate points at another upload's artifact and must survive
        if not result.is_duplicate:
            await self.assembly_engine.discard(result.path, result.content_hash)
        logger.info(f"Discarded artifact of cancelled upload {upload_id}")

    @staticmethod
    def _result(session: UploadSession) -> FinalizeResult:
        return FinalizeResult(
            upload_id=session.id,
            file_name=session.file_name,
            path=session.final_artifact_path,
            url=session.artifact_url,
            content_hash=session.content_hash,
            is_duplicate=session.is_duplicate,
        )

    async def cancel_upload(self, upload_id: str) -> bool:
        """Remove the status record and chunks of an unfinished upload.

        Returns False when the upload was already unknown; cancelling twice is
        not an error. A completed upload cannot be cancelled: other sessions may
        have deduplicated onto its artifact.
        """
        session = await self.status_store.get(upload_id)
        if session is not None and session.is_completed:
            raise InvalidState(f"Cannot cancel completed upload {upload_id}")
        # record first, so a finalize in progress sees the cancellation
        await self.status_store.delete(upload_id)
        removed_chunks = await self.chunk_store.delete_all(upload_id)

        if session is None:
            if removed_chunks:
                logger.info(f"Removed {removed_chunks} orphaned chunks of unknown upload {upload_id}")
            return False

        logger.info(f"Upload cancelled: {upload_id} ({session.file_name})")
        return True

    async def get_status(self, upload_id: str) -> UploadSession:
        return await self._require_session(upload_id)

    async def list_active_sessions(self) -> List[UploadSession]:
        sessions = await self.status_store.list_sessions()
        return sorted(
            (s for s in sessions if not s.is_completed),
            key=lambda s: s.created_at,
        )
