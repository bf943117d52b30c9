# models/upload_models.py
from pydantic import BaseModel, Field, field_serializer
from typing import List, Optional, Set
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UploadState(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class UploadSessionCreate(BaseModel):
    # optional here so missing fields surface as InvalidArgument from the service
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    declared_mime_type: Optional[str] = None
    total_chunks: Optional[int] = None
    user_id: Optional[str] = None


class FinalizeRequest(BaseModel):
    expected_hash: Optional[str] = None


class UploadSession(BaseModel):
    id: str
    file_name: str
    file_size: int = 0
    declared_mime_type: str
    total_chunks: int
    user_id: Optional[str] = None
    received_chunks: Set[int] = Field(default_factory=set)
    is_paused: bool = False
    is_completed: bool = False
    final_artifact_path: Optional[str] = None
    artifact_url: Optional[str] = None
    content_hash: Optional[str] = None
    is_duplicate: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    last_activity_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @field_serializer("received_chunks")
    def _serialize_received_chunks(self, value: Set[int]) -> List[int]:
        return sorted(value)

    @property
    def state(self) -> UploadState:
        # completed dominates paused
        if self.is_completed:
            return UploadState.COMPLETED
        if self.is_paused:
            return UploadState.PAUSED
        return UploadState.ACTIVE

    @property
    def missing_chunks(self) -> List[int]:
        return [i for i in range(self.total_chunks) if i not in self.received_chunks]

    @property
    def progress(self) -> int:
        return round(len(self.received_chunks) / self.total_chunks * 100)

    def snapshot(self) -> dict:
        """Full, JSON-friendly view of the session for status responses"""
        data = self.model_dump(mode="json")
        data.update(
            state=self.state.value,
            total_uploaded=len(self.received_chunks),
            missing_chunks=self.missing_chunks,
            progress=self.progress,
        )
        return data


def encode_session(session: UploadSession) -> str:
    """Serialize a session for the status store; received_chunks becomes a sorted list"""
    return session.model_dump_json()


def decode_session(payload) -> UploadSession:
    """Inverse of encode_session; duplicate chunk indices collapse into the set"""
    return UploadSession.model_validate_json(payload)


class ChunkReceipt(BaseModel):
    upload_id: str
    chunk_index: int
    received_count: int
    total_chunks: int
    duplicate: bool = False


class AssemblyResult(BaseModel):
    path: str
    content_hash: str
    url: str
    is_duplicate: bool = False


class FinalizeResult(BaseModel):
    upload_id: str
    file_name: str
    path: str
    url: str
    content_hash: str
    is_duplicate: bool = False
