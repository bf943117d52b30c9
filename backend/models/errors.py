# models/errors.py
from typing import Any, Dict, List, Optional


class UploadError(Exception):
    """Base class for every error the upload core raises"""

    kind = "upload_error"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "detail": self.detail}


class UploadNotFound(UploadError):
    kind = "not_found"

    def __init__(self, upload_id: str, detail: Optional[str] = None):
        super().__init__(detail or f"Upload {upload_id} not found")
        self.upload_id = upload_id


class InvalidArgument(UploadError):
    kind = "invalid_argument"


class InvalidState(UploadError):
    kind = "invalid_state"


class UploadConflict(InvalidState):
    """Operation collides with the session's current state (a paused upload)"""

    kind = "conflict"


class TypeMismatch(UploadError):
    kind = "type_mismatch"

    def __init__(self, declared: str, detected: Optional[str]):
        super().__init__(
            f"Detected file type {detected or 'unknown'} does not match declared type {declared}"
        )
        self.declared = declared
        self.detected = detected

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(declared_type=self.declared, detected_type=self.detected)
        return data


class IncompleteUpload(UploadError):
    kind = "incomplete_upload"

    def __init__(self, missing_chunks: List[int], total_chunks: int):
        received = total_chunks - len(missing_chunks)
        super().__init__(f"Incomplete upload: {received}/{total_chunks} chunks received")
        self.missing_chunks = missing_chunks
        self.total_chunks = total_chunks

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["missing_chunks"] = self.missing_chunks
        return data


class MissingChunk(UploadError):
    kind = "missing_chunk"

    def __init__(self, upload_id: str, chunk_index: int):
        super().__init__(f"Missing chunk {chunk_index} of {upload_id}")
        self.upload_id = upload_id
        self.chunk_index = chunk_index

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["chunk_index"] = self.chunk_index
        return data


class IntegrityFailure(UploadError):
    kind = "integrity_failure"

    def __init__(self, expected: str, computed: str):
        super().__init__(f"Hash mismatch: expected {expected}, computed {computed}")
        self.expected = expected
        self.computed = computed

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(expected_hash=self.expected, computed_hash=self.computed)
        return data


class ArtifactMissing(UploadError):
    """The session completed but its artifact is gone and cannot be rebuilt"""

    kind = "artifact_missing"


class StorageFailure(UploadError):
    kind = "storage_failure"
