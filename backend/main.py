import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, File, Request, UploadFile
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from config import Settings
from models.errors import UploadError
from models.upload_models import FinalizeRequest, UploadSessionCreate
from services.assembly_service import AssemblyEngine
from services.chunk_store import ChunkStore
from services.cleanup_service import RetentionSweeper
from services.status_store import create_status_store
from services.upload_service import UploadService

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    "not_found": 404,
    "invalid_argument": 400,
    "invalid_state": 400,
    "conflict": 409,
    "type_mismatch": 415,
    "incomplete_upload": 400,
    "missing_chunk": 409,
    "integrity_failure": 422,
    "artifact_missing": 410,
    "storage_failure": 500,
}


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()

    status_store = create_status_store(settings)
    chunk_store = ChunkStore(settings.chunks_dir)
    assembly_engine = AssemblyEngine(
        chunk_store,
        settings.complete_dir,
        public_base_url=settings.public_base_url,
        hash_algorithm=settings.hash_algorithm,
    )
    upload_service = UploadService(
        status_store,
        chunk_store,
        assembly_engine,
        allowed_type_prefixes=settings.allowed_type_prefixes,
        max_chunk_size=settings.max_chunk_size,
    )
    sweeper = RetentionSweeper(
        settings.chunks_dir,
        settings.complete_dir,
        chunk_retention_minutes=settings.chunk_retention_minutes,
        file_retention_days=settings.file_retention_days,
        chunk_sweep_interval=settings.chunk_sweep_interval_seconds,
        artifact_sweep_interval=settings.artifact_sweep_interval_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        settings.chunks_dir.mkdir(parents=True, exist_ok=True)
        settings.complete_dir.mkdir(parents=True, exist_ok=True)
        sweeper.start()

        yield

        # Shutdown
        await sweeper.stop()
        await status_store.close()

    app = FastAPI(title="Chunked Upload Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.upload_service = upload_service
    app.state.sweeper = sweeper

    @app.exception_handler(UploadError)
    async def upload_error_handler(request: Request, exc: UploadError):
        status_code = ERROR_STATUS_CODES.get(exc.kind, 400)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.detail}")
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.post("/api/upload/init")
    async def init_upload(body: UploadSessionCreate):
        """Initialize a new chunked upload session"""
        session = await upload_service.init_upload(
            body.file_name,
            body.file_size,
            body.declared_mime_type,
            body.total_chunks,
            user_id=body.user_id,
        )
        return {"upload_id": session.id, "total_chunks": session.total_chunks}

    @app.post("/api/upload/chunk/{upload_id}/{chunk_index}")
    async def upload_chunk(upload_id: str, chunk_index: int, chunk: UploadFile = File(...)):
        """Receive one chunk of an upload"""
        data = await chunk.read()
        receipt = await upload_service.receive_chunk(upload_id, chunk_index, data)
        return receipt.model_dump()

    @app.post("/api/upload/finalize/{upload_id}")
    async def finalize_upload(upload_id: str, body: Optional[FinalizeRequest] = None):
        """Assemble the uploaded chunks into the final file"""
        expected_hash = body.expected_hash if body else None
        result = await upload_service.finalize_upload(upload_id, expected_hash)
        return result.model_dump()

    @app.get("/api/upload/status/{upload_id}")
    async def get_status(upload_id: str):
        session = await upload_service.get_status(upload_id)
        return session.snapshot()

    @app.get("/api/upload/sessions/active")
    async def get_active_sessions():
        """Get all upload sessions that are not completed yet"""
        sessions = await upload_service.list_active_sessions()
        return {"sessions": [s.snapshot() for s in sessions]}

    @app.put("/api/upload/pause/{upload_id}")
    async def pause_upload(upload_id: str):
        session = await upload_service.pause_upload(upload_id)
        return {"upload_id": upload_id, "state": session.state.value}

    @app.put("/api/upload/resume/{upload_id}")
    async def resume_upload(upload_id: str):
        """Resume a paused upload; reports which chunks are still missing"""
        session = await upload_service.resume_upload(upload_id)
        return {
            "upload_id": upload_id,
            "state": session.state.value,
            "received_chunks": sorted(session.received_chunks),
            "missing_chunks": session.missing_chunks,
            "total_chunks": session.total_chunks,
        }

    @app.delete("/api/upload/cancel/{upload_id}")
    async def cancel_upload(upload_id: str):
        existed = await upload_service.cancel_upload(upload_id)
        return {"upload_id": upload_id, "status": "cancelled" if existed else "already_clean"}

    if settings.public_base_url.startswith("/"):
        app.mount(
            settings.public_base_url,
            StaticFiles(directory=settings.complete_dir, check_dir=False),
            name="artifacts",
        )

    return app


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


_settings = Settings.from_env()
configure_logging(_settings.log_level)
app = create_app(_settings)
