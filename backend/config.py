# config.py
import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv
from pydantic import BaseModel, Field


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseModel):
    uploads_dir: Path = Path("uploads")
    redis_url: str = ""
    status_ttl_seconds: int = 60 * 60 * 24
    chunk_retention_minutes: int = 30
    file_retention_days: int = 30
    chunk_sweep_interval_seconds: int = 30 * 60
    artifact_sweep_interval_seconds: int = 24 * 60 * 60
    public_base_url: str = "/uploads/complete"
    hash_algorithm: str = "sha256"
    allowed_type_prefixes: List[str] = Field(default_factory=list)
    max_chunk_size: int = 50_000_000
    log_level: str = "INFO"

    @property
    def chunks_dir(self) -> Path:
        return self.uploads_dir / "chunks"

    @property
    def complete_dir(self) -> Path:
        return self.uploads_dir / "complete"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the environment (and a .env file if present)"""
        load_dotenv()
        defaults = cls()
        return cls(
            uploads_dir=Path(os.getenv("UPLOADS_DIR", str(defaults.uploads_dir))),
            redis_url=os.getenv("REDIS_URL", defaults.redis_url),
            status_ttl_seconds=int(os.getenv("STATUS_TTL_SECONDS", defaults.status_ttl_seconds)),
            chunk_retention_minutes=int(os.getenv("CHUNK_RETENTION_MINUTES", defaults.chunk_retention_minutes)),
            file_retention_days=int(os.getenv("FILE_RETENTION_DAYS", defaults.file_retention_days)),
            chunk_sweep_interval_seconds=int(
                os.getenv("CHUNK_SWEEP_INTERVAL_SECONDS", defaults.chunk_sweep_interval_seconds)
            ),
            artifact_sweep_interval_seconds=int(
                os.getenv("ARTIFACT_SWEEP_INTERVAL_SECONDS", defaults.artifact_sweep_interval_seconds)
            ),
            public_base_url=os.getenv("PUBLIC_BASE_URL", defaults.public_base_url),
            hash_algorithm=os.getenv("HASH_ALGORITHM", defaults.hash_algorithm),
            allowed_type_prefixes=_split_csv(os.getenv("ALLOWED_TYPE_PREFIXES", "")),
            max_chunk_size=int(os.getenv("MAX_CHUNK_SIZE", defaults.max_chunk_size)),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level),
        )
