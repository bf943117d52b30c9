"""Shared fixtures for the upload service tests."""
import fnmatch

import pytest
from redis.exceptions import WatchError

from config import Settings
from services.assembly_service import AssemblyEngine
from services.chunk_store import ChunkStore
from services.status_store import MemoryStatusStore
from services.upload_service import UploadService

PNG_BYTES = (
    b"\x89PNG\r\n\x1a\n"
    b"\x00\x00\x00\rIHDR\x00\x00\x00\x01\x00\x00\x00\x01\x08\x06\x00\x00\x00\x1f\x15\xc4\x89"
    + b"\x00" * 64
)
EXE_BYTES = b"MZ\x90\x00\x03\x00\x00\x00\x04\x00\x00\x00\xff\xff\x00\x00\xb8" + b"\x00" * 256
TEXT_BYTES = b"hello chunked world\n" * 8


@pytest.fixture
def settings(tmp_path):
    return Settings(uploads_dir=tmp_path / "uploads")


@pytest.fixture
def chunk_store(settings):
    return ChunkStore(settings.chunks_dir)


@pytest.fixture
def engine(chunk_store, settings):
    return AssemblyEngine(chunk_store, settings.complete_dir)


@pytest.fixture
def status_store():
    return MemoryStatusStore()


@pytest.fixture
def service(status_store, chunk_store, engine):
    return UploadService(status_store, chunk_store, engine)


class FakePipeline:
    """Just enough of redis.asyncio's transactional pipeline for the status store"""

    def __init__(self, client):
        self.client = client
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def watch(self, *keys):
        self.commands = []

    async def unwatch(self):
        pass

    async def get(self, key):
        return await self.client.get(key)

    def multi(self):
        self.commands = []

    def set(self, key, value, ex=None):
        self.commands.append((key, value, ex))
        return self

    async def execute(self):
        if self.client.conflicts > 0:
            self.client.conflicts -= 1
            raise WatchError("watched key changed")
        for key, value, ex in self.commands:
            await self.client.set(key, value, ex=ex)
        return [True] * len(self.commands)


class FakeRedis:
    """In-memory stand-in for a redis.asyncio client"""

    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.conflicts = 0
        self.closed = False

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value.encode() if isinstance(value, str) else value
        self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
        return removed

    async def scan_iter(self, match=None):
        for key in list(self.data):
            if match is None or fnmatch.fnmatch(key, match):
                yield key

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def aclose(self):
        self.closed = True


@pytest.fixture
def fake_redis():
    return FakeRedis()
