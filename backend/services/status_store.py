# services/status_store.py
"""
Upload status persistence.

StatusStore is the only owner of session state: callers fetch a fresh copy
with get() and write changes back with save(), never keeping a live reference.

save() is read-merge-write. Fields missing from the update are preserved, and
received_chunks in an update is unioned with what is already stored so two
concurrent chunk acknowledgements cannot drop each other's index.

Two backends exist: an in-process table and Redis. FallbackStatusStore puts
Redis in front and switches to the in-process table for the rest of the
process lifetime as soon as Redis stops answering.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import RedisError, WatchError

from config import Settings
from models.upload_models import UploadSession, decode_session, encode_session

logger = logging.getLogger(__name__)

KEY_PREFIX = "upload:"


def merge_session(
    current: Optional[UploadSession],
    upload_id: str,
    updates: Dict[str, Any],
    create: bool = False,
) -> Optional[UploadSession]:
    """Apply a partial update to a stored session, returning the merged session"""
    if current is None:
        if not create:
            return None
        return UploadSession(**{**updates, "id": upload_id})

    data = current.model_dump()
    for field, value in updates.items():
        if field == "id":
            continue
        if field == "received_chunks":
            data[field] = set(data[field]) | set(value)
        else:
            data[field] = value
    return UploadSession(**data)


class StatusStore(ABC):
    """Key-value store of upload sessions"""

    @abstractmethod
    async def get(self, upload_id: str) -> Optional[UploadSession]:
        ...

    @abstractmethod
    async def save(
        self, upload_id: str, updates: Dict[str, Any], create: bool = False
    ) -> Optional[UploadSession]:
        """Merge `updates` into the stored session.

        Without a stored record, a new one is written only when `create` is
        set; otherwise nothing is written and None is returned.
        """

    @abstractmethod
    async def delete(self, upload_id: str) -> bool:
        ...

    @abstractmethod
    async def list_sessions(self) -> List[UploadSession]:
        ...

    async def close(self) -> None:
        pass


class MemoryStatusStore(StatusStore):
    """In-process table; entries live until deleted"""

    def __init__(self):
        # encoded records, so no caller ever shares a mutable session with the store
        self._records: Dict[str, str] = {}

    async def get(self, upload_id: str) -> Optional[UploadSession]:
        payload = self._records.get(upload_id)
        return decode_session(payload) if payload is not None else None

    async def save(
        self, upload_id: str, updates: Dict[str, Any], create: bool = False
    ) -> Optional[UploadSession]:
        current = await self.get(upload_id)
        merged = merge_session(current, upload_id, updates, create)
        if merged is not None:
            self._records[upload_id] = encode_session(merged)
        return merged

    async def delete(self, upload_id: str) -> bool:
        return self._records.pop(upload_id, None) is not None

    async def list_sessions(self) -> List[UploadSession]:
        return [decode_session(payload) for payload in list(self._records.values())]


class RedisStatusStore(StatusStore):
    """Redis-backed store; every record expires `ttl_seconds` after its last write"""

    def __init__(self, client: aioredis.Redis, ttl_seconds: int = 60 * 60 * 24):
        self.client = client
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(upload_id: str) -> str:
        return f"{KEY_PREFIX}{upload_id}"

    async def get(self, upload_id: str) -> Optional[UploadSession]:
        payload = await self.client.get(self._key(upload_id))
        if not payload:
            return None
        return decode_session(payload)

    async def save(
        self, upload_id: str, updates: Dict[str, Any], create: bool = False
    ) -> Optional[UploadSession]:
        key = self._key(upload_id)
        async with self.client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    payload = await pipe.get(key)
                    current = decode_session(payload) if payload else None
                    merged = merge_session(current, upload_id, updates, create)
                    if merged is None:
                        await pipe.unwatch()
                        return None
                    pipe.multi()
                    pipe.set(key, encode_session(merged), ex=self.ttl_seconds)
                    await pipe.execute()
                    return merged
                except WatchError:
                    # another writer touched the record between read and write
                    logger.debug(f"Retrying status save for {upload_id} after concurrent write")
                    continue

    async def delete(self, upload_id: str) -> bool:
        return bool(await self.client.delete(self._key(upload_id)))

    async def list_sessions(self) -> List[UploadSession]:
        sessions = []
        async for key in self.client.scan_iter(match=f"{KEY_PREFIX}*"):
            payload = await self.client.get(key)
            if not payload:
                continue
            try:
                sessions.append(decode_session(payload))
            except ValidationError as e:
                logger.warning(f"Skipping unreadable status record {key!r}: {e}")
        return sessions

    async def close(self) -> None:
        await self.client.aclose()


class FallbackStatusStore(StatusStore):
    """Redis first; on the first Redis failure, the in-process table from then on"""

    def __init__(self, primary: StatusStore, fallback: Optional[MemoryStatusStore] = None):
        self.primary = primary
        self.fallback = fallback or MemoryStatusStore()
        self.degraded = False

    def _degrade(self, error: Exception) -> None:
        if not self.degraded:
            logger.warning(f"Status cache unavailable, using in-memory status store: {error}")
        self.degraded = True

    async def _call(self, method: str, *args, **kwargs):
        if not self.degraded:
            try:
                return await getattr(self.primary, method)(*args, **kwargs)
            except (RedisError, OSError) as e:
                self._degrade(e)
        return await getattr(self.fallback, method)(*args, **kwargs)

    async def get(self, upload_id: str) -> Optional[UploadSession]:
        return await self._call("get", upload_id)

    async def save(
        self, upload_id: str, updates: Dict[str, Any], create: bool = False
    ) -> Optional[UploadSession]:
        return await self._call("save", upload_id, updates, create)

    async def delete(self, upload_id: str) -> bool:
        return await self._call("delete", upload_id)

    async def list_sessions(self) -> List[UploadSession]:
        return await self._call("list_sessions")

    async def close(self) -> None:
        try:
            await self.primary.close()
        except (RedisError, OSError) as e:
            logger.debug(f"Ignoring error while closing status cache: {e}")


def create_status_store(settings: Settings) -> StatusStore:
    """Pick the status backend: Redis with in-memory fallback, or memory only"""
    if not settings.redis_url:
        logger.info("No REDIS_URL configured, using in-memory status store")
        return MemoryStatusStore()

    client = aioredis.from_url(
        settings.redis_url,
        decode_responses=False,
        socket_connect_timeout=5,
        health_check_interval=30,
    )
    return FallbackStatusStore(RedisStatusStore(client, settings.status_ttl_seconds))
