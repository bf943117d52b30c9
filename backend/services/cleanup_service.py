# services/cleanup_service.py
import asyncio
import logging
import shutil
import time
from datetime import date, timedelta
from pathlib import Path
from typing import Awaitable, Callable, List

logger = logging.getLogger(__name__)


class RetentionSweeper:
    """Periodic removal of stale chunk files and aged artifact date buckets.

    Both sweeps are best-effort: a file that cannot be removed is logged and
    skipped, and the pass carries on.
    """

    def __init__(
        self,
        chunks_dir,
        complete_dir,
        chunk_retention_minutes: int = 30,
        file_retention_days: int = 30,
        chunk_sweep_interval: float = 30 * 60,
        artifact_sweep_interval: float = 24 * 60 * 60,
    ):
        self.chunks_dir = Path(chunks_dir)
        self.complete_dir = Path(complete_dir)
        self.chunk_retention = timedelta(minutes=chunk_retention_minutes)
        self.file_retention = timedelta(days=file_retention_days)
        self.chunk_sweep_interval = chunk_sweep_interval
        self.artifact_sweep_interval = artifact_sweep_interval
        self._tasks: List[asyncio.Task] = []

    async def sweep_chunks(self) -> int:
        """Delete chunk files older than the chunk retention window, whatever their session state"""
        return await asyncio.to_thread(self._sweep_chunks, time.time())

    def _sweep_chunks(self, now: float) -> int:
        if not self.chunks_dir.is_dir():
            return 0
        max_age = self.chunk_retention.total_seconds()
        removed = 0
        for path in self.chunks_dir.iterdir():
            try:
                if not path.is_file():
                    continue
                if now - path.stat().st_mtime > max_age:
                    path.unlink()
                    removed += 1
                    logger.info(f"Removed stale chunk: {path.name}")
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.error(f"Failed to remove chunk {path.name}: {e}")
        return removed

    async def sweep_artifacts(self) -> int:
        """Delete whole date buckets older than the artifact retention window"""
        return await asyncio.to_thread(self._sweep_artifacts, date.today(), time.time())

    def _bucket_age(self, bucket: Path, today: date, now: float) -> timedelta:
        try:
            return today - date.fromisoformat(bucket.name)
        except ValueError:
            return timedelta(seconds=now - bucket.stat().st_mtime)

    def _sweep_artifacts(self, today: date, now: float) -> int:
        if not self.complete_dir.is_dir():
            return 0
        removed = 0
        for bucket in self.complete_dir.iterdir():
            try:
                if not bucket.is_dir() or self._bucket_age(bucket, today, now) <= self.file_retention:
                    continue
            except OSError as e:
                logger.error(f"Failed to inspect artifact directory {bucket.name}: {e}")
                continue

            failures = 0
            for path in bucket.iterdir():
                try:
                    if path.is_dir():
                        shutil.rmtree(path)
                    else:
                        path.unlink()
                except OSError as e:
                    failures += 1
                    logger.error(f"Failed to remove artifact {bucket.name}/{path.name}: {e}")
            if failures:
                continue
            try:
                bucket.rmdir()
                removed += 1
                logger.info(f"Removed artifact directory: {bucket.name}")
            except OSError as e:
                logger.error(f"Failed to remove artifact directory {bucket.name}: {e}")
        return removed

    async def _run_periodically(
        self, name: str, sweep: Callable[[], Awaitable[int]], interval: float
    ):
        # first pass runs at startup, then once per interval
        try:
            while True:
                try:
                    removed = await sweep()
                    logger.info(f"{name} sweep completed, removed {removed}")
                except Exception as e:
                    logger.error(f"Error in {name} sweep: {e}")
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.info(f"{name} sweep cancelled")

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(
                self._run_periodically("Chunk", self.sweep_chunks, self.chunk_sweep_interval)
            ),
            asyncio.create_task(
                self._run_periodically("Artifact", self.sweep_artifacts, self.artifact_sweep_interval)
            ),
        ]

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)
