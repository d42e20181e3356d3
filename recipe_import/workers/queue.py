"""In-process job queue feeding the workers.

Production deployments sit behind an external queue runtime; this wrapper
gives the API and the tests the same add / take / retry contract on top of
:class:`asyncio.Queue`.
"""
from __future__ import annotations

import asyncio
import itertools
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel

from recipe_import.workers.base import QueueJob


class JobQueue:
    def __init__(self, name: str, *, max_attempts: int = 3) -> None:
        self.name = name
        self.max_attempts = max(1, max_attempts)
        self._queue: asyncio.Queue[QueueJob] = asyncio.Queue()
        self._ids = itertools.count(1)
        self.completed: list[QueueJob] = []
        self.failed: list[QueueJob] = []

    def __len__(self) -> int:
        return self._queue.qsize()

    def next_job_id(self) -> str:
        return f"{self.name}-{next(self._ids):05d}"

    async def add(
        self,
        data: Mapping[str, Any] | BaseModel,
        *,
        job_id: str | None = None,
        max_attempts: int | None = None,
    ) -> QueueJob:
        payload = data.model_dump() if isinstance(data, BaseModel) else dict(data)
        job = QueueJob(
            job_id=job_id or self.next_job_id(),
            data=payload,
            max_attempts=max_attempts or self.max_attempts,
        )
        await self._queue.put(job)
        return job

    async def get(self) -> QueueJob:
        return await self._queue.get()

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        await self._queue.join()

    async def retry(self, job: QueueJob) -> bool:
        """Re-queue a failed job; False once it has used all its attempts."""

        if job.is_final_attempt:
            self.failed.append(job)
            return False
        job.attempts_made += 1
        await self._queue.put(job)
        return True

    def record_completed(self, job: QueueJob) -> None:
        self.completed.append(job)
