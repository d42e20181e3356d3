from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar

from pydantic import BaseModel, ValidationError

from recipe_import.domain import ErrorCode, WorkerType, error_code_for_worker
from recipe_import.workers.actions import (
    Action,
    ActionContext,
    ActionFactory,
    ActionValidationError,
    BroadcastCompletedAction,
    BroadcastProcessingAction,
    RetryConfig,
    WorkerDependencies,
    base_action_name,
    run_pipeline,
)

if TYPE_CHECKING:
    from recipe_import.workers.queue import JobQueue


@dataclass(slots=True)
class QueueJob:
    job_id: str
    data: dict[str, Any] = field(default_factory=dict)
    attempts_made: int = 0
    max_attempts: int = 3

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts_made + 1 >= self.max_attempts


class BaseWorker:
    """Runs queue jobs of one type through an action pipeline.

    Subclasses declare ``worker_type``, ``operation_name`` and
    ``payload_model``, register their actions and choose a pipeline per
    payload.  When a job fails on its last attempt the note is marked as
    failed with the worker's error code.
    """

    worker_type: ClassVar[WorkerType]
    operation_name: ClassVar[str] = "worker"
    payload_model: ClassVar[type[BaseModel]]
    use_status_actions: ClassVar[bool] = True

    def __init__(
        self,
        deps: WorkerDependencies,
        factory: ActionFactory | None = None,
        *,
        concurrency: int = 5,
        retry_config: RetryConfig | None = None,
    ) -> None:
        self.deps = deps
        self.factory = factory or ActionFactory()
        self.concurrency = max(1, concurrency)
        self.retry_config = retry_config
        self._tasks: list[asyncio.Task[None]] = []
        self.register_actions(self.factory)

    @property
    def tag(self) -> str:
        return f"[{self.operation_name.upper()}]"

    @property
    def failure_code(self) -> ErrorCode:
        return error_code_for_worker(self.worker_type)

    # ------------------------------------------------------------------
    # hooks for subclasses
    # ------------------------------------------------------------------
    def register_actions(self, factory: ActionFactory) -> None:
        raise NotImplementedError

    def build_pipeline(self, data: Any, context: ActionContext) -> list[Action]:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # job processing
    # ------------------------------------------------------------------
    def parse(self, payload: dict[str, Any]) -> BaseModel:
        try:
            return self.payload_model.model_validate(payload)
        except ValidationError as exc:
            raise ActionValidationError(f"invalid {self.operation_name} payload: {exc}") from exc

    def create_context(self, job: QueueJob) -> ActionContext:
        return ActionContext(
            job_id=job.job_id,
            retry_count=job.attempts_made,
            queue_name=self.worker_type.value,
            note_id=job.data.get("note_id"),
            operation=self.operation_name,
            worker_name=type(self).__name__,
            attempt_number=job.attempts_made + 1,
        )

    def add_status_actions(self, actions: list[Action]) -> list[Action]:
        if not self.use_status_actions:
            return actions
        return [
            BroadcastProcessingAction(self.operation_name),
            *actions,
            BroadcastCompletedAction(self.operation_name),
        ]

    async def process(self, job: QueueJob) -> Any:
        context = self.create_context(job)
        started = time.perf_counter()
        logger = self.deps.logger
        logger.log(f"{self.tag} Starting job {job.job_id} (attempt {context.attempt_number}/{job.max_attempts})")

        try:
            data = self.parse(job.data)
            actions = self.add_status_actions(self.build_pipeline(data, context))
            logger.log(
                f"{self.tag} Executing {len(actions)} actions: "
                + ", ".join(base_action_name(action) for action in actions)
            )
            result = await run_pipeline(actions, data, self.deps, context)
        except Exception as exc:
            elapsed = (time.perf_counter() - started) * 1000
            logger.log(f"{self.tag} Job {job.job_id} failed after {elapsed:.0f}ms: {exc}", "error")
            if job.is_final_attempt:
                await self.handle_final_failure(job, exc)
            raise

        elapsed = (time.perf_counter() - started) * 1000
        logger.log(f"{self.tag} Job {job.job_id} completed in {elapsed:.0f}ms")
        return result

    async def handle_final_failure(self, job: QueueJob, error: Exception) -> None:
        note_id = job.data.get("note_id")
        if not note_id:
            self.deps.logger.log(f"{self.tag} Job {job.job_id} failed without a note id; nothing to mark", "warn")
            return
        await self.deps.completion.mark_note_as_failed(
            note_id,
            f"{self.operation_name} failed: {error}",
            self.failure_code,
            {"job_id": job.job_id, "attempts": job.attempts_made + 1, "error_type": type(error).__name__},
            import_id=job.data.get("import_id"),
        )

    # ------------------------------------------------------------------
    # queue consumption
    # ------------------------------------------------------------------
    async def _consume(self, queue: JobQueue) -> None:
        while True:
            job = await queue.get()
            try:
                await self.process(job)
            except Exception:
                await queue.retry(job)
            else:
                queue.record_completed(job)
            finally:
                queue.task_done()

    async def run(self, queue: JobQueue) -> None:
        """Consume ``queue`` with ``concurrency`` parallel tasks until closed."""

        self._tasks = [asyncio.create_task(self._consume(queue)) for _ in range(self.concurrency)]
        await asyncio.gather(*self._tasks, return_exceptions=True)

    async def close(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
