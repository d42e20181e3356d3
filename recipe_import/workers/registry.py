from __future__ import annotations

from recipe_import.domain import WorkerType
from recipe_import.workers.actions import ActionFactory, RetryConfig, WorkerDependencies
from recipe_import.workers.base import BaseWorker
from recipe_import.workers.image import ImageWorker
from recipe_import.workers.ingredient import IngredientWorker
from recipe_import.workers.instruction import InstructionWorker
from recipe_import.workers.note import NoteWorker

WORKER_CLASSES: dict[WorkerType, type[BaseWorker]] = {
    WorkerType.NOTE: NoteWorker,
    WorkerType.INSTRUCTION: InstructionWorker,
    WorkerType.INGREDIENT: IngredientWorker,
    WorkerType.IMAGE: ImageWorker,
}


def build_workers(
    deps: WorkerDependencies | None = None,
    *,
    factory: ActionFactory | None = None,
    concurrency: int = 5,
    retry_config: RetryConfig | None = None,
) -> dict[WorkerType, BaseWorker]:
    """Create one worker per type, sharing dependencies and an action factory."""

    deps = deps or WorkerDependencies.from_service()
    factory = factory or ActionFactory()
    return {
        worker_type: worker_cls(deps, factory, concurrency=concurrency, retry_config=retry_config)
        for worker_type, worker_cls in WORKER_CLASSES.items()
    }
