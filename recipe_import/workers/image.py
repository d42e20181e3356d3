"""Image jobs: store the processed image and count it towards the note."""
from __future__ import annotations

from typing import Any

from recipe_import.core.schema import ImageJobData
from recipe_import.domain import WorkerType
from recipe_import.workers.actions import (
    Action,
    ActionContext,
    ActionFactory,
    ActionValidationError,
    RetryConfig,
    WorkerDependencies,
    register_all,
    wrap_action,
)
from recipe_import.workers.base import BaseWorker


def _require_note_id(data: ImageJobData) -> Exception | None:
    if not data.note_id:
        return ActionValidationError("note_id is required")
    return None


class SaveImageAction(Action):
    name = "save_image"

    def validate_input(self, data: ImageJobData) -> Exception | None:
        return _require_note_id(data)

    async def execute(self, data: ImageJobData, deps: WorkerDependencies, context: ActionContext) -> ImageJobData:
        await deps.repository.save_image(
            data.note_id,
            data.image_index,
            filename=data.filename,
            image_url=data.image_url,
        )
        return data

    def broadcast_message(self, data: ImageJobData) -> str | None:
        return f"Saved image {data.filename or data.image_index}"


class MarkImageJobCompletedAction(Action):
    name = "mark_image_job_completed"
    retryable = False
    suppress_default_broadcast = True

    def validate_input(self, data: ImageJobData) -> Exception | None:
        return _require_note_id(data)

    async def execute(self, data: ImageJobData, deps: WorkerDependencies, context: ActionContext) -> ImageJobData:
        await deps.completion.mark_image_job_completed(data.note_id)
        return data


IMAGE_ACTIONS: tuple[type[Action], ...] = (SaveImageAction, MarkImageJobCompletedAction)


def build_image_pipeline(
    factory: ActionFactory,
    deps: WorkerDependencies,
    data: ImageJobData,
    context: ActionContext,
    *,
    retry_config: RetryConfig | None = None,
) -> list[Action]:
    return [wrap_action(factory.create(action.name, deps), retry_config) for action in IMAGE_ACTIONS]


class ImageWorker(BaseWorker):
    worker_type = WorkerType.IMAGE
    operation_name = "image_processing"
    payload_model = ImageJobData

    def register_actions(self, factory: ActionFactory) -> None:
        register_all(factory, IMAGE_ACTIONS)

    def build_pipeline(self, data: Any, context: ActionContext) -> list[Action]:
        return build_image_pipeline(self.factory, self.deps, data, context, retry_config=self.retry_config)
