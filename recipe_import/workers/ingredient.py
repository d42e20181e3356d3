"""Ingredient line processing and ingredient worker completion."""
from __future__ import annotations

from typing import Any

from recipe_import.core.schema import IngredientJobData, IngredientJobKind, StatusEvent
from recipe_import.domain import NoteStatus, WorkerType
from recipe_import.workers.actions import (
    Action,
    ActionContext,
    ActionFactory,
    ActionValidationError,
    RetryConfig,
    WorkerDependencies,
    broadcast_status,
    register_all,
    wrap_action,
)
from recipe_import.workers.base import BaseWorker

INGREDIENT_COMPLETED_CLAIM = "ingredient_completed"


def _require_line(data: IngredientJobData) -> Exception | None:
    if not data.note_id:
        return ActionValidationError("note_id is required")
    if data.reference is None:
        return ActionValidationError("reference is required")
    return None


class SaveIngredientLineAction(Action):
    name = "save_ingredient_line"
    suppress_default_broadcast = True

    def validate_input(self, data: IngredientJobData) -> Exception | None:
        return _require_line(data)

    async def execute(self, data: IngredientJobData, deps: WorkerDependencies, context: ActionContext) -> IngredientJobData:
        await deps.repository.save_ingredient_line(
            data.note_id,
            data.block_index,
            data.line_index,
            (data.reference or "").strip(),
            data.parse_status,
        )
        return data


class TrackIngredientLineAction(Action):
    name = "track_ingredient_line"
    retryable = False
    suppress_default_broadcast = True

    def validate_input(self, data: IngredientJobData) -> Exception | None:
        return _require_line(data)

    async def execute(self, data: IngredientJobData, deps: WorkerDependencies, context: ActionContext) -> IngredientJobData:
        deps.completion.mark_ingredient_line_completed(data.note_id, data.block_index, data.line_index)
        return data


class CheckIngredientCompletionAction(Action):
    """Report ingredient progress and complete the worker on the last line.

    The COMPLETED event goes out once per tracked note: the caller that
    claims ``ingredient_completed`` broadcasts it and marks the worker.
    """

    name = "check_ingredient_completion"
    retryable = False
    suppress_default_broadcast = True

    async def execute(self, data: IngredientJobData, deps: WorkerDependencies, context: ActionContext) -> IngredientJobData:
        if not data.note_id:
            deps.logger.log("[CHECK_INGREDIENT_COMPLETION] No note ID available, skipping completion check", "warn")
            return data

        status = deps.completion.get_note_completion_status(data.note_id)
        if status is None or status.ingredient_worker_completed:
            return data

        progress = deps.completion.get_ingredient_completion_status(data.note_id)
        if not progress.total_ingredients:
            return data
        is_complete = progress.is_complete
        if is_complete and not deps.completion.claim_once(data.note_id, INGREDIENT_COMPLETED_CLAIM):
            return data

        if data.import_id:
            await broadcast_status(
                deps,
                StatusEvent(
                    import_id=data.import_id,
                    note_id=data.note_id,
                    status=NoteStatus.COMPLETED if is_complete else NoteStatus.PROCESSING,
                    message=f"Processing {progress.progress} ingredients",
                    context="ingredient_processing",
                    current_count=progress.completed_ingredients,
                    total_count=progress.total_ingredients,
                    indent_level=1,
                ),
            )
        if is_complete:
            await deps.completion.mark_worker_completed(data.note_id, WorkerType.INGREDIENT)
        return data


INGREDIENT_ACTIONS: tuple[type[Action], ...] = (
    SaveIngredientLineAction,
    TrackIngredientLineAction,
    CheckIngredientCompletionAction,
)


def build_ingredient_pipeline(
    factory: ActionFactory,
    deps: WorkerDependencies,
    data: IngredientJobData,
    context: ActionContext,
    *,
    retry_config: RetryConfig | None = None,
) -> list[Action]:
    if data.kind is IngredientJobKind.INGREDIENT_LINE:
        names = [action.name for action in INGREDIENT_ACTIONS]
    else:
        names = [CheckIngredientCompletionAction.name]
    return [wrap_action(factory.create(name, deps), retry_config) for name in names]


class IngredientWorker(BaseWorker):
    worker_type = WorkerType.INGREDIENT
    operation_name = "ingredient_processing"
    payload_model = IngredientJobData
    use_status_actions = False

    def register_actions(self, factory: ActionFactory) -> None:
        register_all(factory, INGREDIENT_ACTIONS)

    def build_pipeline(self, data: Any, context: ActionContext) -> list[Action]:
        return build_ingredient_pipeline(self.factory, self.deps, data, context, retry_config=self.retry_config)
