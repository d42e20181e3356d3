"""Note-level job: start completion tracking for a parsed note."""
from __future__ import annotations

from typing import Any

from recipe_import.core.schema import NoteJobData
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
from recipe_import.workers.instruction import check_instruction_completion


def _require_ids(data: NoteJobData) -> Exception | None:
    if not data.note_id:
        return ActionValidationError("note_id is required")
    if not data.import_id:
        return ActionValidationError("import_id is required")
    return None


class InitializeCompletionAction(Action):
    name = "initialize_completion"

    def validate_input(self, data: NoteJobData) -> Exception | None:
        return _require_ids(data)

    async def execute(self, data: NoteJobData, deps: WorkerDependencies, context: ActionContext) -> NoteJobData:
        await deps.repository.register_note(
            data.note_id,
            title=data.title,
            expected_instructions=data.instruction_count,
        )
        await deps.completion.initialize_note_completion(data.note_id, data.import_id, data.html_file_name)
        return data

    def broadcast_message(self, data: NoteJobData) -> str | None:
        return f"Processing note {data.title or data.note_id}"


class SetCompletionTotalsAction(Action):
    """Record expected work and complete the workers that have none."""

    name = "set_completion_totals"

    def validate_input(self, data: NoteJobData) -> Exception | None:
        return _require_ids(data)

    async def execute(self, data: NoteJobData, deps: WorkerDependencies, context: ActionContext) -> NoteJobData:
        completion = deps.completion
        completion.set_total_ingredient_lines(data.note_id, data.ingredient_line_count)
        await completion.set_total_image_jobs(data.note_id, data.image_count)
        if data.ingredient_line_count == 0:
            await completion.mark_worker_completed(data.note_id, WorkerType.INGREDIENT)
        if data.instruction_count == 0:
            await completion.mark_worker_completed(data.note_id, WorkerType.INSTRUCTION)
        else:
            # lines may have been saved before tracking started
            await check_instruction_completion(deps, data.note_id, data.import_id)
        return data


class MarkNoteWorkerCompletedAction(Action):
    name = "mark_note_worker_completed"
    retryable = False

    def validate_input(self, data: NoteJobData) -> Exception | None:
        return _require_ids(data)

    async def execute(self, data: NoteJobData, deps: WorkerDependencies, context: ActionContext) -> NoteJobData:
        await deps.completion.mark_worker_completed(data.note_id, WorkerType.NOTE)
        return data


NOTE_ACTIONS: tuple[type[Action], ...] = (
    InitializeCompletionAction,
    SetCompletionTotalsAction,
    MarkNoteWorkerCompletedAction,
)


def build_note_pipeline(
    factory: ActionFactory,
    deps: WorkerDependencies,
    data: NoteJobData,
    context: ActionContext,
    *,
    retry_config: RetryConfig | None = None,
) -> list[Action]:
    return [wrap_action(factory.create(action.name, deps), retry_config) for action in NOTE_ACTIONS]


class NoteWorker(BaseWorker):
    worker_type = WorkerType.NOTE
    operation_name = "note_processing"
    payload_model = NoteJobData

    def register_actions(self, factory: ActionFactory) -> None:
        register_all(factory, NOTE_ACTIONS)

    def build_pipeline(self, data: Any, context: ActionContext) -> list[Action]:
        return build_note_pipeline(self.factory, self.deps, data, context, retry_config=self.retry_config)
