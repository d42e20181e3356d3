"""Instruction line processing.

Instruction jobs come in two kinds, fixed when the payload is parsed: a line
job formats and stores one instruction line, a completion-check job asks
whether every line of the note has been stored and, if so, completes the
instruction worker for that note.  Saving the last line runs the same check.
"""
from __future__ import annotations

import re
from typing import Any

from recipe_import.application import CompletionService, get_completion_service
from recipe_import.core.schema import InstructionJobData, InstructionJobKind, StatusEvent
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

MIN_ACTIVE_LENGTH = 3
TERMINAL_PUNCTUATION = (".", "!", "?", ":", ";")
_WHITESPACE = re.compile(r"\s+")


def format_instruction_text(text: str) -> tuple[str, bool]:
    """Normalise an instruction line and report whether it is active."""

    normalised = _WHITESPACE.sub(" ", text).strip()
    if len(normalised) < MIN_ACTIVE_LENGTH:
        return normalised, False
    if not normalised.endswith(TERMINAL_PUNCTUATION):
        normalised = f"{normalised}."
    return normalised, True


def _require_note_id(data: InstructionJobData) -> Exception | None:
    if not data.note_id:
        return ActionValidationError("note_id is required")
    return None


INSTRUCTION_COMPLETED_CLAIM = "instruction_completed"


async def check_instruction_completion(deps: WorkerDependencies, note_id: str, import_id: str | None) -> bool:
    """Complete the instruction worker if every line of the note is stored.

    Runs at most once per tracked note: the first caller claims
    ``instruction_completed`` on the note's completion record.  Untracked notes
    are skipped without using the claim, so a check that races ahead of the
    note job can run again later.  Errors are logged, not raised.
    """

    claimed = False
    try:
        completion = await deps.repository.get_instruction_completion(note_id)
        if completion.total_instructions == 0 or not completion.is_complete:
            deps.logger.log(
                f"[CHECK_INSTRUCTION_COMPLETION] Note {note_id} has {completion.progress} instructions saved",
                "debug",
            )
            return False
        if not deps.completion.claim_once(note_id, INSTRUCTION_COMPLETED_CLAIM):
            deps.logger.log(
                f"[CHECK_INSTRUCTION_COMPLETION] Instructions already completed or untracked for note {note_id}",
                "debug",
            )
            return False
        claimed = True

        if import_id:
            await broadcast_status(
                deps,
                StatusEvent(
                    import_id=import_id,
                    note_id=note_id,
                    status=NoteStatus.COMPLETED,
                    message=f"Processed {completion.progress} instructions",
                    context="instruction_processing",
                    current_count=completion.completed_instructions,
                    total_count=completion.total_instructions,
                    indent_level=1,
                ),
            )
        await deps.completion.mark_worker_completed(note_id, WorkerType.INSTRUCTION)
    except Exception as exc:
        if claimed:
            deps.completion.release_claim(note_id, INSTRUCTION_COMPLETED_CLAIM)
        deps.logger.log(
            f"[CHECK_INSTRUCTION_COMPLETION] Failed to check completion for note {note_id}: {exc}",
            "error",
        )
        return False
    return True


def reset_completed_notes(service: CompletionService | None = None) -> int:
    """Forget which tracked notes already completed their instructions."""

    return (service or get_completion_service()).release_claims(INSTRUCTION_COMPLETED_CLAIM)


class UpdateInstructionCountAction(Action):
    name = "update_instruction_count"
    retryable = False
    suppress_default_broadcast = True

    def validate_input(self, data: InstructionJobData) -> Exception | None:
        if not data.has_tracking:
            return ActionValidationError("import_id, current_instruction_index and total_instructions are required")
        return None

    async def execute(self, data: InstructionJobData, deps: WorkerDependencies, context: ActionContext) -> InstructionJobData:
        await broadcast_status(
            deps,
            StatusEvent(
                import_id=data.import_id,
                note_id=data.note_id,
                status=NoteStatus.PROCESSING,
                message=f"Processing instruction {data.current_instruction_index}/{data.total_instructions}",
                context="instruction_processing",
                current_count=data.current_instruction_index,
                total_count=data.total_instructions,
                indent_level=1,
            ),
        )
        return data


class FormatInstructionAction(Action):
    name = "format_instruction_line"
    retryable = False

    def validate_input(self, data: InstructionJobData) -> Exception | None:
        if data.instruction_reference is None:
            return ActionValidationError("instruction_reference is required")
        return None

    async def execute(self, data: InstructionJobData, deps: WorkerDependencies, context: ActionContext) -> InstructionJobData:
        text, is_active = format_instruction_text(data.instruction_reference or "")
        return data.model_copy(update={"instruction_reference": text, "is_active": is_active})


class SaveInstructionAction(Action):
    name = "save_instruction_line"
    suppress_default_broadcast = True

    def validate_input(self, data: InstructionJobData) -> Exception | None:
        if data.instruction_reference is None:
            return ActionValidationError("instruction_reference is required")
        return _require_note_id(data)

    async def execute(self, data: InstructionJobData, deps: WorkerDependencies, context: ActionContext) -> InstructionJobData:
        await deps.repository.save_instruction_line(
            data.note_id,
            data.line_index,
            data.instruction_reference or "",
            data.parse_status,
            data.is_active,
        )
        completion = await deps.repository.get_instruction_completion(data.note_id)
        if data.import_id:
            await broadcast_status(
                deps,
                StatusEvent(
                    import_id=data.import_id,
                    note_id=data.note_id,
                    status=NoteStatus.PROCESSING,
                    message=f"Processing {completion.progress} instructions",
                    context="instruction_processing",
                    current_count=completion.completed_instructions,
                    total_count=completion.total_instructions,
                    indent_level=1,
                ),
            )
        if completion.is_complete:
            await check_instruction_completion(deps, data.note_id, data.import_id)
        return data


class CheckInstructionCompletionAction(Action):
    """Complete the instruction worker once every line is stored.

    Repeated checks for the same note, including queue retries, broadcast and
    complete only once; see :func:`check_instruction_completion`.
    """

    name = "check_instruction_completion"
    retryable = False
    suppress_default_broadcast = True

    async def execute(self, data: InstructionJobData, deps: WorkerDependencies, context: ActionContext) -> InstructionJobData:
        if not data.note_id:
            deps.logger.log("[CHECK_INSTRUCTION_COMPLETION] No note ID available, skipping completion check", "warn")
            return data
        await check_instruction_completion(deps, data.note_id, data.import_id)
        return data


INSTRUCTION_ACTIONS: tuple[type[Action], ...] = (
    UpdateInstructionCountAction,
    FormatInstructionAction,
    SaveInstructionAction,
    CheckInstructionCompletionAction,
)


def register_instruction_actions(factory: ActionFactory) -> None:
    register_all(factory, INSTRUCTION_ACTIONS)


def build_instruction_pipeline(
    factory: ActionFactory,
    deps: WorkerDependencies,
    data: InstructionJobData,
    context: ActionContext,
    *,
    retry_config: RetryConfig | None = None,
) -> list[Action]:
    names: list[str] = []
    if data.has_tracking:
        names.append(UpdateInstructionCountAction.name)
    if data.kind is InstructionJobKind.INSTRUCTION_LINE:
        names += [FormatInstructionAction.name, SaveInstructionAction.name]
    else:
        names.append(CheckInstructionCompletionAction.name)
    return [wrap_action(factory.create(name, deps), retry_config) for name in names]


class InstructionWorker(BaseWorker):
    worker_type = WorkerType.INSTRUCTION
    operation_name = "instruction_processing"
    payload_model = InstructionJobData
    use_status_actions = False

    def register_actions(self, factory: ActionFactory) -> None:
        register_instruction_actions(factory)

    def build_pipeline(self, data: Any, context: ActionContext) -> list[Action]:
        return build_instruction_pipeline(self.factory, self.deps, data, context, retry_config=self.retry_config)
