"""Domain layer definitions."""

from .completion import (
    ErrorCode,
    IngredientProgress,
    NoteCompletionStatus,
    NoteStatus,
    WorkerType,
    error_code_for_worker,
)

__all__ = [
    "ErrorCode",
    "IngredientProgress",
    "NoteCompletionStatus",
    "NoteStatus",
    "WorkerType",
    "error_code_for_worker",
]
