"""Domain entities for per-note completion tracking."""
from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum


class WorkerType(str, Enum):
    """Independent processing tracks that must all finish for a note."""

    NOTE = "note"
    INSTRUCTION = "instruction"
    INGREDIENT = "ingredient"
    IMAGE = "image"


class NoteStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ErrorCode(str, Enum):
    """Fixed taxonomy of client-visible failure codes."""

    HTML_PARSE_ERROR = "HTML_PARSE_ERROR"
    INGREDIENT_PARSE_ERROR = "INGREDIENT_PARSE_ERROR"
    INSTRUCTION_PARSE_ERROR = "INSTRUCTION_PARSE_ERROR"
    QUEUE_JOB_FAILED = "QUEUE_JOB_FAILED"
    IMAGE_UPLOAD_FAILED = "IMAGE_UPLOAD_FAILED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


_WORKER_ERROR_CODES: dict[WorkerType, ErrorCode] = {
    WorkerType.NOTE: ErrorCode.HTML_PARSE_ERROR,
    WorkerType.INGREDIENT: ErrorCode.INGREDIENT_PARSE_ERROR,
    WorkerType.INSTRUCTION: ErrorCode.INSTRUCTION_PARSE_ERROR,
    WorkerType.IMAGE: ErrorCode.IMAGE_UPLOAD_FAILED,
}


def error_code_for_worker(worker_type: WorkerType | str | None) -> ErrorCode:
    """Return the failure code reported when a worker gives up on a note."""

    try:
        key = WorkerType(worker_type) if worker_type is not None else None
    except ValueError:
        return ErrorCode.QUEUE_JOB_FAILED
    return _WORKER_ERROR_CODES.get(key, ErrorCode.QUEUE_JOB_FAILED)  # type: ignore[arg-type]


@dataclass(slots=True)
class NoteCompletionStatus:
    """In-memory completion record for a single note import."""

    note_id: str
    import_id: str
    html_file_name: str | None = None
    note_worker_completed: bool = False
    instruction_worker_completed: bool = False
    ingredient_worker_completed: bool = False
    image_worker_completed: bool = False
    all_completed: bool = False
    total_image_jobs: int = 0
    completed_image_jobs: int = 0
    total_ingredient_lines: int = 0
    completed_ingredient_lines: set[str] = field(default_factory=set)
    claims: set[str] = field(default_factory=set)
    created_at: float = field(default_factory=time.monotonic)
    updated_at: float = field(default_factory=time.monotonic)

    def mark_worker(self, worker_type: WorkerType) -> bool:
        """Set one worker flag and return True if this call completed the note."""

        was_completed = self.all_completed
        if worker_type is WorkerType.NOTE:
            self.note_worker_completed = True
        elif worker_type is WorkerType.INSTRUCTION:
            self.instruction_worker_completed = True
        elif worker_type is WorkerType.INGREDIENT:
            self.ingredient_worker_completed = True
        elif worker_type is WorkerType.IMAGE:
            self.image_worker_completed = True
        self._recompute()
        return self.all_completed and not was_completed

    def _recompute(self) -> None:
        self.all_completed = (
            self.note_worker_completed
            and self.instruction_worker_completed
            and self.ingredient_worker_completed
            and self.image_worker_completed
        )
        self.updated_at = time.monotonic()

    def touch(self) -> None:
        self.updated_at = time.monotonic()

    def pending_workers(self) -> list[WorkerType]:
        flags = {
            WorkerType.NOTE: self.note_worker_completed,
            WorkerType.INSTRUCTION: self.instruction_worker_completed,
            WorkerType.INGREDIENT: self.ingredient_worker_completed,
            WorkerType.IMAGE: self.image_worker_completed,
        }
        return [worker for worker, done in flags.items() if not done]

    def snapshot(self) -> "NoteCompletionStatus":
        """Return a detached copy safe to hand to readers."""

        return replace(
            self,
            completed_ingredient_lines=set(self.completed_ingredient_lines),
            claims=set(self.claims),
        )

    def completion_metadata(self) -> dict[str, object]:
        return {
            "noteId": self.note_id,
            "htmlFileName": self.html_file_name,
            "totalImageJobs": self.total_image_jobs,
            "completedImageJobs": self.completed_image_jobs,
            "totalIngredientLines": self.total_ingredient_lines,
            "completedIngredientLines": len(self.completed_ingredient_lines),
        }

    def as_dict(self) -> dict[str, object]:
        return {
            "note_id": self.note_id,
            "import_id": self.import_id,
            "html_file_name": self.html_file_name,
            "note_worker_completed": self.note_worker_completed,
            "instruction_worker_completed": self.instruction_worker_completed,
            "ingredient_worker_completed": self.ingredient_worker_completed,
            "image_worker_completed": self.image_worker_completed,
            "all_completed": self.all_completed,
            "total_image_jobs": self.total_image_jobs,
            "completed_image_jobs": self.completed_image_jobs,
            "total_ingredient_lines": self.total_ingredient_lines,
            "completed_ingredient_lines": sorted(self.completed_ingredient_lines),
            "pending_workers": [worker.value for worker in self.pending_workers()],
        }


@dataclass(slots=True, frozen=True)
class IngredientProgress:
    """Client-facing view of ingredient line progress for one note."""

    completed_ingredients: int = 0
    total_ingredients: int = 0
    progress: str = "0/0"
    is_complete: bool = False

    @classmethod
    def from_counts(cls, completed: int, total: int) -> "IngredientProgress":
        return cls(
            completed_ingredients=completed,
            total_ingredients=total,
            progress=f"{completed}/{total}",
            is_complete=completed >= total,
        )
