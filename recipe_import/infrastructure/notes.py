"""Infrastructure layer for note persistence."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Protocol

from recipe_import.core.schema import NoteStatusUpdate
from recipe_import.domain import ErrorCode, NoteStatus


@dataclass(slots=True)
class InstructionLineRecord:
    note_id: str
    line_index: int
    normalized_text: str
    parse_status: str
    is_active: bool
    id: str = ""


@dataclass(slots=True)
class IngredientLineRecord:
    note_id: str
    block_index: int
    line_index: int
    reference: str
    parse_status: str
    id: str = ""


@dataclass(slots=True)
class ImageRecord:
    note_id: str
    image_index: int
    filename: str | None
    image_url: str | None
    id: str = ""


@dataclass(slots=True)
class NoteRecord:
    note_id: str
    title: str | None = None
    status: NoteStatus = NoteStatus.PENDING
    error_message: str | None = None
    error_code: ErrorCode | None = None
    error_details: dict[str, Any] | None = None
    parsing_error_count: int = 0
    expected_instructions: int = 0
    instructions: dict[int, InstructionLineRecord] = field(default_factory=dict)
    ingredients: dict[tuple[int, int], IngredientLineRecord] = field(default_factory=dict)
    images: dict[int, ImageRecord] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class InstructionCompletion:
    completed_instructions: int
    total_instructions: int

    @property
    def progress(self) -> str:
        return f"{self.completed_instructions}/{self.total_instructions}"

    @property
    def is_complete(self) -> bool:
        return self.completed_instructions >= self.total_instructions


class NoteRepository(Protocol):
    """Persistence contract consumed by the completion service and workers."""

    async def update_note_status(self, note_id: str, update: NoteStatusUpdate) -> None: ...

    async def get_note_title(self, note_id: str) -> str | None: ...

    async def update_parsing_error_count(self, note_id: str) -> int: ...

    async def register_note(self, note_id: str, *, title: str | None = None, expected_instructions: int = 0) -> None: ...

    async def save_instruction_line(
        self,
        note_id: str,
        line_index: int,
        normalized_text: str,
        parse_status: str,
        is_active: bool,
    ) -> InstructionLineRecord: ...

    async def get_instruction_completion(self, note_id: str) -> InstructionCompletion: ...

    async def save_ingredient_line(
        self,
        note_id: str,
        block_index: int,
        line_index: int,
        reference: str,
        parse_status: str,
    ) -> IngredientLineRecord: ...

    async def save_image(
        self,
        note_id: str,
        image_index: int,
        *,
        filename: str | None = None,
        image_url: str | None = None,
    ) -> ImageRecord: ...


class InMemoryNoteRepository:
    """Simple in-memory repository for fast iteration and tests."""

    def __init__(self) -> None:
        self._notes: dict[str, NoteRecord] = {}
        self._lock = asyncio.Lock()
        self._id_counter = 0

    # ------------------------------------------------------------------
    # internal helpers
    # ------------------------------------------------------------------
    def _ensure_note(self, note_id: str) -> NoteRecord:
        note = self._notes.get(note_id)
        if note is None:
            note = NoteRecord(note_id=note_id)
            self._notes[note_id] = note
        return note

    def _next_id(self, prefix: str) -> str:
        self._id_counter += 1
        return f"{prefix}-{self._id_counter:05d}"

    # ------------------------------------------------------------------
    # notes
    # ------------------------------------------------------------------
    async def register_note(self, note_id: str, *, title: str | None = None, expected_instructions: int = 0) -> None:
        async with self._lock:
            note = self._ensure_note(note_id)
            if title is not None:
                note.title = title
            note.expected_instructions = max(0, expected_instructions)

    async def update_note_status(self, note_id: str, update: NoteStatusUpdate) -> None:
        async with self._lock:
            note = self._ensure_note(note_id)
            note.status = update.status
            if update.status is NoteStatus.FAILED:
                note.error_message = update.error_message
                note.error_code = update.error_code
                note.error_details = update.error_details

    async def get_note_title(self, note_id: str) -> str | None:
        note = self._notes.get(note_id)
        return note.title if note else None

    async def update_parsing_error_count(self, note_id: str) -> int:
        async with self._lock:
            note = self._ensure_note(note_id)
            errors = sum(1 for line in note.instructions.values() if line.parse_status == "ERROR")
            errors += sum(1 for line in note.ingredients.values() if line.parse_status == "ERROR")
            note.parsing_error_count = errors
            return errors

    def get_note(self, note_id: str) -> NoteRecord | None:
        return self._notes.get(note_id)

    # ------------------------------------------------------------------
    # lines and images
    # ------------------------------------------------------------------
    async def save_instruction_line(
        self,
        note_id: str,
        line_index: int,
        normalized_text: str,
        parse_status: str,
        is_active: bool,
    ) -> InstructionLineRecord:
        async with self._lock:
            note = self._ensure_note(note_id)
            existing = note.instructions.get(line_index)
            record = InstructionLineRecord(
                note_id=note_id,
                line_index=line_index,
                normalized_text=normalized_text,
                parse_status=parse_status,
                is_active=is_active,
                id=existing.id if existing else self._next_id("instruction"),
            )
            note.instructions[line_index] = record
            return record

    async def get_instruction_completion(self, note_id: str) -> InstructionCompletion:
        note = self._notes.get(note_id)
        if note is None:
            return InstructionCompletion(completed_instructions=0, total_instructions=0)
        total = max(note.expected_instructions, len(note.instructions))
        return InstructionCompletion(completed_instructions=len(note.instructions), total_instructions=total)

    async def save_ingredient_line(
        self,
        note_id: str,
        block_index: int,
        line_index: int,
        reference: str,
        parse_status: str,
    ) -> IngredientLineRecord:
        async with self._lock:
            note = self._ensure_note(note_id)
            key = (block_index, line_index)
            existing = note.ingredients.get(key)
            record = IngredientLineRecord(
                note_id=note_id,
                block_index=block_index,
                line_index=line_index,
                reference=reference,
                parse_status=parse_status,
                id=existing.id if existing else self._next_id("ingredient"),
            )
            note.ingredients[key] = record
            return record

    async def save_image(
        self,
        note_id: str,
        image_index: int,
        *,
        filename: str | None = None,
        image_url: str | None = None,
    ) -> ImageRecord:
        async with self._lock:
            note = self._ensure_note(note_id)
            existing = note.images.get(image_index)
            record = ImageRecord(
                note_id=note_id,
                image_index=image_index,
                filename=filename,
                image_url=image_url,
                id=existing.id if existing else self._next_id("image"),
            )
            note.images[image_index] = record
            return record

    def reset(self) -> None:
        self._notes.clear()
        self._id_counter = 0
