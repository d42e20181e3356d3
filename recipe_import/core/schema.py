from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from recipe_import.domain import ErrorCode, NoteStatus


class StatusEvent(BaseModel):
    """Status update pushed to clients watching an import."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    import_id: str
    note_id: str | None = None
    status: NoteStatus
    message: str = ""
    context: str = ""
    current_count: int | None = None
    total_count: int | None = None
    indent_level: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)


class NoteStatusUpdate(BaseModel):
    status: NoteStatus
    error_message: str | None = None
    error_code: ErrorCode | None = None
    error_details: dict[str, Any] | None = None


class InstructionJobKind(str, Enum):
    INSTRUCTION_LINE = "instruction_line"
    COMPLETION_CHECK = "completion_check"


class IngredientJobKind(str, Enum):
    INGREDIENT_LINE = "ingredient_line"
    COMPLETION_CHECK = "completion_check"


def _resolve_kind(data: Any, reference_field: str, line_kind: str, check_kind: str) -> Any:
    # The kind is fixed once here; pipelines switch on it instead of probing fields.
    if isinstance(data, dict) and data.get("kind") is None:
        data = dict(data)
        data["kind"] = line_kind if data.get(reference_field) is not None else check_kind
    return data


class InstructionJobData(BaseModel):
    kind: InstructionJobKind
    note_id: str | None = None
    import_id: str | None = None
    job_id: str | None = None
    instruction_reference: str | None = None
    line_index: int = 0
    parse_status: str = "AWAITING_PARSING"
    is_active: bool = True
    current_instruction_index: int | None = None
    total_instructions: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _assign_kind(cls, data: Any) -> Any:
        return _resolve_kind(
            data,
            "instruction_reference",
            InstructionJobKind.INSTRUCTION_LINE.value,
            InstructionJobKind.COMPLETION_CHECK.value,
        )

    @property
    def has_tracking(self) -> bool:
        return (
            bool(self.import_id)
            and self.current_instruction_index is not None
            and self.total_instructions is not None
        )


class IngredientJobData(BaseModel):
    kind: IngredientJobKind
    note_id: str | None = None
    import_id: str | None = None
    job_id: str | None = None
    reference: str | None = None
    block_index: int = 0
    line_index: int = 0
    parse_status: str = "AWAITING_PARSING"
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _assign_kind(cls, data: Any) -> Any:
        return _resolve_kind(
            data,
            "reference",
            IngredientJobKind.INGREDIENT_LINE.value,
            IngredientJobKind.COMPLETION_CHECK.value,
        )


class NoteJobData(BaseModel):
    """Parsed note handed over by the HTML parsing stage."""

    note_id: str | None = None
    import_id: str | None = None
    job_id: str | None = None
    html_file_name: str | None = None
    title: str | None = None
    instruction_count: int = Field(default=0, ge=0)
    ingredient_line_count: int = Field(default=0, ge=0)
    image_count: int = Field(default=0, ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ImageJobData(BaseModel):
    note_id: str | None = None
    import_id: str | None = None
    job_id: str | None = None
    filename: str | None = None
    image_index: int = 0
    image_url: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
