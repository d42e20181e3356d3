"""Infrastructure layer exports."""

from .broadcast import (
    HttpStatusBroadcaster,
    InMemoryStatusBroadcaster,
    StatusBroadcastError,
    StatusBroadcaster,
    configure_status_broadcaster,
    get_status_broadcaster,
)
from .cleanup import CleanupResult, CleanupService
from .notes import InMemoryNoteRepository, InstructionCompletion, NoteRecord, NoteRepository

__all__ = [
    "CleanupResult",
    "CleanupService",
    "HttpStatusBroadcaster",
    "InMemoryNoteRepository",
    "InMemoryStatusBroadcaster",
    "InstructionCompletion",
    "NoteRecord",
    "NoteRepository",
    "StatusBroadcastError",
    "StatusBroadcaster",
    "configure_status_broadcaster",
    "get_status_broadcaster",
]
