"""Application services."""

from .completion import (
    CompletionService,
    configure_completion_service,
    get_completion_service,
    reset_completion_state,
)

__all__ = [
    "CompletionService",
    "configure_completion_service",
    "get_completion_service",
    "reset_completion_state",
]
