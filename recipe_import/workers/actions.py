"""Actions, the action factory and the pipeline runner shared by all workers.

An action is one validated, awaitable step of a job.  Workers pick an ordered
list of actions for each payload and hand it to :func:`run_pipeline`, which
validates and executes them left to right and feeds each result into the
next step.  Failures are never swallowed here; the queue decides whether a
failed job is retried.
"""
from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from recipe_import.application import CompletionService, get_completion_service
from recipe_import.core.logging import StructuredLogger, resolve_logger
from recipe_import.core.schema import StatusEvent
from recipe_import.domain import NoteStatus
from recipe_import.infrastructure import NoteRepository, StatusBroadcaster


class ActionValidationError(ValueError):
    """Returned by ``validate_input`` when a payload cannot be processed."""


class ActionNotRegisteredError(LookupError):
    """Raised when the factory is asked for an unknown action name."""


@dataclass(slots=True)
class ActionContext:
    job_id: str
    retry_count: int = 0
    queue_name: str = ""
    note_id: str | None = None
    operation: str = ""
    start_time: float = field(default_factory=time.monotonic)
    worker_name: str = ""
    attempt_number: int = 1


@dataclass(slots=True)
class ActionResult:
    success: bool
    data: Any = None
    error: Exception | None = None
    duration_ms: float = 0.0


@dataclass(slots=True)
class WorkerDependencies:
    """Collaborators every action receives."""

    completion: CompletionService
    repository: NoteRepository
    broadcaster: StatusBroadcaster
    logger: StructuredLogger

    @classmethod
    def from_service(
        cls,
        service: CompletionService | None = None,
        *,
        logger: StructuredLogger | None = None,
    ) -> "WorkerDependencies":
        service = service or get_completion_service()
        return cls(
            completion=service,
            repository=service.repository,
            broadcaster=service.broadcaster,
            logger=logger or service.logger,
        )


_fallback_logger = resolve_logger(None, __name__)


def _logger_for(deps: WorkerDependencies | None) -> StructuredLogger:
    return deps.logger if deps is not None else _fallback_logger


async def broadcast_status(deps: WorkerDependencies, event: StatusEvent) -> bool:
    """Send a status event; failures are logged and reported as False."""

    try:
        await deps.broadcaster.broadcast(event)
    except Exception as exc:
        deps.logger.log(
            f"[BROADCAST] Failed to broadcast {event.context or 'status'} for note {event.note_id}: {exc}",
            "error",
            {"import_id": event.import_id, "note_id": event.note_id},
        )
        return False
    return True


# ----------------------------------------------------------------------
# actions
# ----------------------------------------------------------------------
class Action:
    """Base class for a single pipeline step.

    Subclasses override :meth:`execute` and usually :meth:`validate_input`.
    ``retryable`` controls whether :func:`wrap_action` adds in-process retries;
    ``suppress_default_broadcast`` opts out of the pipeline's generic
    PROCESSING event for actions that broadcast their own progress.
    """

    name: str = "action"
    retryable: bool = True
    suppress_default_broadcast: bool = False

    def validate_input(self, data: Any) -> Exception | None:
        return None

    async def execute(self, data: Any, deps: WorkerDependencies, context: ActionContext) -> Any:
        raise NotImplementedError

    def broadcast_message(self, data: Any) -> str | None:
        return None

    def on_error(self, error: Exception, data: Any, deps: WorkerDependencies | None, context: ActionContext) -> None:
        _logger_for(deps).log(
            f"[{self.name.upper()}] Action failed for job {context.job_id}: {error}",
            "error",
            {"note_id": context.note_id, "operation": context.operation, "attempt": context.attempt_number},
        )

    async def execute_with_timing(self, data: Any, deps: WorkerDependencies, context: ActionContext) -> ActionResult:
        started = time.perf_counter()
        try:
            result = await self.execute(data, deps, context)
        except Exception as exc:
            self.on_error(exc, data, deps, context)
            return ActionResult(success=False, error=exc, duration_ms=(time.perf_counter() - started) * 1000)
        return ActionResult(success=True, data=result, duration_ms=(time.perf_counter() - started) * 1000)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class _WrapperAction(Action):
    label = "wrapper"

    def __init__(self, inner: Action) -> None:
        self.inner = inner
        self.name = f"{self.label}({inner.name})"
        self.retryable = inner.retryable
        self.suppress_default_broadcast = inner.suppress_default_broadcast

    @property
    def base_name(self) -> str:
        inner = self.inner
        return inner.base_name if isinstance(inner, _WrapperAction) else inner.name

    def validate_input(self, data: Any) -> Exception | None:
        return self.inner.validate_input(data)

    def broadcast_message(self, data: Any) -> str | None:
        return self.inner.broadcast_message(data)

    def on_error(self, error: Exception, data: Any, deps: WorkerDependencies | None, context: ActionContext) -> None:
        self.inner.on_error(error, data, deps, context)


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Exponential backoff settings; delays are in seconds.

    ``max_attempts`` counts every execution, the first one included.  Jitter
    adds up to 10% of ``base_delay`` to each wait, and no wait exceeds
    ``max_delay``.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: bool = True

    def wait_strategy(self) -> wait_exponential_jitter:
        return wait_exponential_jitter(
            initial=self.base_delay,
            max=self.max_delay,
            exp_base=self.backoff_multiplier,
            jitter=0.1 * self.base_delay if self.jitter else 0,
        )


class RetryWrapperAction(_WrapperAction):
    """Re-run the wrapped action up to ``max_attempts`` times in total."""

    label = "retry_wrapper"

    def __init__(
        self,
        inner: Action,
        config: RetryConfig | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        super().__init__(inner)
        self.config = config or RetryConfig()
        self._sleep = sleep

    async def execute(self, data: Any, deps: WorkerDependencies, context: ActionContext) -> Any:
        attempts = max(1, self.config.max_attempts)
        logger = _logger_for(deps)

        def log_retry(state: RetryCallState) -> None:
            delay = state.next_action.sleep if state.next_action is not None else 0.0
            logger.log(
                f"[RETRY] {self.base_name} failed for job {context.job_id} "
                f"(attempt {state.attempt_number}/{attempts}); retrying in {delay:.2f}s: {state.outcome.exception()}",
                "warn",
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=self.config.wait_strategy(),
            retry=retry_if_exception_type(Exception),
            before_sleep=log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        return await retrying(self.inner.execute, data, deps, context)


class ErrorHandlingWrapperAction(_WrapperAction):
    """Log failure context for the wrapped action, then re-raise."""

    label = "error_handling_wrapper"

    async def execute(self, data: Any, deps: WorkerDependencies, context: ActionContext) -> Any:
        try:
            return await self.inner.execute(data, deps, context)
        except Exception as exc:
            _logger_for(deps).log(
                f"[{context.operation.upper() or 'ACTION'}] {self.base_name} failed: {exc}",
                "error",
                {
                    "job_id": context.job_id,
                    "note_id": context.note_id,
                    "attempt": context.attempt_number,
                    "error_type": type(exc).__name__,
                },
            )
            raise


def wrap_action(action: Action, retry_config: RetryConfig | None = None) -> Action:
    if action.retryable:
        return ErrorHandlingWrapperAction(RetryWrapperAction(action, retry_config))
    return ErrorHandlingWrapperAction(action)


def base_action_name(action: Action) -> str:
    return action.base_name if isinstance(action, _WrapperAction) else action.name


# ----------------------------------------------------------------------
# status hooks
# ----------------------------------------------------------------------
class _StatusHookAction(Action):
    retryable = False
    suppress_default_broadcast = True
    status = NoteStatus.PROCESSING
    verb = ""

    def __init__(self, operation: str) -> None:
        self.operation = operation

    async def execute(self, data: Any, deps: WorkerDependencies, context: ActionContext) -> Any:
        import_id = getattr(data, "import_id", None)
        if import_id:
            await broadcast_status(
                deps,
                StatusEvent(
                    import_id=import_id,
                    note_id=getattr(data, "note_id", None),
                    status=self.status,
                    message=f"{self.operation.replace('_', ' ').capitalize()} {self.verb}",
                    context=self.operation,
                    indent_level=1,
                ),
            )
        return data


class BroadcastProcessingAction(_StatusHookAction):
    name = "broadcast_processing"
    status = NoteStatus.PROCESSING
    verb = "started"


class BroadcastCompletedAction(_StatusHookAction):
    name = "broadcast_completed"
    status = NoteStatus.COMPLETED
    verb = "completed"


# ----------------------------------------------------------------------
# factory
# ----------------------------------------------------------------------
ActionBuilder = Callable[[WorkerDependencies | None], Action]


class ActionFactory:
    """Registry mapping action names to builders."""

    def __init__(self) -> None:
        self._builders: dict[str, ActionBuilder] = {}

    def register(self, name: str, builder: ActionBuilder) -> None:
        self._builders[name] = builder

    def has(self, name: str) -> bool:
        return name in self._builders

    def create(self, name: str, deps: WorkerDependencies | None = None) -> Action:
        builder = self._builders.get(name)
        if builder is None:
            raise ActionNotRegisteredError(f"Action '{name}' is not registered")
        return builder(deps)

    def create_wrapped(
        self,
        name: str,
        deps: WorkerDependencies | None = None,
        retry_config: RetryConfig | None = None,
    ) -> Action:
        return wrap_action(self.create(name, deps), retry_config)

    def registered_actions(self) -> list[str]:
        return sorted(self._builders)


def register_all(factory: ActionFactory, actions: Iterable[type[Action]]) -> None:
    """Register action classes that take no constructor arguments under their names."""

    for action_cls in actions:
        factory.register(action_cls.name, lambda _deps, cls=action_cls: cls())


# ----------------------------------------------------------------------
# pipeline
# ----------------------------------------------------------------------
async def run_pipeline(
    actions: Sequence[Action],
    data: Any,
    deps: WorkerDependencies,
    context: ActionContext,
) -> Any:
    """Run ``actions`` in order, threading each result into the next step.

    A validation error aborts the pipeline before the failing action runs.
    Exceptions from ``execute`` propagate unchanged.
    """

    tag = f"[{(context.operation or 'pipeline').upper()}]"
    result = data
    for action in actions:
        label = base_action_name(action)
        error = action.validate_input(result)
        if error is not None:
            deps.logger.log(f"{tag} Validation failed for {label}: {error}", "error", {"job_id": context.job_id})
            raise error

        outcome = await action.execute_with_timing(result, deps, context)
        if not outcome.success:
            deps.logger.log(f"{tag} {label} failed ({outcome.duration_ms:.0f}ms)", "error", {"job_id": context.job_id})
            raise outcome.error
        result = outcome.data
        deps.logger.log(f"{tag} {label} ({outcome.duration_ms:.0f}ms)", "debug")

        if action.suppress_default_broadcast:
            continue
        message = action.broadcast_message(result)
        import_id = getattr(result, "import_id", None)
        if message is not None and import_id:
            await broadcast_status(
                deps,
                StatusEvent(
                    import_id=import_id,
                    note_id=getattr(result, "note_id", None),
                    status=NoteStatus.PROCESSING,
                    message=message,
                    context=label,
                ),
            )
    return result


__all__ = [
    "Action",
    "ActionBuilder",
    "ActionContext",
    "ActionFactory",
    "ActionNotRegisteredError",
    "ActionResult",
    "ActionValidationError",
    "BroadcastCompletedAction",
    "BroadcastProcessingAction",
    "ErrorHandlingWrapperAction",
    "RetryConfig",
    "RetryWrapperAction",
    "WorkerDependencies",
    "base_action_name",
    "broadcast_status",
    "register_all",
    "run_pipeline",
    "wrap_action",
]
