from __future__ import annotations

import asyncio

import pytest
from pydantic import BaseModel, Field

from recipe_import.workers.actions import (
    Action,
    ActionContext,
    ActionFactory,
    ActionNotRegisteredError,
    ActionValidationError,
    BroadcastCompletedAction,
    BroadcastProcessingAction,
    ErrorHandlingWrapperAction,
    RetryConfig,
    RetryWrapperAction,
    WorkerDependencies,
    base_action_name,
    run_pipeline,
    wrap_action,
)

pytestmark = pytest.mark.anyio

NO_DELAY = RetryConfig(max_attempts=3, base_delay=0, jitter=False)


class Payload(BaseModel):
    note_id: str | None = "n1"
    import_id: str | None = "i1"
    steps: list[str] = Field(default_factory=list)


class AppendStep(Action):
    retryable = False

    def __init__(self, name: str, *, message: str | None = None, suppress: bool = False) -> None:
        self.name = name
        self.message = message
        self.suppress_default_broadcast = suppress
        self.calls = 0

    async def execute(self, data, deps, context):
        self.calls += 1
        return data.model_copy(update={"steps": [*data.steps, self.name]})

    def broadcast_message(self, data):
        return self.message


class RejectingStep(AppendStep):
    def validate_input(self, data):
        return ActionValidationError("note_id is required")


class ExplodingStep(AppendStep):
    def __init__(self, name: str, error: Exception) -> None:
        super().__init__(name)
        self.error = error

    async def execute(self, data, deps, context):
        self.calls += 1
        raise self.error


class FlakyStep(AppendStep):
    retryable = True

    def __init__(self, name: str, failures: int) -> None:
        super().__init__(name)
        self.failures = failures

    async def execute(self, data, deps, context):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"transient failure {self.calls}")
        return data


class FailingBroadcaster:
    async def broadcast(self, event) -> None:
        raise RuntimeError("gateway down")


@pytest.fixture
def context():
    return ActionContext(job_id="job-1", note_id="n1", operation="test_pipeline")


async def test_pipeline_threads_output_through_actions(deps, context):
    actions = [AppendStep("first"), AppendStep("second"), AppendStep("third")]

    result = await run_pipeline(actions, Payload(), deps, context)

    assert result.steps == ["first", "second", "third"]


async def test_validation_error_stops_pipeline_before_execute(deps, context):
    rejecting = RejectingStep("rejecting")
    later = AppendStep("later")

    with pytest.raises(ActionValidationError, match="note_id is required"):
        await run_pipeline([rejecting, later], Payload(), deps, context)

    assert rejecting.calls == 0
    assert later.calls == 0


async def test_execution_errors_propagate_unmodified(deps, context):
    error = KeyError("missing column")
    first = AppendStep("first")
    failing = ExplodingStep("failing", error)
    later = AppendStep("later")

    with pytest.raises(KeyError) as excinfo:
        await run_pipeline([first, wrap_action(failing), later], Payload(), deps, context)

    assert excinfo.value is error
    assert first.calls == 1
    assert later.calls == 0


async def test_default_broadcast_follows_successful_steps(deps, context, broadcaster):
    actions = [
        AppendStep("announced", message="Saved step"),
        AppendStep("quiet"),
        AppendStep("suppressed", message="never sent", suppress=True),
    ]

    await run_pipeline(actions, Payload(), deps, context)

    assert [(event.message, event.context) for event in broadcaster.events] == [("Saved step", "announced")]
    assert broadcaster.events[0].status == "PROCESSING"


async def test_default_broadcast_needs_an_import_id(deps, context, broadcaster):
    await run_pipeline([AppendStep("announced", message="Saved")], Payload(import_id=None), deps, context)

    assert broadcaster.events == []


async def test_broadcast_failures_do_not_fail_the_pipeline(service, context):
    deps = WorkerDependencies(
        completion=service,
        repository=service.repository,
        broadcaster=FailingBroadcaster(),
        logger=service.logger,
    )

    result = await run_pipeline(
        [BroadcastProcessingAction("test_pipeline"), AppendStep("step", message="Saved")],
        Payload(),
        deps,
        context,
    )

    assert result.steps == ["step"]


async def test_status_hooks_wrap_the_operation(deps, context, broadcaster):
    await run_pipeline(
        [BroadcastProcessingAction("image_processing"), AppendStep("work"), BroadcastCompletedAction("image_processing")],
        Payload(),
        deps,
        context,
    )

    assert [(event.status, event.message) for event in broadcaster.events] == [
        ("PROCESSING", "Image processing started"),
        ("COMPLETED", "Image processing completed"),
    ]


async def test_retry_wrapper_recovers_from_transient_failures(deps, context):
    delays: list[float] = []

    async def record_sleep(delay: float) -> None:
        delays.append(delay)

    flaky = FlakyStep("flaky", failures=2)
    action = RetryWrapperAction(flaky, RetryConfig(max_attempts=3, base_delay=1.0, jitter=False), sleep=record_sleep)

    await action.execute(Payload(), deps, context)

    assert flaky.calls == 3
    assert delays == [1.0, 2.0]


async def test_retry_wrapper_gives_up_after_max_attempts(deps, context):
    flaky = FlakyStep("flaky", failures=10)
    action = RetryWrapperAction(flaky, NO_DELAY)

    with pytest.raises(RuntimeError, match="transient failure 3"):
        await action.execute(Payload(), deps, context)
    assert flaky.calls == 3


async def test_retry_delays_are_jittered_and_capped(deps, context):
    delays: list[float] = []

    async def record_sleep(delay: float) -> None:
        delays.append(delay)

    flaky = FlakyStep("flaky", failures=4)
    config = RetryConfig(max_attempts=5, base_delay=1.0, max_delay=3.0, backoff_multiplier=2.0, jitter=True)

    await RetryWrapperAction(flaky, config, sleep=record_sleep).execute(Payload(), deps, context)

    assert len(delays) == 4
    assert 1.0 <= delays[0] <= 1.1
    assert 2.0 <= delays[1] <= 2.1
    assert delays[2:] == [3.0, 3.0]


async def test_retry_wrapper_does_not_retry_cancellation(deps, context):
    class CancelledStep(AppendStep):
        async def execute(self, data, deps, context):
            self.calls += 1
            raise asyncio.CancelledError()

    step = CancelledStep("cancelled")

    with pytest.raises(asyncio.CancelledError):
        await RetryWrapperAction(step, NO_DELAY).execute(Payload(), deps, context)
    assert step.calls == 1


async def test_pipeline_failures_go_through_on_error(deps, context):
    class RecordingStep(ExplodingStep):
        def __init__(self, name: str, error: Exception) -> None:
            super().__init__(name, error)
            self.reported: list[Exception] = []

        def on_error(self, error, data, deps, context):
            self.reported.append(error)

    error = RuntimeError("disk full")
    step = RecordingStep("save", error)

    with pytest.raises(RuntimeError):
        await run_pipeline([wrap_action(step, NO_DELAY)], Payload(), deps, context)

    assert step.reported == [error]



def test_wrap_action_names_and_flags():
    retryable = wrap_action(FlakyStep("save", failures=0))
    plain = wrap_action(AppendStep("format", suppress=True))

    assert retryable.name == "error_handling_wrapper(retry_wrapper(save))"
    assert isinstance(retryable, ErrorHandlingWrapperAction)
    assert isinstance(retryable.inner, RetryWrapperAction)
    assert plain.name == "error_handling_wrapper(format)"
    assert plain.suppress_default_broadcast is True
    assert base_action_name(retryable) == "save"


async def test_wrapped_actions_keep_validation(deps, context):
    rejecting = RejectingStep("rejecting")

    with pytest.raises(ActionValidationError):
        await run_pipeline([wrap_action(rejecting)], Payload(), deps, context)
    assert rejecting.calls == 0


async def test_execute_with_timing_reports_outcome(deps, context):
    success = await AppendStep("ok").execute_with_timing(Payload(), deps, context)
    assert success.success is True
    assert success.data.steps == ["ok"]
    assert success.duration_ms >= 0

    error = ValueError("boom")
    failure = await ExplodingStep("bad", error).execute_with_timing(Payload(), deps, context)
    assert failure.success is False
    assert failure.error is error
    assert failure.data is None


def test_factory_registers_and_creates_actions():
    factory = ActionFactory()
    factory.register("first", lambda deps: AppendStep("first"))
    factory.register("second", lambda deps: AppendStep("second"))

    assert factory.has("first")
    assert not factory.has("third")
    assert factory.registered_actions() == ["first", "second"]
    assert factory.create("first").name == "first"
    assert factory.create_wrapped("second").name == "error_handling_wrapper(second)"
    with pytest.raises(ActionNotRegisteredError):
        factory.create("third")
