from __future__ import annotations

import asyncio

import pytest

from recipe_import.core.schema import IngredientJobData
from recipe_import.domain import ErrorCode, NoteStatus, WorkerType
from recipe_import.infrastructure import InMemoryStatusBroadcaster
from recipe_import.workers.actions import ActionContext, ActionValidationError, RetryConfig, WorkerDependencies
from recipe_import.workers.base import QueueJob
from recipe_import.workers.ingredient import CheckIngredientCompletionAction
from recipe_import.workers.queue import JobQueue
from recipe_import.workers.registry import build_workers

pytestmark = pytest.mark.anyio

SINGLE_ATTEMPT = RetryConfig(max_attempts=1, base_delay=0, jitter=False)


class YieldingBroadcaster(InMemoryStatusBroadcaster):
    async def broadcast(self, event):
        await asyncio.sleep(0)
        await super().broadcast(event)


@pytest.fixture
def workers(deps):
    return build_workers(deps, concurrency=2, retry_config=SINGLE_ATTEMPT)


def _note_job(**overrides) -> QueueJob:
    data = {
        "note_id": "n1",
        "import_id": "i1",
        "html_file_name": "pancakes.html",
        "title": "Pancakes",
        "instruction_count": 2,
        "ingredient_line_count": 2,
        "image_count": 1,
    }
    data.update(overrides)
    return QueueJob(job_id="note-1", data=data)


async def test_full_note_flow_completes_once(workers, service, repository, completion_events):
    await workers[WorkerType.NOTE].process(_note_job())
    status = service.get_note_completion_status("n1")
    assert status.note_worker_completed is True
    assert status.total_image_jobs == 1
    assert status.total_ingredient_lines == 2

    instruction = workers[WorkerType.INSTRUCTION]
    for index, text in enumerate(["  Whisk the eggs  ", "Fry until golden"]):
        await instruction.process(
            QueueJob(
                job_id=f"instruction-{index}",
                data={
                    "note_id": "n1",
                    "import_id": "i1",
                    "instruction_reference": text,
                    "line_index": index,
                    "current_instruction_index": index + 1,
                    "total_instructions": 2,
                },
            )
        )
    assert service.get_note_completion_status("n1").instruction_worker_completed is True

    ingredient = workers[WorkerType.INGREDIENT]
    for line in range(2):
        await ingredient.process(
            QueueJob(
                job_id=f"ingredient-{line}",
                data={"note_id": "n1", "import_id": "i1", "reference": f"{line + 1} cup flour", "line_index": line},
            )
        )
    assert completion_events("n1") == []

    await workers[WorkerType.IMAGE].process(
        QueueJob(job_id="image-1", data={"note_id": "n1", "import_id": "i1", "filename": "stack.jpg"})
    )

    assert len(completion_events("n1")) == 1
    note = repository.get_note("n1")
    assert note.status is NoteStatus.COMPLETED
    assert [line.normalized_text for line in note.instructions.values()] == ["Whisk the eggs.", "Fry until golden."]
    assert note.images[0].filename == "stack.jpg"
    assert service.get_note_completion_status("n1") is None


async def test_note_without_content_completes_immediately(workers, completion_events):
    await workers[WorkerType.NOTE].process(_note_job(instruction_count=0, ingredient_line_count=0, image_count=0))

    assert len(completion_events("n1")) == 1


async def test_note_worker_wraps_pipeline_with_status_events(workers, broadcaster):
    await workers[WorkerType.NOTE].process(_note_job())

    contexts = [event.context for event in broadcaster.events_for("n1")]
    assert contexts[0] == "note_processing"
    assert "initialize_completion" in contexts
    assert contexts[-1] == "note_processing"


async def test_ingredient_completion_check_job(workers, service):
    await workers[WorkerType.NOTE].process(_note_job(ingredient_line_count=1))
    ingredient = workers[WorkerType.INGREDIENT]

    await ingredient.process(QueueJob(job_id="check-0", data={"note_id": "n1", "import_id": "i1"}))
    assert service.get_note_completion_status("n1").ingredient_worker_completed is False

    await ingredient.process(
        QueueJob(job_id="line-0", data={"note_id": "n1", "import_id": "i1", "reference": "salt", "kind": "ingredient_line"})
    )
    assert service.get_note_completion_status("n1").ingredient_worker_completed is True


async def test_final_attempt_failure_marks_note_failed(workers, service, repository, broadcaster):
    await workers[WorkerType.NOTE].process(_note_job())
    job = QueueJob(
        job_id="ingredient-bad",
        data={"note_id": "n1", "import_id": "i1", "kind": "ingredient_line"},
        max_attempts=1,
    )

    with pytest.raises(ActionValidationError):
        await workers[WorkerType.INGREDIENT].process(job)

    note = repository.get_note("n1")
    assert note.status is NoteStatus.FAILED
    assert note.error_code is ErrorCode.INGREDIENT_PARSE_ERROR
    [failed] = broadcaster.events_for("n1", status="FAILED")
    assert failed.metadata["errorCode"] == "INGREDIENT_PARSE_ERROR"
    assert service.get_note_completion_status("n1") is None


async def test_early_attempt_failure_leaves_note_tracked(workers, service, repository):
    await workers[WorkerType.NOTE].process(_note_job())
    job = QueueJob(job_id="image-bad", data={"import_id": "i1", "note_id": ""}, max_attempts=3)

    with pytest.raises(ActionValidationError):
        await workers[WorkerType.IMAGE].process(job)

    assert service.get_note_completion_status("n1") is not None
    assert repository.get_note("n1").status is NoteStatus.PROCESSING


async def test_invalid_payload_is_a_validation_error(workers):
    job = QueueJob(job_id="note-bad", data={"note_id": "n1", "image_count": -1})

    with pytest.raises(ActionValidationError):
        await workers[WorkerType.NOTE].process(job)


async def test_queue_consumers_retry_failed_jobs(workers, repository, service):
    await workers[WorkerType.NOTE].process(_note_job(image_count=2))
    original_save = repository.save_image
    calls = {"count": 0}

    async def flaky_save(*args, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            raise RuntimeError("storage timeout")
        return await original_save(*args, **kwargs)

    repository.save_image = flaky_save
    queue = JobQueue("image", max_attempts=3)
    for index in range(2):
        await queue.add({"note_id": "n1", "import_id": "i1", "image_index": index})

    worker = workers[WorkerType.IMAGE]
    runner = asyncio.create_task(worker.run(queue))
    await queue.join()
    await worker.close()
    await runner

    assert len(queue.completed) == 2
    assert queue.failed == []
    assert service.get_note_completion_status("n1").image_worker_completed is True
    assert sorted(job.attempts_made for job in queue.completed) == [0, 1]


async def test_queue_gives_up_after_max_attempts(workers, repository):
    queue = JobQueue("image", max_attempts=2)
    job = await queue.add({"import_id": "i1", "note_id": ""})
    worker = workers[WorkerType.IMAGE]

    runner = asyncio.create_task(worker.run(queue))
    await queue.join()
    await worker.close()
    await runner

    assert queue.failed == [job]
    assert job.attempts_made == 1
    assert queue.next_job_id() == "image-00002"


async def test_instruction_jobs_racing_ahead_of_the_note_job(workers, service, completion_events):
    instruction = workers[WorkerType.INSTRUCTION]
    for index, text in enumerate(["Whisk the eggs", "Fry until golden"]):
        await instruction.process(
            QueueJob(
                job_id=f"instruction-{index}",
                data={"note_id": "n1", "import_id": "i1", "instruction_reference": text, "line_index": index},
            )
        )
    await instruction.process(QueueJob(job_id="instruction-check", data={"note_id": "n1", "import_id": "i1"}))

    await workers[WorkerType.NOTE].process(_note_job(ingredient_line_count=0, image_count=0))

    assert service.get_note_completion_status("n1") is None
    assert len(completion_events("n1")) == 1


async def test_concurrent_ingredient_checks_broadcast_completion_once(workers, service):
    await workers[WorkerType.NOTE].process(_note_job(ingredient_line_count=1))
    service.mark_ingredient_line_completed("n1", 0, 0)
    broadcaster = YieldingBroadcaster()
    deps = WorkerDependencies(
        completion=service,
        repository=service.repository,
        broadcaster=broadcaster,
        logger=service.logger,
    )
    data = IngredientJobData(note_id="n1", import_id="i1")
    context = ActionContext(job_id="check", note_id="n1", operation="ingredient_processing")

    await asyncio.gather(*(CheckIngredientCompletionAction().execute(data, deps, context) for _ in range(3)))

    completed = [event for event in broadcaster.events_for("n1", status="COMPLETED") if event.context == "ingredient_processing"]
    assert len(completed) == 1
    assert service.get_note_completion_status("n1").ingredient_worker_completed is True
