from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from recipe_import.application import (
    CompletionService,
    configure_completion_service,
    reset_completion_state,
)
from recipe_import.core.imports import import_dir
from recipe_import.core.store import CompletionStore
from recipe_import.infrastructure import (
    CleanupService,
    InMemoryNoteRepository,
    InMemoryStatusBroadcaster,
    configure_status_broadcaster,
)
from recipe_import.workers.actions import WorkerDependencies
from recipe_import.workers.instruction import reset_completed_notes


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_state():
    reset_completion_state()
    reset_completed_notes()
    configure_status_broadcaster(InMemoryStatusBroadcaster())
    yield
    reset_completion_state()
    reset_completed_notes()
    configure_status_broadcaster(InMemoryStatusBroadcaster())


@pytest.fixture
def broadcaster():
    recorder = InMemoryStatusBroadcaster()
    configure_status_broadcaster(recorder)
    return recorder


@pytest.fixture
def repository():
    return InMemoryNoteRepository()


@pytest.fixture
def imports_root(tmp_path):
    root = tmp_path / "imports"
    root.mkdir()
    return root


@pytest.fixture
def make_import_dir(imports_root):
    def _make(import_id: str) -> Path:
        path = import_dir(import_id, imports_root)
        path.mkdir(parents=True, exist_ok=True)
        return path

    return _make


@pytest.fixture
def service(repository, broadcaster, imports_root):
    completion = CompletionService(
        CompletionStore(),
        repository,
        broadcaster=broadcaster,
        cleanup=CleanupService(imports_root),
    )
    configure_completion_service(completion)
    return completion


@pytest.fixture
def deps(service):
    return WorkerDependencies.from_service(service)


@pytest.fixture
def completion_events(broadcaster):
    def _events(note_id: str) -> list:
        return [
            event
            for event in broadcaster.events_for(note_id, status="COMPLETED")
            if event.context == "note_completion"
        ]

    return _events

