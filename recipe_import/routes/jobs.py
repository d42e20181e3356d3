from __future__ import annotations

import uuid

from fastapi import APIRouter, HTTPException

from recipe_import.application import get_completion_service
from recipe_import.core.settings import load_settings
from recipe_import.domain import WorkerType
from recipe_import.workers.actions import ActionValidationError, WorkerDependencies
from recipe_import.workers.base import QueueJob
from recipe_import.workers.registry import build_workers

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("/{worker_type}")
async def run_job(worker_type: str, payload: dict) -> dict:
    """Run a single job through the worker pipeline for ``worker_type``."""
    try:
        kind = WorkerType(worker_type)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=f"unknown worker type: {worker_type}") from exc

    settings = load_settings()
    workers = build_workers(WorkerDependencies.from_service(get_completion_service()))
    job = QueueJob(
        job_id=str(payload.get("job_id") or f"{kind.value}-{uuid.uuid4().hex[:12]}"),
        data=payload,
        max_attempts=settings.job_max_attempts,
    )
    try:
        result = await workers[kind].process(job)
    except ActionValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return {"job_id": job.job_id, "worker_type": kind.value, "data": result.model_dump(mode="json")}
