from __future__ import annotations

from fastapi import APIRouter, HTTPException

from recipe_import.application import get_completion_service
from recipe_import.domain import ErrorCode

router = APIRouter(prefix="/notes", tags=["notes"])


@router.get("")
async def list_tracked_notes() -> dict:
    service = get_completion_service()
    return {"items": service.tracked_note_ids()}


@router.get("/{note_id}/completion")
async def get_note_completion(note_id: str) -> dict:
    service = get_completion_service()
    status = service.get_note_completion_status(note_id)
    if status is None:
        raise HTTPException(status_code=404, detail="note is not being tracked")
    return status.as_dict()


@router.get("/{note_id}/ingredients/progress")
async def get_ingredient_progress(note_id: str) -> dict:
    service = get_completion_service()
    progress = service.get_ingredient_completion_status(note_id)
    return {
        "note_id": note_id,
        "completed_ingredients": progress.completed_ingredients,
        "total_ingredients": progress.total_ingredients,
        "progress": progress.progress,
        "is_complete": progress.is_complete,
    }


@router.delete("/{note_id}/completion")
async def delete_note_completion(note_id: str) -> dict:
    service = get_completion_service()
    service.cleanup_note_completion(note_id)
    return {"note_id": note_id, "tracked": False}


@router.post("/{note_id}/failure")
async def fail_note(note_id: str, payload: dict) -> dict:
    message = str(payload.get("error_message") or payload.get("message") or "").strip()
    if not message:
        raise HTTPException(status_code=400, detail="error_message is required")

    raw_code = payload.get("error_code")
    try:
        code = ErrorCode(raw_code) if raw_code else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"unknown error_code: {raw_code}") from exc

    details = payload.get("error_details")
    if details is not None and not isinstance(details, dict):
        raise HTTPException(status_code=400, detail="error_details must be an object")

    service = get_completion_service()
    await service.mark_note_as_failed(
        note_id,
        message,
        code,
        details,
        import_id=payload.get("import_id"),
    )
    return {"note_id": note_id, "status": "FAILED", "error_code": (code or ErrorCode.UNKNOWN_ERROR).value}
