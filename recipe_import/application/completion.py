"""Note completion tracking across the four import workers.

Every note fans out into note, instruction, ingredient and image work that
finishes in any order.  The service keeps one in-memory record per note and
fires the terminal COMPLETED side effects exactly once, on the call that sets
the last outstanding worker flag.

All record mutation happens synchronously under the note's lock in
:class:`CompletionStore`; persistence, broadcasts and directory cleanup are
awaited only after the lock is released, and each of them is best effort.
"""
from __future__ import annotations

from recipe_import.core.logging import StructuredLogger, resolve_logger
from recipe_import.core.schema import NoteStatusUpdate, StatusEvent
from recipe_import.core.store import CompletionStore
from recipe_import.domain import (
    ErrorCode,
    IngredientProgress,
    NoteCompletionStatus,
    NoteStatus,
    WorkerType,
)
from recipe_import.infrastructure import (
    CleanupService,
    InMemoryNoteRepository,
    NoteRepository,
    StatusBroadcaster,
    get_status_broadcaster,
)

DEFAULT_TTL_SECONDS = 6 * 60 * 60
TAG = "[TRACK_COMPLETION]"


def _ingredient_key(block_index: int, line_index: int) -> str:
    return f"{block_index}:{line_index}"


def _image_milestone(completed: int, total: int) -> bool:
    if total <= 0:
        return False
    return completed >= total or completed % max(1, total // 4) == 0


class CompletionService:
    """Coordinates completion tracking for in-flight notes."""

    def __init__(
        self,
        store: CompletionStore,
        repository: NoteRepository,
        *,
        broadcaster: StatusBroadcaster | None = None,
        cleanup: CleanupService | None = None,
        logger: StructuredLogger | None = None,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
    ) -> None:
        self._store = store
        self._repository = repository
        self._broadcaster = broadcaster
        self._logger = resolve_logger(logger, __name__)
        self._cleanup = cleanup or CleanupService(logger=self._logger)
        self._ttl_seconds = ttl_seconds

    @property
    def repository(self) -> NoteRepository:
        return self._repository

    @property
    def broadcaster(self) -> StatusBroadcaster:
        return self._broadcaster if self._broadcaster is not None else get_status_broadcaster()

    @property
    def logger(self) -> StructuredLogger:
        return self._logger

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _missing(self, operation: str, note_id: str) -> None:
        self._logger.log(f"{TAG} No completion record for note {note_id}; ignoring {operation}", "warn")

    def _complete_worker_locked(self, record: NoteCompletionStatus, worker_type: WorkerType) -> NoteCompletionStatus | None:
        """Set a flag while holding the note lock.

        Returns the removed record when this call completed the note, so the
        caller can run the completion side effects after releasing the lock.
        """

        if not record.mark_worker(worker_type):
            return None
        return self._store.pop_locked(record.note_id)

    async def _broadcast(self, event: StatusEvent, operation: str) -> None:
        try:
            await self.broadcaster.broadcast(event)
        except Exception as exc:
            self._logger.log(
                f"{TAG} Failed to broadcast {operation} for note {event.note_id}: {exc}",
                "error",
                {"note_id": event.note_id, "import_id": event.import_id, "operation": operation},
            )

    async def _cleanup_import(self, note_id: str, import_id: str) -> None:
        try:
            removed = await self._cleanup.cleanup_import_directory(import_id)
        except Exception as exc:
            self._logger.log(
                f"{TAG} Failed to clean up import directory for {import_id}: {exc}",
                "error",
                {"note_id": note_id, "import_id": import_id},
            )
            return
        if not removed:
            self._logger.log(f"{TAG} Import directory for {import_id} was not fully removed", "warn")

    async def _on_note_completed(self, record: NoteCompletionStatus) -> None:
        note_id = record.note_id
        self._logger.log(f"{TAG} All workers completed for note {note_id}")

        try:
            await self._repository.update_note_status(note_id, NoteStatusUpdate(status=NoteStatus.COMPLETED))
        except Exception as exc:
            self._logger.log(f"{TAG} Failed to persist COMPLETED for note {note_id}: {exc}", "error")
        try:
            await self._repository.update_parsing_error_count(note_id)
        except Exception as exc:
            self._logger.log(f"{TAG} Failed to update parsing error count for note {note_id}: {exc}", "error")

        title: str | None = None
        try:
            title = await self._repository.get_note_title(note_id)
        except Exception as exc:
            self._logger.log(f"{TAG} Failed to look up title for note {note_id}: {exc}", "warn")

        metadata: dict[str, object] = record.completion_metadata()
        if title:
            metadata["noteTitle"] = title
        await self._broadcast(
            StatusEvent(
                import_id=record.import_id,
                note_id=note_id,
                status=NoteStatus.COMPLETED,
                message="Note processing completed successfully",
                context="note_completion",
                metadata=metadata,
            ),
            "note completion",
        )
        await self._cleanup_import(note_id, record.import_id)

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    async def initialize_note_completion(self, note_id: str, import_id: str, html_file_name: str | None = None) -> None:
        self.evict_stale()
        self._store.put(NoteCompletionStatus(note_id=note_id, import_id=import_id, html_file_name=html_file_name))
        self._logger.log(f"{TAG} Initialized completion tracking for note {note_id}", "info", {"import_id": import_id})

        try:
            await self._repository.update_note_status(note_id, NoteStatusUpdate(status=NoteStatus.PROCESSING))
        except Exception as exc:
            self._logger.log(f"{TAG} Failed to mark note {note_id} as PROCESSING: {exc}", "error")

    async def set_total_image_jobs(self, note_id: str, total: int) -> None:
        """Record how many image jobs the note expects.

        The completed counter starts over.  A total of zero completes the
        image worker straight away.
        """

        completed_record: NoteCompletionStatus | None = None
        with self._store.locked(note_id) as record:
            if record is None:
                self._missing("set_total_image_jobs", note_id)
                return
            record.total_image_jobs = max(0, int(total))
            record.completed_image_jobs = 0
            record.touch()
            if record.total_image_jobs == 0:
                completed_record = self._complete_worker_locked(record, WorkerType.IMAGE)
        self._logger.log(f"{TAG} Set total image jobs for note {note_id} to {total}")
        if completed_record is not None:
            await self._on_note_completed(completed_record)

    def set_total_ingredient_lines(self, note_id: str, total: int) -> None:
        with self._store.locked(note_id) as record:
            if record is None:
                self._missing("set_total_ingredient_lines", note_id)
                return
            record.total_ingredient_lines = max(0, int(total))
            record.touch()
        self._logger.log(f"{TAG} Set total ingredient lines for note {note_id} to {total}")

    # ------------------------------------------------------------------
    # progress
    # ------------------------------------------------------------------
    async def mark_image_job_completed(self, note_id: str) -> None:
        completed_record: NoteCompletionStatus | None = None
        with self._store.locked(note_id) as record:
            if record is None:
                self._missing("mark_image_job_completed", note_id)
                return
            record.completed_image_jobs += 1
            record.touch()
            completed = record.completed_image_jobs
            total = record.total_image_jobs
            import_id = record.import_id
            if total == 0 or completed >= total:
                completed_record = self._complete_worker_locked(record, WorkerType.IMAGE)

        if total and completed > total:
            self._logger.log(f"{TAG} Note {note_id} reported {completed} image jobs for a total of {total}", "warn")
        else:
            self._logger.log(f"{TAG} Image job completed for note {note_id}: {completed}/{total}", "debug")

        if _image_milestone(completed, total):
            await self._broadcast(
                StatusEvent(
                    import_id=import_id,
                    note_id=note_id,
                    status=NoteStatus.PROCESSING,
                    message=f"Processing {min(completed, total)}/{total} images",
                    context="image_processing",
                    current_count=min(completed, total),
                    total_count=total,
                    indent_level=1,
                    metadata={"noteId": note_id, "completedImageJobs": completed, "totalImageJobs": total},
                ),
                "image progress",
            )
        if completed_record is not None:
            await self._on_note_completed(completed_record)

    def mark_ingredient_line_completed(self, note_id: str, block_index: int, line_index: int) -> None:
        key = _ingredient_key(block_index, line_index)
        with self._store.locked(note_id) as record:
            if record is None:
                self._missing("mark_ingredient_line_completed", note_id)
                return
            record.completed_ingredient_lines.add(key)
            record.touch()
            completed = len(record.completed_ingredient_lines)
            total = record.total_ingredient_lines
        self._logger.log(f"{TAG} Ingredient line {key} completed for note {note_id}: {completed}/{total}", "debug")

    async def mark_worker_completed(self, note_id: str, worker_type: WorkerType | str) -> bool:
        """Mark one worker as finished; returns True if that completed the note."""

        worker = WorkerType(worker_type)
        with self._store.locked(note_id) as record:
            if record is None:
                self._missing(f"mark_worker_completed({worker.value})", note_id)
                return False
            completed_record = self._complete_worker_locked(record, worker)
            pending = [item.value for item in record.pending_workers()]

        if completed_record is None:
            self._logger.log(
                f"{TAG} Worker {worker.value} completed for note {note_id}",
                "info",
                {"pending_workers": pending},
            )
            return False
        await self._on_note_completed(completed_record)
        return True

    async def mark_note_worker_completed(self, note_id: str) -> bool:
        return await self.mark_worker_completed(note_id, WorkerType.NOTE)

    async def mark_instruction_worker_completed(self, note_id: str) -> bool:
        return await self.mark_worker_completed(note_id, WorkerType.INSTRUCTION)

    async def mark_ingredient_worker_completed(self, note_id: str) -> bool:
        return await self.mark_worker_completed(note_id, WorkerType.INGREDIENT)

    async def mark_image_worker_completed(self, note_id: str) -> bool:
        return await self.mark_worker_completed(note_id, WorkerType.IMAGE)

    # ------------------------------------------------------------------
    # one-shot claims
    # ------------------------------------------------------------------
    def claim_once(self, note_id: str, key: str) -> bool:
        """Record ``key`` against a tracked note; only the first caller wins.

        Claims live on the completion record, so they go away with it on
        completion, failure, cleanup, eviction or re-initialisation.
        """

        with self._store.locked(note_id) as record:
            if record is None:
                self._missing(f"claim_once({key})", note_id)
                return False
            if key in record.claims:
                return False
            record.claims.add(key)
            record.touch()
            return True

    def release_claim(self, note_id: str, key: str) -> None:
        with self._store.locked(note_id) as record:
            if record is not None:
                record.claims.discard(key)

    def release_claims(self, key: str) -> int:
        released = 0
        for note_id in self._store.note_ids():
            with self._store.locked(note_id) as record:
                if record is not None and key in record.claims:
                    record.claims.discard(key)
                    released += 1
        return released

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    def get_note_completion_status(self, note_id: str) -> NoteCompletionStatus | None:
        return self._store.get(note_id)

    def get_ingredient_completion_status(self, note_id: str) -> IngredientProgress:
        record = self._store.get(note_id)
        if record is None:
            return IngredientProgress()
        return IngredientProgress.from_counts(len(record.completed_ingredient_lines), record.total_ingredient_lines)

    def tracked_note_ids(self) -> list[str]:
        return self._store.note_ids()

    # ------------------------------------------------------------------
    # teardown
    # ------------------------------------------------------------------
    def cleanup_note_completion(self, note_id: str) -> None:
        if self._store.delete(note_id) is None:
            self._logger.log(f"{TAG} No completion record to clean up for note {note_id}", "debug")
        else:
            self._logger.log(f"{TAG} Cleaned up completion tracking for note {note_id}")

    async def mark_note_as_failed(
        self,
        note_id: str,
        error_message: str,
        error_code: ErrorCode | None = None,
        error_details: dict[str, object] | None = None,
        *,
        import_id: str | None = None,
    ) -> None:
        """Fail the note: persist FAILED, drop tracking and tell the client once.

        ``import_id`` is only consulted when no record is being tracked.
        """

        code = error_code or ErrorCode.UNKNOWN_ERROR
        with self._store.locked(note_id) as record:
            removed = self._store.pop_locked(note_id) if record is not None else None
        resolved_import_id = removed.import_id if removed is not None else import_id

        self._logger.log(
            f"{TAG} Marking note {note_id} as FAILED: {error_message}",
            "error",
            {"error_code": code.value, "import_id": resolved_import_id},
        )
        try:
            await self._repository.update_note_status(
                note_id,
                NoteStatusUpdate(
                    status=NoteStatus.FAILED,
                    error_message=error_message,
                    error_code=code,
                    error_details=error_details,
                ),
            )
        except Exception as exc:
            self._logger.log(f"{TAG} Failed to persist FAILED for note {note_id}: {exc}", "error")

        if not resolved_import_id:
            self._logger.log(f"{TAG} No import id known for note {note_id}; skipping failure broadcast", "warn")
            return
        await self._broadcast(
            StatusEvent(
                import_id=resolved_import_id,
                note_id=note_id,
                status=NoteStatus.FAILED,
                message=error_message,
                context="note_failure",
                metadata={"noteId": note_id, "errorCode": code.value, "errorDetails": error_details or {}},
            ),
            "note failure",
        )
        await self._cleanup_import(note_id, resolved_import_id)

    def evict_stale(self, now: float | None = None) -> list[str]:
        evicted = self._store.sweep(self._ttl_seconds, now)
        if evicted:
            self._logger.log(f"{TAG} Evicted {len(evicted)} stale completion records", "warn", {"note_ids": evicted})
        return evicted

    # ------------------------------------------------------------------
    # testing helpers
    # ------------------------------------------------------------------
    def reset(self) -> None:
        self._store.clear()


def _default_service() -> CompletionService:
    return CompletionService(CompletionStore(), InMemoryNoteRepository())


_service = _default_service()


def get_completion_service() -> CompletionService:
    """Return the singleton completion service for the process."""

    return _service


def configure_completion_service(service: CompletionService) -> None:
    global _service
    _service = service


def reset_completion_state() -> None:
    """Replace the service with a fresh in-memory one (used in tests)."""

    global _service
    _service = _default_service()
