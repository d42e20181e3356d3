"""Keyed in-memory store for note completion records.

Each note id owns its own lock, so a burst of worker callbacks for one note
never serialises work on other notes.  The registry lock only protects the
lock table itself and is held for a dictionary lookup at most.

A lock entry counts the threads using it.  It is dropped only when nobody
holds or waits on it and the note has no record, so two callers can never
end up holding different locks for the same note.
"""
from __future__ import annotations

import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from recipe_import.domain import NoteCompletionStatus


@dataclass(slots=True)
class _KeyLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class CompletionStore:
    def __init__(self) -> None:
        self._records: dict[str, NoteCompletionStatus] = {}
        self._locks: dict[str, _KeyLock] = {}
        self._registry_lock = threading.Lock()

    # ------------------------------------------------------------------
    # locking
    # ------------------------------------------------------------------
    @contextmanager
    def _hold(self, note_id: str) -> Iterator[None]:
        with self._registry_lock:
            entry = self._locks.get(note_id)
            if entry is None:
                entry = _KeyLock()
                self._locks[note_id] = entry
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._registry_lock:
                entry.users -= 1
                if entry.users == 0 and note_id not in self._records and self._locks.get(note_id) is entry:
                    del self._locks[note_id]

    @contextmanager
    def locked(self, note_id: str) -> Iterator[NoteCompletionStatus | None]:
        """Hold the note's lock and yield its live record (or None).

        The body must stay synchronous; never await while the lock is held.
        """

        with self._hold(note_id):
            yield self._records.get(note_id)

    def pop_locked(self, note_id: str) -> NoteCompletionStatus | None:
        """Remove a record; callers must already hold the note's lock."""

        return self._records.pop(note_id, None)

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------
    def put(self, record: NoteCompletionStatus) -> None:
        with self._hold(record.note_id):
            self._records[record.note_id] = record

    def get(self, note_id: str) -> NoteCompletionStatus | None:
        with self.locked(note_id) as record:
            return record.snapshot() if record is not None else None

    def delete(self, note_id: str) -> NoteCompletionStatus | None:
        with self._hold(note_id):
            return self._records.pop(note_id, None)

    def __contains__(self, note_id: object) -> bool:
        return note_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def note_ids(self) -> list[str]:
        return sorted(self._records)

    # ------------------------------------------------------------------
    # eviction
    # ------------------------------------------------------------------
    def sweep(self, ttl_seconds: float, now: float | None = None) -> list[str]:
        """Drop records idle for longer than ``ttl_seconds``."""

        if ttl_seconds <= 0:
            return []
        current = time.monotonic() if now is None else now
        evicted: list[str] = []
        for note_id in list(self._records):
            with self.locked(note_id) as record:
                if record is not None and current - record.updated_at > ttl_seconds:
                    self._records.pop(note_id, None)
                    evicted.append(note_id)
        return evicted

    def clear(self) -> None:
        with self._registry_lock:
            self._records.clear()
            self._locks.clear()
