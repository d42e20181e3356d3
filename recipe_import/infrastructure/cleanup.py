"""Removal of temporary per-import file storage."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path

from recipe_import.core.imports import import_dir, imports_root
from recipe_import.core.logging import StructuredLogger, resolve_logger

ORPHAN_PREFIX = "import_"


@dataclass(slots=True)
class CleanupResult:
    cleaned_directories: int = 0
    failed_directories: int = 0
    total_directories: int = 0
    errors: list[str] = field(default_factory=list)


def _is_import_directory_name(name: str) -> bool:
    return name.startswith(ORPHAN_PREFIX) and len(name.split("_")) >= 3


class CleanupService:
    """Best-effort removal of import directories below the imports root.

    Only plain files are deleted; a directory that still holds subdirectories
    after its files are gone is left in place and reported as not removed.
    """

    def __init__(self, root: Path | None = None, logger: StructuredLogger | None = None) -> None:
        self._root = root
        self._logger = resolve_logger(logger, __name__)

    @property
    def root(self) -> Path:
        return self._root if self._root is not None else imports_root()

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _remove_files_then_directory(self, path: Path) -> bool:
        contents = list(path.iterdir())
        if contents:
            self._logger.log(f"[CLEANUP_SERVICE] Import directory not empty ({len(contents)} items): {path.name}")
            for item in contents:
                try:
                    if item.is_file():
                        item.unlink()
                except OSError as exc:
                    self._logger.log(f"[CLEANUP_SERVICE] Failed to remove file {item}: {exc}", "warn")

        remaining = list(path.iterdir())
        if remaining:
            self._logger.log(
                f"[CLEANUP_SERVICE] Import directory still has {len(remaining)} items after cleanup: {path.name}",
                "warn",
            )
            return False
        path.rmdir()
        self._logger.log(f"[CLEANUP_SERVICE] Removed import directory: {path.name}")
        return True

    def _cleanup_directory_sync(self, import_id: str) -> bool:
        try:
            path = import_dir(import_id, self.root)
        except ValueError as exc:
            self._logger.log(f"[CLEANUP_SERVICE] Refusing to clean up import directory: {exc}", "error")
            return False

        if not path.exists():
            self._logger.log(f"[CLEANUP_SERVICE] Import directory already deleted: {import_id}")
            return True
        if not path.is_dir():
            self._logger.log(f"[CLEANUP_SERVICE] Import path is not a directory: {path}", "warn")
            return False
        try:
            return self._remove_files_then_directory(path)
        except FileNotFoundError:
            self._logger.log(f"[CLEANUP_SERVICE] Import directory already deleted: {import_id}")
            return True
        except OSError as exc:
            self._logger.log(f"[CLEANUP_SERVICE] Failed to cleanup import directory {import_id}: {exc}", "error")
            return False

    def _cleanup_orphans_sync(self) -> CleanupResult:
        result = CleanupResult()
        root = self.root
        self._logger.log("[CLEANUP_SERVICE] Starting cleanup of orphaned import directories")
        if not root.is_dir():
            self._logger.log(f"[CLEANUP_SERVICE] Uploads images directory does not exist: {root}")
            return result

        candidates = sorted(
            entry for entry in root.iterdir() if entry.is_dir() and _is_import_directory_name(entry.name)
        )
        result.total_directories = len(candidates)
        self._logger.log(f"[CLEANUP_SERVICE] Found {len(candidates)} import directories")

        for path in candidates:
            try:
                if self._remove_files_then_directory(path):
                    result.cleaned_directories += 1
            except OSError as exc:
                result.failed_directories += 1
                result.errors.append(f"Error processing {path.name}: {exc}")
                self._logger.log(f"[CLEANUP_SERVICE] Error processing import directory {path.name}: {exc}", "error")

        self._logger.log(
            "[CLEANUP_SERVICE] Cleanup completed: "
            f"{result.cleaned_directories} cleaned, {result.failed_directories} failed, "
            f"{result.total_directories} total"
        )
        return result

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------
    async def cleanup_import_directory(self, import_id: str) -> bool:
        """Remove the import's directory; True when nothing is left behind."""

        return await asyncio.to_thread(self._cleanup_directory_sync, import_id)

    async def cleanup_orphaned_import_directories(self) -> CleanupResult:
        return await asyncio.to_thread(self._cleanup_orphans_sync)


__all__ = ["CleanupResult", "CleanupService"]
