from __future__ import annotations

import os
from pathlib import Path


def imports_root() -> Path:
    env_root = os.getenv("IMPORTS_ROOT")
    if env_root:
        return Path(env_root).expanduser().resolve()
    return Path(__file__).resolve().parents[2] / "uploads" / "images"


def import_dir(import_id: str, root: Path | None = None) -> Path:
    """Return the temporary working directory for an import.

    Raises ``ValueError`` for ids that would resolve outside the root.
    """

    base = (root or imports_root()).resolve()
    name = Path(str(import_id)).name
    if not name or name in {".", ".."} or name != str(import_id):
        raise ValueError(f"invalid import id: {import_id!r}")
    candidate = (base / name).resolve()
    if candidate.parent != base:
        raise ValueError(f"invalid import id: {import_id!r}")
    return candidate

