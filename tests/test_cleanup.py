from __future__ import annotations

import pytest

from recipe_import.core.imports import import_dir
from recipe_import.infrastructure import CleanupService

pytestmark = pytest.mark.anyio


async def test_removes_directory_with_files(imports_root, make_import_dir):
    path = make_import_dir("import_1700000000_abc")
    (path / "a.jpg").write_bytes(b"a")
    (path / "b.jpg").write_bytes(b"b")

    assert await CleanupService(imports_root).cleanup_import_directory("import_1700000000_abc") is True
    assert not path.exists()


async def test_missing_directory_counts_as_clean(imports_root):
    assert await CleanupService(imports_root).cleanup_import_directory("never-created") is True


async def test_nested_directories_are_left_in_place(imports_root, make_import_dir):
    path = make_import_dir("i1")
    (path / "thumbs").mkdir()
    (path / "a.jpg").write_bytes(b"a")

    assert await CleanupService(imports_root).cleanup_import_directory("i1") is False
    assert path.exists()
    assert not (path / "a.jpg").exists()


async def test_rejects_ids_outside_root(imports_root):
    outside = imports_root.parent / "keep"
    outside.mkdir()

    assert await CleanupService(imports_root).cleanup_import_directory("../keep") is False
    assert outside.exists()


def test_import_dir_validation(imports_root):
    assert import_dir("i1", imports_root) == (imports_root / "i1").resolve()
    for bad in ("..", "a/b", ""):
        with pytest.raises(ValueError):
            import_dir(bad, imports_root)


async def test_orphan_sweep_only_touches_import_directories(imports_root, make_import_dir):
    empty = make_import_dir("import_1700000000_aaa")
    with_files = make_import_dir("import_1700000001_bbb")
    (with_files / "photo.png").write_bytes(b"png")
    nested = make_import_dir("import_1700000002_ccc")
    (nested / "sub").mkdir()
    unrelated = make_import_dir("avatars")
    short_name = make_import_dir("import_x")

    result = await CleanupService(imports_root).cleanup_orphaned_import_directories()

    assert result.total_directories == 3
    assert result.cleaned_directories == 2
    assert result.failed_directories == 0
    assert not empty.exists()
    assert not with_files.exists()
    assert nested.exists()
    assert unrelated.exists()
    assert short_name.exists()


async def test_orphan_sweep_without_root(tmp_path):
    result = await CleanupService(tmp_path / "missing").cleanup_orphaned_import_directories()

    assert result.total_directories == 0
    assert result.errors == []
