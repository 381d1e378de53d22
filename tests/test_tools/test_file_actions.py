import pytest

from shellpilot.actions import (
    CreateFileAction,
    DeleteFileAction,
    ListFilesAction,
    ReadFileAction,
    default_actions,
)
from shellpilot.actions.files import MAX_READ_BYTES
from shellpilot.audit import OperationKind
from shellpilot.config import ExecutionConfig


@pytest.mark.asyncio
async def test_read_file_supports_offset_and_limit(tmp_path):
    (tmp_path / "lines.txt").write_text("one\ntwo\nthree\nfour\n", encoding="utf-8")

    result = await ReadFileAction(root=tmp_path).execute(path="lines.txt", offset=2, limit=2)

    assert result.success is True
    assert result.output.endswith("two\nthree")


@pytest.mark.asyncio
async def test_read_file_rejects_missing_and_oversized_files(tmp_path):
    (tmp_path / "big.txt").write_text("x" * (MAX_READ_BYTES + 1), encoding="utf-8")
    action = ReadFileAction(root=tmp_path)

    missing = await action.execute(path="nope.txt")
    too_big = await action.execute(path="big.txt")

    assert missing.success is False
    assert "not found" in missing.error
    assert too_big.success is False
    assert "too large" in too_big.error


@pytest.mark.asyncio
async def test_list_files_matches_recursive_glob(tmp_path):
    (tmp_path / "pkg").mkdir()
    (tmp_path / "pkg" / "a.py").write_text("", encoding="utf-8")
    (tmp_path / "b.py").write_text("", encoding="utf-8")
    (tmp_path / "c.txt").write_text("", encoding="utf-8")

    result = await ListFilesAction(root=tmp_path).execute(pattern="**/*.py")
    empty = await ListFilesAction(root=tmp_path).execute(pattern="*.md")

    assert "Found 2 file(s)" in result.output
    assert "a.py" in result.output
    assert "c.txt" not in result.output
    assert empty.output.startswith("No files found")


@pytest.mark.asyncio
async def test_create_file_refuses_to_overwrite(tmp_path):
    (tmp_path / "exists.txt").write_text("old", encoding="utf-8")
    action = CreateFileAction(root=tmp_path)

    result = await action.execute(path="exists.txt", content="new")

    assert result.success is False
    assert result.reversible is None
    assert (tmp_path / "exists.txt").read_text(encoding="utf-8") == "old"


@pytest.mark.asyncio
async def test_delete_file_moves_into_backup_dir(tmp_path):
    (tmp_path / "x.txt").write_text("keep me", encoding="utf-8")
    backups = tmp_path / "backups"

    result = await DeleteFileAction(root=tmp_path, backup_dir=backups).execute(path="x.txt")

    assert result.success is True
    assert result.reversible.kind is OperationKind.DELETE
    stored = list(backups.iterdir())
    assert len(stored) == 1
    assert stored[0].name.endswith("-x.txt")
    assert stored[0].read_text(encoding="utf-8") == "keep me"


def test_default_actions_cover_builtin_catalog_names(tmp_path):
    registry = default_actions(ExecutionConfig(backup_dir=str(tmp_path / "b")), root=tmp_path)
    assert registry.list_actions() == [
        "copy_file",
        "create_file",
        "delete_file",
        "list_files",
        "move_file",
        "read_file",
        "run_command",
        "web_fetch",
    ]
