import pytest

from shellpilot.actions import CopyFileAction, CreateFileAction, DeleteFileAction, MoveFileAction
from shellpilot.audit import (
    AuditLog,
    ExecutionRecord,
    ExecutionStatus,
    OperationKind,
    ReversibleOperation,
    UndoHistory,
)


@pytest.mark.asyncio
async def test_undo_create_removes_file(tmp_path):
    history = UndoHistory(tmp_path / "undo.json")
    result = await CreateFileAction(root=tmp_path).execute(path="a/new.txt", content="data")
    history.record(result.reversible)

    outcomes = history.undo()

    assert len(outcomes) == 1
    assert outcomes[0].success is True
    assert not (tmp_path / "a" / "new.txt").exists()
    assert history.entries()[0].undone is True
    # already undone entries are skipped
    assert history.undo() == []


@pytest.mark.asyncio
async def test_undo_move_and_copy_restore_previous_layout(tmp_path):
    (tmp_path / "src.txt").write_text("one", encoding="utf-8")
    (tmp_path / "keep.txt").write_text("two", encoding="utf-8")
    history = UndoHistory(tmp_path / "undo.json")

    moved = await MoveFileAction(root=tmp_path).execute(source="src.txt", destination="moved/dst.txt")
    copied = await CopyFileAction(root=tmp_path).execute(source="keep.txt", destination="copy.txt")
    history.record(moved.reversible)
    history.record(copied.reversible)

    outcomes = history.undo(2)

    assert [o.operation.kind for o in outcomes] == [OperationKind.COPY, OperationKind.MOVE]
    assert all(o.success for o in outcomes)
    assert (tmp_path / "src.txt").read_text(encoding="utf-8") == "one"
    assert not (tmp_path / "moved" / "dst.txt").exists()
    assert not (tmp_path / "copy.txt").exists()
    assert (tmp_path / "keep.txt").exists()


@pytest.mark.asyncio
async def test_undo_delete_with_backup_restores_file(tmp_path):
    target = tmp_path / "doomed.txt"
    target.write_text("precious", encoding="utf-8")
    history = UndoHistory(tmp_path / "undo.json")

    result = await DeleteFileAction(root=tmp_path, backup_dir=tmp_path / "backups").execute(path="doomed.txt")
    history.record(result.reversible)
    assert not target.exists()
    assert result.reversible.backup_path is not None

    outcome = history.undo()[0]

    assert outcome.success is True
    assert target.read_text(encoding="utf-8") == "precious"


@pytest.mark.asyncio
async def test_undo_delete_without_backup_reports_not_undoable(tmp_path):
    target = tmp_path / "gone.txt"
    target.write_text("bye", encoding="utf-8")
    history = UndoHistory(tmp_path / "undo.json")

    result = await DeleteFileAction(root=tmp_path, backup_dir=None).execute(path="gone.txt")
    history.record(result.reversible)

    outcome = history.undo()[0]

    assert outcome.success is False
    assert "not undoable" in outcome.message
    assert not target.exists()
    assert history.entries()[0].undone is False


def test_undo_move_refuses_to_overwrite_original(tmp_path):
    (tmp_path / "dst.txt").write_text("moved", encoding="utf-8")
    (tmp_path / "src.txt").write_text("new occupant", encoding="utf-8")
    history = UndoHistory()
    history.record(
        ReversibleOperation(
            kind=OperationKind.MOVE,
            target_path=str(tmp_path / "dst.txt"),
            original_path=str(tmp_path / "src.txt"),
        )
    )

    outcome = history.undo()[0]

    assert outcome.success is False
    assert (tmp_path / "src.txt").read_text(encoding="utf-8") == "new occupant"


def test_history_is_bounded_and_persisted(tmp_path):
    path = tmp_path / "undo.json"
    history = UndoHistory(path, capacity=3)
    for i in range(5):
        history.record(ReversibleOperation(kind=OperationKind.CREATE, target_path=f"/tmp/f{i}"))

    reopened = UndoHistory(path, capacity=3)
    assert [op.target_path for op in reopened.entries()] == ["/tmp/f2", "/tmp/f3", "/tmp/f4"]


def test_audit_log_is_capped_on_disk(tmp_path):
    path = tmp_path / "audit.json"
    audit = AuditLog(path, cap=3)
    for i in range(5):
        audit.append(ExecutionRecord(command=f"cmd {i}", status=ExecutionStatus.SUCCESS))

    records = AuditLog(path, cap=3).recent(10)
    assert [r.command for r in records] == ["cmd 2", "cmd 3", "cmd 4"]


def test_audit_log_in_memory_keeps_newest_last():
    audit = AuditLog(cap=2)
    audit.append(ExecutionRecord(command="a", status=ExecutionStatus.REJECTED))
    audit.append(ExecutionRecord(command="b", status=ExecutionStatus.SUCCESS))
    audit.append(ExecutionRecord(command="c", status=ExecutionStatus.CANCELLED))
    assert [r.command for r in audit.recent()] == ["b", "c"]


def test_audit_log_survives_corrupt_file(tmp_path):
    path = tmp_path / "audit.json"
    path.write_text('{"oops": true}', encoding="utf-8")
    audit = AuditLog(path)

    audit.append(ExecutionRecord(command="x", status=ExecutionStatus.SUCCESS))

    assert audit.recent() == []
    assert path.read_text(encoding="utf-8") == '{"oops": true}'


@pytest.mark.asyncio
async def test_undo_still_inverts_when_history_cannot_be_saved(tmp_path, monkeypatch):
    history = UndoHistory(tmp_path / "undo.json")
    result = await CreateFileAction(root=tmp_path).execute(path="draft.txt", content="x")
    history.record(result.reversible)

    def read_only_disk(*args, **kwargs):
        raise OSError("Read-only file system")

    monkeypatch.setattr("shellpilot.audit.write_json_atomic", read_only_disk)
    outcomes = history.undo()

    assert len(outcomes) == 1
    assert outcomes[0].success is True
    assert not (tmp_path / "draft.txt").exists()


def test_undo_reports_nothing_when_history_is_locked(tmp_path, monkeypatch):
    history = UndoHistory(tmp_path / "undo.json")
    history.record(ReversibleOperation(kind=OperationKind.CREATE, target_path=str(tmp_path / "kept.txt")))
    (tmp_path / "kept.txt").write_text("stay", encoding="utf-8")

    def stuck_lock(*args, **kwargs):
        raise TimeoutError("Timed out waiting for lock")

    monkeypatch.setattr("shellpilot.audit.file_lock", stuck_lock)

    assert history.undo() == []
    assert (tmp_path / "kept.txt").exists()
