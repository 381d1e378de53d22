"""Append-only audit trail and reversible-operation history."""

import shutil
import threading
import uuid
from contextlib import nullcontext
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from shellpilot.exceptions import StorageError
from shellpilot.locking import file_lock, read_json, write_json_atomic
from shellpilot.logging import get_logger

log = get_logger(__name__)


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


class ExecutionStatus(str, Enum):
    """Terminal status of one gateway invocation."""

    ATTEMPTED = "Attempted"
    SUCCESS = "Success"
    REJECTED = "Rejected"
    RATE_LIMITED = "RateLimited"
    CANCELLED = "Cancelled"
    EXECUTION_ERROR = "ExecutionError"
    DRY_RUN = "DryRun"


class ExecutionRecord(BaseModel):
    """One audit log entry."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: str = Field(default_factory=_utcnow_iso)
    session: str = ""
    user: str = ""
    host: str = ""
    source: str = "agent"  # "human" | "agent"
    command: str
    status: ExecutionStatus
    output: str = ""
    error: str | None = None
    confirmed: bool = False
    duration_ms: int = 0


class AuditLog:
    """Capped JSON-array audit file, rewritten in full on each append."""

    def __init__(self, path: Path | str | None = None, cap: int = 1000):
        self.path = Path(path).expanduser() if path else None
        self.cap = max(1, int(cap))
        self._lock = threading.Lock()
        self._memory: list[ExecutionRecord] = []

    def append(self, record: ExecutionRecord) -> None:
        """Append one record. Persistence failures are logged, never raised."""
        with self._lock:
            self._memory.append(record)
            if len(self._memory) > self.cap:
                del self._memory[: len(self._memory) - self.cap]
            if self.path is None:
                return
            try:
                self._persist(record)
            except (OSError, TimeoutError, StorageError) as e:
                log.warning("Audit log persistence failed", path=str(self.path), error=str(e))

    def _persist(self, record: ExecutionRecord) -> None:
        with file_lock(self.path):
            entries = read_json(self.path, [])
            if not isinstance(entries, list):
                raise StorageError(f"Audit log is not a JSON array: {self.path}")
            entries.append(record.model_dump(mode="json"))
            if len(entries) > self.cap:
                entries = entries[-self.cap:]
            write_json_atomic(self.path, entries)

    def recent(self, limit: int = 20) -> list[ExecutionRecord]:
        """Return newest-last records, read from disk when persisted."""
        if self.path is None:
            with self._lock:
                return list(self._memory[-limit:])
        entries = read_json(self.path, [])
        if not isinstance(entries, list):
            return []
        records: list[ExecutionRecord] = []
        for raw in entries[-limit:]:
            try:
                records.append(ExecutionRecord.model_validate(raw))
            except PydanticValidationError:
                continue
        return records


class OperationKind(str, Enum):
    """Reversible operation types."""

    CREATE = "Create"
    COPY = "Copy"
    MOVE = "Move"
    DELETE = "Delete"


class ReversibleOperation(BaseModel):
    """Enough information to invert one file operation."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    kind: OperationKind
    target_path: str
    original_path: str | None = None
    backup_path: str | None = None
    undone: bool = False
    timestamp: str = Field(default_factory=_utcnow_iso)


class UndoOutcome(BaseModel):
    """Result of trying to invert one operation."""

    operation: ReversibleOperation
    success: bool
    message: str


def _invert(op: ReversibleOperation) -> tuple[bool, str]:
    target = Path(op.target_path)
    if op.kind in (OperationKind.CREATE, OperationKind.COPY):
        if not target.exists():
            return False, f"{target} no longer exists"
        if target.is_dir():
            shutil.rmtree(target)
        else:
            target.unlink()
        return True, f"Removed {target}"

    if op.kind is OperationKind.MOVE:
        if not op.original_path:
            return False, "Move record has no original path"
        original = Path(op.original_path)
        if not target.exists():
            return False, f"{target} no longer exists"
        if original.exists():
            return False, f"{original} already exists"
        original.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(target), str(original))
        return True, f"Moved {target} back to {original}"

    if op.kind is OperationKind.DELETE:
        if not op.backup_path:
            return False, f"Delete of {target} has no backup; not undoable"
        backup = Path(op.backup_path)
        if not backup.exists():
            return False, f"Backup {backup} is missing"
        if target.exists():
            return False, f"{target} already exists"
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(backup), str(target))
        return True, f"Restored {target} from backup"

    return False, f"Unknown operation kind: {op.kind}"


class UndoHistory:
    """Bounded ring buffer of reversible operations, optionally persisted."""

    def __init__(self, path: Path | str | None = None, capacity: int = 50):
        self.path = Path(path).expanduser() if path else None
        self.capacity = max(1, int(capacity))
        self._lock = threading.Lock()
        self._memory: list[ReversibleOperation] = []

    def _load(self) -> list[ReversibleOperation]:
        if self.path is None:
            return list(self._memory)
        stored = read_json(self.path, [])
        if not isinstance(stored, list):
            return []
        ops: list[ReversibleOperation] = []
        for raw in stored:
            try:
                ops.append(ReversibleOperation.model_validate(raw))
            except PydanticValidationError:
                continue
        return ops

    def _store(self, ops: list[ReversibleOperation]) -> None:
        ops = ops[-self.capacity:]
        self._memory = ops
        if self.path is not None:
            write_json_atomic(self.path, [op.model_dump(mode="json") for op in ops])

    def _locked(self):
        return file_lock(self.path) if self.path is not None else nullcontext()

    def record(self, op: ReversibleOperation) -> None:
        """Append one operation, evicting the oldest past capacity."""
        with self._lock:
            try:
                with self._locked():
                    ops = self._load()
                    ops.append(op)
                    self._store(ops)
            except (OSError, TimeoutError) as e:
                log.warning("Undo history persistence failed", error=str(e))

    def entries(self) -> list[ReversibleOperation]:
        with self._lock:
            return self._load()

    def undo(self, count: int = 1) -> list[UndoOutcome]:
        """Invert up to ``count`` of the newest operations not yet undone."""
        outcomes: list[UndoOutcome] = []
        with self._lock:
            try:
                with self._locked():
                    ops = self._load()
                    pending = [op for op in reversed(ops) if not op.undone][: max(0, count)]
                    for op in pending:
                        try:
                            ok, message = _invert(op)
                        except OSError as e:
                            ok, message = False, str(e)
                        if ok:
                            op.undone = True
                        log.info("Undo", kind=op.kind.value, target=op.target_path, success=ok)
                        outcomes.append(UndoOutcome(operation=op.model_copy(), success=ok, message=message))
                    try:
                        self._store(ops)
                    except OSError as e:
                        log.warning("Undo history persistence failed", error=str(e))
            except OSError as e:
                # Lock timeout or unreadable history: nothing was inverted.
                log.warning("Undo history unavailable", error=str(e))
        return outcomes
