"""Cross-process file locks and atomic JSON persistence."""

import fcntl
import json
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

LOCK_TIMEOUT_SECONDS = 15.0

# flock() is per open file description, so threads in one process also
# exclude each other; the thread lock just avoids busy-polling among them.
_thread_locks: dict[str, threading.Lock] = {}
_thread_locks_guard = threading.Lock()


def _thread_lock_for(path: Path) -> threading.Lock:
    key = str(path)
    with _thread_locks_guard:
        lock = _thread_locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _thread_locks[key] = lock
        return lock


@contextmanager
def file_lock(target: Path | str, timeout_seconds: float = LOCK_TIMEOUT_SECONDS) -> Iterator[None]:
    """Hold an exclusive lock on ``<target>.lock`` shared by every process."""
    lock_path = Path(target).expanduser().with_suffix(Path(target).suffix + ".lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    with _thread_lock_for(lock_path):
        with lock_path.open("a+") as lock_file:
            deadline = time.monotonic() + max(1.0, timeout_seconds)
            while True:
                try:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise TimeoutError(f"Timed out waiting for lock: {lock_path}")
                    time.sleep(0.02)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)


def read_json(path: Path | str, default: Any) -> Any:
    """Read JSON, returning ``default`` when missing or unreadable."""
    file_path = Path(path).expanduser()
    if not file_path.exists():
        return default
    try:
        return json.loads(file_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return default


def write_json_atomic(path: Path | str, data: Any) -> None:
    """Rewrite ``path`` in full via a temp file and ``os.replace``."""
    file_path = Path(path).expanduser()
    file_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{file_path.name}.", dir=str(file_path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(data, handle, ensure_ascii=False, indent=2)
            handle.write("\n")
        os.replace(tmp_name, file_path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise
