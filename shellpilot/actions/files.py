"""File actions. Every write records how to invert itself."""

import asyncio
import glob
import shutil
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from shellpilot.actions.registry import Action, ActionResult
from shellpilot.audit import OperationKind, ReversibleOperation
from shellpilot.logging import get_logger

log = get_logger(__name__)

MAX_READ_BYTES = 100_000


class _FileAction(Action):
    """Shared path resolution against a root directory."""

    def __init__(self, root: Path | str | None = None):
        self.root = Path(root).expanduser().resolve() if root else Path.cwd().resolve()

    def resolve(self, path: str) -> Path:
        requested = Path(str(path)).expanduser()
        if not requested.is_absolute():
            requested = self.root / requested
        return requested.resolve()


class ReadFileAction(_FileAction):
    """Read file contents."""

    name = "read_file"
    description = "Read the contents of a text file."
    parameters = {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Path to the file to read"},
            "limit": {"type": "number", "description": "Maximum number of lines to read"},
            "offset": {"type": "number", "description": "Line number to start from (1-indexed)"},
        },
        "required": ["path"],
    }

    async def execute(self, path: str, limit: int | None = None, offset: int | None = None, **kwargs: Any) -> ActionResult:
        file_path = self.resolve(path)
        if not file_path.is_file():
            return ActionResult(success=False, error=f"File not found: {path}")
        file_size = file_path.stat().st_size
        if file_size > MAX_READ_BYTES:
            return ActionResult(
                success=False,
                error=f"File too large: {file_size} bytes (max {MAX_READ_BYTES})",
            )

        lines = file_path.read_text(encoding="utf-8", errors="replace").splitlines()
        if offset:
            lines = lines[int(offset) - 1:]
        if limit:
            lines = lines[: int(limit)]
        content = "\n".join(lines)
        return ActionResult(success=True, output=f"[{file_path} {len(content)} chars]\n{content}")


class ListFilesAction(_FileAction):
    """Find files by pattern."""

    name = "list_files"
    description = "List files matching a glob pattern."
    parameters = {
        "type": "object",
        "properties": {
            "pattern": {"type": "string", "description": "Glob pattern (e.g. '**/*.py')"},
            "limit": {"type": "number", "description": "Maximum number of results (default 100)"},
        },
        "required": ["pattern"],
    }

    async def execute(self, pattern: str, limit: int = 100, **kwargs: Any) -> ActionResult:
        full_pattern = str(self.resolve(pattern)) if not Path(pattern).is_absolute() else pattern
        loop = asyncio.get_running_loop()
        matches = await loop.run_in_executor(None, lambda: sorted(glob.glob(full_pattern, recursive=True)))
        matches = matches[: max(1, int(limit))]
        if not matches:
            return ActionResult(success=True, output=f"No files found matching: {pattern}")
        return ActionResult(
            success=True,
            output=f"Found {len(matches)} file(s):\n" + "\n".join(f"  {m}" for m in matches),
        )


class CreateFileAction(_FileAction):
    """Create a new file; refuses to overwrite so undo can simply remove it."""

    name = "create_file"
    description = "Create a new file with content. Fails if the file exists."
    parameters = {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Path of the new file"},
            "content": {"type": "string", "description": "File content"},
        },
        "required": ["path", "content"],
    }

    async def execute(self, path: str, content: str, **kwargs: Any) -> ActionResult:
        file_path = self.resolve(path)
        if file_path.exists():
            return ActionResult(success=False, error=f"Already exists: {file_path}")
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_text(str(content), encoding="utf-8")
        log.info("Created file", path=str(file_path))
        return ActionResult(
            success=True,
            output=f"Written {len(str(content))} chars to {file_path}",
            reversible=ReversibleOperation(kind=OperationKind.CREATE, target_path=str(file_path)),
        )


class CopyFileAction(_FileAction):
    """Copy a file to a path that does not exist yet."""

    name = "copy_file"
    description = "Copy a file to a new path."
    parameters = {
        "type": "object",
        "properties": {
            "source": {"type": "string", "description": "Existing file"},
            "destination": {"type": "string", "description": "New file path"},
        },
        "required": ["source", "destination"],
    }

    async def execute(self, source: str, destination: str, **kwargs: Any) -> ActionResult:
        src = self.resolve(source)
        dst = self.resolve(destination)
        if not src.is_file():
            return ActionResult(success=False, error=f"File not found: {source}")
        if dst.exists():
            return ActionResult(success=False, error=f"Already exists: {dst}")
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dst)
        return ActionResult(
            success=True,
            output=f"Copied {src} -> {dst}",
            reversible=ReversibleOperation(
                kind=OperationKind.COPY,
                target_path=str(dst),
                original_path=str(src),
            ),
        )


class MoveFileAction(_FileAction):
    """Move or rename a file."""

    name = "move_file"
    description = "Move or rename a file."
    parameters = {
        "type": "object",
        "properties": {
            "source": {"type": "string", "description": "Existing file"},
            "destination": {"type": "string", "description": "New path"},
        },
        "required": ["source", "destination"],
    }

    async def execute(self, source: str, destination: str, **kwargs: Any) -> ActionResult:
        src = self.resolve(source)
        dst = self.resolve(destination)
        if not src.exists():
            return ActionResult(success=False, error=f"Not found: {source}")
        if dst.exists():
            return ActionResult(success=False, error=f"Already exists: {dst}")
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(src), str(dst))
        return ActionResult(
            success=True,
            output=f"Moved {src} -> {dst}",
            reversible=ReversibleOperation(
                kind=OperationKind.MOVE,
                target_path=str(dst),
                original_path=str(src),
            ),
        )


class DeleteFileAction(_FileAction):
    """Delete a file, moving it into the backup directory when one is configured."""

    name = "delete_file"
    description = "Delete a file. A backup is kept so the deletion can be undone."
    parameters = {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "File to delete"},
        },
        "required": ["path"],
    }

    def __init__(self, root: Path | str | None = None, backup_dir: Path | str | None = None):
        super().__init__(root)
        self.backup_dir = Path(backup_dir).expanduser() if backup_dir else None

    async def execute(self, path: str, **kwargs: Any) -> ActionResult:
        file_path = self.resolve(path)
        if not file_path.is_file():
            return ActionResult(success=False, error=f"File not found: {path}")

        backup_path: Path | None = None
        if self.backup_dir is not None:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
            backup_path = self.backup_dir / f"{stamp}-{uuid.uuid4().hex[:8]}-{file_path.name}"
            shutil.move(str(file_path), str(backup_path))
        else:
            file_path.unlink()

        note = f" (backup: {backup_path})" if backup_path else " (no backup)"
        return ActionResult(
            success=True,
            output=f"Deleted {file_path}{note}",
            reversible=ReversibleOperation(
                kind=OperationKind.DELETE,
                target_path=str(file_path),
                backup_path=str(backup_path) if backup_path else None,
            ),
        )
