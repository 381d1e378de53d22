"""Actions package for shellpilot."""

from pathlib import Path

from shellpilot.actions.files import (
    CopyFileAction,
    CreateFileAction,
    DeleteFileAction,
    ListFilesAction,
    MoveFileAction,
    ReadFileAction,
)
from shellpilot.actions.registry import Action, ActionRegistry, ActionResult
from shellpilot.actions.shell import RunCommandAction
from shellpilot.actions.web_fetch import WebFetchAction
from shellpilot.config import ExecutionConfig


def default_actions(settings: ExecutionConfig | None = None, root: Path | str | None = None) -> ActionRegistry:
    """Registry of the built-in side-effecting actions."""
    settings = settings or ExecutionConfig()
    registry = ActionRegistry()
    for action in (
        ReadFileAction(root),
        ListFilesAction(root),
        CreateFileAction(root),
        CopyFileAction(root),
        MoveFileAction(root),
        DeleteFileAction(root, backup_dir=settings.backup_dir),
        RunCommandAction(
            timeout=settings.command_timeout,
            blocked_patterns=settings.blocked_commands,
            cwd=str(root) if root else None,
        ),
        WebFetchAction(),
    ):
        registry.register(action)
    return registry


__all__ = [
    "Action",
    "ActionRegistry",
    "ActionResult",
    "ReadFileAction",
    "ListFilesAction",
    "CreateFileAction",
    "CopyFileAction",
    "MoveFileAction",
    "DeleteFileAction",
    "RunCommandAction",
    "WebFetchAction",
    "default_actions",
]
