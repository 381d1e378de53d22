"""Scheduled, non-interactive agent runs.

An OS scheduler (cron, launchd, systemd timer) calls ``run_heartbeat()``
periodically. Each call runs whichever persisted tasks are due and writes
their last-run time and result back to the task file.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from shellpilot.config import Config
from shellpilot.cron import is_due, now_local, parse_iso, parse_schedule, schedule_to_text, to_utc_iso
from shellpilot.exceptions import ShellPilotError
from shellpilot.locking import file_lock, read_json, write_json_atomic
from shellpilot.logging import configure_logging, get_logger
from shellpilot.runtime import Runtime

log = get_logger(__name__)

RESULT_PREVIEW_CHARS = 500


class HeartbeatTask(BaseModel):
    """One scheduled goal."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:8])
    goal: str
    schedule: dict[str, Any]
    enabled: bool = True
    last_run_at: str | None = None
    last_result: str | None = None
    last_success: bool | None = None

    @classmethod
    def create(cls, goal: str, schedule_text: str) -> HeartbeatTask:
        return cls(goal=goal, schedule=parse_schedule(schedule_text))

    @property
    def schedule_text(self) -> str:
        return schedule_to_text(self.schedule)

    def last_run(self) -> datetime | None:
        return parse_iso(self.last_run_at) if self.last_run_at else None


def _parse_tasks(raw: Any) -> list[HeartbeatTask]:
    if not isinstance(raw, list):
        return []
    tasks: list[HeartbeatTask] = []
    for item in raw:
        try:
            tasks.append(HeartbeatTask.model_validate(item))
        except PydanticValidationError as e:
            log.warning("Skipping invalid heartbeat task", error=str(e))
    return tasks


def load_tasks(path: Path | str) -> list[HeartbeatTask]:
    """Read the task file; a missing file means no tasks."""
    path = Path(path).expanduser()
    with file_lock(path):
        return _parse_tasks(read_json(path, []))


def save_tasks(path: Path | str, tasks: list[HeartbeatTask]) -> None:
    path = Path(path).expanduser()
    with file_lock(path):
        write_json_atomic(path, [task.model_dump(mode="json") for task in tasks])


def add_task(path: Path | str, task: HeartbeatTask) -> None:
    """Append one task under the file lock."""
    path = Path(path).expanduser()
    with file_lock(path):
        tasks = _parse_tasks(read_json(path, []))
        tasks.append(task)
        write_json_atomic(path, [t.model_dump(mode="json") for t in tasks])


def due_tasks(tasks: list[HeartbeatTask], now: datetime | None = None) -> list[HeartbeatTask]:
    """Enabled tasks whose schedule has a slot since their last run."""
    current = now or now_local()
    due: list[HeartbeatTask] = []
    for task in tasks:
        if not task.enabled:
            continue
        try:
            if is_due(task.schedule, task.last_run(), current):
                due.append(task)
        except ValueError as e:
            log.warning("Bad heartbeat schedule", task=task.id, error=str(e))
    return due


def _record_result(path: Path, task_id: str, ran_at: datetime, result: str, success: bool) -> None:
    """Write one task's outcome back, re-reading so concurrent edits survive."""
    with file_lock(path):
        tasks = _parse_tasks(read_json(path, []))
        for task in tasks:
            if task.id == task_id:
                task.last_run_at = to_utc_iso(ran_at)
                task.last_result = result[:RESULT_PREVIEW_CHARS]
                task.last_success = success
                break
        write_json_atomic(path, [t.model_dump(mode="json") for t in tasks])


async def run_due_tasks(runtime: Runtime, now: datetime | None = None) -> list[HeartbeatTask]:
    """Run every due task through the agent loop without a human present.

    Returns:
        The tasks that ran, with their updated last-run fields
    """
    settings = runtime.config.heartbeat
    path = Path(settings.tasks_path).expanduser()
    current = now or now_local()
    due = due_tasks(load_tasks(path), current)
    if not due:
        log.debug("No heartbeat tasks due")
        return []

    agent = runtime.make_agent(ask_callback=None, auto_confirm=settings.auto_confirm)
    ran: list[HeartbeatTask] = []
    for task in due:
        log.info("Running heartbeat task", task=task.id, schedule=task.schedule_text)
        try:
            result = await agent.run(task.goal, max_steps=settings.max_steps)
        except ShellPilotError as e:
            log.error("Heartbeat task failed", task=task.id, error=str(e))
            outcome, success = f"error: {e}", False
        else:
            outcome, success = f"{result.status}: {result.summary}", result.success
            if result.abort_reason:
                log.warning("Heartbeat task stopped early", task=task.id, reason=result.abort_reason)
        _record_result(path, task.id, current, outcome, success)
        task.last_run_at = to_utc_iso(current)
        task.last_result = outcome[:RESULT_PREVIEW_CHARS]
        task.last_success = success
        ran.append(task)
    return ran


async def heartbeat_once(config: Config) -> int:
    """Run due tasks once. The provider is only built when something is due."""
    if not due_tasks(load_tasks(config.heartbeat.tasks_path)):
        log.debug("Heartbeat idle")
        return 0
    runtime = Runtime.from_config(config, confirm_callback=None, session_name="heartbeat")
    try:
        ran = await run_due_tasks(runtime)
    finally:
        await runtime.close()
    return len(ran)


def run_heartbeat() -> int:
    """No-argument entry point for OS-level periodic triggers.

    Returns:
        Number of tasks run, or -1 when the runtime could not start
    """
    config = Config.load()
    configure_logging(config.logging)
    try:
        return asyncio.run(heartbeat_once(config))
    except ShellPilotError as e:
        log.error("Heartbeat failed", error=str(e))
        return -1
