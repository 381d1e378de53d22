import json
from datetime import UTC, datetime, timedelta

import pytest

from shellpilot.config import Config
from shellpilot.agent import AgentLoop
from shellpilot.cron import to_utc_iso
from shellpilot.exceptions import StorageError
from shellpilot.heartbeat import (
    HeartbeatTask,
    add_task,
    due_tasks,
    heartbeat_once,
    load_tasks,
    run_due_tasks,
    save_tasks,
)
from shellpilot.llm import Completion, LLMProvider, empty_usage
from shellpilot.runtime import Runtime

NOW = datetime(2026, 1, 5, 9, 30, tzinfo=UTC)


class ScriptedProvider(LLMProvider):
    name = "scripted"
    model = "scripted-1"

    def __init__(self, replies, default="still working on it"):
        self.replies = list(replies)
        self.default = default
        self.goals: list[str] = []

    async def complete(self, messages, system_prompt=None, model=None, temperature=None,
                       max_tokens=None, stream=False, on_delta=None):
        self.goals.append(messages[-1].content)
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, Exception):
            raise reply
        return Completion(content=reply, model=self.model, usage=empty_usage())


def _config(tmp_path) -> Config:
    cfg = Config()
    cfg.heartbeat.tasks_path = str(tmp_path / "tasks.json")
    cfg.heartbeat.max_steps = 2
    cfg.session.path = str(tmp_path / "sessions.db")
    cfg.session.legacy_dir = ""
    cfg.execution.rate_limit_state_path = ""
    cfg.execution.audit_log_path = str(tmp_path / "audit.json")
    cfg.execution.undo_history_path = str(tmp_path / "undo.json")
    cfg.execution.backup_dir = str(tmp_path / "backups")
    return cfg


def test_add_task_appends_to_file(tmp_path):
    path = tmp_path / "tasks.json"
    add_task(path, HeartbeatTask.create("check disk usage", "every 15m"))
    add_task(path, HeartbeatTask.create("summarize logs", "weekly mon,fri 18:30"))

    tasks = load_tasks(path)

    assert [t.goal for t in tasks] == ["check disk usage", "summarize logs"]
    assert tasks[0].schedule_text == "every 15m"
    assert tasks[1].schedule_text == "weekly mon,fri 18:30"
    assert tasks[0].id != tasks[1].id


def test_load_tasks_missing_file_and_invalid_entries(tmp_path):
    path = tmp_path / "tasks.json"
    assert load_tasks(path) == []

    path.write_text(
        json.dumps([{"goal": "ok", "schedule": {"type": "daily", "hour": 9, "minute": 0}}, {"schedule": 3}]),
        encoding="utf-8",
    )
    tasks = load_tasks(path)

    assert len(tasks) == 1
    assert tasks[0].goal == "ok"


def test_create_rejects_bad_schedule():
    with pytest.raises(ValueError):
        HeartbeatTask.create("x", "hourly")


def test_due_tasks_filters_disabled_and_recent():
    fresh = HeartbeatTask.create("never ran", "every 15m")
    recent = HeartbeatTask.create("ran recently", "every 15m")
    recent.last_run_at = to_utc_iso(NOW - timedelta(minutes=5))
    stale = HeartbeatTask.create("ran long ago", "every 15m")
    stale.last_run_at = to_utc_iso(NOW - timedelta(minutes=20))
    disabled = HeartbeatTask.create("disabled", "every 15m")
    disabled.enabled = False

    due = due_tasks([fresh, recent, stale, disabled], NOW)

    assert [t.goal for t in due] == ["never ran", "ran long ago"]


def test_due_tasks_skips_broken_schedule():
    broken = HeartbeatTask(goal="broken", schedule={"type": "weekly", "days": [], "hour": 9, "minute": 0})
    assert due_tasks([broken], NOW) == []


@pytest.mark.asyncio
async def test_run_due_tasks_records_outcome(tmp_path):
    cfg = _config(tmp_path)
    due = HeartbeatTask.create("check disk usage", "every 15m")
    idle = HeartbeatTask.create("later", "every 1h")
    idle.last_run_at = to_utc_iso(NOW - timedelta(minutes=10))
    save_tasks(cfg.heartbeat.tasks_path, [due, idle])

    provider = ScriptedProvider(["DONE: disk is 40% full"])
    runtime = Runtime.from_config(cfg, provider=provider, root=tmp_path)
    try:
        ran = await run_due_tasks(runtime, NOW)
    finally:
        await runtime.close()

    assert [t.id for t in ran] == [due.id]
    assert provider.goals == ["GOAL: check disk usage"]

    stored = {t.id: t for t in load_tasks(cfg.heartbeat.tasks_path)}
    assert stored[due.id].last_run_at == to_utc_iso(NOW)
    assert stored[due.id].last_result == "done: disk is 40% full"
    assert stored[due.id].last_success is True
    assert stored[idle.id].last_run_at == idle.last_run_at
    assert stored[idle.id].last_result is None

    # the same moment is no longer due
    assert due_tasks(list(stored.values()), NOW) == []


@pytest.mark.asyncio
async def test_run_due_tasks_honours_heartbeat_step_limit(tmp_path):
    cfg = _config(tmp_path)
    cfg.agent.free_nudges = 0
    task = HeartbeatTask.create("loop forever", "daily 09:00")
    save_tasks(cfg.heartbeat.tasks_path, [task])

    runtime = Runtime.from_config(cfg, provider=ScriptedProvider([]), root=tmp_path)
    try:
        ran = await run_due_tasks(runtime, NOW)
    finally:
        await runtime.close()

    assert ran[0].last_success is False
    assert ran[0].last_result.startswith("aborted: Stopped at the step limit (2)")


@pytest.mark.asyncio
async def test_unreadable_provider_reply_does_not_stop_the_batch(tmp_path):
    cfg = _config(tmp_path)
    cfg.retry.max_attempts = 1
    first = HeartbeatTask.create("rotate logs", "every 15m")
    second = HeartbeatTask.create("check disk usage", "every 15m")
    save_tasks(cfg.heartbeat.tasks_path, [first, second])

    provider = ScriptedProvider([TypeError("content is list, not text"), "DONE: disk is fine"])
    runtime = Runtime.from_config(cfg, provider=provider, root=tmp_path)
    try:
        ran = await run_due_tasks(runtime, NOW)
    finally:
        await runtime.close()

    assert [t.id for t in ran] == [first.id, second.id]
    assert ran[0].last_success is False
    assert ran[0].last_result.startswith("aborted: Provider failed")
    assert ran[1].last_success is True


@pytest.mark.asyncio
async def test_task_error_is_recorded_and_later_tasks_still_run(tmp_path, monkeypatch):
    cfg = _config(tmp_path)
    broken = HeartbeatTask.create("sync notes", "every 15m")
    healthy = HeartbeatTask.create("check disk usage", "every 15m")
    save_tasks(cfg.heartbeat.tasks_path, [broken, healthy])
    real_run = AgentLoop.run

    async def flaky_run(self, goal, *args, **kwargs):
        if goal == "sync notes":
            raise StorageError("session database is locked")
        return await real_run(self, goal, *args, **kwargs)

    monkeypatch.setattr(AgentLoop, "run", flaky_run)
    runtime = Runtime.from_config(cfg, provider=ScriptedProvider(["DONE: ok"]), root=tmp_path)
    try:
        ran = await run_due_tasks(runtime, NOW)
    finally:
        await runtime.close()

    stored = {t.id: t for t in load_tasks(cfg.heartbeat.tasks_path)}
    assert stored[broken.id].last_success is False
    assert stored[broken.id].last_result == "error: session database is locked"
    assert stored[healthy.id].last_success is True
    assert len(ran) == 2


@pytest.mark.asyncio
async def test_heartbeat_once_idle_does_not_build_provider(tmp_path, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    cfg = _config(tmp_path)
    cfg.model.provider = "openai"
    cfg.model.api_key = ""

    assert await heartbeat_once(cfg) == 0
