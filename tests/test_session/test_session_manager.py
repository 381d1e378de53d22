import json

import pytest

from shellpilot.llm import Message
from shellpilot.session import SessionStore, make_snippet


@pytest.mark.asyncio
async def test_session_store_uses_db_path_override(tmp_path):
    db_path = tmp_path / "nested" / "custom-sessions.db"
    store = SessionStore(db_path)
    try:
        await store.save("alpha", [])
        assert db_path.exists()
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_save_and_resume_round_trip(tmp_path):
    store = SessionStore(tmp_path / "sessions.db")
    try:
        messages = [
            Message("user", "hello"),
            {"role": "assistant", "content": "hi there", "timestamp": "2026-01-01T00:00:00+00:00"},
            Message("user", "ünïcode ✓"),
        ]
        await store.save("alpha", messages, {"provider": "openai", "model": "gpt-4o-mini"})

        loaded = await store.resume("alpha")
        assert loaded is not None
        assert loaded.name == "alpha"
        assert loaded.provider == "openai"
        assert loaded.model == "gpt-4o-mini"
        assert loaded.message_count == 3
        assert [(m.role, m.content) for m in loaded.transcript()] == [
            ("user", "hello"),
            ("assistant", "hi there"),
            ("user", "ünïcode ✓"),
        ]
        assert loaded.messages[1].timestamp == "2026-01-01T00:00:00+00:00"
        assert loaded.messages[1].token_estimate == 2
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_save_replaces_messages_and_keeps_created_at(tmp_path):
    store = SessionStore(tmp_path / "sessions.db")
    try:
        first = await store.save("alpha", [Message("user", "one")])
        second = await store.save("alpha", [Message("user", "two"), Message("assistant", "three")])

        loaded = await store.resume("alpha")
        assert [m.content for m in loaded.messages] == ["two", "three"]
        assert second.created_at == first.created_at
        assert await store.count() == 1
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_resume_without_name_returns_most_recent(tmp_path):
    store = SessionStore(tmp_path / "sessions.db")
    try:
        await store.save("one", [Message("user", "a")], {"updated_at": "2026-01-01T00:00:00+00:00"})
        await store.save("two", [Message("user", "b")], {"updated_at": "2026-02-01T00:00:00+00:00"})

        latest = await store.resume()
        assert latest is not None
        assert latest.name == "two"
        assert await store.resume("missing") is None
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_list_sessions_orders_by_last_update(tmp_path):
    store = SessionStore(tmp_path / "sessions.db")
    try:
        await store.save("one", [Message("user", "x")], {"updated_at": "2026-03-01T00:00:00+00:00"})
        await store.save("two", [Message("user", "y")], {"updated_at": "2026-01-01T00:00:00+00:00"})

        sessions = await store.list(limit=10)
        assert [s.name for s in sessions] == ["one", "two"]
        assert sessions[0].messages == []
        assert sessions[0].message_count == 1
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_search_finds_keyword_with_snippet(tmp_path):
    store = SessionStore(tmp_path / "sessions.db")
    try:
        await store.save("deploy", [Message("user", "how do I restart the nginx service on the box?")])
        await store.save("other", [Message("user", "unrelated chatter")])

        matches = await store.search("nginx")
        assert len(matches) == 1
        assert matches[0].session_name == "deploy"
        assert matches[0].role == "user"
        assert "nginx" in matches[0].snippet
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_search_falls_back_to_substring_match(tmp_path):
    store = SessionStore(tmp_path / "sessions.db")
    try:
        await store.save("paths", [Message("assistant", "wrote /var/log/app_2026.log")])

        matches = await store.search("app_20")
        assert [m.session_name for m in matches] == ["paths"]
        assert await store.search("100%") == []
        assert await store.search("   ") == []
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_deleted_session_no_longer_appears_in_search(tmp_path):
    store = SessionStore(tmp_path / "sessions.db")
    try:
        await store.save("secret", [Message("user", "the kumquat plan")])
        assert len(await store.search("kumquat")) == 1

        assert await store.delete("secret") is True
        assert await store.search("kumquat") == []
        assert await store.resume("secret") is None
        assert await store.delete("secret") is False
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_rename_session(tmp_path):
    store = SessionStore(tmp_path / "sessions.db")
    try:
        await store.save("a", [Message("user", "one")])
        await store.save("b", [Message("user", "two")])

        assert await store.rename("a", "c") is True
        assert await store.rename("c", "b") is False
        assert await store.rename("missing", "d") is False
        assert await store.resume("a") is None
        renamed = await store.resume("c")
        assert renamed is not None
        assert renamed.transcript()[0].content == "one"
        assert [m.session_name for m in await store.search("one")] == ["c"]
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_legacy_migration_runs_once_and_tolerates_bad_entries(tmp_path):
    legacy = tmp_path / "legacy"
    legacy.mkdir()
    (legacy / "good.json").write_text(
        json.dumps({"messages": [{"role": "user", "content": "from the old days"}], "model": "m1"}),
        encoding="utf-8",
    )
    (legacy / "bare.json").write_text(
        json.dumps([{"role": "assistant", "content": "bare list"}]),
        encoding="utf-8",
    )
    (legacy / "broken.json").write_text("{not json", encoding="utf-8")
    (legacy / "index.json").write_text(
        json.dumps(
            {
                "sessions": [
                    {"name": "good", "file": "good.json", "provider": "ollama"},
                    {"name": "bare"},
                    {"name": "broken", "file": "broken.json"},
                    {"name": "missing", "file": "missing.json"},
                    {"file": "good.json"},
                ]
            }
        ),
        encoding="utf-8",
    )

    store = SessionStore(tmp_path / "sessions.db", legacy_dir=legacy)
    try:
        assert await store.count() == 2
        report = store.last_migration
        assert report.imported == 2
        assert report.failed == 3
        good = await store.resume("good")
        assert good.provider == "ollama"
        assert good.model == "m1"
        assert good.transcript()[0].content == "from the old days"
        assert (legacy / "index.json.migrated").exists()
        assert not (legacy / "index.json").exists()
    finally:
        await store.close()

    # A second open must not import again.
    (legacy / "index.json.migrated").rename(legacy / "index.json")
    reopened = SessionStore(tmp_path / "sessions.db", legacy_dir=legacy)
    try:
        assert await reopened.count() == 2
        assert reopened.last_migration.skipped is True
    finally:
        await reopened.close()


def test_make_snippet_centers_on_keyword():
    text = "a" * 200 + " needle " + "b" * 200
    snippet = make_snippet(text, "needle", radius=10)
    assert snippet.startswith("...")
    assert snippet.endswith("...")
    assert "needle" in snippet
    assert len(snippet) <= 6 + len("needle") + 20
