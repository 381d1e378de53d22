"""Session persistence with SQLite storage and full-text search."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from shellpilot.context import estimate_message_tokens
from shellpilot.exceptions import StorageError
from shellpilot.llm.base import Message, coerce_message
from shellpilot.logging import get_logger

log = get_logger(__name__)

LEGACY_INDEX = "index.json"
LEGACY_MIGRATED_SUFFIX = ".migrated"
SNIPPET_RADIUS = 60


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


@dataclass
class StoredMessage:
    """A persisted message."""

    role: str  # "system", "user", "assistant"
    content: str
    timestamp: str = field(default_factory=_utcnow_iso)
    token_estimate: int = 0

    def to_message(self) -> Message:
        return Message(role=self.role, content=self.content)


@dataclass
class Session:
    """A conversation session and, when loaded in full, its messages."""

    name: str
    provider: str = ""
    model: str = ""
    system_prompt: str | None = None
    messages: list[StoredMessage] = field(default_factory=list)
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)
    message_count: int = 0

    def transcript(self) -> list[Message]:
        return [m.to_message() for m in self.messages]


@dataclass
class SearchMatch:
    """One keyword hit."""

    session_name: str
    role: str
    snippet: str
    timestamp: str


@dataclass
class MigrationReport:
    """Counts from a one-time legacy import."""

    imported: int = 0
    failed: int = 0
    skipped: bool = False


def _tokenize(text: str) -> list[str]:
    return [token for token in re.findall(r"\w+", text.lower()) if token]


def _build_fts_query(keyword: str) -> str | None:
    """Quote every token so user input cannot inject FTS syntax."""
    tokens = _tokenize(keyword)
    if not tokens:
        return None
    return " ".join(f'"{token}"' for token in tokens)


def make_snippet(content: str, keyword: str, radius: int = SNIPPET_RADIUS) -> str:
    """Bounded excerpt centered on the first occurrence of ``keyword``."""
    text = re.sub(r"\s+", " ", content or "").strip()
    needle = keyword.strip().lower()
    pos = text.lower().find(needle) if needle else -1
    if pos < 0:
        tokens = _tokenize(keyword)
        positions = [p for p in (text.lower().find(t) for t in tokens) if p >= 0]
        pos = min(positions) if positions else -1
    if pos < 0:
        return text[: radius * 2] + ("..." if len(text) > radius * 2 else "")
    start = max(0, pos - radius)
    end = min(len(text), pos + len(needle) + radius)
    return ("..." if start > 0 else "") + text[start:end] + ("..." if end < len(text) else "")


def _to_stored(msg: Any) -> StoredMessage:
    if isinstance(msg, StoredMessage):
        return msg
    if isinstance(msg, dict):
        content = str(msg.get("content", "") or "")
        return StoredMessage(
            role=str(msg.get("role", "user")),
            content=content,
            timestamp=str(msg.get("timestamp") or _utcnow_iso()),
            token_estimate=estimate_message_tokens(content),
        )
    message = coerce_message(msg)
    return StoredMessage(
        role=message.role,
        content=message.content,
        token_estimate=estimate_message_tokens(message.content),
    )


class SessionStore:
    """Sessions and messages in SQLite, with an FTS5 content index.

    The FTS index is kept in sync by triggers; when the SQLite build lacks
    FTS5, search falls back to ``LIKE`` ordered by recency.
    """

    def __init__(self, db_path: Path | str, legacy_dir: Path | str | None = None):
        """Initialize the store.

        Args:
            db_path: SQLite database file
            legacy_dir: Directory holding a flat-file ``index.json`` to import once
        """
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.legacy_dir = Path(legacy_dir).expanduser() if legacy_dir else None
        self._db: aiosqlite.Connection | None = None
        self.fts_enabled = False
        self.last_migration: MigrationReport | None = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        if self._db is not None:
            return self._db
        try:
            db = await aiosqlite.connect(str(self.db_path))
        except (OSError, aiosqlite.Error) as e:
            raise StorageError(f"Cannot open session database {self.db_path}: {e}") from e
        await db.execute("PRAGMA foreign_keys = ON")
        await db.execute("""
            CREATE TABLE IF NOT EXISTS sessions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                provider TEXT NOT NULL DEFAULT '',
                model TEXT NOT NULL DEFAULT '',
                system_prompt TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                message_count INTEGER NOT NULL DEFAULT 0
            )
        """)
        await db.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id INTEGER NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                position INTEGER NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                token_estimate INTEGER NOT NULL DEFAULT 0
            )
        """)
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_sessions_updated_at ON sessions(updated_at)"
        )
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id, position)"
        )
        self.fts_enabled = await self._ensure_fts(db)
        await db.commit()
        self._db = db

        if self.legacy_dir is not None:
            self.last_migration = await self.migrate_legacy(self.legacy_dir)
        return db

    @staticmethod
    async def _ensure_fts(db: aiosqlite.Connection) -> bool:
        """Create the FTS5 table and sync triggers; False if FTS5 is unavailable."""
        try:
            await db.execute("""
                CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts
                USING fts5(content, content='messages', content_rowid='id')
            """)
            await db.execute("""
                CREATE TRIGGER IF NOT EXISTS messages_ai
                AFTER INSERT ON messages BEGIN
                    INSERT INTO messages_fts(rowid, content) VALUES (new.id, new.content);
                END;
            """)
            await db.execute("""
                CREATE TRIGGER IF NOT EXISTS messages_ad
                AFTER DELETE ON messages BEGIN
                    INSERT INTO messages_fts(messages_fts, rowid, content)
                    VALUES ('delete', old.id, old.content);
                END;
            """)
            await db.execute("""
                CREATE TRIGGER IF NOT EXISTS messages_au
                AFTER UPDATE ON messages BEGIN
                    INSERT INTO messages_fts(messages_fts, rowid, content)
                    VALUES ('delete', old.id, old.content);
                    INSERT INTO messages_fts(rowid, content) VALUES (new.id, new.content);
                END;
            """)
            return True
        except aiosqlite.OperationalError as e:
            log.warning("FTS5 unavailable; search will use LIKE", error=str(e))
            return False

    async def save(
        self,
        name: str,
        messages: list[Any],
        metadata: dict[str, Any] | None = None,
    ) -> Session:
        """Create or fully replace the named session.

        Args:
            name: Unique session name
            messages: Messages, dicts or anything with ``role``/``content``
            metadata: Optional ``provider``, ``model``, ``system_prompt``,
                ``created_at`` and ``updated_at``

        Returns:
            The saved session with its messages
        """
        db = await self._ensure_db()
        metadata = metadata or {}
        stored = [_to_stored(m) for m in messages]
        now = _utcnow_iso()
        updated_at = str(metadata.get("updated_at") or now)

        async with db.execute("SELECT id, created_at FROM sessions WHERE name = ?", (name,)) as cursor:
            row = await cursor.fetchone()

        try:
            if row is None:
                created_at = str(metadata.get("created_at") or now)
                cursor = await db.execute(
                    """
                    INSERT INTO sessions (name, provider, model, system_prompt, created_at, updated_at, message_count)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        name,
                        str(metadata.get("provider", "")),
                        str(metadata.get("model", "")),
                        metadata.get("system_prompt"),
                        created_at,
                        updated_at,
                        len(stored),
                    ),
                )
                session_id = cursor.lastrowid
            else:
                session_id, created_at = row[0], row[1]
                await db.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
                await db.execute(
                    """
                    UPDATE sessions
                    SET provider = ?, model = ?, system_prompt = ?, updated_at = ?, message_count = ?
                    WHERE id = ?
                    """,
                    (
                        str(metadata.get("provider", "")),
                        str(metadata.get("model", "")),
                        metadata.get("system_prompt"),
                        updated_at,
                        len(stored),
                        session_id,
                    ),
                )
            await db.executemany(
                """
                INSERT INTO messages (session_id, position, role, content, timestamp, token_estimate)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (session_id, position, m.role, m.content, m.timestamp, m.token_estimate)
                    for position, m in enumerate(stored)
                ],
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        log.debug("Saved session", name=name, messages=len(stored))
        return Session(
            name=name,
            provider=str(metadata.get("provider", "")),
            model=str(metadata.get("model", "")),
            system_prompt=metadata.get("system_prompt"),
            messages=stored,
            created_at=created_at,
            updated_at=updated_at,
            message_count=len(stored),
        )

    async def _load_messages(self, db: aiosqlite.Connection, session_id: int) -> list[StoredMessage]:
        async with db.execute(
            """
            SELECT role, content, timestamp, token_estimate
            FROM messages WHERE session_id = ? ORDER BY position ASC
            """,
            (session_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [StoredMessage(role=r[0], content=r[1], timestamp=r[2], token_estimate=r[3]) for r in rows]

    async def resume(self, name: str | None = None) -> Session | None:
        """Load a session by exact name, or the most recently updated one."""
        db = await self._ensure_db()
        columns = "id, name, provider, model, system_prompt, created_at, updated_at, message_count"
        if name:
            query = f"SELECT {columns} FROM sessions WHERE name = ?"
            params: tuple[Any, ...] = (name,)
        else:
            query = f"SELECT {columns} FROM sessions ORDER BY updated_at DESC, id DESC LIMIT 1"
            params = ()
        async with db.execute(query, params) as cursor:
            row = await cursor.fetchone()
        if not row:
            return None
        return Session(
            name=row[1],
            provider=row[2],
            model=row[3],
            system_prompt=row[4],
            messages=await self._load_messages(db, row[0]),
            created_at=row[5],
            updated_at=row[6],
            message_count=row[7],
        )

    async def list(self, limit: int = 20) -> list[Session]:
        """Recent session metadata, newest first, without messages."""
        db = await self._ensure_db()
        async with db.execute(
            """
            SELECT name, provider, model, system_prompt, created_at, updated_at, message_count
            FROM sessions
            ORDER BY updated_at DESC, id DESC
            LIMIT ?
            """,
            (max(1, int(limit)),),
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            Session(
                name=r[0],
                provider=r[1],
                model=r[2],
                system_prompt=r[3],
                created_at=r[4],
                updated_at=r[5],
                message_count=r[6],
            )
            for r in rows
        ]

    async def search(self, keyword: str, limit: int = 20) -> list[SearchMatch]:
        """Keyword search over message content.

        Ranked by bm25 when FTS5 matches; otherwise substring ``LIKE`` ordered
        by recency.
        """
        keyword = str(keyword or "").strip()
        if not keyword:
            return []
        db = await self._ensure_db()
        limit = max(1, int(limit))
        rows: list[Any] = []

        fts_query = _build_fts_query(keyword) if self.fts_enabled else None
        if fts_query:
            try:
                async with db.execute(
                    """
                    SELECT s.name, m.role, m.content, m.timestamp, bm25(messages_fts) AS rank
                    FROM messages_fts
                    JOIN messages m ON m.id = messages_fts.rowid
                    JOIN sessions s ON s.id = m.session_id
                    WHERE messages_fts MATCH ?
                    ORDER BY rank ASC
                    LIMIT ?
                    """,
                    (fts_query, limit),
                ) as cursor:
                    rows = list(await cursor.fetchall())
            except aiosqlite.OperationalError as e:
                log.debug("FTS search failed; falling back to LIKE search", error=str(e))
                rows = []

        if not rows:
            escaped = keyword.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            async with db.execute(
                """
                SELECT s.name, m.role, m.content, m.timestamp
                FROM messages m
                JOIN sessions s ON s.id = m.session_id
                WHERE m.content LIKE ? ESCAPE '\\'
                ORDER BY m.timestamp DESC, m.id DESC
                LIMIT ?
                """,
                (f"%{escaped}%", limit),
            ) as cursor:
                rows = list(await cursor.fetchall())

        return [
            SearchMatch(session_name=r[0], role=r[1], snippet=make_snippet(r[2], keyword), timestamp=r[3])
            for r in rows
        ]

    async def rename(self, old: str, new: str) -> bool:
        """Rename a session; False if ``old`` is missing or ``new`` is taken."""
        db = await self._ensure_db()
        if not new.strip() or old == new:
            return False
        try:
            cursor = await db.execute(
                "UPDATE sessions SET name = ?, updated_at = ? WHERE name = ?",
                (new, _utcnow_iso(), old),
            )
            await db.commit()
        except aiosqlite.IntegrityError:
            await db.rollback()
            return False
        return cursor.rowcount > 0

    async def delete(self, name: str) -> bool:
        """Delete a session and all of its messages."""
        db = await self._ensure_db()
        async with db.execute("SELECT id FROM sessions WHERE name = ?", (name,)) as cursor:
            row = await cursor.fetchone()
        if not row:
            return False
        await db.execute("DELETE FROM messages WHERE session_id = ?", (row[0],))
        await db.execute("DELETE FROM sessions WHERE id = ?", (row[0],))
        await db.commit()
        log.info("Deleted session", name=name)
        return True

    async def count(self) -> int:
        db = await self._ensure_db()
        async with db.execute("SELECT COUNT(*) FROM sessions") as cursor:
            row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def migrate_legacy(self, legacy_dir: Path | str) -> MigrationReport:
        """Import a flat-file session directory once.

        Runs only when ``legacy_dir/index.json`` exists and the store is
        empty. The index lists ``{"name", "file", ...}`` entries; each file
        holds ``{"messages": [...]}`` or a bare message list. The index is
        renamed afterwards so the import never repeats.
        """
        legacy_dir = Path(legacy_dir).expanduser()
        index_path = legacy_dir / LEGACY_INDEX
        if not index_path.is_file() or await self.count() > 0:
            return MigrationReport(skipped=True)

        try:
            index = json.loads(index_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            log.warning("Legacy session index unreadable", path=str(index_path), error=str(e))
            return MigrationReport(skipped=True)
        if isinstance(index, dict):
            index = index.get("sessions", [])
        if not isinstance(index, list):
            index = []

        report = MigrationReport()
        for entry in index:
            try:
                if not isinstance(entry, dict) or not entry.get("name"):
                    raise ValueError("index entry has no name")
                name = str(entry["name"])
                file_name = str(entry.get("file") or f"{name}.json")
                data = json.loads((legacy_dir / file_name).read_text(encoding="utf-8"))
                raw_messages = data.get("messages", []) if isinstance(data, dict) else data
                if not isinstance(raw_messages, list):
                    raise ValueError("messages is not a list")
                metadata = {
                    key: entry.get(key, data.get(key) if isinstance(data, dict) else None)
                    for key in ("provider", "model", "system_prompt", "created_at", "updated_at")
                }
                await self.save(
                    name,
                    [m for m in raw_messages if isinstance(m, dict)],
                    {k: v for k, v in metadata.items() if v is not None},
                )
                report.imported += 1
            except (OSError, ValueError, TypeError, AttributeError, aiosqlite.Error) as e:
                report.failed += 1
                log.warning("Legacy session import failed", entry=str(entry)[:120], error=str(e))

        try:
            index_path.rename(index_path.with_name(LEGACY_INDEX + LEGACY_MIGRATED_SUFFIX))
        except OSError as e:
            log.warning("Could not mark legacy index as migrated", path=str(index_path), error=str(e))
        log.info("Legacy sessions migrated", imported=report.imported, failed=report.failed)
        return report

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None
