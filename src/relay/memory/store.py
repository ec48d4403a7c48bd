"""Durable storage for conversation sessions and remembered notes."""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, List, Mapping, Optional, Sequence

from ..models.messages import Message, message_from_dict, message_to_dict
from .schema import MemoryNote, Session, utc_now

DEFAULT_DB_PATH = Path("data/relay.sqlite")
MAX_MEMORY_NOTES = 20
MEMORY_HEADER = "## User Context from Memory"
LOGGER = logging.getLogger(__name__)


def _as_iso(timestamp: datetime) -> str:
    """Serialise a timestamp to a timezone-aware ISO 8601 string."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat()


def _from_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


class HistoryStore:
    """SQLite-backed persistence for sessions, their messages, and memory notes."""

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: Optional[sqlite3.Connection] = self._open_connection()
        self._bootstrap()

    def close(self) -> None:
        if getattr(self, "_conn", None) is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

    def __enter__(self) -> "HistoryStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "HistoryStore":
        paths = config.get("paths") or {}
        db_path = paths.get("db_path")
        if db_path:
            return cls(Path(db_path))
        data_path = paths.get("data") or "data"
        return cls(Path(data_path) / "relay.sqlite")

    def _open_connection(self) -> sqlite3.Connection:
        connection = sqlite3.connect(str(self.db_path))
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    def _bootstrap(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                session_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                payload TEXT NOT NULL,
                PRIMARY KEY(session_id, position),
                FOREIGN KEY(session_id) REFERENCES sessions(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS memories (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                content TEXT NOT NULL,
                created_at TEXT NOT NULL
            );
            """
        )
        self._conn.commit()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            yield self._conn
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    # Session operations --------------------------------------------------------------
    def save_history(self, session_id: str, messages: Sequence[Message], *, title: str = "") -> Session:
        """Replace the stored messages of ``session_id`` with ``messages``."""
        now = _as_iso(utc_now())
        if not title:
            title = next((message.text for message in messages if message.text), "")[:80]
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO sessions (id, title, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title = CASE WHEN excluded.title != '' THEN excluded.title ELSE sessions.title END,
                    updated_at = excluded.updated_at
                """,
                (session_id, title, now, now),
            )
            self._conn.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
            self._conn.executemany(
                "INSERT INTO messages (session_id, position, payload) VALUES (?, ?, ?)",
                [
                    (session_id, position, json.dumps(message_to_dict(message)))
                    for position, message in enumerate(messages)
                ],
            )
        LOGGER.debug("Saved %d message(s) for session %s", len(messages), session_id)
        session = self.get_session(session_id)
        assert session is not None
        return session

    def load_history(self, session_id: str) -> List[Message]:
        cursor = self._conn.execute(
            "SELECT payload FROM messages WHERE session_id = ? ORDER BY position ASC", (session_id,)
        )
        return [message_from_dict(json.loads(row["payload"])) for row in cursor.fetchall()]

    def get_session(self, session_id: str) -> Optional[Session]:
        cursor = self._conn.execute(
            """
            SELECT s.*, (SELECT COUNT(*) FROM messages m WHERE m.session_id = s.id) AS message_count
            FROM sessions s WHERE s.id = ?
            """,
            (session_id,),
        )
        row = cursor.fetchone()
        return self._row_to_session(row) if row else None

    def list_sessions(self) -> List[Session]:
        cursor = self._conn.execute(
            """
            SELECT s.*, (SELECT COUNT(*) FROM messages m WHERE m.session_id = s.id) AS message_count
            FROM sessions s ORDER BY s.updated_at DESC, s.id ASC
            """
        )
        return [self._row_to_session(row) for row in cursor.fetchall()]

    def delete_history(self, session_id: str) -> bool:
        with self._transaction():
            cursor = self._conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        return cursor.rowcount > 0

    # Memory operations ---------------------------------------------------------------
    def remember(self, content: str) -> MemoryNote:
        note = MemoryNote(content=content.strip())
        if not note.content:
            raise ValueError("Memory note must not be empty.")
        with self._transaction():
            cursor = self._conn.execute(
                "INSERT INTO memories (content, created_at) VALUES (?, ?)",
                (note.content, _as_iso(note.created_at)),
            )
        note.id = cursor.lastrowid
        return note

    def list_memories(self, limit: Optional[int] = None) -> List[MemoryNote]:
        query = "SELECT * FROM memories ORDER BY id DESC"
        params: tuple[Any, ...] = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        cursor = self._conn.execute(query, params)
        return [
            MemoryNote(id=row["id"], content=row["content"], created_at=_from_iso(row["created_at"]))
            for row in cursor.fetchall()
        ]

    def summarized_memory(self, limit: int = MAX_MEMORY_NOTES) -> str:
        """Markdown bullets of the most recent notes, newest first; empty when none exist."""
        notes = self.list_memories(limit=limit)
        if not notes:
            return ""
        bullets = "\n".join(f"- {note.content}" for note in notes)
        return f"{MEMORY_HEADER}\n{bullets}"

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> Session:
        return Session(
            id=row["id"],
            title=row["title"],
            message_count=row["message_count"],
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
        )


__all__ = ["DEFAULT_DB_PATH", "HistoryStore", "MAX_MEMORY_NOTES", "MEMORY_HEADER"]
