"""Conversation store for llm-selectassistant.

Durable storage of sessions and messages in SQLite via sqlite_utils.

Tables:
    sessions(id, title, created_at)
    messages(id, session_id -> sessions.id, role, content, created_at)

Read operations degrade to empty results when the database is unavailable;
write operations raise StorageUnavailableError.
"""

import logging
import sqlite3
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, List, Optional

import sqlite_utils

from .config import DEFAULT_SESSION_TITLE, SESSION_TITLE_LENGTH
from .errors import StorageUnavailableError
from .xdg import get_db_path

logger = logging.getLogger(__name__)

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_SYSTEM = "system"
PERSISTED_ROLES = (ROLE_USER, ROLE_ASSISTANT)

SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id INTEGER NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY(session_id) REFERENCES sessions(id)
);

CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id, id);
"""


@dataclass
class Session:
    """A named conversation thread."""
    id: int
    title: str
    created_at: str

    def to_dict(self) -> dict:
        return asdict(self)


def derive_title(text: Optional[str]) -> str:
    """Session title from the first characters of a user message."""
    title = (text or "")[:SESSION_TITLE_LENGTH]
    return title or DEFAULT_SESSION_TITLE


class ConversationStore:
    """Owns the sessions/messages tables and their schema lifecycle."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = db_path or get_db_path()
        self._db: Optional[sqlite_utils.Database] = None

    @property
    def db(self) -> sqlite_utils.Database:
        """Open the database lazily.

        Raises:
            StorageUnavailableError: If the database cannot be opened
        """
        if self._db is None:
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                db = sqlite_utils.Database(self.db_path)
                db.execute("PRAGMA foreign_keys = ON")
            except (sqlite3.Error, OSError) as e:
                raise StorageUnavailableError(f"Cannot open {self.db_path}: {e}") from e
            self._db = db
        return self._db

    def ensure_schema(self) -> None:
        """Create the tables, resetting them if the message schema is outdated.

        IRREVERSIBLE: when the probe for messages.session_id fails, both
        tables are dropped and recreated empty. Existing rows are lost.
        """
        db = self.db
        try:
            try:
                if "messages" in db.table_names():
                    db.execute("SELECT session_id FROM messages LIMIT 1").fetchall()
            except sqlite3.OperationalError:
                logger.warning("Migrating database schema (dropping sessions and messages)")
                with db.conn:
                    db.execute("DROP TABLE IF EXISTS messages")
                    db.execute("DROP TABLE IF EXISTS sessions")
            db.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise StorageUnavailableError(f"Schema setup failed: {e}") from e

    def close(self) -> None:
        if self._db is not None:
            self._db.close()
            self._db = None

    # Reads

    def list_sessions(self) -> List[Session]:
        """Sessions ordered most recent first."""
        try:
            rows = self.db["sessions"].rows_where(
                order_by="created_at DESC, id DESC",
                select="id, title, created_at",
            )
            return [
                Session(id=row["id"], title=row["title"] or DEFAULT_SESSION_TITLE,
                        created_at=row["created_at"] or "")
                for row in rows
            ]
        except (sqlite3.Error, StorageUnavailableError) as e:
            logger.warning("list_sessions failed: %s", e)
            return []

    def get_history(self, session_id: Optional[int]) -> List[Dict[str, str]]:
        """Messages of a session as [{role, content}] in insertion order."""
        if not session_id:
            return []
        try:
            rows = self.db["messages"].rows_where(
                "session_id = ?", [session_id],
                order_by="id",
                select="role, content",
            )
            return [{"role": row["role"], "content": row["content"]} for row in rows]
        except (sqlite3.Error, StorageUnavailableError) as e:
            logger.warning("get_history(%s) failed: %s", session_id, e)
            return []

    def session_exists(self, session_id: int) -> bool:
        try:
            return bool(self.db.execute(
                "SELECT 1 FROM sessions WHERE id = ?", [session_id]
            ).fetchone())
        except (sqlite3.Error, StorageUnavailableError):
            return False

    # Writes

    def create_session(self, title: Optional[str] = None) -> int:
        """Insert a session and return its id."""
        try:
            with self.db.conn:
                cursor = self.db.execute(
                    "INSERT INTO sessions (title) VALUES (?)",
                    [title or DEFAULT_SESSION_TITLE],
                )
            session_id = cursor.lastrowid
        except sqlite3.Error as e:
            raise StorageUnavailableError(f"Could not create session: {e}") from e
        logger.debug("Created session %s", session_id)
        return session_id

    def add_message(self, session_id: int, role: str, content: str) -> int:
        """Append a message to a session and return its id.

        Fails if the session does not exist (foreign key).
        """
        if role not in PERSISTED_ROLES:
            raise ValueError(f"Role {role!r} is not persisted")
        try:
            with self.db.conn:
                cursor = self.db.execute(
                    "INSERT INTO messages (session_id, role, content) VALUES (?, ?, ?)",
                    [session_id, role, content],
                )
            return cursor.lastrowid
        except sqlite3.Error as e:
            raise StorageUnavailableError(
                f"Could not save {role} message for session {session_id}: {e}"
            ) from e

    def delete_session(self, session_id: int) -> None:
        """Delete a session and all its messages."""
        try:
            with self.db.conn:
                self.db.execute("DELETE FROM messages WHERE session_id = ?", [session_id])
                self.db.execute("DELETE FROM sessions WHERE id = ?", [session_id])
        except sqlite3.Error as e:
            raise StorageUnavailableError(f"Could not delete session {session_id}: {e}") from e

    def clear_all(self) -> None:
        """Delete every session and message."""
        try:
            with self.db.conn:
                self.db.execute("DELETE FROM messages")
                self.db.execute("DELETE FROM sessions")
        except sqlite3.Error as e:
            raise StorageUnavailableError(f"Could not clear history: {e}") from e
