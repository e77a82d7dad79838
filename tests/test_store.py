"""Tests for the SQLite conversation store."""

import logging
import sqlite3

import pytest

from llm_selectassistant.errors import StorageUnavailableError
from llm_selectassistant.store import ConversationStore, derive_title


def _store(tmp_path):
    store = ConversationStore(tmp_path / "chat_history.db")
    store.ensure_schema()
    return store


def test_create_session_and_history_order(tmp_path):
    """Messages come back as role/content pairs in insertion order."""
    store = _store(tmp_path)
    sid = store.create_session("Greeting")

    store.add_message(sid, "user", "hi")
    store.add_message(sid, "assistant", "hello")
    store.add_message(sid, "user", "again")

    assert store.get_history(sid) == [
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello"},
        {"role": "user", "content": "again"},
    ]


def test_list_sessions_most_recent_first(tmp_path):
    """Sessions are listed newest first, ties broken by id."""
    store = _store(tmp_path)
    first = store.create_session("first")
    second = store.create_session("second")

    sessions = store.list_sessions()

    assert [s.id for s in sessions] == [second, first]
    assert sessions[0].title == "second"
    assert sessions[0].created_at


def test_create_session_default_title(tmp_path):
    """A session created without a title is called "New Chat"."""
    store = _store(tmp_path)
    store.create_session()

    assert store.list_sessions()[0].title == "New Chat"


def test_derive_title():
    """Titles are the first 30 characters of the message."""
    assert derive_title("x" * 40) == "x" * 30
    assert derive_title("short") == "short"
    assert derive_title("") == "New Chat"
    assert derive_title(None) == "New Chat"


def test_delete_session_removes_messages(tmp_path):
    """Deleting a session deletes its messages and leaves others alone."""
    store = _store(tmp_path)
    doomed = store.create_session("doomed")
    kept = store.create_session("kept")
    store.add_message(doomed, "user", "bye")
    store.add_message(kept, "user", "stay")

    store.delete_session(doomed)

    assert store.get_history(doomed) == []
    assert not store.session_exists(doomed)
    assert store.get_history(kept) == [{"role": "user", "content": "stay"}]
    count = store.db.execute("SELECT COUNT(*) FROM messages WHERE session_id = ?", [doomed]).fetchone()[0]
    assert count == 0


def test_clear_all(tmp_path):
    """clear_all leaves no sessions and no messages."""
    store = _store(tmp_path)
    sid = store.create_session("a")
    store.add_message(sid, "user", "x")

    store.clear_all()

    assert store.list_sessions() == []
    assert store.db.execute("SELECT COUNT(*) FROM messages").fetchone()[0] == 0


def test_add_message_unknown_session_fails(tmp_path):
    """Messages cannot reference a session that does not exist."""
    store = _store(tmp_path)

    with pytest.raises(StorageUnavailableError):
        store.add_message(999, "user", "orphan")


def test_add_message_rejects_system_role(tmp_path):
    """Only user and assistant messages are persisted."""
    store = _store(tmp_path)
    sid = store.create_session()

    with pytest.raises(ValueError):
        store.add_message(sid, "system", "nope")


def test_ensure_schema_resets_outdated_tables(tmp_path):
    """A messages table without session_id is dropped along with sessions."""
    db_path = tmp_path / "chat_history.db"
    conn = sqlite3.connect(str(db_path))
    conn.execute("CREATE TABLE sessions (id INTEGER PRIMARY KEY, title TEXT)")
    conn.execute("INSERT INTO sessions (title) VALUES ('legacy')")
    conn.execute("CREATE TABLE messages (id INTEGER PRIMARY KEY, role TEXT, content TEXT)")
    conn.execute("INSERT INTO messages (role, content) VALUES ('user', 'old')")
    conn.commit()
    conn.close()

    store = ConversationStore(db_path)
    store.ensure_schema()

    assert store.list_sessions() == []
    sid = store.create_session("fresh")
    store.add_message(sid, "user", "new")
    assert store.get_history(sid) == [{"role": "user", "content": "new"}]


def test_ensure_schema_keeps_current_data(tmp_path):
    """Running the schema setup again does not touch existing rows."""
    store = _store(tmp_path)
    sid = store.create_session("keep")
    store.add_message(sid, "user", "hello")
    store.close()

    reopened = _store(tmp_path)

    assert reopened.get_history(sid) == [{"role": "user", "content": "hello"}]


def test_reads_degrade_when_database_unavailable(tmp_path):
    """Reads return empty results instead of raising; writes raise."""
    # A directory cannot be opened as a database file
    store = ConversationStore(tmp_path)

    assert store.list_sessions() == []
    assert store.get_history(1) == []
    assert store.session_exists(1) is False
    with pytest.raises(StorageUnavailableError):
        store.create_session("x")


def test_get_history_without_session(tmp_path):
    """No session id means no history."""
    store = _store(tmp_path)

    assert store.get_history(None) == []


def test_fresh_database_does_not_log_migration(tmp_path, caplog):
    """Creating the schema from scratch is not reported as a reset."""
    with caplog.at_level(logging.WARNING, logger="llm_selectassistant.store"):
        _store(tmp_path)

    assert "Migrating database schema" not in caplog.text


def test_outdated_schema_logs_migration(tmp_path, caplog):
    """Dropping an outdated schema is logged as a warning."""
    conn = sqlite3.connect(str(tmp_path / "chat_history.db"))
    conn.execute("CREATE TABLE messages (id INTEGER PRIMARY KEY, role TEXT, content TEXT)")
    conn.commit()
    conn.close()

    with caplog.at_level(logging.WARNING, logger="llm_selectassistant.store"):
        _store(tmp_path)

    assert "Migrating database schema" in caplog.text
