"""Database layer for stagedoor - SQLite conversations, participants and messages.

This module provides the raw store primitives. Functions take an optional
connection and return plain dicts; ``stagedoor.store`` wraps them in typed
models for the core.

Connection Management:
    # Global thread-local connection (configured by STAGEDOOR_DB)
    init_db()
    conv = create_conversation("group", "alice", [("alice", "admin")])

    # Scoped connection
    with scoped_connection("/path/to/stagedoor.db") as conn:
        init_db_with_conn(conn)
        conv = create_conversation(..., conn=conn)

    # In-memory for testing
    with scoped_connection(":memory:") as conn:
        init_db_with_conn(conn)
        ...

Timestamps are stored as fixed-width UTC ISO-8601 strings (see
``models.to_timestamp``) so that ``<``/``>`` comparisons in SQL follow time
order.
"""

from __future__ import annotations

import os
import sqlite3
import threading
from collections.abc import Callable, Iterable
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from uuid_extensions import uuid7 as make_uuid7

from .metrics import timed_operation
from .models import EPOCH, to_timestamp

# Current schema version (increment when adding migrations)
SCHEMA_VERSION = 2

DEFAULT_DB_PATH = "stagedoor.db"

# Busy timeout in milliseconds before sqlite gives up on a locked database
BUSY_TIMEOUT_MS = 5000

# Thread-local storage for per-thread connections
_local = threading.local()


def _now() -> str:
    return to_timestamp(datetime.now(timezone.utc))


def _configure(conn: sqlite3.Connection, *, wal: bool) -> sqlite3.Connection:
    if wal:
        # WAL mode for better concurrent read/write performance
        conn.execute("PRAGMA journal_mode=WAL")
    conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = sqlite3.Row
    return conn


# --- Connection Management ---


def get_connection(db_path: str | Path | None = None) -> sqlite3.Connection:
    """Get or create a database connection.

    Args:
        db_path: Optional explicit database path. When given, a new
                 connection is created and returned (the caller owns it).
                 ":memory:" creates a private in-memory database.
                 When None, a thread-local connection configured by the
                 STAGEDOOR_DB environment variable is returned.

    Returns:
        SQLite connection with row_factory set to sqlite3.Row.
    """
    if db_path is not None:
        if str(db_path) == ":memory:":
            conn = sqlite3.connect(":memory:", check_same_thread=False)
            return _configure(conn, wal=False)
        conn = sqlite3.connect(str(db_path), check_same_thread=False)
        return _configure(conn, wal=True)

    # Thread-local connection: each thread gets its own connection
    if getattr(_local, "conn", None) is None:
        db_path_env = os.environ.get("STAGEDOOR_DB", DEFAULT_DB_PATH)

        if db_path_env == ":memory:":
            # Shared cache so all threads see the same in-memory database.
            # The name includes the pid so parallel test processes don't collide.
            conn = sqlite3.connect(
                f"file:stagedoor_{os.getpid()}?mode=memory&cache=shared",
                uri=True,
                check_same_thread=False,
            )
            _local.conn = _configure(conn, wal=False)
        else:
            conn = sqlite3.connect(db_path_env, check_same_thread=False)
            _local.conn = _configure(conn, wal=True)

    return _local.conn


@contextmanager
def scoped_connection(db_path: str | Path) -> Iterator[sqlite3.Connection]:
    """Context manager for a connection that is closed on exit.

    Example:
        with scoped_connection("/var/lib/stagedoor/data.db") as conn:
            init_db_with_conn(conn)
    """
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def close_db() -> None:
    """Close the thread-local connection, if any."""
    if getattr(_local, "conn", None) is not None:
        _local.conn.close()
        _local.conn = None


def _get_conn(conn: sqlite3.Connection | None) -> sqlite3.Connection:
    """Helper to get connection - uses provided conn or falls back to thread-local."""
    if conn is not None:
        return conn
    return get_connection()


def _row_to_dict(row: sqlite3.Row | None) -> dict | None:
    if row is None:
        return None
    return dict(row)


def _rows_to_dicts(rows: list) -> list[dict]:
    return [dict(row) for row in rows]


# --- Schema and Migrations ---


def _ensure_schema_version_table(conn: sqlite3.Connection) -> None:
    """Create the schema_version table if it doesn't exist."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            description TEXT
        )
    """)
    conn.commit()


def get_schema_version(conn: sqlite3.Connection | None = None) -> int:
    """Get the current schema version from the database.

    Returns 0 if no migrations have been applied yet.
    """
    conn = _get_conn(conn)
    _ensure_schema_version_table(conn)

    cursor = conn.execute("SELECT MAX(version) FROM schema_version")
    row = cursor.fetchone()
    return row[0] if row and row[0] is not None else 0


def record_migration(conn: sqlite3.Connection, version: int, description: str) -> None:
    """Record that a migration has been applied."""
    conn.execute(
        "INSERT INTO schema_version (version, description) VALUES (?, ?)",
        (version, description),
    )
    conn.commit()


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    cursor = conn.execute(f"PRAGMA table_info({table})")
    columns = [row[1] for row in cursor.fetchall()]
    return column in columns


def _migrate_001_add_is_muted(conn: sqlite3.Connection) -> None:
    """Migration 001: Add is_muted flag to conversation_participants."""
    if not _column_exists(conn, "conversation_participants", "is_muted"):
        conn.execute(
            "ALTER TABLE conversation_participants ADD COLUMN is_muted INTEGER NOT NULL DEFAULT 0"
        )
        conn.commit()


def _migrate_002_active_episode_index(conn: sqlite3.Connection) -> None:
    """Migration 002: Enforce one active episode per (conversation, user)."""
    conn.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS idx_participants_active_episode
            ON conversation_participants(conversation_id, user_id)
            WHERE left_at IS NULL
    """)
    conn.commit()


# Migration registry: (version, description, migration_function)
MIGRATIONS: list[tuple[int, str, Callable[[sqlite3.Connection], None]]] = [
    (1, "Add is_muted to conversation_participants", _migrate_001_add_is_muted),
    (2, "Unique active episode per conversation and user", _migrate_002_active_episode_index),
]


def run_migrations(conn: sqlite3.Connection | None = None) -> list[int]:
    """Run any pending migrations.

    Returns a list of migration versions that were applied.
    """
    conn = _get_conn(conn)
    _ensure_schema_version_table(conn)
    current_version = get_schema_version(conn)
    applied: list[int] = []

    for version, description, migrate_fn in MIGRATIONS:
        if version > current_version:
            try:
                migrate_fn(conn)
                record_migration(conn, version, description)
                applied.append(version)
            except Exception as e:
                raise RuntimeError(f"Migration {version} failed: {e}") from e

    return applied


SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS conversations (
        conversation_id TEXT PRIMARY KEY,
        kind TEXT NOT NULL CHECK (kind IN ('direct', 'group')),
        name TEXT,
        created_by TEXT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS conversation_participants (
        episode_id TEXT PRIMARY KEY,
        conversation_id TEXT NOT NULL
            REFERENCES conversations(conversation_id) ON DELETE CASCADE,
        user_id TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'member' CHECK (role IN ('member', 'admin')),
        joined_at TIMESTAMP NOT NULL,
        left_at TIMESTAMP,
        last_read_at TIMESTAMP,
        is_muted INTEGER NOT NULL DEFAULT 0
    );

    CREATE INDEX IF NOT EXISTS idx_participants_user
        ON conversation_participants(user_id) WHERE left_at IS NULL;
    CREATE INDEX IF NOT EXISTS idx_participants_conversation
        ON conversation_participants(conversation_id, joined_at);

    CREATE TABLE IF NOT EXISTS messages (
        message_id TEXT PRIMARY KEY,
        conversation_id TEXT NOT NULL
            REFERENCES conversations(conversation_id) ON DELETE CASCADE,
        sender_id TEXT NOT NULL,
        body TEXT NOT NULL DEFAULT '',
        created_at TIMESTAMP NOT NULL,
        is_deleted INTEGER NOT NULL DEFAULT 0
    );

    CREATE INDEX IF NOT EXISTS idx_messages_conversation
        ON messages(conversation_id, created_at);
"""


def init_db_with_conn(conn: sqlite3.Connection) -> None:
    """Initialize database schema with an explicit connection."""
    conn.executescript(SCHEMA_SQL)
    conn.commit()
    run_migrations(conn)


def init_db() -> None:
    """Initialize database schema using the thread-local connection."""
    init_db_with_conn(get_connection())


def reset_db(conn: sqlite3.Connection | None = None) -> None:
    """Drop and recreate all tables (for testing)."""
    conn = _get_conn(conn)
    conn.execute("PRAGMA foreign_keys=OFF")
    conn.executescript("""
        DROP TABLE IF EXISTS messages;
        DROP TABLE IF EXISTS conversation_participants;
        DROP TABLE IF EXISTS conversations;
        DROP TABLE IF EXISTS schema_version;
    """)
    conn.commit()
    conn.execute("PRAGMA foreign_keys=ON")
    init_db_with_conn(conn)


# --- Conversation Operations ---

_CONVERSATION_COLUMNS = "conversation_id, kind, name, created_by, created_at, updated_at"
_PARTICIPANT_COLUMNS = (
    "episode_id, conversation_id, user_id, role, joined_at, left_at, last_read_at, is_muted"
)


def _insert_conversation(
    conn: sqlite3.Connection,
    kind: str,
    created_by: str,
    members: Iterable[tuple[str, str]],
    name: str | None,
    now: str,
) -> dict:
    """Insert a conversation and its episodes without committing."""
    conversation_id = str(make_uuid7())
    conn.execute(
        f"""INSERT INTO conversations ({_CONVERSATION_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?)""",
        (conversation_id, kind, name, created_by, now, now),
    )

    participants = []
    for user_id, role in members:
        episode_id = str(make_uuid7())
        conn.execute(
            """INSERT INTO conversation_participants
                   (episode_id, conversation_id, user_id, role, joined_at)
               VALUES (?, ?, ?, ?, ?)""",
            (episode_id, conversation_id, user_id, role, now),
        )
        participants.append(
            {
                "episode_id": episode_id,
                "conversation_id": conversation_id,
                "user_id": user_id,
                "role": role,
                "joined_at": now,
                "left_at": None,
                "last_read_at": None,
                "is_muted": 0,
            }
        )

    return {
        "conversation_id": conversation_id,
        "kind": kind,
        "name": name,
        "created_by": created_by,
        "created_at": now,
        "updated_at": now,
        "participants": participants,
    }


@timed_operation("create_conversation")
def create_conversation(
    kind: str,
    created_by: str,
    members: Iterable[tuple[str, str]],
    name: str | None = None,
    created_at: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Create a conversation and its initial participant episodes.

    Both the conversation row and the episodes are written in one
    transaction; nothing is left behind if an insert fails.

    Args:
        kind: 'direct' or 'group'
        created_by: User ID of the creator
        members: (user_id, role) pairs for the initial participants
        name: Optional group name
        created_at: Creation timestamp (defaults to now)
        conn: Optional database connection

    Returns:
        Conversation dict with an extra "participants" list
    """
    conn = _get_conn(conn)
    try:
        conversation = _insert_conversation(
            conn, kind, created_by, members, name, created_at or _now()
        )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return conversation


@timed_operation("get_or_create_direct_conversation")
def get_or_create_direct_conversation(
    created_by: str,
    other_user: str,
    created_at: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> tuple[dict, bool]:
    """Return the direct conversation between two users, creating it if needed.

    The lookup and the insert run inside one BEGIN IMMEDIATE transaction,
    so the write lock is held from the lookup on and a second caller for
    the same pair waits and then finds the first caller's conversation.

    Returns:
        (conversation dict with "participants", created flag)
    """
    conn = _get_conn(conn)
    if conn.in_transaction:
        conn.commit()

    conn.execute("BEGIN IMMEDIATE")
    try:
        existing = find_direct_conversation(created_by, other_user, conn=conn)
        if existing is not None:
            existing["participants"] = list_participants(
                existing["conversation_id"], conn=conn
            )
            conn.commit()
            return existing, False

        conversation = _insert_conversation(
            conn,
            "direct",
            created_by,
            [(created_by, "member"), (other_user, "member")],
            None,
            created_at or _now(),
        )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return conversation, True


@timed_operation("get_conversation")
def get_conversation(
    conversation_id: str,
    conn: sqlite3.Connection | None = None,
) -> dict | None:
    """Get conversation by ID, or None if not found."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE conversation_id = ?",
        (conversation_id,),
    )
    return _row_to_dict(cursor.fetchone())


def find_direct_conversation(
    user_a: str,
    user_b: str,
    conn: sqlite3.Connection | None = None,
) -> dict | None:
    """Find a direct conversation whose active participants are exactly these two users."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT c.conversation_id, c.kind, c.name, c.created_by, c.created_at, c.updated_at
            FROM conversations c
            WHERE c.kind = 'direct'
              AND EXISTS (SELECT 1 FROM conversation_participants p
                          WHERE p.conversation_id = c.conversation_id
                            AND p.user_id = ? AND p.left_at IS NULL)
              AND EXISTS (SELECT 1 FROM conversation_participants p
                          WHERE p.conversation_id = c.conversation_id
                            AND p.user_id = ? AND p.left_at IS NULL)
              AND (SELECT COUNT(*) FROM conversation_participants p
                   WHERE p.conversation_id = c.conversation_id AND p.left_at IS NULL) = 2
            ORDER BY c.created_at
            LIMIT 1""",
        (user_a, user_b),
    )
    return _row_to_dict(cursor.fetchone())


def rename_conversation(
    conversation_id: str,
    name: str | None,
    updated_at: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> bool:
    """Rename a group conversation. Returns False if no group matched."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        """UPDATE conversations SET name = ?, updated_at = ?
           WHERE conversation_id = ? AND kind = 'group'""",
        (name, updated_at or _now(), conversation_id),
    )
    conn.commit()
    return cursor.rowcount > 0


def _touch_conversation(conn: sqlite3.Connection, conversation_id: str, at: str) -> None:
    conn.execute(
        "UPDATE conversations SET updated_at = ? WHERE conversation_id = ?",
        (at, conversation_id),
    )


# --- Participant Operations ---


@timed_operation("get_active_participant")
def get_active_participant(
    conversation_id: str,
    user_id: str,
    conn: sqlite3.Connection | None = None,
) -> dict | None:
    """Get the active episode for a user in a conversation, or None."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        f"""SELECT {_PARTICIPANT_COLUMNS} FROM conversation_participants
            WHERE conversation_id = ? AND user_id = ? AND left_at IS NULL""",
        (conversation_id, user_id),
    )
    return _row_to_dict(cursor.fetchone())


def list_participants(
    conversation_id: str,
    include_left: bool = False,
    conn: sqlite3.Connection | None = None,
) -> list[dict]:
    """List participant episodes of a conversation, oldest first.

    Args:
        conversation_id: Conversation ID
        include_left: Also return ended episodes
        conn: Optional database connection
    """
    conn = _get_conn(conn)
    query = f"SELECT {_PARTICIPANT_COLUMNS} FROM conversation_participants WHERE conversation_id = ?"
    if not include_left:
        query += " AND left_at IS NULL"
    query += " ORDER BY joined_at, episode_id"
    cursor = conn.execute(query, (conversation_id,))
    return _rows_to_dicts(cursor.fetchall())


@timed_operation("list_active_participations")
def list_active_participations(
    user_id: str,
    conn: sqlite3.Connection | None = None,
) -> list[dict]:
    """List a user's active episodes across all conversations."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        f"""SELECT {_PARTICIPANT_COLUMNS} FROM conversation_participants
            WHERE user_id = ? AND left_at IS NULL
            ORDER BY joined_at""",
        (user_id,),
    )
    return _rows_to_dicts(cursor.fetchall())


def list_conversations_for_user(
    user_id: str,
    conn: sqlite3.Connection | None = None,
) -> list[dict]:
    """List conversations the user is active in, most recently updated first.

    Each row carries the conversation columns plus the caller's episode
    columns prefixed with ``my_``.
    """
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT c.conversation_id, c.kind, c.name, c.created_by, c.created_at, c.updated_at,
                  p.episode_id AS my_episode_id, p.role AS my_role,
                  p.joined_at AS my_joined_at, p.last_read_at AS my_last_read_at,
                  p.is_muted AS my_is_muted
           FROM conversations c
           JOIN conversation_participants p ON p.conversation_id = c.conversation_id
           WHERE p.user_id = ? AND p.left_at IS NULL
           ORDER BY COALESCE(c.updated_at, c.created_at) DESC""",
        (user_id,),
    )
    return _rows_to_dicts(cursor.fetchall())


@timed_operation("insert_participant")
def insert_participant(
    conversation_id: str,
    user_id: str,
    role: str = "member",
    joined_at: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Start a new membership episode.

    Raises:
        sqlite3.IntegrityError: If the user already has an active episode
            (enforced by the partial unique index) or the conversation
            does not exist.
    """
    conn = _get_conn(conn)
    episode_id = str(make_uuid7())
    now = joined_at or _now()

    try:
        conn.execute(
            """INSERT INTO conversation_participants
                   (episode_id, conversation_id, user_id, role, joined_at)
               VALUES (?, ?, ?, ?, ?)""",
            (episode_id, conversation_id, user_id, role, now),
        )
        _touch_conversation(conn, conversation_id, now)
        conn.commit()
    except Exception:
        conn.rollback()
        raise

    return {
        "episode_id": episode_id,
        "conversation_id": conversation_id,
        "user_id": user_id,
        "role": role,
        "joined_at": now,
        "left_at": None,
        "last_read_at": None,
        "is_muted": 0,
    }


@timed_operation("end_participant_episode")
def end_participant_episode(
    conversation_id: str,
    user_id: str,
    left_at: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict | None:
    """End a user's active episode unless that would leave no active admin.

    This is a single conditional UPDATE: the admin count is checked in the
    same statement that sets left_at, so two concurrent removals cannot
    both take the last two admins out.

    Returns:
        The ended episode, or None if no row was updated (either there is
        no active episode or the target is the last active admin).
    """
    conn = _get_conn(conn)
    now = left_at or _now()

    cursor = conn.execute(
        """UPDATE conversation_participants
           SET left_at = ?
           WHERE conversation_id = ? AND user_id = ? AND left_at IS NULL
             AND (role != 'admin'
                  OR (SELECT COUNT(*) FROM conversation_participants a
                      WHERE a.conversation_id = ? AND a.role = 'admin'
                        AND a.left_at IS NULL) > 1)
           RETURNING episode_id""",
        (now, conversation_id, user_id, conversation_id),
    )
    rows = cursor.fetchall()
    if not rows:
        conn.commit()
        return None

    _touch_conversation(conn, conversation_id, now)
    conn.commit()

    cursor = conn.execute(
        f"SELECT {_PARTICIPANT_COLUMNS} FROM conversation_participants WHERE episode_id = ?",
        (rows[0][0],),
    )
    return _row_to_dict(cursor.fetchone())


@timed_operation("advance_read_cursor")
def advance_read_cursor(
    conversation_id: str,
    user_id: str,
    read_at: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict | None:
    """Move a participant's read cursor forward.

    Only updates if the new cursor is ahead of the current one, so the
    cursor never regresses.

    Returns:
        The active episode after the update (which may hold a later
        cursor than ``read_at``), or None if there is no active episode.
    """
    conn = _get_conn(conn)
    now = read_at or _now()

    conn.execute(
        """UPDATE conversation_participants
           SET last_read_at = ?
           WHERE conversation_id = ? AND user_id = ? AND left_at IS NULL
             AND (last_read_at IS NULL OR last_read_at < ?)""",
        (now, conversation_id, user_id, now),
    )
    conn.commit()

    # Re-read: the cursor may already have been ahead
    return get_active_participant(conversation_id, user_id, conn=conn)


def set_participant_muted(
    conversation_id: str,
    user_id: str,
    muted: bool,
    conn: sqlite3.Connection | None = None,
) -> dict | None:
    """Set the mute flag on a user's active episode. Returns it, or None."""
    conn = _get_conn(conn)
    conn.execute(
        """UPDATE conversation_participants SET is_muted = ?
           WHERE conversation_id = ? AND user_id = ? AND left_at IS NULL""",
        (1 if muted else 0, conversation_id, user_id),
    )
    conn.commit()
    return get_active_participant(conversation_id, user_id, conn=conn)


# --- Message Operations ---
# Messages are written by the messaging collaborator; these primitives exist
# so it (and tests) can populate the table the unread counts read from.


def insert_message(
    conversation_id: str,
    sender_id: str,
    body: str = "",
    created_at: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Append a message to a conversation."""
    conn = _get_conn(conn)
    message_id = str(make_uuid7())
    now = created_at or _now()

    conn.execute(
        """INSERT INTO messages (message_id, conversation_id, sender_id, body, created_at)
           VALUES (?, ?, ?, ?, ?)""",
        (message_id, conversation_id, sender_id, body, now),
    )
    _touch_conversation(conn, conversation_id, now)
    conn.commit()

    return {
        "message_id": message_id,
        "conversation_id": conversation_id,
        "sender_id": sender_id,
        "body": body,
        "created_at": now,
        "is_deleted": 0,
    }


def soft_delete_message(
    message_id: str,
    conn: sqlite3.Connection | None = None,
) -> bool:
    """Flag a message as deleted. Returns False if not found."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        "UPDATE messages SET is_deleted = 1 WHERE message_id = ?",
        (message_id,),
    )
    conn.commit()
    return cursor.rowcount > 0


@timed_operation("count_unread_messages")
def count_unread_messages(
    conversation_id: str,
    user_id: str,
    since: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> int:
    """Count messages a user has not read in one conversation.

    Counts messages from other senders that are not deleted and were
    created strictly after ``since`` (the epoch when None).
    """
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT COUNT(*) FROM messages
           WHERE conversation_id = ? AND sender_id != ? AND is_deleted = 0
             AND created_at > ?""",
        (conversation_id, user_id, since or to_timestamp(EPOCH)),
    )
    return cursor.fetchone()[0]
