"""Conversation store interface and its SQLite implementation.

- ConversationStore: Abstract base class the core depends on
- SqliteStore: SQLite-backed store over ``stagedoor.db``

Store methods are synchronous and return domain models. The async core
never calls them directly; it goes through ``ConversationStore.call``,
which runs the method off the event loop with a timeout and turns
timeouts and transient store failures into ``Unavailable``.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from abc import ABC, abstractmethod
from collections.abc import Callable
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from typing import Any, TypeVar

from . import db
from .errors import AlreadyMember, Unavailable
from .models import (
    Conversation,
    CreatedConversation,
    Message,
    Participant,
    to_timestamp,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Seconds a single store call may take before it surfaces as Unavailable
DEFAULT_STORE_TIMEOUT = 5.0


@dataclass
class StoreInfo:
    """Information about a store instance."""

    store_type: str
    """Type of store, e.g. 'sqlite'."""

    location: str
    """Location description: path or ':memory:'."""


class ConversationStore(ABC):
    """Abstract base class for conversation stores.

    Implementations must make ``insert_participant`` reject a second
    active episode for the same user and make ``end_participant_episode``
    a single compare-and-set on the active admin count. Everything else
    is plain reads and writes.
    """

    #: Executor used by ``call``; None means the loop's default threadpool.
    executor: Executor | None = None

    #: Exception types treated as transient and reported as Unavailable.
    transient_errors: tuple[type[BaseException], ...] = ()

    @abstractmethod
    def get_info(self) -> StoreInfo: ...

    def now(self) -> datetime:
        """Current time as seen by the store."""
        return datetime.now(timezone.utc)

    async def call(
        self,
        fn: Callable[..., T],
        *args: Any,
        timeout: float = DEFAULT_STORE_TIMEOUT,
    ) -> T:
        """Run a synchronous store method off the event loop.

        Raises:
            Unavailable: If the call exceeds ``timeout`` seconds or fails
                with one of ``transient_errors``.
        """
        loop = asyncio.get_running_loop()
        name = getattr(fn, "__name__", repr(fn))
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(self.executor, partial(fn, *args)),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            logger.warning(f"Store call {name} timed out after {timeout}s")
            raise Unavailable(f"Store call {name} timed out") from e
        except self.transient_errors as e:
            logger.warning(f"Store call {name} failed: {e}")
            raise Unavailable(f"Store call {name} failed: {e}") from e

    # --- Conversations ---

    @abstractmethod
    def get_conversation(self, conversation_id: str) -> Conversation | None: ...

    @abstractmethod
    def get_or_create_direct_conversation(
        self, created_by: str, other_user: str
    ) -> CreatedConversation:
        """The pair's direct conversation, created if missing, atomically.

        ``created`` is False when an existing conversation whose active
        participants are exactly these two users was returned.
        """
        ...

    @abstractmethod
    def create_conversation(
        self,
        kind: str,
        created_by: str,
        members: list[tuple[str, str]],
        name: str | None = None,
    ) -> CreatedConversation:
        """Create a conversation with (user_id, role) members in one transaction."""
        ...

    @abstractmethod
    def rename_conversation(self, conversation_id: str, name: str | None) -> Conversation | None: ...

    @abstractmethod
    def list_conversations_for_user(
        self, user_id: str
    ) -> list[tuple[Conversation, Participant]]: ...

    # --- Participants ---

    @abstractmethod
    def get_active_participant(self, conversation_id: str, user_id: str) -> Participant | None: ...

    @abstractmethod
    def list_participants(
        self, conversation_id: str, include_left: bool = False
    ) -> list[Participant]: ...

    @abstractmethod
    def list_active_participations(self, user_id: str) -> list[Participant]:
        """All of a user's active episodes, one per conversation."""
        ...

    @abstractmethod
    def insert_participant(
        self, conversation_id: str, user_id: str, role: str = "member"
    ) -> Participant:
        """Start a new episode.

        Raises:
            AlreadyMember: If the user already has an active episode.
        """
        ...

    @abstractmethod
    def end_participant_episode(self, conversation_id: str, user_id: str) -> Participant | None:
        """End the active episode unless the user is the last active admin.

        Returns None when nothing was updated.
        """
        ...

    @abstractmethod
    def advance_read_cursor(
        self, conversation_id: str, user_id: str, read_at: datetime
    ) -> Participant | None:
        """Move the cursor to ``read_at`` if that is later. None if not a participant."""
        ...

    @abstractmethod
    def set_muted(self, conversation_id: str, user_id: str, muted: bool) -> Participant | None: ...

    # --- Messages ---

    @abstractmethod
    def count_unread(self, conversation_id: str, user_id: str, since: datetime | None) -> int: ...

    @abstractmethod
    def insert_message(
        self,
        conversation_id: str,
        sender_id: str,
        body: str = "",
        created_at: datetime | None = None,
    ) -> Message: ...

    @abstractmethod
    def soft_delete_message(self, message_id: str) -> bool: ...

    def close(self) -> None:
        """Release resources held by the store."""


class SqliteStore(ConversationStore):
    """SQLite-backed conversation store.

    Holds one connection, so calls are serialised on a single worker
    thread.
    """

    transient_errors = (sqlite3.OperationalError,)

    def __init__(
        self,
        conn: sqlite3.Connection,
        location: str = ":memory:",
        clock: Callable[[], datetime] | None = None,
    ):
        """Initialize the store.

        Args:
            conn: An open connection with the schema already initialized
            location: Description of where the data lives (for get_info)
            clock: Optional replacement for the wall clock (tests)
        """
        self._conn: sqlite3.Connection | None = conn
        self._location = location
        self._clock = clock
        self.executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="stagedoor-store")

    @classmethod
    def open(
        cls,
        db_path: str | Path,
        clock: Callable[[], datetime] | None = None,
    ) -> "SqliteStore":
        """Open (and migrate) the database at ``db_path``."""
        conn = db.get_connection(db_path)
        db.init_db_with_conn(conn)
        logger.info(f"Opened SQLite store at {db_path}")
        return cls(conn, location=str(db_path), clock=clock)

    @classmethod
    def in_memory(cls, clock: Callable[[], datetime] | None = None) -> "SqliteStore":
        """Ephemeral store for tests."""
        return cls.open(":memory:", clock=clock)

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Store is closed")
        return self._conn

    def get_info(self) -> StoreInfo:
        return StoreInfo(store_type="sqlite", location=self._location)

    def now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return super().now()

    def _stamp(self) -> str:
        return to_timestamp(self.now())

    def close(self) -> None:
        """Close database connection and stop the worker thread."""
        self.executor.shutdown(wait=False)
        if self._conn:
            self._conn.close()
            self._conn = None

    # --- Conversations ---

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        row = db.get_conversation(conversation_id, conn=self.conn)
        return Conversation.from_row(row) if row else None

    def get_or_create_direct_conversation(
        self, created_by: str, other_user: str
    ) -> CreatedConversation:
        row, created = db.get_or_create_direct_conversation(
            created_by, other_user, created_at=self._stamp(), conn=self.conn
        )
        return CreatedConversation(
            conversation=Conversation.from_row(row),
            participants=[Participant.from_row(p) for p in row["participants"]],
            created=created,
        )

    def create_conversation(
        self,
        kind: str,
        created_by: str,
        members: list[tuple[str, str]],
        name: str | None = None,
    ) -> CreatedConversation:
        row = db.create_conversation(
            kind,
            created_by,
            members,
            name=name,
            created_at=self._stamp(),
            conn=self.conn,
        )
        return CreatedConversation(
            conversation=Conversation.from_row(row),
            participants=[Participant.from_row(p) for p in row["participants"]],
        )

    def rename_conversation(self, conversation_id: str, name: str | None) -> Conversation | None:
        if not db.rename_conversation(
            conversation_id, name, updated_at=self._stamp(), conn=self.conn
        ):
            return None
        return self.get_conversation(conversation_id)

    def list_conversations_for_user(self, user_id: str) -> list[tuple[Conversation, Participant]]:
        result = []
        for row in db.list_conversations_for_user(user_id, conn=self.conn):
            conversation = Conversation.from_row(row)
            participant = Participant.from_row(
                {
                    "episode_id": row["my_episode_id"],
                    "conversation_id": row["conversation_id"],
                    "user_id": user_id,
                    "role": row["my_role"],
                    "joined_at": row["my_joined_at"],
                    "left_at": None,
                    "last_read_at": row["my_last_read_at"],
                    "is_muted": row["my_is_muted"],
                }
            )
            result.append((conversation, participant))
        return result

    # --- Participants ---

    def get_active_participant(self, conversation_id: str, user_id: str) -> Participant | None:
        row = db.get_active_participant(conversation_id, user_id, conn=self.conn)
        return Participant.from_row(row) if row else None

    def list_participants(self, conversation_id: str, include_left: bool = False) -> list[Participant]:
        rows = db.list_participants(conversation_id, include_left=include_left, conn=self.conn)
        return [Participant.from_row(r) for r in rows]

    def list_active_participations(self, user_id: str) -> list[Participant]:
        rows = db.list_active_participations(user_id, conn=self.conn)
        return [Participant.from_row(r) for r in rows]

    def insert_participant(
        self, conversation_id: str, user_id: str, role: str = "member"
    ) -> Participant:
        try:
            row = db.insert_participant(
                conversation_id, user_id, role=role, joined_at=self._stamp(), conn=self.conn
            )
        except sqlite3.IntegrityError as e:
            if "UNIQUE" in str(e):
                raise AlreadyMember(
                    f"User {user_id} is already in conversation {conversation_id}"
                ) from e
            raise
        return Participant.from_row(row)

    def end_participant_episode(self, conversation_id: str, user_id: str) -> Participant | None:
        row = db.end_participant_episode(
            conversation_id, user_id, left_at=self._stamp(), conn=self.conn
        )
        return Participant.from_row(row) if row else None

    def advance_read_cursor(
        self, conversation_id: str, user_id: str, read_at: datetime
    ) -> Participant | None:
        row = db.advance_read_cursor(
            conversation_id, user_id, read_at=to_timestamp(read_at), conn=self.conn
        )
        return Participant.from_row(row) if row else None

    def set_muted(self, conversation_id: str, user_id: str, muted: bool) -> Participant | None:
        row = db.set_participant_muted(conversation_id, user_id, muted, conn=self.conn)
        return Participant.from_row(row) if row else None

    # --- Messages ---

    def count_unread(self, conversation_id: str, user_id: str, since: datetime | None) -> int:
        return db.count_unread_messages(
            conversation_id,
            user_id,
            since=to_timestamp(since) if since else None,
            conn=self.conn,
        )

    def insert_message(
        self,
        conversation_id: str,
        sender_id: str,
        body: str = "",
        created_at: datetime | None = None,
    ) -> Message:
        row = db.insert_message(
            conversation_id,
            sender_id,
            body=body,
            created_at=to_timestamp(created_at) if created_at else self._stamp(),
            conn=self.conn,
        )
        return Message.from_row(row)

    def soft_delete_message(self, message_id: str) -> bool:
        return db.soft_delete_message(message_id, conn=self.conn)
