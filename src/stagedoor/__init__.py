"""stagedoor - Conversation membership and read-state service.

Usage:
    from stagedoor import (
        SqliteStore,
        add_participant,
        create_conversation,
        get_unread_count,
        mark_as_read,
        remove_participant,
    )

    store = SqliteStore.open("stagedoor.db")

    created = await create_conversation(store, "alice", ["bob", "carol"], name="Crew")
    cid = created.conversation.conversation_id

    await add_participant(store, cid, "alice", "dave")
    await remove_participant(store, cid, "alice", "carol")
    await mark_as_read(store, cid, "bob")
    total = await get_unread_count(store, "dave")

    # Over HTTP
    from stagedoor import Stagedoor

    client = Stagedoor(url="http://localhost:8000", user_id="alice")
    client.get_unread_count()
"""

from stagedoor._version import __version__
from stagedoor.client import Stagedoor
from stagedoor.conversations import (
    create_conversation,
    get_conversation,
    list_conversations,
    rename_conversation,
)
from stagedoor.errors import (
    AlreadyMember,
    ConversationError,
    InvalidOperation,
    LastAdminViolation,
    NotFound,
    NotMember,
    PermissionDenied,
    Unavailable,
)
from stagedoor.membership import (
    add_participant,
    leave_conversation,
    list_participants,
    remove_participant,
    set_muted,
)
from stagedoor.options import StagedoorConfigError, StagedoorOptions
from stagedoor.read_state import mark_as_read
from stagedoor.store import ConversationStore, SqliteStore
from stagedoor.unread import get_unread_count, get_unread_counts

__all__ = [
    "__version__",
    "Stagedoor",
    "StagedoorOptions",
    "StagedoorConfigError",
    "ConversationStore",
    "SqliteStore",
    "ConversationError",
    "PermissionDenied",
    "InvalidOperation",
    "AlreadyMember",
    "NotMember",
    "LastAdminViolation",
    "NotFound",
    "Unavailable",
    "create_conversation",
    "get_conversation",
    "list_conversations",
    "rename_conversation",
    "add_participant",
    "remove_participant",
    "leave_conversation",
    "list_participants",
    "set_muted",
    "mark_as_read",
    "get_unread_count",
    "get_unread_counts",
]
