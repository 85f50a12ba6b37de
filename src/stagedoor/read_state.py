"""Per-participant read cursors."""

from __future__ import annotations

from .errors import NotMember
from .models import Participant
from .store import DEFAULT_STORE_TIMEOUT, ConversationStore


async def mark_as_read(
    store: ConversationStore,
    conversation_id: str,
    user_id: str,
    *,
    timeout: float = DEFAULT_STORE_TIMEOUT,
) -> Participant:
    """Move the caller's read cursor to now.

    The cursor only ever moves forward. If the clock reports a time
    earlier than the stored cursor, the stored cursor is kept. A message
    that lands while this runs may be counted as read; that race is
    accepted.

    Raises:
        NotMember: The caller has no active episode (including after leaving).
    """
    now = store.now()
    participant = await store.call(
        store.advance_read_cursor, conversation_id, user_id, now, timeout=timeout
    )
    if participant is None:
        raise NotMember(f"User {user_id} is not a participant of conversation {conversation_id}")
    return participant
