"""Access checks shared by every conversation operation.

Every predicate reads the store on each call and only looks at active
episodes, so a participant who has been removed loses access on their
very next request.
"""

from __future__ import annotations

from .errors import InvalidOperation, NotFound, NotMember, PermissionDenied
from .models import Active, Conversation, Participant
from .store import DEFAULT_STORE_TIMEOUT, ConversationStore


def _is_active(participant: Participant | None) -> bool:
    return participant is not None and isinstance(participant.state, Active)


async def get_conversation_or_404(
    store: ConversationStore,
    conversation_id: str,
    *,
    timeout: float = DEFAULT_STORE_TIMEOUT,
) -> Conversation:
    """Load a conversation, raising NotFound if it does not exist."""
    conversation = await store.call(store.get_conversation, conversation_id, timeout=timeout)
    if conversation is None:
        raise NotFound(f"Conversation {conversation_id} not found")
    return conversation


async def is_active_participant(
    store: ConversationStore,
    conversation_id: str,
    user_id: str,
    *,
    timeout: float = DEFAULT_STORE_TIMEOUT,
) -> bool:
    participant = await store.call(
        store.get_active_participant, conversation_id, user_id, timeout=timeout
    )
    return _is_active(participant)


async def is_admin(
    store: ConversationStore,
    conversation_id: str,
    user_id: str,
    *,
    timeout: float = DEFAULT_STORE_TIMEOUT,
) -> bool:
    participant = await store.call(
        store.get_active_participant, conversation_id, user_id, timeout=timeout
    )
    return _is_active(participant) and participant.role == "admin"  # type: ignore[union-attr]


async def require_participant(
    store: ConversationStore,
    conversation_id: str,
    user_id: str,
    *,
    timeout: float = DEFAULT_STORE_TIMEOUT,
) -> Participant:
    """Return the user's active episode or raise NotMember."""
    participant = await store.call(
        store.get_active_participant, conversation_id, user_id, timeout=timeout
    )
    if participant is None or not _is_active(participant):
        raise NotMember(f"User {user_id} is not a participant of conversation {conversation_id}")
    return participant


async def require_admin(
    store: ConversationStore,
    conversation_id: str,
    user_id: str,
    *,
    timeout: float = DEFAULT_STORE_TIMEOUT,
) -> Conversation:
    """Check that ``user_id`` may change membership of a group conversation.

    Raises:
        NotFound: The conversation does not exist.
        InvalidOperation: The conversation is a direct chat.
        PermissionDenied: The user is not an active admin.
    """
    conversation = await get_conversation_or_404(store, conversation_id, timeout=timeout)
    if not conversation.is_group():
        raise InvalidOperation(f"Conversation {conversation_id} is not a group")
    if not await is_admin(store, conversation_id, user_id, timeout=timeout):
        raise PermissionDenied(f"User {user_id} is not an admin of conversation {conversation_id}")
    return conversation
