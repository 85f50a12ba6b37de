"""Participant lifecycle for group conversations.

Adding and removing people is admin-only; leaving is removal of
yourself and needs no admin rights. A group never loses its last active
admin: the store ends an admin's episode only when another active admin
remains, checked in the same statement that ends it.

Direct conversations have a fixed pair of participants, so every
membership change on them is rejected with InvalidOperation.
"""

from __future__ import annotations

import logging

from .errors import InvalidOperation, LastAdminViolation, NotMember
from .guard import get_conversation_or_404, require_admin, require_participant
from .models import Participant
from .store import DEFAULT_STORE_TIMEOUT, ConversationStore

logger = logging.getLogger(__name__)


async def add_participant(
    store: ConversationStore,
    conversation_id: str,
    acting_user_id: str,
    target_user_id: str,
    *,
    timeout: float = DEFAULT_STORE_TIMEOUT,
) -> Participant:
    """Add ``target_user_id`` to a group as a member.

    The new episode starts unread: its cursor is empty, so everything
    already in the conversation counts as unread until the first
    mark_as_read. A user who left earlier gets a fresh episode.

    Raises:
        NotFound, InvalidOperation, PermissionDenied: from require_admin
        AlreadyMember: the target already has an active episode
    """
    await require_admin(store, conversation_id, acting_user_id, timeout=timeout)

    # The store's unique index rejects a concurrent insert for the same user
    # with AlreadyMember as well, so no pre-check is needed here.
    participant = await store.call(
        store.insert_participant, conversation_id, target_user_id, "member", timeout=timeout
    )
    logger.info(f"{acting_user_id} added {target_user_id} to conversation {conversation_id}")
    return participant


async def remove_participant(
    store: ConversationStore,
    conversation_id: str,
    acting_user_id: str,
    target_user_id: str,
    *,
    timeout: float = DEFAULT_STORE_TIMEOUT,
) -> Participant:
    """End ``target_user_id``'s active episode.

    Removing yourself does not need admin rights. Removing the last
    active admin is refused either way.

    Raises:
        NotFound: The conversation does not exist.
        InvalidOperation: The conversation is a direct chat.
        PermissionDenied: Someone else is removed by a non-admin.
        NotMember: The target has no active episode.
        LastAdminViolation: The target is the only active admin.
    """
    if acting_user_id == target_user_id:
        conversation = await get_conversation_or_404(store, conversation_id, timeout=timeout)
        if not conversation.is_group():
            raise InvalidOperation(f"Cannot leave direct conversation {conversation_id}")
    else:
        await require_admin(store, conversation_id, acting_user_id, timeout=timeout)

    ended = await store.call(
        store.end_participant_episode, conversation_id, target_user_id, timeout=timeout
    )
    if ended is None:
        # Nothing updated: either no active episode, or the last admin guard held
        current = await store.call(
            store.get_active_participant, conversation_id, target_user_id, timeout=timeout
        )
        if current is None:
            raise NotMember(
                f"User {target_user_id} is not a participant of conversation {conversation_id}"
            )
        raise LastAdminViolation(
            f"User {target_user_id} is the last admin of conversation {conversation_id}"
        )

    if acting_user_id == target_user_id:
        logger.info(f"{target_user_id} left conversation {conversation_id}")
    else:
        logger.info(
            f"{acting_user_id} removed {target_user_id} from conversation {conversation_id}"
        )
    return ended


async def leave_conversation(
    store: ConversationStore,
    conversation_id: str,
    user_id: str,
    *,
    timeout: float = DEFAULT_STORE_TIMEOUT,
) -> Participant:
    """Remove yourself from a group conversation."""
    return await remove_participant(store, conversation_id, user_id, user_id, timeout=timeout)


async def list_participants(
    store: ConversationStore,
    conversation_id: str,
    user_id: str,
    include_left: bool = False,
    *,
    timeout: float = DEFAULT_STORE_TIMEOUT,
) -> list[Participant]:
    """List a conversation's participants. Only participants may look."""
    await get_conversation_or_404(store, conversation_id, timeout=timeout)
    await require_participant(store, conversation_id, user_id, timeout=timeout)
    return await store.call(store.list_participants, conversation_id, include_left, timeout=timeout)


async def set_muted(
    store: ConversationStore,
    conversation_id: str,
    user_id: str,
    muted: bool,
    *,
    timeout: float = DEFAULT_STORE_TIMEOUT,
) -> Participant:
    """Mute or unmute a conversation for yourself.

    Muting is a notification preference; unread counts ignore it.
    """
    await get_conversation_or_404(store, conversation_id, timeout=timeout)
    participant = await store.call(
        store.set_muted, conversation_id, user_id, muted, timeout=timeout
    )
    if participant is None:
        raise NotMember(f"User {user_id} is not a participant of conversation {conversation_id}")
    return participant
