"""Conversation creation, lookup, listing and renaming."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .errors import InvalidOperation
from .guard import get_conversation_or_404, require_admin, require_participant
from .models import Conversation, CreatedConversation, Participant
from .store import DEFAULT_STORE_TIMEOUT, ConversationStore

logger = logging.getLogger(__name__)


@dataclass
class ConversationDetails:
    """A conversation with its active participants."""

    conversation: Conversation
    participants: list[Participant]


async def create_conversation(
    store: ConversationStore,
    created_by: str,
    participant_ids: list[str],
    kind: str = "group",
    name: str | None = None,
    *,
    timeout: float = DEFAULT_STORE_TIMEOUT,
) -> CreatedConversation:
    """Create a direct or group conversation.

    Direct conversations are between the creator and exactly one other
    user. If the pair already shares a direct conversation, that one is
    returned with ``created=False``.

    Group conversations make the creator admin and everyone else a
    member. The creator is added even if not listed; repeated ids count
    once.

    Raises:
        InvalidOperation: Unknown kind, or a direct conversation that is
            not between the creator and exactly one other user.
    """
    # Ordered de-duplication, creator first
    user_ids = list(dict.fromkeys([created_by, *participant_ids]))

    if kind == "direct":
        if len(user_ids) != 2:
            raise InvalidOperation(
                "A direct conversation needs the creator and exactly one other user"
            )
        if name is not None:
            raise InvalidOperation("Direct conversations cannot be named")
        # Lookup and insert happen in one store call so concurrent creates
        # for the same pair end up in the same conversation
        result = await store.call(
            store.get_or_create_direct_conversation, created_by, user_ids[1], timeout=timeout
        )
        if result.created:
            logger.info(
                f"{created_by} created direct conversation "
                f"{result.conversation.conversation_id} with {user_ids[1]}"
            )
        return result

    if kind != "group":
        raise InvalidOperation(f"Unknown conversation kind: {kind}")

    members = [(created_by, "admin")] + [(user_id, "member") for user_id in user_ids[1:]]
    created = await store.call(
        store.create_conversation, kind, created_by, members, name, timeout=timeout
    )
    logger.info(
        f"{created_by} created group conversation {created.conversation.conversation_id} "
        f"with {len(members)} participants"
    )
    return created


async def get_conversation(
    store: ConversationStore,
    conversation_id: str,
    user_id: str,
    *,
    timeout: float = DEFAULT_STORE_TIMEOUT,
) -> ConversationDetails:
    """Conversation plus active participants, for participants only."""
    conversation = await get_conversation_or_404(store, conversation_id, timeout=timeout)
    await require_participant(store, conversation_id, user_id, timeout=timeout)
    participants = await store.call(
        store.list_participants, conversation_id, False, timeout=timeout
    )
    return ConversationDetails(conversation=conversation, participants=participants)


async def list_conversations(
    store: ConversationStore,
    user_id: str,
    *,
    timeout: float = DEFAULT_STORE_TIMEOUT,
) -> list[tuple[Conversation, Participant]]:
    """The user's active conversations with their own episode, newest activity first."""
    return await store.call(store.list_conversations_for_user, user_id, timeout=timeout)


async def rename_conversation(
    store: ConversationStore,
    conversation_id: str,
    acting_user_id: str,
    name: str | None,
    *,
    timeout: float = DEFAULT_STORE_TIMEOUT,
) -> Conversation:
    """Rename a group. Admins only."""
    await require_admin(store, conversation_id, acting_user_id, timeout=timeout)
    conversation = await store.call(
        store.rename_conversation, conversation_id, name, timeout=timeout
    )
    if conversation is None:
        # No group row matched the update
        raise InvalidOperation(f"Conversation {conversation_id} cannot be renamed")
    logger.info(f"{acting_user_id} renamed conversation {conversation_id}")
    return conversation
