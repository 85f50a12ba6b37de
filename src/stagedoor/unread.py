"""Unread message counts across a user's conversations.

A message is unread for a participant when someone else sent it, it is
not deleted, and it was created after the participant's read cursor
(the epoch if they have never read the conversation).

Counts are fetched one conversation at a time, concurrently, with at
most ``fanout_limit`` store calls in flight. A conversation whose count
fails is logged and left out; the others still add up. These functions
never raise.
"""

from __future__ import annotations

import asyncio
import logging

from .metrics import Metrics
from .models import Participant
from .store import DEFAULT_STORE_TIMEOUT, ConversationStore

logger = logging.getLogger(__name__)

DEFAULT_FANOUT_LIMIT = 8


async def _count_one(
    store: ConversationStore,
    participant: Participant,
    semaphore: asyncio.Semaphore,
    timeout: float,
) -> int:
    async with semaphore:
        return await store.call(
            store.count_unread,
            participant.conversation_id,
            participant.user_id,
            participant.read_floor(),
            timeout=timeout,
        )


async def get_unread_counts(
    store: ConversationStore,
    user_id: str,
    *,
    timeout: float = DEFAULT_STORE_TIMEOUT,
    fanout_limit: int = DEFAULT_FANOUT_LIMIT,
    metrics: Metrics | None = None,
) -> dict[str, int]:
    """Unread count per active conversation.

    Conversations whose count could not be fetched are missing from the
    result. When ``metrics`` is given, each skipped conversation (or a
    failed listing) bumps a counter on it.
    """
    try:
        participations = await store.call(
            store.list_active_participations, user_id, timeout=timeout
        )
    except Exception:
        logger.warning(f"Could not list conversations for {user_id}", exc_info=True)
        if metrics is not None:
            metrics.increment("unread.listing_failures")
        return {}

    if not participations:
        return {}

    semaphore = asyncio.Semaphore(max(1, fanout_limit))
    results = await asyncio.gather(
        *(_count_one(store, p, semaphore, timeout) for p in participations),
        return_exceptions=True,
    )

    counts: dict[str, int] = {}
    for participant, result in zip(participations, results):
        if isinstance(result, BaseException):
            if isinstance(result, asyncio.CancelledError):
                raise result
            logger.warning(
                f"Unread count failed for conversation {participant.conversation_id}",
                exc_info=result,
            )
            if metrics is not None:
                metrics.increment("unread.conversation_failures")
            continue
        counts[participant.conversation_id] = result
    return counts


async def get_unread_count(
    store: ConversationStore,
    user_id: str,
    *,
    timeout: float = DEFAULT_STORE_TIMEOUT,
    fanout_limit: int = DEFAULT_FANOUT_LIMIT,
    metrics: Metrics | None = None,
) -> int:
    """Total unread messages across the user's active conversations.

    Returns 0 when the user is in no conversations or nothing could be
    counted.
    """
    counts = await get_unread_counts(
        store, user_id, timeout=timeout, fanout_limit=fanout_limit, metrics=metrics
    )
    return sum(counts.values())
