"""Pytest fixtures for testing with stagedoor.

Usage in conftest.py:
    pytest_plugins = ["stagedoor.testing"]

Or import specific fixtures:
    from stagedoor.testing import stagedoor_store, group_conversation

Available fixtures:
    - stagedoor_clock: TickingClock the store reads time from
    - stagedoor_store: Fresh in-memory SqliteStore using stagedoor_clock
    - group_conversation: Store with a group (alice admin; bob, carol members)
    - direct_conversation: Store with a direct conversation (alice, bob)
    - stagedoor_http: FastAPI TestClient over an in-memory store
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Generator

import pytest

from .models import CreatedConversation, Message
from .store import ConversationStore, SqliteStore

if TYPE_CHECKING:
    from fastapi.testclient import TestClient


class TickingClock:
    """Deterministic clock that moves forward a fixed step on every read.

    Every store write gets a distinct, increasing timestamp, so tests never
    depend on wall-clock resolution.

    Example:
        clock = TickingClock()
        store = SqliteStore.in_memory(clock=clock)
        clock.rewind(timedelta(hours=1))  # simulate a clock going backwards
    """

    def __init__(
        self,
        start: datetime | None = None,
        step: timedelta = timedelta(milliseconds=1),
    ):
        self.current = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.step = step

    def __call__(self) -> datetime:
        now = self.current
        self.current = self.current + self.step
        return now

    def advance(self, delta: timedelta) -> None:
        self.current = self.current + delta

    def rewind(self, delta: timedelta) -> None:
        self.current = self.current - delta


@pytest.fixture
def stagedoor_clock() -> TickingClock:
    """Clock shared by stagedoor_store."""
    return TickingClock()


@pytest.fixture
def stagedoor_store(stagedoor_clock: TickingClock) -> Generator[SqliteStore, None, None]:
    """Fresh in-memory store.

    No cleanup needed - all data is ephemeral.

    Example:
        async def test_something(stagedoor_store):
            created = await create_conversation(stagedoor_store, "alice", ["bob"])
            ...
    """
    store = SqliteStore.in_memory(clock=stagedoor_clock)
    yield store
    store.close()


@pytest.fixture
def group_conversation(
    stagedoor_store: SqliteStore,
) -> tuple[SqliteStore, CreatedConversation]:
    """Store with a group conversation: alice (admin), bob and carol (members).

    Returns:
        Tuple of (store, created_conversation)

    Example:
        async def test_add(group_conversation):
            store, created = group_conversation
            cid = created.conversation.conversation_id
            await add_participant(store, cid, "alice", "dave")
    """
    created = stagedoor_store.create_conversation(
        "group",
        "alice",
        [("alice", "admin"), ("bob", "member"), ("carol", "member")],
        name="Crew",
    )
    return stagedoor_store, created


@pytest.fixture
def direct_conversation(
    stagedoor_store: SqliteStore,
) -> tuple[SqliteStore, CreatedConversation]:
    """Store with a direct conversation between alice and bob.

    Returns:
        Tuple of (store, created_conversation)
    """
    created = stagedoor_store.create_conversation(
        "direct", "alice", [("alice", "member"), ("bob", "member")]
    )
    return stagedoor_store, created


@pytest.fixture
def stagedoor_http() -> Generator["TestClient", None, None]:
    """TestClient for the HTTP API backed by a fresh in-memory store.

    Example:
        def test_create(stagedoor_http):
            resp = stagedoor_http.post(
                "/conversations",
                json={"participant_ids": ["bob"]},
                headers={"X-User-Id": "alice"},
            )
            assert resp.status_code == 201
    """
    from fastapi.testclient import TestClient

    from .api import app
    from .options import StagedoorOptions

    app.state.options = StagedoorOptions.for_in_memory()
    try:
        with TestClient(app) as client:
            yield client
    finally:
        del app.state.options


# --- Utility Functions ---


def post_messages(
    store: ConversationStore,
    conversation_id: str,
    sender_id: str,
    count: int = 3,
    body_prefix: str = "Message",
) -> list[Message]:
    """Append ``count`` messages from ``sender_id``.

    Utility function for unread-count tests. Messages are written the way
    the messaging collaborator writes them, straight into the store.

    Returns:
        List of inserted messages, oldest first
    """
    return [
        store.insert_message(conversation_id, sender_id, f"{body_prefix} {i + 1}")
        for i in range(count)
    ]
