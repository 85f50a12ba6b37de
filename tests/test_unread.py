"""Tests for unread count aggregation."""

import sqlite3
import time

import pytest

from stagedoor.errors import Unavailable
from stagedoor.membership import add_participant, leave_conversation
from stagedoor.metrics import Metrics, metrics
from stagedoor.read_state import mark_as_read
from stagedoor.store import SqliteStore
from stagedoor.testing import TickingClock, post_messages
from stagedoor.unread import get_unread_count, get_unread_counts


class FlakyStore(SqliteStore):
    """Store whose unread counts fail for chosen conversations."""

    def __init__(self, *args, failing=(), slow=(), fail_listing=False, **kwargs):
        super().__init__(*args, **kwargs)
        self.failing = set(failing)
        self.slow = set(slow)
        self.fail_listing = fail_listing

    def count_unread(self, conversation_id, user_id, since):
        if conversation_id in self.failing:
            raise RuntimeError("count query exploded")
        if conversation_id in self.slow:
            time.sleep(0.3)
        return super().count_unread(conversation_id, user_id, since)

    def list_active_participations(self, user_id):
        if self.fail_listing:
            raise sqlite3.OperationalError("database is locked")
        return super().list_active_participations(user_id)


@pytest.fixture
def flaky_store():
    from stagedoor import db

    conn = db.get_connection(":memory:")
    db.init_db_with_conn(conn)
    store = FlakyStore(conn, clock=TickingClock())
    yield store
    store.close()


def _two_groups(store):
    c1 = store.create_conversation("group", "alice", [("alice", "admin"), ("bob", "member")])
    c2 = store.create_conversation("group", "carol", [("carol", "admin"), ("bob", "member")])
    return c1.conversation.conversation_id, c2.conversation.conversation_id


class TestUnreadCount:
    @pytest.mark.asyncio
    async def test_sums_across_conversations(self, stagedoor_store):
        """Three unread in one conversation, none in the other: total 3."""
        c1, c2 = _two_groups(stagedoor_store)
        post_messages(stagedoor_store, c1, "alice", count=3)

        assert await get_unread_count(stagedoor_store, "bob") == 3
        assert await get_unread_counts(stagedoor_store, "bob") == {c1: 3, c2: 0}

    @pytest.mark.asyncio
    async def test_no_conversations_is_zero(self, stagedoor_store):
        assert await get_unread_count(stagedoor_store, "nobody") == 0
        assert await get_unread_counts(stagedoor_store, "nobody") == {}

    @pytest.mark.asyncio
    async def test_own_messages_do_not_count(self, group_conversation):
        store, created = group_conversation
        cid = created.conversation.conversation_id
        post_messages(store, cid, "bob", count=2)
        post_messages(store, cid, "alice", count=1)

        assert await get_unread_count(store, "bob") == 1
        assert await get_unread_count(store, "alice") == 2

    @pytest.mark.asyncio
    async def test_deleted_messages_do_not_count(self, group_conversation):
        store, created = group_conversation
        cid = created.conversation.conversation_id
        messages = post_messages(store, cid, "alice", count=3)
        store.soft_delete_message(messages[0].message_id)

        assert await get_unread_count(store, "bob") == 2

    @pytest.mark.asyncio
    async def test_only_messages_after_cursor(self, group_conversation):
        store, created = group_conversation
        cid = created.conversation.conversation_id
        post_messages(store, cid, "alice", count=4)
        await mark_as_read(store, cid, "bob")
        post_messages(store, cid, "carol", count=2)

        assert await get_unread_count(store, "bob") == 2

    @pytest.mark.asyncio
    async def test_add_then_count_only_new_messages(self, group_conversation):
        store, created = group_conversation
        cid = created.conversation.conversation_id

        await add_participant(store, cid, "alice", "dave")
        assert await get_unread_count(store, "dave") == 0

        post_messages(store, cid, "alice", count=2)
        assert await get_unread_count(store, "dave") == 2

    @pytest.mark.asyncio
    async def test_new_participant_sees_history_as_unread(self, group_conversation):
        """An empty cursor means everything in the conversation is unread."""
        store, created = group_conversation
        cid = created.conversation.conversation_id
        post_messages(store, cid, "alice", count=3)

        await add_participant(store, cid, "alice", "dave")

        assert await get_unread_count(store, "dave") == 3

    @pytest.mark.asyncio
    async def test_muted_conversations_still_count(self, group_conversation):
        store, created = group_conversation
        cid = created.conversation.conversation_id
        store.set_muted(cid, "bob", True)
        post_messages(store, cid, "alice", count=2)

        assert await get_unread_count(store, "bob") == 2

    @pytest.mark.asyncio
    async def test_left_conversations_excluded(self, stagedoor_store):
        c1, c2 = _two_groups(stagedoor_store)
        post_messages(stagedoor_store, c1, "alice", count=3)
        post_messages(stagedoor_store, c2, "carol", count=5)

        await leave_conversation(stagedoor_store, c2, "bob")

        assert await get_unread_count(stagedoor_store, "bob") == 3

    @pytest.mark.asyncio
    async def test_fanout_limit_of_one(self, stagedoor_store):
        c1, c2 = _two_groups(stagedoor_store)
        post_messages(stagedoor_store, c1, "alice", count=1)
        post_messages(stagedoor_store, c2, "carol", count=2)

        assert await get_unread_count(stagedoor_store, "bob", fanout_limit=1) == 3


class TestDegradation:
    @pytest.mark.asyncio
    async def test_failing_conversation_is_skipped(self, flaky_store):
        c1, c2 = _two_groups(flaky_store)
        post_messages(flaky_store, c1, "alice", count=3)
        post_messages(flaky_store, c2, "carol", count=4)
        flaky_store.failing.add(c2)

        collector = Metrics()

        assert await get_unread_count(flaky_store, "bob", metrics=collector) == 3
        assert await get_unread_counts(flaky_store, "bob", metrics=collector) == {c1: 3}
        assert collector.count("unread.conversation_failures") == 2
        assert metrics.count("unread.conversation_failures") == 0

    @pytest.mark.asyncio
    async def test_failure_is_logged(self, flaky_store, caplog):
        c1, _ = _two_groups(flaky_store)
        flaky_store.failing.add(c1)

        with caplog.at_level("WARNING", logger="stagedoor.unread"):
            await get_unread_count(flaky_store, "bob")

        assert any(c1 in record.getMessage() for record in caplog.records)

    @pytest.mark.asyncio
    async def test_timed_out_conversation_is_skipped(self, flaky_store):
        c1, c2 = _two_groups(flaky_store)
        post_messages(flaky_store, c1, "alice", count=3)
        post_messages(flaky_store, c2, "carol", count=4)
        flaky_store.slow.add(c1)

        counts = await get_unread_counts(flaky_store, "bob", timeout=0.1)

        assert c1 not in counts

    @pytest.mark.asyncio
    async def test_listing_failure_is_zero(self, flaky_store):
        c1, _ = _two_groups(flaky_store)
        post_messages(flaky_store, c1, "alice", count=3)
        flaky_store.fail_listing = True

        collector = Metrics()

        assert await get_unread_count(flaky_store, "bob", metrics=collector) == 0
        assert collector.count("unread.listing_failures") == 1


class TestStoreCall:
    @pytest.mark.asyncio
    async def test_timeout_is_unavailable(self, flaky_store):
        c1, _ = _two_groups(flaky_store)
        flaky_store.slow.add(c1)

        with pytest.raises(Unavailable) as exc_info:
            await flaky_store.call(flaky_store.count_unread, c1, "bob", None, timeout=0.05)

        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_operational_error_is_unavailable(self, flaky_store):
        flaky_store.fail_listing = True

        with pytest.raises(Unavailable):
            await flaky_store.call(flaky_store.list_active_participations, "bob")

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self, flaky_store):
        c1, _ = _two_groups(flaky_store)
        flaky_store.failing.add(c1)

        with pytest.raises(RuntimeError):
            await flaky_store.call(flaky_store.count_unread, c1, "bob", None)
