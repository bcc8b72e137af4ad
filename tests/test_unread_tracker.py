import asyncio

from chatsync.errors import ConversationResetError, TransientStoreError
from chatsync.services.chat_service import MARK_READ_ERROR

from conftest import BOB


async def _two_unread(alice, bob):
    first = await alice.engine.get_or_create_conversation("b@x.com")
    second = await alice.engine.get_or_create_conversation("c@x.com")
    await alice.engine.send_message(first.id, "Hi")
    await alice.engine.send_message(first.id, "Are you there?")
    await bob.service.fetch_conversations()
    return first, second


def test_fetch_counts_unread_for_the_viewer(alice, bob):
    async def scenario():
        await _two_unread(alice, bob)
        return bob.state.unread_total, await bob.cache.load_persisted_unread()

    assert asyncio.run(scenario()) == (2, 2)


def test_mark_conversation_read_clears_remote_and_local(alice, bob, db, monkeypatch):
    async def scenario():
        first, _ = await _two_unread(alice, bob)
        await bob.service.mark_conversation_read(first.id)
        doc = await db.conversations.find_one({"_id": first.id})

        async def fail(*args, **kwargs):
            raise AssertionError("already read")

        monkeypatch.setattr(bob.tracker._conversations, "reset_unread", fail)
        await bob.service.mark_conversation_read(first.id)
        return doc

    doc = asyncio.run(scenario())
    assert doc["members"]["b_x_com"]["unread_count"] == 0
    assert bob.state.unread_total == 0
    assert bob.state.find("b@x.com_u1").unread_count_for(BOB.identities) == 0
    assert bob.state.error is None


def test_mark_all_read_failure_leaves_state_untouched(alice, bob, db, monkeypatch):
    async def failing_run(operation):
        raise TransientStoreError("write conflict")

    async def scenario():
        first, _ = await _two_unread(alice, bob)
        monkeypatch.setattr(bob.tracker._transactions, "run", failing_run)
        await bob.service.mark_all_read()
        return first, await db.conversations.find_one({"_id": first.id})

    first, doc = asyncio.run(scenario())
    assert bob.state.error == MARK_READ_ERROR
    assert bob.state.unread_total == 2
    assert bob.state.find(first.id).unread_count_for(BOB.identities) == 2
    assert doc["members"]["b_x_com"]["unread_count"] == 2


def test_mark_all_read(alice, bob, db):
    async def scenario():
        first, _ = await _two_unread(alice, bob)
        await bob.service.mark_all_read()
        return await db.conversations.find_one({"_id": first.id})

    doc = asyncio.run(scenario())
    assert doc["members"]["b_x_com"]["unread_count"] == 0
    assert bob.state.unread_total == 0


def test_empty_list_keeps_last_known_total(bob):
    async def scenario():
        await bob.cache.persist_unread(4)
        return await bob.tracker.total_unread([], BOB)

    assert asyncio.run(scenario()) == 4


def test_counters_never_go_negative(alice, bob, db):
    async def scenario():
        first, _ = await _two_unread(alice, bob)
        await db.conversations.update_one({"_id": first.id}, {"$set": {"members.b_x_com.unread_count": -3}})
        await bob.service.fetch_conversations()
        return bob.state.unread_total

    assert asyncio.run(scenario()) == 0


def test_mark_read_on_a_vanished_conversation_invalidates_the_cache(alice, bob, db):
    async def scenario():
        first, _ = await _two_unread(alice, bob)
        await db.conversations.delete_many({})
        await db.messages.delete_many({})
        await bob.service.mark_conversation_read(first.id)
        return first, await bob.cache.load()

    first, cached = asyncio.run(scenario())
    assert cached is None
    assert bob.state.find(first.id) is None
    assert bob.state.error == ConversationResetError.user_message
    assert bob.state.unread_total == 0
