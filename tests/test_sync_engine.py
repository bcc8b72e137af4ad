import asyncio

import pytest

from chatsync.errors import ConversationResetError, TransientStoreError
from chatsync.repositories import message_repository
from chatsync.schemas.chat import MessageStatus
from chatsync.services.sync_engine import FETCH_ERROR
from chatsync.utils.realtime_bus import conversation_channel, encode_event

from conftest import ALICE, BOB, drain


def test_new_conversation_with_email_counterpart(alice, db):
    conversation = asyncio.run(alice.engine.get_or_create_conversation("b@x.com"))

    assert conversation.id == "b@x.com_u1"
    assert conversation.participants == ["b@x.com", "u1"]
    assert conversation.members["b_x_com"].display_name == "B"
    assert conversation.members["b_x_com"].unread_count == 0
    assert conversation.members["u1"].email == "a@x.com"
    assert conversation.display_name_for(ALICE) == "B"


def test_get_or_create_is_idempotent(alice, bob, db):
    async def scenario():
        first = await alice.engine.get_or_create_conversation("b@x.com", "Bea")
        second = await alice.engine.get_or_create_conversation("b@x.com")
        from_other_side = await bob.engine.get_or_create_conversation("u1", "Alice")
        return first, second, from_other_side, await db.conversations.count_documents({})

    first, second, other, count = asyncio.run(scenario())
    assert first.id == second.id == other.id == "b@x.com_u1"
    assert count == 1
    assert other.display_name_for(BOB) == "Alice"
    assert second.display_name_for(ALICE) == "Bea"


def test_cannot_open_a_conversation_with_yourself(alice):
    with pytest.raises(ValueError):
        asyncio.run(alice.engine.get_or_create_conversation("a@x.com"))


def test_messages_come_back_in_send_order(alice, db):
    async def scenario():
        conversation = await alice.engine.get_or_create_conversation("b@x.com")
        for text in ("Hi", "How are you?", "Good"):
            await alice.engine.send_message(conversation.id, text)
        messages = await alice.engine.get_messages(conversation.id)
        doc = await db.conversations.find_one({"_id": conversation.id})
        return messages, doc

    messages, doc = asyncio.run(scenario())
    assert [m.content for m in messages] == ["Hi", "How are you?", "Good"]
    assert [m.created_at for m in messages] == sorted({m.created_at for m in messages})
    assert all(m.status is MessageStatus.SENT for m in messages)
    assert doc["last_message_content"] == "Good"
    assert doc["last_sender_id"] == "u1"
    assert doc["members"]["b_x_com"]["unread_count"] == 3
    assert doc["members"]["u1"]["unread_count"] == 0


def test_send_rejects_blank_content(alice):
    async def scenario():
        conversation = await alice.engine.get_or_create_conversation("b@x.com")
        await alice.engine.send_message(conversation.id, "   ")

    with pytest.raises(ValueError):
        asyncio.run(scenario())


def test_missing_conversation_is_reported_as_reset(alice):
    with pytest.raises(ConversationResetError):
        asyncio.run(alice.engine.get_messages("nobody_u1"))
    with pytest.raises(ConversationResetError):
        asyncio.run(alice.engine.send_message("nobody_u1", "hello"))


def test_fetch_reports_reset_and_transient_failures(alice, monkeypatch):
    async def reset(identities):
        raise ConversationResetError("gone")

    async def flaky(identities):
        raise TransientStoreError("timeout")

    monkeypatch.setattr(alice.engine._conversations, "find_for_participants", reset)
    result = asyncio.run(alice.engine.fetch_conversations(ALICE))
    assert result.backend_reset is True
    assert result.conversations == []

    monkeypatch.setattr(alice.engine._conversations, "find_for_participants", flaky)
    result = asyncio.run(alice.engine.fetch_conversations(ALICE))
    assert result.backend_reset is False
    assert result.error == FETCH_ERROR


def test_fetch_lists_conversations_for_every_identity(alice, bob):
    async def scenario():
        await alice.engine.get_or_create_conversation("b@x.com")
        await alice.engine.get_or_create_conversation("u9", "Nine")
        return await bob.engine.fetch_conversations(BOB), await alice.engine.fetch_conversations(ALICE)

    for_bob, for_alice = asyncio.run(scenario())
    assert [c.id for c in for_bob.conversations] == ["b@x.com_u1"]
    assert len(for_alice.conversations) == 2


def test_subscription_delivers_each_message_once(alice, bus):
    async def scenario():
        conversation = await alice.engine.get_or_create_conversation("b@x.com")
        received = []
        subscription = await alice.engine.subscribe(conversation.id, received.append)
        await drain()
        sent = await alice.engine.send_message(conversation.id, "Hi")
        await drain()
        # a redelivery of the same event
        await bus.publish(
            conversation_channel(conversation.id),
            encode_event("message.added", message=sent.model_dump(mode="json")),
        )
        await drain()
        subscription.unsubscribe()
        return received, sent

    received, sent = asyncio.run(scenario())
    assert [m.id for m in received] == [sent.id]


def test_unsubscribe_is_idempotent_and_stops_delivery(alice, bus):
    async def scenario():
        conversation = await alice.engine.get_or_create_conversation("b@x.com")
        received = []
        subscription = await alice.engine.subscribe(conversation.id, received.append)
        subscription.unsubscribe()
        subscription.unsubscribe()
        await drain()
        await alice.engine.send_message(conversation.id, "Hi")
        await drain()
        return received, bus.subscriber_count(conversation_channel(conversation.id))

    received, remaining = asyncio.run(scenario())
    assert received == []
    assert remaining == 0


def test_status_only_moves_forward(alice, bob):
    async def scenario():
        conversation = await alice.engine.get_or_create_conversation("b@x.com")
        message = await alice.engine.send_message(conversation.id, "Hi")
        delivered = await bob.engine.mark_delivered(conversation.id, BOB)
        await bob.engine.update_message_status(conversation.id, [message.id], MessageStatus.READ)
        regressed = await bob.engine.update_message_status(conversation.id, [message.id], MessageStatus.DELIVERED)
        return delivered, regressed, await bob.engine.get_messages(conversation.id)

    delivered, regressed, messages = asyncio.run(scenario())
    assert delivered == 1
    assert regressed == 0
    assert messages[0].status is MessageStatus.READ
    assert messages[0].read_at is not None


def test_conversation_subscribers_hear_about_new_messages(alice, bob):
    async def scenario():
        conversation = await alice.engine.get_or_create_conversation("b@x.com")
        changes = []
        subscription = await bob.engine.subscribe_conversations(BOB, changes.append)
        await drain()
        await alice.engine.send_message(conversation.id, "Hi")
        await drain()
        subscription.unsubscribe()
        return changes

    changes = asyncio.run(scenario())
    assert changes
    assert changes[-1].last_message_content == "Hi"
    assert changes[-1].unread_count_for(BOB.identities) == 1


def test_history_keeps_the_newest_messages(alice, monkeypatch):
    monkeypatch.setattr(message_repository, "MAX_MESSAGES", 3)

    async def scenario():
        conversation = await alice.engine.get_or_create_conversation("b@x.com")
        sent = [await alice.engine.send_message(conversation.id, f"m{n}") for n in range(5)]
        latest = await alice.engine.get_messages(conversation.id)
        newer = await alice.engine.get_messages(conversation.id, since=sent[0].created_at)
        return latest, newer

    latest, newer = asyncio.run(scenario())
    assert [m.content for m in latest] == ["m2", "m3", "m4"]
    assert [m.content for m in newer] == ["m1", "m2", "m3", "m4"]
