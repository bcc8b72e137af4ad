import asyncio

from chatsync.errors import ConversationResetError, TransientStoreError
from chatsync.schemas.chat import Conversation, MessageStatus
from chatsync.services.chat_service import EMPTY_RESET_ERROR, RESET_LIST_ERROR, SEND_ERROR, START_ERROR
from chatsync.services.state import ConversationSession, SubscriptionState

from chatsync.utils.realtime_bus import conversation_channel

from conftest import drain


def test_fetch_sets_state_and_cache(alice):
    async def scenario():
        await alice.service.get_or_create_conversation("b@x.com")
        conversations = await alice.service.fetch_conversations()
        return conversations, await alice.cache.load()

    conversations, cached = asyncio.run(scenario())
    assert [c.id for c in conversations] == ["b@x.com_u1"]
    assert [c.id for c in cached] == ["b@x.com_u1"]
    assert alice.state.loading is False
    assert alice.state.error is None


def test_backend_reset_clears_cache(alice, monkeypatch):
    async def reset(identities):
        raise ConversationResetError("gone")

    async def scenario():
        await alice.service.get_or_create_conversation("b@x.com")
        await alice.service.fetch_conversations()
        monkeypatch.setattr(alice.engine._conversations, "find_for_participants", reset)
        await alice.service.fetch_conversations()
        return await alice.cache.load()

    assert asyncio.run(scenario()) is None
    assert alice.state.conversations == []
    assert alice.state.error == RESET_LIST_ERROR


def test_backend_reset_without_cache(alice, monkeypatch):
    async def reset(identities):
        raise ConversationResetError("gone")

    monkeypatch.setattr(alice.engine._conversations, "find_for_participants", reset)
    asyncio.run(alice.service.fetch_conversations())
    assert alice.state.error == EMPTY_RESET_ERROR


def test_email_reference_reuses_opaque_conversation(alice, db):
    async def scenario():
        await alice.engine.get_or_create_conversation("u2", "Bea", other_email="b@x.com")
        await alice.service.fetch_conversations()
        conversation = await alice.service.get_or_create_conversation("b@x.com")
        return conversation, await db.conversations.count_documents({})

    conversation, count = asyncio.run(scenario())
    assert conversation.id == "u1_u2"
    assert count == 1
    assert alice.service.display_name(conversation) == "Bea"


def test_send_failure_restores_draft(alice, monkeypatch):
    async def broken(conversation_id, content):
        raise TransientStoreError("timeout")

    async def scenario():
        conversation = await alice.service.get_or_create_conversation("b@x.com")
        session = alice.state.sessions.setdefault(conversation.id, ConversationSession(conversation.id))
        session.draft = "hello there"
        monkeypatch.setattr(alice.engine, "send_message", broken)
        sent = await alice.service.send_message(conversation.id)
        return sent, session

    sent, session = asyncio.run(scenario())
    assert sent is None
    assert session.draft == "hello there"
    assert session.pending == []
    assert session.error == SEND_ERROR
    alice.service.dismiss_error(session.conversation_id)
    assert session.error is None


def test_send_updates_summary_and_notifies_recipient(alice):
    async def scenario():
        conversation = await alice.service.get_or_create_conversation("b@x.com")
        return await alice.service.send_message(conversation.id, "x" * 80)

    message = asyncio.run(scenario())
    assert message.status is MessageStatus.SENT
    summary = alice.state.find("b@x.com_u1")
    assert summary.last_message_content == message.content
    assert summary.last_sender_id == "u1"
    push = alice.service._notifier.sent[-1]
    assert push["recipient"] == "b@x.com"
    assert push["title"] == "Message from Alice"
    assert push["body"] == "x" * 57 + "..."
    assert push["payload"] == {"conversation_id": "b@x.com_u1", "sender_name": "Alice", "type": "NEW_MESSAGE"}


def test_open_conversation_goes_live_and_marks_read(alice, bob, db):
    async def scenario():
        conversation = await alice.service.get_or_create_conversation("b@x.com")
        await alice.service.send_message(conversation.id, "Hi")
        await bob.service.fetch_conversations()
        live = []
        session = await bob.service.open_conversation(conversation.id, on_message=live.append)
        await drain()
        await alice.service.send_message(conversation.id, "How are you?")
        await drain()
        stored = await db.messages.find({"conversation_id": conversation.id}).to_list(length=10)
        doc = await db.conversations.find_one({"_id": conversation.id})
        bob.service.close_conversation(conversation.id)
        return session, live, stored, doc

    session, live, stored, doc = asyncio.run(scenario())
    assert [m.content for m in session.messages] == ["Hi", "How are you?"]
    assert [m.content for m in live] == ["How are you?"]
    assert {m["status"] for m in stored} == {MessageStatus.READ.value}
    assert doc["members"]["b_x_com"]["unread_count"] == 0
    assert session.state is SubscriptionState.UNSUBSCRIBED
    assert bob.state.unread_total == 0


def test_open_missing_conversation_reports_reset(alice):
    session = asyncio.run(alice.service.open_conversation("gone_u1"))
    assert session.state is SubscriptionState.UNSUBSCRIBED
    assert session.error == ConversationResetError.user_message


def test_watch_marks_delivered_and_notifies(alice, bob, db):
    async def scenario():
        conversation = await alice.service.get_or_create_conversation("b@x.com")
        await bob.service.fetch_conversations()
        await bob.service.watch_conversations()
        await drain()
        await alice.service.send_message(conversation.id, "Ping")
        await drain()
        stored = await db.messages.find_one({"conversation_id": conversation.id})
        bob.service.close()
        return stored

    stored = asyncio.run(scenario())
    assert stored["status"] == MessageStatus.DELIVERED.value
    assert bob.state.find("b@x.com_u1").last_message_content == "Ping"
    push = bob.service._notifier.sent[-1]
    assert push["recipient"] == "b@x.com"
    assert push["title"] == "Message from Alice"


def test_signed_out_user_gets_nothing(alice):
    alice.identity.sign_out()
    placeholder = Conversation(id="x", name="Someone", created_at="2024-03-01T10:00:00.000Z")
    assert asyncio.run(alice.service.fetch_conversations()) == []
    assert asyncio.run(alice.service.total_unread()) == 0
    assert alice.service.display_name(placeholder) == "Someone"


def test_conversation_with_yourself_is_reported(alice, db):
    assert asyncio.run(alice.service.get_or_create_conversation("u1")) is None
    assert alice.state.error == START_ERROR
    assert asyncio.run(db.conversations.count_documents({})) == 0


def test_explicit_content_leaves_the_draft_alone(alice, monkeypatch):
    async def broken(conversation_id, content):
        raise TransientStoreError("timeout")

    async def scenario():
        conversation = await alice.service.get_or_create_conversation("b@x.com")
        session = await alice.service.open_conversation(conversation.id)
        session.draft = "still typing"
        sent = await alice.service.send_message(conversation.id, "quick reply")
        monkeypatch.setattr(alice.engine, "send_message", broken)
        failed = await alice.service.send_message(conversation.id, "another one")
        alice.service.close()
        return session, sent, failed

    session, sent, failed = asyncio.run(scenario())
    assert sent.content == "quick reply"
    assert failed is None
    assert session.draft == "still typing"
    assert session.error == SEND_ERROR


def test_sending_without_an_open_session_keeps_no_session(alice):
    async def scenario():
        conversation = await alice.service.get_or_create_conversation("b@x.com")
        return await alice.service.send_message(conversation.id, "Hi")

    assert asyncio.run(scenario()).content == "Hi"
    assert alice.state.sessions == {}


def test_reopening_replaces_the_previous_subscription(alice, bob, bus):
    async def scenario():
        conversation = await alice.service.get_or_create_conversation("b@x.com")
        await bob.service.fetch_conversations()
        first_seen, second_seen = [], []
        first = await bob.service.open_conversation(conversation.id, on_message=first_seen.append)
        second = await bob.service.open_conversation(conversation.id, on_message=second_seen.append)
        await drain()
        subscribers = bus.subscriber_count(conversation_channel(conversation.id))
        await alice.service.send_message(conversation.id, "Hi")
        await drain()
        # the first screen going away must not close the second
        bob.service.close_conversation(conversation.id, first)
        still_live = second.state
        bob.service.close_conversation(conversation.id, second)
        await drain()
        return first, second, first_seen, second_seen, subscribers, still_live, conversation.id

    first, second, first_seen, second_seen, subscribers, still_live, cid = asyncio.run(scenario())
    assert first.state is SubscriptionState.UNSUBSCRIBED
    assert subscribers == 1
    assert first_seen == []
    assert [m.content for m in second_seen] == ["Hi"]
    assert still_live is SubscriptionState.LIVE
    assert second.state is SubscriptionState.UNSUBSCRIBED
    assert cid not in bob.state.sessions
