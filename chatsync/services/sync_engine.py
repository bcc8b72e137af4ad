import asyncio
import inspect
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Set
from uuid import uuid4

from pydantic import ValidationError

from chatsync.errors import ChatError, ConversationResetError, NotAuthenticatedError, TransientStoreError
from chatsync.repositories.conversation_repository import ConversationRepository
from chatsync.repositories.message_repository import MessageRepository
from chatsync.schemas.chat import Conversation, Message, MessageStatus, ParticipantState
from chatsync.schemas.user import CurrentUser
from chatsync.utils.dedup import sort_by_recent
from chatsync.utils.identity import canonical_id, format_name_from_email, is_email, sanitize_identity
from chatsync.utils.realtime_bus import conversation_channel, encode_event, user_channel
from chatsync.utils.timestamps import TimestampNormalizer, to_iso


logger = logging.getLogger(__name__)

FETCH_ERROR = "Failed to load conversations. Please try again."
RESET_ERROR = "Conversations were reset. Start a new conversation."


async def _invoke(callback: Callable[[Any], Any], value: Any) -> None:
    result = callback(value)
    if inspect.isawaitable(result):
        await result


@dataclass
class FetchResult:
    conversations: List[Conversation]
    error: Optional[str] = None
    backend_reset: bool = False


@dataclass
class Subscription:
    """Live listener handle.

    ``unsubscribe`` returns immediately and may be called any number of times;
    the transport teardown finishes in the background.
    """

    name: str
    seen: Set[str] = field(default_factory=set)
    closed: bool = False
    _transports: List[Any] = field(default_factory=list)
    _tasks: List[asyncio.Task] = field(default_factory=list)
    _teardown: List[asyncio.Task] = field(default_factory=list)

    def attach(self, transport) -> None:
        self._transports.append(transport)
        self._tasks.append(asyncio.create_task(transport.run()))

    def mark_seen(self, message_id: str) -> bool:
        """Record a message id; False if it was already delivered."""
        if message_id in self.seen:
            return False
        self.seen.add(message_id)
        return True

    def unsubscribe(self) -> None:
        if self.closed:
            return
        self.closed = True
        for task in self._tasks:
            if not task.done():
                task.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            self._teardown = [loop.create_task(transport.cancel()) for transport in self._transports]
        logger.debug("Unsubscribed %s", self.name)


class RemoteSyncEngine:

    def __init__(
        self,
        conversation_repo: ConversationRepository,
        message_repo: MessageRepository,
        bus,
        transactions,
        identity,
        normalizer: Optional[TimestampNormalizer] = None,
    ) -> None:
        self._conversations = conversation_repo
        self._messages = message_repo
        self._bus = bus
        self._transactions = transactions
        self._identity = identity
        self._normalizer = normalizer or TimestampNormalizer()
        self._last_issued: Optional[datetime] = None

    @property
    def normalizer(self) -> TimestampNormalizer:
        return self._normalizer

    def _require_user(self) -> CurrentUser:
        user = self._identity.get_current_user()
        if user is None:
            raise NotAuthenticatedError("User not authenticated")
        return user

    def _next_timestamp(self) -> str:
        # strictly increasing so messages sent in one burst keep their order
        now = self._normalizer.now()
        if self._last_issued is not None and now <= self._last_issued:
            now = self._last_issued + timedelta(milliseconds=1)
        self._last_issued = now
        return to_iso(now)

    def _to_conversation(self, doc: Dict[str, Any]) -> Optional[Conversation]:
        try:
            return Conversation.from_document(doc, self._normalizer)
        except (ValidationError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Skipping malformed conversation %s: %s", doc.get("_id"), exc)
            return None

    async def _publish(self, channel: str, message: str) -> None:
        try:
            await self._bus.publish(channel, message)
        except Exception as exc:
            logger.warning("Publishing to %s failed: %s", channel, exc)

    async def _publish_conversation(self, conversation: Conversation) -> None:
        channels = {user_channel(sanitize_identity(p)) for p in conversation.participants}
        channels.update(user_channel(sanitize_identity(m.email)) for m in conversation.members.values() if m.email)
        payload = encode_event("conversation.updated", conversation_id=conversation.id)
        for channel in sorted(channels):
            await self._publish(channel, payload)

    async def _publish_messages(self, conversation_id: str, event_type: str, messages: Sequence[Message]) -> None:
        channel = conversation_channel(conversation_id)
        for message in messages:
            await self._publish(channel, encode_event(event_type, message=message.model_dump(mode="json")))

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------
    async def fetch_conversations(self, user: CurrentUser) -> FetchResult:
        try:
            docs = await self._conversations.find_for_participants(user.identities)
        except ConversationResetError as exc:
            logger.warning("Conversation list for %s unavailable, backend looks reset: %s", user.primary_identity, exc)
            return FetchResult([], error=RESET_ERROR, backend_reset=True)
        except TransientStoreError as exc:
            logger.error("Fetching conversations for %s failed: %s", user.primary_identity, exc)
            return FetchResult([], error=FETCH_ERROR)
        conversations = [c for c in (self._to_conversation(doc) for doc in docs) if c is not None]
        logger.info("Fetched %d conversations for %s", len(conversations), user.primary_identity)
        return FetchResult(sort_by_recent(conversations))

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        doc = await self._conversations.find_by_id(conversation_id)
        return self._to_conversation(doc) if doc else None

    async def get_or_create_conversation(
        self,
        other_user: str,
        other_user_display_name: Optional[str] = None,
        other_email: Optional[str] = None,
        product_id: Optional[str] = None,
        product_name: Optional[str] = None,
    ) -> Conversation:
        user = self._require_user()
        if not other_user or other_user in user.identities:
            raise ValueError("A conversation needs another participant")
        me = user.primary_identity
        conversation_id = canonical_id(me, other_user)
        other_email = other_email or (other_user if is_email(other_user) else None)
        other_name = other_user_display_name or format_name_from_email(other_email or other_user)
        my_key, other_key = sanitize_identity(me), sanitize_identity(other_user)

        existing = await self._conversations.find_by_id(conversation_id)
        if existing is None:
            now = self._next_timestamp()
            conversation = Conversation(
                id=conversation_id,
                participants=sorted([me, other_user]),
                members={
                    my_key: ParticipantState(
                        identity=me,
                        email=str(user.email) if user.email else None,
                        display_name=user.display_name,
                    ),
                    other_key: ParticipantState(identity=other_user, email=other_email, display_name=other_name),
                },
                name=other_name,
                product_id=product_id,
                product_name=product_name,
                owner=me,
                created_at=now,
                updated_at=now,
            )
            if await self._conversations.insert(conversation.to_document()):
                logger.info("Created conversation %s", conversation_id)
                await self._publish_conversation(conversation)
                return conversation
            # lost a race with the other participant's client
            existing = await self._conversations.find_by_id(conversation_id)
            if existing is None:
                raise TransientStoreError(f"conversation {conversation_id} could not be created")

        fields: Dict[str, Any] = {
            f"members.{my_key}.identity": me,
            f"members.{my_key}.display_name": user.display_name,
            f"members.{other_key}.identity": other_user,
        }
        if user.email:
            fields[f"members.{my_key}.email"] = str(user.email)
        if other_user_display_name:
            fields[f"members.{other_key}.display_name"] = other_user_display_name
        if other_email:
            fields[f"members.{other_key}.email"] = other_email
        if not existing.get("name"):
            fields["name"] = other_name
        await self._conversations.set_fields(conversation_id, fields)
        refreshed = await self._conversations.find_by_id(conversation_id)
        conversation = self._to_conversation(refreshed or existing)
        if conversation is None:
            raise TransientStoreError(f"conversation {conversation_id} is unreadable")
        logger.debug("Reusing conversation %s", conversation_id)
        return conversation

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    async def get_messages(self, conversation_id: str, since: Optional[str] = None) -> List[Message]:
        if await self._conversations.find_by_id(conversation_id) is None:
            raise ConversationResetError(f"conversation {conversation_id} not found")
        docs = await self._messages.list_for_conversation(conversation_id, since=since)
        messages = []
        for doc in docs:
            try:
                messages.append(Message.from_document(doc, self._normalizer))
            except ValidationError as exc:
                logger.warning("Skipping malformed message %s: %s", doc.get("_id"), exc)
        messages.sort(key=lambda m: m.created_at)
        return messages

    async def send_message(self, conversation_id: str, content: str) -> Message:
        user = self._require_user()
        text = (content or "").strip()
        if not text:
            raise ValueError("Message content cannot be empty")
        doc = await self._conversations.find_by_id(conversation_id)
        if doc is None:
            raise ConversationResetError(f"conversation {conversation_id} not found")
        conversation = self._to_conversation(doc)
        recipient = conversation.counterpart_for(user.identities) if conversation else None
        if conversation is None or recipient is None:
            raise ValueError("Recipient not found in conversation")
        sender = conversation.member_for(user.identities)
        now = self._next_timestamp()
        message = Message(
            id=str(uuid4()),
            conversation_id=conversation_id,
            sender_id=sender.identity if sender else user.primary_identity,
            sender_name=user.display_name,
            content=text,
            status=MessageStatus.SENT,
            created_at=now,
            updated_at=now,
        )

        async def _write(session) -> None:
            await self._messages.insert(message.to_document(), session=session)
            await self._conversations.update_on_new_message(
                conversation_id,
                text,
                now,
                message.sender_id,
                sanitize_identity(recipient.identity),
                session=session,
            )

        await self._transactions.run(_write)
        logger.debug("Sent message %s in %s", message.id, conversation_id)
        await self._publish_messages(conversation_id, "message.added", [message])
        await self._publish_conversation(conversation)
        return message

    async def update_message_status(self, conversation_id: str, message_ids: Sequence[str], status: MessageStatus) -> int:
        if not message_ids:
            return 0
        changed = await self._messages.advance_status(conversation_id, message_ids, status, self._next_timestamp())
        if changed:
            await self.announce_status(conversation_id, message_ids)
        return changed

    async def announce_status(self, conversation_id: str, message_ids: Sequence[str]) -> None:
        """Publish the current state of messages whose status changed."""
        if not message_ids:
            return
        docs = await self._messages.find_by_ids(message_ids)
        updated = [Message.from_document(doc, self._normalizer) for doc in docs]
        await self._publish_messages(conversation_id, "message.updated", updated)

    async def mark_delivered(self, conversation_id: str, user: CurrentUser) -> int:
        pending = await self._messages.pending_for_receiver(conversation_id, user.identities)
        return await self.update_message_status(conversation_id, pending, MessageStatus.DELIVERED)

    # ------------------------------------------------------------------
    # Live subscriptions
    # ------------------------------------------------------------------
    async def subscribe(
        self,
        conversation_id: str,
        on_message: Callable[[Message], Any],
        on_update: Optional[Callable[[Message], Any]] = None,
        seen: Optional[Set[str]] = None,
    ) -> Subscription:
        subscription = Subscription(name=f"messages:{conversation_id}", seen=seen if seen is not None else set())

        async def _handle(raw: str) -> None:
            if subscription.closed:
                return
            try:
                event = json.loads(raw)
                message = Message.model_validate(event["message"])
            except (ValueError, KeyError, TypeError, ValidationError) as exc:
                logger.warning("Dropping malformed event on %s: %s", subscription.name, exc)
                return
            message = message.model_copy(update={"created_at": self._normalizer.normalize(message.created_at)})
            if event.get("type") == "message.added":
                if not subscription.mark_seen(message.id):
                    logger.debug("Ignoring redelivered message %s", message.id)
                    return
                await _invoke(on_message, message)
            elif event.get("type") == "message.updated" and on_update is not None:
                await _invoke(on_update, message)

        transport = await self._bus.subscribe(conversation_channel(conversation_id), _handle)
        subscription.attach(transport)
        logger.debug("Subscribed to %s", subscription.name)
        return subscription

    async def subscribe_conversations(
        self,
        user: CurrentUser,
        on_change: Callable[[Conversation], Any],
    ) -> Subscription:
        subscription = Subscription(name=f"conversations:{user.primary_identity}")

        async def _handle(raw: str) -> None:
            if subscription.closed:
                return
            try:
                conversation_id = json.loads(raw)["conversation_id"]
            except (ValueError, KeyError, TypeError) as exc:
                logger.warning("Dropping malformed event on %s: %s", subscription.name, exc)
                return
            try:
                conversation = await self.get_conversation(conversation_id)
            except ChatError as exc:
                logger.warning("Refreshing conversation %s failed: %s", conversation_id, exc)
                return
            if conversation is not None and not subscription.closed:
                await _invoke(on_change, conversation)

        for identity in user.identities:
            transport = await self._bus.subscribe(user_channel(sanitize_identity(identity)), _handle)
            subscription.attach(transport)
        return subscription
