import logging
from typing import Any, Callable, List, Optional
from uuid import uuid4

from chatsync.errors import ChatError, ConversationResetError, NotAuthenticatedError
from chatsync.schemas.chat import Conversation, Message
from chatsync.schemas.user import CurrentUser
from chatsync.services.cache_store import LocalCacheStore
from chatsync.services.state import ChatState, ConversationSession, SubscriptionState
from chatsync.services.sync_engine import RemoteSyncEngine, Subscription, _invoke
from chatsync.services.unread_tracker import UnreadTracker
from chatsync.utils.dedup import dedupe
from chatsync.utils.identity import is_email, resolve_actual_counterpart
from chatsync.utils.notifications import new_message_payload, truncate_body
from chatsync.utils.timestamps import format_time_display, sort_key, to_iso


logger = logging.getLogger(__name__)

RESET_LIST_ERROR = "Conversations were reset. Start a new conversation."
EMPTY_RESET_ERROR = "No conversations found. Start a new conversation."
LOAD_MESSAGES_ERROR = "Failed to load messages. Please try again."
SEND_ERROR = "Failed to send message. Please try again."
MARK_READ_ERROR = "Failed to mark conversations as read. Please try again."
START_ERROR = "Could not start this conversation."


class ChatService:
    """Chat operations for the UI shell.

    One instance per signed-in device, owned by the application context.
    Failures never escape as exceptions; they are stored as short, dismissible
    messages on ``state.error`` or on the affected conversation session.
    """

    def __init__(
        self,
        engine: RemoteSyncEngine,
        cache: LocalCacheStore,
        tracker: UnreadTracker,
        identity,
        notifier,
        state: ChatState,
    ) -> None:
        self._engine = engine
        self._cache = cache
        self._tracker = tracker
        self._identity = identity
        self._notifier = notifier
        self.state = state
        self._list_subscription: Optional[Subscription] = None

    def _user(self) -> CurrentUser:
        user = self._identity.get_current_user()
        if user is None:
            raise NotAuthenticatedError("User not authenticated")
        return user

    async def start(self) -> None:
        self.state.unread_total = await self._cache.load_persisted_unread()

    # ------------------------------------------------------------------
    # Conversation list
    # ------------------------------------------------------------------
    async def fetch_conversations(self) -> List[Conversation]:
        user = self._identity.get_current_user()
        if user is None:
            return self.state.conversations
        self.state.loading = True
        cached = await self._cache.load()
        if cached:
            self.state.conversations = cached
            self.state.unread_total = self._cache.unread_total
            self.state.loading = False
            logger.debug("Showing %d cached conversations while refreshing", len(cached))

        result = await self._engine.fetch_conversations(user)
        self.state.loading = False
        self.state.refreshing = False
        if result.backend_reset:
            await self._cache.clear()
            if cached:
                self.state.conversations = []
                self.state.error = RESET_LIST_ERROR
            else:
                self.state.error = EMPTY_RESET_ERROR
            return self.state.conversations
        if result.error:
            self.state.error = result.error
            return self.state.conversations

        conversations = dedupe(result.conversations, user.identities)
        self.state.conversations = conversations
        self.state.error = None
        await self._cache.save(conversations)
        self.state.unread_total = await self._tracker.total_unread(conversations, user)
        return conversations

    async def refresh(self) -> List[Conversation]:
        self.state.refreshing = True
        return await self.fetch_conversations()

    async def get_or_create_conversation(
        self,
        other_user: str,
        other_user_display_name: Optional[str] = None,
        other_email: Optional[str] = None,
        product_id: Optional[str] = None,
        product_name: Optional[str] = None,
    ) -> Optional[Conversation]:
        try:
            user = self._user()
            counterpart = resolve_actual_counterpart(other_user, user.identities, self.state.conversations)
            if counterpart != other_user and other_email is None and is_email(other_user):
                other_email = other_user
            conversation = await self._engine.get_or_create_conversation(
                counterpart,
                other_user_display_name,
                other_email=other_email,
                product_id=product_id,
                product_name=product_name,
            )
        except ChatError as exc:
            logger.error("Opening a conversation with %s failed: %s", other_user, exc)
            self.state.error = exc.user_message
            return None
        except ValueError as exc:
            logger.warning("Refusing conversation with %s: %s", other_user, exc)
            self.state.error = START_ERROR
            return None
        self.state.upsert(conversation)
        return conversation

    async def watch_conversations(self) -> None:
        user = self._user()
        if self._list_subscription is not None:
            self._list_subscription.unsubscribe()
        self._list_subscription = await self._engine.subscribe_conversations(user, self._on_conversation_changed)

    async def _on_conversation_changed(self, conversation: Conversation) -> None:
        user = self._identity.get_current_user()
        if user is None:
            return
        previous = self.state.find(conversation.id)
        new_activity = (
            conversation.last_sender_id is not None
            and conversation.last_sender_id not in user.identities
            and (previous is None or sort_key(conversation.last_message_time) > sort_key(previous.last_message_time))
        )
        self.state.upsert(conversation)
        self.state.conversations = dedupe(self.state.conversations, user.identities)
        await self._cache.save(self.state.conversations)
        self.state.unread_total = self._cache.unread_total
        if not new_activity:
            return
        session = self.state.sessions.get(conversation.id)
        if session is not None and session.state is SubscriptionState.LIVE:
            return
        try:
            await self._engine.mark_delivered(conversation.id, user)
        except ChatError as exc:
            logger.warning("Delivery acknowledgement for %s failed: %s", conversation.id, exc)
        sender_name = conversation.display_name_for(user)
        await self._notifier.notify(
            str(user.email) if user.email else user.primary_identity,
            f"Message from {sender_name}",
            truncate_body(conversation.last_message_content or ""),
            new_message_payload(conversation.id, sender_name),
        )

    # ------------------------------------------------------------------
    # Conversation sessions
    # ------------------------------------------------------------------
    async def open_conversation(
        self,
        conversation_id: str,
        on_message: Optional[Callable[[Message], Any]] = None,
    ) -> ConversationSession:
        user = self._user()
        self.close_conversation(conversation_id)
        session = ConversationSession(conversation_id=conversation_id, state=SubscriptionState.SUBSCRIBING)
        self.state.sessions[conversation_id] = session
        try:
            for message in await self._engine.get_messages(conversation_id):
                session.merge(message)
            since = session.last_created_at
            session.subscription = await self._engine.subscribe(
                conversation_id,
                on_message=lambda message: self._on_live_message(session, message, on_message),
                on_update=session.apply_update,
                seen=session.seen,
            )
            for message in await self._engine.get_messages(conversation_id, since=since):
                if session.merge(message) and on_message is not None:
                    await _invoke(on_message, message)
        except ConversationResetError as exc:
            await self._handle_reset(conversation_id, exc)
            return session
        except ChatError as exc:
            logger.error("Opening conversation %s failed: %s", conversation_id, exc)
            self._teardown(session)
            session.error = LOAD_MESSAGES_ERROR
            return session

        session.state = SubscriptionState.LIVE
        logger.info("Conversation %s is live with %d messages", conversation_id, len(session.messages))
        await self._mark_read(session, session.messages, user)
        return session

    async def _on_live_message(
        self,
        session: ConversationSession,
        message: Message,
        callback: Optional[Callable[[Message], Any]],
    ) -> None:
        if session.state is SubscriptionState.UNSUBSCRIBED or not session.merge(message):
            return
        if callback is not None:
            await _invoke(callback, message)
        user = self._identity.get_current_user()
        if user is not None and session.state is SubscriptionState.LIVE and not message.is_from(user.identities):
            await self._mark_read(session, [message], user)

    async def _mark_read(self, session: ConversationSession, messages: List[Message], user: CurrentUser) -> None:
        try:
            changed = await self._tracker.mark_messages_read(session.conversation_id, messages, user)
            await self._engine.announce_status(session.conversation_id, changed)
        except ChatError as exc:
            logger.warning("Marking messages read in %s failed: %s", session.conversation_id, exc)

    def _teardown(self, session: ConversationSession) -> None:
        if session.subscription is not None:
            session.subscription.unsubscribe()
        session.state = SubscriptionState.UNSUBSCRIBED

    def _report(self, conversation_id: str, message: str) -> None:
        session = self.state.sessions.get(conversation_id)
        if session is not None:
            session.error = message
        else:
            self.state.error = message

    async def _drop_conversation(self, conversation_id: str) -> None:
        await self._cache.clear()
        self.state.conversations = [c for c in self.state.conversations if c.id != conversation_id]
        user = self._identity.get_current_user()
        if user is not None:
            await self._cache.persist_unread(sum(c.unread_count_for(user.identities) for c in self.state.conversations))
            self.state.unread_total = self._cache.unread_total

    async def _handle_reset(self, conversation_id: str, exc: ChatError) -> None:
        logger.warning("Conversation %s no longer exists remotely: %s", conversation_id, exc)
        session = self.state.sessions.get(conversation_id)
        if session is not None:
            self._teardown(session)
        await self._drop_conversation(conversation_id)
        self._report(conversation_id, ConversationResetError.user_message)

    def close_conversation(self, conversation_id: str, session: Optional[ConversationSession] = None) -> None:
        """Tear down a session; with ``session`` given, only if it is still the current one."""
        current = self.state.sessions.get(conversation_id)
        if session is not None and session is not current:
            self._teardown(session)
            return
        if current is not None:
            self._teardown(current)
            del self.state.sessions[conversation_id]

    async def get_messages(self, conversation_id: str) -> List[Message]:
        try:
            return await self._engine.get_messages(conversation_id)
        except ConversationResetError as exc:
            await self._handle_reset(conversation_id, exc)
        except ChatError as exc:
            logger.error("Loading messages for %s failed: %s", conversation_id, exc)
            self._report(conversation_id, LOAD_MESSAGES_ERROR)
        return []

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------
    async def send_message(self, conversation_id: str, content: Optional[str] = None) -> Optional[Message]:
        """Send ``content``, or the open session's draft when no content is given."""
        session = self.state.sessions.get(conversation_id)
        from_draft = content is None
        if from_draft:
            text = session.draft if session is not None else ""
        else:
            text = content
        if not text or not text.strip():
            return None
        user = self._identity.get_current_user()
        if user is None:
            self._report(conversation_id, NotAuthenticatedError.user_message)
            return None

        if from_draft:
            session.draft = ""
        pending = Message(
            id=f"local-{uuid4()}",
            conversation_id=conversation_id,
            sender_id=user.primary_identity,
            sender_name=user.display_name,
            content=text.strip(),
            created_at=to_iso(self._engine.normalizer.now()),
        )
        if session is not None:
            session.pending.append(pending)
        try:
            message = await self._engine.send_message(conversation_id, text)
        except ConversationResetError as exc:
            if from_draft:
                session.draft = text
            await self._handle_reset(conversation_id, exc)
            return None
        except (ChatError, ValueError) as exc:
            logger.error("Sending to %s failed: %s", conversation_id, exc)
            if from_draft:
                session.draft = text
            self._report(conversation_id, SEND_ERROR)
            return None
        finally:
            if session is not None:
                session.pending = [p for p in session.pending if p.id != pending.id]

        if session is not None:
            session.merge(message)
        conversation = self.state.find(conversation_id)
        if conversation is not None:
            self.state.upsert(
                conversation.model_copy(
                    update={
                        "last_message_content": message.content,
                        "last_message_time": message.created_at,
                        "last_sender_id": message.sender_id,
                        "updated_at": message.created_at,
                    }
                )
            )
        await self._notify_recipient(conversation_id, conversation, message, user)
        return message

    async def _notify_recipient(
        self,
        conversation_id: str,
        conversation: Optional[Conversation],
        message: Message,
        user: CurrentUser,
    ) -> None:
        if conversation is None:
            try:
                conversation = await self._engine.get_conversation(conversation_id)
            except ChatError as exc:
                logger.warning("No recipient lookup for %s: %s", conversation_id, exc)
                return
        recipient = conversation.counterpart_for(user.identities) if conversation else None
        if recipient is None:
            return
        await self._notifier.notify(
            recipient.email or recipient.identity,
            f"Message from {user.display_name}",
            truncate_body(message.content),
            new_message_payload(conversation_id, user.display_name),
        )

    # ------------------------------------------------------------------
    # Read state
    # ------------------------------------------------------------------
    async def mark_conversation_read(self, conversation_id: str) -> None:
        try:
            await self._tracker.mark_conversation_read(conversation_id, self._user())
        except ConversationResetError as exc:
            await self._handle_reset(conversation_id, exc)
        except ChatError as exc:
            logger.error("Marking %s read failed: %s", conversation_id, exc)
            self.state.error = MARK_READ_ERROR

    async def mark_all_read(self) -> None:
        try:
            await self._tracker.mark_all_read(self._user())
        except ChatError as exc:
            logger.error("Marking all conversations read failed: %s", exc)
            self.state.error = MARK_READ_ERROR

    async def total_unread(self) -> int:
        user = self._identity.get_current_user()
        if user is None:
            return 0
        self.state.unread_total = await self._tracker.total_unread(self.state.conversations, user)
        return self.state.unread_total

    # ------------------------------------------------------------------
    # Presentation helpers
    # ------------------------------------------------------------------
    def display_name(self, conversation: Conversation) -> str:
        user = self._identity.get_current_user()
        if user is None:
            return conversation.name or "Unknown Contact"
        return conversation.display_name_for(user)

    def time_display(self, conversation: Conversation) -> str:
        return format_time_display(conversation.last_message_time, self._engine.normalizer.now())

    def dismiss_error(self, conversation_id: Optional[str] = None) -> None:
        if conversation_id is None:
            self.state.error = None
            return
        session = self.state.sessions.get(conversation_id)
        if session is not None:
            session.error = None

    def close(self) -> None:
        for session in self.state.sessions.values():
            self._teardown(session)
        self.state.sessions.clear()
        if self._list_subscription is not None:
            self._list_subscription.unsubscribe()
            self._list_subscription = None
