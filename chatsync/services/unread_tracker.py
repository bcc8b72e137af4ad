import logging
from typing import Iterable, List

from chatsync.errors import ConversationResetError
from chatsync.repositories.conversation_repository import ConversationRepository
from chatsync.repositories.message_repository import MessageRepository
from chatsync.schemas.chat import Conversation, Message, MessageStatus
from chatsync.schemas.user import CurrentUser
from chatsync.services.cache_store import LocalCacheStore
from chatsync.services.state import ChatState
from chatsync.utils.identity import sanitize_identity
from chatsync.utils.timestamps import TimestampNormalizer, to_iso


logger = logging.getLogger(__name__)


class UnreadTracker:
    """Per-user unread counters.

    Counters only ever go back to zero through an explicit read action; the
    remote write always lands before in-memory state and the cache change.
    """

    def __init__(
        self,
        conversation_repo: ConversationRepository,
        message_repo: MessageRepository,
        transactions,
        cache: LocalCacheStore,
        state: ChatState,
        normalizer: TimestampNormalizer,
    ) -> None:
        self._conversations = conversation_repo
        self._messages = message_repo
        self._transactions = transactions
        self._cache = cache
        self._state = state
        self._normalizer = normalizer

    def _now(self) -> str:
        return to_iso(self._normalizer.now())

    async def total_unread(self, conversations: List[Conversation], user: CurrentUser) -> int:
        if not conversations:
            return self._cache.unread_total
        total = sum(c.unread_count_for(user.identities) for c in conversations)
        if total != self._cache.unread_total:
            await self._cache.persist_unread(total)
        self._state.unread_total = total
        return total

    async def _apply_read(self, conversation_ids: Iterable[str], user: CurrentUser) -> None:
        ids = set(conversation_ids)
        self._state.conversations = [
            c.with_unread(user.identities, 0) if c.id in ids else c for c in self._state.conversations
        ]
        await self._cache.save(self._state.conversations)
        self._state.unread_total = self._cache.unread_total

    async def mark_conversation_read(self, conversation_id: str, user: CurrentUser) -> None:
        conversation = self._state.find(conversation_id)
        member = conversation.member_for(user.identities) if conversation else None
        if member is None or member.unread_count <= 0:
            logger.debug("No unread messages in conversation %s", conversation_id)
            return
        if not await self._conversations.reset_unread(conversation_id, sanitize_identity(member.identity), self._now()):
            raise ConversationResetError(f"conversation {conversation_id} not found")
        logger.info("Marked conversation %s as read", conversation_id)
        await self._apply_read([conversation_id], user)

    async def mark_all_read(self, user: CurrentUser) -> None:
        targets = []
        for conversation in self._state.conversations:
            member = conversation.member_for(user.identities)
            if member is not None and member.unread_count > 0:
                targets.append((conversation.id, sanitize_identity(member.identity)))
        if not targets:
            logger.debug("No unread conversations to mark")
            return
        now = self._now()

        async def _reset(session) -> int:
            return await self._conversations.reset_unread_many(targets, now, session=session)

        # all-or-nothing: local state is only touched after the batch commits
        await self._transactions.run(_reset)
        logger.info("Marked %d conversations as read", len(targets))
        await self._apply_read([conversation_id for conversation_id, _ in targets], user)

    async def mark_messages_read(self, conversation_id: str, messages: Iterable[Message], user: CurrentUser) -> List[str]:
        """Advance other people's messages to READ and clear this user's counter."""
        unread = [m.id for m in messages if not m.is_from(user.identities) and m.status is not MessageStatus.READ]
        if not unread:
            return []
        conversation = self._state.find(conversation_id)
        member = conversation.member_for(user.identities) if conversation else None
        member_key = sanitize_identity(member.identity if member else user.primary_identity)
        now = self._now()

        async def _write(session) -> int:
            changed = await self._messages.advance_status(conversation_id, unread, MessageStatus.READ, now, session=session)
            await self._conversations.reset_unread(conversation_id, member_key, now, session=session)
            return changed

        changed = await self._transactions.run(_write)
        logger.debug("Marked %d messages read in %s", changed, conversation_id)
        if conversation is not None:
            await self._apply_read([conversation_id], user)
        return unread if changed else []
