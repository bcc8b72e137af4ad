import logging
from datetime import timedelta
from typing import List, Optional

from pydantic import TypeAdapter, ValidationError

from chatsync.schemas.chat import Conversation
from chatsync.utils.kv_store import KeyValueStore
from chatsync.utils.timestamps import Clock, parse_iso, to_iso, utc_now


logger = logging.getLogger(__name__)

DEFAULT_FRESHNESS = timedelta(hours=1)

_conversation_list = TypeAdapter(List[Conversation])


class LocalCacheStore:
    """Device-local snapshot of the conversation list plus the unread total.

    The list and the unread total are written together so they never drift.
    A snapshot older than the freshness window is not returned by ``load``.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        identity,
        namespace: str = "@chatsync",
        freshness: timedelta = DEFAULT_FRESHNESS,
        clock: Clock = utc_now,
    ) -> None:
        self._kv = kv
        self._identity = identity
        self._freshness = freshness
        self._clock = clock
        self.conversations_key = f"{namespace}_conversations"
        self.timestamp_key = f"{namespace}_conversations_timestamp"
        self.unread_key = f"{namespace}_unread_messages_count"
        self.unread_total = 0

    def _count_unread(self, conversations: List[Conversation]) -> int:
        user = self._identity.get_current_user()
        if user is None:
            return 0
        return sum(c.unread_count_for(user.identities) for c in conversations)

    async def save(self, conversations: List[Conversation]) -> None:
        try:
            await self._kv.set(self.conversations_key, _conversation_list.dump_json(conversations).decode("utf-8"))
            await self._kv.set(self.timestamp_key, to_iso(self._clock()))
        except Exception as exc:
            logger.warning("Caching %d conversations failed: %s", len(conversations), exc)
            return
        logger.debug("Cached %d conversations", len(conversations))
        await self.persist_unread(self._count_unread(conversations))

    async def load(self) -> Optional[List[Conversation]]:
        try:
            raw = await self._kv.get(self.conversations_key)
            cached_at = parse_iso(await self._kv.get(self.timestamp_key))
        except Exception as exc:
            logger.warning("Reading the conversation cache failed: %s", exc)
            return None
        if raw is None or cached_at is None:
            return None
        age = self._clock() - cached_at
        if age >= self._freshness:
            logger.info("Conversation cache is %.1f minutes old, ignoring it", age.total_seconds() / 60)
            return None
        try:
            conversations = _conversation_list.validate_json(raw)
        except (ValidationError, ValueError) as exc:
            logger.warning("Conversation cache is unreadable: %s", exc)
            return None
        self.unread_total = self._count_unread(conversations)
        return conversations

    async def clear(self) -> bool:
        try:
            await self._kv.remove(self.conversations_key)
            await self._kv.remove(self.timestamp_key)
        except Exception as exc:
            logger.error("Clearing the conversation cache failed: %s", exc)
            return False
        logger.info("Conversation cache cleared")
        return True

    async def persist_unread(self, count: int) -> None:
        self.unread_total = max(0, count)
        try:
            await self._kv.set(self.unread_key, str(self.unread_total))
        except Exception as exc:
            logger.warning("Persisting unread count failed: %s", exc)

    async def load_persisted_unread(self) -> int:
        try:
            raw = await self._kv.get(self.unread_key)
        except Exception as exc:
            logger.warning("Loading unread count failed: %s", exc)
            return self.unread_total
        try:
            self.unread_total = max(0, int(raw)) if raw is not None else self.unread_total
        except ValueError:
            logger.warning("Ignoring malformed unread count %r", raw)
        return self.unread_total
