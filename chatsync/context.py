import logging
from dataclasses import dataclass
from typing import Any

from chatsync.config import Settings
from chatsync.database.connection import MongoConnection, MongoTransactions, ensure_indexes
from chatsync.repositories.conversation_repository import ConversationRepository
from chatsync.repositories.message_repository import MessageRepository
from chatsync.services.cache_store import LocalCacheStore
from chatsync.services.chat_service import ChatService
from chatsync.services.identity import IdentityProvider
from chatsync.services.state import ChatState
from chatsync.services.sync_engine import RemoteSyncEngine
from chatsync.services.unread_tracker import UnreadTracker
from chatsync.utils.kv_store import build_kv_store
from chatsync.utils.notifications import build_notifier
from chatsync.utils.realtime_bus import build_bus
from chatsync.utils.timestamps import Clock, TimestampNormalizer, utc_now


logger = logging.getLogger(__name__)


@dataclass
class ChatContext:
    """Everything one running chat client owns."""

    settings: Settings
    identity: IdentityProvider
    service: ChatService
    engine: RemoteSyncEngine
    tracker: UnreadTracker
    cache: LocalCacheStore
    state: ChatState
    bus: Any
    kv: Any
    connection: Any = None

    async def close(self) -> None:
        self.service.close()
        await self.bus.close()
        await self.kv.close()
        if self.connection is not None:
            await self.connection.close()
        logger.info("Chat context closed")


def assemble_context(
    settings: Settings,
    identity: IdentityProvider,
    db,
    transactions,
    bus,
    kv,
    notifier,
    connection=None,
    clock: Clock = utc_now,
) -> ChatContext:
    normalizer = TimestampNormalizer(settings.clock_skew, settings.future_tolerance, clock)
    conversation_repo = ConversationRepository(db)
    message_repo = MessageRepository(db)
    cache = LocalCacheStore(kv, identity, settings.cache_namespace, settings.cache_ttl, clock)
    state = ChatState()
    tracker = UnreadTracker(conversation_repo, message_repo, transactions, cache, state, normalizer)
    engine = RemoteSyncEngine(conversation_repo, message_repo, bus, transactions, identity, normalizer)
    service = ChatService(engine, cache, tracker, identity, notifier, state)
    return ChatContext(
        settings=settings,
        identity=identity,
        service=service,
        engine=engine,
        tracker=tracker,
        cache=cache,
        state=state,
        bus=bus,
        kv=kv,
        connection=connection,
    )


async def build_context(settings: Settings, identity: IdentityProvider) -> ChatContext:
    connection = MongoConnection(settings)
    db = await connection.connect()
    await ensure_indexes(db)
    context = assemble_context(
        settings,
        identity,
        db,
        MongoTransactions(connection.client),
        build_bus(settings),
        build_kv_store(settings),
        build_notifier(settings),
        connection=connection,
    )
    await context.service.start()
    return context
