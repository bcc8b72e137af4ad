import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from chatsync.config import Settings
from chatsync.errors import translate_store_errors
from chatsync.repositories.conversation_repository import ConversationRepository
from chatsync.repositories.message_repository import MessageRepository


logger = logging.getLogger(__name__)

T = TypeVar("T")


class MongoConnection:

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self.client: Optional[AsyncIOMotorClient] = None

    async def connect(self) -> AsyncIOMotorDatabase:
        self.client = AsyncIOMotorClient(self._settings.mongo_url)
        logger.info("Connected to MongoDB database %s", self._settings.mongo_db_name)
        return self.client[self._settings.mongo_db_name]

    async def close(self) -> None:
        if self.client is not None:
            self.client.close()
            self.client = None
            logger.info("MongoDB connection closed")


class MongoTransactions:
    """Runs an operation inside a multi-document transaction."""

    def __init__(self, client: AsyncIOMotorClient) -> None:
        self._client = client

    async def run(self, operation: Callable[[Any], Awaitable[T]]) -> T:
        with translate_store_errors("transaction"):
            async with await self._client.start_session() as session:
                async with session.start_transaction():
                    return await operation(session)


async def ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    await ConversationRepository(db).ensure_indexes()
    await MessageRepository(db).ensure_indexes()
