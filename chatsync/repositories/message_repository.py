import logging
from typing import Any, Dict, List, Optional, Sequence

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from chatsync.errors import translate_store_errors
from chatsync.models.message import MessageDocument
from chatsync.schemas.chat import MessageStatus


logger = logging.getLogger(__name__)

MAX_MESSAGES = 1000


def _session_kwargs(session) -> Dict[str, Any]:
    return {"session": session} if session is not None else {}


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        with translate_store_errors("message indexes"):
            await self.collection.create_index([("conversation_id", ASCENDING), ("created_at", ASCENDING)])

    async def insert(self, doc: MessageDocument, session=None) -> None:
        with translate_store_errors("message create"):
            await self.collection.insert_one(doc, **_session_kwargs(session))

    async def list_for_conversation(self, conversation_id: str, since: Optional[str] = None) -> List[MessageDocument]:
        """Messages in created_at order.

        Without ``since`` this is the newest MAX_MESSAGES of the history.  With
        ``since`` every newer message is returned so a catch-up leaves no gap.
        """
        query: Dict[str, Any] = {"conversation_id": conversation_id}
        with translate_store_errors("message history"):
            if since:
                query["created_at"] = {"$gt": since}
                cursor = self.collection.find(query).sort([("created_at", ASCENDING)])
                return await cursor.to_list(length=None)
            cursor = self.collection.find(query).sort([("created_at", DESCENDING)]).limit(MAX_MESSAGES)
            newest = await cursor.to_list(length=None)
        if len(newest) >= MAX_MESSAGES:
            logger.info("History of %s truncated to the newest %d messages", conversation_id, MAX_MESSAGES)
        newest.reverse()
        return newest

    async def find_by_ids(self, message_ids: Sequence[str]) -> List[MessageDocument]:
        with translate_store_errors("message lookup"):
            cursor = self.collection.find({"_id": {"$in": list(message_ids)}}).sort([("created_at", ASCENDING)])
            return await cursor.to_list(length=MAX_MESSAGES)

    async def advance_status(
        self,
        conversation_id: str,
        message_ids: Sequence[str],
        status: MessageStatus,
        at: str,
        session=None,
    ) -> int:
        """Move messages forward to ``status``; messages already there or beyond are untouched."""
        lower = [s.value for s in status.predecessors()]
        if not message_ids or not lower:
            return 0
        fields: Dict[str, Any] = {"status": status.value, "updated_at": at}
        if status is MessageStatus.READ:
            fields["read_at"] = at
        with translate_store_errors("message status update"):
            result = await self.collection.update_many(
                {"conversation_id": conversation_id, "_id": {"$in": list(message_ids)}, "status": {"$in": lower}},
                {"$set": fields},
                **_session_kwargs(session),
            )
        return result.modified_count or 0

    async def pending_for_receiver(self, conversation_id: str, receiver_identities: Sequence[str]) -> List[str]:
        """Ids of messages others sent into the conversation that are still only SENT."""
        query = {
            "conversation_id": conversation_id,
            "sender_id": {"$nin": list(receiver_identities)},
            "status": MessageStatus.SENT.value,
        }
        with translate_store_errors("pending message lookup"):
            cursor = self.collection.find(query, {"_id": 1})
            items = await cursor.to_list(length=MAX_MESSAGES)
        return [str(item["_id"]) for item in items]
