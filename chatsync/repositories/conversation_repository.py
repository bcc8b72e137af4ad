from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from chatsync.errors import translate_store_errors
from chatsync.models.conversation import ConversationDocument


MAX_CONVERSATIONS = 1000


def _session_kwargs(session) -> Dict[str, Any]:
    return {"session": session} if session is not None else {}


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        with translate_store_errors("conversation indexes"):
            await self.collection.create_index([("participants", ASCENDING)])
            await self.collection.create_index([("last_message_time", DESCENDING)])

    async def find_by_id(self, conversation_id: str) -> Optional[ConversationDocument]:
        with translate_store_errors("conversation lookup"):
            return await self.collection.find_one({"_id": conversation_id})

    async def find_for_participants(self, identities: Sequence[str]) -> List[ConversationDocument]:
        query = {"participants": {"$in": list(identities)}}
        with translate_store_errors("conversation list"):
            cursor = self.collection.find(query).sort([("last_message_time", DESCENDING), ("_id", ASCENDING)])
            return await cursor.to_list(length=MAX_CONVERSATIONS)

    async def insert(self, doc: ConversationDocument) -> bool:
        """Insert a new conversation; False if one with the same id already exists."""
        with translate_store_errors("conversation create"):
            try:
                await self.collection.insert_one(doc)
            except DuplicateKeyError:
                return False
        return True

    async def set_fields(self, conversation_id: str, fields: Dict[str, Any], session=None) -> bool:
        with translate_store_errors("conversation update"):
            result = await self.collection.update_one(
                {"_id": conversation_id},
                {"$set": fields},
                **_session_kwargs(session),
            )
        return bool(result.matched_count)

    async def update_on_new_message(
        self,
        conversation_id: str,
        content: str,
        sent_at: str,
        sender_id: str,
        recipient_key: Optional[str],
        session=None,
    ) -> bool:
        update: Dict[str, Any] = {
            "$set": {
                "last_message_content": content,
                "last_message_time": sent_at,
                "last_sender_id": sender_id,
                "updated_at": sent_at,
            },
        }
        if recipient_key:
            update["$inc"] = {f"members.{recipient_key}.unread_count": 1}
        with translate_store_errors("conversation summary update"):
            result = await self.collection.update_one({"_id": conversation_id}, update, **_session_kwargs(session))
        return bool(result.matched_count)

    async def reset_unread(self, conversation_id: str, member_key: str, updated_at: str, session=None) -> bool:
        with translate_store_errors("unread reset"):
            result = await self.collection.update_one(
                {"_id": conversation_id},
                {"$set": {f"members.{member_key}.unread_count": 0, "updated_at": updated_at}},
                **_session_kwargs(session),
            )
        return bool(result.matched_count)

    async def reset_unread_many(self, targets: Iterable[Tuple[str, str]], updated_at: str, session=None) -> int:
        """Reset several (conversation_id, member_key) counters; meant to run inside a transaction."""
        matched = 0
        for conversation_id, member_key in targets:
            if await self.reset_unread(conversation_id, member_key, updated_at, session=session):
                matched += 1
        return matched
