from bisect import insort
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from chatsync.schemas.chat import Conversation, Message


class SubscriptionState(str, Enum):

    UNSUBSCRIBED = "UNSUBSCRIBED"
    SUBSCRIBING = "SUBSCRIBING"
    LIVE = "LIVE"


@dataclass
class ConversationSession:
    """What one open conversation screen sees."""

    conversation_id: str
    state: SubscriptionState = SubscriptionState.UNSUBSCRIBED
    messages: List[Message] = field(default_factory=list)
    seen: Set[str] = field(default_factory=set)
    # locally authored sends not yet confirmed by the store
    pending: List[Message] = field(default_factory=list)
    draft: str = ""
    error: Optional[str] = None
    subscription: Any = None

    def merge(self, message: Message) -> bool:
        """Insert a message in created_at order; False if it is already present."""
        for index, existing in enumerate(self.messages):
            if existing.id == message.id:
                self.messages[index] = existing.model_copy(update={"status": existing.status.advance(message.status)})
                return False
        self.seen.add(message.id)
        insort(self.messages, message, key=lambda m: m.created_at)
        return True

    def apply_update(self, message: Message) -> None:
        for index, existing in enumerate(self.messages):
            if existing.id == message.id:
                self.messages[index] = existing.model_copy(
                    update={
                        "status": existing.status.advance(message.status),
                        "read_at": message.read_at or existing.read_at,
                        "updated_at": message.updated_at or existing.updated_at,
                    }
                )
                return

    @property
    def last_created_at(self) -> Optional[str]:
        return self.messages[-1].created_at if self.messages else None


@dataclass
class ChatState:

    conversations: List[Conversation] = field(default_factory=list)
    sessions: Dict[str, ConversationSession] = field(default_factory=dict)
    unread_total: int = 0
    loading: bool = False
    refreshing: bool = False
    error: Optional[str] = None

    def find(self, conversation_id: str) -> Optional[Conversation]:
        for conversation in self.conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    def upsert(self, conversation: Conversation) -> None:
        for index, existing in enumerate(self.conversations):
            if existing.id == conversation.id:
                self.conversations[index] = conversation
                return
        self.conversations.insert(0, conversation)
