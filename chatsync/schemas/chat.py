from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from chatsync.schemas.user import CurrentUser
from chatsync.utils.identity import format_name_from_email, is_email, sanitize_identity
from chatsync.utils.timestamps import TimestampNormalizer


class MessageStatus(str, Enum):

    SENT = "SENT"
    DELIVERED = "DELIVERED"
    READ = "READ"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)

    def advance(self, other: "MessageStatus") -> "MessageStatus":
        """Return whichever status is further along; statuses never regress."""
        return other if other.rank > self.rank else self

    def predecessors(self) -> List["MessageStatus"]:
        return _STATUS_ORDER[: self.rank]

    @classmethod
    def parse(cls, value: Any) -> "MessageStatus":
        try:
            return cls(value)
        except ValueError:
            return cls.SENT


_STATUS_ORDER = [MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.READ]


class ParticipantState(BaseModel):

    identity: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    unread_count: int = Field(0, ge=0)


class Conversation(BaseModel):

    id: str
    participants: List[str] = Field(default_factory=list)
    members: Dict[str, ParticipantState] = Field(default_factory=dict)
    name: Optional[str] = None
    last_message_content: Optional[str] = None
    last_message_time: Optional[str] = None
    last_sender_id: Optional[str] = None
    product_id: Optional[str] = None
    product_name: Optional[str] = None
    owner: Optional[str] = None
    created_at: str
    updated_at: Optional[str] = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any], normalizer: TimestampNormalizer) -> "Conversation":
        members: Dict[str, ParticipantState] = {}
        for key, raw in (doc.get("members") or {}).items():
            if not isinstance(raw, dict) or not raw.get("identity"):
                continue
            members[key] = ParticipantState(
                identity=raw["identity"],
                email=raw.get("email"),
                display_name=raw.get("display_name"),
                unread_count=max(0, int(raw.get("unread_count") or 0)),
            )
        last_time = doc.get("last_message_time")
        return cls(
            id=str(doc["_id"]),
            participants=list(doc.get("participants") or []),
            members=members,
            name=doc.get("name"),
            last_message_content=doc.get("last_message_content"),
            last_message_time=normalizer.normalize(last_time) if last_time is not None else None,
            last_sender_id=doc.get("last_sender_id"),
            product_id=doc.get("product_id"),
            product_name=doc.get("product_name"),
            owner=doc.get("owner"),
            created_at=normalizer.normalize(doc.get("created_at")),
            updated_at=normalizer.normalize(doc.get("updated_at")) if doc.get("updated_at") is not None else None,
        )

    def to_document(self) -> Dict[str, Any]:
        doc = self.model_dump(exclude={"id"})
        doc["_id"] = self.id
        return doc

    def member(self, identity: str) -> ParticipantState:
        return self.members.get(sanitize_identity(identity)) or ParticipantState(identity=identity)

    def member_for(self, identities: Iterable[str]) -> Optional[ParticipantState]:
        """The member entry for whichever of ``identities`` takes part here."""
        for identity in identities:
            if identity in self.participants:
                return self.member(identity)
        return None

    def counterpart_for(self, identities: Iterable[str]) -> Optional[ParticipantState]:
        mine = set(identities)
        for participant in self.participants:
            if participant not in mine:
                return self.member(participant)
        return None

    def unread_count_for(self, identities: Iterable[str]) -> int:
        member = self.member_for(identities)
        return member.unread_count if member else 0

    def with_unread(self, identities: Iterable[str], count: int) -> "Conversation":
        member = self.member_for(identities)
        if member is None:
            return self
        members = dict(self.members)
        members[sanitize_identity(member.identity)] = member.model_copy(update={"unread_count": max(0, count)})
        return self.model_copy(update={"members": members})

    def display_name_for(self, viewer: CurrentUser) -> str:
        counterpart = self.counterpart_for(viewer.identities)
        if counterpart is None:
            return self.name or "Unknown Contact"
        own_names = {value.lower() for value in viewer.identities}
        own_names.add(viewer.display_name.lower())
        if viewer.email:
            own_names.add(format_name_from_email(str(viewer.email)).lower())
        if counterpart.display_name and counterpart.display_name.lower() not in own_names:
            return counterpart.display_name
        if self.name and self.name.lower() not in own_names:
            return self.name[:1].upper() + self.name[1:]
        email = counterpart.email or (counterpart.identity if is_email(counterpart.identity) else None)
        if email:
            return format_name_from_email(email)
        return counterpart.identity


class Message(BaseModel):

    id: str
    conversation_id: str
    sender_id: str
    sender_name: str = ""
    content: str = ""
    status: MessageStatus = MessageStatus.SENT
    read_at: Optional[str] = None
    created_at: str
    updated_at: Optional[str] = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any], normalizer: TimestampNormalizer) -> "Message":
        return cls(
            id=str(doc["_id"]),
            conversation_id=str(doc.get("conversation_id") or ""),
            sender_id=doc.get("sender_id") or "",
            sender_name=doc.get("sender_name") or "",
            content=doc.get("content") or "",
            status=MessageStatus.parse(doc.get("status")),
            read_at=normalizer.normalize(doc["read_at"]) if doc.get("read_at") is not None else None,
            created_at=normalizer.normalize(doc.get("created_at")),
            updated_at=normalizer.normalize(doc["updated_at"]) if doc.get("updated_at") is not None else None,
        )

    def to_document(self) -> Dict[str, Any]:
        doc = self.model_dump(exclude={"id"}, mode="json")
        doc["_id"] = self.id
        return doc

    def is_from(self, identities: Iterable[str]) -> bool:
        return self.sender_id in set(identities)


class NewConversationRequest(BaseModel):

    other_user: str = Field(min_length=1)
    other_user_display_name: Optional[str] = None
    other_email: Optional[str] = None
    product_id: Optional[str] = None
    product_name: Optional[str] = None


class SendMessageRequest(BaseModel):

    content: Optional[str] = None
