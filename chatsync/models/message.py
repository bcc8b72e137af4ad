from typing import Literal, Optional, TypedDict


class MessageDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    sender_id: str
    sender_name: str
    content: str
    # SENT -> DELIVERED -> READ, never backwards
    status: Literal["SENT", "DELIVERED", "READ"]
    read_at: Optional[str]
    created_at: str
    updated_at: str
