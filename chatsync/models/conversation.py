from typing import Dict, List, Optional, TypedDict


class MemberDocument(TypedDict, total=False):
    identity: str
    email: Optional[str]
    display_name: Optional[str]
    unread_count: int


class ConversationDocument(TypedDict, total=False):
    _id: str
    participants: List[str]
    # sanitized identity -> per-participant state
    members: Dict[str, MemberDocument]
    name: Optional[str]
    last_message_content: Optional[str]
    last_message_time: Optional[str]
    last_sender_id: Optional[str]
    product_id: Optional[str]
    product_name: Optional[str]
    owner: Optional[str]
    created_at: str
    updated_at: str
