"""Conversation identity resolution.

A person can show up in persisted records either by their opaque user id or by
their email, depending on which client wrote the record.  Conversation keys are
built from whatever representation the caller has, so this module is where the
two schemes are reconciled.
"""

import logging
import re
from typing import TYPE_CHECKING, Iterable, Optional, Sequence

if TYPE_CHECKING:
    from chatsync.schemas.chat import Conversation


logger = logging.getLogger(__name__)

ID_SEPARATOR = "_"

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_UNSAFE_KEY_CHARS = re.compile(r"[.@]")


def canonical_id(user_a: str, user_b: str) -> str:
    return ID_SEPARATOR.join(sorted([user_a, user_b]))


def sanitize_identity(identity: str) -> str:
    """Field-name-safe form of an identity (no '.' or '@')."""
    return _UNSAFE_KEY_CHARS.sub("_", identity)


def is_email(value: Optional[str]) -> bool:
    return bool(value) and bool(_EMAIL_RE.match(value))


def format_name_from_email(value: str) -> str:
    local = value.split("@", 1)[0] if "@" in value else value
    return local[:1].upper() + local[1:]


def resolve_actual_counterpart(
    raw_counterpart_ref: str,
    current_user_id: str | Sequence[str],
    existing_conversations: Iterable["Conversation"],
) -> str:
    """Return the identity to key a conversation with ``raw_counterpart_ref`` by.

    If the reference is an email and one of the known conversations already
    stores that person under an opaque id (with the same email recorded on the
    member entry), the opaque id is returned so get-or-create lands on the
    existing thread.  Otherwise the reference is returned unchanged.
    """
    if not is_email(raw_counterpart_ref):
        return raw_counterpart_ref
    mine = {current_user_id} if isinstance(current_user_id, str) else set(current_user_id)
    target = raw_counterpart_ref.lower()
    for conversation in existing_conversations:
        for participant in conversation.participants:
            if participant in mine or is_email(participant):
                continue
            member = conversation.members.get(sanitize_identity(participant))
            if member and member.email and member.email.lower() == target:
                logger.debug(
                    "Resolved %s to existing participant %s via conversation %s",
                    raw_counterpart_ref, participant, conversation.id,
                )
                return participant
    logger.debug("No existing conversation links %s to an opaque id", raw_counterpart_ref)
    return raw_counterpart_ref
