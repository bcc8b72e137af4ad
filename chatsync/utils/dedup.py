import logging
from typing import Dict, Iterable, List, Optional

from chatsync.schemas.chat import Conversation
from chatsync.utils.identity import is_email, sanitize_identity
from chatsync.utils.timestamps import sort_key


logger = logging.getLogger(__name__)


def sort_by_recent(conversations: Iterable[Conversation]) -> List[Conversation]:
    return sorted(conversations, key=lambda c: sort_key(c.last_message_time), reverse=True)


def _email_aliases(conversations: Iterable[Conversation]) -> Dict[str, str]:
    """email -> opaque id, from member entries that record both."""
    aliases: Dict[str, str] = {}
    for conversation in conversations:
        for participant in conversation.participants:
            if is_email(participant):
                continue
            member = conversation.members.get(sanitize_identity(participant))
            if member and member.email:
                aliases.setdefault(member.email.lower(), participant)
    return aliases


def _counterpart_key(conversation: Conversation, mine: set, aliases: Dict[str, str]) -> Optional[str]:
    others = [p for p in conversation.participants if p not in mine]
    if not others:
        return None
    other = others[0]
    if is_email(other):
        return aliases.get(other.lower(), other.lower())
    return other


def dedupe(conversations: List[Conversation], current_user_identities: Iterable[str]) -> List[Conversation]:
    """Collapse conversations with the same counterpart into the most recent one.

    Conversations without an identifiable counterpart are left out of the
    grouped result.  If nothing survives grouping the input is returned as-is.
    """
    mine = set(current_user_identities)
    aliases = _email_aliases(conversations)
    winners: Dict[str, Conversation] = {}
    for conversation in conversations:
        key = _counterpart_key(conversation, mine, aliases)
        if key is None:
            logger.debug("Conversation %s has no counterpart for %s", conversation.id, sorted(mine))
            continue
        current = winners.get(key)
        if current is None or sort_key(conversation.last_message_time) > sort_key(current.last_message_time):
            if current is not None:
                logger.debug("Conversation %s supersedes duplicate %s", conversation.id, current.id)
            winners[key] = conversation
    if not winners:
        return list(conversations)
    return sort_by_recent(winners.values())
