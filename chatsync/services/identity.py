import logging
from typing import Optional, Protocol

from chatsync.schemas.user import CurrentUser


logger = logging.getLogger(__name__)


class IdentityProvider(Protocol):

    def get_current_user(self) -> Optional[CurrentUser]: ...


class StaticIdentityProvider:
    """Holds whoever the application shell signed in; chat code only reads it."""

    def __init__(self, user: Optional[CurrentUser] = None) -> None:
        self._user = user

    def get_current_user(self) -> Optional[CurrentUser]:
        return self._user

    def sign_in(self, user: CurrentUser) -> None:
        logger.info("Chat identity set to %s", user.primary_identity)
        self._user = user

    def sign_out(self) -> None:
        self._user = None
