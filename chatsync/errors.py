import logging
from contextlib import contextmanager
from typing import Iterator

from pymongo.errors import OperationFailure, PyMongoError


logger = logging.getLogger(__name__)

# Unauthorized, NamespaceNotFound
RESET_ERROR_CODES = {13, 26}


class ChatError(Exception):

    user_message = "Something went wrong. Please try again."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.user_message)


class TransientStoreError(ChatError):

    user_message = "Failed to load messages. Please try again."


class ConversationResetError(ChatError):

    user_message = "This conversation was reset. Start a new one."


class NotAuthenticatedError(ChatError):

    user_message = "Please sign in to use chat."


@contextmanager
def translate_store_errors(operation: str) -> Iterator[None]:
    """Re-raise driver errors from the remote store as ChatError subclasses."""
    try:
        yield
    except OperationFailure as exc:
        if exc.code in RESET_ERROR_CODES:
            logger.warning("%s: store rejected request (code %s), treating as reset", operation, exc.code)
            raise ConversationResetError(f"{operation}: {exc}") from exc
        logger.warning("%s failed: %s", operation, exc)
        raise TransientStoreError(f"{operation}: {exc}") from exc
    except PyMongoError as exc:
        logger.warning("%s failed: %s", operation, exc)
        raise TransientStoreError(f"{operation}: {exc}") from exc
