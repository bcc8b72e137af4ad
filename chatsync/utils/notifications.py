import asyncio
import logging
from typing import Dict, Optional

from chatsync.config import Settings
from chatsync.utils.identity import sanitize_identity


logger = logging.getLogger(__name__)

BODY_LIMIT = 60


def truncate_body(content: str, limit: int = BODY_LIMIT) -> str:
    if len(content) <= limit:
        return content
    return content[: limit - 3] + "..."


def new_message_payload(conversation_id: str, sender_name: str) -> Dict[str, str]:
    return {"conversation_id": conversation_id, "sender_name": sender_name, "type": "NEW_MESSAGE"}


def recipient_topic(recipient: str) -> str:
    return f"user_{sanitize_identity(recipient)}"


class NoopPush:

    enabled = False

    async def notify(self, recipient: str, title: str, body: str, payload: Optional[Dict[str, str]] = None) -> None:
        logger.debug("Push disabled; would notify %s: %s", recipient, title)


class FcmPush:

    enabled = True

    def __init__(self, service_account_file: str, project_id: str) -> None:
        from pyfcm import FCMNotification

        self._client = FCMNotification(service_account_file=service_account_file, project_id=project_id)

    async def notify(self, recipient: str, title: str, body: str, payload: Optional[Dict[str, str]] = None) -> None:
        # pyfcm is blocking
        try:
            await asyncio.to_thread(
                self._client.notify,
                topic_name=recipient_topic(recipient),
                notification_title=title,
                notification_body=body,
                data_payload=payload or {},
            )
        except Exception as exc:
            logger.warning("FCM notification to %s failed: %s", recipient, exc)


def build_notifier(settings: Settings):
    if not (settings.fcm_service_account_file and settings.fcm_project_id):
        logger.info("FCM credentials not configured, notifications are disabled")
        return NoopPush()
    return FcmPush(settings.fcm_service_account_file, settings.fcm_project_id)
