import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from chatsync.schemas.chat import Message
from chatsync.utils.dependencies import get_ws_chat_context


router = APIRouter(prefix="/messages", tags=["chat"])
logger = logging.getLogger(__name__)


@router.websocket("/ws/{conversation_id}")
async def conversation_socket(websocket: WebSocket, conversation_id: str):
    context = get_ws_chat_context(websocket)
    if context.identity.get_current_user() is None:
        await websocket.close(code=4401)
        return
    await websocket.accept()
    service = context.service

    async def _forward(message: Message) -> None:
        await websocket.send_text(json.dumps({"type": "message", "message": message.model_dump(mode="json")}))

    session = await service.open_conversation(conversation_id, on_message=_forward)
    if session.error:
        await websocket.send_text(json.dumps({"type": "error", "message": session.error}))
        service.close_conversation(conversation_id, session)
        await websocket.close(code=4404)
        return
    await websocket.send_text(
        json.dumps({"type": "history", "messages": [m.model_dump(mode="json") for m in session.messages]})
    )

    try:
        while True:
            data = await websocket.receive_text()
            try:
                payload = json.loads(data)
            except ValueError:
                await websocket.send_text(json.dumps({"type": "error", "message": "Invalid message payload"}))
                continue
            if payload.get("type") == "draft":
                session.draft = payload.get("content") or ""
                continue
            sent = await service.send_message(conversation_id, payload.get("content"))
            if sent is None and session.error:
                await websocket.send_text(json.dumps({"type": "error", "message": session.error}))
                service.dismiss_error(conversation_id)
    except WebSocketDisconnect:
        logger.debug("Socket for conversation %s disconnected", conversation_id)
    finally:
        service.close_conversation(conversation_id, session)
