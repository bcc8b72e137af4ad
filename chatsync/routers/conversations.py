from fastapi import APIRouter, Depends, HTTPException

from chatsync.schemas.chat import NewConversationRequest, SendMessageRequest
from chatsync.schemas.user import CurrentUser
from chatsync.services.chat_service import ChatService
from chatsync.utils.dependencies import get_chat_service, get_current_user


router = APIRouter(prefix="/conversations", tags=["chat"])


def _error_for(service: ChatService, conversation_id: str) -> str | None:
    session = service.state.sessions.get(conversation_id)
    if session is not None and session.error:
        return session.error
    return service.state.error


def _summary(service: ChatService, conversation) -> dict:
    data = conversation.model_dump()
    data["display_name"] = service.display_name(conversation)
    data["time_display"] = service.time_display(conversation)
    return data


@router.get("")
async def list_conversations(current_user: CurrentUser = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    conversations = await service.fetch_conversations()
    return {
        "items": [_summary(service, c) for c in conversations],
        "unread_total": service.state.unread_total,
        "error": service.state.error,
    }


@router.post("")
async def open_conversation(body: NewConversationRequest, current_user: CurrentUser = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    conversation = await service.get_or_create_conversation(
        body.other_user,
        body.other_user_display_name,
        other_email=body.other_email,
        product_id=body.product_id,
        product_name=body.product_name,
    )
    if conversation is None:
        raise HTTPException(status_code=400, detail=service.state.error)
    return _summary(service, conversation)


@router.post("/read")
async def mark_all_read(current_user: CurrentUser = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    await service.mark_all_read()
    return {"unread_total": service.state.unread_total, "error": service.state.error}


@router.get("/unread")
async def unread_total(current_user: CurrentUser = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return {"unread_total": await service.total_unread()}


@router.get("/{conversation_id}/messages")
async def list_messages(conversation_id: str, current_user: CurrentUser = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    messages = await service.get_messages(conversation_id)
    return {"items": [m.model_dump() for m in messages], "error": _error_for(service, conversation_id)}


@router.post("/{conversation_id}/messages")
async def send_message(conversation_id: str, body: SendMessageRequest, current_user: CurrentUser = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    message = await service.send_message(conversation_id, body.content)
    if message is None:
        raise HTTPException(status_code=400, detail=_error_for(service, conversation_id) or "Message content cannot be empty")
    return message.model_dump()


@router.post("/{conversation_id}/read")
async def mark_read(conversation_id: str, current_user: CurrentUser = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    await service.mark_conversation_read(conversation_id)
    return {"unread_total": service.state.unread_total, "error": service.state.error}
