from fastapi import Depends, HTTPException, Request, WebSocket, status

from chatsync.context import ChatContext
from chatsync.schemas.user import CurrentUser
from chatsync.services.chat_service import ChatService


def get_chat_context(request: Request) -> ChatContext:
    return request.app.state.chat


def get_ws_chat_context(websocket: WebSocket) -> ChatContext:
    return websocket.app.state.chat


def get_current_user(context: ChatContext = Depends(get_chat_context)) -> CurrentUser:
    user = context.identity.get_current_user()
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user


def get_chat_service(context: ChatContext = Depends(get_chat_context)) -> ChatService:
    return context.service
