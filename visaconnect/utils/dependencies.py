from typing import Optional

import structlog
from fastapi import Depends, HTTPException, Request, WebSocket, status

from visaconnect.database.connection import mongo_db_dependency
from visaconnect.repositories.conversation_repository import ConversationRepository
from visaconnect.repositories.message_repository import MessageRepository
from visaconnect.repositories.user_repository import UserRepository
from visaconnect.schemas.user import CurrentUser
from visaconnect.services.chat_service import ChatService
from visaconnect.utils.realtime_bus import get_bus
from visaconnect.utils.security import AuthenticationError, verify_identity


logger = structlog.get_logger(__name__)


def extract_bearer_token(request: Optional[Request] = None, websocket: Optional[WebSocket] = None) -> Optional[str]:
    """
    HTTP: Authorization header.
    WebSocket: ?token= query parameter (browsers cannot set headers on a websocket).
    """
    if request is not None:
        auth_header = request.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            return auth_header.split("Bearer ", 1)[1].strip() or None
        return None
    if websocket is not None:
        return websocket.query_params.get("token")
    return None


async def get_current_user(request: Request) -> CurrentUser:
    token = extract_bearer_token(request=request)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not authenticated")
    try:
        return verify_identity(token)
    except AuthenticationError as exc:
        logger.info("token_rejected", reason=str(exc))
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc))


async def get_chat_service(db=Depends(mongo_db_dependency)) -> ChatService:
    return ChatService(
        MessageRepository(db),
        ConversationRepository(db),
        UserRepository(db),
        await get_bus(),
    )
