import asyncio
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect, status

from visaconnect.schemas.chat import (
    CreateConversationRequest,
    SendMessageRequest,
    conversation_out,
    message_out,
)
from visaconnect.schemas.user import CurrentUser
from visaconnect.services.chat_service import ChatService, ChatServiceError
from visaconnect.utils.dependencies import extract_bearer_token, get_chat_service, get_current_user
from visaconnect.utils.realtime_bus import conversation_channel, get_bus, user_conversations_channel
from visaconnect.utils.security import AuthenticationError, verify_identity


logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])

# websocket close codes
WS_UNAUTHORIZED = 4401
WS_FORBIDDEN = 4403
WS_NOT_FOUND = 4404
WS_PUSH_UNAVAILABLE = 4503


async def _load_membership(service: ChatService, conversation_id: str, user_id: str) -> dict:
    """Return the conversation or raise 404/403."""
    conversation = await service.get_conversation(conversation_id)
    if not conversation:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    if user_id not in conversation.get("participants", []):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not a participant of this conversation")
    return conversation


@router.get("/conversations")
async def list_conversations(current_user: CurrentUser = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    conversations = await service.get_user_conversations(current_user.uid)
    conversations = await service.enrich_conversations(conversations, current_user.uid)
    return {"success": True, "data": [conversation_out(c) for c in conversations]}


@router.post("/conversations")
async def create_conversation(body: CreateConversationRequest, current_user: CurrentUser = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    uid = current_user.uid
    if body.participantIds is not None:
        if len(body.participantIds) != 2:
            raise HTTPException(status_code=400, detail="Missing or invalid participant IDs")
        other_user_id = next((pid for pid in body.participantIds if pid and pid != uid), None)
    elif body.otherUserId:
        other_user_id = body.otherUserId if body.otherUserId != uid else None
    else:
        raise HTTPException(status_code=400, detail="Missing or invalid participant IDs")
    if not other_user_id:
        raise HTTPException(status_code=400, detail="Invalid participant IDs")

    try:
        conversation_id = await service.get_or_create_conversation(uid, other_user_id)
    except ChatServiceError as exc:
        raise HTTPException(status_code=500, detail="Failed to create conversation") from exc
    return {"success": True, "data": {"id": conversation_id}}


@router.get("/conversations/{conversation_id}/messages")
async def list_messages(conversation_id: str, current_user: CurrentUser = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    try:
        await _load_membership(service, conversation_id, current_user.uid)
    except ChatServiceError:
        # read path: an unavailable store looks like an empty conversation
        return {"success": True, "data": []}
    messages = await service.get_conversation_messages(conversation_id, current_user.uid)
    return {"success": True, "data": [message_out(m) for m in messages]}


@router.post("/conversations/{conversation_id}/messages")
async def send_message(conversation_id: str, body: SendMessageRequest, current_user: CurrentUser = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    content = (body.content or "").strip()
    if not content or not body.receiverId:
        raise HTTPException(status_code=400, detail="Missing required fields")
    try:
        conversation = await _load_membership(service, conversation_id, current_user.uid)
        if body.receiverId not in conversation.get("participants", []):
            raise HTTPException(status_code=400, detail="Receiver is not a participant of this conversation")
        message_id = await service.send_message(conversation_id, current_user.uid, body.receiverId, content, read=False)
    except ChatServiceError as exc:
        raise HTTPException(status_code=500, detail="Failed to send message") from exc
    return {"success": True, "data": {"messageId": message_id}}


@router.put("/conversations/{conversation_id}/read")
async def mark_read(conversation_id: str, current_user: CurrentUser = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    try:
        await _load_membership(service, conversation_id, current_user.uid)
        await service.mark_messages_as_read(conversation_id, current_user.uid)
    except ChatServiceError as exc:
        raise HTTPException(status_code=500, detail="Failed to mark messages as read") from exc
    return {"success": True}


@router.get("/unread-count")
async def unread_count(current_user: CurrentUser = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    count = await service.get_unread_count(current_user.uid)
    return {"success": True, "data": {"count": count}}


async def _authenticate_socket(websocket: WebSocket) -> Optional[CurrentUser]:
    token = extract_bearer_token(websocket=websocket)
    if not token:
        await websocket.close(code=WS_UNAUTHORIZED)
        return None
    try:
        return verify_identity(token)
    except AuthenticationError:
        await websocket.close(code=WS_UNAUTHORIZED)
        return None


async def _stream_snapshots(websocket: WebSocket, channel: str, push_snapshot) -> None:
    """Send a snapshot now and again on every bus event until the client leaves."""
    bus = await get_bus()
    # subscribe before the first snapshot so no event falls between the two
    subscription = await bus.subscribe(channel, lambda _event: push_snapshot())
    task = asyncio.create_task(subscription.run())
    try:
        await push_snapshot()
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await subscription.cancel()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as exc:
            logger.warning("snapshot_stream_failed", channel=channel, error=str(exc))


@router.websocket("/ws/conversations")
async def conversations_socket(websocket: WebSocket, service: ChatService = Depends(get_chat_service)):
    await websocket.accept()
    user = await _authenticate_socket(websocket)
    if user is None:
        return
    if not getattr(await get_bus(), "enabled", False):
        await websocket.close(code=WS_PUSH_UNAVAILABLE)
        return

    async def push_snapshot() -> None:
        conversations = await service.get_user_conversations(user.uid)
        conversations = await service.enrich_conversations(conversations, user.uid)
        await websocket.send_json({"type": "conversations", "data": [conversation_out(c) for c in conversations]})

    logger.info("push_conversations_opened", user_id=user.uid)
    await _stream_snapshots(websocket, user_conversations_channel(user.uid), push_snapshot)


@router.websocket("/ws/conversations/{conversation_id}/messages")
async def messages_socket(websocket: WebSocket, conversation_id: str, service: ChatService = Depends(get_chat_service)):
    await websocket.accept()
    user = await _authenticate_socket(websocket)
    if user is None:
        return
    if not getattr(await get_bus(), "enabled", False):
        await websocket.close(code=WS_PUSH_UNAVAILABLE)
        return
    try:
        conversation = await service.get_conversation(conversation_id)
    except ChatServiceError:
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return
    if not conversation:
        await websocket.close(code=WS_NOT_FOUND)
        return
    if user.uid not in conversation.get("participants", []):
        await websocket.close(code=WS_FORBIDDEN)
        return

    async def push_snapshot() -> None:
        messages = await service.get_conversation_messages(conversation_id, user.uid)
        await websocket.send_json({"type": "messages", "data": [message_out(m) for m in messages]})

    logger.info("push_messages_opened", user_id=user.uid, conversation_id=conversation_id)
    await _stream_snapshots(websocket, conversation_channel(conversation_id), push_snapshot)
