import asyncio
import json
import logging
from fastapi import APIRouter, Depends, Query, Response, WebSocket, WebSocketDisconnect, status
from sqlalchemy import or_, func
from sqlalchemy.orm import Session
from typing import List, Optional
from app.database import get_db
from app.models.user import User
from app.services.auth import get_current_user
from app.services.conversations import ConversationRegistry
from app.services.message_router import MessageRouter
from app.services.realtime import realtime_gateway
from app.schemas.messaging import (
    ConversationCreate, GroupConversationCreate, ConversationResponse, MessageResponse,
    OnlineUsersResponse, UserSearchResult, MessageCreate, MarkReadRequest
)
from app.utils.timezone import get_clock

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/messaging", tags=["Messaging"])
ws_router = APIRouter(tags=["Messaging"])

def _conversation_response(conversation, unread_count: int = 0) -> ConversationResponse:
    return ConversationResponse(**conversation.to_dict(), unreadCount=unread_count)

@router.get("/conversations", response_model=List[ConversationResponse])
def list_conversations(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Conversations of the current user, most recent activity first."""
    registry = ConversationRegistry(db)
    return [_conversation_response(c, unread) for c, unread in registry.list_for(current_user.user_id)]

@router.post("/conversations", response_model=ConversationResponse)
def create_or_get_conversation(
    request: ConversationCreate,
    response: Response,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Return the two-party conversation with ``participant_id``, creating it if needed."""
    registry = ConversationRegistry(db)
    conversation, created = registry.find_or_create(current_user.user_id, request.participant_id)
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return _conversation_response(conversation, registry.unread_count(conversation.conversation_id, current_user.user_id))

@router.post("/conversations/group", response_model=ConversationResponse, status_code=status.HTTP_201_CREATED)
def create_group_conversation(
    request: GroupConversationCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    conversation = ConversationRegistry(db).create_group(current_user.user_id, request.participant_ids)
    return _conversation_response(conversation)

@router.get("/conversations/{conversation_id}", response_model=ConversationResponse)
def get_conversation(
    conversation_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    registry = ConversationRegistry(db)
    conversation = registry.get_for_participant(conversation_id, current_user.user_id)
    return _conversation_response(conversation, registry.unread_count(conversation_id, current_user.user_id))

@router.delete("/conversations/{conversation_id}")
def leave_conversation(
    conversation_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Leave a conversation; a two-party conversation is deleted with its messages."""
    deleted = ConversationRegistry(db).remove_participant(conversation_id, current_user.user_id)
    realtime_gateway.leave_room(conversation_id, current_user.user_id)
    return {"conversationId": str(conversation_id), "deleted": deleted}

@router.get("/conversations/{conversation_id}/messages", response_model=List[MessageResponse])
def get_messages(
    conversation_id: int,
    limit: Optional[int] = Query(None, ge=1),
    before: Optional[int] = Query(None, description="Only messages older than this message id"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Message history in the order it was sent."""
    message_router = MessageRouter(db, transport=realtime_gateway)
    messages = message_router.history(conversation_id, current_user.user_id, limit=limit, before=before)
    return [MessageResponse(**m.to_dict()) for m in messages]

@router.post("/conversations/{conversation_id}/messages", response_model=MessageResponse,
             status_code=status.HTTP_201_CREATED)
async def send_message(
    conversation_id: int,
    request: MessageCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock=Depends(get_clock)
):
    """Send over HTTP; joined websocket members receive it like any other message."""
    message = await MessageRouter(db, transport=realtime_gateway, clock=clock).send(
        current_user.user_id, conversation_id, request.content
    )
    return MessageResponse(**message.to_dict())

@router.post("/messages/read")
async def mark_messages_read(
    request: MarkReadRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock=Depends(get_clock)
):
    newly_read = await MessageRouter(db, transport=realtime_gateway, clock=clock).mark_read(
        current_user.user_id, request.messageIds
    )
    return {"marked": sum(len(ids) for ids in newly_read.values())}

@router.get("/online", response_model=OnlineUsersResponse)
def get_online_users(current_user: User = Depends(get_current_user)):
    return OnlineUsersResponse(userIds=sorted(str(uid) for uid in realtime_gateway.presence.list_online()))

@router.get("/users/search", response_model=List[UserSearchResult])
def search_users(
    q: str = Query(..., min_length=1),
    limit: int = Query(20, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Find people to message by name or email."""
    term = f"%{q}%"
    users = db.query(User).filter(
        User.user_id != current_user.user_id,
        or_(
            User.user_fname.ilike(term),
            User.user_lname.ilike(term),
            User.user_email.ilike(term),
            (User.user_fname + " " + User.user_lname).ilike(term),
        )
    ).order_by(func.lower(User.user_fname), User.user_id).limit(limit).all()
    presence = realtime_gateway.presence
    return [
        UserSearchResult(
            id=str(u.user_id),
            name=u.display_name,
            email=u.user_email,
            role=u.user_role,
            isOnline=presence.is_online(u.user_id),
        )
        for u in users
    ]

@ws_router.websocket("/ws/messaging")
async def messaging_socket(websocket: WebSocket, token: Optional[str] = Query(None)):
    """Realtime messaging channel; authenticate with ``?token=<JWT>``."""
    identity = await asyncio.to_thread(realtime_gateway.identify, token)

    if identity is None:
        logger.warning("WebSocket rejected: invalid or missing token")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    await realtime_gateway.on_connect(identity, websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except ValueError:
                frame = None
            if not isinstance(frame, dict):
                await realtime_gateway.emit_to_identity(identity, "error", {
                    "detail": "Frames must be JSON objects", "code": "invalid_frame"
                })
                continue
            await realtime_gateway.on_client_event(identity, frame.get("event"), frame.get("data"))
    except WebSocketDisconnect:
        pass
    finally:
        await realtime_gateway.on_disconnect(identity, websocket)
