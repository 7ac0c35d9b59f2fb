from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime

class ConversationCreate(BaseModel):
    participant_id: int

class GroupConversationCreate(BaseModel):
    participant_ids: List[int] = Field(..., min_length=2)

class LastMessage(BaseModel):
    content: Optional[str] = None
    sender: Optional[str] = None
    timestamp: datetime

class ConversationResponse(BaseModel):
    id: str
    participants: List[str]
    isGroup: bool
    lastMessage: Optional[LastMessage] = None
    updatedAt: Optional[datetime] = None
    unreadCount: int = 0

class MessageResponse(BaseModel):
    id: str
    conversationId: str
    sender: str
    content: str
    readBy: List[str]
    createdAt: datetime

class OnlineUsersResponse(BaseModel):
    userIds: List[str]

class UserSearchResult(BaseModel):
    id: str
    name: str
    email: str
    role: str
    isOnline: bool

class MessageCreate(BaseModel):
    content: str = Field(..., min_length=1)

class MarkReadRequest(BaseModel):
    messageIds: List[int] = Field(..., min_length=1)
