from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List
from datetime import datetime


class SenderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    username: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


class AttachmentCreate(BaseModel):
    file_url: str
    file_name: str = Field(..., max_length=255)
    file_type: Optional[str] = None
    file_size: Optional[int] = Field(None, ge=0)


class AttachmentOut(AttachmentCreate):
    model_config = ConfigDict(from_attributes=True)

    id: Optional[str] = None
    message_id: Optional[str] = None
    uploaded_by: str


class ReactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    message_id: str
    user_id: str
    emoji: str
    user: Optional[SenderOut] = None


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    trip_id: str
    sender_id: str
    sender: Optional[SenderOut] = None
    message: str = ""
    encrypted: bool = False
    attachments: List[AttachmentOut] = []
    reactions: List[ReactionOut] = []
    created_at: datetime
    edited_at: Optional[datetime] = None
    read_by: List[str] = []


class ReactionEvent(BaseModel):
    """Reaction added or removed by a peer"""
    id: Optional[str] = None
    message_id: str
    user_id: str
    emoji: Optional[str] = None
    action: str = "added"
    sender_id: Optional[str] = None
    user: Optional[SenderOut] = None


class MessageEditEvent(BaseModel):
    id: str
    sender_id: Optional[str] = None
    message: str
    edited_at: Optional[datetime] = None
    sender: Optional[SenderOut] = None
    attachments: Optional[List[AttachmentOut]] = None
    reactions: Optional[List[ReactionOut]] = None


class MessageDeleteEvent(BaseModel):
    id: str
    sender_id: Optional[str] = None


class TypingEvent(BaseModel):
    user_id: str
    is_typing: bool = False
    trip_id: Optional[str] = None


class ReadReceiptOut(BaseModel):
    message_id: str
    read_by: List[str]
