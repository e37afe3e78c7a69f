"""Conversation and message models."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from raven_engine.models.enums import ConversationStatus, MessageStatus, MessageType


class Message(BaseModel):
    id: str
    conversation_id: str
    sender_id: str
    content: str
    type: MessageType
    status: MessageStatus
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class Conversation(BaseModel):
    """Chat between a shipment owner (user1) and a counterpart (user2)."""

    id: str
    shipment_id: str
    user1_id: str
    user2_id: str
    opened_by: str
    status: ConversationStatus
    unread_user1: int
    unread_user2: int
    last_message: Optional[str] = None
    last_message_at: Optional[datetime] = None
    version: int

    class Config:
        from_attributes = True


class InboxEntry(BaseModel):
    """Conversation as seen by one participant."""

    conversation: Conversation
    other_user_id: str
    unread_count: int
    can_match: bool


class ConversationCreateRequest(BaseModel):
    shipment_id: str
    recipient_id: Optional[str] = None
    initial_message: Optional[str] = None


class MessageCreateRequest(BaseModel):
    content: str = Field(min_length=1)
    type: MessageType = MessageType.TEXT
