"""
Pydantic models for conversations, messages and users.

Field names are snake_case in Python and camelCase on the wire.
"""
from datetime import datetime
from typing import Literal, Optional, List

from pydantic import BaseModel, ConfigDict, Field


MessageType = Literal["system", "user", "assistant"]


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Message(WireModel):
    id: Optional[int] = None
    conversation_id: Optional[int] = Field(default=None, alias="conversationId")
    type: MessageType
    content: str = ""
    reasoning_content: Optional[str] = Field(default=None, alias="reasoningContent")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    # Set only on the in-flight assistant entry of the transcript.
    pending: bool = Field(default=False, exclude=True)


class Conversation(WireModel):
    id: int
    name: str
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")
    message_count: int = Field(default=0, alias="messageCount")


class User(WireModel):
    id: int
    email: str
    username: str


class LoginRequest(BaseModel):
    email: str
    password: str


class LoginResponse(WireModel):
    access_token: str = Field(alias="accessToken")
    user: User


class ConversationCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)


class ConversationUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)


class MessageCreate(WireModel):
    conversation_id: int = Field(alias="conversationId")
    content: str = Field(min_length=1)
    type: MessageType = "user"
