from datetime import datetime
from typing import Literal

from pydantic import BaseModel, EmailStr, Field

RoomType = Literal["public", "private", "group"]
MessageType = Literal["text", "image", "file", "system"]


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6, max_length=128)
    name: str = Field(min_length=1, max_length=100)


class UserOut(BaseModel):
    id: int
    email: EmailStr
    name: str
    role: str
    avatar: str | None = None
    class Config:
        from_attributes = True


class LoginIn(BaseModel):
    email: EmailStr
    password: str


# ---------------------- ROOMS ----------------------
class RoomCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100, pattern=r"^[\w-]+$")
    display_name: str | None = Field(default=None, max_length=120)
    description: str | None = None
    type: RoomType = "public"


class RoomOut(BaseModel):
    id: int
    name: str
    display_name: str
    description: str | None = None
    type: str
    member_count: int
    last_message_at: datetime | None = None
    is_active: bool
    created_by: int
    created_at: datetime
    class Config:
        from_attributes = True


class RoomSummary(RoomOut):
    created_by_name: str | None = None
    user_role: str | None = None
    joined_at: datetime | None = None
    last_message: str | None = None
    unread_count: int = 0


class MemberOut(BaseModel):
    id: int
    name: str
    avatar: str | None = None
    role: str
    joined_at: datetime
    last_seen: datetime | None = None


class RoomDetail(BaseModel):
    room: RoomSummary
    members: list[MemberOut]


# ---------------------- MESSAGES ----------------------
class MessageCreate(BaseModel):
    room: str = Field(min_length=1, max_length=100)
    body: str = Field(alias="message", min_length=1, max_length=2000)
    message_type: MessageType = Field(default="text", alias="messageType")
    reply_to: int | None = Field(default=None, alias="replyTo", ge=1)
    attachment_url: str | None = Field(default=None, alias="attachmentUrl", max_length=1000)
    attachment_name: str | None = Field(default=None, alias="attachmentName", max_length=255)
    attachment_size: int | None = Field(default=None, alias="attachmentSize", ge=0)
    class Config:
        populate_by_name = True


class MessageUpdate(BaseModel):
    body: str = Field(alias="message", min_length=1, max_length=2000)
    class Config:
        populate_by_name = True


class ReactionIn(BaseModel):
    emoji: str = Field(min_length=1, max_length=10)


class MessageOut(BaseModel):
    id: int
    room: str
    user_id: int
    body: str
    message_type: str
    attachment_url: str | None = None
    attachment_name: str | None = None
    attachment_size: int | None = None
    reply_to: int | None = None
    reactions: dict[str, list[int]] = Field(default_factory=dict)
    is_edited: bool = False
    edited_at: datetime | None = None
    created_at: datetime
    user_name: str | None = None
    user_avatar: str | None = None
    reply_message: str | None = None
    reply_user_name: str | None = None


class ReactionOut(BaseModel):
    id: int
    room: str
    emoji: str
    user_id: int
    added: bool
    reactions: dict[str, list[int]]


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    totalPages: int
