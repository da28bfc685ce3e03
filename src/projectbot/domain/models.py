from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


Role = Literal["user", "admin"]
Sender = Literal["user", "assistant"]
DeliveryMode = Literal["buffered", "simulated-stream", "true-stream"]

DELIVERY_MODES: tuple[str, ...] = ("buffered", "simulated-stream", "true-stream")


class WireModel(BaseModel):
    """Base for JSON payloads: snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class LoginRequest(WireModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class RegisterRequest(WireModel):
    username: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=6)
    display_name: str = Field(min_length=1, max_length=120)
    initial: Optional[str] = Field(default=None, max_length=3)


class UserOut(WireModel):
    id: int
    username: str
    display_name: str
    role: Role
    initial: str


class AuthSession(WireModel):
    """Authenticated dashboard identity, independent of cookie or bearer transport."""

    session_id: str
    user_id: int
    username: str
    display_name: str
    initials: str
    role: Role
    issued_at: datetime

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def to_user(self) -> UserOut:
        return UserOut(
            id=self.user_id,
            username=self.username,
            display_name=self.display_name,
            role=self.role,
            initial=self.initials,
        )


class LoginResponse(UserOut):
    token: str
    expires_in: int


class SummarySchedule(WireModel):
    enabled: bool = False
    time: str = "09:00"
    day_of_week: int = Field(default=1, ge=0, le=6)

    @field_validator("time")
    @classmethod
    def _check_time(cls, value: str) -> str:
        parts = value.split(":")
        if len(parts) != 2 or not all(p.isdigit() and len(p) == 2 for p in parts):
            raise ValueError("time must be HH:MM")
        hour, minute = int(parts[0]), int(parts[1])
        if hour > 23 or minute > 59:
            raise ValueError("time must be HH:MM")
        return value


class ChatbotCreate(WireModel):
    name: str = Field(min_length=1, max_length=200)
    slack_channel_id: str = Field(min_length=1, max_length=64)
    asana_project_id: Optional[str] = None
    require_auth: bool = False
    system_prompt: Optional[str] = None
    output_format: Optional[str] = None
    summary_schedule: Optional[SummarySchedule] = None


class ChatbotUpdate(WireModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    slack_channel_id: Optional[str] = Field(default=None, min_length=1, max_length=64)
    asana_project_id: Optional[str] = None
    is_active: Optional[bool] = None
    require_auth: Optional[bool] = None
    system_prompt: Optional[str] = None
    output_format: Optional[str] = None
    summary_schedule: Optional[SummarySchedule] = None


class Chatbot(WireModel):
    id: int
    name: str
    slack_channel_id: str
    asana_project_id: Optional[str] = None
    created_by_id: int
    public_token: str
    is_active: bool = True
    require_auth: bool = False
    system_prompt: Optional[str] = None
    output_format: Optional[str] = None
    summary_schedule: Optional[SummarySchedule] = None
    created_at: Optional[datetime] = None


class PublicChatbot(WireModel):
    id: int
    name: str
    public_token: str
    is_active: bool
    require_auth: bool


class ChatRequest(WireModel):
    message: str = Field(min_length=1)
    token: Optional[str] = None
    mode: Optional[DeliveryMode] = None


class ChatMessage(WireModel):
    id: int
    chatbot_id: int
    sender: Sender
    body: str
    citation: Optional[str] = None
    created_at: datetime


class ChatReply(WireModel):
    user_message: ChatMessage
    bot_message: ChatMessage


class MutationAttemptOut(WireModel):
    attempt_id: str
    operation: str
    actor_id: Optional[int] = None
    primary_outcome: str
    primary_error_code: Optional[str] = None
    primary_error: Optional[str] = None
    emergency_outcome: Optional[str] = None
    emergency_error: Optional[str] = None
    entity_id: Optional[int] = None
    used_fallback: bool = False
    started_at: datetime
    finished_at: Optional[datetime] = None


class DatabaseStatus(WireModel):
    status: str
    dialect: str
    tables: dict
    error: Optional[str] = None
