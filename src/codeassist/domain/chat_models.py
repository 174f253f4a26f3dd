from __future__ import annotations

from datetime import UTC, datetime
from typing import List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


Role = Literal["user", "assistant"]


def as_utc(value: datetime) -> datetime:
    """Treat timestamps written without an offset as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class MessageMetadata(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    language: Optional[str] = None
    tokens_used: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("tokens_used", "tokensUsed")
    )
    model: Optional[str] = None


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    role: Role
    content: str
    timestamp: datetime
    metadata: Optional[MessageMetadata] = None

    @field_validator("timestamp")
    @classmethod
    def _timestamp_as_utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class SessionContext(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_path: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("project_path", "projectPath")
    )
    language: Optional[str] = None
    theme: Optional[str] = None


class ConversationSession(BaseModel):
    """A titled conversation; ``messages`` is append-only."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1)
    title: str
    messages: List[ChatMessage]
    created_at: datetime = Field(validation_alias=AliasChoices("created_at", "createdAt"))
    updated_at: datetime = Field(validation_alias=AliasChoices("updated_at", "updatedAt"))
    context: Optional[SessionContext] = None
    # False once a caller supplied the title explicitly
    auto_title: bool = True

    @field_validator("created_at", "updated_at")
    @classmethod
    def _timestamps_as_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @model_validator(mode="after")
    def _check_updated_after_created(self) -> "ConversationSession":
        if self.updated_at < self.created_at:
            raise ValueError("updated_at must not be earlier than created_at")
        return self


class SessionStats(BaseModel):
    total_messages: int
    user_messages: int
    assistant_messages: int
    total_tokens: int
    duration_ms: int
    created_at: datetime
    updated_at: datetime


class GenerationRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    prompt: str = Field(min_length=1)
    language: Optional[str] = None
    context: Optional[str] = None
    max_tokens: Optional[int] = Field(default=None, ge=1, le=8000)
    temperature: Optional[float] = Field(default=None, ge=0, le=2)


class ResultMetadata(BaseModel):
    tokens_used: int = 0
    model: str
    timestamp: datetime


class CodeResult(BaseModel):
    code: str
    language: str
    metadata: Optional[ResultMetadata] = None
