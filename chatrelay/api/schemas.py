from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Annotated, Any, List, Literal, Optional, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatrelay.config import ChatModelId, Visibility

MAX_TEXT_PART_LENGTH = 2000
MAX_PARTS = 20
MAX_FILE_NAME_LENGTH = 100


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class TextPart(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["text"]
    text: str = Field(..., min_length=1, max_length=MAX_TEXT_PART_LENGTH)

    @field_validator("text")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        return _normalize_unicode(value)


class FilePart(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["file"]
    mediaType: str = Field(..., min_length=1, max_length=255)
    name: str = Field(..., min_length=1, max_length=MAX_FILE_NAME_LENGTH)
    url: str = Field(..., max_length=2048)

    @field_validator("url")
    @classmethod
    def _require_http_url(cls, value: str) -> str:
        if not re.match(r"^https?://", value, re.IGNORECASE):
            raise ValueError("url must be an http(s) URL")
        return value


MessagePartIn = Annotated[Union[TextPart, FilePart], Field(discriminator="type")]


class ChatMessageIn(BaseModel):
    id: UUID
    role: Literal["user"]
    parts: List[MessagePartIn] = Field(..., min_length=1, max_length=MAX_PARTS)


class ChatRequest(BaseModel):
    id: UUID
    message: ChatMessageIn
    selectedChatModel: ChatModelId = ChatModelId.CHAT
    selectedVisibilityType: Visibility = Visibility.PRIVATE


_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if not _EMAIL_PATTERN.match(normalized):
        raise ValueError("invalid email address")
    return normalized


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=8, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class AuthResponse(BaseModel):
    user_id: str
    user_type: str
    session_id: str
    session_expires_at: datetime
    token_type: str = "bearer"
