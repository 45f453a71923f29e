from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional


@dataclass
class User:
    id: str
    email: Optional[str] = None
    user_type: str = "regular"
    password_hash: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def new(cls, user_id: str, ttl_minutes: int = 60 * 24) -> "Session":
        now = datetime.utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
        )

    @property
    def expired(self) -> bool:
        return self.expires_at <= datetime.utcnow()


@dataclass
class Chat:
    id: str
    user_id: str
    title: str
    visibility: str = "private"
    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "title": self.title,
            "visibility": self.visibility,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class Message:
    id: str
    chat_id: str
    role: str
    parts: List[dict]
    created_at: datetime = field(default_factory=datetime.utcnow)
    attachments: List[dict] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "chatId": self.chat_id,
            "role": self.role,
            "parts": self.parts,
            "attachments": self.attachments,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class StreamHandle:
    id: str
    chat_id: str
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class UsageRecord:
    user_id: str
    model: str
    request_type: str = "chat"
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    created_at: datetime = field(default_factory=datetime.utcnow)
    id: Optional[int] = None


@dataclass
class Document:
    id: str
    user_id: str
    title: str
    kind: str = "text"
    content: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


@dataclass
class Suggestion:
    id: str
    document_id: str
    document_created_at: datetime
    original_text: str
    suggested_text: str
    user_id: str
    description: Optional[str] = None
    is_resolved: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)
