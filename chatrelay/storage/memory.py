from __future__ import annotations

import json
import threading
import uuid
from dataclasses import asdict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from chatrelay.logging import get_logger
from chatrelay.message_parts import normalize_parts
from chatrelay.storage.errors import ConstraintViolation
from chatrelay.storage.models import (
    Chat,
    Document,
    Message,
    Session,
    StreamHandle,
    Suggestion,
    UsageRecord,
    User,
)


class MemoryStore:
    """In-memory backing store used for development and tests.

    When ``fs_root`` is given the state is mirrored to
    ``<fs_root>/state/memory_store.json`` after every write and reloaded on
    construction.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.chats: Dict[str, Chat] = {}
        self.messages: Dict[str, List[Message]] = {}
        self.streams: Dict[str, StreamHandle] = {}
        self.usage_logs: List[UsageRecord] = []
        self.documents: Dict[str, List[Document]] = {}
        self.suggestions: List[Suggestion] = []
        self._usage_seq = 1
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # users
    def create_user(
        self,
        email: Optional[str] = None,
        *,
        user_type: str = "regular",
        password_hash: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            if email and any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                user_type=user_type,
                password_hash=password_hash,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    # sessions
    def create_session(self, user_id: str, ttl_minutes: int = 60 * 24) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(user_id=user_id, ttl_minutes=ttl_minutes)
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def revoke_session(self, session_id: str) -> None:
        with self._data_lock:
            self.sessions.pop(session_id, None)
            self._persist_state()

    # chats
    def save_chat(
        self, chat_id: str, user_id: str, title: str, visibility: str = "private"
    ) -> Chat:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("chat owner missing", {"user_id": user_id})
            if chat_id in self.chats:
                raise ConstraintViolation("chat already exists", {"chat_id": chat_id})
            chat = Chat(id=chat_id, user_id=user_id, title=title, visibility=visibility)
            self.chats[chat_id] = chat
            self.messages[chat_id] = []
            self._persist_state()
            return chat

    def get_chat_by_id(self, chat_id: str) -> Optional[Chat]:
        with self._data_lock:
            return self.chats.get(chat_id)

    def delete_chat_by_id(self, chat_id: str) -> Optional[Chat]:
        with self._data_lock:
            chat = self.chats.pop(chat_id, None)
            if chat is None:
                return None
            self.messages.pop(chat_id, None)
            for stream_id in [sid for sid, s in self.streams.items() if s.chat_id == chat_id]:
                self.streams.pop(stream_id, None)
            self._persist_state()
            return chat

    # messages
    def list_messages_by_chat_id(self, chat_id: str) -> List[Message]:
        with self._data_lock:
            return sorted(self.messages.get(chat_id, []), key=lambda m: m.created_at)

    def save_messages(self, messages: Iterable[Message]) -> List[Message]:
        batch = list(messages)
        with self._data_lock:
            # validate the whole batch before writing any row
            for msg in batch:
                if msg.chat_id not in self.chats:
                    raise ConstraintViolation("chat not found", {"chat_id": msg.chat_id})
            existing_ids = {
                m.id for msgs in self.messages.values() for m in msgs
            }
            for msg in batch:
                if msg.id in existing_ids:
                    raise ConstraintViolation("message already exists", {"message_id": msg.id})
                existing_ids.add(msg.id)
            saved = []
            for msg in batch:
                stored = Message(
                    id=msg.id,
                    chat_id=msg.chat_id,
                    role=msg.role,
                    parts=normalize_parts(msg.parts),
                    created_at=msg.created_at,
                    attachments=list(msg.attachments or []),
                )
                self.messages.setdefault(msg.chat_id, []).append(stored)
                saved.append(stored)
            self._persist_state()
            return saved

    def count_messages_by_user(self, user_id: str, window_hours: int = 24) -> int:
        """Count user-role messages the user sent in the trailing window."""
        cutoff = datetime.utcnow() - timedelta(hours=window_hours)
        with self._data_lock:
            owned = {cid for cid, chat in self.chats.items() if chat.user_id == user_id}
            return sum(
                1
                for cid in owned
                for msg in self.messages.get(cid, [])
                if msg.role == "user" and msg.created_at >= cutoff
            )

    # streams
    def create_stream_id(self, stream_id: str, chat_id: str) -> StreamHandle:
        with self._data_lock:
            if chat_id not in self.chats:
                raise ConstraintViolation("chat not found", {"chat_id": chat_id})
            handle = StreamHandle(id=stream_id, chat_id=chat_id)
            self.streams[stream_id] = handle
            self._persist_state()
            return handle

    def list_stream_ids_by_chat_id(self, chat_id: str) -> List[str]:
        with self._data_lock:
            handles = [s for s in self.streams.values() if s.chat_id == chat_id]
            handles.sort(key=lambda s: s.created_at)
            return [s.id for s in handles]

    # usage
    def save_usage_log(self, record: UsageRecord) -> UsageRecord:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation("usage owner missing", {"user_id": record.user_id})
            stored = UsageRecord(**{**asdict(record), "id": self._usage_seq})
            self._usage_seq += 1
            self.usage_logs.append(stored)
            self._persist_state()
            return stored

    def count_usage_by_user(self, user_id: str, window_hours: int = 24) -> int:
        cutoff = datetime.utcnow() - timedelta(hours=window_hours)
        with self._data_lock:
            return sum(
                1 for row in self.usage_logs if row.user_id == user_id and row.created_at >= cutoff
            )

    # documents
    def save_document(
        self,
        document_id: str,
        user_id: str,
        title: str,
        kind: str,
        content: Optional[str],
    ) -> Document:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("document owner missing", {"user_id": user_id})
            doc = Document(
                id=document_id, user_id=user_id, title=title, kind=kind, content=content
            )
            self.documents.setdefault(document_id, []).append(doc)
            self._persist_state()
            return doc

    def get_document_by_id(self, document_id: str) -> Optional[Document]:
        """Return the latest version of a document."""
        with self._data_lock:
            versions = self.documents.get(document_id)
            return versions[-1] if versions else None

    def save_suggestions(self, suggestions: Iterable[Suggestion]) -> List[Suggestion]:
        batch = list(suggestions)
        with self._data_lock:
            for suggestion in batch:
                if suggestion.document_id not in self.documents:
                    raise ConstraintViolation(
                        "document not found", {"document_id": suggestion.document_id}
                    )
            self.suggestions.extend(batch)
            self._persist_state()
            return batch

    def list_suggestions_by_document_id(self, document_id: str) -> List[Suggestion]:
        with self._data_lock:
            return [s for s in self.suggestions if s.document_id == document_id]

    def close(self) -> None:
        return None

    # persistence
    @staticmethod
    def _serialize(obj: Any) -> dict:
        data = asdict(obj)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data

    @staticmethod
    def _parse_dates(data: dict, *keys: str) -> dict:
        parsed = dict(data)
        for key in keys:
            if parsed.get(key):
                parsed[key] = datetime.fromisoformat(parsed[key])
        return parsed

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize(u) for u in self.users.values()],
            "sessions": [self._serialize(s) for s in self.sessions.values()],
            "chats": [self._serialize(c) for c in self.chats.values()],
            "messages": [
                self._serialize(m) for msgs in self.messages.values() for m in msgs
            ],
            "streams": [self._serialize(s) for s in self.streams.values()],
            "usage_logs": [self._serialize(u) for u in self.usage_logs],
            "documents": [
                self._serialize(d) for docs in self.documents.values() for d in docs
            ],
            "suggestions": [self._serialize(s) for s in self.suggestions],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            u["id"]: User(**self._parse_dates(u, "created_at")) for u in data.get("users", [])
        }
        self.sessions = {
            s["id"]: Session(**self._parse_dates(s, "created_at", "expires_at"))
            for s in data.get("sessions", [])
        }
        self.chats = {
            c["id"]: Chat(**self._parse_dates(c, "created_at")) for c in data.get("chats", [])
        }
        self.messages = {chat_id: [] for chat_id in self.chats}
        for raw in data.get("messages", []):
            msg = Message(**self._parse_dates(raw, "created_at"))
            self.messages.setdefault(msg.chat_id, []).append(msg)
        self.streams = {
            s["id"]: StreamHandle(**self._parse_dates(s, "created_at"))
            for s in data.get("streams", [])
        }
        self.usage_logs = [
            UsageRecord(**self._parse_dates(u, "created_at")) for u in data.get("usage_logs", [])
        ]
        self._usage_seq = max((u.id or 0 for u in self.usage_logs), default=0) + 1
        self.documents = {}
        for raw in data.get("documents", []):
            doc = Document(**self._parse_dates(raw, "created_at"))
            self.documents.setdefault(doc.id, []).append(doc)
        self.suggestions = [
            Suggestion(**self._parse_dates(s, "created_at", "document_created_at"))
            for s in data.get("suggestions", [])
        ]
        self.logger.info(
            "memory_store_loaded", users=len(self.users), chats=len(self.chats)
        )
        return True
