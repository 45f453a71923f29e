from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS "User" (
        id UUID PRIMARY KEY,
        email VARCHAR(64) UNIQUE,
        password VARCHAR(255),
        user_type VARCHAR(16) NOT NULL DEFAULT 'regular',
        created_at TIMESTAMP NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS "Session" (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES "User"(id) ON DELETE CASCADE,
        created_at TIMESTAMP NOT NULL DEFAULT now(),
        expires_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS "Chat" (
        id UUID PRIMARY KEY,
        created_at TIMESTAMP NOT NULL DEFAULT now(),
        title TEXT NOT NULL,
        user_id UUID NOT NULL REFERENCES "User"(id),
        visibility VARCHAR(16) NOT NULL DEFAULT 'private'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS "Message_v2" (
        id UUID PRIMARY KEY,
        chat_id UUID NOT NULL REFERENCES "Chat"(id) ON DELETE CASCADE,
        role VARCHAR(16) NOT NULL,
        parts JSONB NOT NULL,
        attachments JSONB NOT NULL DEFAULT '[]'::jsonb,
        created_at TIMESTAMP NOT NULL DEFAULT now()
    )
    """,
    'CREATE INDEX IF NOT EXISTS message_v2_chat_created_idx ON "Message_v2" (chat_id, created_at)',
    """
    CREATE TABLE IF NOT EXISTS "Stream" (
        id UUID PRIMARY KEY,
        chat_id UUID NOT NULL REFERENCES "Chat"(id) ON DELETE CASCADE,
        created_at TIMESTAMP NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS usage_log (
        id SERIAL PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES "User"(id) ON DELETE CASCADE,
        model TEXT NOT NULL,
        request_type TEXT NOT NULL,
        prompt_tokens INTEGER NOT NULL,
        completion_tokens INTEGER NOT NULL,
        total_tokens INTEGER NOT NULL,
        created_at TIMESTAMP NOT NULL DEFAULT now()
    )
    """,
    'CREATE INDEX IF NOT EXISTS usage_log_user_created_idx ON usage_log (user_id, created_at)',
    """
    CREATE TABLE IF NOT EXISTS "Document" (
        id UUID NOT NULL,
        created_at TIMESTAMP NOT NULL DEFAULT now(),
        title TEXT NOT NULL,
        content TEXT,
        kind VARCHAR(16) NOT NULL DEFAULT 'text',
        user_id UUID NOT NULL REFERENCES "User"(id),
        PRIMARY KEY (id, created_at)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS "Suggestion" (
        id UUID PRIMARY KEY,
        document_id UUID NOT NULL,
        document_created_at TIMESTAMP NOT NULL,
        original_text TEXT NOT NULL,
        suggested_text TEXT NOT NULL,
        description TEXT,
        is_resolved BOOLEAN NOT NULL DEFAULT false,
        user_id UUID NOT NULL REFERENCES "User"(id),
        created_at TIMESTAMP NOT NULL DEFAULT now(),
        FOREIGN KEY (document_id, document_created_at)
            REFERENCES "Document"(id, created_at)
    )
    """,
]


def _load_json(value: Any, default: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return default
    return value if value is not None else default


class PostgresStore:
    """Postgres-backed chat store."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the chat tables if they are missing."""

        with self._connect() as conn:
            with conn.transaction():
                for statement in _SCHEMA_STATEMENTS:
                    conn.execute(statement)
        self.logger.info("postgres_schema_ready", tables=len(_SCHEMA_STATEMENTS))

    def close(self) -> None:
        self.pool.close()

    # users
    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row.get("email"),
            user_type=row.get("user_type") or "regular",
            password_hash=row.get("password"),
            created_at=row.get("created_at") or datetime.utcnow(),
        )

    def create_user(
        self,
        email: Optional[str] = None,
        *,
        user_type: str = "regular",
        password_hash: Optional[str] = None,
    ) -> User:
        user = User(
            id=str(uuid.uuid4()),
            email=email,
            user_type=user_type,
            password_hash=password_hash,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    'INSERT INTO "User" (id, email, password, user_type, created_at) VALUES (%s, %s, %s, %s, %s)',
                    (user.id, email, password_hash, user_type, user.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute('SELECT * FROM "User" WHERE id = %s', (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute('SELECT * FROM "User" WHERE email = %s', (email,)).fetchone()
        return self._row_to_user(row) if row else None

    # sessions
    def create_session(self, user_id: str, ttl_minutes: int = 60 * 24) -> Session:
        sess = Session.new(user_id=user_id, ttl_minutes=ttl_minutes)
        try:
            with self._connect() as conn:
                conn.execute(
                    'INSERT INTO "Session" (id, user_id, created_at, expires_at) VALUES (%s, %s, %s, %s)',
                    (sess.id, sess.user_id, sess.created_at, sess.expires_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        try:
            uuid.UUID(str(session_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute('SELECT * FROM "Session" WHERE id = %s', (session_id,)).fetchone()
        if not row:
            return None
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )

    def revoke_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute('DELETE FROM "Session" WHERE id = %s', (session_id,))

    # chats
    @staticmethod
    def _row_to_chat(row: dict) -> Chat:
        return Chat(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            title=row["title"],
            visibility=row.get("visibility") or "private",
            created_at=row.get("created_at") or datetime.utcnow(),
        )

    def save_chat(
        self, chat_id: str, user_id: str, title: str, visibility: str = "private"
    ) -> Chat:
        chat = Chat(id=chat_id, user_id=user_id, title=title, visibility=visibility)
        try:
            with self._connect() as conn:
                conn.execute(
                    'INSERT INTO "Chat" (id, created_at, title, user_id, visibility) VALUES (%s, %s, %s, %s, %s)',
                    (chat.id, chat.created_at, title, user_id, visibility),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("chat owner missing", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("chat already exists", {"chat_id": chat_id})
        return chat

    def get_chat_by_id(self, chat_id: str) -> Optional[Chat]:
        with self._connect() as conn:
            row = conn.execute('SELECT * FROM "Chat" WHERE id = %s', (chat_id,)).fetchone()
        return self._row_to_chat(row) if row else None

    def delete_chat_by_id(self, chat_id: str) -> Optional[Chat]:
        with self._connect() as conn:
            with conn.transaction():
                conn.execute('DELETE FROM "Message_v2" WHERE chat_id = %s', (chat_id,))
                conn.execute('DELETE FROM "Stream" WHERE chat_id = %s', (chat_id,))
                row = conn.execute(
                    'DELETE FROM "Chat" WHERE id = %s RETURNING *', (chat_id,)
                ).fetchone()
        return self._row_to_chat(row) if row else None

    # messages
    def list_messages_by_chat_id(self, chat_id: str) -> List[Message]:
        with self._connect() as conn:
            rows = conn.execute(
                'SELECT * FROM "Message_v2" WHERE chat_id = %s ORDER BY created_at ASC',
                (chat_id,),
            ).fetchall()
        messages: List[Message] = []
        for row in rows:
            if not isinstance(row, dict):
                raise TypeError("list_messages_by_chat_id expects mapping rows")
            messages.append(
                Message(
                    id=str(row["id"]),
                    chat_id=str(row["chat_id"]),
                    role=row["role"],
                    parts=normalize_parts(_load_json(row.get("parts"), [])),
                    attachments=_load_json(row.get("attachments"), []),
                    created_at=row.get("created_at") or datetime.utcnow(),
                )
            )
        return messages

    def save_messages(self, messages: Iterable[Message]) -> List[Message]:
        batch = list(messages)
        if not batch:
            return []
        try:
            with self._connect() as conn:
                with conn.transaction():
                    for msg in batch:
                        conn.execute(
                            'INSERT INTO "Message_v2" (id, chat_id, role, parts, attachments, created_at) VALUES (%s, %s, %s, %s, %s, %s)',
                            (
                                msg.id,
                                msg.chat_id,
                                msg.role,
                                json.dumps(normalize_parts(msg.parts)),
                                json.dumps(msg.attachments or []),
                                msg.created_at,
                            ),
                        )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("chat not found", {"chat_id": batch[0].chat_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("message already exists", {"chat_id": batch[0].chat_id})
        return batch

    def count_messages_by_user(self, user_id: str, window_hours: int = 24) -> int:
        cutoff = datetime.utcnow() - timedelta(hours=window_hours)
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(m.id) AS c
                FROM "Message_v2" m
                JOIN "Chat" c ON c.id = m.chat_id
                WHERE c.user_id = %s AND m.created_at >= %s AND m.role = 'user'
                """,
                (user_id, cutoff),
            ).fetchone()
        return int(row["c"]) if row else 0

    # streams
    def create_stream_id(self, stream_id: str, chat_id: str) -> StreamHandle:
        handle = StreamHandle(id=stream_id, chat_id=chat_id)
        try:
            with self._connect() as conn:
                conn.execute(
                    'INSERT INTO "Stream" (id, chat_id, created_at) VALUES (%s, %s, %s)',
                    (stream_id, chat_id, handle.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("chat not found", {"chat_id": chat_id})
        return handle

    def list_stream_ids_by_chat_id(self, chat_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                'SELECT id FROM "Stream" WHERE chat_id = %s ORDER BY created_at ASC',
                (chat_id,),
            ).fetchall()
        return [str(row["id"]) for row in rows]

    # usage
    def save_usage_log(self, record: UsageRecord) -> UsageRecord:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO usage_log (user_id, model, request_type, prompt_tokens, completion_tokens, total_tokens, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        record.user_id,
                        record.model,
                        record.request_type,
                        record.prompt_tokens,
                        record.completion_tokens,
                        record.total_tokens,
                        record.created_at,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("usage owner missing", {"user_id": record.user_id})
        record.id = row["id"] if row else None
        return record

    def count_usage_by_user(self, user_id: str, window_hours: int = 24) -> int:
        cutoff = datetime.utcnow() - timedelta(hours=window_hours)
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS c FROM usage_log WHERE user_id = %s AND created_at >= %s",
                (user_id, cutoff),
            ).fetchone()
        return int(row["c"]) if row else 0

    # documents
    def save_document(
        self,
        document_id: str,
        user_id: str,
        title: str,
        kind: str,
        content: Optional[str],
    ) -> Document:
        doc = Document(id=document_id, user_id=user_id, title=title, kind=kind, content=content)
        try:
            with self._connect() as conn:
                conn.execute(
                    'INSERT INTO "Document" (id, created_at, title, content, kind, user_id) VALUES (%s, %s, %s, %s, %s, %s)',
                    (doc.id, doc.created_at, title, content, kind, user_id),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("document owner missing", {"user_id": user_id})
        return doc

    def get_document_by_id(self, document_id: str) -> Optional[Document]:
        with self._connect() as conn:
            row = conn.execute(
                'SELECT * FROM "Document" WHERE id = %s ORDER BY created_at DESC LIMIT 1',
                (document_id,),
            ).fetchone()
        if not row:
            return None
        return Document(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            title=row["title"],
            kind=row.get("kind") or "text",
            content=row.get("content"),
            created_at=row["created_at"],
        )

    def save_suggestions(self, suggestions: Iterable[Suggestion]) -> List[Suggestion]:
        batch = list(suggestions)
        if not batch:
            return []
        try:
            with self._connect() as conn:
                with conn.transaction():
                    for s in batch:
                        conn.execute(
                            """
                            INSERT INTO "Suggestion" (id, document_id, document_created_at, original_text, suggested_text, description, is_resolved, user_id, created_at)
                            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                            """,
                            (
                                s.id,
                                s.document_id,
                                s.document_created_at,
                                s.original_text,
                                s.suggested_text,
                                s.description,
                                s.is_resolved,
                                s.user_id,
                                s.created_at,
                            ),
                        )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("document not found", {"document_id": batch[0].document_id})
        return batch

    def list_suggestions_by_document_id(self, document_id: str) -> List[Suggestion]:
        with self._connect() as conn:
            rows = conn.execute(
                'SELECT * FROM "Suggestion" WHERE document_id = %s ORDER BY created_at ASC',
                (document_id,),
            ).fetchall()
        return [
            Suggestion(
                id=str(row["id"]),
                document_id=str(row["document_id"]),
                document_created_at=row["document_created_at"],
                original_text=row["original_text"],
                suggested_text=row["suggested_text"],
                description=row.get("description"),
                is_resolved=bool(row.get("is_resolved")),
                user_id=str(row["user_id"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]
