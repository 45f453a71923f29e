from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from chatrelay.config import Settings
from chatrelay.logging import get_logger, sanitize_error_message
from chatrelay.service.errors import AuthenticationError, ConflictError, ForbiddenError
from chatrelay.storage.errors import ConstraintViolation
from chatrelay.storage.models import Session, User
from chatrelay.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(
        self,
        email: Optional[str] = None,
        *,
        user_type: str = "regular",
        password_hash: Optional[str] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def create_session(self, user_id: str, ttl_minutes: int = 60 * 24) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def revoke_session(self, session_id: str) -> None: ...


@dataclass
class AuthContext:
    user_id: str
    user_type: str
    session_id: Optional[str] = None


class AuthService:
    """Opaque session tokens for guest and registered users.

    A session id is accepted either as a bearer token or as the
    ``session_id`` cookie. Redis, when configured, mirrors live sessions so
    revocation is visible across workers.
    """

    def __init__(self, store: AuthStore, cache: Optional[RedisCache], settings: Settings) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, user: User, password: str) -> bool:
        if not user.password_hash:
            self.logger.warning("password_record_missing", user_id=user.id)
            return False
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError):
            self.logger.warning("password_verification_failed", user_id=user.id)
            return False

    async def _open_session(self, user: User) -> Session:
        session = self.store.create_session(user.id, ttl_minutes=self.settings.session_ttl_minutes)
        if self.cache:
            try:
                await self.cache.cache_session(session.id, user.id, session.expires_at)
            except Exception as exc:
                self.logger.warning(
                    "session_cache_write_failed", error=sanitize_error_message(str(exc))
                )
        return session

    async def guest(self) -> Tuple[User, Session]:
        user = self.store.create_user(user_type="guest")
        session = await self._open_session(user)
        self.logger.info("guest_session_created", user_id=user.id)
        return user, session

    async def register(self, email: str, password: str) -> Tuple[User, Session]:
        if not self.settings.allow_signup:
            raise ForbiddenError("signup is disabled")
        email = email.strip().lower()
        try:
            user = self.store.create_user(
                email, user_type="regular", password_hash=self._hash_password(password)
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already exists", detail=exc.detail) from exc
        session = await self._open_session(user)
        self.logger.info("user_registered", user_id=user.id)
        return user, session

    async def login(self, email: str, password: str) -> Tuple[User, Session]:
        user = self.store.get_user_by_email(email.strip().lower())
        if not user or not self._verify_password(user, password):
            raise AuthenticationError("invalid credentials")
        session = await self._open_session(user)
        return user, session

    async def revoke(self, session_id: str) -> None:
        self.store.revoke_session(session_id)
        if self.cache:
            await self.cache.revoke_session(session_id)

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    async def resolve_session(self, session_id: Optional[str]) -> Optional[AuthContext]:
        if not session_id:
            return None
        sess = self.store.get_session(session_id)
        if not sess or sess.expires_at <= datetime.utcnow():
            return None
        if self.cache:
            try:
                cached_user = await self.cache.get_session_user(session_id)
            except Exception as exc:
                # fall back to the store when Redis is unreachable
                self.logger.warning(
                    "session_cache_read_failed", error=sanitize_error_message(str(exc))
                )
            else:
                if cached_user is None or cached_user != sess.user_id:
                    return None
        user = self.store.get_user(sess.user_id)
        if not user:
            return None
        return AuthContext(user_id=user.id, user_type=user.user_type, session_id=sess.id)

    async def authenticate(
        self, authorization: Optional[str], session_id: Optional[str]
    ) -> Optional[AuthContext]:
        token = self._extract_bearer(authorization)
        if token:
            ctx = await self.resolve_session(token)
            if ctx:
                return ctx
        return await self.resolve_session(session_id)
