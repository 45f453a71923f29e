from datetime import datetime, timedelta

import pytest

from chatrelay.service.auth import AuthService
from chatrelay.service.errors import AuthenticationError, ConflictError, ForbiddenError
from chatrelay.storage.memory import MemoryStore


class FakeSessionCache:
    def __init__(self, fail_reads=False):
        self.sessions = {}
        self.fail_reads = fail_reads

    async def cache_session(self, session_id, user_id, expires_at):
        self.sessions[session_id] = user_id

    async def get_session_user(self, session_id):
        if self.fail_reads:
            raise ConnectionError("redis down")
        return self.sessions.get(session_id)

    async def revoke_session(self, session_id):
        self.sessions.pop(session_id, None)


def _service(settings, cache=None):
    return AuthService(MemoryStore(), cache, settings)


async def test_guest_session_authenticates_with_bearer(settings):
    auth = _service(settings)
    user, session = await auth.guest()

    ctx = await auth.authenticate(f"Bearer {session.id}", None)
    assert ctx.user_id == user.id
    assert ctx.user_type == "guest"
    assert ctx.session_id == session.id


async def test_register_then_login(settings):
    auth = _service(settings)
    user, _ = await auth.register("Person@Example.com", "correct horse")
    assert user.email == "person@example.com"
    assert user.user_type == "regular"
    assert user.password_hash != "correct horse"

    logged_in, session = await auth.login("person@example.com", "correct horse")
    assert logged_in.id == user.id
    assert (await auth.authenticate(None, session.id)).user_id == user.id


async def test_bad_credentials(settings):
    auth = _service(settings)
    await auth.register("a@example.com", "password1")
    with pytest.raises(AuthenticationError):
        await auth.login("a@example.com", "wrong-password")
    with pytest.raises(AuthenticationError):
        await auth.login("nobody@example.com", "password1")


async def test_duplicate_registration_conflicts(settings):
    auth = _service(settings)
    await auth.register("dup@example.com", "password1")
    with pytest.raises(ConflictError):
        await auth.register("DUP@example.com", "password2")


async def test_signup_can_be_disabled(settings):
    auth = _service(settings.model_copy(update={"allow_signup": False}))
    with pytest.raises(ForbiddenError):
        await auth.register("a@example.com", "password1")


async def test_expired_and_revoked_sessions_are_rejected(settings):
    auth = _service(settings)
    _, session = await auth.guest()
    auth.store.sessions[session.id].expires_at = datetime.utcnow() - timedelta(seconds=1)
    assert await auth.authenticate(f"Bearer {session.id}", None) is None

    _, fresh = await auth.guest()
    await auth.revoke(fresh.id)
    assert await auth.resolve_session(fresh.id) is None


async def test_malformed_authorization_header_falls_back_to_session(settings):
    auth = _service(settings)
    user, session = await auth.guest()
    assert await auth.authenticate("Basic abc", None) is None
    ctx = await auth.authenticate("Basic abc", session.id)
    assert ctx.user_id == user.id


async def test_cache_mismatch_rejects_and_outage_falls_back(settings):
    cache = FakeSessionCache()
    auth = _service(settings, cache)
    user, session = await auth.guest()
    assert cache.sessions[session.id] == user.id
    assert (await auth.resolve_session(session.id)).user_id == user.id

    cache.sessions[session.id] = "someone-else"
    assert await auth.resolve_session(session.id) is None

    cache.fail_reads = True
    assert (await auth.resolve_session(session.id)).user_id == user.id
