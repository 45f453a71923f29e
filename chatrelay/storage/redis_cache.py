from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

StreamEntry = Tuple[str, Dict[str, str]]

STREAM_LOG_HEADROOM = 2


class RedisCache:
    """Thin Redis wrapper for session lookups and the stream event log."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Compute a TTL of at least one second from an absolute expiry."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    # sessions
    async def cache_session(
        self, session_id: str, user_id: str, expires_at: datetime
    ) -> None:
        await self.client.set(
            f"auth:session:{session_id}", user_id, ex=self._ttl_seconds(expires_at)
        )

    async def get_session_user(self, session_id: str) -> Optional[str]:
        return await self.client.get(f"auth:session:{session_id}")

    async def revoke_session(self, session_id: str) -> None:
        await self.client.delete(f"auth:session:{session_id}")

    # stream event log
    @staticmethod
    def _stream_key(stream_id: str) -> str:
        return f"chatrelay:stream:{stream_id}"

    @staticmethod
    def _owner_key(stream_id: str) -> str:
        return f"chatrelay:stream:{stream_id}:owner"

    async def claim_stream(self, stream_id: str, ttl_seconds: int) -> bool:
        """Return True if this caller is the first to produce ``stream_id``."""
        claimed = await self.client.set(
            self._owner_key(stream_id), "1", nx=True, ex=ttl_seconds
        )
        return bool(claimed)

    async def stream_exists(self, stream_id: str) -> bool:
        return bool(await self.client.exists(self._owner_key(stream_id)))

    async def append_stream_event(
        self,
        stream_id: str,
        seq: int,
        payload: str,
        *,
        ttl_seconds: int,
        max_events: int,
    ) -> None:
        key = self._stream_key(stream_id)
        pipe = self.client.pipeline()
        # room for the limit error and the done marker
        pipe.xadd(
            key,
            {"seq": str(seq), "data": payload},
            maxlen=max_events + STREAM_LOG_HEADROOM,
            approximate=True,
        )
        pipe.expire(key, ttl_seconds)
        pipe.expire(self._owner_key(stream_id), ttl_seconds)
        await pipe.execute()

    async def mark_stream_done(self, stream_id: str, seq: int, *, ttl_seconds: int) -> None:
        key = self._stream_key(stream_id)
        pipe = self.client.pipeline()
        pipe.xadd(key, {"seq": str(seq), "done": "1"})
        pipe.expire(key, ttl_seconds)
        pipe.expire(self._owner_key(stream_id), ttl_seconds)
        await pipe.execute()

    async def read_stream_events(
        self, stream_id: str, last_entry_id: str = "0-0", *, block_ms: int = 1000, count: int = 100
    ) -> List[StreamEntry]:
        """Return log entries after ``last_entry_id``, blocking up to ``block_ms``."""
        result = await self.client.xread(
            {self._stream_key(stream_id): last_entry_id}, count=count, block=block_ms
        )
        if not result:
            return []
        entries: List[StreamEntry] = []
        for _key, items in result:
            entries.extend(items)
        return entries

    async def close(self) -> None:
        await self.client.aclose()
