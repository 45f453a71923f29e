"""Stream relay between a chat turn producer and its HTTP readers.

A turn's events are produced once, by a supervised background task, into an
append-only log with monotonically increasing sequence numbers starting at 1.
Readers replay the log from a sequence offset and then follow live events, so
several readers can observe one producer and a client that reconnects picks up
after the last sequence number it saw.

Three strategies are chosen once at startup:

- ``RedisStreamRelay`` keeps the log in a Redis stream shared by all workers
- ``LocalStreamRelay`` keeps the log in process memory for the resume window
- ``DirectStreamRelay`` is a pass-through with no reattachment

All three emit identical SSE frames.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import AsyncIterator, Callable, Dict, List, Optional, Protocol, Tuple

from chatrelay.logging import get_logger, sanitize_error_message
from chatrelay.service.errors import StreamInternalError
from chatrelay.service.tasks import TaskSupervisor

logger = get_logger(__name__)

EventProducer = Callable[[], AsyncIterator[dict]]

SSE_DONE = "data: [DONE]\n\n"


def encode_event(event: dict) -> str:
    return json.dumps(event, separators=(",", ":"), default=str)


def format_sse(seq: int, payload: str) -> str:
    return f"id: {seq}\ndata: {payload}\n\n"


def internal_error_event() -> dict:
    return {"type": "error", "errorText": StreamInternalError.public_message}


class StreamRelay(Protocol):
    resumable: bool

    async def open_or_resume(
        self, stream_id: str, producer: EventProducer, *, after_seq: int = 0
    ) -> AsyncIterator[str]:
        ...

    async def resume(self, stream_id: str, *, after_seq: int = 0) -> Optional[AsyncIterator[str]]:
        ...


class EventBroadcast:
    """Multi-reader buffer fed by a single producer."""

    def __init__(self, stream_id: str, *, max_events: int = 10000) -> None:
        self.stream_id = stream_id
        self.max_events = max_events
        self._events: List[Tuple[int, dict]] = []
        self._done = False
        self._cond = asyncio.Condition()
        self.finished_at: Optional[float] = None

    @property
    def done(self) -> bool:
        return self._done

    @property
    def last_seq(self) -> int:
        return self._events[-1][0] if self._events else 0

    async def publish(self, event: dict, *, force: bool = False) -> int:
        async with self._cond:
            if self._done:
                raise RuntimeError("broadcast already closed")
            if not force and len(self._events) >= self.max_events:
                raise StreamInternalError("stream event limit exceeded")
            seq = self.last_seq + 1
            self._events.append((seq, event))
            self._cond.notify_all()
            return seq

    async def close(self) -> None:
        async with self._cond:
            self._done = True
            self.finished_at = time.monotonic()
            self._cond.notify_all()

    async def subscribe(self, after_seq: int = 0) -> AsyncIterator[Tuple[int, dict]]:
        """Yield ``(seq, event)`` pairs with ``seq > after_seq`` until closed."""
        cursor = max(0, after_seq)
        while True:
            async with self._cond:
                await self._cond.wait_for(lambda: self._done or self.last_seq > cursor)
                # seq n lives at index n - 1
                pending = self._events[cursor:]
                finished = self._done
            for seq, event in pending:
                cursor = seq
                yield seq, event
            if finished and cursor >= self.last_seq:
                return


async def _drain_into(broadcast: EventBroadcast, producer: EventProducer) -> None:
    accepting = True
    try:
        async for event in producer():
            if not accepting:
                continue
            try:
                await broadcast.publish(event)
            except StreamInternalError:
                # keep draining so the turn still finalizes
                accepting = False
                logger.error("stream_event_limit_exceeded", stream_id=broadcast.stream_id)
                await broadcast.publish(internal_error_event(), force=True)
    except Exception as exc:
        logger.exception(
            "stream_producer_failed",
            stream_id=broadcast.stream_id,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        if accepting:
            await broadcast.publish(internal_error_event(), force=True)
    finally:
        await broadcast.close()


async def _broadcast_frames(broadcast: EventBroadcast, after_seq: int) -> AsyncIterator[str]:
    async for seq, event in broadcast.subscribe(after_seq):
        yield format_sse(seq, encode_event(event))
    yield SSE_DONE


class DirectStreamRelay:
    """Pass-through relay; the producer still runs detached from the reader."""

    resumable = False

    def __init__(self, supervisor: TaskSupervisor, *, max_events: int = 10000) -> None:
        self.supervisor = supervisor
        self.max_events = max_events

    async def open_or_resume(
        self, stream_id: str, producer: EventProducer, *, after_seq: int = 0
    ) -> AsyncIterator[str]:
        broadcast = EventBroadcast(stream_id, max_events=self.max_events)
        self.supervisor.spawn(_drain_into(broadcast, producer), name=f"stream:{stream_id}")
        return _broadcast_frames(broadcast, after_seq)

    async def resume(self, stream_id: str, *, after_seq: int = 0) -> Optional[AsyncIterator[str]]:
        return None


class LocalStreamRelay:
    """Resumable relay backed by process memory.

    Finished streams stay available for ``ttl_seconds``.
    """

    resumable = True

    def __init__(
        self,
        supervisor: TaskSupervisor,
        *,
        ttl_seconds: int = 300,
        max_events: int = 10000,
    ) -> None:
        self.supervisor = supervisor
        self.ttl_seconds = ttl_seconds
        self.max_events = max_events
        self._streams: Dict[str, EventBroadcast] = {}

    def _evict_expired(self) -> None:
        cutoff = time.monotonic() - self.ttl_seconds
        expired = [
            sid
            for sid, b in self._streams.items()
            if b.finished_at is not None and b.finished_at < cutoff
        ]
        for sid in expired:
            self._streams.pop(sid, None)

    async def open_or_resume(
        self, stream_id: str, producer: EventProducer, *, after_seq: int = 0
    ) -> AsyncIterator[str]:
        self._evict_expired()
        broadcast = self._streams.get(stream_id)
        if broadcast is None:
            broadcast = EventBroadcast(stream_id, max_events=self.max_events)
            self._streams[stream_id] = broadcast
            self.supervisor.spawn(_drain_into(broadcast, producer), name=f"stream:{stream_id}")
        else:
            logger.info("stream_resumed", stream_id=stream_id, after_seq=after_seq)
        return _broadcast_frames(broadcast, after_seq)

    async def resume(self, stream_id: str, *, after_seq: int = 0) -> Optional[AsyncIterator[str]]:
        self._evict_expired()
        broadcast = self._streams.get(stream_id)
        if broadcast is None:
            return None
        logger.info("stream_resumed", stream_id=stream_id, after_seq=after_seq)
        return _broadcast_frames(broadcast, after_seq)


class RedisStreamRelay:
    """Resumable relay backed by a Redis stream shared across workers."""

    resumable = True

    def __init__(
        self,
        cache,
        supervisor: TaskSupervisor,
        *,
        ttl_seconds: int = 300,
        max_events: int = 10000,
        block_ms: int = 1000,
    ) -> None:
        self.cache = cache
        self.supervisor = supervisor
        self.ttl_seconds = ttl_seconds
        self.max_events = max_events
        self.block_ms = block_ms

    async def _drain_into_log(self, stream_id: str, producer: EventProducer) -> None:
        seq = 0
        accepting = True
        log_healthy = True

        async def _append(event: dict) -> None:
            nonlocal seq, log_healthy
            seq += 1
            try:
                await self.cache.append_stream_event(
                    stream_id,
                    seq,
                    encode_event(event),
                    ttl_seconds=self.ttl_seconds,
                    max_events=self.max_events,
                )
            except Exception as exc:
                # keep draining so the turn still finalizes
                log_healthy = False
                logger.error(
                    "stream_log_append_failed",
                    stream_id=stream_id,
                    seq=seq,
                    error=sanitize_error_message(str(exc)),
                )

        try:
            async for event in producer():
                if not (accepting and log_healthy):
                    continue
                if seq >= self.max_events:
                    accepting = False
                    logger.error("stream_event_limit_exceeded", stream_id=stream_id)
                    await _append(internal_error_event())
                    continue
                await _append(event)
        except Exception as exc:
            logger.exception(
                "stream_producer_failed",
                stream_id=stream_id,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            if accepting and log_healthy:
                await _append(internal_error_event())
        finally:
            await self._close_log(stream_id, seq, failed=not log_healthy)

    async def _close_log(self, stream_id: str, seq: int, *, failed: bool) -> None:
        if failed:
            # one more attempt so readers still get a terminal error
            seq += 1
            try:
                await self.cache.append_stream_event(
                    stream_id,
                    seq,
                    encode_event(internal_error_event()),
                    ttl_seconds=self.ttl_seconds,
                    max_events=self.max_events,
                )
            except Exception as exc:
                logger.error(
                    "stream_log_close_failed",
                    stream_id=stream_id,
                    error=sanitize_error_message(str(exc)),
                )
                return
        try:
            await self.cache.mark_stream_done(stream_id, seq + 1, ttl_seconds=self.ttl_seconds)
        except Exception as exc:
            logger.error(
                "stream_log_close_failed",
                stream_id=stream_id,
                error=sanitize_error_message(str(exc)),
            )

    async def _log_frames(self, stream_id: str, after_seq: int) -> AsyncIterator[str]:
        last_entry_id = "0-0"
        delivered = max(0, after_seq)
        idle_deadline = time.monotonic() + self.ttl_seconds
        while True:
            entries = await self.cache.read_stream_events(
                stream_id, last_entry_id, block_ms=self.block_ms
            )
            if not entries:
                if time.monotonic() > idle_deadline:
                    # the producer never closed the log
                    logger.warning("stream_reader_idle_timeout", stream_id=stream_id)
                    yield format_sse(delivered + 1, encode_event(internal_error_event()))
                    yield SSE_DONE
                    return
                continue
            idle_deadline = time.monotonic() + self.ttl_seconds
            for entry_id, fields in entries:
                last_entry_id = entry_id
                if fields.get("done"):
                    yield SSE_DONE
                    return
                seq = int(fields.get("seq", 0))
                # replayed and live reads can overlap
                if seq <= delivered:
                    continue
                delivered = seq
                yield format_sse(seq, fields.get("data", "{}"))

    async def open_or_resume(
        self, stream_id: str, producer: EventProducer, *, after_seq: int = 0
    ) -> AsyncIterator[str]:
        if await self.cache.claim_stream(stream_id, self.ttl_seconds):
            self.supervisor.spawn(
                self._drain_into_log(stream_id, producer), name=f"stream:{stream_id}"
            )
        else:
            logger.info("stream_resumed", stream_id=stream_id, after_seq=after_seq)
        return self._log_frames(stream_id, after_seq)

    async def resume(self, stream_id: str, *, after_seq: int = 0) -> Optional[AsyncIterator[str]]:
        if not await self.cache.stream_exists(stream_id):
            return None
        logger.info("stream_resumed", stream_id=stream_id, after_seq=after_seq)
        return self._log_frames(stream_id, after_seq)


def build_stream_relay(settings, cache, supervisor: TaskSupervisor) -> StreamRelay:
    """Pick the relay strategy for this process."""
    if not settings.resumable_streams_enabled:
        logger.info("stream_relay_selected", relay="direct", reason="disabled")
        return DirectStreamRelay(supervisor, max_events=settings.stream_max_events)
    if cache is not None:
        logger.info("stream_relay_selected", relay="redis")
        return RedisStreamRelay(
            cache,
            supervisor,
            ttl_seconds=settings.stream_resume_ttl_seconds,
            max_events=settings.stream_max_events,
        )
    if settings.test_mode or settings.allow_redis_fallback_dev:
        logger.info("stream_relay_selected", relay="local")
        return LocalStreamRelay(
            supervisor,
            ttl_seconds=settings.stream_resume_ttl_seconds,
            max_events=settings.stream_max_events,
        )
    logger.warning(
        "stream_relay_selected", relay="direct", reason="resumable streams need REDIS_URL"
    )
    return DirectStreamRelay(supervisor, max_events=settings.stream_max_events)
