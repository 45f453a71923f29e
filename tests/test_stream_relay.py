import asyncio
import json
from typing import Dict, List, Tuple

from chatrelay.service.errors import StreamInternalError
from chatrelay.service.stream_relay import (
    SSE_DONE,
    DirectStreamRelay,
    LocalStreamRelay,
    RedisStreamRelay,
    build_stream_relay,
)
from chatrelay.service.tasks import TaskSupervisor


def _parse(frames: List[str]) -> Tuple[List[int], List[dict], bool]:
    seqs, events, done = [], [], False
    for frame in frames:
        if frame == SSE_DONE:
            done = True
            continue
        id_line, data_line = frame.strip().split("\n")
        seqs.append(int(id_line[len("id: "):]))
        events.append(json.loads(data_line[len("data: "):]))
    return seqs, events, done


async def _collect(frames, limit=None) -> List[str]:
    out = []
    async for frame in frames:
        out.append(frame)
        if limit is not None and len(out) >= limit:
            break
    return out


class GatedProducer:
    """Emits a few events, waits for the gate, then emits the rest."""

    def __init__(self, before=3, after=3):
        self.before = before
        self.after = after
        self.gate = asyncio.Event()
        self.started = 0

    async def __call__(self):
        self.started += 1
        for i in range(self.before):
            yield {"type": "text-delta", "delta": f"a{i}"}
        await self.gate.wait()
        for i in range(self.after):
            yield {"type": "text-delta", "delta": f"b{i}"}
        yield {"type": "finish"}


class FakeStreamCache:
    """In-memory stand-in for the Redis stream commands the relay uses."""

    def __init__(self):
        self.owners = set()
        self.entries: Dict[str, List[Tuple[str, Dict[str, str]]]] = {}
        self.failing_seqs = set()
        self.fail_done = False

    async def claim_stream(self, stream_id, ttl_seconds):
        if stream_id in self.owners:
            return False
        self.owners.add(stream_id)
        return True

    async def stream_exists(self, stream_id):
        return stream_id in self.owners

    def _add(self, stream_id, fields):
        log = self.entries.setdefault(stream_id, [])
        log.append((f"{len(log) + 1}-0", fields))

    async def append_stream_event(self, stream_id, seq, payload, *, ttl_seconds, max_events):
        if seq in self.failing_seqs:
            raise ConnectionError("redis went away")
        self._add(stream_id, {"seq": str(seq), "data": payload})

    async def mark_stream_done(self, stream_id, seq, *, ttl_seconds):
        if self.fail_done:
            raise ConnectionError("redis went away")
        self._add(stream_id, {"seq": str(seq), "done": "1"})

    async def read_stream_events(self, stream_id, last_entry_id="0-0", *, block_ms=1000, count=100):
        after = int(last_entry_id.split("-")[0])
        pending = self.entries.get(stream_id, [])[after:after + count]
        if not pending:
            await asyncio.sleep(block_ms / 1000)
        return list(pending)


async def test_reconnects_observe_same_sequence_without_gaps():
    supervisor = TaskSupervisor()
    relay = LocalStreamRelay(supervisor, ttl_seconds=60)
    producer = GatedProducer()

    first = await relay.open_or_resume("s-1", producer)
    head = await _collect(first, limit=2)

    second = await relay.open_or_resume("s-1", producer)
    third = await relay.resume("s-1", after_seq=2)
    producer.gate.set()

    rest_of_first = await _collect(first)
    full_second = await _collect(second)
    full_third = await _collect(third)
    await supervisor.shutdown(timeout=1)

    assert producer.started == 1
    seq_first, events_first, done_first = _parse(head + rest_of_first)
    seq_second, events_second, done_second = _parse(full_second)
    seq_third, events_third, done_third = _parse(full_third)

    assert seq_first == seq_second == [1, 2, 3, 4, 5, 6, 7]
    assert events_first == events_second
    assert seq_third == [3, 4, 5, 6, 7]
    assert events_third == events_second[2:]
    assert done_first and done_second and done_third


async def test_reader_disconnect_does_not_cancel_producer():
    supervisor = TaskSupervisor()
    relay = LocalStreamRelay(supervisor, ttl_seconds=60)
    producer = GatedProducer(before=1, after=2)

    frames = await relay.open_or_resume("s-2", producer)
    await _collect(frames, limit=1)
    await frames.aclose()
    producer.gate.set()
    await supervisor.shutdown(timeout=1)

    replay = await relay.resume("s-2")
    seqs, events, done = _parse(await _collect(replay))
    assert seqs == [1, 2, 3, 4]
    assert events[-1] == {"type": "finish"}
    assert done


async def test_producer_failure_becomes_single_error_event():
    supervisor = TaskSupervisor()
    relay = LocalStreamRelay(supervisor)

    async def producer():
        yield {"type": "text-delta", "delta": "partial"}
        raise RuntimeError("provider exploded with api_key=secret")

    seqs, events, done = _parse(await _collect(await relay.open_or_resume("s-3", producer)))
    await supervisor.shutdown(timeout=1)

    assert seqs == [1, 2]
    assert events[1] == {"type": "error", "errorText": StreamInternalError.public_message}
    assert "secret" not in json.dumps(events)
    assert done


async def test_event_limit_emits_error_and_keeps_draining():
    supervisor = TaskSupervisor()
    relay = LocalStreamRelay(supervisor, max_events=2)
    drained = []

    async def producer():
        for i in range(5):
            drained.append(i)
            yield {"type": "text-delta", "delta": str(i)}

    seqs, events, _ = _parse(await _collect(await relay.open_or_resume("s-4", producer)))
    await supervisor.shutdown(timeout=1)

    assert seqs == [1, 2, 3]
    assert events[-1]["type"] == "error"
    assert drained == [0, 1, 2, 3, 4]


async def test_direct_relay_streams_but_cannot_resume():
    supervisor = TaskSupervisor()
    relay = DirectStreamRelay(supervisor)
    producer = GatedProducer(before=1, after=0)
    producer.gate.set()

    seqs, _, done = _parse(await _collect(await relay.open_or_resume("s-5", producer)))
    await supervisor.shutdown(timeout=1)

    assert seqs == [1, 2]
    assert done
    assert relay.resumable is False
    assert await relay.resume("s-5") is None


async def test_direct_and_local_relays_emit_identical_frames():
    async def producer():
        yield {"type": "text-delta", "delta": "hi"}
        yield {"type": "finish"}

    supervisor = TaskSupervisor()
    direct = await _collect(await DirectStreamRelay(supervisor).open_or_resume("d", producer))
    local = await _collect(await LocalStreamRelay(supervisor).open_or_resume("l", producer))
    await supervisor.shutdown(timeout=1)

    assert direct == local


async def test_redis_relay_dedupes_by_sequence():
    cache = FakeStreamCache()
    supervisor = TaskSupervisor()
    relay = RedisStreamRelay(cache, supervisor, ttl_seconds=5, block_ms=5)
    producer = GatedProducer()

    first = await relay.open_or_resume("r-1", producer)
    head = await _collect(first, limit=3)
    # a replayed duplicate entry, as when two workers race on the same seq
    cache._add("r-1", {"seq": "2", "data": json.dumps({"type": "dup"})})
    second = await relay.open_or_resume("r-1", producer)
    producer.gate.set()

    rest = await _collect(first)
    full_second = await _collect(second)
    await supervisor.shutdown(timeout=1)

    assert producer.started == 1
    seq_first, events_first, done_first = _parse(head + rest)
    seq_second, events_second, _ = _parse(full_second)
    assert seq_first == seq_second == [1, 2, 3, 4, 5, 6, 7]
    assert {"type": "dup"} not in events_second
    assert done_first


async def test_redis_relay_resume_unknown_stream_returns_none():
    relay = RedisStreamRelay(FakeStreamCache(), TaskSupervisor(), block_ms=5)
    assert await relay.resume("missing") is None


async def test_redis_append_failure_still_drains_producer():
    cache = FakeStreamCache()
    cache.failing_seqs = set(range(1, 10))
    cache.fail_done = True
    supervisor = TaskSupervisor()
    relay = RedisStreamRelay(cache, supervisor, ttl_seconds=0, block_ms=5)
    finished = asyncio.Event()

    async def producer():
        yield {"type": "text-delta", "delta": "x"}
        finished.set()

    await relay._drain_into_log("r-2", producer)
    assert finished.is_set()


async def test_redis_append_failure_ends_readers_with_error():
    cache = FakeStreamCache()
    cache.failing_seqs = {2}
    supervisor = TaskSupervisor()
    relay = RedisStreamRelay(cache, supervisor, ttl_seconds=5, block_ms=5)
    producer = GatedProducer(before=3, after=0)
    producer.gate.set()

    seqs, events, done = _parse(await _collect(await relay.open_or_resume("r-3", producer)))
    await supervisor.shutdown(timeout=1)

    assert seqs == [1, 3]
    assert events == [
        {"type": "text-delta", "delta": "a0"},
        {"type": "error", "errorText": StreamInternalError.public_message},
    ]
    assert done


async def test_redis_reader_times_out_with_error_when_log_is_never_closed():
    cache = FakeStreamCache()
    cache.failing_seqs = set(range(2, 10))
    cache.fail_done = True
    supervisor = TaskSupervisor()
    relay = RedisStreamRelay(cache, supervisor, ttl_seconds=1, block_ms=5)
    producer = GatedProducer(before=3, after=0)
    producer.gate.set()

    seqs, events, done = _parse(await _collect(await relay.open_or_resume("r-4", producer)))
    await supervisor.shutdown(timeout=1)

    assert seqs == [1, 2]
    assert events[0] == {"type": "text-delta", "delta": "a0"}
    assert events[1]["type"] == "error"
    assert done


async def test_redis_event_limit_emits_error_without_trimming():
    cache = FakeStreamCache()
    supervisor = TaskSupervisor()
    relay = RedisStreamRelay(cache, supervisor, ttl_seconds=5, max_events=2, block_ms=5)
    drained = []

    async def producer():
        for i in range(5):
            drained.append(i)
            yield {"type": "text-delta", "delta": str(i)}

    seqs, events, done = _parse(await _collect(await relay.open_or_resume("r-5", producer)))
    await supervisor.shutdown(timeout=1)

    assert seqs == [1, 2, 3]
    assert events[-1]["type"] == "error"
    assert drained == [0, 1, 2, 3, 4]
    assert done


def test_relay_selection(settings):
    supervisor = TaskSupervisor()
    assert isinstance(build_stream_relay(settings, None, supervisor), LocalStreamRelay)
    assert isinstance(
        build_stream_relay(settings, FakeStreamCache(), supervisor), RedisStreamRelay
    )
    disabled = settings.model_copy(update={"resumable_streams_enabled": False})
    assert isinstance(build_stream_relay(disabled, FakeStreamCache(), supervisor), DirectStreamRelay)
    production = settings.model_copy(update={"test_mode": False, "allow_redis_fallback_dev": False})
    assert isinstance(build_stream_relay(production, None, supervisor), DirectStreamRelay)
