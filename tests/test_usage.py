from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from chatrelay.service.usage import (
    TokenUsage,
    UsageAccumulator,
    UsageRecorder,
    extract_usage,
    find_usage_object,
)
from chatrelay.storage.memory import MemoryStore


@pytest.mark.parametrize(
    "result",
    [
        {"usage": {"inputTokens": 12, "outputTokens": 30, "totalTokens": 42}},
        {"usage": {"promptTokens": 12, "completionTokens": 30, "totalTokens": 42}},
        {"usage": {"prompt_tokens": 12, "completion_tokens": 30, "total_tokens": 42}},
        {"data": {"usage": {"input_tokens": 12, "output_tokens": 30}}},
        {"metadata": {"usage": {"prompt_tokens": 12, "completion_tokens": 30}}},
    ],
)
def test_extract_usage_understands_known_shapes(result):
    assert extract_usage(result) == TokenUsage(12, 30, 42)


def test_extract_usage_reads_attribute_objects():
    result = SimpleNamespace(
        usage=SimpleNamespace(prompt_tokens=5, completion_tokens=7, total_tokens=None)
    )
    assert extract_usage(result) == TokenUsage(5, 7, 12)


def test_top_level_usage_object_is_accepted():
    assert find_usage_object({"prompt_tokens": 1}) == {"prompt_tokens": 1}


def test_provider_total_is_preferred_over_sum():
    usage = extract_usage({"usage": {"prompt_tokens": 2, "completion_tokens": 3, "total_tokens": 9}})
    assert usage.total_tokens == 9


@pytest.mark.parametrize(
    "result",
    [
        None,
        "not a result",
        {"usage": None},
        {"usage": {"prompt_tokens": "many", "completion_tokens": -4}},
        {"usage": {"prompt_tokens": True}},
        {"unrelated": {"tokens": 3}},
    ],
)
def test_unparseable_usage_yields_zeros(result):
    assert extract_usage(result) == TokenUsage()


def test_accumulator_sums_steps():
    acc = UsageAccumulator()
    acc.observe({"usage": {"prompt_tokens": 10, "completion_tokens": 1}})
    acc.observe({"usage": {"prompt_tokens": 20, "completion_tokens": 2}})
    acc.observe({"usage": "garbage"})
    assert acc.total == TokenUsage(30, 3, 33)
    assert acc.reports == 3


def test_recorder_persists_usage_row():
    store = MemoryStore()
    user = store.create_user("usage@example.com")
    record = UsageRecorder(store).record(user.id, "grok-4", TokenUsage(1, 2, 3))

    assert record is not None
    rows = [row for row in store.usage_logs if row.user_id == user.id]
    assert len(rows) == 1
    assert (rows[0].prompt_tokens, rows[0].completion_tokens, rows[0].total_tokens) == (1, 2, 3)
    assert rows[0].request_type == "chat"


def test_recorder_swallows_persistence_failures():
    store = MagicMock()
    store.save_usage_log.side_effect = RuntimeError("insert failed")

    assert UsageRecorder(store).record("user-1", "grok-4", TokenUsage()) is None
    store.save_usage_log.assert_called_once()
