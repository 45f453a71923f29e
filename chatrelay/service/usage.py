"""Token usage extraction and persistence.

Providers report usage under inconsistent shapes: the counts may sit on the
result itself or under ``data``/``metadata``, and each count goes by several
names. Extraction walks a versioned alias table and falls back to zeros, so a
malformed usage report never blocks the rest of a chat turn.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence

from chatrelay.logging import get_logger, sanitize_error_message
from chatrelay.service.errors import UsagePersistenceError
from chatrelay.storage.models import UsageRecord

logger = get_logger(__name__)

# Newest provider shape first
USAGE_PATHS: Sequence[Sequence[str]] = (
    ("usage",),
    ("data", "usage"),
    ("metadata", "usage"),
)

PROMPT_FIELDS = ("inputTokens", "promptTokens", "prompt_tokens", "input_tokens")
COMPLETION_FIELDS = ("outputTokens", "completionTokens", "completion_tokens", "output_tokens")
TOTAL_FIELDS = ("totalTokens", "total_tokens")


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            self.prompt_tokens + other.prompt_tokens,
            self.completion_tokens + other.completion_tokens,
            self.total_tokens + other.total_tokens,
        )


def _lookup(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(key)
    return getattr(obj, key, None)


def _as_count(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        count = int(value)
    except (TypeError, ValueError):
        return None
    return count if count >= 0 else None


def _first_count(usage: Any, names: Sequence[str]) -> Optional[int]:
    for name in names:
        count = _as_count(_lookup(usage, name))
        if count is not None:
            return count
    return None


def _looks_like_usage(obj: Any) -> bool:
    return any(
        _lookup(obj, name) is not None
        for name in (*PROMPT_FIELDS, *COMPLETION_FIELDS, *TOTAL_FIELDS)
    )


def find_usage_object(result: Any) -> Any:
    """Locate the usage object inside a provider result, or None."""
    for path in USAGE_PATHS:
        node = result
        for key in path:
            node = _lookup(node, key)
            if node is None:
                break
        if node is not None:
            return node
    if _looks_like_usage(result):
        return result
    return None


def extract_usage(result: Any) -> TokenUsage:
    """Best-effort mapping of a provider result to token counts.

    Anything that cannot be read yields zeros rather than an error. When the
    provider omits a total it is derived from the other two counts.
    """
    try:
        usage = find_usage_object(result)
        if usage is None:
            return TokenUsage()
        prompt = _first_count(usage, PROMPT_FIELDS) or 0
        completion = _first_count(usage, COMPLETION_FIELDS) or 0
        total = _first_count(usage, TOTAL_FIELDS)
        if total is None:
            total = prompt + completion
        return TokenUsage(prompt, completion, total)
    except Exception as exc:
        logger.warning("usage_parse_failed", error=sanitize_error_message(str(exc)))
        return TokenUsage()


class UsageAccumulator:
    """Sums usage across the provider steps of one turn."""

    def __init__(self) -> None:
        self.total = TokenUsage()
        self.reports = 0

    def observe(self, result: Any) -> TokenUsage:
        step_usage = extract_usage(result)
        self.total = self.total + step_usage
        self.reports += 1
        return step_usage


class UsageRecorder:
    def __init__(self, store) -> None:
        self.store = store

    def _save(self, record: UsageRecord) -> UsageRecord:
        try:
            return self.store.save_usage_log(record)
        except Exception as exc:
            raise UsagePersistenceError(str(exc)) from exc

    def record(
        self,
        user_id: str,
        model: str,
        usage: TokenUsage,
        *,
        request_type: str = "chat",
    ) -> Optional[UsageRecord]:
        """Persist one usage row; failures are logged and swallowed."""
        record = UsageRecord(
            user_id=user_id,
            model=model,
            request_type=request_type,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
        )
        try:
            saved = self._save(record)
        except UsagePersistenceError as exc:
            logger.error(
                "usage_record_failed",
                user_id=user_id,
                model=model,
                error=sanitize_error_message(str(exc)),
            )
            return None
        logger.info(
            "usage_recorded",
            user_id=user_id,
            model=model,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
        )
        return saved
