from __future__ import annotations

from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

from openai import AsyncOpenAI

from chatrelay.config import Settings
from chatrelay.logging import get_logger

logger = get_logger(__name__)

ProviderEvent = Dict[str, Any]


class CompletionProvider(Protocol):
    """Streaming completion capability.

    ``stream`` performs a single model step and yields ``text-delta`` and
    ``tool-call`` events followed by exactly one ``finish`` event carrying the
    finish reason and the provider's raw usage report.
    """

    name: str

    def stream(
        self,
        model_id: str,
        system: str,
        messages: List[dict],
        tools: Optional[List[dict]] = None,
    ) -> AsyncIterator[ProviderEvent]: ...

    async def complete(self, model_id: str, system: str, prompt: str) -> str: ...


def _merge_tool_calls(accumulator: List[Dict[str, Any]], deltas: Any) -> None:
    for delta in deltas or []:
        if not isinstance(delta, dict):
            continue
        index = delta.get("index")
        delta_id = delta.get("id")
        if not isinstance(index, int) or index < 0:
            index = None
            if isinstance(delta_id, str):
                for existing_index, existing in enumerate(accumulator):
                    if existing.get("id") == delta_id:
                        index = existing_index
                        break
            if index is None:
                index = len(accumulator)

        while len(accumulator) <= index:
            accumulator.append({"id": None, "name": None, "arguments": ""})

        entry = accumulator[index]
        if delta_id:
            entry["id"] = delta_id
        function = delta.get("function") or {}
        if function.get("name"):
            entry["name"] = function["name"]
        if function.get("arguments"):
            entry["arguments"] += function["arguments"]


def _finalize_tool_calls(tool_calls: List[Dict[str, Any]]) -> List[ProviderEvent]:
    finalized: List[ProviderEvent] = []
    for index, call in enumerate(tool_calls):
        name = call.get("name")
        if not (isinstance(name, str) and name.strip()):
            continue
        finalized.append(
            {
                "type": "tool-call",
                "id": call.get("id") or f"call_{index}",
                "name": name,
                "arguments": call.get("arguments") or "{}",
            }
        )
    return finalized


def _dump(obj: Any) -> Any:
    if obj is None:
        return None
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    return obj


class OpenAICompatibleProvider:
    """Provider for any OpenAI-style chat completions endpoint (xAI by default)."""

    name = "openai-compatible"

    def __init__(self, settings: Settings, *, client: Optional[AsyncOpenAI] = None) -> None:
        self.settings = settings
        self.client = client or AsyncOpenAI(
            api_key=settings.model_api_key,
            base_url=settings.model_base_url,
            timeout=settings.model_request_timeout_seconds,
        )

    async def stream(
        self,
        model_id: str,
        system: str,
        messages: List[dict],
        tools: Optional[List[dict]] = None,
    ) -> AsyncIterator[ProviderEvent]:
        request: Dict[str, Any] = {
            "model": self.settings.provider_model_name(model_id),
            "messages": [{"role": "system", "content": system}, *messages],
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if tools:
            request["tools"] = tools
        response = await self.client.chat.completions.create(**request)

        streamed_tool_calls: List[Dict[str, Any]] = []
        finish_reason: Optional[str] = None
        usage: Any = None
        async for chunk in response:
            if getattr(chunk, "usage", None) is not None:
                usage = chunk.usage
            for choice in chunk.choices or []:
                delta = choice.delta
                if delta is not None:
                    if delta.content:
                        yield {"type": "text-delta", "text": delta.content}
                    if delta.tool_calls:
                        _merge_tool_calls(
                            streamed_tool_calls, [_dump(tc) for tc in delta.tool_calls]
                        )
                if choice.finish_reason:
                    finish_reason = choice.finish_reason

        for call in _finalize_tool_calls(streamed_tool_calls):
            yield call
        yield {
            "type": "finish",
            "finish_reason": finish_reason or "stop",
            "usage": _dump(usage),
        }

    async def complete(self, model_id: str, system: str, prompt: str) -> str:
        completion = await self.client.chat.completions.create(
            model=self.settings.provider_model_name(model_id),
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
        )
        choices = getattr(completion, "choices", None) or []
        first_choice = next(iter(choices), None)
        if not first_choice:
            logger.warning("completion_returned_no_choices", model_id=model_id)
            return ""
        return first_choice.message.content or ""


def _last_user_text(messages: List[dict]) -> str:
    for message in reversed(messages):
        if message.get("role") != "user":
            continue
        content = message.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return " ".join(
                block.get("text", "")
                for block in content
                if isinstance(block, dict) and block.get("type") == "text"
            )
    return ""


class EchoProvider:
    """Offline provider used when no API key is configured.

    Streams the last user text back word by word and reports word counts as
    usage. It never requests tools.
    """

    name = "echo"

    async def stream(
        self,
        model_id: str,
        system: str,
        messages: List[dict],
        tools: Optional[List[dict]] = None,
    ) -> AsyncIterator[ProviderEvent]:
        text = _last_user_text(messages)
        words = text.split()
        for index, word in enumerate(words):
            yield {"type": "text-delta", "text": word if index == 0 else f" {word}"}
        prompt_words = sum(len(_last_user_text([m]).split()) for m in messages) + len(system.split())
        yield {
            "type": "finish",
            "finish_reason": "stop",
            "usage": {
                "prompt_tokens": prompt_words,
                "completion_tokens": len(words),
                "total_tokens": prompt_words + len(words),
            },
        }

    async def complete(self, model_id: str, system: str, prompt: str) -> str:
        return " ".join(prompt.split()[:8])


def build_provider(settings: Settings) -> CompletionProvider:
    if settings.model_api_key and not settings.test_mode:
        logger.info(
            "completion_provider_selected",
            provider="openai-compatible",
            base_url=settings.model_base_url,
        )
        return OpenAICompatibleProvider(settings)
    logger.warning(
        "completion_provider_selected",
        provider="echo",
        reason="test mode" if settings.test_mode else "no MODEL_API_KEY",
    )
    return EchoProvider()
