"""Chat turn orchestration.

A turn moves through ``TurnState`` in order; ``failed`` can be entered from
any state. ``prepare_turn`` covers everything that can still change the HTTP
status (quota, ownership, persisting the user message) and ``run_turn`` is
the event producer handed to the stream relay.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

from chatrelay.config import ChatModelId, Settings
from chatrelay.logging import get_logger, log_tool_trace, sanitize_error_message
from chatrelay.message_parts import (
    normalize_parts,
    text_of,
    text_part,
    tool_call_part,
    tool_result_part,
)
from chatrelay.service.attachments import AttachmentNormalizer
from chatrelay.service.entitlements import entitlements_for
from chatrelay.service.errors import ForbiddenError
from chatrelay.service.prompts import TITLE_PROMPT, RequestHints, system_prompt
from chatrelay.service.quota import QuotaGuard
from chatrelay.service.stream_relay import internal_error_event
from chatrelay.service.tools import ToolContext, ToolRegistry
from chatrelay.service.usage import UsageAccumulator, UsageRecorder
from chatrelay.storage.models import Chat, Message

TITLE_MODEL = "title-model"
TITLE_FALLBACK_CHARS = 50
TITLE_MAX_CHARS = 80
DEFAULT_TITLE = "New chat"


class TurnState(str, Enum):
    VALIDATING = "validating"
    AUTHORIZING = "authorizing"
    QUOTA_CHECKED = "quota-checked"
    CONTEXT_LOADED = "context-loaded"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class TurnRequest:
    chat_id: str
    message_id: str
    parts: List[dict]
    selected_chat_model: str = ChatModelId.CHAT.value
    visibility: str = "private"


@dataclass
class Turn:
    chat: Chat
    user_id: str
    user_type: str
    model_id: str
    user_message: Message
    history: List[Message]
    stream_id: str
    hints: RequestHints = field(default_factory=RequestHints)
    created_chat: bool = False
    state: TurnState = TurnState.VALIDATING


def _parse_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw or "{}")
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


class ChatOrchestrator:
    def __init__(
        self,
        store,
        provider,
        *,
        settings: Settings,
        guard: QuotaGuard,
        normalizer: AttachmentNormalizer,
        tools: ToolRegistry,
        recorder: UsageRecorder,
    ) -> None:
        self.store = store
        self.provider = provider
        self.settings = settings
        self.guard = guard
        self.normalizer = normalizer
        self.tools = tools
        self.recorder = recorder
        self.logger = get_logger(__name__)

    def _transition(self, turn: Turn, state: TurnState) -> None:
        self.logger.info(
            "chat_turn_state",
            chat_id=turn.chat.id,
            stream_id=turn.stream_id,
            from_state=turn.state.value,
            to_state=state.value,
        )
        turn.state = state

    async def generate_title(self, parts: List[dict]) -> str:
        """Derive a chat title from the first message; one attempt only."""
        text = text_of(parts).strip()
        fallback = text[:TITLE_FALLBACK_CHARS] or DEFAULT_TITLE
        if not text:
            return fallback
        try:
            title = await self.provider.complete(TITLE_MODEL, TITLE_PROMPT, text)
        except Exception as exc:
            self.logger.warning(
                "title_generation_failed", error=sanitize_error_message(str(exc))
            )
            return fallback
        title = " ".join((title or "").split()).strip("\"'")
        return title[:TITLE_MAX_CHARS] or fallback

    async def prepare_turn(
        self, auth, request: TurnRequest, hints: Optional[RequestHints] = None
    ) -> Turn:
        """Run every pre-stream step of a turn.

        Raises ``RateLimitExceeded``/``QuotaExceeded`` before anything is
        written and ``ForbiddenError`` when the chat belongs to someone else.
        On return the user message is durably stored.
        """
        self.logger.info(
            "chat_turn_state",
            chat_id=request.chat_id,
            from_state=TurnState.VALIDATING.value,
            to_state=TurnState.AUTHORIZING.value,
        )
        self.guard.check(auth.user_id, auth.user_type)
        allowed = entitlements_for(self.settings, auth.user_type).available_models
        if request.selected_chat_model not in allowed:
            raise ForbiddenError(
                "model not available for this account",
                detail={"model": request.selected_chat_model},
            )

        created = False
        chat = self.store.get_chat_by_id(request.chat_id)
        if chat is None:
            title = await self.generate_title(request.parts)
            chat = self.store.save_chat(
                request.chat_id, auth.user_id, title, request.visibility
            )
            created = True
        elif chat.user_id != auth.user_id:
            self.logger.warning(
                "chat_access_forbidden", chat_id=chat.id, user_id=auth.user_id
            )
            raise ForbiddenError("chat belongs to another user", detail={"chat_id": chat.id})

        previous = self.store.list_messages_by_chat_id(chat.id)
        user_message = Message(
            id=request.message_id,
            chat_id=chat.id,
            role="user",
            parts=normalize_parts(request.parts),
        )
        # persisted before any model call
        self.store.save_messages([user_message])

        stream_id = str(uuid.uuid4())
        self.store.create_stream_id(stream_id, chat.id)

        turn = Turn(
            chat=chat,
            user_id=auth.user_id,
            user_type=auth.user_type,
            model_id=request.selected_chat_model,
            user_message=user_message,
            history=[*previous, user_message],
            stream_id=stream_id,
            hints=hints or RequestHints(),
            created_chat=created,
            state=TurnState.QUOTA_CHECKED,
        )
        self._transition(turn, TurnState.CONTEXT_LOADED)
        return turn

    def _tool_schemas(self, model_id: str) -> Optional[List[dict]]:
        if model_id == ChatModelId.REASONING.value:
            return None
        return self.tools.schemas()

    async def run_turn(self, turn: Turn) -> AsyncIterator[dict]:
        """Produce the event stream of one turn.

        Yields ``start``, then ``text-delta``/``tool-call``/``tool-result``
        events, then either ``finish`` or a single ``error``. New assistant
        and tool messages are saved as one batch once the provider is drained.
        """
        usage = UsageAccumulator()
        assistant_id = str(uuid.uuid4())
        new_messages: List[Message] = []
        finish_reason = "stop"
        steps = 0
        tool_trace: List[dict] = []

        self._transition(turn, TurnState.STREAMING)
        yield {"type": "start", "messageId": assistant_id}
        try:
            context = await self.normalizer.normalize(turn.history)
            system = system_prompt(turn.model_id, turn.hints)
            tools = self._tool_schemas(turn.model_id)
            tool_ctx = ToolContext(
                user_id=turn.user_id,
                chat_id=turn.chat.id,
                provider=self.provider,
                store=self.store,
            )

            while steps < self.settings.max_tool_steps:
                steps += 1
                message_id = assistant_id if not new_messages else str(uuid.uuid4())
                text_chunks: List[str] = []
                calls: List[dict] = []
                async for event in self.provider.stream(turn.model_id, system, context, tools):
                    kind = event.get("type")
                    if kind == "text-delta" and event.get("text"):
                        text_chunks.append(event["text"])
                        yield {"type": "text-delta", "id": message_id, "delta": event["text"]}
                    elif kind == "tool-call":
                        calls.append(event)
                    elif kind == "finish":
                        usage.observe(event)
                        finish_reason = event.get("finish_reason") or finish_reason

                text = "".join(text_chunks)
                parts: List[dict] = [text_part(text)] if text else []
                if calls and tools is None:
                    self.logger.warning(
                        "tool_calls_ignored", model_id=turn.model_id, count=len(calls)
                    )
                    calls = []
                if not calls:
                    if parts:
                        new_messages.append(
                            Message(id=message_id, chat_id=turn.chat.id, role="assistant", parts=parts)
                        )
                    break

                context.append(
                    {
                        "role": "assistant",
                        "content": text or None,
                        "tool_calls": [
                            {
                                "id": call["id"],
                                "type": "function",
                                "function": {"name": call["name"], "arguments": call["arguments"]},
                            }
                            for call in calls
                        ],
                    }
                )
                result_parts: List[dict] = []
                for call in calls:
                    arguments = _parse_arguments(call.get("arguments"))
                    parts.append(tool_call_part(call["id"], call["name"], arguments))
                    yield {
                        "type": "tool-call",
                        "toolCallId": call["id"],
                        "toolName": call["name"],
                        "input": arguments,
                    }
                    output = await self.tools.execute(call["name"], call.get("arguments"), tool_ctx)
                    tool_trace.append(
                        {
                            "step": steps,
                            "tool": call["name"],
                            "failed": isinstance(output, dict) and "error" in output,
                        }
                    )
                    result_parts.append(tool_result_part(call["id"], call["name"], output))
                    yield {
                        "type": "tool-result",
                        "toolCallId": call["id"],
                        "toolName": call["name"],
                        "output": output,
                    }
                    context.append(
                        {
                            "role": "tool",
                            "tool_call_id": call["id"],
                            "content": json.dumps(output, default=str),
                        }
                    )
                new_messages.append(
                    Message(id=message_id, chat_id=turn.chat.id, role="assistant", parts=parts)
                )
                new_messages.append(
                    Message(id=str(uuid.uuid4()), chat_id=turn.chat.id, role="tool", parts=result_parts)
                )
            else:
                self.logger.info(
                    "tool_step_budget_exhausted", chat_id=turn.chat.id, steps=steps
                )

            if tool_trace:
                log_tool_trace(tool_trace, self.logger)
            self._transition(turn, TurnState.FINALIZING)
            if new_messages:
                self.store.save_messages(new_messages)
        except Exception as exc:
            self.logger.exception(
                "chat_turn_failed",
                chat_id=turn.chat.id,
                stream_id=turn.stream_id,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            self._transition(turn, TurnState.FAILED)
            self._record_usage(turn, usage)
            yield internal_error_event()
            return

        self._record_usage(turn, usage)
        self._transition(turn, TurnState.DONE)
        yield {
            "type": "finish",
            "messageId": assistant_id,
            "finishReason": finish_reason,
            "steps": steps,
            "usage": asdict(usage.total),
        }

    def _record_usage(self, turn: Turn, usage: UsageAccumulator) -> None:
        self.recorder.record(
            turn.user_id,
            turn.model_id,
            usage.total,
        )
