"""Utilities for normalizing the ordered parts of a chat message.

Messages are stored as a list of tagged parts rather than a single string so
that attachments and tool activity survive a round trip through storage. This
module keeps the persisted shape stable: unknown part types and unknown keys
are dropped before a message is written.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Literal, Optional, TypedDict

PartType = Literal["text", "file", "tool-call", "tool-result"]


class MessagePart(TypedDict, total=False):
    """Typed view of a single message part.

    Only a fixed set of keys is kept per part type; see ``_PART_KEYS``.
    """

    type: PartType
    text: str
    # file references
    url: str
    mediaType: str
    name: str
    # tool activity
    toolCallId: str
    toolName: str
    input: Dict[str, Any]
    output: Any


_PART_KEYS: Dict[str, List[str]] = {
    "text": ["text"],
    "file": ["url", "mediaType", "name"],
    "tool-call": ["toolCallId", "toolName", "input"],
    "tool-result": ["toolCallId", "toolName", "output"],
}


def _coerce_part(part: Any) -> Optional[MessagePart]:
    if not isinstance(part, dict):
        return None
    part_type = part.get("type")
    if part_type not in _PART_KEYS:
        return None
    normalized: MessagePart = {"type": part_type}
    for key in _PART_KEYS[part_type]:
        if key in part:
            normalized[key] = part[key]
    return normalized


def normalize_parts(parts: Optional[Iterable[Any]]) -> List[MessagePart]:
    """Return the storable subset of ``parts`` preserving order."""

    if not parts:
        return []
    normalized: List[MessagePart] = []
    for raw in parts:
        part = _coerce_part(raw)
        if part:
            normalized.append(part)
    return normalized


def text_of(parts: Iterable[Any]) -> str:
    """Concatenate the text parts of a message."""
    return "".join(
        part.get("text", "")
        for part in parts
        if isinstance(part, dict) and part.get("type") == "text"
    )


def text_part(text: str) -> MessagePart:
    return {"type": "text", "text": text}


def tool_call_part(tool_call_id: str, tool_name: str, args: Dict[str, Any]) -> MessagePart:
    return {"type": "tool-call", "toolCallId": tool_call_id, "toolName": tool_name, "input": args}


def tool_result_part(tool_call_id: str, tool_name: str, output: Any) -> MessagePart:
    return {
        "type": "tool-result",
        "toolCallId": tool_call_id,
        "toolName": tool_name,
        "output": output,
    }
