"""System prompts for chat turns, titles and document tools."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from chatrelay.config import ChatModelId

REGULAR_PROMPT = (
    "You are a friendly assistant! Keep your responses concise and helpful."
)

TOOLS_PROMPT = """\
You can use tools during this conversation:
- get_weather: current weather for a latitude/longitude pair.
- web_search: real-time web search; use it whenever up-to-date public information is needed and cite the links you relied on.
- create_document: create a text, code or sheet document for substantial content the user will want to reuse.
- update_document: revise an existing document according to a description of the change.
- request_suggestions: propose edits for an existing document.
Do not update a document right after creating it; wait for user feedback."""

TITLE_PROMPT = """\
- you will generate a short title based on the first message a user begins a conversation with
- ensure it is not more than 80 characters long
- the title should be a summary of the user's message
- do not use quotes or colons"""

DOCUMENT_PROMPTS = {
    "text": "Write about the given topic. Markdown is supported. Use headings wherever appropriate.",
    "code": "You are a code generator. Write a single self-contained, runnable snippet with short comments. Return only the code.",
    "sheet": "You are a spreadsheet creation assistant. Create a spreadsheet in csv format based on the given prompt. The spreadsheet should contain meaningful column headers and data.",
}

SUGGESTIONS_PROMPT = """\
You are a help writing assistant. Given a piece of writing, offer suggestions to improve it.
Respond with a JSON array of at most five objects with the keys
"originalSentence", "suggestedSentence" and "description". Return only JSON."""


@dataclass
class RequestHints:
    """Coarse caller location used to localize answers."""

    latitude: Optional[str] = None
    longitude: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None


def request_prompt(hints: RequestHints) -> str:
    return (
        "About the origin of user's request:\n"
        f"- lat: {hints.latitude or 'unknown'}\n"
        f"- lon: {hints.longitude or 'unknown'}\n"
        f"- city: {hints.city or 'unknown'}\n"
        f"- country: {hints.country or 'unknown'}"
    )


def system_prompt(selected_chat_model: str, hints: RequestHints) -> str:
    parts = [REGULAR_PROMPT, request_prompt(hints)]
    # reasoning turns run without tools
    if selected_chat_model != ChatModelId.REASONING.value:
        parts.append(TOOLS_PROMPT)
    return "\n\n".join(parts)


def update_document_prompt(current_content: Optional[str], kind: str) -> str:
    label = {"code": "code snippet", "sheet": "spreadsheet"}.get(kind, "document")
    return (
        f"Improve the following contents of the {label} based on the given prompt.\n\n"
        f"{current_content or ''}"
    )
