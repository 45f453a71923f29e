from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Literal, Optional, Type

import httpx
from pydantic import BaseModel, Field, ValidationError

from chatrelay.config import Settings
from chatrelay.logging import get_logger, sanitize_error_message
from chatrelay.service.prompts import (
    DOCUMENT_PROMPTS,
    SUGGESTIONS_PROMPT,
    update_document_prompt,
)
from chatrelay.storage.models import Suggestion

logger = get_logger(__name__)

ARTIFACT_MODEL = "artifact-model"


class ToolError(Exception):
    """A tool could not complete; reported back to the model as its result."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


@dataclass
class ToolContext:
    user_id: str
    chat_id: str
    provider: Any
    store: Any


class GetWeatherArgs(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class WebSearchArgs(BaseModel):
    query: str = Field(
        ..., min_length=1, max_length=500, description="The search query to look up on the web"
    )


class CreateDocumentArgs(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    kind: Literal["text", "code", "sheet"] = "text"


class UpdateDocumentArgs(BaseModel):
    id: str = Field(..., description="The ID of the document to update")
    description: str = Field(..., min_length=1, description="The description of changes to make")


class RequestSuggestionsArgs(BaseModel):
    document_id: str = Field(..., description="The ID of the document to request edits for")


ToolHandler = Callable[[BaseModel, ToolContext], Awaitable[Any]]


@dataclass(frozen=True)
class Tool:
    name: str
    description: str
    args_model: Type[BaseModel]
    handler: ToolHandler

    def schema(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.args_model.model_json_schema(),
            },
        }


class ToolRegistry:
    """Named side-effecting capabilities the model may call mid-turn."""

    def __init__(
        self, settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        self.settings = settings
        self._transport = transport
        self.tools: Dict[str, Tool] = {
            tool.name: tool
            for tool in (
                Tool(
                    "get_weather",
                    "Get the current weather at a location",
                    GetWeatherArgs,
                    self._get_weather,
                ),
                Tool(
                    "web_search",
                    "Perform a real-time web search and return the most relevant organic results. "
                    "Always use this tool when up-to-date information from the public web is required.",
                    WebSearchArgs,
                    self._web_search,
                ),
                Tool(
                    "create_document",
                    "Create a document for writing or content creation activities.",
                    CreateDocumentArgs,
                    self._create_document,
                ),
                Tool(
                    "update_document",
                    "Update a document with the given description.",
                    UpdateDocumentArgs,
                    self._update_document,
                ),
                Tool(
                    "request_suggestions",
                    "Request suggestions for a document",
                    RequestSuggestionsArgs,
                    self._request_suggestions,
                ),
            )
        }

    @property
    def names(self) -> List[str]:
        return list(self.tools)

    def schemas(self, names: Optional[Iterable[str]] = None) -> List[dict]:
        selected = self.names if names is None else [n for n in names if n in self.tools]
        return [self.tools[name].schema() for name in selected]

    def _client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(self.settings.tool_timeout_seconds, connect=5.0)
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def execute(self, name: str, raw_arguments: Any, ctx: ToolContext) -> Any:
        """Run a tool and return its output; failures become ``{"error": ...}``."""
        tool = self.tools.get(name)
        if tool is None:
            logger.warning("tool_unknown", tool=name)
            return {"error": f"unknown tool: {name}"}
        try:
            arguments = json.loads(raw_arguments) if isinstance(raw_arguments, str) else raw_arguments
            args = tool.args_model.model_validate(arguments or {})
        except (ValueError, ValidationError) as exc:
            logger.warning("tool_arguments_invalid", tool=name, error=str(exc))
            return {"error": "invalid tool arguments"}
        try:
            return await tool.handler(args, ctx)
        except ToolError as exc:
            logger.warning("tool_failed", tool=name, error=exc.message)
            return {"error": exc.message}
        except httpx.HTTPError as exc:
            logger.warning("tool_http_failed", tool=name, error=sanitize_error_message(str(exc)))
            return {"error": f"{name} request failed"}
        except Exception as exc:
            logger.exception(
                "tool_crashed", tool=name, error=sanitize_error_message(str(exc))
            )
            return {"error": f"{name} failed"}

    # handlers
    async def _get_weather(self, args: GetWeatherArgs, ctx: ToolContext) -> dict:
        params = {
            "latitude": args.latitude,
            "longitude": args.longitude,
            "current": "temperature_2m",
            "hourly": "temperature_2m",
            "daily": "sunrise,sunset",
            "timezone": "auto",
        }
        async with self._client() as client:
            response = await client.get(self.settings.weather_api_url, params=params)
        if response.status_code >= 400:
            raise ToolError(f"Weather request failed with status {response.status_code}")
        return response.json()

    async def _web_search(self, args: WebSearchArgs, ctx: ToolContext) -> dict:
        api_key = self.settings.serper_api_key
        if not api_key:
            raise ToolError(
                "SERPER_API_KEY is not defined. Please add it to your environment configuration."
            )
        async with self._client() as client:
            response = await client.post(
                self.settings.serper_url,
                headers={"X-API-KEY": api_key, "Content-Type": "application/json"},
                json={"q": args.query},
            )
        if response.status_code >= 400:
            raise ToolError(f"Serper request failed with status {response.status_code}")
        data = response.json() or {}
        results = [
            {
                "title": item.get("title"),
                "link": item.get("link"),
                "snippet": item.get("snippet"),
            }
            for item in data.get("organic") or []
            if isinstance(item, dict)
        ]
        return {"results": results}

    async def _create_document(self, args: CreateDocumentArgs, ctx: ToolContext) -> dict:
        document_id = str(uuid.uuid4())
        content = await ctx.provider.complete(
            ARTIFACT_MODEL, DOCUMENT_PROMPTS[args.kind], args.title
        )
        ctx.store.save_document(document_id, ctx.user_id, args.title, args.kind, content)
        return {
            "id": document_id,
            "title": args.title,
            "kind": args.kind,
            "content": "A document was created and is now visible to the user.",
        }

    def _owned_document(self, document_id: str, ctx: ToolContext):
        document = ctx.store.get_document_by_id(document_id)
        if document is None or document.user_id != ctx.user_id:
            raise ToolError("Document not found")
        return document

    async def _update_document(self, args: UpdateDocumentArgs, ctx: ToolContext) -> dict:
        document = self._owned_document(args.id, ctx)
        content = await ctx.provider.complete(
            ARTIFACT_MODEL,
            update_document_prompt(document.content, document.kind),
            args.description,
        )
        ctx.store.save_document(document.id, ctx.user_id, document.title, document.kind, content)
        return {
            "id": document.id,
            "title": document.title,
            "kind": document.kind,
            "content": "The document has been updated successfully.",
        }

    async def _request_suggestions(
        self, args: RequestSuggestionsArgs, ctx: ToolContext
    ) -> dict:
        document = self._owned_document(args.document_id, ctx)
        raw = await ctx.provider.complete(ARTIFACT_MODEL, SUGGESTIONS_PROMPT, document.content or "")
        suggestions = [
            Suggestion(
                id=str(uuid.uuid4()),
                document_id=document.id,
                document_created_at=document.created_at,
                original_text=item["originalSentence"],
                suggested_text=item["suggestedSentence"],
                description=item.get("description"),
                user_id=ctx.user_id,
            )
            for item in parse_suggestions(raw)
        ]
        if suggestions:
            ctx.store.save_suggestions(suggestions)
        return {
            "id": document.id,
            "title": document.title,
            "kind": document.kind,
            "message": "Suggestions have been added to the document",
            "count": len(suggestions),
        }


def parse_suggestions(raw: str) -> List[dict]:
    """Parse the model's suggestion list, ignoring malformed entries."""
    text = (raw or "").strip()
    if text.startswith("```"):
        text = text.strip("`")
        text = text.split("\n", 1)[1] if "\n" in text else ""
    try:
        items = json.loads(text)
    except ValueError:
        logger.warning("suggestions_unparseable", length=len(text))
        return []
    if not isinstance(items, list):
        return []
    return [
        item
        for item in items
        if isinstance(item, dict)
        and isinstance(item.get("originalSentence"), str)
        and isinstance(item.get("suggestedSentence"), str)
    ][:5]
