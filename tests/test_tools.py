import json
import uuid

import httpx

from chatrelay.service.tools import ToolContext, ToolRegistry, parse_suggestions
from chatrelay.storage.memory import MemoryStore


class ArtifactProvider:
    def __init__(self, reply="generated body"):
        self.reply = reply
        self.prompts = []

    async def complete(self, model_id, system, prompt):
        self.prompts.append((model_id, system, prompt))
        return self.reply


def _ctx(store=None, provider=None):
    store = store or MemoryStore()
    user = store.create_user(user_type="regular")
    return ToolContext(
        user_id=user.id,
        chat_id=str(uuid.uuid4()),
        provider=provider or ArtifactProvider(),
        store=store,
    )


def test_schemas_expose_openai_function_format(settings):
    registry = ToolRegistry(settings)
    schemas = {s["function"]["name"]: s for s in registry.schemas()}
    assert set(schemas) == {
        "get_weather",
        "web_search",
        "create_document",
        "update_document",
        "request_suggestions",
    }
    weather = schemas["get_weather"]
    assert weather["type"] == "function"
    assert set(weather["function"]["parameters"]["required"]) == {"latitude", "longitude"}
    assert [s["function"]["name"] for s in registry.schemas(["web_search", "nope"])] == ["web_search"]


async def test_weather_calls_forecast_api(settings):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json={"current": {"temperature_2m": 21.5}})

    registry = ToolRegistry(settings, transport=httpx.MockTransport(handler))
    output = await registry.execute(
        "get_weather", json.dumps({"latitude": 48.85, "longitude": 2.35}), _ctx()
    )

    assert output == {"current": {"temperature_2m": 21.5}}
    assert seen["params"]["latitude"] == "48.85"
    assert seen["params"]["daily"] == "sunrise,sunset"
    assert seen["params"]["timezone"] == "auto"


async def test_weather_upstream_error_becomes_error_result(settings):
    registry = ToolRegistry(
        settings, transport=httpx.MockTransport(lambda request: httpx.Response(503))
    )
    output = await registry.execute("get_weather", {"latitude": 1, "longitude": 2}, _ctx())
    assert output == {"error": "Weather request failed with status 503"}


async def test_transport_failure_becomes_error_result(settings):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    registry = ToolRegistry(settings, transport=httpx.MockTransport(handler))
    output = await registry.execute("get_weather", {"latitude": 1, "longitude": 2}, _ctx())
    assert output == {"error": "get_weather request failed"}


async def test_web_search_requires_api_key(settings):
    registry = ToolRegistry(settings)
    output = await registry.execute("web_search", {"query": "python"}, _ctx())
    assert output["error"].startswith("SERPER_API_KEY is not defined")


async def test_web_search_maps_organic_results(settings):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["key"] = request.headers["X-API-KEY"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "organic": [
                    {"title": "Python", "link": "https://python.org", "snippet": "Home", "position": 1},
                    "junk",
                ]
            },
        )

    keyed = settings.model_copy(update={"serper_api_key": "serper-key"})
    registry = ToolRegistry(keyed, transport=httpx.MockTransport(handler))
    output = await registry.execute("web_search", {"query": "python"}, _ctx())

    assert seen == {"key": "serper-key", "body": {"q": "python"}}
    assert output == {
        "results": [{"title": "Python", "link": "https://python.org", "snippet": "Home"}]
    }


async def test_unknown_tool_and_invalid_arguments(settings):
    registry = ToolRegistry(settings)
    ctx = _ctx()
    assert await registry.execute("launch_rockets", "{}", ctx) == {"error": "unknown tool: launch_rockets"}
    assert await registry.execute("get_weather", "{not json", ctx) == {"error": "invalid tool arguments"}
    assert await registry.execute("get_weather", {"latitude": 200, "longitude": 0}, ctx) == {
        "error": "invalid tool arguments"
    }


async def test_create_and_update_document(settings):
    provider = ArtifactProvider("first draft")
    ctx = _ctx(provider=provider)
    registry = ToolRegistry(settings)

    created = await registry.execute("create_document", {"title": "Haiku", "kind": "text"}, ctx)
    assert created["title"] == "Haiku"
    assert ctx.store.get_document_by_id(created["id"]).content == "first draft"
    assert provider.prompts[0][0] == "artifact-model"

    provider.reply = "second draft"
    updated = await registry.execute(
        "update_document", {"id": created["id"], "description": "make it rhyme"}, ctx
    )
    assert updated["id"] == created["id"]
    assert ctx.store.get_document_by_id(created["id"]).content == "second draft"


async def test_update_document_of_other_user_is_not_found(settings):
    store = MemoryStore()
    owner_ctx = _ctx(store=store)
    other_ctx = _ctx(store=store)
    registry = ToolRegistry(settings)
    created = await registry.execute("create_document", {"title": "Private"}, owner_ctx)

    output = await registry.execute(
        "update_document", {"id": created["id"], "description": "vandalize"}, other_ctx
    )
    assert output == {"error": "Document not found"}


async def test_request_suggestions_saves_parsed_rows(settings):
    provider = ArtifactProvider("draft")
    ctx = _ctx(provider=provider)
    registry = ToolRegistry(settings)
    created = await registry.execute("create_document", {"title": "Essay"}, ctx)

    provider.reply = "```json\n" + json.dumps(
        [
            {"originalSentence": "Its good.", "suggestedSentence": "It's good.", "description": "typo"},
            {"originalSentence": "missing suggestion"},
        ]
    ) + "\n```"
    output = await registry.execute("request_suggestions", {"document_id": created["id"]}, ctx)

    assert output["count"] == 1
    rows = ctx.store.list_suggestions_by_document_id(created["id"])
    assert [(r.original_text, r.suggested_text) for r in rows] == [("Its good.", "It's good.")]


def test_parse_suggestions_tolerates_garbage():
    assert parse_suggestions("not json") == []
    assert parse_suggestions('{"originalSentence": "a"}') == []
    many = json.dumps([{"originalSentence": str(i), "suggestedSentence": str(i)} for i in range(9)])
    assert len(parse_suggestions(many)) == 5
