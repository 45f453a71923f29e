from types import SimpleNamespace

from chatrelay.service.providers import (
    EchoProvider,
    OpenAICompatibleProvider,
    _merge_tool_calls,
    build_provider,
)


def _chunk(content=None, tool_calls=None, finish_reason=None, usage=None):
    delta = SimpleNamespace(content=content, tool_calls=tool_calls)
    choices = [SimpleNamespace(delta=delta, finish_reason=finish_reason)]
    return SimpleNamespace(choices=choices, usage=usage)


class FakeCompletions:
    def __init__(self, chunks=None, completion=None):
        self.chunks = chunks or []
        self.completion = completion
        self.requests = []

    async def create(self, **request):
        self.requests.append(request)
        if not request.get("stream"):
            return self.completion
        return self._iterate()

    async def _iterate(self):
        for chunk in self.chunks:
            yield chunk


def _provider(settings, completions):
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return OpenAICompatibleProvider(settings, client=client)


async def _drain(stream):
    return [event async for event in stream]


def test_merge_tool_calls_concatenates_argument_fragments():
    calls = []
    _merge_tool_calls(calls, [{"index": 0, "id": "c1", "function": {"name": "get_weather", "arguments": '{"lat'}}])
    _merge_tool_calls(calls, [{"index": 0, "function": {"arguments": 'itude": 1}'}}])
    _merge_tool_calls(calls, [{"id": "c2", "function": {"name": "web_search", "arguments": "{}"}}])
    assert calls == [
        {"id": "c1", "name": "get_weather", "arguments": '{"latitude": 1}'},
        {"id": "c2", "name": "web_search", "arguments": "{}"},
    ]


async def test_stream_yields_text_tool_calls_and_finish(settings):
    usage = SimpleNamespace(prompt_tokens=4, completion_tokens=2, total_tokens=6)
    completions = FakeCompletions(
        chunks=[
            _chunk(content="Hel"),
            _chunk(content="lo"),
            _chunk(tool_calls=[{"index": 0, "id": "call_9", "function": {"name": "get_weather", "arguments": "{}"}}]),
            _chunk(finish_reason="tool_calls"),
            SimpleNamespace(choices=[], usage=usage),
        ]
    )
    provider = _provider(settings, completions)
    tools = [{"type": "function", "function": {"name": "get_weather"}}]

    events = await _drain(provider.stream("chat-model", "sys", [{"role": "user", "content": "hi"}], tools))

    assert events[:2] == [{"type": "text-delta", "text": "Hel"}, {"type": "text-delta", "text": "lo"}]
    assert events[2] == {"type": "tool-call", "id": "call_9", "name": "get_weather", "arguments": "{}"}
    assert events[3]["type"] == "finish"
    assert events[3]["finish_reason"] == "tool_calls"
    assert events[3]["usage"] is usage

    request = completions.requests[0]
    assert request["model"] == settings.chat_model_name
    assert request["messages"][0] == {"role": "system", "content": "sys"}
    assert request["tools"] == tools
    assert request["stream_options"] == {"include_usage": True}


async def test_stream_without_tools_omits_tools_key(settings):
    completions = FakeCompletions(chunks=[_chunk(content="ok", finish_reason="stop")])
    provider = _provider(settings, completions)
    await _drain(provider.stream("chat-model-reasoning", "sys", [], None))
    request = completions.requests[0]
    assert "tools" not in request
    assert request["model"] == settings.reasoning_model_name


async def test_complete_returns_first_choice_or_empty(settings):
    completion = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content="Title"))])
    assert await _provider(settings, FakeCompletions(completion=completion)).complete("title-model", "s", "p") == "Title"
    empty = SimpleNamespace(choices=[])
    assert await _provider(settings, FakeCompletions(completion=empty)).complete("title-model", "s", "p") == ""


async def test_echo_provider_streams_last_user_text():
    events = await _drain(
        EchoProvider().stream(
            "chat-model",
            "be brief",
            [{"role": "user", "content": [{"type": "text", "text": "ping pong"}]}],
        )
    )
    assert [e["text"] for e in events if e["type"] == "text-delta"] == ["ping", " pong"]
    assert events[-1]["usage"]["completion_tokens"] == 2


def test_build_provider_uses_echo_in_test_mode(settings):
    keyed = settings.model_copy(update={"model_api_key": "sk-test"})
    assert isinstance(build_provider(keyed), EchoProvider)
    live = keyed.model_copy(update={"test_mode": False})
    assert isinstance(build_provider(live), OpenAICompatibleProvider)
