"""Tests for the streaming OpenAI-compatible provider and the chat history adapter."""

import json

import httpx
import pytest

from pytoolcall.config.models import Config, Settings
from pytoolcall.errors import ProviderError, QuotaExceededError
from pytoolcall.llm.chat import ChatClient, to_provider_messages
from pytoolcall.llm.openai_compat import OpenAICompatProvider, StreamedToolCall
from pytoolcall.session.models import Message, StreamEventType
from pytoolcall.tools.registry import ToolRegistry
from pytoolcall.util.cancel import CancelToken


def _sse(*chunks):
    body = "".join(f"data: {json.dumps(c)}\n\n" for c in chunks) + "data: [DONE]\n\n"
    return httpx.Response(200, content=body.encode(), headers={"content-type": "text/event-stream"})


def _delta(**delta):
    return {"choices": [{"index": 0, "delta": delta}]}


def _provider(handler, **kwargs):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    kwargs.setdefault("retry_base_delay", 0)
    return OpenAICompatProvider(model="m1", base_url="http://llm.test/v1", api_key="k", client=client, **kwargs)


def test_streams_text_then_tool_calls():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return _sse(
            _delta(content="Hel"),
            _delta(content="lo"),
            _delta(tool_calls=[{"index": 0, "id": "call_a", "function": {"name": "echo", "arguments": '{"te'}}]),
            _delta(tool_calls=[{"index": 0, "function": {"arguments": 'xt": "x"}'}}]),
            _delta(tool_calls=[{"index": 1, "function": {"name": "now", "arguments": ""}}]),
        )

    tools = [{"type": "function", "function": {"name": "echo", "parameters": {}}}]
    chunks = list(_provider(handler).stream_chat([{"role": "user", "content": "hi"}], tools, model="m2"))

    assert chunks == [
        "Hel",
        "lo",
        StreamedToolCall(id="call_a", name="echo", arguments={"text": "x"}),
        StreamedToolCall(id="call_1", name="now", arguments={}),
    ]
    assert seen["url"] == "http://llm.test/v1/chat/completions"
    assert seen["auth"] == "Bearer k"
    assert seen["body"]["model"] == "m2"
    assert seen["body"]["stream"] is True
    assert seen["body"]["tools"] == tools


def test_rate_limit_raises_quota_error():
    def handler(request):
        return httpx.Response(429, json={"error": {"message": "slow down"}})

    with pytest.raises(QuotaExceededError) as exc:
        list(_provider(handler).stream_chat([]))
    assert exc.value.model == "m1"
    assert str(exc.value) == "slow down"


def test_client_error_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, json={"error": {"message": "bad schema"}})

    with pytest.raises(ProviderError) as exc:
        list(_provider(handler).stream_chat([]))
    assert exc.value.status_code == 400
    assert len(calls) == 1


def test_server_errors_are_retried_before_output():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) < 3:
            return httpx.Response(503, text="unavailable")
        return _sse(_delta(content="ok"))

    assert list(_provider(handler).stream_chat([])) == ["ok"]
    assert len(calls) == 3


def test_transport_errors_give_up_after_retries():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ProviderError, match="refused"):
        list(_provider(handler, max_retries=2).stream_chat([]))
    assert len(calls) == 3


def test_missing_api_key():
    provider = OpenAICompatProvider(model="m", base_url="http://llm.test", api_key="", provider_name="local")
    with pytest.raises(ProviderError, match="Missing API key for provider 'local'"):
        list(provider.stream_chat([]))


def test_history_conversion():
    history = [
        Message.user_text("look"),
        Message(role="model", parts=[
            {"text": "checking"},
            {"function_call": {"id": "c1", "name": "read_file", "args": {"path": "a.png"}}},
        ]),
        Message(role="user", parts=[
            {"function_response": {"id": "c1", "name": "read_file", "response": {"output": "Binary content"}}},
            {"inline_data": {"mime_type": "image/png", "data": "AAAA"}},
        ]),
        Message(role="model", parts=[{"function_call": {"id": "c2", "name": "fail", "args": {}}}]),
        Message(role="user", parts=[
            {"function_response": {"id": "c2", "name": "fail", "response": {"error": "boom"}}},
        ]),
    ]

    out = to_provider_messages(history, "sys")

    assert out[0] == {"role": "system", "content": "sys"}
    assert out[1] == {"role": "user", "content": "look"}
    assert out[2]["role"] == "assistant"
    assert out[2]["content"] == "checking"
    assert out[2]["tool_calls"][0]["function"] == {"name": "read_file", "arguments": '{"path": "a.png"}'}
    assert out[3] == {"role": "tool", "tool_call_id": "c1", "content": "Binary content"}
    assert out[4] == {
        "role": "user",
        "content": [{"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}}],
    }
    assert out[5]["content"] is None
    assert out[6] == {"role": "tool", "tool_call_id": "c2", "content": '{"error": "boom"}'}


class RecordingProvider:
    def __init__(self, chunks):
        self.chunks = chunks
        self.requests = []

    def stream_chat(self, messages, tools=None, *, model=None, cancel=None):
        self.requests.append({"messages": messages, "tools": tools, "model": model})
        yield from self.chunks


def test_chat_client_records_history_and_uses_active_model(make_tool):
    registry = ToolRegistry()
    registry.register(make_tool("echo", parameters={"type": "object", "properties": {"text": {"type": "string"}}}))
    config = Config(Settings(), "primary")
    provider = RecordingProvider(["hi ", StreamedToolCall(id="c1", name="echo", arguments={"text": "x"})])
    chat = ChatClient(provider, config, registry, system_prompt=None)

    config.set_model("other")
    events = list(chat.send_message_stream([{"text": "go"}], CancelToken(), "p7"))

    assert [e.type for e in events] == [StreamEventType.CONTENT, StreamEventType.TOOL_CALL_REQUEST]
    assert events[1].value.prompt_id == "p7"
    assert provider.requests[0]["model"] == "other"
    assert provider.requests[0]["tools"][0]["function"]["name"] == "echo"
    assert chat.history[-1].parts == [
        {"text": "hi "},
        {"function_call": {"id": "c1", "name": "echo", "args": {"text": "x"}}},
    ]

    chat.reset_chat()
    assert chat.history == []
