import json

import httpx
import pytest

from ut_agent.config import LlmConfig
from ut_agent.llm import (
    MAX_TOOL_CONTENT,
    TRUNCATION_MARKER,
    LlmTimeoutError,
    LlmTransportError,
    OpenAiAdapter,
    StreamingHandler,
    build_chat_request,
    create_adapter,
    decode_event_stream,
    normalize_base_url,
    parse_assistant_message,
    parse_tool_arguments,
    serialize_message,
)
from ut_agent.models import (
    AssistantMessage,
    ParameterSchema,
    PropertySchema,
    SystemMessage,
    ToolCall,
    ToolDefinition,
    ToolMessage,
    UserMessage,
)


class RecordingHandler(StreamingHandler):
    def __init__(self):
        self.tokens = []
        self.tool_calls = []
        self.completed = []
        self.errors = []

    def on_token(self, token):
        self.tokens.append(token)

    def on_tool_call(self, call):
        self.tool_calls.append(call)

    def on_complete(self, text, tool_calls):
        self.completed.append((text, tool_calls))

    def on_error(self, error):
        self.errors.append(error)


def _sse(*chunks, done=True):
    lines = [f"data: {json.dumps(chunk)}" for chunk in chunks]
    if done:
        lines.append("data: [DONE]")
    return lines


def _adapter(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return OpenAiAdapter(base_url="https://llm.test/v1", api_key="sk-test", model="m", client=client)

# ---------------------------------------------------------------------------
# Request serialization
# ---------------------------------------------------------------------------

def test_serialize_assistant_with_tool_calls_keeps_empty_content():
    msg = AssistantMessage(content=None, tool_calls=[ToolCall(id="c1", name="read_file", arguments={"path": "a.py"})])
    payload = serialize_message(msg)
    assert payload["content"] == ""
    call = payload["tool_calls"][0]
    assert call["id"] == "c1"
    assert call["type"] == "function"
    assert call["index"] == 0
    assert json.loads(call["function"]["arguments"]) == {"path": "a.py"}

def test_serialize_tool_message_caps_content():
    msg = ToolMessage(tool_call_id="c1", name="read_file", content="x" * (MAX_TOOL_CONTENT + 10))
    payload = serialize_message(msg)
    assert payload["tool_call_id"] == "c1"
    assert payload["content"].endswith(TRUNCATION_MARKER)
    assert len(payload["content"]) == MAX_TOOL_CONTENT + len(TRUNCATION_MARKER)

def test_build_chat_request_with_tools():
    definition = ToolDefinition(
        name="read_file",
        description="Read a file",
        parameters=ParameterSchema(properties={"path": PropertySchema(description="p")}, required=["path"]),
    )
    payload = build_chat_request(
        "m", [SystemMessage(content="s"), UserMessage(content="u")], [definition], 0.0, stream=True
    )
    assert [m["role"] for m in payload["messages"]] == ["system", "user"]
    assert payload["tool_choice"] == "auto"
    assert payload["temperature"] == 0.0
    assert payload["stream"] is True
    params = payload["tools"][0]["function"]["parameters"]
    assert params == {
        "type": "object",
        "properties": {"path": {"type": "string", "description": "p"}},
        "required": ["path"],
    }

def test_build_chat_request_omits_empty_optionals():
    no_args = ToolDefinition(name="compile_project")
    payload = build_chat_request("m", [UserMessage(content="u")], [no_args])
    assert "temperature" not in payload
    assert "stream" not in payload
    assert "required" not in payload["tools"][0]["function"]["parameters"]

# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

def test_parse_tool_arguments_variants():
    assert parse_tool_arguments('{"a": 1, "b": null, "c": {"d": 2}}') == {"a": 1, "c": '{"d": 2}'}
    assert parse_tool_arguments({"x": "y"}) == {"x": "y"}
    assert parse_tool_arguments("not json") == {}
    assert parse_tool_arguments("") == {}
    assert parse_tool_arguments(None) == {}
    assert parse_tool_arguments("[1, 2]") == {}

def test_parse_assistant_message():
    body = {
        "choices": [
            {
                "message": {
                    "content": None,
                    "tool_calls": [
                        {"id": "c1", "function": {"name": "read_file", "arguments": '{"path": "a.py"}'}},
                        {"id": "c2", "function": {"name": "", "arguments": "{}"}},
                    ],
                }
            }
        ]
    }
    msg = parse_assistant_message(body)
    assert msg.content == ""
    assert [(c.id, c.name, c.arguments) for c in msg.tool_calls] == [("c1", "read_file", {"path": "a.py"})]

def test_parse_assistant_message_without_choices():
    with pytest.raises(LlmTransportError, match="no choices"):
        parse_assistant_message({"choices": []})

# ---------------------------------------------------------------------------
# SSE decoding
# ---------------------------------------------------------------------------

def test_decode_interleaved_tool_call_fragments():
    lines = _sse(
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "id": "c1", "function": {"name": "foo", "arguments": '{"a"'}}]}}]},
        {"choices": [{"delta": {"tool_calls": [{"index": 1, "id": "c2", "function": {"name": "bar", "arguments": ""}}]}}]},
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": ":1}"}}]}}]},
        {"choices": [{"delta": {"tool_calls": [{"index": 1, "function": {"arguments": "{}"}}]}}]},
        {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
    )
    handler = RecordingHandler()
    text, calls = decode_event_stream(lines, handler)

    assert text == ""
    assert [(c.id, c.name, c.arguments) for c in calls] == [("c1", "foo", {"a": 1}), ("c2", "bar", {})]
    assert handler.tool_calls == list(calls)

def test_decode_text_tokens_and_skips_noise():
    lines = [
        ": keep-alive",
        "",
        'data: {"choices": [{"delta": {"content": "Hel"}}]}',
        "data: {broken",
        'data: {"choices": [{"delta": {"content": "lo"}}]}',
        'data: {"choices": [{"delta": {}, "finish_reason": "stop"}]}',
        'data: {"choices": [{"delta": {"content": "ignored"}}]}',
    ]
    handler = RecordingHandler()
    text, calls = decode_event_stream(lines, handler)
    assert text == "Hello"
    assert calls is None
    assert handler.tokens == ["Hel", "lo"]

# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "base_url, expected",
    [
        (None, "https://api.openai.com/v1"),
        ("https://host/", "https://host/v1"),
        ("https://host/v1/", "https://host/v1"),
        ("https://open.bigmodel.cn/api/paas/v4", "https://open.bigmodel.cn/api/paas/v4"),
    ],
)
def test_normalize_base_url(base_url, expected):
    assert normalize_base_url(base_url) == expected

def test_chat_posts_request_and_parses_reply():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"content": "hi"}}]})

    reply = _adapter(handler).chat([UserMessage(content="hello")])

    assert reply.content == "hi"
    assert seen["url"] == "https://llm.test/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["messages"] == [{"role": "user", "content": "hello"}]
    assert "tools" not in seen["body"]

def test_chat_non_200_raises_with_status_and_body():
    adapter = _adapter(lambda request: httpx.Response(429, text="slow down"))
    with pytest.raises(LlmTransportError, match="API error: 429 - slow down"):
        adapter.chat([UserMessage(content="hello")])

def test_chat_network_failure_raises_transport_error():
    def handler(request):
        raise httpx.ConnectError("refused")

    with pytest.raises(LlmTransportError, match="Request failed"):
        _adapter(handler).chat([UserMessage(content="hello")])

def test_chat_applies_per_request_timeout():
    seen = {}

    def handler(request):
        seen["timeout"] = request.extensions["timeout"]
        return httpx.Response(200, json={"choices": [{"message": {"content": "hi"}}]})

    _adapter(handler).chat([UserMessage(content="hello")], timeout=7.5)

    assert seen["timeout"]["read"] == 7.5

def test_chat_timeout_raises_timeout_error():
    def handler(request):
        raise httpx.ReadTimeout("too slow")

    with pytest.raises(LlmTimeoutError, match="Request timed out"):
        _adapter(handler).chat([UserMessage(content="hello")], timeout=0.1)

def test_chat_stream_completes_once():
    body = "\n".join(
        _sse(
            {"choices": [{"delta": {"content": "done"}}]},
            {"choices": [{"delta": {}, "finish_reason": "stop"}]},
        )
    )
    adapter = _adapter(lambda request: httpx.Response(200, text=body))
    recorder = RecordingHandler()

    reader = adapter.chat_stream([UserMessage(content="go")], None, recorder)
    reader.join(timeout=5)

    assert recorder.completed == [("done", None)]
    assert recorder.errors == []

def test_chat_stream_error_reported_exactly_once():
    adapter = _adapter(lambda request: httpx.Response(500, text="boom"))
    recorder = RecordingHandler()

    reader = adapter.chat_stream([UserMessage(content="go")], None, recorder)
    reader.join(timeout=5)

    assert len(recorder.errors) == 1
    assert isinstance(recorder.errors[0], LlmTransportError)
    assert "500" in str(recorder.errors[0])
    assert recorder.completed == []

def test_test_connection_reports_failure():
    adapter = _adapter(lambda request: httpx.Response(401, text="bad key"))
    assert adapter.test_connection() is False

# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def _llm_config(**overrides):
    values = dict(
        protocol="openai",
        model_name="gpt-4o-mini",
        base_url="",
        temperature=0.0,
        timeout_seconds=30,
        api_key_env="OPENAI_API_KEY",
        api_key="sk-test",
    )
    values.update(overrides)
    return LlmConfig(**values)

def test_create_adapter():
    adapter = create_adapter(_llm_config())
    assert adapter.model == "gpt-4o-mini"
    assert adapter.endpoint == "https://api.openai.com/v1/chat/completions"
    adapter.close()

@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"protocol": "anthropic"}, "Unsupported protocol"),
        ({"api_key": ""}, "API key is missing"),
        ({"model_name": ""}, "model_name is required"),
    ],
)
def test_create_adapter_rejects_bad_config(overrides, message):
    with pytest.raises(ValueError, match=message):
        create_adapter(_llm_config(**overrides))
