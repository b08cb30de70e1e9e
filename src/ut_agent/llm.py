# llm.py
# LLM adapter for OpenAI-compatible chat/completions endpoints.
#
# Speaks the wire protocol directly over httpx:
#   chat()        blocking request, one AssistantMessage back
#   chat_stream() SSE request decoded on a background reader thread,
#                 results pushed to a StreamingHandler
#
# The per-index tool-call buffers and the running text live only inside the
# reader thread; the handler receives an immutable tuple at completion.

import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Iterable

import httpx

from ut_agent import display
from ut_agent.config import LlmConfig
from ut_agent.models import (
    AssistantMessage,
    Message,
    Scalar,
    ToolCall,
    ToolDefinition,
    ToolMessage,
    UserMessage,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
MAX_TOOL_CONTENT = 50_000
TRUNCATION_MARKER = "\n... (truncated)"
SUPPORTED_PROTOCOLS = ("openai", "openai-zhipu", "zhipu")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class LlmTransportError(Exception):
    """Raised on network failure, non-200 status, or a malformed response body."""


class LlmTimeoutError(LlmTransportError):
    """Raised when a blocking request runs past its per-request deadline."""


# ---------------------------------------------------------------------------
# Streaming handlers
# ---------------------------------------------------------------------------


class StreamingHandler:
    """
    Receives streaming callbacks. Every method runs on the reader thread.

    on_complete fires exactly once on success; on_error fires exactly once
    on failure; never both.
    """

    def on_token(self, token: str) -> None:
        pass

    def on_tool_call(self, call: ToolCall) -> None:
        pass

    def on_complete(self, text: str, tool_calls: tuple[ToolCall, ...] | None) -> None:
        pass

    def on_error(self, error: BaseException) -> None:
        pass


class ConsoleStreamingHandler(StreamingHandler):
    """Renders streamed tokens to the terminal. The agent loop announces tool calls."""

    def on_token(self, token: str) -> None:
        display.stream_token(token)

    def on_complete(self, text: str, tool_calls: tuple[ToolCall, ...] | None) -> None:
        display.stream_end()

    def on_error(self, error: BaseException) -> None:
        display.stream_error(str(error))


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def _cap_tool_content(content: str) -> str:
    if len(content) > MAX_TOOL_CONTENT:
        return content[:MAX_TOOL_CONTENT] + TRUNCATION_MARKER
    return content


def serialize_message(message: Message) -> dict[str, Any]:
    if isinstance(message, AssistantMessage):
        # content must be present even when empty; some providers reject its absence
        payload: dict[str, Any] = {"role": "assistant", "content": message.content or ""}
        if message.tool_calls:
            payload["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "index": index,
                    "function": {
                        "name": call.name,
                        "arguments": json.dumps(call.arguments, ensure_ascii=False),
                    },
                }
                for index, call in enumerate(message.tool_calls)
            ]
        return payload
    if isinstance(message, ToolMessage):
        return {
            "role": "tool",
            "tool_call_id": message.tool_call_id,
            "content": _cap_tool_content(message.content),
        }
    return {"role": message.role, "content": message.content}


def serialize_tool(definition: ToolDefinition) -> dict[str, Any]:
    parameters: dict[str, Any] = {
        "type": "object",
        "properties": {
            name: {"type": prop.type, "description": prop.description}
            for name, prop in definition.parameters.properties.items()
        },
    }
    if definition.parameters.required:
        parameters["required"] = list(definition.parameters.required)
    return {
        "type": "function",
        "function": {
            "name": definition.name,
            "description": definition.description,
            "parameters": parameters,
        },
    }


def build_chat_request(
    model: str,
    messages: Iterable[Message],
    tools: list[ToolDefinition] | None = None,
    temperature: float | None = None,
    stream: bool = False,
) -> dict[str, Any]:
    """Assemble the chat/completions request envelope."""
    payload: dict[str, Any] = {
        "model": model,
        "messages": [serialize_message(msg) for msg in messages],
    }
    if tools:
        payload["tools"] = [serialize_tool(definition) for definition in tools]
        payload["tool_choice"] = "auto"
    if temperature is not None:
        payload["temperature"] = temperature
    if stream:
        payload["stream"] = True
    return payload


# ---------------------------------------------------------------------------
# Deserialization
# ---------------------------------------------------------------------------


def parse_tool_arguments(raw: str | dict | None) -> dict[str, Scalar]:
    """
    Decode a tool-call argument payload into a scalar map.

    Nulls are dropped, nested values are kept as their JSON text, and an
    unparseable payload yields no arguments.
    """
    if isinstance(raw, dict):
        data = raw
    else:
        if not isinstance(raw, str) or not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("Discarding unparseable tool arguments: %.200s", raw)
            return {}
    if not isinstance(data, dict):
        return {}

    arguments: dict[str, Scalar] = {}
    for key, value in data.items():
        if value is None:
            continue
        if isinstance(value, (dict, list)):
            arguments[key] = json.dumps(value, ensure_ascii=False)
        else:
            arguments[key] = value
    return arguments


def parse_tool_calls(raw_calls: list[dict] | None) -> list[ToolCall]:
    calls = []
    for raw in raw_calls or []:
        function = raw.get("function") or {}
        name = function.get("name")
        if not name:
            continue
        calls.append(
            ToolCall(
                id=raw.get("id"),
                name=name,
                arguments=parse_tool_arguments(function.get("arguments")),
            )
        )
    return calls


def parse_assistant_message(body: dict[str, Any]) -> AssistantMessage:
    choices = body.get("choices") if isinstance(body, dict) else None
    if not choices:
        raise LlmTransportError("Invalid response: no choices")
    message = choices[0].get("message") or {}
    return AssistantMessage(
        content=message.get("content"),
        tool_calls=parse_tool_calls(message.get("tool_calls")),
    )


# ---------------------------------------------------------------------------
# SSE decoding
# ---------------------------------------------------------------------------


@dataclass
class _ToolCallBuffer:
    id: str | None = None
    name: str | None = None
    fragments: list[str] = field(default_factory=list)

    def absorb(self, delta: dict[str, Any]) -> None:
        if delta.get("id"):
            self.id = delta["id"]
        function = delta.get("function") or {}
        if function.get("name"):
            self.name = function["name"]
        if function.get("arguments") is not None:
            self.fragments.append(function["arguments"])

    def finalize(self) -> ToolCall | None:
        if not self.name:
            return None
        return ToolCall(
            id=self.id,
            name=self.name,
            arguments=parse_tool_arguments("".join(self.fragments)),
        )


def decode_event_stream(
    lines: Iterable[str], handler: StreamingHandler
) -> tuple[str, tuple[ToolCall, ...] | None]:
    """
    Consume ``data: <json>`` lines until [DONE] or a finish_reason.

    Text deltas are forwarded to handler.on_token as they arrive. Tool-call
    fragments accumulate per index and are finalized, in index order, once
    the stream ends; each finished call goes to handler.on_tool_call.
    """
    text_parts: list[str] = []
    buffers: dict[int, _ToolCallBuffer] = {}

    for line in lines:
        line = line.strip()
        if not line.startswith("data:"):
            continue
        data = line[len("data:"):].strip()
        if data == "[DONE]":
            break
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed stream chunk: %.200s", data)
            continue
        if not isinstance(chunk, dict) or not chunk.get("choices"):
            continue

        choice = chunk["choices"][0]
        delta = choice.get("delta") or {}
        token = delta.get("content")
        if token:
            text_parts.append(token)
            handler.on_token(token)
        for fragment in delta.get("tool_calls") or []:
            buffers.setdefault(fragment.get("index", 0), _ToolCallBuffer()).absorb(fragment)

        if choice.get("finish_reason"):
            break

    calls = tuple(
        call for index in sorted(buffers) if (call := buffers[index].finalize()) is not None
    )
    for call in calls:
        handler.on_tool_call(call)
    return "".join(text_parts), calls or None


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


def normalize_base_url(base_url: str | None) -> str:
    url = (base_url or DEFAULT_BASE_URL).rstrip("/")
    if not url.endswith("/v1") and "/paas/" not in url and "/coding/" not in url:
        url += "/v1"
    return url


class OpenAiAdapter:
    """
    Client for any OpenAI-compatible chat/completions endpoint.

    No retries happen here; a failed call is terminal and the caller decides
    what to do next.

    Example:
        adapter = OpenAiAdapter(api_key=os.environ["OPENAI_API_KEY"], model="gpt-4o-mini")
        reply = adapter.chat([UserMessage(content="Hello")])
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str = "",
        model: str = "gpt-4o-mini",
        temperature: float | None = None,
        timeout: float = 120.0,
        log_requests: bool = False,
        client: httpx.Client | None = None,
    ) -> None:
        self._base_url = normalize_base_url(base_url)
        self._api_key = api_key
        self._model = model
        self._temperature = temperature
        self._log_requests = log_requests
        self._client = client or httpx.Client(timeout=timeout)

    @property
    def model(self) -> str:
        return self._model

    @property
    def endpoint(self) -> str:
        return f"{self._base_url}/chat/completions"

    def _headers(self, stream: bool) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        if stream:
            headers["Accept"] = "text/event-stream"
        return headers

    def _request(self, messages: Iterable[Message], tools: list[ToolDefinition] | None, stream: bool) -> dict:
        payload = build_chat_request(self._model, messages, tools, self._temperature, stream)
        if self._log_requests:
            logger.info("POST %s\n%s", self.endpoint, json.dumps(payload, ensure_ascii=False, indent=2))
        return payload

    # ------------------------------------------------------------------
    # Blocking
    # ------------------------------------------------------------------

    def chat(
        self,
        messages: Iterable[Message],
        tools: list[ToolDefinition] | None = None,
        timeout: float | None = None,
    ) -> AssistantMessage:
        """Blocking completion. timeout overrides the client timeout for this request only."""
        payload = self._request(messages, tools, stream=False)
        try:
            response = self._client.post(
                self.endpoint,
                json=payload,
                headers=self._headers(False),
                timeout=httpx.USE_CLIENT_DEFAULT if timeout is None else timeout,
            )
        except httpx.TimeoutException as exc:
            raise LlmTimeoutError(f"Request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise LlmTransportError(f"Request failed: {exc}") from exc

        if response.status_code != 200:
            raise LlmTransportError(f"API error: {response.status_code} - {response.text}")
        try:
            body = response.json()
        except ValueError as exc:
            raise LlmTransportError(f"Invalid response: body is not JSON: {exc}") from exc

        if self._log_requests:
            logger.info("Response: %s", json.dumps(body, ensure_ascii=False)[:2000])
        return parse_assistant_message(body)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def chat_stream(
        self,
        messages: Iterable[Message],
        tools: list[ToolDefinition] | None,
        handler: StreamingHandler,
    ) -> threading.Thread:
        """Start a streamed request on a daemon reader thread and return it."""
        payload = self._request(list(messages), tools, stream=True)
        reader = threading.Thread(
            target=self._read_stream,
            args=(payload, handler),
            name="llm-stream-reader",
            daemon=True,
        )
        reader.start()
        return reader

    def _read_stream(self, payload: dict, handler: StreamingHandler) -> None:
        try:
            with self._client.stream(
                "POST", self.endpoint, json=payload, headers=self._headers(True)
            ) as response:
                if response.status_code != 200:
                    body = response.read().decode("utf-8", errors="replace")
                    raise LlmTransportError(f"API error: {response.status_code} - {body}")
                text, tool_calls = decode_event_stream(response.iter_lines(), handler)
        except Exception as exc:
            logger.debug("Stream failed", exc_info=True)
            if not isinstance(exc, LlmTransportError):
                exc = LlmTransportError(f"Stream failed: {exc}")
            handler.on_error(exc)
            return
        handler.on_complete(text, tool_calls)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def test_connection(self) -> bool:
        """Send a one-line probe; True when the endpoint answers."""
        try:
            self.chat([UserMessage(content="Hi")])
        except LlmTransportError as exc:
            logger.warning("Connection test failed: %s", exc)
            return False
        return True

    def close(self) -> None:
        self._client.close()


def create_adapter(config: LlmConfig) -> OpenAiAdapter:
    """Build the adapter named by config.protocol."""
    protocol = (config.protocol or "openai").lower()
    if protocol not in SUPPORTED_PROTOCOLS:
        raise ValueError(
            f"Unsupported protocol: {protocol}. Supported: {', '.join(SUPPORTED_PROTOCOLS)}"
        )
    if not config.api_key:
        raise ValueError(f"API key is missing; set {config.api_key_env} in the environment or .env")
    if not config.model_name:
        raise ValueError("llm.model_name is required")

    logger.info(
        "Creating LLM adapter: protocol=%s, model=%s, base_url=%s",
        protocol,
        config.model_name,
        config.base_url,
    )
    return OpenAiAdapter(
        base_url=config.base_url or None,
        api_key=config.api_key,
        model=config.model_name,
        temperature=config.temperature,
        timeout=config.timeout_seconds,
        log_requests=config.log_requests,
    )
