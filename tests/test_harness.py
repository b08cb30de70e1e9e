import threading
from typing import Annotated
from unittest.mock import MagicMock, patch

from ut_agent import display
from ut_agent.context import ContextManager
from ut_agent.harness import AgentExecutor
from ut_agent.llm import ConsoleStreamingHandler, LlmTimeoutError, LlmTransportError
from ut_agent.models import AgentOutcome, AssistantMessage, ToolCall, ToolMessage
from ut_agent.registry import P, ToolRegistry, tool


class Calculator:
    @tool("Add two integers")
    def add(self, a: Annotated[int, P("left")], b: Annotated[int, P("right")]) -> str:
        return str(a + b)


class StreamingAdapter:
    """Replays canned replies through the streaming callbacks on a thread."""

    def __init__(self, replies=None, error=None, silent=False):
        self._replies = list(replies or [])
        self._error = error
        self._silent = silent

    def chat_stream(self, messages, tools, handler):
        def emit():
            if self._silent:
                return
            if self._error is not None:
                handler.on_error(self._error)
                return
            reply = self._replies.pop(0)
            for token in reply.content:
                handler.on_token(token)
            for call in reply.tool_calls:
                handler.on_tool_call(call)
            handler.on_complete(reply.content, tuple(reply.tool_calls) or None)

        reader = threading.Thread(target=emit, daemon=True)
        reader.start()
        return reader


def _executor(adapter, **kwargs):
    registry = ToolRegistry()
    registry.register(Calculator())
    return AgentExecutor(adapter, registry, ContextManager(), **kwargs)


def _call(name="add", **arguments):
    return AssistantMessage(tool_calls=[ToolCall(name=name, arguments=arguments)])

# ---------------------------------------------------------------------------
# Blocking loop
# ---------------------------------------------------------------------------

def test_run_completes_without_tool_calls():
    adapter = MagicMock()
    adapter.chat.return_value = AssistantMessage(content="All done")
    executor = _executor(adapter)

    result = executor.run("write tests")

    assert result.outcome is AgentOutcome.COMPLETED
    assert result.success
    assert result.content == "All done"
    assert result.iterations == 1
    assert result.tool_calls == 0
    assert [m.role for m in executor.context.messages] == ["user", "assistant"]

def test_run_dispatches_tools_then_completes():
    adapter = MagicMock()
    adapter.chat.side_effect = [_call(a=1, b=2), AssistantMessage(content="3")]
    executor = _executor(adapter)

    result = executor.run("add 1 and 2")

    assert result.outcome is AgentOutcome.COMPLETED
    assert result.iterations == 2
    assert result.tool_calls == 1
    messages = executor.context.messages
    assert [m.role for m in messages] == ["user", "assistant", "tool", "assistant"]
    assert isinstance(messages[2], ToolMessage)
    assert messages[2].content == "3"
    assert messages[2].tool_call_id == messages[1].tool_calls[0].id

    tools_offered = adapter.chat.call_args.args[1]
    assert [d.name for d in tools_offered] == ["add"]

def test_tool_errors_are_fed_back_to_the_model():
    adapter = MagicMock()
    adapter.chat.side_effect = [_call(name="nope"), _call(a="x", b=1), AssistantMessage(content="ok")]
    executor = _executor(adapter)

    result = executor.run("task")

    assert result.success
    tool_messages = [m for m in executor.context.messages if m.role == "tool"]
    assert tool_messages[0].content == "Error: Unknown tool: nope"
    assert tool_messages[1].content.startswith("Error: Invalid value for parameter 'a'")

def test_run_stops_at_max_iterations():
    adapter = MagicMock()
    adapter.chat.side_effect = lambda messages, tools, timeout=None: _call(a=1, b=1)
    executor = _executor(adapter, max_iterations=3)

    result = executor.run("loop forever")

    assert result.outcome is AgentOutcome.MAX_ITERATIONS
    assert result.error_message == "Max iterations reached: 3"
    assert result.iterations == 3
    assert result.tool_calls == 3
    assert executor.context.pending_tool_calls == ()

def test_run_reports_adapter_failure_as_error():
    adapter = MagicMock()
    adapter.chat.side_effect = LlmTransportError("API error: 500 - upstream")
    executor = _executor(adapter)

    result = executor.run("task")

    assert result.outcome is AgentOutcome.ERROR
    assert result.error_message == "API error: 500 - upstream"
    assert result.iterations == 1

def test_blocking_call_is_bounded_by_remaining_budget():
    adapter = MagicMock()
    adapter.chat.return_value = AssistantMessage(content="done")
    executor = _executor(adapter, timeout_ms=5_000)

    executor.run("task")

    timeout = adapter.chat.call_args.kwargs["timeout"]
    assert 0 < timeout <= 5.0

def test_blocking_request_timeout_is_reported_as_timeout():
    adapter = MagicMock()
    adapter.chat.side_effect = LlmTimeoutError("Request timed out: read")
    executor = _executor(adapter)

    result = executor.run("task")

    assert result.outcome is AgentOutcome.TIMEOUT
    assert result.error_message.startswith("No reply within")
    assert result.iterations == 1

def test_run_with_exhausted_budget_times_out():
    adapter = MagicMock()
    executor = _executor(adapter, timeout_ms=0)

    result = executor.run("task")

    assert result.outcome is AgentOutcome.TIMEOUT
    assert result.iterations == 0
    adapter.chat.assert_not_called()

def test_conversation_carries_over_between_runs():
    adapter = MagicMock()
    adapter.chat.side_effect = [AssistantMessage(content="first"), AssistantMessage(content="second")]
    executor = _executor(adapter)

    executor.run("one")
    executor.run("two")
    assert [m.content for m in executor.context.messages] == ["one", "first", "two", "second"]

    executor.clear_context()
    assert executor.context.is_empty()

# ---------------------------------------------------------------------------
# Streaming loop
# ---------------------------------------------------------------------------

def test_run_stream_forwards_tokens_and_completes():
    adapter = StreamingAdapter([_call(a=2, b=2), AssistantMessage(content="four")])
    downstream = MagicMock()
    executor = _executor(adapter)

    result = executor.run_stream("add", downstream)

    assert result.outcome is AgentOutcome.COMPLETED
    assert result.content == "four"
    assert result.tool_calls == 1
    assert [c.args[0] for c in downstream.on_token.call_args_list] == list("four")
    assert downstream.on_tool_call.call_count == 1
    assert downstream.on_complete.call_count == 2

def test_run_stream_error_becomes_error_outcome():
    adapter = StreamingAdapter(error=LlmTransportError("Stream failed: reset"))
    executor = _executor(adapter)

    result = executor.run_stream("task")

    assert result.outcome is AgentOutcome.ERROR
    assert result.error_message == "Stream failed: reset"

def test_run_stream_times_out_when_stream_never_finishes():
    adapter = StreamingAdapter(silent=True)
    executor = _executor(adapter, timeout_ms=50)

    result = executor.run_stream("task")

    assert result.outcome is AgentOutcome.TIMEOUT
    assert result.iterations == 1

def test_streamed_tool_call_is_announced_once():
    adapter = StreamingAdapter([_call(a=1, b=2), AssistantMessage(content="3")])
    executor = _executor(adapter)

    with patch.object(display, "tool_call") as announce:
        result = executor.run_stream("add", ConsoleStreamingHandler())

    assert result.outcome is AgentOutcome.COMPLETED
    announce.assert_called_once_with("add", {"a": 1, "b": 2})

def test_console_handler_does_not_render_tool_calls(capsys):
    ConsoleStreamingHandler().on_tool_call(ToolCall(name="add", arguments={"a": 1}))
    assert capsys.readouterr().out == ""
