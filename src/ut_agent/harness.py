# harness.py
# ReAct execution loop.
#
# The AgentExecutor is the kernel of one run. The model is a passive
# responder; this class owns control flow, tool dispatch, and the
# conversation. Per iteration:
#
#   context + visible tools → adapter → assistant reply
#   → no tool calls?  done
#   → otherwise invoke each call via the registry, append Tool results, repeat
#
# Every exit is an AgentResult; no exception escapes run()/run_stream().
# All terminal output is delegated to display.py.

import logging
import threading
import time
from typing import Callable

from ut_agent import display
from ut_agent.context import ContextManager
from ut_agent.llm import LlmTimeoutError, OpenAiAdapter, StreamingHandler
from ut_agent.models import AgentOutcome, AgentResult, AssistantMessage, ToolCall
from ut_agent.registry import ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 50
DEFAULT_TIMEOUT_MS = 300_000


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class DeadlineExceeded(Exception):
    """Raised internally when a streamed reply does not finish within the run budget."""


# ---------------------------------------------------------------------------
# Stream relay
# ---------------------------------------------------------------------------


class _StreamRelay(StreamingHandler):
    """
    Collects one streamed reply and releases the waiting loop.

    Callbacks arrive on the reader thread; the loop only reads the fields
    after the event is set.
    """

    def __init__(self, downstream: StreamingHandler | None) -> None:
        self._downstream = downstream or StreamingHandler()
        self.done = threading.Event()
        self.text = ""
        self.tool_calls: tuple[ToolCall, ...] = ()
        self.error: BaseException | None = None

    def on_token(self, token: str) -> None:
        self._downstream.on_token(token)

    def on_tool_call(self, call: ToolCall) -> None:
        self._downstream.on_tool_call(call)

    def on_complete(self, text: str, tool_calls: tuple[ToolCall, ...] | None) -> None:
        self.text = text
        self.tool_calls = tool_calls or ()
        try:
            self._downstream.on_complete(text, tool_calls)
        finally:
            self.done.set()

    def on_error(self, error: BaseException) -> None:
        self.error = error
        try:
            self._downstream.on_error(error)
        finally:
            self.done.set()


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class AgentExecutor:
    """
    Bounded tool-calling loop over one conversation.

    Example:
        executor = AgentExecutor(adapter, registry, ContextManager())
        result = executor.run("Write tests for calculator.add")
        if result.success:
            print(result.content)
    """

    def __init__(
        self,
        adapter: OpenAiAdapter,
        registry: ToolRegistry,
        context: ContextManager,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> None:
        self._adapter = adapter
        self._registry = registry
        self._context = context
        self._max_iterations = max_iterations
        self._timeout_ms = timeout_ms

    @property
    def context(self) -> ContextManager:
        return self._context

    def clear_context(self) -> None:
        self._context.clear()

    # ------------------------------------------------------------------
    # Model calls
    # ------------------------------------------------------------------

    def _ask_blocking(self, remaining_s: float) -> AssistantMessage:
        try:
            reply = self._adapter.chat(
                self._context.messages, self._registry.definitions or None, timeout=remaining_s
            )
        except LlmTimeoutError as exc:
            raise DeadlineExceeded(f"No reply within {remaining_s:.1f}s") from exc
        display.assistant_reply(reply.content)
        return reply

    def _ask_streaming(self, handler: StreamingHandler | None, remaining_s: float) -> AssistantMessage:
        relay = _StreamRelay(handler)
        self._adapter.chat_stream(self._context.messages, self._registry.definitions or None, relay)
        if not relay.done.wait(timeout=remaining_s):
            raise DeadlineExceeded(f"No streamed reply within {remaining_s:.1f}s")
        if relay.error is not None:
            raise relay.error
        return AssistantMessage(content=relay.text, tool_calls=list(relay.tool_calls))

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _settle_pending(self, reason: str) -> None:
        # Leave the conversation appendable when a run stops mid-dispatch.
        for call_id in self._context.pending_tool_calls:
            self._context.add_tool(call_id, "", f"Error: Tool call abandoned: {reason}")

    def _loop(self, task: str, ask: Callable[[float], AssistantMessage]) -> AgentResult:
        start = time.monotonic()
        iterations = 0
        invoked = 0
        last_text = ""

        def finish(outcome: AgentOutcome, error: str | None = None) -> AgentResult:
            result = AgentResult(
                outcome=outcome,
                content=last_text,
                iterations=iterations,
                tool_calls=invoked,
                duration_ms=int((time.monotonic() - start) * 1000),
                error_message=error,
            )
            display.agent_result(result)
            return result

        display.agent_start(task, self._max_iterations)
        try:
            self._context.add_user(task)
            while iterations < self._max_iterations:
                remaining_s = self._timeout_ms / 1000 - (time.monotonic() - start)
                if remaining_s <= 0:
                    return finish(AgentOutcome.TIMEOUT, f"Timeout after {self._timeout_ms}ms")

                iterations += 1
                display.iteration_start(iterations, self._max_iterations)
                reply = ask(remaining_s)
                self._context.add_assistant(reply.content, reply.tool_calls)
                last_text = reply.content

                if not reply.tool_calls:
                    return finish(AgentOutcome.COMPLETED)

                for call in reply.tool_calls:
                    display.tool_call(call.name, call.arguments)
                    observation = self._registry.invoke_call(call)
                    display.tool_result(call.name, observation)
                    self._context.add_tool(call.id, call.name, observation)
                    invoked += 1

            return finish(AgentOutcome.MAX_ITERATIONS, f"Max iterations reached: {self._max_iterations}")

        except DeadlineExceeded as exc:
            self._settle_pending(str(exc))
            return finish(AgentOutcome.TIMEOUT, str(exc))
        except Exception as exc:
            logger.error("Agent run failed after %d iteration(s)", iterations, exc_info=True)
            self._settle_pending(str(exc))
            return finish(AgentOutcome.ERROR, str(exc) or type(exc).__name__)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run(self, task: str) -> AgentResult:
        """Run the loop with blocking model calls."""
        return self._loop(task, self._ask_blocking)

    def run_stream(self, task: str, handler: StreamingHandler | None = None) -> AgentResult:
        """
        Run the loop with streamed model calls.

        Each iteration waits on the stream's terminal callback, bounded by
        what is left of the run's time budget.
        """
        return self._loop(task, lambda remaining_s: self._ask_streaming(handler, remaining_s))
