# context.py
# Conversation state for one agent run.
#
# The System message lives outside the trimmed body so it is structurally
# pinned at index 0. The body is trimmed in whole groups (an Assistant turn
# with its Tool replies, a User turn with its plain Assistant reply, or a
# lone message), so a Tool message is never separated from the call that
# produced it.

import logging

from ut_agent.models import (
    AssistantMessage,
    Message,
    SystemMessage,
    ToolCall,
    ToolMessage,
    UserMessage,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGES = 20
TRUNCATION_PLACEHOLDER = "[Context truncated due to length limit. Please continue.]"


class ContextInvariantError(AssertionError):
    """Raised when an append would break message ordering. Always a caller bug."""


class ContextManager:
    """
    Capacity-bounded message sequence with ordering guarantees.

    Append contract:
      - a Tool message must answer a still-pending call of the latest
        Assistant message
      - User and Assistant messages may not be appended while calls are pending
      - the System message is set with set_system(), never appended

    Violations raise ContextInvariantError and leave the context unchanged.
    """

    def __init__(self, max_messages: int = DEFAULT_MAX_MESSAGES) -> None:
        if max_messages < 2:
            raise ValueError(f"max_messages must be at least 2, got {max_messages}")
        self._max_messages = max_messages
        self._system: SystemMessage | None = None
        self._body: list[Message] = []
        self._pending: list[str] = []

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def max_messages(self) -> int:
        return self._max_messages

    @property
    def messages(self) -> tuple[Message, ...]:
        if self._system is None:
            return tuple(self._body)
        return (self._system, *self._body)

    @property
    def system_message(self) -> SystemMessage | None:
        return self._system

    @property
    def pending_tool_calls(self) -> tuple[str, ...]:
        return tuple(self._pending)

    def __len__(self) -> int:
        return len(self._body) + (1 if self._system is not None else 0)

    def is_empty(self) -> bool:
        return len(self) == 0

    def has_only_system(self) -> bool:
        return self._system is not None and not self._body

    def estimate_tokens(self) -> int:
        """Rough token count: a quarter of the characters, plus one per non-empty message."""
        return sum(len(msg.content) // 4 + 1 for msg in self.messages if msg.content)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def set_system(self, text: str) -> None:
        self._system = SystemMessage(content=text)

    def add_user(self, text: str) -> None:
        self._require_no_pending("user")
        self._append(UserMessage(content=text))

    def add_assistant(self, text: str | None, tool_calls: list[ToolCall] | None = None) -> None:
        self._require_no_pending("assistant")
        message = AssistantMessage(content=text, tool_calls=list(tool_calls or []))
        self._pending = [call.id for call in message.tool_calls]
        self._append(message)

    def add_tool(self, tool_call_id: str, name: str, content: str | None) -> None:
        if tool_call_id not in self._pending:
            raise ContextInvariantError(
                f"Tool result for {tool_call_id!r} has no pending tool call "
                f"(pending: {self._pending or 'none'})"
            )
        self._pending.remove(tool_call_id)
        self._append(ToolMessage(tool_call_id=tool_call_id, name=name, content=content))

    def add(self, message: Message) -> None:
        """Append a prebuilt message through the same contract as the typed adders."""
        if isinstance(message, SystemMessage):
            raise ContextInvariantError("System messages are set with set_system(), not appended")
        if isinstance(message, UserMessage):
            self.add_user(message.content)
        elif isinstance(message, AssistantMessage):
            self.add_assistant(message.content, message.tool_calls)
        else:
            self.add_tool(message.tool_call_id, message.name, message.content)

    def clear(self) -> None:
        """Drop everything except the System message."""
        self._body.clear()
        self._pending.clear()

    def clear_all(self) -> None:
        self._system = None
        self.clear()

    def snapshot(self) -> "ContextManager":
        """Independent deep copy; later changes to either side are not shared."""
        copy = ContextManager(self._max_messages)
        copy._system = self._system.model_copy(deep=True) if self._system else None
        copy._body = [msg.model_copy(deep=True) for msg in self._body]
        copy._pending = list(self._pending)
        return copy

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_no_pending(self, role: str) -> None:
        if self._pending:
            raise ContextInvariantError(
                f"Cannot append a {role} message while tool calls are unanswered: {self._pending}"
            )

    def _append(self, message: Message) -> None:
        self._body.append(message)
        if len(self) > self._max_messages:
            self._trim()

    def _groups(self) -> list[list[Message]]:
        groups: list[list[Message]] = []
        body = self._body
        i = 0
        while i < len(body):
            msg = body[i]
            j = i + 1
            if isinstance(msg, AssistantMessage) and msg.tool_calls:
                while j < len(body) and isinstance(body[j], ToolMessage):
                    j += 1
            elif (
                isinstance(msg, UserMessage)
                and j < len(body)
                and isinstance(body[j], AssistantMessage)
                and not body[j].tool_calls
            ):
                j += 1
            groups.append(body[i:j])
            i = j
        return groups

    def _trim(self) -> None:
        groups = self._groups()
        reserved = 1 if self._system is not None else 0

        # The opening task message stays when it stands on its own.
        head = groups[0][0] if groups else None
        pinned = (
            len(groups) > 1
            and len(groups[0]) == 1
            and isinstance(head, UserMessage)
            and head.content != TRUNCATION_PLACEHOLDER
        )
        first = 1 if pinned else 0

        def size() -> int:
            return reserved + sum(len(group) for group in groups)

        removed = 0
        while size() > self._max_messages and len(groups) - first > 1:
            removed += len(groups.pop(first))

        # Head after System must be a User turn; drop dangling groups ahead of one.
        while groups and not isinstance(groups[0][0], UserMessage) and len(groups) > 1:
            removed += len(groups.pop(0))

        body = [msg for group in groups for msg in group]
        overflow = len(body) + reserved > self._max_messages
        if body and not isinstance(body[0], UserMessage):
            body.insert(0, UserMessage(content=TRUNCATION_PLACEHOLDER))

        if len(body) + reserved > self._max_messages:
            if overflow:
                reason = "newest group is larger than the limit"
            else:
                reason = "the truncation placeholder pushed it past the limit"
            logger.warning(
                "Context holds %d messages after trimming (limit %d); %s",
                len(body) + reserved,
                self._max_messages,
                reason,
            )

        self._body = body
        logger.debug("Trimmed %d message(s) from context, %d remain", removed, len(self))
