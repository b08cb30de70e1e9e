# models.py
# Data contracts for the test-generation agent runtime.
# No business logic lives here: pure schema and validation, plus the
# priority rule that MethodCoverageInfo derives from its own numbers.

import uuid
from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

Scalar = str | int | float | bool


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


# ---------------------------------------------------------------------------
# Tool calls and definitions
# ---------------------------------------------------------------------------


class ToolCall(BaseModel):
    """A model-requested invocation of a named tool."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_call_id, description="Correlates the call with its Tool reply.")
    name: str = Field(..., description="Tool name; must exist in the registry to succeed.")
    arguments: dict[str, Scalar] = Field(default_factory=dict, description="Scalar arguments only.")

    @field_validator("id", mode="before")
    @classmethod
    def _fill_missing_id(cls, value):
        return value or new_call_id()

    @field_validator("arguments", mode="before")
    @classmethod
    def _drop_nulls(cls, value):
        if value is None:
            return {}
        return {key: item for key, item in dict(value).items() if item is not None}


class PropertySchema(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["string", "integer", "number", "boolean"] = "string"
    description: str = ""


class ParameterSchema(BaseModel):
    model_config = ConfigDict(frozen=True)

    properties: dict[str, PropertySchema] = Field(default_factory=dict)
    required: list[str] = Field(default_factory=list)


class ToolDefinition(BaseModel):
    """Schema advertised to the model for one registered tool."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    parameters: ParameterSchema = Field(default_factory=ParameterSchema)


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class _MessageBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    content: str = Field(default="", description="Text body; empty but never absent.")

    @field_validator("content", mode="before")
    @classmethod
    def _none_is_empty(cls, value):
        return "" if value is None else value


class SystemMessage(_MessageBase):
    role: Literal["system"] = "system"


class UserMessage(_MessageBase):
    role: Literal["user"] = "user"


class AssistantMessage(_MessageBase):
    role: Literal["assistant"] = "assistant"
    tool_calls: list[ToolCall] = Field(default_factory=list)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


class ToolMessage(_MessageBase):
    role: Literal["tool"] = "tool"
    tool_call_id: str
    name: str = ""


Message = Annotated[
    SystemMessage | UserMessage | AssistantMessage | ToolMessage,
    Field(discriminator="role"),
]


# ---------------------------------------------------------------------------
# Coverage
# ---------------------------------------------------------------------------


class Priority(str, Enum):
    P0 = "P0"
    P1 = "P1"
    P2 = "P2"


def priority_for(line_coverage: float, branch_coverage: float, threshold: float) -> Priority:
    """P0 when nothing is covered, P1 when either figure is under threshold, else P2."""
    if line_coverage == 0 and branch_coverage == 0:
        return Priority.P0
    if line_coverage < threshold or branch_coverage < threshold:
        return Priority.P1
    return Priority.P2


class MethodCoverageInfo(BaseModel):
    """Coverage figures for one method of the target under test."""

    method_name: str
    priority: Priority
    line_coverage: float = 0.0
    branch_coverage: float = 0.0
    needs_test: bool = True

    @classmethod
    def from_coverage(
        cls, method_name: str, line_coverage: float, branch_coverage: float, threshold: float
    ) -> "MethodCoverageInfo":
        return cls(
            method_name=method_name,
            priority=priority_for(line_coverage, branch_coverage, threshold),
            line_coverage=line_coverage,
            branch_coverage=branch_coverage,
            needs_test=line_coverage < threshold,
        )

    @property
    def overall_coverage(self) -> float:
        return (self.line_coverage + self.branch_coverage) / 2


# ---------------------------------------------------------------------------
# Run outcomes
# ---------------------------------------------------------------------------


class AgentOutcome(str, Enum):
    COMPLETED = "completed"
    MAX_ITERATIONS = "max_iterations"
    TIMEOUT = "timeout"
    ERROR = "error"


class AgentResult(BaseModel):
    """Terminal outcome of one agent loop run."""

    outcome: AgentOutcome
    content: str = ""
    iterations: int = 0
    tool_calls: int = Field(default=0, description="Number of tools invoked during the run.")
    duration_ms: int = 0
    error_message: str | None = None

    @property
    def success(self) -> bool:
        return self.outcome is AgentOutcome.COMPLETED

    def summary(self) -> str:
        if self.success:
            return (
                f"completed in {self.iterations} iteration(s), "
                f"{self.tool_calls} tool call(s), {self.duration_ms}ms"
            )
        return f"{self.outcome.value}: {self.error_message or 'no detail'}"


class MethodStatus(str, Enum):
    COVERED = "covered"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"


class MethodReport(BaseModel):
    method_name: str
    status: MethodStatus
    coverage: float = 0.0
    attempts: int = 0
    message: str = ""


class RunReport(BaseModel):
    """Outcome of orchestrating test generation for one target file."""

    target_file: str
    success: bool = False
    coverage: float = 0.0
    methods: list[MethodReport] = Field(default_factory=list)
    error_message: str | None = None
    duration_ms: int = 0
