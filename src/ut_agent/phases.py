# phases.py
# Phase state machine: gates which collaborator tools the model can see.
#
#   ANALYSIS → GENERATION → VERIFICATION → REPAIR (terminal)
#   FULL is a separate terminal state with every tool visible.
#
# Switching clears the live registry and re-registers only the collaborators
# whose class name is listed for the target phase.

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from ut_agent import display
from ut_agent.registry import ToolRegistry

logger = logging.getLogger(__name__)

REPAIR_SIGNALS = (
    "compilation error",
    "test failed",
    "assertion failed",
    "编译错误",
    "测试失败",
    "断言失败",
)


class WorkflowPhase(Enum):
    ANALYSIS = ("Analysis", ("CodeAnalyzerTool", "FileSystemTool", "BuildTool", "CoverageTool"))
    GENERATION = ("Generation", ("FileSystemTool", "CodeAnalyzerTool"))
    VERIFICATION = (
        "Verification",
        ("SyntaxCheckerTool", "LspSyntaxCheckerTool", "BuildTool", "CoverageTool", "FileSystemTool"),
    )
    REPAIR = ("Repair", ("FileSystemTool", "CodeAnalyzerTool"))
    FULL = ("Full", ())

    def __init__(self, display_name: str, tool_names: tuple[str, ...]) -> None:
        self.display_name = display_name
        self.tool_names = tool_names

    def next(self) -> "WorkflowPhase":
        order = {
            WorkflowPhase.ANALYSIS: WorkflowPhase.GENERATION,
            WorkflowPhase.GENERATION: WorkflowPhase.VERIFICATION,
            WorkflowPhase.VERIFICATION: WorkflowPhase.REPAIR,
        }
        return order.get(self, self)

    def allows(self, tool: object) -> bool:
        return not self.tool_names or type(tool).__name__ in self.tool_names


def should_switch_to_repair(text: str | None) -> bool:
    """
    Best-effort failure detector for free-text model replies.

    A miss leaves the phase unchanged; an explicit pipeline result always
    takes precedence over this heuristic.
    """
    if not text:
        return False
    lowered = text.lower()
    return any(signal in lowered for signal in REPAIR_SIGNALS)


@dataclass
class PhaseContext:
    """Per-run phase bookkeeping."""

    current_phase: WorkflowPhase = WorkflowPhase.FULL
    transitions: int = 0
    data: dict[str, Any] = field(default_factory=dict)

    def transition_to(self, phase: WorkflowPhase) -> None:
        self.current_phase = phase
        self.transitions += 1


class PhaseManager:
    """
    Owns the live registry's contents for one run.

    Disabled managers stay in FULL with every tool registered; switching is
    then a no-op.
    """

    def __init__(
        self,
        tools: list[object],
        registry: ToolRegistry,
        enabled: bool = True,
        failure_policy: Callable[[str | None], bool] = should_switch_to_repair,
    ) -> None:
        self._tools = list(tools)
        self._registry = registry
        self._enabled = enabled
        self._failure_policy = failure_policy
        initial = WorkflowPhase.ANALYSIS if enabled else WorkflowPhase.FULL
        self.context = PhaseContext(current_phase=initial)

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def current_phase(self) -> WorkflowPhase:
        return self.context.current_phase

    def initialize_tools(self) -> list[str]:
        """Register the tools of the current phase into a fresh registry."""
        return self._load(self.current_phase)

    def _load(self, phase: WorkflowPhase) -> list[str]:
        self._registry.clear()
        names = self._registry.register_all([tool for tool in self._tools if phase.allows(tool)])
        logger.debug("Phase %s exposes %d tool(s): %s", phase.name, len(names), names)
        return names

    def switch_to_phase(self, phase: WorkflowPhase) -> bool:
        """Returns True when a transition happened."""
        if not self._enabled or phase is self.current_phase:
            return False
        previous = self.current_phase
        names = self._load(phase)
        self.context.transition_to(phase)
        display.phase_switch(previous.display_name, phase.display_name, len(names))
        return True

    def switch_to_next_phase(self) -> bool:
        return self.switch_to_phase(self.current_phase.next())

    def smart_switch(self, response_text: str | None) -> bool:
        """Force REPAIR when the reply looks like a failure report."""
        if self.current_phase is not WorkflowPhase.REPAIR and self._failure_policy(response_text):
            logger.info("Failure signal in model reply, switching to repair")
            return self.switch_to_phase(WorkflowPhase.REPAIR)
        return False
