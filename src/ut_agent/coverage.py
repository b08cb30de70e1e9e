# coverage.py
# Coverage feedback: turns coverage-tool text into a prioritised method list.
#
# Expected line format (glyph optional):
#   ✗ add(a, b) Line: 0.0% Branch: 0.0%
#
# With no coverage report to read, method names are pulled from the code
# analyzer's summary instead and seeded as P0 with zero coverage.

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from ut_agent import display
from ut_agent.models import MethodCoverageInfo, Priority, priority_for
from ut_agent.pipeline import is_tool_error
from ut_agent.registry import ToolRegistry

logger = logging.getLogger(__name__)

_METHOD_LINE = re.compile(
    r"(?:([✓◐✗])\s+)?(\w+)\(([^)]*)\)\s+Line:\s*([\d.]+)%\s+Branch:\s*([\d.]+)%"
)
_NAME_PATTERNS = (
    re.compile(r"Method:\s*([A-Za-z_]\w*)\s*\("),
    re.compile(r"-\s+Signature:\s+([A-Za-z_]\w*)\("),
    re.compile(r"^\s*-\s+([A-Za-z_]\w*)(?:\(|\s|$)", re.MULTILINE),
)
_CONSTRUCTORS = frozenset({"__init__", "__new__", "constructor"})
_BOILERPLATE = frozenset({"main", "Signature", "toString", "hashCode", "equals"})


def _is_pseudo_method(name: str) -> bool:
    return name in _CONSTRUCTORS


def _is_boilerplate(name: str) -> bool:
    return name in _BOILERPLATE or (name.startswith("__") and name.endswith("__"))


def determine_priority(line_coverage: float, branch_coverage: float, threshold: float) -> Priority:
    return priority_for(line_coverage, branch_coverage, threshold)


def parse_method_coverage(text: str | None, threshold: float) -> list[MethodCoverageInfo]:
    """Per-method coverage entries in report order; constructors are skipped."""
    if not text:
        return []
    methods = []
    for match in _METHOD_LINE.finditer(text):
        name = match.group(2)
        if _is_pseudo_method(name):
            continue
        try:
            line_coverage = float(match.group(4))
            branch_coverage = float(match.group(5))
        except ValueError:
            logger.debug("Unreadable coverage figures in %r", match.group(0))
            continue
        methods.append(MethodCoverageInfo.from_coverage(name, line_coverage, branch_coverage, threshold))
    logger.info("Parsed %d method(s) from coverage info", len(methods))
    return methods


def extract_method_names(analysis: str | None) -> list[str]:
    """Method names from an analyzer summary, trying each known layout in turn."""
    if not analysis:
        return []
    for pattern in _NAME_PATTERNS:
        names: list[str] = []
        for name in pattern.findall(analysis):
            if name not in names and not _is_boilerplate(name) and not _is_pseudo_method(name):
                names.append(name)
        if names:
            return names
    return []


def sort_by_coverage(methods: list[MethodCoverageInfo]) -> list[MethodCoverageInfo]:
    """Least covered first; ties keep report order."""
    return sorted(methods, key=lambda info: info.overall_coverage)


@dataclass
class CoverageResult:
    coverage_info: str | None = None
    methods: list[MethodCoverageInfo] = field(default_factory=list)

    @property
    def has_coverage_data(self) -> bool:
        return self.coverage_info is not None

    def methods_needing_tests(self, skip_low_priority: bool = False) -> list[MethodCoverageInfo]:
        pending = [info for info in sort_by_coverage(self.methods) if info.needs_test]
        if skip_low_priority:
            pending = [info for info in pending if info.priority is not Priority.P2]
        return pending


class CoverageAnalyzer:
    """
    Queries the coverage collaborator through the registry and parses its answer.

    Example:
        analyzer = CoverageAnalyzer(registry, threshold=80)
        result = analyzer.analyze(".", "src/calc/ops.py")
        for info in result.methods_needing_tests():
            print(info.method_name, info.priority)
    """

    def __init__(self, registry: ToolRegistry, threshold: float = 80.0) -> None:
        self._registry = registry
        self._threshold = threshold

    def parse_method_coverage(self, text: str | None) -> list[MethodCoverageInfo]:
        return parse_method_coverage(text, self._threshold)

    def analyze(self, module_path: str, target_file: str) -> CoverageResult:
        class_name = Path(target_file).stem
        details = self._registry.invoke(
            "get_method_coverage_details", {"module_path": module_path, "class_name": class_name}
        )
        uncovered = self._registry.invoke(
            "get_uncovered_methods",
            {"module_path": module_path, "class_name": class_name, "threshold": self._threshold},
        )

        if details and not is_tool_error(details):
            methods = self.parse_method_coverage(details)
            if methods:
                display.coverage_summary(details)
                info = details if is_tool_error(uncovered) else f"{details}\n\n{uncovered}"
                return CoverageResult(coverage_info=info, methods=methods)

        logger.info("No coverage details for %s, falling back to static analysis", class_name)
        return self._static_fallback(target_file)

    def _static_fallback(self, target_file: str) -> CoverageResult:
        analysis = self._registry.invoke("analyze_class", {"path": target_file})
        if is_tool_error(analysis):
            logger.warning("Static analysis of %s failed: %s", target_file, analysis)
            return CoverageResult()

        names = extract_method_names(analysis)
        if not names:
            return CoverageResult()

        display.static_analysis_fallback(len(names))
        lines = ["Static Analysis Result (No coverage data yet):"]
        methods = []
        for name in names:
            methods.append(MethodCoverageInfo.from_coverage(name, 0.0, 0.0, self._threshold))
            lines.append(f"✗ {name}() Line: 0.0% Branch: 0.0%")
        return CoverageResult(coverage_info="\n".join(lines), methods=methods)


# ---------------------------------------------------------------------------
# Progress tracking
# ---------------------------------------------------------------------------


class CoverageHistory:
    """Coverage of one method: the starting figure, then one reading per attempt."""

    def __init__(self, method_name: str, baseline: float = 0.0) -> None:
        self.method_name = method_name
        self.readings: list[float] = [baseline]

    def record(self, coverage: float) -> None:
        self.readings.append(coverage)

    @property
    def attempts(self) -> int:
        return len(self.readings) - 1

    @property
    def latest(self) -> float:
        return self.readings[-1]

    def stale_iterations(self, min_gain: float) -> int:
        """Consecutive trailing attempts that gained less than min_gain points."""
        stale = 0
        for previous, current in zip(reversed(self.readings[:-1]), reversed(self.readings[1:])):
            if current - previous >= min_gain:
                break
            stale += 1
        return stale

    def should_continue(self, max_attempts: int, max_stale: int, min_gain: float) -> bool:
        if self.attempts >= max_attempts:
            return False
        return self.stale_iterations(min_gain) < max_stale
