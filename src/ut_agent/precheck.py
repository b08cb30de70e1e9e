# precheck.py
# Pre-check run before any generation: make sure the project builds, refresh
# coverage data, and work out which methods need tests.

import logging
from dataclasses import dataclass, field
from pathlib import Path

from ut_agent import display
from ut_agent.coverage import CoverageAnalyzer
from ut_agent.models import MethodCoverageInfo
from ut_agent.pipeline import compile_passed, is_tool_error, suite_passed
from ut_agent.registry import ToolRegistry

logger = logging.getLogger(__name__)


@dataclass
class PreCheckResult:
    success: bool
    error_message: str | None = None
    coverage_info: str | None = None
    has_existing_tests: bool = False
    methods: list[MethodCoverageInfo] = field(default_factory=list)

    @classmethod
    def failure(cls, message: str) -> "PreCheckResult":
        return cls(success=False, error_message=message)


class PreCheckExecutor:
    def __init__(self, registry: ToolRegistry, threshold: float = 80.0) -> None:
        self._registry = registry
        self._analyzer = CoverageAnalyzer(registry, threshold)

    def execute(self, project_root: Path | None, target_file: str, test_file_path: Path) -> PreCheckResult:
        display.precheck_start(target_file)
        if project_root is None:
            return PreCheckResult.failure(f"Cannot determine project root from target file: {target_file}")

        has_tests = test_file_path.is_file()
        if has_tests:
            display.precheck_step(f"Found existing test file {test_file_path}")
            outcome = self._registry.invoke("clean_and_test", {})
            if is_tool_error(outcome) or not suite_passed(outcome):
                # Coverage from a partly failing run is still worth reading.
                logger.warning("Existing tests did not pass cleanly; continuing with coverage analysis")
        else:
            display.precheck_step("No existing test file, compiling project")
            outcome = self._registry.invoke("compile_project", {})
            if is_tool_error(outcome) or not compile_passed(outcome):
                display.precheck_failed(outcome)
                return PreCheckResult.failure("Compilation failed")

        coverage = self._analyzer.analyze(str(project_root), target_file)
        display.precheck_done(len(coverage.methods))
        return PreCheckResult(
            success=True,
            coverage_info=coverage.coverage_info,
            has_existing_tests=has_tests,
            methods=coverage.methods,
        )
