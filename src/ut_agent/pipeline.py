# pipeline.py
# Verification pipeline, run after generation, independent of the LLM loop.
#
#   SYNTAX_CHECK → [LSP_CHECK] → COMPILE → TEST → COVERAGE
#
# Each step calls one collaborator tool through the registry and classifies
# its free-text output. The first failing step ends the run. Output with no
# recognised marker counts as a pass.

import logging
import re
from enum import Enum

from pydantic import BaseModel, Field

from ut_agent import display
from ut_agent.registry import ToolRegistry

logger = logging.getLogger(__name__)

LOG_PREVIEW = 200


class VerificationStep(Enum):
    SYNTAX_CHECK = ("check_syntax", "Syntax check")
    LSP_CHECK = ("check_syntax_with_lsp", "LSP check")
    COMPILE = ("compile_project", "Compile")
    TEST = ("execute_test", "Test")
    COVERAGE = ("get_single_method_coverage", "Coverage")

    def __init__(self, tool_name: str, display_name: str) -> None:
        self.tool_name = tool_name
        self.display_name = display_name


class VerificationResult(BaseModel):
    """Structured outcome of one pipeline run or single-step check."""

    success: bool
    failed_step: VerificationStep | None = None
    error_message: str | None = None
    error_details: str | None = Field(default=None, description="Raw tool output of the failing step.")
    coverage: float = 0.0
    coverage_threshold_met: bool = False
    retry_count: int = 0

    @classmethod
    def passed(cls, coverage: float = 0.0, threshold_met: bool = False) -> "VerificationResult":
        return cls(success=True, coverage=coverage, coverage_threshold_met=threshold_met)

    @classmethod
    def failed(
        cls, step: VerificationStep, message: str, details: str | None = None
    ) -> "VerificationResult":
        return cls(success=False, failed_step=step, error_message=message, error_details=details)

    def increment_retry(self) -> None:
        self.retry_count += 1


# ---------------------------------------------------------------------------
# Output classifiers
# ---------------------------------------------------------------------------

_EXIT_CODE = re.compile(r'"?exitCode"?\s*[=:]\s*(-?\d+)')
_FAILURES = re.compile(r"Failures:\s*(\d+)")
_ERRORS = re.compile(r"Errors:\s*(\d+)")
_PYTEST_FAILED = re.compile(r"\b(\d+) (failed|errors?)\b")
_LINE_COVERAGE = re.compile(r"line[=:]\s*([\d.]+)%", re.IGNORECASE)
_ANY_PERCENT = re.compile(r"([\d.]+)%")
_MARKER = re.compile(r"\s*([A-Z_]+)\b")


def is_tool_error(output: str) -> bool:
    """True for registry-level failures such as unknown tools or missing parameters."""
    lowered = output.strip().lower()
    return lowered.startswith("error") or "missing required parameter" in lowered


def _exit_code(output: str) -> int | None:
    match = _EXIT_CODE.search(output)
    return int(match.group(1)) if match else None


def _marker(output: str) -> str:
    """Leading status token, e.g. SYNTAX_OK in "SYNTAX_OK: tests/test_x.py"."""
    match = _MARKER.match(output)
    return match.group(1) if match else ""


def syntax_passed(output: str) -> bool:
    marker = _marker(output)
    if marker == "INVALID":
        return False
    if marker in ("VALID", "SYNTAX_OK", "LSP_OK") or "No errors" in output:
        return True
    return not ("ERROR" in output or "LSP_ERRORS" in output)


def lsp_passed(output: str) -> bool:
    marker = _marker(output)
    if marker == "LSP_ERRORS":
        return False
    if marker == "LSP_OK" or "No errors" in output:
        return True
    return not ("LSP_ERRORS" in output or "ERROR" in output)


def compile_passed(output: str) -> bool:
    if "COMPILE_BLOCKED" in output:
        return False
    code = _exit_code(output)
    if code is not None:
        return code == 0
    if "BUILD SUCCESS" in output or "Compilation successful" in output:
        return True
    return not ("BUILD FAILURE" in output or "COMPILATION ERROR" in output)


def suite_passed(output: str) -> bool:
    code = _exit_code(output)
    if code is not None:
        return code == 0
    if "BUILD FAILURE" in output or "FAILURE!" in output:
        return False
    if "BUILD SUCCESS" in output:
        return True
    if "Tests run:" in output:
        failures = [int(n) for n in _FAILURES.findall(output)]
        errors = [int(n) for n in _ERRORS.findall(output)]
        return not any(failures) and not any(errors)
    if _PYTEST_FAILED.search(output):
        return False
    return True


def parse_coverage_percentage(output: str) -> float:
    """Line coverage from labelled ``line=NN%`` text, else the first bare percentage, else 0."""
    for pattern in (_LINE_COVERAGE, _ANY_PERCENT):
        match = pattern.search(output)
        if match:
            try:
                return float(match.group(1))
            except ValueError:
                continue
    return 0.0


_CLASSIFIERS = {
    VerificationStep.SYNTAX_CHECK: syntax_passed,
    VerificationStep.LSP_CHECK: lsp_passed,
    VerificationStep.COMPILE: compile_passed,
    VerificationStep.TEST: suite_passed,
}


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class VerificationPipeline:
    """
    Ordered verification over registry tools.

    Example:
        pipeline = VerificationPipeline(registry, coverage_threshold=80, use_lsp=True)
        result = pipeline.execute("tests/test_calc.py", "test_calc", "calc", "add", ".")
        if not result.success:
            print(result.failed_step, result.error_details)
    """

    def __init__(self, registry: ToolRegistry, coverage_threshold: float = 80.0, use_lsp: bool = False) -> None:
        self._registry = registry
        self._threshold = coverage_threshold
        self._use_lsp = use_lsp

    @property
    def coverage_threshold(self) -> float:
        return self._threshold

    # ------------------------------------------------------------------
    # Step execution
    # ------------------------------------------------------------------

    def _invoke(self, step: VerificationStep, arguments: dict) -> tuple[str | None, VerificationResult | None]:
        """Run one step's tool. Returns (output, None) or (None, failure)."""
        display.verification_step(step.display_name)
        try:
            output = self._registry.invoke(step.tool_name, arguments)
        except Exception as exc:
            logger.warning("%s raised: %s", step.display_name, exc)
            return None, VerificationResult.failed(step, f"{step.display_name} raised: {exc}")
        if output is None:
            return None, VerificationResult.failed(step, f"{step.display_name} returned no result")
        logger.debug("%s output: %.*s", step.display_name, LOG_PREVIEW, output)
        if is_tool_error(output):
            return None, VerificationResult.failed(
                step, f"{step.display_name} could not run: tool call error", output
            )
        return output, None

    def _check(self, step: VerificationStep, arguments: dict) -> VerificationResult:
        output, failure = self._invoke(step, arguments)
        if failure is None and not _CLASSIFIERS[step](output):
            failure = VerificationResult.failed(step, f"{step.display_name} failed", output)
        if failure is not None:
            display.verification_step_failed(step.display_name, failure.error_message or "")
            return failure
        display.verification_step_passed(step.display_name)
        return VerificationResult.passed()

    def _coverage(self, module_path: str, target_class_name: str, method_name: str) -> VerificationResult:
        step = VerificationStep.COVERAGE
        output, failure = self._invoke(
            step,
            {"module_path": module_path, "class_name": target_class_name, "method_name": method_name},
        )
        if failure is not None and failure.error_details is None:
            display.verification_step_failed(step.display_name, failure.error_message or "")
            return failure
        # A coverage tool that cannot answer means nothing is known to be covered yet.
        coverage = parse_coverage_percentage(output) if output is not None else 0.0
        met = coverage >= self._threshold
        display.coverage_measured(method_name, coverage, self._threshold)
        return VerificationResult.passed(coverage=coverage, threshold_met=met)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def execute(
        self,
        test_file_path: str,
        test_class_name: str,
        target_class_name: str,
        method_name: str,
        module_path: str,
        start_at: VerificationStep = VerificationStep.SYNTAX_CHECK,
    ) -> VerificationResult:
        """
        Run the steps in order, stopping at the first failure.

        start_at skips the steps before it, so a repair retry can resume at
        the step that failed without repeating the ones that already passed.
        """
        display.verification_start(test_file_path, self._use_lsp)
        file_args = {"file_path": test_file_path}
        stages = [
            (VerificationStep.SYNTAX_CHECK, lambda: self._check(VerificationStep.SYNTAX_CHECK, file_args)),
            (VerificationStep.LSP_CHECK, lambda: self._check(VerificationStep.LSP_CHECK, file_args)),
            (VerificationStep.COMPILE, self.compile_only),
            (VerificationStep.TEST, lambda: self.test_only(test_class_name)),
        ]
        order = list(VerificationStep)
        for step, run_step in stages:
            if order.index(step) < order.index(start_at):
                continue
            if step is VerificationStep.LSP_CHECK and not self._use_lsp:
                continue
            result = run_step()
            if not result.success:
                return result

        return self._coverage(module_path, target_class_name, method_name)

    def check_syntax_only(self, test_file_path: str) -> VerificationResult:
        """Syntax check, followed by the LSP check when enabled."""
        result = self._check(VerificationStep.SYNTAX_CHECK, {"file_path": test_file_path})
        if not result.success or not self._use_lsp:
            return result
        return self._check(VerificationStep.LSP_CHECK, {"file_path": test_file_path})

    def compile_only(self) -> VerificationResult:
        return self._check(VerificationStep.COMPILE, {})

    def test_only(self, test_class_name: str) -> VerificationResult:
        return self._check(VerificationStep.TEST, {"test_class_name": test_class_name})

    def coverage_only(self, module_path: str, target_class_name: str, method_name: str) -> VerificationResult:
        return self._coverage(module_path, target_class_name, method_name)
