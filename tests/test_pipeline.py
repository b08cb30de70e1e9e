import pytest

from ut_agent.pipeline import (
    VerificationPipeline,
    VerificationResult,
    VerificationStep,
    compile_passed,
    is_tool_error,
    lsp_passed,
    parse_coverage_percentage,
    suite_passed,
    syntax_passed,
)
from ut_agent.registry import ToolRegistry, tool


class FakeTools:
    """Every verification tool, with scripted outputs and a call log."""

    def __init__(self, **outputs):
        self.outputs = {
            "check_syntax": "SYNTAX_OK",
            "check_syntax_with_lsp": "LSP_OK: No errors",
            "compile_project": "exitCode=0",
            "execute_test": "exitCode=0\n3 passed",
            "get_single_method_coverage": "calc.add: line=92.0% branch=80.0%",
        }
        self.outputs.update(outputs)
        self.calls = []

    def _record(self, name, **arguments):
        self.calls.append((name, arguments))
        output = self.outputs[name]
        if isinstance(output, Exception):
            raise output
        return output

    @tool("syntax")
    def check_syntax(self, file_path: str) -> str:
        return self._record("check_syntax", file_path=file_path)

    @tool("lsp")
    def check_syntax_with_lsp(self, file_path: str) -> str:
        return self._record("check_syntax_with_lsp", file_path=file_path)

    @tool("compile")
    def compile_project(self) -> str:
        return self._record("compile_project")

    @tool("test")
    def execute_test(self, test_class_name: str) -> str:
        return self._record("execute_test", test_class_name=test_class_name)

    @tool("coverage")
    def get_single_method_coverage(self, module_path: str, class_name: str, method_name: str) -> str:
        return self._record(
            "get_single_method_coverage", module_path=module_path, class_name=class_name, method_name=method_name
        )

    @property
    def called(self):
        return [name for name, _ in self.calls]


def _pipeline(tools, **kwargs):
    registry = ToolRegistry()
    registry.register(tools)
    return VerificationPipeline(registry, **kwargs)


def _execute(pipeline, **kwargs):
    return pipeline.execute("tests/test_calc.py", "test_calc", "calc", "add", "/proj", **kwargs)

# ---------------------------------------------------------------------------
# Output classifiers
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "output, expected",
    [
        ("Error: Unknown tool: x", True),
        ("  error running", True),
        ("Missing required parameter: file_path", True),
        ("SYNTAX_OK", False),
    ],
)
def test_is_tool_error(output, expected):
    assert is_tool_error(output) is expected

def test_syntax_passed():
    assert syntax_passed("SYNTAX_OK")
    assert not syntax_passed("INVALID: line 3: invalid syntax")
    assert not syntax_passed("ERROR somewhere")
    assert syntax_passed("nothing recognisable")

def test_syntax_passed_reads_leading_marker_not_echoed_path():
    assert syntax_passed("SYNTAX_OK: tests/test_INVALID_input.py")
    assert syntax_passed("SYNTAX_OK: tests/test_ERROR_paths.py")
    assert not syntax_passed("INVALID: tests/test_VALID_input.py:3:5: invalid syntax")

def test_lsp_passed_reads_leading_marker():
    assert not lsp_passed("LSP_ERRORS:\ntests/test_x.py:1:1: No errors expected here")

def test_lsp_passed():
    assert lsp_passed("LSP_OK: No errors")
    assert not lsp_passed("LSP_ERRORS: undefined name 'x'")
    assert lsp_passed("LSP_WARNINGS: linter unavailable")

def test_compile_passed():
    assert compile_passed("exitCode=0")
    assert not compile_passed("exitCode=1\nSyntaxError")
    assert not compile_passed("COMPILE_BLOCKED exitCode=0")
    assert compile_passed("BUILD SUCCESS")
    assert not compile_passed("BUILD FAILURE")

@pytest.mark.parametrize(
    "output, expected",
    [
        ("exitCode=0", True),
        ('{"exitCode": 2}', False),
        ("Tests run: 5, Failures: 0, Errors: 0", True),
        ("Tests run: 5, Failures: 1, Errors: 0", False),
        ("FAILURE!", False),
        ("1 failed, 2 passed in 0.1s", False),
        ("2 errors in 0.1s", False),
        ("4 passed in 0.2s", True),
    ],
)
def test_suite_passed(output, expected):
    assert suite_passed(output) is expected

@pytest.mark.parametrize(
    "output, expected",
    [
        ("calc.add: line=85.5% branch=50.0%", 85.5),
        ("Coverage: 40%", 40.0),
        ("no numbers", 0.0),
    ],
)
def test_parse_coverage_percentage(output, expected):
    assert parse_coverage_percentage(output) == expected

# ---------------------------------------------------------------------------
# Pipeline runs
# ---------------------------------------------------------------------------

def test_execute_all_steps_pass():
    tools = FakeTools()
    result = _execute(_pipeline(tools, coverage_threshold=90.0))

    assert result.success
    assert result.coverage == 92.0
    assert result.coverage_threshold_met
    assert tools.called == ["check_syntax", "compile_project", "execute_test", "get_single_method_coverage"]
    assert tools.calls[2] == ("execute_test", {"test_class_name": "test_calc"})
    assert tools.calls[3][1] == {"module_path": "/proj", "class_name": "calc", "method_name": "add"}

def test_execute_runs_lsp_step_when_enabled():
    tools = FakeTools()
    _execute(_pipeline(tools, use_lsp=True))
    assert tools.called[:2] == ["check_syntax", "check_syntax_with_lsp"]

def test_compile_failure_short_circuits():
    tools = FakeTools(compile_project="exitCode=1\nSyntaxError: bad")
    result = _execute(_pipeline(tools))

    assert not result.success
    assert result.failed_step is VerificationStep.COMPILE
    assert result.error_details == "exitCode=1\nSyntaxError: bad"
    assert "execute_test" not in tools.called
    assert "get_single_method_coverage" not in tools.called

def test_syntax_failure_stops_pipeline():
    tools = FakeTools(check_syntax="INVALID: line 1: unexpected indent")
    result = _execute(_pipeline(tools))
    assert result.failed_step is VerificationStep.SYNTAX_CHECK
    assert tools.called == ["check_syntax"]

def test_failing_tests_report_test_step():
    tools = FakeTools(execute_test="exitCode=1\n1 failed")
    result = _execute(_pipeline(tools))
    assert result.failed_step is VerificationStep.TEST
    assert result.error_message == "Test failed"

def test_tool_exception_is_a_step_failure():
    tools = FakeTools(compile_project=RuntimeError("disk full"))
    result = _execute(_pipeline(tools))
    assert result.failed_step is VerificationStep.COMPILE
    assert result.error_message == "Compile could not run: tool call error"
    assert result.error_details == "Error: disk full"

def test_missing_coverage_data_is_zero_not_failure():
    tools = FakeTools(get_single_method_coverage="Error: No coverage data for calc.add")
    result = _execute(_pipeline(tools))
    assert result.success
    assert result.coverage == 0.0
    assert not result.coverage_threshold_met

def test_below_threshold_coverage_still_passes():
    tools = FakeTools(get_single_method_coverage="calc.add: line=50.0% branch=0.0%")
    result = _execute(_pipeline(tools, coverage_threshold=80.0))
    assert result.success
    assert result.coverage == 50.0
    assert not result.coverage_threshold_met

def test_execute_resumes_at_failed_step():
    tools = FakeTools()
    result = _execute(_pipeline(tools), start_at=VerificationStep.TEST)
    assert result.success
    assert tools.called == ["execute_test", "get_single_method_coverage"]

# ---------------------------------------------------------------------------
# Single-step operations
# ---------------------------------------------------------------------------

def test_single_step_operations():
    tools = FakeTools()
    pipeline = _pipeline(tools, use_lsp=True)

    assert pipeline.check_syntax_only("tests/test_calc.py").success
    assert pipeline.compile_only().success
    assert pipeline.test_only("test_calc").success
    assert pipeline.coverage_only("/proj", "calc", "add").coverage == 92.0
    assert tools.called == [
        "check_syntax",
        "check_syntax_with_lsp",
        "compile_project",
        "execute_test",
        "get_single_method_coverage",
    ]

def test_missing_tools_fail_the_step():
    result = VerificationPipeline(ToolRegistry()).compile_only()
    assert not result.success
    assert result.error_details == "Error: Unknown tool: compile_project"

def test_increment_retry():
    result = VerificationResult.failed(VerificationStep.TEST, "Test failed")
    result.increment_retry()
    result.increment_retry()
    assert result.retry_count == 2
