import pytest

from ut_agent.coverage import (
    CoverageAnalyzer,
    CoverageHistory,
    CoverageResult,
    extract_method_names,
    parse_method_coverage,
    sort_by_coverage,
)
from ut_agent.models import Priority
from ut_agent.registry import ToolRegistry, tool

REPORT = """\
Coverage for calc:
✗ add(a, b) Line: 50.0% Branch: 100.0%
✗ sub(a, b) Line: 0.0% Branch: 0.0%
✓ mul(a, b) Line: 100.0% Branch: 100.0%
✓ __init__(self) Line: 100.0% Branch: 100.0%
"""


class CoverageTool:
    def __init__(self, details, uncovered="Uncovered: add, sub"):
        self.details = details
        self.uncovered = uncovered

    @tool("details")
    def get_method_coverage_details(self, module_path: str, class_name: str) -> str:
        return self.details

    @tool("uncovered")
    def get_uncovered_methods(self, module_path: str, class_name: str, threshold: float = 80.0) -> str:
        return self.uncovered


class CodeAnalyzerTool:
    def __init__(self, analysis):
        self.analysis = analysis

    @tool("analyze")
    def analyze_class(self, path: str) -> str:
        return self.analysis


def _analyzer(*tools):
    registry = ToolRegistry()
    registry.register_all(list(tools))
    return CoverageAnalyzer(registry, threshold=80.0)

# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def test_parse_method_coverage_assigns_priorities():
    methods = parse_method_coverage(REPORT, 80.0)
    assert [(m.method_name, m.priority) for m in methods] == [
        ("add", Priority.P1),
        ("sub", Priority.P0),
        ("mul", Priority.P2),
    ]
    assert methods[0].line_coverage == 50.0
    assert methods[0].branch_coverage == 100.0

def test_parse_method_coverage_without_glyph():
    methods = parse_method_coverage("div(a, b) Line: 12.5% Branch: 0%", 80.0)
    assert methods[0].method_name == "div"
    assert methods[0].line_coverage == 12.5

@pytest.mark.parametrize("text", [None, "", "nothing here"])
def test_parse_method_coverage_empty(text):
    assert parse_method_coverage(text, 80.0) == []

def test_sort_by_coverage_least_covered_first():
    ordered = sort_by_coverage(parse_method_coverage(REPORT, 80.0))
    assert [m.method_name for m in ordered] == ["sub", "add", "mul"]

def test_methods_needing_tests():
    result = CoverageResult(coverage_info=REPORT, methods=parse_method_coverage(REPORT, 80.0))
    assert [m.method_name for m in result.methods_needing_tests()] == ["sub", "add"]
    assert result.has_coverage_data
    assert not CoverageResult().has_coverage_data

def test_extract_method_names_from_analyzer_summary():
    analysis = (
        "Class: calc\n"
        "Method: add(a, b) [line 3]\n"
        "Method: __init__(self) [line 1]\n"
        "Method: __repr__(self) [line 9]\n"
        "Method: main() [line 20]\n"
        "Method: add(a, b) [line 30]\n"
        "Method: sub(a, b) [line 12]\n"
    )
    assert extract_method_names(analysis) == ["add", "sub"]

def test_extract_method_names_fallback_layouts():
    assert extract_method_names("- Signature: total(items)\n") == ["total"]
    assert extract_method_names("Methods:\n  - alpha\n  - beta(x)\n") == ["alpha", "beta"]
    assert extract_method_names(None) == []

# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------

def test_analyze_uses_coverage_report():
    analyzer = _analyzer(CoverageTool(REPORT), CodeAnalyzerTool("Method: other() [line 1]"))
    result = analyzer.analyze("/proj", "src/calc.py")

    assert [m.method_name for m in result.methods] == ["add", "sub", "mul"]
    assert REPORT in result.coverage_info
    assert "Uncovered: add, sub" in result.coverage_info

def test_analyze_falls_back_to_static_analysis():
    analyzer = _analyzer(
        CoverageTool("Error: No coverage data in coverage.json"),
        CodeAnalyzerTool("Method: add(a, b) [line 1]\nMethod: sub(a, b) [line 4]"),
    )
    result = analyzer.analyze("/proj", "src/calc.py")

    assert [(m.method_name, m.priority, m.line_coverage) for m in result.methods] == [
        ("add", Priority.P0, 0.0),
        ("sub", Priority.P0, 0.0),
    ]
    assert result.coverage_info.startswith("Static Analysis Result (No coverage data yet):")
    assert "✗ add() Line: 0.0% Branch: 0.0%" in result.coverage_info

def test_analyze_with_nothing_available():
    analyzer = _analyzer(CoverageTool("Error: no data"), CodeAnalyzerTool("Error: file not found"))
    result = analyzer.analyze("/proj", "src/calc.py")
    assert result.methods == []
    assert result.coverage_info is None

# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------

def test_history_tracks_attempts():
    history = CoverageHistory("add", baseline=10.0)
    assert history.attempts == 0
    assert history.latest == 10.0
    history.record(40.0)
    assert history.attempts == 1
    assert history.latest == 40.0

def test_history_counts_stale_attempts():
    history = CoverageHistory("add", baseline=10.0)
    for reading in (40.0, 40.5, 40.5):
        history.record(reading)
    assert history.stale_iterations(1.0) == 2
    assert history.should_continue(max_attempts=5, max_stale=3, min_gain=1.0)
    assert not history.should_continue(max_attempts=5, max_stale=2, min_gain=1.0)

def test_history_stops_at_attempt_cap():
    history = CoverageHistory("add")
    history.record(20.0)
    history.record(50.0)
    assert not history.should_continue(max_attempts=2, max_stale=3, min_gain=1.0)
