# tools.py
# Collaborator tools: the only code that touches files and processes.
# The agent loop and the pipeline reach these through the ToolRegistry and
# never call them directly. Every tool returns text; expected failures come
# back as "Error: ..." strings.

import ast
import json
import logging
import shlex
import subprocess
from pathlib import Path
from typing import Annotated

from ut_agent.config import CommandConfig
from ut_agent.registry import P, tool

logger = logging.getLogger(__name__)

MAX_OUTPUT_CHARS = 20_000


def _tail(text: str, limit: int = MAX_OUTPUT_CHARS) -> str:
    if len(text) > limit:
        return "... (output truncated)\n" + text[-limit:]
    return text


class _ProjectTool:
    def __init__(self, project_root: Path) -> None:
        self.project_root = Path(project_root).resolve()

    def _resolve(self, path: str) -> Path:
        resolved = (self.project_root / path).resolve()
        if not resolved.is_relative_to(self.project_root):
            raise ValueError(f"Path escapes project root: {path}")
        return resolved


# ---------------------------------------------------------------------------
# File system
# ---------------------------------------------------------------------------


class FileSystemTool(_ProjectTool):
    @tool("Read a text file relative to the project root.")
    def read_file(self, path: Annotated[str, P("File path relative to the project root")]) -> str:
        target = self._resolve(path)
        if not target.is_file():
            return f"Error: File not found: {path}"
        return target.read_text(encoding="utf-8")

    @tool("Create or overwrite a file with the given content.")
    def write_file(
        self,
        path: Annotated[str, P("File path relative to the project root")],
        content: Annotated[str, P("Complete new file content")],
    ) -> str:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        return f"Wrote {len(content)} bytes to {path}."

    @tool("Replace a file from a 1-based line to its end; line 0 appends at the end.")
    def write_file_from_line(
        self,
        path: Annotated[str, P("File path relative to the project root")],
        content: Annotated[str, P("Content to write from the given line on")],
        start_line: Annotated[int, P("1-based first line to replace, 0 to append")] = 0,
    ) -> str:
        target = self._resolve(path)
        lines = target.read_text(encoding="utf-8").splitlines(keepends=True) if target.is_file() else []
        if start_line <= 0 or start_line > len(lines):
            kept = lines
        else:
            kept = lines[: start_line - 1]
        if kept and not kept[-1].endswith("\n"):
            kept[-1] += "\n"
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text("".join(kept) + content, encoding="utf-8")
        return f"Wrote {len(content)} bytes to {path} after line {len(kept)}."

    @tool("Replace the first exact occurrence of a text snippet in a file.")
    def search_replace(
        self,
        path: Annotated[str, P("File path relative to the project root")],
        search: Annotated[str, P("Exact text to find")],
        replace: Annotated[str, P("Replacement text")],
    ) -> str:
        target = self._resolve(path)
        if not target.is_file():
            return f"Error: File not found: {path}"
        text = target.read_text(encoding="utf-8")
        if search not in text:
            return f"Error: Search text not found in {path}"
        target.write_text(text.replace(search, replace, 1), encoding="utf-8")
        return f"Replaced 1 occurrence in {path}."


# ---------------------------------------------------------------------------
# Build driver
# ---------------------------------------------------------------------------


class BuildTool(_ProjectTool):
    """Runs the configured compile and test commands as child processes."""

    def __init__(self, project_root: Path, commands: CommandConfig) -> None:
        super().__init__(project_root)
        self._commands = commands

    def _run(self, command: str) -> str:
        argv = shlex.split(command)
        logger.info("Running: %s", command)
        try:
            completed = subprocess.run(
                argv,
                cwd=self.project_root,
                capture_output=True,
                text=True,
                timeout=self._commands.timeout_seconds,
            )
        except FileNotFoundError:
            return f"Error: Command not found: {argv[0]}"
        except subprocess.TimeoutExpired:
            # subprocess.run kills the child before raising
            return f"exitCode=-1\nTIMEOUT after {self._commands.timeout_seconds}s: {command}"
        output = (completed.stdout or "") + (completed.stderr or "")
        return f"exitCode={completed.returncode}\n{_tail(output)}"

    def _refresh_coverage(self, output: str) -> str:
        if self._commands.coverage_report:
            report = self._run(self._commands.coverage_report)
            if not report.startswith("exitCode=0"):
                logger.warning("Coverage report failed: %.200s", report)
        return output

    def _test_target(self, test_class_name: str) -> str:
        if test_class_name.endswith(".py") or "/" in test_class_name:
            return test_class_name
        matches = sorted(self.project_root.glob(f"tests/**/{test_class_name}.py"))
        if matches:
            return str(matches[0].relative_to(self.project_root))
        return test_class_name

    @tool("Compile the project and report errors.")
    def compile_project(self) -> str:
        return self._run(self._commands.compile)

    @tool("Run one test module and refresh coverage data.")
    def execute_test(
        self, test_class_name: Annotated[str, P("Test module name or path, e.g. test_calc")]
    ) -> str:
        command = self._commands.test.format(test_target=shlex.quote(self._test_target(test_class_name)))
        return self._refresh_coverage(self._run(command))

    @tool("Delete stale coverage data, run the whole test suite and refresh coverage.")
    def clean_and_test(self) -> str:
        for stale in (".coverage", self._commands.coverage_file):
            (self.project_root / stale).unlink(missing_ok=True)
        return self._refresh_coverage(self._run(self._commands.clean_test))


# ---------------------------------------------------------------------------
# Syntax checkers
# ---------------------------------------------------------------------------


class SyntaxCheckerTool(_ProjectTool):
    @tool("Check that a Python file parses.")
    def check_syntax(self, file_path: Annotated[str, P("File to check")]) -> str:
        target = self._resolve(file_path)
        if not target.is_file():
            return f"Error: File not found: {file_path}"
        if target.suffix != ".py":
            return f"SYNTAX_OK: {file_path} is not a Python file, skipped"
        try:
            ast.parse(target.read_text(encoding="utf-8"), filename=str(target))
        except SyntaxError as exc:
            return f"INVALID: {file_path}:{exc.lineno}:{exc.offset}: {exc.msg}\n{(exc.text or '').rstrip()}"
        return f"SYNTAX_OK: {file_path}"


class LspSyntaxCheckerTool(_ProjectTool):
    """Semantic check through an external linter."""

    def __init__(self, project_root: Path, lint_command: str) -> None:
        super().__init__(project_root)
        self._lint_command = lint_command

    @tool("Run the configured linter on a file and report undefined names and similar errors.")
    def check_syntax_with_lsp(self, file_path: Annotated[str, P("File to lint")]) -> str:
        self._resolve(file_path)
        command = self._lint_command.format(file=shlex.quote(file_path))
        try:
            completed = subprocess.run(
                shlex.split(command),
                cwd=self.project_root,
                capture_output=True,
                text=True,
                timeout=120,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired) as exc:
            return f"LSP_WARNINGS: linter unavailable ({exc})"
        output = ((completed.stdout or "") + (completed.stderr or "")).strip()
        if "No module named" in output:
            return f"LSP_WARNINGS: linter unavailable ({output.splitlines()[-1]})"
        if completed.returncode == 0 and not output:
            return "LSP_OK: No errors"
        return f"LSP_ERRORS:\n{_tail(output)}"


# ---------------------------------------------------------------------------
# Code analyzer
# ---------------------------------------------------------------------------


def _signature(node: ast.FunctionDef | ast.AsyncFunctionDef) -> str:
    return ", ".join(arg.arg for arg in node.args.posonlyargs + node.args.args + node.args.kwonlyargs)


class CodeAnalyzerTool(_ProjectTool):
    @tool("Summarise the classes, methods and functions of a Python module.")
    def analyze_class(self, path: Annotated[str, P("Module path relative to the project root")]) -> str:
        target = self._resolve(path)
        if not target.is_file():
            return f"Error: File not found: {path}"
        try:
            tree = ast.parse(target.read_text(encoding="utf-8"), filename=str(target))
        except SyntaxError as exc:
            return f"Error: Cannot parse {path}: {exc.msg} (line {exc.lineno})"

        lines = [f"Module: {target.stem} ({path})"]
        for node in tree.body:
            if isinstance(node, ast.ClassDef):
                lines.append(f"Class: {node.name} [line {node.lineno}]")
                for item in node.body:
                    if isinstance(item, (ast.FunctionDef, ast.AsyncFunctionDef)):
                        lines.append(f"  Method: {item.name}({_signature(item)}) [line {item.lineno}]")
            elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                lines.append(f"Method: {node.name}({_signature(node)}) [line {node.lineno}]")
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Coverage reader
# ---------------------------------------------------------------------------


class CoverageTool(_ProjectTool):
    """Reads per-function figures from a coverage.py JSON report."""

    __tools__ = ("get_method_coverage_details", "get_uncovered_methods", "get_single_method_coverage")

    def __init__(self, project_root: Path, coverage_file: str = "coverage.json") -> None:
        super().__init__(project_root)
        self._coverage_file = coverage_file

    def _functions(self, module_path: str, class_name: str) -> tuple[str, dict[str, tuple[float, float]]]:
        report_path = self._resolve(module_path) / self._coverage_file
        if not report_path.is_file():
            raise FileNotFoundError(f"Coverage report not found: {report_path}")
        report = json.loads(report_path.read_text(encoding="utf-8"))

        for file_name, entry in report.get("files", {}).items():
            if Path(file_name).stem != class_name:
                continue
            figures: dict[str, tuple[float, float]] = {}
            for qualified, function in entry.get("functions", {}).items():
                if not qualified:
                    continue
                summary = function.get("summary", {})
                statements = summary.get("num_statements", 0)
                line = 100.0 * summary.get("covered_lines", 0) / statements if statements else 100.0
                branches = summary.get("num_branches", 0)
                branch = 100.0 * summary.get("covered_branches", 0) / branches if branches else line
                figures[qualified.rsplit(".", 1)[-1]] = (round(line, 1), round(branch, 1))
            return file_name, figures
        raise LookupError(f"No coverage data for module {class_name}")

    def get_method_coverage_details(self, module_path: str, class_name: str) -> str:
        """Per-method line and branch coverage for one module.

        Args:
            module_path: Directory holding the coverage report, relative to the project root.
            class_name: Module name without the .py suffix.
        """
        file_name, figures = self._functions(module_path, class_name)
        lines = [f"Coverage for {class_name} ({file_name}):"]
        for name, (line, branch) in figures.items():
            glyph = "✓" if line >= 100 else ("✗" if line == 0 else "◐")
            lines.append(f"{glyph} {name}() Line: {line:.1f}% Branch: {branch:.1f}%")
        return "\n".join(lines)

    def get_uncovered_methods(self, module_path: str, class_name: str, threshold: float = 80.0) -> str:
        """Methods whose line coverage is below a threshold.

        Args:
            module_path: Directory holding the coverage report, relative to the project root.
            class_name: Module name without the .py suffix.
            threshold: Line coverage percentage a method must reach.
        """
        _, figures = self._functions(module_path, class_name)
        below = [(name, line) for name, (line, _) in figures.items() if line < threshold]
        if not below:
            return f"All methods of {class_name} reach {threshold:.0f}% line coverage."
        lines = [f"Methods below {threshold:.0f}% line coverage:"]
        lines.extend(f"- {name} (Line: {line:.1f}%)" for name, line in below)
        return "\n".join(lines)

    def get_single_method_coverage(self, module_path: str, class_name: str, method_name: str) -> str:
        """Line and branch coverage of one method.

        Args:
            module_path: Directory holding the coverage report, relative to the project root.
            class_name: Module name without the .py suffix.
            method_name: Method or function name.
        """
        _, figures = self._functions(module_path, class_name)
        if method_name not in figures:
            return f"Error: No coverage data for method {method_name} in {class_name}"
        line, branch = figures[method_name]
        return f"{class_name}.{method_name}: line={line:.1f}% branch={branch:.1f}%"


def default_tools(project_root: Path, commands: CommandConfig) -> list[object]:
    """Every collaborator, ready for registration."""
    return [
        FileSystemTool(project_root),
        BuildTool(project_root, commands),
        SyntaxCheckerTool(project_root),
        LspSyntaxCheckerTool(project_root, commands.lint),
        CodeAnalyzerTool(project_root),
        CoverageTool(project_root, commands.coverage_file),
    ]
