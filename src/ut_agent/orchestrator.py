# orchestrator.py
# Drives a full test-generation run for one target file or a batch of them.
#
# Iterative mode, per method (least covered first):
#   GENERATION  → agent writes tests
#   VERIFICATION → pipeline; on failure REPAIR → agent fixes → resume pipeline
#   coverage below goal → ask for more tests until the goal, the attempt cap,
#   or a run of attempts without progress
#
# Traditional mode hands the whole task to one agent run with every tool.
# Each target gets its own registry, phase manager and conversation.

import fnmatch
import logging
import time
from pathlib import Path

from ut_agent import display, prompts
from ut_agent.config import AgentConfig
from ut_agent.context import ContextManager
from ut_agent.coverage import CoverageHistory, sort_by_coverage
from ut_agent.harness import AgentExecutor
from ut_agent.llm import ConsoleStreamingHandler, OpenAiAdapter, create_adapter
from ut_agent.models import (
    AgentOutcome,
    AgentResult,
    MethodCoverageInfo,
    MethodReport,
    MethodStatus,
    Priority,
    RunReport,
)
from ut_agent.phases import PhaseManager, WorkflowPhase, should_switch_to_repair
from ut_agent.pipeline import VerificationPipeline, VerificationResult, VerificationStep
from ut_agent.precheck import PreCheckExecutor, PreCheckResult
from ut_agent.registry import ToolRegistry
from ut_agent.tools import default_tools

logger = logging.getLogger(__name__)

PROJECT_MARKERS = ("pyproject.toml", "setup.py", "setup.cfg", ".git")

REPAIR_FOLLOW_UP = """\
Your last reply reports a failure. Read the failing output again, fix the \
test file, rerun the checks, and reply with a summary once everything passes.\
"""


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------


def find_project_root(target_file: Path) -> Path | None:
    """Nearest ancestor holding a packaging file or a .git directory."""
    start = Path(target_file).resolve()
    for candidate in (start, *start.parents):
        if candidate.is_dir() and any((candidate / marker).exists() for marker in PROJECT_MARKERS):
            return candidate
    return None


def resolve_test_file(target_file: Path) -> Path:
    """tests/test_<module>.py, relative to the project root."""
    return Path("tests") / f"test_{Path(target_file).stem}.py"


def module_name(target_file: Path) -> str:
    return Path(target_file).stem


# ---------------------------------------------------------------------------
# Per-target session
# ---------------------------------------------------------------------------


class _Session:
    """Mutable state for one target. Never shared between targets."""

    def __init__(self, tools: list[object], iterative: bool, config: AgentConfig) -> None:
        self.registry = ToolRegistry()
        self.phases = PhaseManager(tools, self.registry, enabled=iterative)
        self.phases.initialize_tools()
        self.pipeline = VerificationPipeline(
            self.registry,
            coverage_threshold=config.workflow.coverage_threshold,
            use_lsp=config.workflow.use_lsp,
        )


class GenerationOrchestrator:
    """
    Runs pre-check, generation, verification and repair for target files.

    Example:
        config = load_config(Path.cwd())
        orchestrator = GenerationOrchestrator(config)
        report = orchestrator.run("src/calc/ops.py")
    """

    def __init__(
        self,
        config: AgentConfig,
        tools: list[object] | None = None,
        adapter: OpenAiAdapter | None = None,
        system_prompt: str = prompts.SYSTEM_PROMPT,
    ) -> None:
        self._config = config
        self._root = Path(config.project_root).resolve()
        self._tools = tools if tools is not None else default_tools(self._root, config.commands)
        self._adapter = adapter or create_adapter(config.llm)
        self._system_prompt = system_prompt

    # ------------------------------------------------------------------
    # Agent calls
    # ------------------------------------------------------------------

    def _executor(self, session: _Session, context: ContextManager) -> AgentExecutor:
        workflow = self._config.workflow
        return AgentExecutor(
            self._adapter,
            session.registry,
            context,
            max_iterations=workflow.max_iterations,
            timeout_ms=workflow.timeout_seconds * 1000,
        )

    def _new_context(self) -> ContextManager:
        context = ContextManager(self._config.workflow.max_messages)
        context.set_system(self._system_prompt)
        return context

    def _ask(self, executor: AgentExecutor, prompt: str) -> AgentResult:
        if self._config.workflow.stream:
            return executor.run_stream(prompt, ConsoleStreamingHandler())
        return executor.run(prompt)

    @staticmethod
    def _usable(result: AgentResult) -> bool:
        # The model may have written code even when it ran out of iterations.
        return result.outcome in (AgentOutcome.COMPLETED, AgentOutcome.MAX_ITERATIONS)

    def _project_relative(self, target: str | Path) -> Path:
        # Exclude patterns apply below the root, never to the directories above it.
        path = Path(target)
        if path.is_absolute() and path.resolve().is_relative_to(self._root):
            return path.resolve().relative_to(self._root)
        return path

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run(self, target_file: str | Path, task_context: str | None = None) -> RunReport:
        start = time.monotonic()
        target = Path(target_file)
        absolute = target if target.is_absolute() else self._root / target
        if not absolute.resolve().is_relative_to(self._root):
            return RunReport(target_file=str(target_file), error_message=f"{target_file} is outside {self._root}")
        relative = absolute.resolve().relative_to(self._root)

        iterative = self._config.workflow.iterative_mode
        display.run_start(str(relative), "iterative" if iterative else "traditional")
        session = _Session(self._tools, iterative, self._config)

        test_file = resolve_test_file(relative)
        precheck = PreCheckExecutor(session.registry, self._config.workflow.coverage_threshold).execute(
            self._root, str(relative), self._root / test_file
        )
        if not precheck.success:
            display.halt(f"Pre-check failed: {precheck.error_message}")
            return RunReport(target_file=str(relative), error_message=precheck.error_message)

        if iterative and precheck.methods:
            report = self._run_iterative(session, relative, test_file, precheck)
        else:
            if iterative:
                logger.info("No per-method coverage available, handing the whole module to the agent")
            report = self._run_traditional(session, relative, test_file, precheck, task_context)

        report.duration_ms = int((time.monotonic() - start) * 1000)
        display.run_summary(report)
        return report

    def run_batch(self, target_files: list[str | Path]) -> list[RunReport]:
        """Run targets one after another; a failing target does not stop the batch."""
        batch = self._config.batch
        selected = [
            Path(target)
            for target in target_files
            if not any(
                fnmatch.fnmatch(self._project_relative(target).as_posix(), pattern)
                for pattern in batch.exclude_patterns
            )
        ]
        display.batch_start([str(target) for target in selected], len(target_files) - len(selected), batch.dry_run)
        if batch.dry_run:
            return []

        reports = []
        for index, target in enumerate(selected, start=1):
            display.batch_item(index, len(selected), str(target))
            try:
                reports.append(self.run(target))
            except Exception as exc:
                logger.error("Target %s failed", target, exc_info=True)
                reports.append(RunReport(target_file=str(target), error_message=str(exc)))
        display.batch_summary(reports)
        return reports

    # ------------------------------------------------------------------
    # Traditional mode
    # ------------------------------------------------------------------

    def _run_traditional(
        self,
        session: _Session,
        target: Path,
        test_file: Path,
        precheck: PreCheckResult,
        task_context: str | None,
    ) -> RunReport:
        session.phases.switch_to_phase(WorkflowPhase.FULL)
        prompt = prompts.build_task_prompt(
            str(target), str(test_file), self._config.workflow.coverage_threshold, precheck.coverage_info
        )
        if task_context:
            prompt += f"\n\nAdditional context:\n{task_context}"

        executor = self._executor(session, self._new_context())
        result = self._ask(executor, prompt)

        # Without a pipeline result the reply text is the only failure signal.
        follow_ups = 0
        while (
            result.success
            and should_switch_to_repair(result.content)
            and follow_ups < self._config.workflow.max_retries
        ):
            follow_ups += 1
            logger.info("Reply reports a failure, asking for a fix (%d/%d)", follow_ups, self._config.workflow.max_retries)
            result = self._ask(executor, REPAIR_FOLLOW_UP)

        return RunReport(
            target_file=str(target),
            success=result.success and not should_switch_to_repair(result.content),
            error_message=result.error_message,
        )

    # ------------------------------------------------------------------
    # Iterative mode
    # ------------------------------------------------------------------

    def _run_iterative(
        self, session: _Session, target: Path, test_file: Path, precheck: PreCheckResult
    ) -> RunReport:
        workflow = self._config.workflow
        methods = sort_by_coverage(precheck.methods)
        display.method_plan(methods)

        reports = []
        for index, info in enumerate(methods, start=1):
            display.method_start(index, len(methods), info)
            if workflow.skip_low_priority and info.priority is Priority.P2:
                method_report = MethodReport(
                    method_name=info.method_name,
                    status=MethodStatus.SKIPPED,
                    coverage=info.line_coverage,
                    message="Low priority",
                )
            else:
                method_report = self._process_method(session, target, test_file, info)
            display.method_done(method_report)
            reports.append(method_report)

        processed = [r for r in reports if r.status is not MethodStatus.SKIPPED] or reports
        return RunReport(
            target_file=str(target),
            success=all(r.status in (MethodStatus.COVERED, MethodStatus.SKIPPED) for r in reports),
            coverage=sum(r.coverage for r in processed) / len(processed),
            methods=reports,
        )

    def _process_method(
        self, session: _Session, target: Path, test_file: Path, info: MethodCoverageInfo
    ) -> MethodReport:
        workflow = self._config.workflow
        threshold = workflow.coverage_threshold
        name = info.method_name

        if info.line_coverage >= threshold:
            return MethodReport(
                method_name=name,
                status=MethodStatus.SKIPPED,
                coverage=info.line_coverage,
                message="Coverage already met",
            )

        history = CoverageHistory(name, info.line_coverage)
        executor = self._executor(session, self._new_context())

        while True:
            session.phases.switch_to_phase(WorkflowPhase.GENERATION)
            if history.attempts == 0:
                prompt = prompts.build_generate_prompt(str(target), name, str(test_file), history.latest)
            else:
                prompt = prompts.build_more_tests_prompt(
                    str(target), name, str(test_file), history.latest, threshold
                )
            generation = self._ask(executor, prompt)
            if not self._usable(generation):
                return MethodReport(
                    method_name=name,
                    status=MethodStatus.FAILED,
                    coverage=history.latest,
                    attempts=history.attempts + 1,
                    message=f"Generation failed: {generation.error_message}",
                )
            if session.phases.smart_switch(generation.content):
                logger.info("Model reported a failure for %s; the pipeline decides", name)

            verification = self._verify_with_repair(session, executor, target, test_file, name)
            history.record(verification.coverage if verification.success else history.latest)

            if not verification.success:
                return MethodReport(
                    method_name=name,
                    status=MethodStatus.FAILED,
                    coverage=history.latest,
                    attempts=history.attempts,
                    message=f"{verification.failed_step.display_name} still failing after "
                    f"{verification.retry_count} repair(s): {verification.error_message}",
                )
            if verification.coverage_threshold_met:
                return MethodReport(
                    method_name=name,
                    status=MethodStatus.COVERED,
                    coverage=history.latest,
                    attempts=history.attempts,
                )
            if not history.should_continue(
                workflow.max_coverage_iterations, workflow.max_stale_iterations, workflow.min_coverage_gain
            ):
                return MethodReport(
                    method_name=name,
                    status=MethodStatus.PARTIAL,
                    coverage=history.latest,
                    attempts=history.attempts,
                    message=f"Stopped at {history.latest:.1f}% (goal {threshold:.0f}%)",
                )
            display.coverage_retry(name, history.latest, threshold)

    def _verify_with_repair(
        self,
        session: _Session,
        executor: AgentExecutor,
        target: Path,
        test_file: Path,
        method_name: str,
    ) -> VerificationResult:
        test_module = test_file.stem
        start_at = VerificationStep.SYNTAX_CHECK
        retries = 0

        while True:
            session.phases.switch_to_phase(WorkflowPhase.VERIFICATION)
            result = session.pipeline.execute(
                str(test_file), test_module, module_name(target), method_name, str(self._root), start_at=start_at
            )
            for _ in range(retries):
                result.increment_retry()
            if result.success or retries >= self._config.workflow.max_retries:
                return result

            session.phases.switch_to_phase(WorkflowPhase.REPAIR)
            repair = self._ask(executor, self._fix_prompt(result, test_file, test_module))
            if not self._usable(repair):
                logger.error("Repair attempt for %s failed: %s", method_name, repair.error_message)
                return result
            retries += 1
            start_at = result.failed_step

    @staticmethod
    def _fix_prompt(result: VerificationResult, test_file: Path, test_module: str) -> str:
        error = result.error_details or result.error_message
        step = result.failed_step
        if step is VerificationStep.SYNTAX_CHECK:
            return prompts.build_syntax_fix_prompt(str(test_file), error)
        if step is VerificationStep.LSP_CHECK:
            return prompts.build_lsp_fix_prompt(str(test_file), error)
        if step is VerificationStep.COMPILE:
            return prompts.build_compile_fix_prompt(str(test_file), error)
        return prompts.build_test_fix_prompt(str(test_file), test_module, error)
