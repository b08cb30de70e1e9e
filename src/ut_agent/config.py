from __future__ import annotations

import copy
import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from ut_agent.defaults import (
    BATCH_DEFAULTS,
    COMMAND_DEFAULTS,
    LLM_DEFAULTS,
    WORKFLOW_DEFAULTS,
    generate_toml,
)

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "agent.toml"
CONFIG_DIR = ".ut_agent"


@dataclass
class LlmConfig:
    protocol: str
    model_name: str
    base_url: str
    temperature: float | None
    timeout_seconds: float
    api_key_env: str
    log_requests: bool = False
    api_key: str = field(default="", repr=False)


@dataclass
class WorkflowConfig:
    max_retries: int
    coverage_threshold: float
    use_lsp: bool
    iterative_mode: bool
    skip_low_priority: bool
    max_coverage_iterations: int
    max_stale_iterations: int
    min_coverage_gain: float
    max_messages: int
    max_iterations: int
    timeout_seconds: int
    stream: bool


@dataclass
class CommandConfig:
    compile: str
    test: str
    clean_test: str
    coverage_report: str
    coverage_file: str
    lint: str
    timeout_seconds: int


@dataclass
class BatchConfig:
    exclude_patterns: list[str] = field(default_factory=list)
    dry_run: bool = False


@dataclass
class AgentConfig:
    llm: LlmConfig
    workflow: WorkflowConfig
    commands: CommandConfig
    batch: BatchConfig = field(default_factory=BatchConfig)
    project_root: Path = field(default_factory=Path.cwd)


def _deep_merge(base: dict, overrides: dict) -> dict:
    merged = dict(base)
    for key, value in overrides.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _build_defaults() -> dict:
    return copy.deepcopy(
        {
            "llm": LLM_DEFAULTS,
            "workflow": WORKFLOW_DEFAULTS,
            "commands": COMMAND_DEFAULTS,
            "batch": BATCH_DEFAULTS,
        }
    )


def _known(data: dict, defaults: dict, section: str) -> dict:
    unknown = set(data) - set(defaults)
    if unknown:
        logger.warning("Ignoring unknown [%s] keys: %s", section, ", ".join(sorted(unknown)))
    return {key: data.get(key, default) for key, default in defaults.items()}


def _config_from_dict(data: dict, project_root: Path) -> AgentConfig:
    llm = _known(data.get("llm", {}), LLM_DEFAULTS, "llm")
    workflow = _known(data.get("workflow", {}), WORKFLOW_DEFAULTS, "workflow")
    commands = _known(data.get("commands", {}), COMMAND_DEFAULTS, "commands")
    batch = _known(data.get("batch", {}), BATCH_DEFAULTS, "batch")

    llm_config = LlmConfig(**llm)
    llm_config.api_key = os.getenv(llm_config.api_key_env, "")

    config = AgentConfig(
        llm=llm_config,
        workflow=WorkflowConfig(**workflow),
        commands=CommandConfig(**commands),
        batch=BatchConfig(**batch),
        project_root=project_root,
    )
    validate_config(config)
    return config


def validate_config(config: AgentConfig) -> None:
    """Raise ValueError for settings no run could succeed with."""
    workflow = config.workflow
    if not 0 <= workflow.coverage_threshold <= 100:
        raise ValueError(f"workflow.coverage_threshold must be within 0-100, got {workflow.coverage_threshold}")
    if workflow.max_messages < 2:
        raise ValueError(f"workflow.max_messages must be at least 2, got {workflow.max_messages}")
    if workflow.max_iterations < 1:
        raise ValueError(f"workflow.max_iterations must be positive, got {workflow.max_iterations}")
    if workflow.max_retries < 0:
        raise ValueError(f"workflow.max_retries must not be negative, got {workflow.max_retries}")


def load_config(project_root: Path) -> AgentConfig:
    """Load config: source defaults merged with .ut_agent/agent.toml overrides."""
    load_dotenv(project_root / ".env")
    defaults = _build_defaults()
    toml_path = project_root / CONFIG_DIR / CONFIG_FILENAME

    if not toml_path.is_file():
        return _config_from_dict(defaults, project_root)

    try:
        raw = toml_path.read_bytes()
        overrides = tomllib.loads(raw.decode())
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
        logger.warning("Failed to parse %s: %s", toml_path, exc)
        return _config_from_dict(defaults, project_root)

    merged = _deep_merge(defaults, overrides)
    return _config_from_dict(merged, project_root)


def init_config(project_root: Path) -> Path:
    """Write .ut_agent/agent.toml from source defaults. Backup existing."""
    config_dir = project_root / CONFIG_DIR
    config_dir.mkdir(parents=True, exist_ok=True)

    config_path = config_dir / CONFIG_FILENAME
    if config_path.exists():
        backup_path = config_path.with_suffix(".toml.bak")
        backup_path.write_text(config_path.read_text())

    config_path.write_text(generate_toml())
    return config_path
