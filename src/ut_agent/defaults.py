"""Compiled-in default configuration values for ut-agent.

This module is the single source of truth for all default settings.
Other modules should import from here rather than duplicating values.
"""

from __future__ import annotations

from typing import Final

LLM_DEFAULTS: Final[dict[str, object]] = {
    "protocol": "openai",
    "model_name": "gpt-4o-mini",
    "base_url": "",
    "temperature": 0.0,
    "timeout_seconds": 120,
    "api_key_env": "OPENAI_API_KEY",
    "log_requests": False,
}

WORKFLOW_DEFAULTS: Final[dict[str, object]] = {
    "max_retries": 3,
    "coverage_threshold": 80.0,
    "use_lsp": False,
    "iterative_mode": True,
    "skip_low_priority": False,
    "max_coverage_iterations": 3,
    "max_stale_iterations": 3,
    "min_coverage_gain": 1.0,
    "max_messages": 20,
    "max_iterations": 50,
    "timeout_seconds": 300,
    "stream": True,
}

# {test_target} is replaced with the test file path, {file} with the file to lint.
COMMAND_DEFAULTS: Final[dict[str, object]] = {
    "compile": "python -m compileall -q src",
    "test": "python -m coverage run --branch -m pytest -q {test_target}",
    "clean_test": "python -m coverage run --branch -m pytest -q",
    "coverage_report": "python -m coverage json -q -o coverage.json",
    "coverage_file": "coverage.json",
    "lint": "python -m pyflakes {file}",
    "timeout_seconds": 600,
}

BATCH_DEFAULTS: Final[dict[str, object]] = {
    "exclude_patterns": ["*/__init__.py", "*/tests/*", "*/test_*.py"],
    "dry_run": False,
}


_BARE_KEY_CHARS = frozenset(
    "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"
)


def _quote_key(key: str) -> str:
    if key and all(c in _BARE_KEY_CHARS for c in key):
        return key
    return f'"{key}"'


def _format_toml_value(value: object) -> str:
    if isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, list):
        return "[" + ", ".join(_format_toml_value(item) for item in value) + "]"
    msg = f"Unsupported type: {type(value)}"
    raise TypeError(msg)


def _section_to_toml(name: str, data: dict[str, object]) -> str:
    lines = [f"[{name}]"]
    for key, value in data.items():
        lines.append(f"{_quote_key(key)} = {_format_toml_value(value)}")
    return "\n".join(lines)


def generate_toml() -> str:
    """Generate a TOML configuration string from compiled-in defaults."""
    sections = [
        _section_to_toml("llm", LLM_DEFAULTS),
        _section_to_toml("workflow", WORKFLOW_DEFAULTS),
        _section_to_toml("commands", COMMAND_DEFAULTS),
        _section_to_toml("batch", BATCH_DEFAULTS),
    ]
    return "\n\n".join(sections) + "\n"
