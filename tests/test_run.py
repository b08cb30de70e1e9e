from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from ut_agent import __version__
from ut_agent.models import RunReport
from ut_agent.run import main

# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def test_version(capsys):
    with pytest.raises(SystemExit) as exc:
        main(["--version"])
    assert exc.value.code == 0
    assert __version__ in capsys.readouterr().out

def test_no_command_prints_help(capsys):
    assert main([]) == 0
    assert "usage: ut-agent" in capsys.readouterr().out

def test_init_writes_config(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert main(["--init"]) == 0
    assert (tmp_path / ".ut_agent" / "agent.toml").is_file()

def test_run_single_target_uses_exit_status(tmp_path):
    orchestrator = MagicMock()
    orchestrator.run.return_value = RunReport(target_file="src/calc.py", success=True)

    with patch("ut_agent.orchestrator.GenerationOrchestrator", return_value=orchestrator) as cls, patch(
        "ut_agent.run._project_root", return_value=tmp_path
    ):
        assert main(["run", "src/calc.py", "--no-iterative", "--no-stream"]) == 0

    config = cls.call_args.args[0]
    assert config.workflow.iterative_mode is False
    assert config.workflow.stream is False
    orchestrator.run.assert_called_once_with(Path("src/calc.py").resolve(), None)

def test_run_batch_fails_if_any_target_fails(tmp_path):
    orchestrator = MagicMock()
    orchestrator.run_batch.return_value = [
        RunReport(target_file="a.py", success=True),
        RunReport(target_file="b.py", success=False),
    ]
    with patch("ut_agent.orchestrator.GenerationOrchestrator", return_value=orchestrator), patch(
        "ut_agent.run._project_root", return_value=tmp_path
    ):
        assert main(["run", "a.py", "b.py"]) == 1

def test_run_without_api_key_halts(tmp_path, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with patch("ut_agent.run._project_root", return_value=tmp_path):
        assert main(["run", "src/calc.py"]) == 2

def test_run_from_subpackage_resolves_target_against_cwd(tmp_path, monkeypatch):
    (tmp_path / "pyproject.toml").write_text("[project]\nname = 'demo'\n")
    pkg = tmp_path / "pkg"
    pkg.mkdir()
    (pkg / "mod.py").write_text("def f():\n    return 1\n")
    monkeypatch.chdir(pkg)

    orchestrator = MagicMock()
    orchestrator.run.return_value = RunReport(target_file="pkg/mod.py", success=True)
    with patch("ut_agent.orchestrator.GenerationOrchestrator", return_value=orchestrator) as cls:
        assert main(["run", "mod.py"]) == 0

    assert Path(cls.call_args.args[0].project_root).resolve() == tmp_path.resolve()
    target = orchestrator.run.call_args.args[0]
    assert target == (pkg / "mod.py").resolve()
    assert target.is_file()
