import json
from pathlib import Path
from typing import Any

from click.testing import CliRunner

from pipewright.autonomy import TaskOutcome
from pipewright.cli import cli
from pipewright.config import load_config


def _init(runner: CliRunner, *args: str) -> None:
    result = runner.invoke(cli, ["init", "--greenfield", *args])
    assert result.exit_code == 0, result.output


def test_init_writes_config_and_session(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    result = runner.invoke(cli, ["init", "--greenfield"])

    assert result.exit_code == 0
    assert "Initialized pipewright in" in result.output
    assert "greenfield-wu" in result.output
    config = load_config(tmp_path / "pipewright.toml")
    assert config.project.name == tmp_path.name
    assert (tmp_path / ".pipewright" / "state" / "session.json").exists()

    again = runner.invoke(cli, ["init", "--greenfield"])
    assert again.exit_code != 0
    assert "already initialized" in again.output

    forced = runner.invoke(cli, ["init", "--brownfield", "--force"])
    assert forced.exit_code == 0
    assert "brownfield-wu" in forced.output


def test_init_detects_existing_project(tmp_path: Path, monkeypatch) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "pyproject.toml").write_text("", encoding="utf-8")
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli, ["init"])

    assert result.exit_code == 0
    assert "Detected brownfield project (high confidence)" in result.output


def test_init_rejects_unknown_provider(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli, ["init", "--greenfield", "--provider", "cursor"])

    assert result.exit_code != 0
    assert "Unknown CLI provider" in result.output


def test_status_before_init_fails(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli, ["status"])

    assert result.exit_code != 0
    assert "pipewright init" in result.output


def test_agent_lifecycle_commands(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    _init(runner)

    start = runner.invoke(cli, ["start", "greenfield-wu"])
    assert start.exit_code == 0
    assert "greenfield-wu in progress." in start.output

    complete = runner.invoke(cli, ["complete", "greenfield-wu", "--score", "95"])
    assert complete.exit_code == 0
    assert "Next action: continue -> brief" in complete.output

    phase_change = runner.invoke(cli, ["complete", "brief"])
    assert "Next action: advance_phase -> detail" in phase_change.output
    assert "Phase: plan" in phase_change.output

    status = runner.invoke(cli, ["status"])
    payload = json.loads(status.output)
    assert payload["phase"] == "plan"
    assert payload["progress"]["completed_agents"] == ["greenfield-wu", "brief"]

    reset = runner.invoke(cli, ["reset", "brief"])
    assert reset.exit_code == 0
    assert "Reset to brief (phase discover)." in reset.output


def test_unknown_agent_is_a_usage_error(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    _init(runner)

    result = runner.invoke(cli, ["complete", "wizard"])

    assert result.exit_code == 2


def test_preview_command_outside_build_phase_fails(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    _init(runner)

    result = runner.invoke(cli, ["preview", "approve_keep"])

    assert result.exit_code != 0
    assert "No preview is pending" in result.output


def test_spawn_dry_run_shows_isolated_invocation(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CLAUDECODE", "1")
    runner = CliRunner()
    _init(runner)

    result = runner.invoke(
        cli, ["spawn", "dev", "T3", "--prompt", "Implement T3", "--model", "haiku", "--dry-run"]
    )

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["argv"][:3] == ["claude", "--print", "--dangerously-skip-permissions"]
    assert "claude-haiku-4-5-20251001" in payload["argv"]
    assert "Implement T3" not in payload["argv"]
    assert payload["has_prompt"] is True
    assert payload["env"]["PIPEWRIGHT_TASK_ID"] == "T3"
    assert payload["env"]["PIPEWRIGHT_WRITE_SCOPE"].startswith("src/")


def test_build_and_build_status(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)

    async def executor(task_id: str) -> TaskOutcome:
        return TaskOutcome(True, f"built {task_id}")

    def fake_make_spawn_executor(*args: Any, **kwargs: Any) -> Any:
        return executor

    monkeypatch.setattr("pipewright.orchestrator.make_spawn_executor", fake_make_spawn_executor)
    runner = CliRunner()
    _init(runner)

    empty = runner.invoke(cli, ["build-status"])
    assert "No build has run yet." in empty.output

    missing = runner.invoke(cli, ["build"])
    assert missing.exit_code == 2

    too_early = runner.invoke(cli, ["build", "T1"])
    assert too_early.exit_code != 0
    assert "only run in the build phase" in too_early.output

    assert runner.invoke(cli, ["reset", "dev"]).exit_code == 0
    nothing = runner.invoke(cli, ["build", "--resume"])
    assert nothing.exit_code != 0
    assert "Nothing to build" in nothing.output

    build = runner.invoke(cli, ["build", "T1", "T2"])
    assert build.exit_code == 0, build.output
    assert "[task_started] T1 (attempt 1)" in build.output
    assert "Build completed: 2 completed, 0 failed, 2 attempts" in build.output
    assert "Next action: continue -> qa-implementation" in build.output

    status = runner.invoke(cli, ["build-status"])
    assert json.loads(status.output)["progress"]["completed"] == 2


def test_provider_listing_and_selection(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("pipewright.cli.is_provider_available", lambda name: name == "claude")
    runner = CliRunner()

    listing = runner.invoke(cli, ["provider"])
    assert listing.exit_code == 0
    claude_line = next(line for line in listing.output.splitlines() if line.startswith("claude"))
    assert "primary" in claude_line
    assert "installed" in claude_line

    selected = runner.invoke(cli, ["provider", "gemini"])
    assert selected.exit_code == 0
    assert "Primary provider set to gemini" in selected.output
    config = load_config(tmp_path / "pipewright.toml")
    assert config.providers.primary == "gemini"
    assert "gemini" in config.providers.enabled

    unknown = runner.invoke(cli, ["provider", "cursor"])
    assert unknown.exit_code != 0


def test_human_in_the_loop_complete_waits_for_approve(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / "pipewright.toml").write_text(
        '[gates]\nmode = "human-in-the-loop"\n', encoding="utf-8"
    )
    runner = CliRunner()
    _init(runner)
    for agent in ["greenfield-wu", "brief", "detail", "architect", "ux", "phases", "tasks"]:
        assert runner.invoke(cli, ["complete", agent]).exit_code == 0

    held = runner.invoke(cli, ["complete", "qa-planning", "--score", "99"])

    assert held.exit_code == 0, held.output
    assert "Awaiting approval: Recommend review" in held.output
    assert "Next action: wait" in held.output
    assert "Phase: plan" in held.output

    approved = runner.invoke(cli, ["approve"])
    assert approved.exit_code == 0, approved.output
    assert "Phase: build" in approved.output
