from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import click

from pipewright import __version__
from pipewright.agents import Agent
from pipewright.autonomy.build_loop import get_build_status
from pipewright.config import CONFIG_FILENAME, load_config, save_config
from pipewright.orchestrator import PipelineSession
from pipewright.pipeline import PipelineError, PipelineTransition, PreviewDecision
from pipewright.preview import (
    PreviewError,
    detect_dev_command,
    detect_project_type,
    find_available_port,
    launch_preview,
)
from pipewright.providers import (
    ProviderError,
    all_providers,
    get_provider,
    is_provider_available,
)
from pipewright.state.store import StateStoreError
from pipewright.terminal.spawner import (
    SpawnError,
    build_spawn_command,
    spawn_terminal,
    wait_for_terminal,
)

CLI_ERRORS = (
    PipelineError,
    SpawnError,
    ProviderError,
    StateStoreError,
    PreviewError,
)
AGENT_CHOICE = click.Choice([agent.value for agent in Agent])
config_option = click.option(
    "--config", "config_value", default=CONFIG_FILENAME, show_default=True
)


def _resolve_config_path(project_dir: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = project_dir / config_path
    return config_path.resolve()


def _load_session(config_value: str) -> PipelineSession:
    project_dir = Path.cwd().resolve()
    config = load_config(_resolve_config_path(project_dir, config_value))
    return PipelineSession(project_dir, config=config)


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _echo_transition(transition: PipelineTransition) -> None:
    line = f"Next action: {transition.next_action.value}"
    if transition.next_agent is not None:
        line += f" -> {transition.next_agent.value}"
    click.echo(line)
    click.echo(f"Phase: {transition.state.phase.value}")
    if transition.needs_mode_switch:
        click.echo("Mode switch required.")
    if transition.preview_context:
        click.echo(f"Preview ready (QA score {transition.preview_context.get('qa_score')}).")
    if transition.server_action:
        click.echo(f"Preview server: {transition.server_action}")


def _echo_progress(event: dict[str, Any]) -> None:
    kind = event.get("type", "event")
    task_id = event.get("task_id", "")
    if kind == "task_started":
        click.echo(f"[{kind}] {task_id} (attempt {event.get('attempt')})")
    elif kind == "task_failed":
        click.echo(f"[{kind}] {task_id}: {event.get('error', '')}")
    else:
        click.echo(f"[{kind}] {task_id}".rstrip())


@click.group()
@click.version_option(__version__, prog_name="pipewright")
@click.option("-v", "--verbose", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Phase-gated multi-agent pipeline orchestrator."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--greenfield/--brownfield", "greenfield", default=None)
@click.option("--provider", "provider_name", default=None)
@click.option("--force", is_flag=True, default=False)
@config_option
def init_command(
    greenfield: bool | None, provider_name: str | None, force: bool, config_value: str
) -> None:
    project_dir = Path.cwd().resolve()
    config_path = _resolve_config_path(project_dir, config_value)
    config = load_config(config_path)
    if greenfield is None:
        detection = detect_project_type(project_dir)
        greenfield = detection.suggestion == "greenfield"
        click.echo(f"Detected {detection.suggestion} project ({detection.confidence} confidence)")
    config.project.greenfield = greenfield
    if not config_path.exists():
        config.project.name = project_dir.name
    if provider_name:
        try:
            get_provider(provider_name)
        except ProviderError as exc:
            raise click.ClickException(str(exc)) from exc
        config.providers.primary = provider_name  # type: ignore[assignment]
        if provider_name not in config.providers.enabled:
            config.providers.enabled.append(provider_name)
    save_config(config_path, config)

    session = PipelineSession(project_dir, config=config)
    try:
        state = session.initialize(greenfield, force=force)
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Initialized pipewright in {project_dir}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Agents: {', '.join(agent.value for agent in state.roster)}")


@cli.command("status")
@config_option
def status_command(config_value: str) -> None:
    session = _load_session(config_value)
    try:
        payload = session.status()
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(payload)


@cli.command("start")
@click.argument("agent", type=AGENT_CHOICE)
@config_option
def start_command(agent: str, config_value: str) -> None:
    session = _load_session(config_value)
    try:
        session.start_agent(agent)
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"{agent} in progress.")


@cli.command("complete")
@click.argument("agent", type=AGENT_CHOICE)
@click.option("--score", type=click.FloatRange(0, 100), default=None)
@click.option("--evaluate", is_flag=True, default=False, help="Score with the agent's gate.")
@config_option
def complete_command(agent: str, score: float | None, evaluate: bool, config_value: str) -> None:
    session = _load_session(config_value)
    try:
        transition = session.complete_agent(agent, score, evaluate=evaluate)
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    if transition.state.pending_gate:
        click.echo(f"Awaiting approval: {transition.state.pending_gate.get('recommendation')}")
    _echo_transition(transition)


@cli.command("approve")
@config_option
def approve_command(config_value: str) -> None:
    session = _load_session(config_value)
    try:
        transition = session.approve_gate()
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_transition(transition)


@cli.command("preview")
@click.argument("decision", type=click.Choice([item.value for item in PreviewDecision]))
@config_option
def preview_command(decision: str, config_value: str) -> None:
    session = _load_session(config_value)
    try:
        transition = session.confirm_preview(decision)
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_transition(transition)


@cli.command("serve")
@click.option("--port", type=int, default=None)
@click.option("--no-browser", is_flag=True, default=False)
@config_option
def serve_command(port: int | None, no_browser: bool, config_value: str) -> None:
    """Start the project's dev server for a preview and keep it running."""
    project_dir = Path.cwd().resolve()
    config = load_config(_resolve_config_path(project_dir, config_value))
    dev_command = detect_dev_command(project_dir)
    if dev_command is None:
        raise click.ClickException("No dev server command detected for this project.")

    async def _serve() -> None:
        chosen = port or await find_available_port(
            config.preview.start_port, config.preview.max_port_attempts
        )
        server = await launch_preview(
            project_dir,
            dev_command.command,
            dev_command.args,
            chosen,
            framework=dev_command.framework,
            open_in_browser=config.preview.open_browser and not no_browser,
            timeout=config.preview.health_timeout_seconds,
        )
        click.echo(f"Preview running at {server.url} ({dev_command.description})")
        try:
            await server.process.wait()
        finally:
            await server.kill(config.terminal.kill_grace_seconds)

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        click.echo("Preview stopped.")
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command("reset")
@click.argument("agent", type=AGENT_CHOICE)
@config_option
def reset_command(agent: str, config_value: str) -> None:
    session = _load_session(config_value)
    try:
        state = session.reset_to(agent)
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Reset to {agent} (phase {state.phase.value}).")


@cli.command("spawn")
@click.argument("agent", type=AGENT_CHOICE)
@click.argument("task_id")
@click.option("--prompt", default=None)
@click.option("--model", default=None, help="Model tier or full model id.")
@click.option("--provider", "provider_name", default=None)
@click.option("--dry-run", is_flag=True, default=False)
@config_option
def spawn_command(
    agent: str,
    task_id: str,
    prompt: str | None,
    model: str | None,
    provider_name: str | None,
    dry_run: bool,
    config_value: str,
) -> None:
    session = _load_session(config_value)
    spawn_config = session.spawn_config_for(agent, task_id, prompt=prompt)
    if model:
        spawn_config.model = model
    if provider_name:
        spawn_config.provider = provider_name

    if dry_run:
        try:
            command = build_spawn_command(spawn_config)
        except CLI_ERRORS as exc:
            raise click.ClickException(str(exc)) from exc
        isolation = {
            key: value for key, value in command.env.items() if key.startswith("PIPEWRIGHT_")
        }
        _echo_json(
            {
                "terminal_id": command.terminal_id,
                "argv": command.argv,
                "env": isolation,
                "has_prompt": command.prompt is not None,
            }
        )
        return

    async def _run() -> int | None:
        handle = await spawn_terminal(spawn_config, cwd=session.project_dir)
        click.echo(f"Spawned {handle.id}")
        output = await wait_for_terminal(
            handle, grace_seconds=session.config.terminal.kill_grace_seconds
        )
        if output.stdout:
            click.echo(output.stdout.rstrip())
        if output.stderr:
            click.echo(output.stderr.rstrip(), err=True)
        return output.exit_code

    try:
        exit_code = asyncio.run(_run())
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    if exit_code:
        raise click.ClickException(f"Agent exited with code {exit_code}")


@cli.command("build")
@click.argument("task_ids", nargs=-1)
@click.option("--resume", is_flag=True, default=False)
@config_option
def build_command(task_ids: tuple[str, ...], resume: bool, config_value: str) -> None:
    if not task_ids and not resume:
        raise click.UsageError("Provide task ids or --resume.")
    session = _load_session(config_value)
    try:
        result, transition = asyncio.run(
            session.run_build(list(task_ids), resume=resume, on_progress=_echo_progress)
        )
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(
        f"Build {result.status.value}: {result.completed} completed, {result.failed} failed, "
        f"{result.total_attempts} attempts in {result.duration}"
    )
    if transition is not None:
        _echo_transition(transition)


@cli.command("build-status")
@config_option
def build_status_command(config_value: str) -> None:
    session = _load_session(config_value)
    payload = get_build_status(session.project_dir, store=session.store)
    if payload is None:
        click.echo("No build has run yet.")
        return
    _echo_json(payload)


@cli.command("provider")
@click.argument("provider_name", required=False)
@config_option
def provider_command(provider_name: str | None, config_value: str) -> None:
    project_dir = Path.cwd().resolve()
    config_path = _resolve_config_path(project_dir, config_value)
    config = load_config(config_path)

    if provider_name is None:
        for name, provider in all_providers().items():
            flags = []
            if name == config.providers.primary:
                flags.append("primary")
            if name in config.providers.enabled:
                flags.append("enabled")
            flags.append("installed" if is_provider_available(name) else "not installed")
            click.echo(f"{name:<8} {provider.command:<8} {', '.join(flags)}")
        return

    try:
        get_provider(provider_name)
    except ProviderError as exc:
        raise click.ClickException(str(exc)) from exc
    config.providers.primary = provider_name  # type: ignore[assignment]
    if provider_name not in config.providers.enabled:
        config.providers.enabled.append(provider_name)
    save_config(config_path, config)
    click.echo(f"Primary provider set to {provider_name}")
