"""Click CLI group: dispatch, run, and the individual pipeline stages.

Every command prints one JSON stage result on stdout and exits non-zero
only on failure; skips exit 0.
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path

import click

from repo_agents.agents.loader import load_agent, load_agents
from repo_agents.agents.types import AgentDefinition
from repo_agents.config import Settings, get_settings, validate_settings_for_env
from repo_agents.dispatcher.preflight import Credentials
from repo_agents.dispatcher.prepare_context import build_dispatch_context
from repo_agents.dispatcher.types import RunEnvironment, StageResult
from repo_agents.errors import ConfigError, DefinitionError, EventPayloadError
from repo_agents.github.client import GitHubClient
from repo_agents.logging import configure_logging
from repo_agents.pipeline import dispatch as run_dispatch
from repo_agents.pipeline import execution_context, github_client, run_agent, token_stage
from repo_agents.stages.audit import STAGE_NAMES, run_audit_stage
from repo_agents.stages.context import run_context_stage
from repo_agents.stages.outputs.executor import run_outputs_stage

agent_path_option = click.option(
    "--agent-path",
    type=click.Path(exists=True, dir_okay=False, path_type=str),
    required=True,
    help="Agent definition markdown file.",
)
agents_dir_option = click.option(
    "--agents-dir",
    type=click.Path(file_okay=False, path_type=str),
    default=None,
    help="Agent definitions directory (default: AGENTS_DIR).",
)
event_path_option = click.option(
    "--event-path",
    type=click.Path(dir_okay=False, path_type=str),
    default=None,
    help="Event payload JSON file (default: GITHUB_EVENT_PATH).",
)
metrics_path_option = click.option(
    "--metrics-path",
    type=click.Path(dir_okay=False, path_type=str),
    default=None,
    help="AI execution metrics file (default: METRICS_PATH).",
)


def _emit(result: StageResult) -> None:
    click.echo(json.dumps(result.to_dict(), indent=2))
    if not result.success:
        sys.exit(1)


def _load_settings(**overrides: object) -> Settings:
    settings = get_settings()
    updates = {key: value for key, value in overrides.items() if value is not None}
    if updates:
        settings = settings.model_copy(update=updates)
    configure_logging(settings.log_level, settings.log_format)
    try:
        validate_settings_for_env(settings)
    except ConfigError as exc:
        _emit(StageResult.failure(str(exc)))
    return settings


def _load_agent_or_exit(agent_path: str) -> AgentDefinition:
    try:
        return load_agent(Path(agent_path))
    except DefinitionError as exc:
        _emit(StageResult.failure(f"Invalid agent definition: {exc}", path=exc.path))
        raise


async def _with_client(
    settings: Settings, action: Callable[[GitHubClient, Credentials], Awaitable[StageResult]]
) -> StageResult:
    resolved, credentials = await token_stage(settings)
    if credentials is None:
        return resolved
    async with github_client(settings, credentials.token) as client:
        return await action(client, credentials)


@click.group()
def cli() -> None:
    """Repo agents dispatch and execution pipeline."""


@cli.command()
@agents_dir_option
@event_path_option
@click.option("--agent", "selector", type=str, default=None, help="Run only this agent.")
def dispatch(agents_dir: str | None, event_path: str | None, selector: str | None) -> None:
    """Route the triggering event and validate every matching agent."""
    settings = _load_settings(agents_dir=agents_dir, github_event_path=event_path)
    outcome = asyncio.run(run_dispatch(settings, selector=selector))
    _emit(outcome.to_stage_result())


@cli.command()
@agent_path_option
@event_path_option
@metrics_path_option
def run(agent_path: str, event_path: str | None, metrics_path: str | None) -> None:
    """Run one agent end to end: validation, context, outputs, audit."""
    settings = _load_settings(github_event_path=event_path, metrics_path=metrics_path)
    result = asyncio.run(run_agent(settings, agent_path))
    _emit(result.to_stage_result())


@cli.command()
@agent_path_option
def context(agent_path: str) -> None:
    """Collect repository context for an agent."""
    settings = _load_settings()
    agent = _load_agent_or_exit(agent_path)

    async def action(client: GitHubClient, _: Credentials) -> StageResult:
        return await run_context_stage(agent, client, context_path=settings.context_path)

    _emit(asyncio.run(_with_client(settings, action)))


@cli.command()
@agent_path_option
@event_path_option
@click.option("--output-type", type=str, default=None, help="Process only this output type.")
def outputs(agent_path: str, event_path: str | None, output_type: str | None) -> None:
    """Validate and apply the agent's output-intent files."""
    settings = _load_settings(github_event_path=event_path)
    agent = _load_agent_or_exit(agent_path)
    try:
        dispatch_context = build_dispatch_context(RunEnvironment.from_settings(settings))
    except EventPayloadError as exc:
        _emit(StageResult.failure(str(exc)))
        return

    async def action(client: GitHubClient, credentials: Credentials) -> StageResult:
        result, _ = await run_outputs_stage(
            execution_context(settings, client, agent, dispatch_context, credentials),
            outputs_dir=settings.outputs_dir,
            audit_dir=settings.audit_dir,
            validation_errors_dir=settings.validation_errors_dir,
            output_type=output_type,
        )
        return result

    _emit(asyncio.run(_with_client(settings, action)))


def _parse_stage_statuses(entries: tuple[str, ...]) -> dict[str, StageResult | str]:
    statuses: dict[str, StageResult | str] = {}
    for entry in entries:
        name, _, status = entry.partition("=")
        if name not in STAGE_NAMES or not status:
            raise click.BadParameter(
                f"expected NAME=STATUS with NAME in {', '.join(STAGE_NAMES)}", param_hint="--stage"
            )
        statuses[name] = status
    return statuses


@cli.command()
@click.option("--agent-path", type=click.Path(path_type=str), required=True)
@metrics_path_option
@click.option(
    "--stage",
    "stages",
    multiple=True,
    help="Upstream stage status as NAME=STATUS, e.g. agent=failure. Repeatable.",
)
def audit(agent_path: str, metrics_path: str | None, stages: tuple[str, ...]) -> None:
    """Write the audit manifest and file a tracking issue on failure."""
    settings = _load_settings(metrics_path=metrics_path)
    statuses = _parse_stage_statuses(stages)
    agent: AgentDefinition | None = None
    load_error: str | None = None
    try:
        agent = load_agent(Path(agent_path))
    except DefinitionError as exc:
        load_error = str(exc)
    env = RunEnvironment.from_settings(settings)

    async def action(client: GitHubClient | None) -> StageResult:
        return await run_audit_stage(
            agent,
            env,
            statuses,
            audit_dir=settings.audit_dir,
            metrics_path=settings.metrics_path,
            client=client,
            agent_name=Path(agent_path).stem,
            agent_path=agent_path,
            load_error=load_error,
            workflow_name=settings.github_workflow,
            run_number=settings.github_run_number,
        )

    async def main() -> StageResult:
        _, credentials = await token_stage(settings)
        if credentials is None:
            # Record the run even when no token is available for issue filing
            return await action(None)
        async with github_client(settings, credentials.token) as client:
            return await action(client)

    _emit(asyncio.run(main()))


@cli.command()
@agents_dir_option
def validate(agents_dir: str | None) -> None:
    """Check every agent definition and report the invalid ones."""
    settings = _load_settings(agents_dir=agents_dir)
    loaded = load_agents(Path(settings.agents_dir))
    invalid = [
        {"path": error.path, "errors": error.errors or [str(error)]} for error in loaded.errors
    ]
    outputs = {
        "valid": json.dumps([agent.name for agent in loaded.agents]),
        "invalid": json.dumps(invalid),
    }
    if loaded.errors:
        _emit(StageResult.failure(f"{len(loaded.errors)} invalid agent definition(s)", **outputs))
    else:
        _emit(StageResult(success=True, outputs=outputs))


if __name__ == "__main__":
    cli()
