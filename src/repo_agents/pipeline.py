"""Stage orchestration for the dispatcher run and a single agent run.

Stages return ``StageResult`` values and the sequencing below decides what
runs next. A skip or failure stops the remaining agent stages; the audit
stage is always invoked afterwards.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import httpx

from repo_agents.agents.loader import load_agent, load_agents
from repo_agents.agents.types import AgentDefinition
from repo_agents.config import Settings
from repo_agents.dispatcher.preflight import Credentials, resolve_token, run_preflight
from repo_agents.dispatcher.prepare_context import build_dispatch_context, write_dispatch_context
from repo_agents.dispatcher.progress import ProgressComment
from repo_agents.dispatcher.route import route
from repo_agents.dispatcher.types import DispatchContext, RunEnvironment, StageResult
from repo_agents.dispatcher.validate import GateResult, validate_agent, validate_agents
from repo_agents.errors import DefinitionError, EventPayloadError, PreflightError, RepoAgentsError
from repo_agents.github.client import GitHubClient
from repo_agents.logging import bind_run, log_stage
from repo_agents.stages.audit import ExecutionMetrics, read_metrics, run_audit_stage
from repo_agents.stages.context import run_context_stage
from repo_agents.stages.outputs import ExecutionContext, OutputResult, run_outputs_stage

logger = logging.getLogger(__name__)

AgentStep = Callable[[AgentDefinition, DispatchContext], Awaitable[StageResult]]


@dataclass(slots=True)
class DispatchOutcome:
    preflight: StageResult
    context: DispatchContext | None = None
    gates: list[GateResult] = field(default_factory=list)
    load_errors: list[DefinitionError] = field(default_factory=list)
    error: str | None = None

    def to_stage_result(self) -> StageResult:
        if not self.preflight.success:
            return self.preflight
        if self.error:
            return StageResult.failure(self.error)
        to_run = [gate.agent.name for gate in self.gates if gate.should_run]
        outputs = {
            **self.preflight.outputs,
            "agents-to-run": json.dumps(to_run),
            "candidates": json.dumps([gate.agent.name for gate in self.gates]),
            "agent-results": json.dumps(
                {gate.agent.name: gate.to_stage_result().to_dict() for gate in self.gates}
            ),
            "invalid-definitions": json.dumps(
                [error.path or str(error) for error in self.load_errors]
            ),
        }
        if self.context is not None:
            outputs["dispatch-id"] = self.context.dispatch_id
        failed = [gate.agent.name for gate in self.gates if gate.failed]
        if failed:
            error = f"Validation errored for {', '.join(failed)}"
            return StageResult(success=False, outputs={**outputs, "error": error})
        if not to_run:
            return StageResult.skip("No agents to run", **outputs)
        return StageResult(success=True, outputs=outputs)


@dataclass(slots=True)
class AgentRun:
    agent_name: str
    stages: dict[str, StageResult | str] = field(default_factory=dict)
    output_results: list[OutputResult] = field(default_factory=list)
    audit: StageResult | None = None

    def to_stage_result(self) -> StageResult:
        outputs: dict[str, str] = {"agent": self.agent_name}
        for name, result in self.stages.items():
            outputs[f"{name}-status"] = result if isinstance(result, str) else result.status
        if self.audit is not None:
            outputs.update({f"audit-{key}": value for key, value in self.audit.outputs.items()})
        for result in self.stages.values():
            if isinstance(result, str):
                if result == "cancelled":
                    return StageResult.failure("Run was cancelled", **outputs)
                continue
            if not result.success:
                return StageResult.failure(result.outputs.get("error", "stage failed"), **outputs)
            if result.skip_reason:
                return StageResult.skip(result.skip_reason, **outputs)
        return StageResult(success=True, outputs=outputs)


def github_client(
    settings: Settings, token: str, *, transport: httpx.AsyncBaseTransport | None = None
) -> GitHubClient:
    return GitHubClient(
        token,
        settings.github_repository,
        base_url=settings.github_api_base_url,
        timeout=settings.http_timeout_seconds,
        transport=transport,
    )


async def preflight_stage(
    settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None
) -> tuple[StageResult, Credentials | None]:
    try:
        credentials = await run_preflight(settings, settings.github_repository, transport=transport)
    except PreflightError as exc:
        return StageResult.failure(str(exc), **{"should-continue": "false"}), None
    return StageResult(success=True, outputs=credentials.outputs()), credentials


async def token_stage(
    settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None
) -> tuple[StageResult, Credentials | None]:
    """Token-only credentials for single-stage commands; no repository writes."""
    try:
        credentials = await resolve_token(settings, settings.github_repository, transport=transport)
    except PreflightError as exc:
        return StageResult.failure(str(exc)), None
    return StageResult(success=True, outputs=credentials.outputs()), credentials


async def dispatch(
    settings: Settings,
    *,
    event_source: str | Path | dict[str, Any] | None = None,
    selector: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    now: datetime | None = None,
) -> DispatchOutcome:
    """Preflight, normalize, discover, route and validate for one event."""
    env = RunEnvironment.from_settings(settings)
    preflight, credentials = await preflight_stage(settings, transport=transport)
    outcome = DispatchOutcome(preflight=preflight)
    if credentials is None:
        return outcome

    try:
        context = build_dispatch_context(env, event_source)
    except EventPayloadError as exc:
        outcome.error = str(exc)
        return outcome
    outcome.context = context
    bind_run(dispatch_id=context.dispatch_id)
    write_dispatch_context(context, settings.dispatch_context_path)

    loaded = load_agents(Path(settings.agents_dir))
    outcome.load_errors = loaded.errors
    logger.info("Discovered %d agent(s), %d invalid", len(loaded.agents), len(loaded.errors))

    async with github_client(settings, credentials.token, transport=transport) as client:
        candidates = await route(
            context,
            loaded.agents,
            client=client,
            selector=selector if selector is not None else env.workflow_dispatch_agent,
        )
        outcome.gates = await validate_agents(
            candidates,
            context,
            client,
            audit_dir=settings.audit_dir,
            now=now,
            pr_label=settings.max_open_prs_label,
            create_progress=False,
        )
    return outcome


def metrics_agent_step(metrics_path: str | Path | None) -> AgentStep:
    """Agent step backed by the metrics file the external AI step leaves behind."""

    async def step(agent: AgentDefinition, context: DispatchContext) -> StageResult:
        metrics: ExecutionMetrics | None = read_metrics(metrics_path)
        if metrics is None:
            return StageResult.skip("No execution metrics found")
        if metrics.is_error:
            return StageResult.failure(
                metrics.result or "AI execution returned an error",
                **{"session-id": metrics.session_id or ""},
            )
        return StageResult(
            success=True,
            outputs={
                "session-id": metrics.session_id or "",
                "num-turns": str(metrics.num_turns),
                "total-cost-usd": str(metrics.total_cost_usd),
            },
        )

    return step


def execution_context(
    settings: Settings,
    client: GitHubClient,
    agent: AgentDefinition,
    context: DispatchContext,
    credentials: Credentials | None = None,
) -> ExecutionContext:
    identity = credentials or Credentials(token="")
    return ExecutionContext(
        client=client,
        agent=agent,
        issue_number=context.issue.number if context.issue else None,
        pr_number=context.pull_request.number if context.pull_request else None,
        server_url=settings.github_server_url.rstrip("/"),
        run_id=settings.github_run_id,
        run_number=settings.github_run_number,
        workflow=settings.github_workflow,
        git_user=identity.git_user,
        git_email=identity.git_email,
    )


def _progress_status(result: StageResult) -> str:
    if not result.success:
        return "failed"
    return "skipped" if result.skip_reason else "success"


async def _track(
    progress: ProgressComment | None, stage: str, result: StageResult
) -> None:
    if progress is None:
        return
    await progress.update(stage, _progress_status(result), result.outputs.get("error"))
    if result.skipped:
        name = progress.state.agent_name
        await progress.finalize(f"⏭️ Agent **{name}** skipped: {result.skip_reason}")


async def _agent_stages(
    run: AgentRun,
    agent: AgentDefinition,
    context: DispatchContext,
    client: GitHubClient,
    settings: Settings,
    *,
    credentials: Credentials,
    agent_step: AgentStep,
    now: datetime | None,
) -> None:
    gate = await validate_agent(
        agent,
        context,
        client,
        audit_dir=settings.audit_dir,
        now=now,
        pr_label=settings.max_open_prs_label,
    )
    run.stages["validation"] = gate.to_stage_result()
    if not gate.should_run:
        return
    progress = gate.progress

    if agent.context is not None:
        if progress is not None:
            await progress.update("context", "running")
        result = await run_context_stage(agent, client, context_path=settings.context_path, now=now)
        run.stages["context"] = result
        await _track(progress, "context", result)
        if not result.success or result.skipped:
            return

    if progress is not None:
        await progress.update("agent", "running")
    try:
        result = await log_stage("agent")(agent_step)(agent, context)
    except RepoAgentsError as exc:
        result = StageResult.failure(str(exc))
    run.stages["agent"] = result
    await _track(progress, "agent", result)
    if not result.success or result.skipped:
        return

    if progress is not None:
        await progress.update("outputs", "running")
    result, run.output_results = await run_outputs_stage(
        execution_context(settings, client, agent, context, credentials),
        outputs_dir=settings.outputs_dir,
        audit_dir=settings.audit_dir,
        validation_errors_dir=settings.validation_errors_dir,
    )
    run.stages["outputs"] = result
    await _track(progress, "outputs", result)


def _mark_interrupted(run: AgentRun, agent: AgentDefinition, outcome: StageResult | str) -> None:
    """Record ``outcome`` on the first stage that had not finished."""
    order = ["validation", "context", "agent", "outputs"]
    if agent.context is None:
        order.remove("context")
    pending = [name for name in order if name not in run.stages]
    if pending:
        run.stages[pending[0]] = outcome


async def run_agent(
    settings: Settings,
    agent_path: str | Path,
    *,
    event_source: str | Path | dict[str, Any] | None = None,
    agent_step: AgentStep | None = None,
    metrics_path: str | Path | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    now: datetime | None = None,
) -> AgentRun:
    """Validate, collect context, run the agent step and apply outputs; then audit.

    Cancellation and unexpected errors propagate after the audit records
    which stage was cut short; no further stage starts.
    """
    env = RunEnvironment.from_settings(settings)
    metrics_file = metrics_path or settings.metrics_path
    step = agent_step or metrics_agent_step(metrics_file)
    run = AgentRun(agent_name=Path(agent_path).stem)
    audit_kwargs: dict[str, Any] = {
        "audit_dir": settings.audit_dir,
        "metrics_path": metrics_file,
        "agent_path": str(agent_path),
        "workflow_name": settings.github_workflow,
        "run_number": settings.github_run_number,
    }

    try:
        agent = load_agent(Path(agent_path))
    except DefinitionError as exc:
        logger.error("Failed to load agent definition %s: %s", agent_path, exc)
        run.stages["validation"] = StageResult.failure(f"Invalid agent definition: {exc}")
        run.audit = await run_audit_stage(
            None, env, run.stages, agent_name=run.agent_name, load_error=str(exc), **audit_kwargs
        )
        return run
    run.agent_name = agent.name
    bind_run(agent=agent.name)

    preflight, credentials = await preflight_stage(settings, transport=transport)
    run.stages["preflight"] = preflight
    if credentials is None:
        run.audit = await run_audit_stage(agent, env, run.stages, **audit_kwargs)
        return run

    try:
        context = build_dispatch_context(env, event_source)
    except EventPayloadError as exc:
        run.stages["validation"] = StageResult.failure(str(exc))
        run.audit = await run_audit_stage(agent, env, run.stages, **audit_kwargs)
        return run
    bind_run(dispatch_id=context.dispatch_id)

    async with github_client(settings, credentials.token, transport=transport) as client:
        try:
            await _agent_stages(
                run,
                agent,
                context,
                client,
                settings,
                credentials=credentials,
                agent_step=step,
                now=now,
            )
        except asyncio.CancelledError:
            _mark_interrupted(run, agent, "cancelled")
            logger.warning("Run of %s cancelled", agent.name)
            # Only local files are written; no new external calls after cancellation
            run.audit = await run_audit_stage(agent, env, run.stages, **audit_kwargs)
            raise
        except Exception as exc:
            _mark_interrupted(run, agent, StageResult.failure(f"Unexpected error: {exc}"))
            logger.exception("Run of %s aborted", agent.name)
            run.audit = await run_audit_stage(
                agent, env, run.stages, client=client, **audit_kwargs
            )
            raise
        run.audit = await run_audit_stage(agent, env, run.stages, client=client, **audit_kwargs)
    return run
