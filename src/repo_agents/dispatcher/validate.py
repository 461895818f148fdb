"""Validation gate: ordered per-agent checks before any execution."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import math
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from repo_agents.agents.types import AgentDefinition
from repo_agents.dispatcher.progress import ProgressComment, ProgressState
from repo_agents.dispatcher.types import DispatchContext, StageResult
from repo_agents.errors import GitHubError, RepoAgentsError
from repo_agents.github.client import GitHubClient
from repo_agents.ids import now_iso, parse_iso, slugify
from repo_agents.logging import log_stage

logger = logging.getLogger(__name__)

IssueType = Literal["missing_permission", "path_restriction", "rate_limit", "validation_error"]
Severity = Literal["error", "warning", "info"]

DEFAULT_PR_LABEL = "implementation-in-progress"


@dataclass(frozen=True, slots=True)
class PermissionIssue:
    issue_type: IssueType
    severity: Severity
    message: str
    context: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class ValidationStatus:
    agent_loaded: bool = False
    not_bot: bool = False
    user_authorization: bool = False
    labels_check: bool = False
    rate_limit_check: bool = False
    max_open_prs_check: bool = False
    blocking_issues_check: bool = False
    skip_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class GateResult:
    agent: AgentDefinition
    status: ValidationStatus = field(default_factory=ValidationStatus)
    issues: list[PermissionIssue] = field(default_factory=list)
    should_run: bool = False
    failed: bool = False
    flags: dict[str, bool] = field(default_factory=dict)
    target_number: int | None = None
    event_payload: str = ""
    progress: ProgressComment | None = None

    def to_stage_result(self) -> StageResult:
        outputs = {
            "agent": self.agent.name,
            "should-run": str(self.should_run).lower(),
            "bot-triggered": str(self.flags.get("bot_triggered", False)).lower(),
            "rate-limited": str(self.flags.get("rate_limited", False)).lower(),
            "pr-limited": str(self.flags.get("pr_limited", False)).lower(),
            "blocked-by-issues": str(self.flags.get("blocked_by_issues", False)).lower(),
        }
        if self.failed and self.status.skip_reason:
            outputs["error"] = self.status.skip_reason
        if self.target_number:
            outputs["target-issue-number"] = str(self.target_number)
        if self.event_payload:
            outputs["event-payload"] = self.event_payload
        if self.progress is not None and self.progress.comment_id:
            outputs["progress-comment-id"] = str(self.progress.comment_id)
            outputs["progress-issue-number"] = str(self.progress.issue_number)
        return StageResult(
            success=not self.failed,
            outputs=outputs,
            skip_reason=None if self.should_run else self.status.skip_reason,
        )

    def audit_record(self) -> dict[str, Any]:
        return {
            "timestamp": now_iso(),
            "agent": self.agent.name,
            "validation": self.status.to_dict(),
            "issues": [issue.to_dict() for issue in self.issues],
            "result": {
                "should_run": self.should_run,
                "skip_reason": self.status.skip_reason,
                **{key: value for key, value in sorted(self.flags.items())},
                "target_issue_number": self.target_number,
            },
        }


def is_bot_actor(actor: str, payload: dict[str, Any] | None = None) -> bool:
    if actor.endswith("[bot]"):
        return True
    sender = (payload or {}).get("sender")
    return isinstance(sender, dict) and sender.get("type") == "Bot"


def check_bot_actor(agent: AgentDefinition, context: DispatchContext) -> tuple[bool, str]:
    if not is_bot_actor(context.actor, context.payload):
        return True, ""
    if context.actor in agent.allowed_bots:
        return True, ""
    return False, f"Bot actor {context.actor} is not allowed to trigger {agent.name}"


async def check_authorization(
    agent: AgentDefinition, actor: str, client: GitHubClient
) -> tuple[bool, str, str]:
    """Return (authorized, reason, permission).

    Explicit allow-lists are authoritative when configured; repository
    permission decides otherwise. Read-only access is always rejected.
    """
    if actor in agent.actor_allowlist:
        return True, "", "allowlist"
    for team in agent.allowed_teams:
        if await client.is_team_member(team, actor):
            return True, "", "team"
    if agent.actor_allowlist or agent.allowed_teams:
        return False, f"User {actor} is not in the allowed users or teams", "none"

    permission = await client.get_repository_permission(actor)
    if permission in {"admin", "write"}:
        return True, "", permission
    if client.owner == actor:
        return True, "", "admin"
    if await client.is_org_member(actor):
        return False, f"User {actor} has read-only access", permission
    return False, f"User {actor} is not authorized", permission


def check_trigger_labels(agent: AgentDefinition, context: DispatchContext) -> tuple[bool, str]:
    if not agent.trigger_labels:
        return True, ""
    if context.event_name not in {"issues", "pull_request"}:
        return True, ""
    present = set(context.target_labels)
    missing = [label for label in agent.trigger_labels if label not in present]
    if missing:
        return False, f"Missing required labels: {', '.join(missing)}"
    return True, ""


async def check_rate_limit(
    agent: AgentDefinition, client: GitHubClient, *, now: datetime | None = None
) -> tuple[bool, str, str]:
    """Return (allowed, reason, last_run). Lookup failures allow the run."""
    limit = agent.rate_limit_minutes
    if limit <= 0:
        return True, "", ""
    try:
        runs = await client.recent_successful_runs(agent.workflow_file)
    except GitHubError as exc:
        logger.warning("Rate limit lookup for %s failed, allowing run: %s", agent.name, exc)
        return True, "", ""
    if not runs:
        return True, "", ""
    last_run = str(runs[0].get("created_at", ""))
    last_time = parse_iso(last_run)
    if last_time is None:
        return True, "", ""
    current = now or datetime.now(UTC)
    elapsed = (current - last_time).total_seconds() / 60
    if elapsed < limit:
        remaining = max(1, math.ceil(limit - elapsed))
        return False, f"Rate limit: {remaining} minutes remaining", last_run
    return True, "", last_run


async def check_max_open_prs(
    agent: AgentDefinition, client: GitHubClient, *, label: str = DEFAULT_PR_LABEL
) -> tuple[bool, str]:
    if agent.max_open_prs is None or "create-pr" not in agent.outputs:
        return True, ""
    try:
        count = await client.count_open_prs(label)
    except GitHubError as exc:
        logger.warning("Open PR count for %s failed, allowing run: %s", agent.name, exc)
        return True, ""
    if count >= agent.max_open_prs:
        return False, f"Max open PRs limit reached: {count}/{agent.max_open_prs}"
    return True, ""


async def check_blocking_issues(
    agent: AgentDefinition, context: DispatchContext, client: GitHubClient
) -> tuple[bool, str, list[dict[str, Any]]]:
    if not agent.pre_flight.check_blocking_issues:
        return True, "", []
    if context.issue is None or not context.issue.number:
        return True, "", []
    try:
        blockers = await client.blocked_by(context.issue.number)
    except GitHubError as exc:
        logger.warning(
            "Blocking issue lookup for #%s failed, allowing run: %s", context.issue.number, exc
        )
        return True, "", []
    open_blockers = [
        {"number": item.get("number"), "title": item.get("title", ""), "state": "open"}
        for item in blockers
        if item.get("state") == "open"
    ]
    if open_blockers:
        listing = ", ".join(f"#{item['number']}: {item['title']}" for item in open_blockers)
        return (
            False,
            f"Issue is blocked by {len(open_blockers)} open issue(s): {listing}",
            open_blockers,
        )
    return True, "", []


def encode_event_payload(payload: dict[str, Any]) -> str:
    if not payload:
        return ""
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def _skip(
    result: GateResult, reason: str, issue: PermissionIssue | None = None, **flags: bool
) -> GateResult:
    result.status.skip_reason = reason
    result.flags.update(flags)
    if issue is not None:
        result.issues.append(issue)
    logger.info("Skipping %s: %s", result.agent.name, reason)
    return result


async def _run_checks(
    result: GateResult,
    context: DispatchContext,
    client: GitHubClient,
    *,
    now: datetime | None,
    pr_label: str,
) -> GateResult:
    agent = result.agent
    status = result.status
    status.agent_loaded = True

    allowed, reason = check_bot_actor(agent, context)
    if not allowed:
        return _skip(
            result,
            reason,
            PermissionIssue(
                "validation_error",
                "warning",
                "Bot actor detected - skipping to prevent recursive loops",
                {"actor": context.actor},
            ),
            bot_triggered=True,
        )
    status.not_bot = True

    authorized, reason, permission = await check_authorization(agent, context.actor, client)
    if not authorized:
        return _skip(
            result,
            reason,
            PermissionIssue(
                "missing_permission",
                "warning",
                "User not authorized to trigger agent",
                {"user": context.actor, "permission": permission},
            ),
        )
    status.user_authorization = True

    valid, reason = check_trigger_labels(agent, context)
    if not valid:
        return _skip(
            result,
            reason,
            PermissionIssue(
                "validation_error",
                "warning",
                "Required trigger labels not present",
                {"required": list(agent.trigger_labels), "present": list(context.target_labels)},
            ),
        )
    status.labels_check = True

    allowed, reason, last_run = await check_rate_limit(agent, client, now=now)
    if not allowed:
        return _skip(
            result,
            reason,
            PermissionIssue(
                "rate_limit",
                "info",
                "Rate limit exceeded",
                {"last_run": last_run, "limit_minutes": agent.rate_limit_minutes},
            ),
            rate_limited=True,
        )
    status.rate_limit_check = True

    allowed, reason = await check_max_open_prs(agent, client, label=pr_label)
    if not allowed:
        # No recorded issue: capacity frees up on its own when PRs close
        return _skip(result, reason, pr_limited=True)
    status.max_open_prs_check = True

    allowed, reason, blockers = await check_blocking_issues(agent, context, client)
    if not allowed:
        return _skip(
            result,
            reason,
            PermissionIssue(
                "validation_error",
                "warning",
                "Issue has open blocking dependencies",
                {"blockers": blockers, "blocking_count": len(blockers)},
            ),
            blocked_by_issues=True,
        )
    status.blocking_issues_check = True

    result.should_run = True
    return result


def write_validation_audit(result: GateResult, audit_dir: str | Path) -> Path:
    target = Path(audit_dir) / "validation" / f"{slugify(result.agent.name)}.json"
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(result.audit_record(), indent=2), encoding="utf-8")
    return target


@log_stage("validation")
async def validate_agent(
    agent: AgentDefinition,
    context: DispatchContext,
    client: GitHubClient,
    *,
    audit_dir: str | Path | None = None,
    now: datetime | None = None,
    pr_label: str = DEFAULT_PR_LABEL,
    create_progress: bool = True,
) -> GateResult:
    """Run the ordered checks for one agent, short-circuiting on the first skip."""
    result = GateResult(agent=agent)
    try:
        await _run_checks(result, context, client, now=now, pr_label=pr_label)
    except RepoAgentsError as exc:
        logger.error("Validation of %s failed: %s", agent.name, exc)
        result.failed = True
        result.should_run = False
        result.status.skip_reason = f"Validation error: {exc}"
        result.issues.append(
            PermissionIssue("validation_error", "error", f"Validation error: {exc}")
        )

    if result.should_run:
        result.target_number = context.target_number
        result.event_payload = encode_event_payload(context.payload)
        if create_progress and agent.uses_progress_comment() and result.target_number:
            state = ProgressState.initial(
                agent.name, context.run_id, context.run_url, has_context=agent.context is not None
            )
            result.progress = await ProgressComment.create(client, result.target_number, state)
        logger.info("All validation checks passed for %s", agent.name)

    if audit_dir is not None:
        write_validation_audit(result, audit_dir)
    return result


async def validate_agents(
    agents: Sequence[AgentDefinition],
    context: DispatchContext,
    client: GitHubClient,
    **kwargs: Any,
) -> list[GateResult]:
    """Validate every candidate concurrently; results keep candidate order."""
    tasks = (validate_agent(agent, context, client, **kwargs) for agent in agents)
    return list(await asyncio.gather(*tasks))
