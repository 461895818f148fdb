"""Audit reporter: one manifest per agent run, and a tracking issue on failure.

The reporter reads what earlier stages left behind (validation record,
execution metrics, output results) plus the stage statuses it is handed,
derives a severity, and writes ``manifest.json`` and ``report.md`` to the
audit directory. It never fails the run.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Literal

from repo_agents.agents.types import AgentDefinition, AuditConfig
from repo_agents.dispatcher.types import RunEnvironment, StageResult
from repo_agents.errors import GitHubError, RepoAgentsError
from repo_agents.github.client import GitHubClient
from repo_agents.ids import new_id, now_iso, slugify
from repo_agents.logging import log_stage
from repo_agents.stages.outputs.base import OutputResult
from repo_agents.stages.outputs.executor import read_output_results

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0.0"
SEVERITY_ORDER = ("none", "warning", "error", "critical")
ISSUE_SEVERITIES = ("error", "critical")
STAGE_NAMES = ("preflight", "validation", "context", "agent", "outputs")
SKIP_CATEGORIES = {"context": "context", "agent": "execution", "outputs": "output"}

Severity = Literal["none", "warning", "error", "critical"]

REMEDIATION = {
    "definition": "Fix the agent definition frontmatter; `repo-agents validate` lists every error.",
    "preflight": (
        "Add an ANTHROPIC_API_KEY or CLAUDE_CODE_OAUTH_TOKEN secret and make sure a GitHub token "
        "(GH_APP_ID/GH_APP_PRIVATE_KEY, FALLBACK_TOKEN or GITHUB_TOKEN) is available."
    ),
    "validation": (
        "Check the token's repository permissions and the GitHub API status, then re-run."
    ),
    "context": "Check GitHub API availability and that the token can read the requested resources.",
    "execution": (
        "Check the agent job log and the execution metrics for the error the AI step returned."
    ),
    "output": (
        "Review the output errors below; adjust the agent instructions, its `outputs` limits or "
        "its `allowed-paths`."
    ),
    "cancelled": "Re-run the workflow if the cancellation was not intentional.",
}


@dataclass(slots=True)
class ExecutionMetrics:
    total_cost_usd: float = 0.0
    num_turns: int = 0
    duration_ms: int = 0
    duration_api_ms: int = 0
    session_id: str | None = None
    is_error: bool = False
    result: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionMetrics:
        return cls(
            total_cost_usd=float(data.get("total_cost_usd") or 0),
            num_turns=int(data.get("num_turns") or 0),
            duration_ms=int(data.get("duration_ms") or 0),
            duration_api_ms=int(data.get("duration_api_ms") or 0),
            session_id=data.get("session_id"),
            is_error=bool(data.get("is_error", False)),
            result=data.get("result") if isinstance(data.get("result"), str) else None,
        )


@dataclass(frozen=True, slots=True)
class FailureReason:
    category: str
    message: str
    severity: Severity
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class AuditIssue:
    id: str
    type: str
    severity: str
    message: str
    timestamp: str
    context: dict[str, Any] = field(default_factory=dict)
    remediation: str | None = None


@dataclass(slots=True)
class FailureSummary:
    reasons: list[FailureReason] = field(default_factory=list)

    @property
    def severity(self) -> Severity:
        return max_severity(reason.severity for reason in self.reasons)

    @property
    def has_failures(self) -> bool:
        return self.severity in ISSUE_SEVERITIES

    def to_dict(self) -> dict[str, Any]:
        return {
            "has_failures": self.has_failures,
            "failure_count": len(self.reasons),
            "severity": self.severity,
            "reasons": [asdict(reason) for reason in self.reasons],
        }


@dataclass(slots=True)
class Diagnosis:
    root_cause: str
    remediation: str
    failing_stages: list[str] = field(default_factory=list)
    details: list[str] = field(default_factory=list)


@dataclass(slots=True)
class AuditManifest:
    audit_id: str
    generated_at: str
    metadata: dict[str, Any]
    validation: dict[str, Any]
    execution: dict[str, Any]
    outputs: dict[str, Any]
    failures: FailureSummary
    issues: list[AuditIssue] = field(default_factory=list)
    stages: dict[str, str] = field(default_factory=dict)
    diagnosis: Diagnosis | None = None
    schema_version: str = SCHEMA_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "audit_id": self.audit_id,
            "generated_at": self.generated_at,
            "metadata": self.metadata,
            "stages": dict(self.stages),
            "validation": self.validation,
            "execution": self.execution,
            "outputs": self.outputs,
            "failures": self.failures.to_dict(),
            "issues": [asdict(issue) for issue in self.issues],
            "diagnosis": asdict(self.diagnosis) if self.diagnosis else None,
        }


def max_severity(severities: Any) -> Severity:
    highest = 0
    for severity in severities:
        if severity in SEVERITY_ORDER:
            highest = max(highest, SEVERITY_ORDER.index(severity))
    return SEVERITY_ORDER[highest]  # type: ignore[return-value]


def _read_json(path: Path) -> Any:
    if not path.is_file():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("Could not read %s: %s", path, exc)
        return None


def read_metrics(path: str | Path | None) -> ExecutionMetrics | None:
    if not path:
        return None
    data = _read_json(Path(path))
    return ExecutionMetrics.from_dict(data) if isinstance(data, dict) else None


def read_validation_record(audit_dir: str | Path, agent_name: str) -> dict[str, Any] | None:
    data = _read_json(Path(audit_dir) / "validation" / f"{slugify(agent_name)}.json")
    return data if isinstance(data, dict) else None


def stage_statuses(results: dict[str, StageResult | str]) -> dict[str, str]:
    """Normalize stage results to status strings; stages never started are ``not_run``."""
    statuses = {name: "not_run" for name in STAGE_NAMES}
    for name, result in results.items():
        statuses[name] = result if isinstance(result, str) else result.status
    return statuses


def is_rate_limited(validation: dict[str, Any] | None) -> bool:
    return bool(validation and (validation.get("result") or {}).get("rate_limited"))


def detect_failures(
    statuses: dict[str, str],
    *,
    metrics: ExecutionMetrics | None,
    output_results: list[OutputResult],
    validation: dict[str, Any] | None,
    load_error: str | None = None,
    messages: dict[str, str] | None = None,
) -> FailureSummary:
    summary = FailureSummary()
    reasons = summary.reasons
    if load_error:
        reasons.append(
            FailureReason(
                "definition", f"Agent definition could not be loaded: {load_error}", "critical"
            )
        )
    if is_rate_limited(validation):
        reasons.append(FailureReason("validation", "Run was rate-limited", "none"))
        return summary

    if statuses.get("preflight") == "failure":
        reasons.append(FailureReason("preflight", "Preflight authentication failed", "critical"))
    if statuses.get("validation") == "failure":
        reasons.append(FailureReason("validation", "Validation checks errored", "error"))
    elif statuses.get("validation") == "skipped" and validation:
        skip_reason = (validation.get("result") or {}).get("skip_reason") or "Validation skipped"
        reasons.append(FailureReason("validation", str(skip_reason), "none"))
    if statuses.get("context") == "failure":
        reasons.append(FailureReason("context", "Context collection failed", "error"))
    for name, category in SKIP_CATEGORIES.items():
        if statuses.get(name) == "skipped":
            message = (messages or {}).get(name) or f"{name.capitalize()} stage skipped"
            reasons.append(FailureReason(category, message, "none"))

    agent_status = statuses.get("agent")
    if agent_status == "failure":
        reasons.append(FailureReason("execution", "Agent job failed", "error"))
    elif agent_status == "cancelled":
        reasons.append(FailureReason("cancelled", "Agent job was cancelled", "warning"))
    if metrics is not None and metrics.is_error:
        reasons.append(FailureReason("execution", "AI execution returned an error", "error"))

    failed_outputs = [result for result in output_results if not result.execution_succeeded]
    if failed_outputs:
        reasons.append(
            FailureReason(
                "output",
                f"{len(failed_outputs)} output(s) failed",
                "error",
                {"failed_outputs": [result.filename for result in failed_outputs]},
            )
        )
    elif statuses.get("outputs") == "failure":
        reasons.append(FailureReason("output", "Output execution failed", "error"))
    return summary


def stage_messages(results: dict[str, StageResult | str]) -> dict[str, str]:
    """Skip reason or error text per stage, where the stage left one."""
    messages: dict[str, str] = {}
    for name, result in results.items():
        if isinstance(result, str):
            continue
        message = result.skip_reason or result.outputs.get("error")
        if message:
            messages[name] = message
    return messages


def _stage_issue(name: str, status: str, message: str | None, timestamp: str) -> AuditIssue:
    if status == "cancelled":
        severity, issue_type = "warning", "cancelled"
        remediation = REMEDIATION["cancelled"]
    elif status == "skipped":
        severity, issue_type, remediation = "info", f"{name}_skipped", None
    else:
        severity = "critical" if name == "preflight" else "error"
        issue_type = f"{name}_failure"
        remediation = REMEDIATION.get(name, REMEDIATION["execution"])
    return AuditIssue(
        id=new_id("iss"),
        type=issue_type,
        severity=severity,
        message=message or f"{name.capitalize()} stage {status}",
        timestamp=timestamp,
        context={"stage": name, "status": status},
        remediation=remediation,
    )


def build_issues(
    *,
    validation: dict[str, Any] | None,
    output_results: list[OutputResult],
    metrics: ExecutionMetrics | None,
    load_error: str | None = None,
    statuses: dict[str, str] | None = None,
    messages: dict[str, str] | None = None,
) -> list[AuditIssue]:
    """One entry per skipped, failed or cancelled stage.

    Validation outcomes come from the gate's own record, which stays silent
    for the capacity gate. Failed outputs are listed per file.
    """
    issues: list[AuditIssue] = []
    timestamp = now_iso()
    statuses = statuses or {}
    messages = messages or {}
    failed_outputs = [result for result in output_results if not result.execution_succeeded]
    if load_error:
        issues.append(
            AuditIssue(
                id=new_id("iss"),
                type="definition_error",
                severity="critical",
                message=load_error,
                timestamp=timestamp,
                remediation=REMEDIATION["definition"],
            )
        )
    for name in STAGE_NAMES:
        status = statuses.get(name, "not_run")
        if status not in ("skipped", "failure", "cancelled"):
            continue
        if name == "validation" and (validation is not None or load_error):
            continue
        if name == "outputs" and failed_outputs:
            continue
        issues.append(_stage_issue(name, status, messages.get(name), timestamp))
    for entry in (validation or {}).get("issues") or []:
        if not isinstance(entry, dict):
            continue
        issues.append(
            AuditIssue(
                id=new_id("iss"),
                type=str(entry.get("issue_type", "validation_error")),
                severity=str(entry.get("severity", "warning")),
                message=str(entry.get("message", "")),
                timestamp=str(entry.get("timestamp") or timestamp),
                context=dict(entry.get("context") or {}),
            )
        )
    for result in failed_outputs:
        issues.append(
            AuditIssue(
                id=new_id("iss"),
                type=result.rejection
                or ("output_execution" if result.validation_passed else "output_validation"),
                severity="error",
                message=result.error or f"{result.filename} failed",
                timestamp=timestamp,
                context={"output_type": result.output_type, "filename": result.filename},
                remediation=REMEDIATION["output"],
            )
        )
    if metrics is not None and metrics.is_error and statuses.get("agent") != "failure":
        issues.append(
            AuditIssue(
                id=new_id("iss"),
                type="execution_error",
                severity="error",
                message="AI execution returned an error",
                timestamp=timestamp,
                remediation=REMEDIATION["execution"],
            )
        )
    return issues


def diagnose(manifest: AuditManifest) -> Diagnosis:
    """Read-only root-cause pass over the manifest; touches nothing outside it."""
    reasons = sorted(
        manifest.failures.reasons,
        key=lambda reason: SEVERITY_ORDER.index(reason.severity),
        reverse=True,
    )
    primary = reasons[0] if reasons else FailureReason("execution", "Unknown failure", "error")
    failing = [
        name for name, status in manifest.stages.items() if status in ("failure", "cancelled")
    ]
    details = [
        issue.message for issue in manifest.issues if issue.severity in ISSUE_SEVERITIES
    ][:10]
    return Diagnosis(
        root_cause=primary.message,
        remediation=REMEDIATION.get(primary.category, REMEDIATION["execution"]),
        failing_stages=failing,
        details=details,
    )


def _status_cell(status: str) -> str:
    if status == "success":
        return "[OK] success"
    if status in ("skipped", "not_run"):
        return f"[SKIP] {status}"
    return f"[FAIL] {status}"


def render_report(manifest: AuditManifest) -> str:
    meta = manifest.metadata
    lines = [
        "# Agent Execution Audit Report",
        "",
        f"**Agent:** {meta['agent_name']}",
        f"**Workflow Run:** [{meta['run_id']}]({meta['run_url']})",
        f"**Triggered by:** @{meta['actor']}",
        f"**Event:** {meta['event_name']}",
        f"**Timestamp:** {manifest.generated_at}",
        f"**Severity:** {manifest.failures.severity}",
        "",
        "## Stage Results",
        "",
        "| Stage | Result |",
        "|-------|--------|",
        *(f"| {name} | {_status_cell(status)} |" for name, status in manifest.stages.items()),
        "",
    ]

    metrics = manifest.execution.get("metrics")
    if metrics:
        lines.extend(
            [
                "## Execution Metrics",
                "",
                "| Metric | Value |",
                "|--------|-------|",
                f"| Cost | ${metrics['total_cost_usd']} |",
                f"| Turns | {metrics['num_turns']} |",
                f"| Duration | {metrics['duration_ms']}ms |",
                f"| Session | `{manifest.execution.get('session_id') or 'N/A'}` |",
                "",
            ]
        )

    checks = manifest.validation.get("checks")
    if checks:
        lines.extend(["## Validation Results", "", "| Check | Status |", "|-------|--------|"])
        lines.extend(
            f"| {name} | {'[OK] Passed' if passed else '[FAIL] Failed'} |"
            for name, passed in checks.items()
            if name != "skip_reason"
        )
        lines.append("")

    results = manifest.outputs.get("results") or []
    if results:
        lines.extend(
            [
                "## Output Execution",
                "",
                "| Output | Status | Details |",
                "|--------|--------|---------|",
            ]
        )
        for result in results:
            status = "[OK] Success" if result["execution_succeeded"] else "[FAIL] Failed"
            details = (result.get("error") or "-").replace("\n", " ")
            lines.append(f"| {result['filename']} | {status} | {details} |")
        lines.append("")

    if manifest.issues:
        lines.extend(["## Issues", ""])
        lines.extend(
            f"- **[{issue.severity.upper()}]** {issue.type}: {issue.message}"
            for issue in manifest.issues
        )
        lines.append("")

    if manifest.diagnosis is not None:
        lines.extend(
            [
                "## Diagnosis",
                "",
                f"**Root cause:** {manifest.diagnosis.root_cause}",
                "",
                f"**Remediation:** {manifest.diagnosis.remediation}",
                "",
            ]
        )
        if manifest.diagnosis.failing_stages:
            lines.append(f"**Failing stages:** {', '.join(manifest.diagnosis.failing_stages)}")
            lines.append("")
    return "\n".join(lines)


def failure_issue_title(agent_name: str) -> str:
    return f"{agent_name}: Agent Execution Failed"


def failure_issue_body(manifest: AuditManifest, report: str) -> str:
    meta = manifest.metadata
    diagnosis = manifest.diagnosis
    reasons = "\n".join(f"- {reason.message}" for reason in manifest.failures.reasons)
    return (
        "## Agent Failure Report\n\n"
        f"The **{meta['agent_name']}** agent encountered failures during execution.\n\n"
        "### Workflow Details\n"
        f"- **Run ID:** [{meta['run_id']}]({meta['run_url']})\n"
        f"- **Triggered by:** @{meta['actor']}\n"
        f"- **Event:** {meta['event_name']}\n"
        f"- **Time:** {manifest.generated_at}\n\n"
        f"### Failure Summary\n{reasons}\n\n"
        f"### Root Cause\n{diagnosis.root_cause if diagnosis else 'Unknown'}\n\n"
        f"### Remediation\n{diagnosis.remediation if diagnosis else REMEDIATION['execution']}\n\n"
        "---\n\n"
        f"<details>\n<summary>Full Audit Report</summary>\n\n{report}\n\n</details>\n"
    )


async def file_failure_issue(
    client: GitHubClient, agent_name: str, config: AuditConfig, manifest: AuditManifest, report: str
) -> str | None:
    """Comment on the agent's open failure issue, or open a new one."""
    title = failure_issue_title(agent_name)
    body = failure_issue_body(manifest, report)
    search_label = config.labels[0] if config.labels else "agent-failure"
    try:
        existing = await client.list_issues(state="open", labels=search_label, limit=100)
        match = next(
            (
                issue
                for issue in existing
                if issue.get("title") == title and "pull_request" not in issue
            ),
            None,
        )
        if match is not None:
            await client.create_comment(int(match["number"]), body)
            logger.info("Commented on existing failure issue #%s", match["number"])
            return str(match.get("html_url") or match["number"])
        created = await client.create_issue(
            title, body, labels=list(config.labels), assignees=list(config.assignees)
        )
    except GitHubError as exc:
        logger.error("Failed to create or update failure issue: %s", exc)
        return None
    logger.info("Created failure issue #%s", created.get("number"))
    return str(created.get("html_url") or created.get("number", ""))


def build_manifest(
    agent_name: str,
    agent_path: str,
    env: RunEnvironment,
    statuses: dict[str, str],
    *,
    validation: dict[str, Any] | None,
    metrics: ExecutionMetrics | None,
    output_results: list[OutputResult],
    load_error: str | None = None,
    messages: dict[str, str] | None = None,
    workflow_name: str = "AI Agents",
    run_number: str = "0",
) -> AuditManifest:
    failures = detect_failures(
        statuses,
        metrics=metrics,
        output_results=output_results,
        validation=validation,
        load_error=load_error,
        messages=messages,
    )
    execution: dict[str, Any] = {
        "status": statuses.get("agent", "not_run"),
        "success": statuses.get("agent") == "success" and not (metrics and metrics.is_error),
    }
    if metrics is not None:
        execution.update(
            session_id=metrics.session_id,
            result=metrics.result,
            metrics={
                "total_cost_usd": metrics.total_cost_usd,
                "num_turns": metrics.num_turns,
                "duration_ms": metrics.duration_ms,
                "duration_api_ms": metrics.duration_api_ms,
            },
        )
    manifest = AuditManifest(
        audit_id=new_id("aud"),
        generated_at=now_iso(),
        metadata={
            "agent_name": agent_name,
            "agent_path": agent_path,
            "repository": env.repository,
            "run_id": env.run_id,
            "run_attempt": env.run_attempt,
            "run_number": run_number,
            "workflow_name": workflow_name,
            "run_url": env.run_url,
            "job_name": f"agent-{slugify(agent_name)}",
            "event_name": env.event_name,
            "actor": env.actor,
            "ref": env.ref,
            "sha": env.sha,
        },
        validation={
            "passed": bool(validation and (validation.get("result") or {}).get("should_run")),
            "checks": (validation or {}).get("validation") or {},
            "skip_reason": ((validation or {}).get("result") or {}).get("skip_reason"),
        },
        execution=execution,
        outputs={
            "executed_count": sum(1 for result in output_results if result.execution_succeeded),
            "failed_count": sum(1 for result in output_results if not result.execution_succeeded),
            "results": [result.to_dict() for result in output_results],
        },
        failures=failures,
        issues=build_issues(
            validation=validation,
            output_results=output_results,
            metrics=metrics,
            load_error=load_error,
            statuses=statuses,
            messages=messages,
        ),
        stages=statuses,
    )
    if failures.has_failures:
        manifest.diagnosis = diagnose(manifest)
    return manifest


def write_manifest(manifest: AuditManifest, report: str, audit_dir: str | Path) -> list[Path]:
    root = Path(audit_dir)
    root.mkdir(parents=True, exist_ok=True)
    manifest_path = root / "manifest.json"
    manifest_path.write_text(json.dumps(manifest.to_dict(), indent=2), encoding="utf-8")
    report_path = root / "report.md"
    report_path.write_text(report, encoding="utf-8")
    return [manifest_path, report_path]


@log_stage("audit")
async def run_audit_stage(
    agent: AgentDefinition | None,
    env: RunEnvironment,
    stage_results: dict[str, StageResult | str],
    *,
    audit_dir: str | Path,
    metrics_path: str | Path | None = None,
    client: GitHubClient | None = None,
    agent_name: str = "",
    agent_path: str = "",
    load_error: str | None = None,
    workflow_name: str = "AI Agents",
    run_number: str = "0",
) -> StageResult:
    """Aggregate every stage record into the manifest. Always succeeds."""
    name = agent.name if agent is not None else (agent_name or "unknown-agent")
    path = agent.path if agent is not None else agent_path
    statuses = stage_statuses(stage_results)
    validation = read_validation_record(audit_dir, name)
    metrics = read_metrics(metrics_path)
    output_results = read_output_results(audit_dir)

    manifest = build_manifest(
        name,
        path,
        env,
        statuses,
        validation=validation,
        metrics=metrics,
        output_results=output_results,
        load_error=load_error,
        messages=stage_messages(stage_results),
        workflow_name=workflow_name,
        run_number=run_number,
    )
    report = render_report(manifest)
    outputs = {
        "has-failures": str(manifest.failures.has_failures).lower(),
        "severity": manifest.failures.severity,
        "audit-id": manifest.audit_id,
    }
    artifacts: list[str] = []
    try:
        artifacts = [str(p) for p in write_manifest(manifest, report, audit_dir)]
    except OSError as exc:
        logger.error("Failed to write audit manifest: %s", exc)

    if manifest.failures.has_failures:
        logger.error(
            "Agent %s finished with %s severity: %s",
            name,
            manifest.failures.severity,
            "; ".join(reason.message for reason in manifest.failures.reasons),
        )
        config = agent.audit if agent is not None else AuditConfig()
        if config.create_issues and client is not None:
            try:
                issue_url = await file_failure_issue(client, name, config, manifest, report)
            except RepoAgentsError as exc:
                logger.error("Failure issue filing failed: %s", exc)
                issue_url = None
            if issue_url:
                outputs["issue-url"] = issue_url
    else:
        logger.info("Agent %s audit complete (severity %s)", name, manifest.failures.severity)

    if is_rate_limited(validation):
        return StageResult(
            success=True, outputs=outputs, skip_reason="Rate-limited run", artifacts=artifacts
        )
    return StageResult(success=True, outputs=outputs, artifacts=artifacts)
