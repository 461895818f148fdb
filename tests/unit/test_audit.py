import json
from pathlib import Path

import pytest

from repo_agents.agents.loader import parse_agent
from repo_agents.dispatcher.types import RunEnvironment, StageResult
from repo_agents.stages.audit import (
    ExecutionMetrics,
    detect_failures,
    failure_issue_title,
    max_severity,
    run_audit_stage,
    stage_statuses,
)
from repo_agents.stages.outputs.base import OutputResult

REPO = "/repos/acme/widgets"
ENV = RunEnvironment(repository="acme/widgets", run_id="900", event_name="issues", actor="alice")
AGENT = parse_agent(
    "---\nname: Triage\non:\n  issues: true\naudit:\n  labels: [agent-failure, triage]\n"
    "  assignees: [maintainer]\n---\nbody\n",
    ".github/agents/triage.md",
)


def _write_validation(audit_dir: Path, **result: object) -> None:
    path = audit_dir / "validation" / "triage.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    record = {
        "agent": "Triage",
        "validation": {"agent_loaded": True, "not_bot": True},
        "issues": [],
        "result": {"should_run": False, **result},
    }
    path.write_text(json.dumps(record), encoding="utf-8")


def test_max_severity_orders_levels() -> None:
    assert max_severity([]) == "none"
    assert max_severity(["none", "warning"]) == "warning"
    assert max_severity(["error", "none", "critical", "warning"]) == "critical"
    # Informational entries never raise the run severity
    assert max_severity(["info"]) == "none"


def test_stage_statuses_default_to_not_run() -> None:
    statuses = stage_statuses({"validation": StageResult.skip("x"), "agent": "cancelled"})
    assert statuses == {
        "preflight": "not_run",
        "validation": "skipped",
        "context": "not_run",
        "agent": "cancelled",
        "outputs": "not_run",
    }


def test_agent_failure_is_an_error() -> None:
    summary = detect_failures(
        stage_statuses({"agent": "failure"}), metrics=None, output_results=[], validation=None
    )
    assert summary.severity == "error"
    assert summary.has_failures is True


def test_cancellation_alone_is_a_warning() -> None:
    summary = detect_failures(
        stage_statuses({"agent": "cancelled"}), metrics=None, output_results=[], validation=None
    )
    assert summary.severity == "warning"
    assert summary.has_failures is False


def test_rate_limited_run_is_informational() -> None:
    summary = detect_failures(
        stage_statuses({"validation": "skipped"}),
        metrics=None,
        output_results=[],
        validation={"result": {"rate_limited": True}},
    )
    assert summary.severity == "none"
    assert [reason.message for reason in summary.reasons] == ["Run was rate-limited"]


def test_ai_error_and_failed_outputs_are_errors() -> None:
    summary = detect_failures(
        stage_statuses({"agent": "success", "outputs": "failure"}),
        metrics=ExecutionMetrics(is_error=True),
        output_results=[
            OutputResult("add-label", "add-label-2.json", rejection="limit_exceeded"),
            OutputResult("add-label", "add-label.json", True, True),
        ],
        validation=None,
    )
    categories = [reason.category for reason in summary.reasons]
    assert categories == ["execution", "output"]
    assert summary.reasons[1].details == {"failed_outputs": ["add-label-2.json"]}


@pytest.mark.asyncio
async def test_failure_opens_tracking_issue(github, tmp_path: Path) -> None:
    metrics_path = tmp_path / "metrics.json"
    metrics_path.write_text(
        json.dumps(
            {"total_cost_usd": 0.42, "num_turns": 6, "is_error": True, "session_id": "sess-1"}
        )
    )
    github.on("GET", f"{REPO}/issues", [])
    github.on(
        "POST",
        f"{REPO}/issues",
        {"number": 12, "html_url": "https://github.com/acme/widgets/issues/12"},
    )

    async with github.client() as client:
        result = await run_audit_stage(
            AGENT,
            ENV,
            {"preflight": "success", "validation": "success", "agent": "failure"},
            audit_dir=tmp_path / "audit",
            metrics_path=metrics_path,
            client=client,
        )

    assert result.success is True
    assert result.outputs["has-failures"] == "true"
    assert result.outputs["severity"] == "error"
    assert result.outputs["issue-url"] == "https://github.com/acme/widgets/issues/12"
    created = github.bodies("POST", f"{REPO}/issues")[0]
    assert created["title"] == failure_issue_title("Triage") == "Triage: Agent Execution Failed"
    assert created["labels"] == ["agent-failure", "triage"]
    assert created["assignees"] == ["maintainer"]
    assert "## Agent Failure Report" in created["body"]
    assert github.calls("GET", f"{REPO}/issues")[0].url.params["labels"] == "agent-failure"

    manifest = json.loads((tmp_path / "audit" / "manifest.json").read_text())
    assert manifest["metadata"]["agent_name"] == "Triage"
    assert manifest["execution"]["metrics"]["num_turns"] == 6
    assert manifest["diagnosis"]["failing_stages"] == ["agent"]
    report = (tmp_path / "audit" / "report.md").read_text()
    assert report.startswith("# Agent Execution Audit Report")
    assert "| Cost | $0.42 |" in report


@pytest.mark.asyncio
async def test_repeat_failure_comments_on_open_issue(github, tmp_path: Path) -> None:
    github.on(
        "GET",
        f"{REPO}/issues",
        [
            {"number": 3, "title": "Other: Agent Execution Failed"},
            {"number": 5, "title": "Triage: Agent Execution Failed", "html_url": "u5"},
        ],
    )
    github.on("POST", f"{REPO}/issues/5/comments", {"id": 1})

    async with github.client() as client:
        result = await run_audit_stage(
            AGENT, ENV, {"outputs": "failure"}, audit_dir=tmp_path, client=client
        )

    assert result.outputs["issue-url"] == "u5"
    assert github.calls("POST", f"{REPO}/issues") == []
    assert len(github.calls("POST", f"{REPO}/issues/5/comments")) == 1


@pytest.mark.asyncio
async def test_rate_limited_run_skips_without_issue(github, tmp_path: Path) -> None:
    _write_validation(tmp_path, rate_limited=True, skip_reason="Rate limit: 4 minutes remaining")

    async with github.client() as client:
        result = await run_audit_stage(
            AGENT, ENV, {"validation": "skipped"}, audit_dir=tmp_path, client=client
        )

    assert result.skip_reason == "Rate-limited run"
    assert result.outputs["has-failures"] == "false"
    assert result.outputs["severity"] == "none"
    assert github.requests == []
    assert (tmp_path / "manifest.json").exists()


@pytest.mark.asyncio
async def test_definition_load_error_is_critical(tmp_path: Path) -> None:
    result = await run_audit_stage(
        None,
        ENV,
        {"validation": "failure"},
        audit_dir=tmp_path,
        agent_name="broken",
        agent_path=".github/agents/broken.md",
        load_error="frontmatter is required",
    )

    manifest = json.loads((tmp_path / "manifest.json").read_text())
    assert result.outputs["severity"] == "critical"
    assert manifest["metadata"]["agent_name"] == "broken"
    assert manifest["issues"][0]["type"] == "definition_error"
    assert "repo-agents validate" in manifest["diagnosis"]["remediation"]


@pytest.mark.asyncio
async def test_issue_creation_can_be_disabled(github, tmp_path: Path) -> None:
    quiet = parse_agent(
        "---\nname: Triage\non:\n  issues: true\naudit:\n  create_issues: false\n---\nbody\n"
    )

    async with github.client() as client:
        result = await run_audit_stage(
            quiet, ENV, {"agent": "failure"}, audit_dir=tmp_path, client=client
        )

    assert result.outputs["has-failures"] == "true"
    assert "issue-url" not in result.outputs
    assert github.requests == []


@pytest.mark.asyncio
async def test_issue_filing_failure_does_not_fail_audit(github, tmp_path: Path) -> None:
    github.on("GET", f"{REPO}/issues", {"message": "down"}, status=503)

    async with github.client() as client:
        result = await run_audit_stage(
            AGENT, ENV, {"agent": "failure"}, audit_dir=tmp_path, client=client
        )

    assert result.success is True
    assert "issue-url" not in result.outputs


@pytest.mark.asyncio
async def test_clean_run_has_no_diagnosis(tmp_path: Path) -> None:
    statuses = {name: "success" for name in ("preflight", "validation", "agent", "outputs")}

    result = await run_audit_stage(AGENT, ENV, statuses, audit_dir=tmp_path)

    manifest = json.loads((tmp_path / "manifest.json").read_text())
    assert result.status == "success"
    assert result.outputs["severity"] == "none"
    assert manifest["diagnosis"] is None
    assert manifest["stages"]["context"] == "not_run"


@pytest.mark.asyncio
async def test_context_skip_is_recorded_with_reason(tmp_path: Path) -> None:
    stages = {
        "preflight": "success",
        "validation": "success",
        "context": StageResult.skip("Collected 3 items, but minimum is 5"),
    }

    result = await run_audit_stage(AGENT, ENV, stages, audit_dir=tmp_path)

    manifest = json.loads((tmp_path / "manifest.json").read_text())
    assert result.outputs["severity"] == "none"
    assert [(issue["type"], issue["message"]) for issue in manifest["issues"]] == [
        ("context_skipped", "Collected 3 items, but minimum is 5")
    ]
    assert manifest["failures"]["reasons"][0]["message"] == "Collected 3 items, but minimum is 5"


@pytest.mark.asyncio
async def test_failed_agent_step_is_recorded_once(tmp_path: Path) -> None:
    stages = {"preflight": "success", "agent": StageResult.failure("AI step timed out")}

    result = await run_audit_stage(AGENT, ENV, stages, audit_dir=tmp_path)

    manifest = json.loads((tmp_path / "manifest.json").read_text())
    assert result.outputs["severity"] == "error"
    assert len(manifest["issues"]) == 1
    issue = manifest["issues"][0]
    assert (issue["type"], issue["severity"]) == ("agent_failure", "error")
    assert issue["message"] == "AI step timed out"


@pytest.mark.asyncio
async def test_preflight_failure_is_a_critical_issue(tmp_path: Path) -> None:
    stages = {"preflight": StageResult.failure("Missing AI credentials")}

    await run_audit_stage(AGENT, ENV, stages, audit_dir=tmp_path)

    manifest = json.loads((tmp_path / "manifest.json").read_text())
    assert [(issue["type"], issue["severity"]) for issue in manifest["issues"]] == [
        ("preflight_failure", "critical")
    ]


@pytest.mark.asyncio
async def test_capacity_skip_stays_silent(tmp_path: Path) -> None:
    _write_validation(tmp_path, pr_limited=True, skip_reason="Max open PRs limit reached: 3/3")

    await run_audit_stage(AGENT, ENV, {"validation": "skipped"}, audit_dir=tmp_path)

    manifest = json.loads((tmp_path / "manifest.json").read_text())
    assert manifest["issues"] == []
