"""End-to-end dispatch and agent runs against an in-memory GitHub API."""

import asyncio
import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from repo_agents.agents.types import AgentDefinition
from repo_agents.config import Settings, get_settings
from repo_agents.dispatcher.types import DispatchContext, StageResult
from repo_agents.pipeline import dispatch, run_agent

REPO = "/repos/acme/widgets"
NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


def _stamp(minutes_ago: float) -> str:
    return (NOW - timedelta(minutes=minutes_ago)).isoformat().replace("+00:00", "Z")


def _issue_event(labels: list[str]) -> dict:
    return {
        "action": "opened",
        "issue": {
            "number": 42,
            "title": "Widget crashes",
            "labels": [{"name": name} for name in labels],
            "user": {"login": "alice"},
        },
        "sender": {"login": "alice", "type": "User"},
    }


@pytest.fixture
def settings(monkeypatch: pytest.MonkeyPatch) -> Settings:
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
    monkeypatch.setenv("GITHUB_TOKEN", "ghs_test")
    monkeypatch.setenv("GITHUB_EVENT_NAME", "issues")
    monkeypatch.setenv("GITHUB_ACTOR", "alice")
    get_settings.cache_clear()
    return get_settings()


@pytest.fixture
def writer(github):
    github.on("GET", f"{REPO}/collaborators/alice/permission", {"permission": "write"})
    return github


class RecordingStep:
    def __init__(self, result: StageResult | None = None) -> None:
        self.calls: list[str] = []
        self.result = result or StageResult(success=True, outputs={"session-id": "s-1"})

    async def __call__(self, agent: AgentDefinition, context: DispatchContext) -> StageResult:
        self.calls.append(agent.name)
        return self.result


@pytest.mark.asyncio
async def test_missing_trigger_label_skips_at_dispatch(
    settings: Settings, writer, write_agent, tmp_path: Path
) -> None:
    write_agent(
        "review.md",
        "name: Reviewer\non:\n  issues:\n    types: [opened]\ntrigger_labels: [needs-review]",
    )
    write_agent("broken.md", "name: Broken")

    outcome = await dispatch(
        settings, event_source=_issue_event(["bug"]), transport=writer.transport(), now=NOW
    )
    result = outcome.to_stage_result()

    assert result.skip_reason == "No agents to run"
    assert json.loads(result.outputs["candidates"]) == ["Reviewer"]
    assert json.loads(result.outputs["agents-to-run"]) == []
    agent_result = json.loads(result.outputs["agent-results"])["Reviewer"]
    assert agent_result["skip_reason"] == "Missing required labels: needs-review"
    assert json.loads(result.outputs["invalid-definitions"])[0].endswith("broken.md")
    assert result.outputs["dispatch-id"] == "100-1"
    written = json.loads((tmp_path / "dispatch" / "context.json").read_text())
    assert written["issue"]["labels"] == ["bug"]
    assert writer.calls("POST", f"{REPO}/issues/42/comments") == []


@pytest.mark.asyncio
async def test_dispatch_selects_agents_to_run(
    settings: Settings, writer, write_agent
) -> None:
    write_agent("triage.md", "name: Triage\non:\n  issues: true\nrate_limit_minutes: 0")
    write_agent("weekly.md", "name: Weekly\non:\n  schedule:\n    - cron: '0 9 * * 1'")

    outcome = await dispatch(
        settings, event_source=_issue_event([]), transport=writer.transport(), now=NOW
    )
    result = outcome.to_stage_result()

    assert result.status == "success"
    assert json.loads(result.outputs["agents-to-run"]) == ["Triage"]
    # Progress comments belong to the per-agent run, not the dispatcher
    assert writer.calls("POST", f"{REPO}/issues/42/comments") == []


@pytest.mark.asyncio
@pytest.mark.parametrize(("minutes_ago", "should_run"), [(3, False), (15, True)])
async def test_rate_limit_window(
    settings: Settings, writer, write_agent, minutes_ago: int, should_run: bool
) -> None:
    agent_path = write_agent(
        "triage.md", "name: Triage\non:\n  issues: true\nrate_limit_minutes: 10"
    )
    writer.on(
        "GET",
        f"{REPO}/actions/workflows/agent-triage.yml/runs",
        {"workflow_runs": [{"conclusion": "success", "created_at": _stamp(minutes_ago)}]},
    )
    writer.on("POST", f"{REPO}/issues/42/comments", {"id": 501})
    writer.on("PATCH", f"{REPO}/issues/comments/501", {"id": 501})
    step = RecordingStep()

    run = await run_agent(
        settings,
        agent_path,
        event_source=_issue_event([]),
        agent_step=step,
        transport=writer.transport(),
        now=NOW,
    )
    result = run.to_stage_result()
    validation = run.stages["validation"]

    assert validation.outputs["should-run"] == str(should_run).lower()
    assert validation.outputs["rate-limited"] == str(not should_run).lower()
    assert step.calls == (["Triage"] if should_run else [])
    if should_run:
        assert result.status == "skipped"
        assert result.skip_reason == "Agent has no outputs configured"
        assert run.audit.skip_reason is None
    else:
        assert result.skip_reason == "Rate limit: 7 minutes remaining"
        assert run.audit.skip_reason == "Rate-limited run"


@pytest.mark.asyncio
async def test_context_below_minimum_skips_before_agent(
    settings: Settings, writer, write_agent, tmp_path: Path
) -> None:
    agent_path = write_agent(
        "digest.md",
        "name: Digest\non:\n  issues: true\nrate_limit_minutes: 0\n"
        "context:\n  issues:\n    states: [open]\n  since: 24h\n  min_items: 5",
    )
    writer.on(
        "GET",
        f"{REPO}/issues",
        [
            {"number": n, "title": f"Issue {n}", "state": "open", "updated_at": _stamp(30)}
            for n in (1, 2, 3)
        ],
    )
    writer.on("POST", f"{REPO}/issues/42/comments", {"id": 501})
    writer.on("PATCH", f"{REPO}/issues/comments/501", {"id": 501})
    step = RecordingStep()

    run = await run_agent(
        settings,
        agent_path,
        event_source=_issue_event([]),
        agent_step=step,
        transport=writer.transport(),
        now=NOW,
    )

    assert step.calls == []
    assert "agent" not in run.stages
    assert run.stages["context"].skip_reason == "Collected 3 items, but minimum is 5"
    assert run.to_stage_result().outputs["context-status"] == "skipped"
    final = writer.bodies("PATCH", f"{REPO}/issues/comments/501")[-1]["body"]
    assert "skipped: Collected 3 items, but minimum is 5" in final
    manifest = json.loads((tmp_path / "audit" / "manifest.json").read_text())
    assert [(issue["type"], issue["message"]) for issue in manifest["issues"]] == [
        ("context_skipped", "Collected 3 items, but minimum is 5")
    ]
    assert run.audit.outputs["has-failures"] == "false"


@pytest.mark.asyncio
async def test_label_limit_executes_first_and_reports_second(
    settings: Settings, writer, write_agent, tmp_path: Path
) -> None:
    agent_path = write_agent(
        "labeler.md",
        "name: Labeler\non:\n  issues: true\nrate_limit_minutes: 0\nprogress_comment: false\n"
        "permissions:\n  issues: write\noutputs:\n  add-label: { max: 1 }",
    )
    outputs_dir = tmp_path / "outputs"
    outputs_dir.mkdir()
    (outputs_dir / "add-label.json").write_text(json.dumps({"labels": ["bug"]}))
    (outputs_dir / "add-label-2.json").write_text(json.dumps({"labels": ["p1"]}))
    writer.on("GET", f"{REPO}/labels", [{"name": "bug"}, {"name": "p1"}])
    writer.on("POST", f"{REPO}/issues/42/labels", [{"name": "bug"}])
    writer.on("GET", f"{REPO}/issues", [])
    writer.on("POST", f"{REPO}/issues", {"number": 77, "html_url": "issue-77"})

    run = await run_agent(
        settings,
        agent_path,
        event_source=_issue_event([]),
        agent_step=RecordingStep(),
        transport=writer.transport(),
        now=NOW,
    )

    results = {result.filename: result for result in run.output_results}
    assert results["add-label.json"].execution_succeeded is True
    assert results["add-label.json"].error is None
    assert results["add-label-2.json"].rejection == "limit_exceeded"
    assert writer.bodies("POST", f"{REPO}/issues/42/labels") == [{"labels": ["bug"]}]
    assert run.stages["outputs"].success is False
    assert run.audit.outputs["has-failures"] == "true"
    assert run.audit.outputs["issue-url"] == "issue-77"
    filed = writer.bodies("POST", f"{REPO}/issues")[0]
    assert filed["title"] == "Labeler: Agent Execution Failed"
    manifest = json.loads((tmp_path / "audit" / "manifest.json").read_text())
    assert manifest["outputs"]["executed_count"] == 1
    assert manifest["outputs"]["failed_count"] == 1


@pytest.mark.asyncio
async def test_default_agent_step_reads_metrics(
    settings: Settings, writer, write_agent, tmp_path: Path
) -> None:
    agent_path = write_agent(
        "triage.md", "name: Triage\non:\n  issues: true\nrate_limit_minutes: 0\n"
        "progress_comment: false"
    )

    missing = await run_agent(
        settings, agent_path, event_source=_issue_event([]), transport=writer.transport(), now=NOW
    )
    (tmp_path / "metrics.json").write_text(
        json.dumps({"is_error": True, "result": "Model refused", "session_id": "s-9"})
    )
    writer.on("GET", f"{REPO}/issues", [])
    writer.on("POST", f"{REPO}/issues", {"number": 78})
    errored = await run_agent(
        settings, agent_path, event_source=_issue_event([]), transport=writer.transport(), now=NOW
    )

    assert missing.stages["agent"].skip_reason == "No execution metrics found"
    assert errored.stages["agent"].outputs["error"] == "Model refused"
    assert errored.to_stage_result().success is False
    assert errored.audit.outputs["severity"] == "error"


@pytest.mark.asyncio
async def test_invalid_definition_is_audited(settings: Settings, write_agent, tmp_path) -> None:
    agent_path = write_agent("broken.md", "name: Broken")

    run = await run_agent(settings, agent_path, event_source=_issue_event([]))

    assert run.agent_name == "broken"
    assert run.stages["validation"].success is False
    assert run.audit.outputs["severity"] == "critical"
    assert (tmp_path / "audit" / "report.md").exists()


@pytest.mark.asyncio
async def test_cancellation_is_audited_then_propagates(
    settings: Settings, writer, write_agent, tmp_path: Path
) -> None:
    agent_path = write_agent(
        "triage.md", "name: Triage\non:\n  issues: true\nrate_limit_minutes: 0\n"
        "progress_comment: false"
    )

    async def cancelled(agent: AgentDefinition, context: DispatchContext) -> StageResult:
        raise asyncio.CancelledError

    with pytest.raises(asyncio.CancelledError):
        await run_agent(
            settings,
            agent_path,
            event_source=_issue_event([]),
            agent_step=cancelled,
            transport=writer.transport(),
            now=NOW,
        )

    manifest = json.loads((tmp_path / "audit" / "manifest.json").read_text())
    assert manifest["stages"]["agent"] == "cancelled"
    assert manifest["stages"]["outputs"] == "not_run"
    assert manifest["failures"]["severity"] == "warning"
    assert writer.calls("POST", f"{REPO}/issues") == []


@pytest.mark.asyncio
async def test_failed_agent_step_files_one_issue(
    settings: Settings, writer, write_agent, tmp_path: Path
) -> None:
    agent_path = write_agent(
        "triage.md", "name: Triage\non:\n  issues: true\nrate_limit_minutes: 0\n"
        "progress_comment: false"
    )
    writer.on("GET", f"{REPO}/issues", [])
    writer.on("POST", f"{REPO}/issues", {"number": 79, "html_url": "issue-79"})

    run = await run_agent(
        settings,
        agent_path,
        event_source=_issue_event([]),
        agent_step=RecordingStep(StageResult.failure("AI step timed out")),
        transport=writer.transport(),
        now=NOW,
    )

    manifest = json.loads((tmp_path / "audit" / "manifest.json").read_text())
    assert manifest["failures"]["severity"] == "error"
    assert [(issue["type"], issue["message"]) for issue in manifest["issues"]] == [
        ("agent_failure", "AI step timed out")
    ]
    assert run.audit.outputs["issue-url"] == "issue-79"
    assert "outputs" not in run.stages


@pytest.mark.asyncio
async def test_unexpected_step_error_is_audited_then_propagates(
    settings: Settings, writer, write_agent, tmp_path: Path
) -> None:
    agent_path = write_agent(
        "triage.md", "name: Triage\non:\n  issues: true\nrate_limit_minutes: 0\n"
        "progress_comment: false"
    )
    writer.on("GET", f"{REPO}/issues", [])
    writer.on("POST", f"{REPO}/issues", {"number": 80})

    async def broken(agent: AgentDefinition, context: DispatchContext) -> StageResult:
        raise RuntimeError("disk full")

    with pytest.raises(RuntimeError, match="disk full"):
        await run_agent(
            settings,
            agent_path,
            event_source=_issue_event([]),
            agent_step=broken,
            transport=writer.transport(),
            now=NOW,
        )

    manifest = json.loads((tmp_path / "audit" / "manifest.json").read_text())
    assert manifest["stages"]["agent"] == "failure"
    assert manifest["stages"]["outputs"] == "not_run"
    assert manifest["issues"][0]["message"] == "Unexpected error: disk full"
    assert len(writer.calls("POST", f"{REPO}/issues")) == 1
