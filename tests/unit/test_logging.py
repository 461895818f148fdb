import json
import logging

import pytest
import structlog

from repo_agents.logging import (
    bind_run,
    configure_logging,
    log_stage,
    render_github,
    resolve_format,
)


@pytest.fixture(autouse=True)
def reset_root_handlers():
    yield
    logging.getLogger().handlers.clear()


def test_github_renderer_annotates_warnings_with_agent_and_stage() -> None:
    line = render_github(
        None,
        "warning",
        {
            "event": "Label lookup failed",
            "level": "warning",
            "agent": "Triage",
            "stage": "outputs",
            "dispatch_id": "d-1",
            "timestamp": "2026-10-17T00:00:00Z",
        },
    )

    assert line == "::warning::[Triage/outputs] Label lookup failed"


def test_github_renderer_escapes_multiline_errors() -> None:
    line = render_github(
        None, "error", {"event": "Run aborted", "level": "error", "exception": "Traceback\n  boom"}
    )

    assert line == "::error::Run aborted%0ATraceback%0A  boom"


def test_github_renderer_leaves_info_lines_plain() -> None:
    line = render_github(None, "info", {"event": "Using fallback_token", "level": "info", "n": 2})

    assert line == "Using fallback_token n=2"


def test_auto_format_follows_the_runner(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("GITHUB_ACTIONS", raising=False)
    assert resolve_format("auto") == "console"

    monkeypatch.setenv("APP_ENV", "prod")
    assert resolve_format("auto") == "json"

    monkeypatch.setenv("GITHUB_ACTIONS", "true")
    assert resolve_format("auto") == "github"
    assert resolve_format("console") == "console"


@pytest.mark.asyncio
async def test_log_stage_binds_only_while_the_stage_runs() -> None:
    @log_stage("context")
    async def collect() -> str:
        return structlog.contextvars.get_contextvars()["stage"]

    assert await collect() == "context"
    assert "stage" not in structlog.contextvars.get_contextvars()


def test_bind_run_keeps_existing_values() -> None:
    bind_run(dispatch_id="d-1", agent="Triage")
    bind_run(dispatch_id=None, agent="")

    assert structlog.contextvars.get_contextvars() == {"dispatch_id": "d-1", "agent": "Triage"}


def test_json_records_carry_run_context(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging("INFO", "json")
    bind_run(dispatch_id="d-1", agent="Triage")

    logging.getLogger("repo_agents.test").warning("Rate limit lookup failed")

    record = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
    assert record["event"] == "Rate limit lookup failed"
    assert record["level"] == "warning"
    assert record["dispatch_id"] == "d-1"
    assert record["agent"] == "Triage"
