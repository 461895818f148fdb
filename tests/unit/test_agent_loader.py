from pathlib import Path

import pytest

from repo_agents.agents.loader import load_agent, load_agents, parse_agent, split_frontmatter
from repo_agents.errors import DefinitionError

TRIAGE = """
name: Issue Triage
on:
  issues:
    types: [opened, reopened]
permissions:
  issues: write
outputs:
  add-comment: { max: 1 }
  add-label: true
trigger_labels: [needs-triage]
rate_limit_minutes: 10
"""


def test_parse_agent_reads_frontmatter_and_body() -> None:
    agent = parse_agent(f"---\n{TRIAGE}---\n\n# Triage\n\nLabel new issues.\n", "triage.md")

    assert agent.name == "Issue Triage"
    assert agent.on.issues is not None
    assert agent.on.issues.types == ["opened", "reopened"]
    assert agent.permissions.issues == "write"
    assert agent.permissions.contents == "read"
    assert agent.output_config("add-comment").max == 1
    assert agent.output_config("add-label").max is None
    assert agent.output_config("create-pr") is None
    assert agent.trigger_labels == ["needs-triage"]
    assert agent.rate_limit_minutes == 10
    assert agent.markdown.startswith("# Triage")
    assert agent.workflow_file == "agent-triage.yml"
    assert agent.uses_progress_comment() is True


def test_bare_on_key_is_not_read_as_boolean() -> None:
    frontmatter, _ = split_frontmatter(
        "---\nname: x\non:\n  schedule:\n    - cron: '0 * * * *'\n---\n"
    )
    assert "on" in frontmatter
    assert True not in frontmatter


def test_defaults_for_minimal_definition() -> None:
    agent = parse_agent("---\nname: Nightly\non:\n  workflow_dispatch: true\n---\nRun.\n")

    assert agent.rate_limit_minutes == 5
    assert agent.outputs == {}
    assert agent.context is None
    assert agent.audit.create_issues is True
    assert agent.audit.labels == ["agent-failure"]
    assert agent.uses_progress_comment() is False
    assert agent.workflow_file == "agent-nightly.yml"


def test_outputs_list_form_is_normalized() -> None:
    agent = parse_agent(
        "---\nname: Labeler\non:\n  issues: true\npermissions:\n  issues: write\n"
        "outputs: [add-label, remove-label]\n---\n"
    )
    assert set(agent.outputs) == {"add-label", "remove-label"}
    assert agent.on.issues is not None
    assert agent.on.issues.types == []


def test_missing_name_is_rejected() -> None:
    with pytest.raises(DefinitionError) as exc_info:
        parse_agent("---\non:\n  issues: true\n---\nbody\n", "nameless.md")
    assert exc_info.value.path == "nameless.md"
    assert any(error.startswith("name:") for error in exc_info.value.errors)


def test_missing_trigger_is_rejected() -> None:
    with pytest.raises(DefinitionError, match="at least one trigger"):
        parse_agent("---\nname: Idle\non: {}\n---\nbody\n")


def test_missing_frontmatter_is_rejected() -> None:
    with pytest.raises(DefinitionError, match="frontmatter is required"):
        parse_agent("# Just markdown\n")


def test_unterminated_frontmatter_is_rejected() -> None:
    with pytest.raises(DefinitionError, match="not terminated"):
        parse_agent("---\nname: x\n")


def test_output_requires_write_permission() -> None:
    with pytest.raises(DefinitionError, match="issues: write or pull_requests: write"):
        parse_agent("---\nname: x\non:\n  issues: true\noutputs:\n  add-comment: true\n---\n")


def test_update_file_requires_allowed_paths() -> None:
    with pytest.raises(DefinitionError, match="allowed-paths"):
        parse_agent(
            "---\nname: Docs\non:\n  workflow_dispatch: true\npermissions:\n  contents: write\n"
            "outputs:\n  update-file: true\n---\n"
        )


def test_unknown_output_type_is_rejected() -> None:
    with pytest.raises(DefinitionError, match="unknown output types: send-email"):
        parse_agent(
            "---\nname: x\non:\n  issues: true\npermissions:\n  issues: write\n"
            "outputs:\n  send-email: true\n---\n"
        )


def test_load_agent_reports_unreadable_file(tmp_path: Path) -> None:
    with pytest.raises(DefinitionError) as exc_info:
        load_agent(tmp_path / "missing.md")
    assert exc_info.value.path.endswith("missing.md")


def test_load_agents_collects_errors_without_aborting(write_agent, tmp_path: Path) -> None:
    write_agent("a-triage.md", TRIAGE)
    write_agent("b-broken.md", "name: Broken\n")
    write_agent("nested/c-weekly.md", "name: Weekly\non:\n  schedule:\n    - cron: '0 9 * * 1'\n")

    result = load_agents(tmp_path / "agents")

    assert [agent.name for agent in result.agents] == ["Issue Triage", "Weekly"]
    assert len(result.errors) == 1
    assert result.errors[0].path.endswith("b-broken.md")


def test_load_agents_keeps_first_duplicate_name(write_agent, tmp_path: Path) -> None:
    write_agent("a.md", TRIAGE)
    write_agent("b.md", TRIAGE)

    result = load_agents(tmp_path / "agents")

    assert len(result.agents) == 1
    assert result.agents[0].path.endswith("a.md")
    assert "duplicate agent name" in str(result.errors[0])


def test_load_agents_missing_directory_is_empty(tmp_path: Path) -> None:
    result = load_agents(tmp_path / "nowhere")
    assert result.agents == []
    assert result.errors == []
