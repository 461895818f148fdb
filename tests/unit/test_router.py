import pytest

from repo_agents.agents.loader import parse_agent
from repo_agents.agents.types import AgentDefinition
from repo_agents.dispatcher.prepare_context import build_dispatch_context
from repo_agents.dispatcher.route import closed_issue_retries, route, route_event
from repo_agents.dispatcher.types import DispatchContext, RunEnvironment

REPO = "/repos/acme/widgets"


def _agent(frontmatter: str, path: str = "") -> AgentDefinition:
    return parse_agent(f"---\n{frontmatter}\n---\nbody\n", path)


def _context(event_name: str, payload: dict, **env: str) -> DispatchContext:
    return build_dispatch_context(
        RunEnvironment(repository="acme/widgets", event_name=event_name, **env), payload
    )


OPENED = _agent("name: Opened\non:\n  issues:\n    types: [opened]")
ANY_ISSUE = _agent("name: Any Issue\non:\n  issues: true")
PR_REVIEW = _agent("name: Review\non:\n  pull_request:\n    types: [opened, synchronize]")
WEEKLY = _agent("name: Weekly\non:\n  schedule:\n    - cron: '0 9 * * 1'")
HOURLY = _agent("name: Hourly\non:\n  schedule:\n    - cron: '0 * * * *'")
MANUAL = _agent("name: Manual Docs\non:\n  workflow_dispatch: true", ".github/agents/docs.md")
IMPLEMENTER = _agent(
    "name: Implementer\non:\n  issues:\n    types: [labeled]\n"
    "trigger_labels: [ready]\npre_flight:\n  check_blocking_issues: true"
)
ALL = [OPENED, ANY_ISSUE, PR_REVIEW, WEEKLY, HOURLY, MANUAL, IMPLEMENTER]


def _names(agents: list[AgentDefinition]) -> list[str]:
    return [agent.name for agent in agents]


def test_issue_action_must_be_declared() -> None:
    opened = _context("issues", {"action": "opened", "issue": {"number": 1}})
    closed = _context("issues", {"action": "closed", "issue": {"number": 1}})

    assert _names(route_event(opened, ALL)) == ["Opened", "Any Issue"]
    assert _names(route_event(closed, ALL)) == ["Any Issue"]


def test_pull_request_routes_only_pull_request_agents() -> None:
    context = _context("pull_request", {"action": "synchronize", "pull_request": {"number": 4}})
    assert _names(route_event(context, ALL)) == ["Review"]


def test_routing_is_pure_and_order_preserving() -> None:
    context = _context("issues", {"action": "opened", "issue": {"number": 1}})
    reordered = list(reversed(ALL))

    assert _names(route_event(context, ALL)) == _names(route_event(context, ALL))
    assert _names(route_event(context, reordered)) == ["Any Issue", "Opened"]


def test_schedule_matches_firing_cron() -> None:
    weekly = _context("schedule", {"schedule": "0 9 * * 1"})
    unknown = _context("schedule", {})

    assert _names(route_event(weekly, ALL)) == ["Weekly"]
    assert _names(route_event(unknown, ALL)) == ["Weekly", "Hourly"]


def test_workflow_dispatch_selector() -> None:
    context = _context("workflow_dispatch", {})

    assert _names(route_event(context, ALL)) == ["Manual Docs"]
    assert _names(route_event(context, ALL, selector="Manual Docs")) == ["Manual Docs"]
    assert _names(route_event(context, ALL, selector="docs")) == ["Manual Docs"]
    assert route_event(context, ALL, selector="Weekly") == []


def test_unknown_event_matches_nothing() -> None:
    assert route_event(_context("push", {}), ALL) == []


@pytest.mark.asyncio
async def test_closed_issue_retries_unblocked_issue(github) -> None:
    github.on(
        "GET",
        f"{REPO}/issues/10/dependencies/blocking",
        [
            {"number": 11, "state": "open", "labels": [{"name": "ready"}]},
            {"number": 12, "state": "closed", "labels": [{"name": "ready"}]},
        ],
    )
    context = _context("issues", {"action": "closed", "issue": {"number": 10}})

    async with github.client() as client:
        retried = await closed_issue_retries(context, ALL, client)
        routed = await route(context, ALL, client=client)

    assert _names(retried) == ["Implementer"]
    assert _names(routed) == ["Any Issue", "Implementer"]


@pytest.mark.asyncio
async def test_closed_issue_retry_requires_trigger_label(github) -> None:
    github.on(
        "GET",
        f"{REPO}/issues/10/dependencies/blocking",
        [{"number": 11, "state": "open", "labels": [{"name": "question"}]}],
    )
    context = _context("issues", {"action": "closed", "issue": {"number": 10}})

    async with github.client() as client:
        assert await closed_issue_retries(context, ALL, client) == []


@pytest.mark.asyncio
async def test_closed_issue_retry_lookup_failure_adds_nothing(github) -> None:
    github.on("GET", f"{REPO}/issues/10/dependencies/blocking", {"message": "x"}, status=500)
    context = _context("issues", {"action": "closed", "issue": {"number": 10}})

    async with github.client() as client:
        routed = await route(context, ALL, client=client)

    assert _names(routed) == ["Any Issue"]


@pytest.mark.asyncio
async def test_closed_issue_retry_ignores_other_actions(github) -> None:
    context = _context("issues", {"action": "opened", "issue": {"number": 10}})

    async with github.client() as client:
        assert await closed_issue_retries(context, ALL, client) == []

    assert github.requests == []
