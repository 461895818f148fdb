"""Router: match a DispatchContext against declared agent triggers."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path

from repo_agents.agents.types import AgentDefinition, EventTypes
from repo_agents.dispatcher.types import DispatchContext
from repo_agents.errors import GitHubError
from repo_agents.github.client import GitHubClient

logger = logging.getLogger(__name__)


def _action_matches(trigger: EventTypes | None, action: str) -> bool:
    if trigger is None:
        return False
    return not trigger.types or action in trigger.types


def _selector_matches(agent: AgentDefinition, selector: str) -> bool:
    if agent.name == selector:
        return True
    return bool(agent.path) and Path(agent.path).stem == selector


def matches_event(
    agent: AgentDefinition, context: DispatchContext, *, selector: str = ""
) -> bool:
    triggers = agent.on
    event = context.event_name
    action = context.event_action
    if event == "issues":
        return _action_matches(triggers.issues, action)
    if event == "pull_request":
        return _action_matches(triggers.pull_request, action)
    if event == "discussion":
        return _action_matches(triggers.discussion, action)
    if event == "repository_dispatch":
        return _action_matches(triggers.repository_dispatch, action)
    if event == "schedule":
        if not triggers.schedule:
            return False
        cron = context.schedule.cron if context.schedule else ""
        # Without the firing cron every scheduled agent is a candidate
        return not cron or cron in {entry.cron for entry in triggers.schedule}
    if event == "workflow_dispatch":
        if triggers.workflow_dispatch is None:
            return False
        return not selector or _selector_matches(agent, selector)
    return False


def route_event(
    context: DispatchContext, agents: Sequence[AgentDefinition], *, selector: str = ""
) -> list[AgentDefinition]:
    """Agents whose triggers match the event, in discovery order.

    Pure: the same definitions and event always yield the same list.
    """
    return [agent for agent in agents if matches_event(agent, context, selector=selector)]


async def closed_issue_retries(
    context: DispatchContext, agents: Sequence[AgentDefinition], client: GitHubClient
) -> list[AgentDefinition]:
    """Agents to re-run for open issues that the closed issue was blocking."""
    if context.event_name != "issues" or context.event_action != "closed":
        return []
    if context.issue is None or not context.issue.number:
        return []
    candidates = [agent for agent in agents if agent.pre_flight.check_blocking_issues]
    if not candidates:
        return []

    try:
        blocked = await client.blocking(context.issue.number)
    except GitHubError as exc:
        logger.warning("Closed-issue retry lookup for #%s failed: %s", context.issue.number, exc)
        return []

    open_blocked = [item for item in blocked if item.get("state") == "open"]
    if not open_blocked:
        logger.info("No open issues were blocked by #%s", context.issue.number)
        return []

    matched: list[AgentDefinition] = []
    for issue in open_blocked:
        labels = {
            str(label.get("name"))
            for label in issue.get("labels", [])
            if isinstance(label, dict)
        }
        for agent in candidates:
            if agent in matched:
                continue
            if not agent.trigger_labels or labels.intersection(agent.trigger_labels):
                logger.info("Retrying %s for unblocked issue #%s", agent.name, issue.get("number"))
                matched.append(agent)
    return matched


async def route(
    context: DispatchContext,
    agents: Sequence[AgentDefinition],
    *,
    client: GitHubClient | None = None,
    selector: str = "",
) -> list[AgentDefinition]:
    matched = route_event(context, agents, selector=selector)
    if client is not None:
        names = {agent.name for agent in matched}
        for agent in await closed_issue_retries(context, agents, client):
            if agent.name not in names:
                names.add(agent.name)
                matched.append(agent)
    logger.info(
        "Routed %s/%s to %d agent(s): %s",
        context.event_name,
        context.event_action or "-",
        len(matched),
        ", ".join(agent.name for agent in matched) or "none",
    )
    return matched
