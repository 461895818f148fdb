"""Context collector: repository data an agent asked to see, as markdown."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from repo_agents.agents.types import (
    AgentDefinition,
    CommitsContext,
    ContextConfig,
    DiscussionsContext,
    IssuesContext,
    PullRequestsContext,
    ReleasesContext,
    WorkflowRunsContext,
)
from repo_agents.dispatcher.types import StageResult
from repo_agents.errors import GitHubError
from repo_agents.github.client import GitHubClient
from repo_agents.ids import parse_iso
from repo_agents.logging import log_stage

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(hours=24)
_DURATION = re.compile(r"^(\d+)([hd])$")

DISCUSSIONS_QUERY = """
query($owner: String!, $repo: String!, $limit: Int!) {
  repository(owner: $owner, name: $repo) {
    discussions(first: $limit, orderBy: {field: UPDATED_AT, direction: DESC}) {
      nodes {
        number
        title
        author { login }
        url
        createdAt
        updatedAt
        category { name }
        answer { isAnswer }
        labels(first: 10) { nodes { name } }
        body
      }
    }
  }
}
"""


@dataclass(slots=True)
class IssueItem:
    number: int
    title: str
    state: str
    author: str
    url: str
    updated_at: str
    labels: list[str] = field(default_factory=list)
    body: str = ""


@dataclass(slots=True)
class PullRequestItem:
    number: int
    title: str
    state: str
    author: str
    url: str
    updated_at: str
    merged_at: str | None = None
    base_branch: str = ""
    head_branch: str = ""
    labels: list[str] = field(default_factory=list)
    body: str = ""


@dataclass(slots=True)
class DiscussionItem:
    number: int
    title: str
    author: str
    url: str
    updated_at: str
    category: str
    answered: bool = False
    body: str = ""


@dataclass(slots=True)
class CommitItem:
    sha: str
    message: str
    author: str
    date: str
    url: str
    branch: str


@dataclass(slots=True)
class ReleaseItem:
    tag_name: str
    name: str
    author: str
    url: str
    published_at: str
    prerelease: bool = False
    body: str = ""


@dataclass(slots=True)
class WorkflowRunItem:
    id: int
    name: str
    conclusion: str
    branch: str
    author: str
    url: str
    created_at: str


@dataclass(slots=True)
class CollectedContext:
    since: datetime
    collected_at: datetime
    issues: list[IssueItem] = field(default_factory=list)
    pull_requests: list[PullRequestItem] = field(default_factory=list)
    discussions: list[DiscussionItem] = field(default_factory=list)
    commits: list[CommitItem] = field(default_factory=list)
    releases: list[ReleaseItem] = field(default_factory=list)
    workflow_runs: list[WorkflowRunItem] = field(default_factory=list)
    stars: int | None = None
    forks: int | None = None

    @property
    def total_items(self) -> int:
        total = (
            len(self.issues)
            + len(self.pull_requests)
            + len(self.discussions)
            + len(self.commits)
            + len(self.releases)
            + len(self.workflow_runs)
        )
        # Counts contribute one item each
        total += int(self.stars is not None) + int(self.forks is not None)
        return total

    def render(self) -> str:
        lines = [
            "# Collected Context",
            "",
            f"*Collected at: {self.collected_at.isoformat()}*",
            f"*Since: {self.since.isoformat()}*",
            f"*Total items: {self.total_items}*",
            "",
        ]
        if self.issues:
            lines += ["## Issues", ""]
            for issue in self.issues:
                lines += [
                    f"### [#{issue.number}] {issue.title}",
                    f"**State:** {issue.state} | **Author:** @{issue.author} "
                    f"| **Updated:** {issue.updated_at}",
                    f"**Labels:** {', '.join(issue.labels) or 'none'}",
                    f"**URL:** {issue.url}",
                ]
                if issue.body:
                    lines += ["", issue.body]
                lines += ["", "---", ""]
        if self.pull_requests:
            lines += ["## Pull Requests", ""]
            for pr in self.pull_requests:
                state = f"{pr.state} (merged)" if pr.merged_at else pr.state
                lines += [
                    f"### [#{pr.number}] {pr.title}",
                    f"**State:** {state} | **Author:** @{pr.author} | **Updated:** {pr.updated_at}",
                    f"**Branch:** {pr.head_branch} -> {pr.base_branch}",
                    f"**Labels:** {', '.join(pr.labels) or 'none'}",
                    f"**URL:** {pr.url}",
                ]
                if pr.body:
                    lines += ["", pr.body]
                lines += ["", "---", ""]
        if self.discussions:
            lines += ["## Discussions", ""]
            for discussion in self.discussions:
                lines += [
                    f"### [#{discussion.number}] {discussion.title}",
                    f"**Category:** {discussion.category} | **Author:** @{discussion.author} "
                    f"| **Updated:** {discussion.updated_at}",
                    f"**Status:** {'Answered' if discussion.answered else 'Unanswered'}",
                    f"**URL:** {discussion.url}",
                ]
                if discussion.body:
                    lines += ["", discussion.body]
                lines += ["", "---", ""]
        if self.commits:
            lines += ["## Commits", ""]
            lines += [
                f"- [`{commit.sha}`]({commit.url}) {commit.message} "
                f"- @{commit.author} ({commit.date})"
                for commit in self.commits
            ]
            lines.append("")
        if self.releases:
            lines += ["## Releases", ""]
            for release in self.releases:
                lines += [
                    f"### {release.tag_name} - {release.name}",
                    f"**Author:** @{release.author} | **Published:** {release.published_at}",
                    f"**Type:** {'Pre-release' if release.prerelease else 'Release'}",
                    f"**URL:** {release.url}",
                ]
                if release.body:
                    lines += ["", release.body]
                lines += ["", "---", ""]
        if self.workflow_runs:
            lines += ["## Workflow Runs", ""]
            for run in self.workflow_runs:
                lines += [
                    f"### {run.name} - Run #{run.id}",
                    f"**Status:** {run.conclusion} | **Branch:** {run.branch} "
                    f"| **Author:** @{run.author}",
                    f"**Created:** {run.created_at}",
                    f"**URL:** {run.url}",
                    "",
                    "---",
                    "",
                ]
        if self.stars is not None:
            lines += [f"## Stars: {self.stars}", ""]
        if self.forks is not None:
            lines += [f"## Forks: {self.forks}", ""]
        return "\n".join(lines)


def parse_window(since: str, now: datetime) -> datetime | None:
    """Resolve an explicit ``<N>h``/``<N>d`` window; None for last-run or invalid."""
    match = _DURATION.match(since.strip())
    if match is None:
        return None
    amount = int(match.group(1))
    delta = timedelta(hours=amount) if match.group(2) == "h" else timedelta(days=amount)
    return now - delta


async def resolve_since(
    agent: AgentDefinition, config: ContextConfig, client: GitHubClient, now: datetime
) -> datetime:
    explicit = parse_window(config.since, now)
    if explicit is not None:
        return explicit
    if config.since != "last-run":
        logger.warning("Invalid context window %r, using 24h", config.since)
        return now - DEFAULT_WINDOW
    try:
        runs = await client.recent_successful_runs(agent.workflow_file, limit=1)
    except GitHubError as exc:
        logger.warning("Last-run lookup failed, using 24h: %s", exc)
        runs = []
    last = parse_iso(str(runs[0].get("created_at", ""))) if runs else None
    return last or now - DEFAULT_WINDOW


def normalize_state(states: list[str]) -> str:
    if not states or "all" in states or len(states) > 1:
        return "all"
    return "closed" if states[0] == "merged" else states[0]


def _names(items: Any, key: str = "name") -> list[str]:
    if not isinstance(items, list):
        return []
    return [str(item.get(key)) for item in items if isinstance(item, dict) and item.get(key)]


def _login(value: Any) -> str:
    return str(value.get("login", "")) if isinstance(value, dict) else ""


def _since_ok(value: Any, since: datetime) -> bool:
    stamp = parse_iso(str(value or ""))
    return stamp is not None and stamp >= since


async def collect_issues(
    client: GitHubClient, config: IssuesContext, since: datetime
) -> list[IssueItem]:
    raw = await client.list_issues(state=normalize_state(config.states), limit=config.limit)
    items: list[IssueItem] = []
    for issue in raw:
        if "pull_request" in issue or not _since_ok(issue.get("updated_at"), since):
            continue
        labels = _names(issue.get("labels"))
        if config.labels and not set(labels) & set(config.labels):
            continue
        if config.exclude_labels and set(labels) & set(config.exclude_labels):
            continue
        assignees = set(_names(issue.get("assignees"), "login"))
        if config.assignees and not assignees & set(config.assignees):
            continue
        items.append(
            IssueItem(
                number=int(issue.get("number", 0)),
                title=str(issue.get("title", "")),
                state=str(issue.get("state", "")),
                author=_login(issue.get("user")),
                url=str(issue.get("html_url", "")),
                updated_at=str(issue.get("updated_at", "")),
                labels=labels,
                body=str(issue.get("body") or ""),
            )
        )
    return items[: config.limit]


async def collect_pull_requests(
    client: GitHubClient, config: PullRequestsContext, since: datetime
) -> list[PullRequestItem]:
    raw = await client.paginate(
        f"{client.repo_path}/pulls",
        params={"state": normalize_state(config.states)},
        limit=config.limit,
    )
    merged_only = config.states == ["merged"]
    items: list[PullRequestItem] = []
    for pr in raw:
        if not _since_ok(pr.get("updated_at"), since):
            continue
        if merged_only and not pr.get("merged_at"):
            continue
        labels = _names(pr.get("labels"))
        if config.labels and not set(labels) & set(config.labels):
            continue
        if config.exclude_labels and set(labels) & set(config.exclude_labels):
            continue
        reviewers = _names(pr.get("requested_reviewers"), "login")
        if config.reviewers and not set(reviewers) & set(config.reviewers):
            continue
        base = str((pr.get("base") or {}).get("ref", ""))
        head = str((pr.get("head") or {}).get("ref", ""))
        if config.base_branch and base != config.base_branch:
            continue
        if config.head_branch and head != config.head_branch:
            continue
        items.append(
            PullRequestItem(
                number=int(pr.get("number", 0)),
                title=str(pr.get("title", "")),
                state=str(pr.get("state", "")),
                author=_login(pr.get("user")),
                url=str(pr.get("html_url", "")),
                updated_at=str(pr.get("updated_at", "")),
                merged_at=pr.get("merged_at"),
                base_branch=base,
                head_branch=head,
                labels=labels,
                body=str(pr.get("body") or ""),
            )
        )
    return items[: config.limit]


async def collect_discussions(
    client: GitHubClient, config: DiscussionsContext, since: datetime
) -> list[DiscussionItem]:
    try:
        data = await client.graphql(
            DISCUSSIONS_QUERY, {"owner": client.owner, "repo": client.repo, "limit": config.limit}
        )
    except GitHubError as exc:
        logger.warning("Discussion collection failed, counting zero items: %s", exc)
        return []
    nodes = (((data.get("repository") or {}).get("discussions") or {}).get("nodes")) or []
    items: list[DiscussionItem] = []
    for node in nodes:
        if not isinstance(node, dict) or not _since_ok(node.get("updatedAt"), since):
            continue
        category = str((node.get("category") or {}).get("name", ""))
        answered = bool((node.get("answer") or {}).get("isAnswer"))
        if config.categories and category not in config.categories:
            continue
        if config.answered and not answered:
            continue
        if config.unanswered and answered:
            continue
        items.append(
            DiscussionItem(
                number=int(node.get("number", 0)),
                title=str(node.get("title", "")),
                author=_login(node.get("author")),
                url=str(node.get("url", "")),
                updated_at=str(node.get("updatedAt", "")),
                category=category,
                answered=answered,
                body=str(node.get("body") or ""),
            )
        )
    return items


async def collect_commits(
    client: GitHubClient, config: CommitsContext, since: datetime
) -> list[CommitItem]:
    items: list[CommitItem] = []
    for branch in config.branches:
        try:
            if await client.branch_sha(branch) is None:
                logger.info("Branch %s not found, skipping commits", branch)
                continue
            raw = await client.paginate(
                f"{client.repo_path}/commits",
                params={"sha": branch, "since": since.isoformat()},
                limit=config.limit,
            )
        except GitHubError as exc:
            logger.warning("Commit lookup for branch %s failed, skipping: %s", branch, exc)
            continue
        for commit in raw:
            detail = commit.get("commit") or {}
            author = str((detail.get("author") or {}).get("name", ""))
            if config.authors and author not in config.authors:
                continue
            if author in config.exclude_authors:
                continue
            items.append(
                CommitItem(
                    sha=str(commit.get("sha", ""))[:7],
                    message=str(detail.get("message", "")).split("\n", 1)[0],
                    author=author,
                    date=str((detail.get("author") or {}).get("date", "")),
                    url=str(commit.get("html_url", "")),
                    branch=branch,
                )
            )
    return items


async def collect_releases(
    client: GitHubClient, config: ReleasesContext, since: datetime
) -> list[ReleaseItem]:
    raw = await client.paginate(f"{client.repo_path}/releases", limit=config.limit)
    items: list[ReleaseItem] = []
    for release in raw:
        if not _since_ok(release.get("created_at"), since):
            continue
        if config.prerelease is False and release.get("prerelease"):
            continue
        if config.draft is False and release.get("draft"):
            continue
        items.append(
            ReleaseItem(
                tag_name=str(release.get("tag_name", "")),
                name=str(release.get("name") or ""),
                author=_login(release.get("author")),
                url=str(release.get("html_url", "")),
                published_at=str(release.get("published_at") or ""),
                prerelease=bool(release.get("prerelease")),
                body=str(release.get("body") or ""),
            )
        )
    return items


async def collect_workflow_runs(
    client: GitHubClient, config: WorkflowRunsContext, since: datetime
) -> list[WorkflowRunItem]:
    raw = await client.paginate(
        f"{client.repo_path}/actions/runs", limit=config.limit, key="workflow_runs"
    )
    return [
        WorkflowRunItem(
            id=int(run.get("id", 0)),
            name=str(run.get("name", "")),
            conclusion=str(run.get("conclusion") or ""),
            branch=str(run.get("head_branch") or ""),
            author=_login(run.get("actor")),
            url=str(run.get("html_url", "")),
            created_at=str(run.get("created_at", "")),
        )
        for run in raw
        if _since_ok(run.get("created_at"), since) and run.get("conclusion") in config.status
    ]


async def collect(
    agent: AgentDefinition, client: GitHubClient, *, now: datetime | None = None
) -> CollectedContext:
    """Query every configured resource concurrently.

    REST failures propagate as ``GitHubError``; a failed discussion query
    counts as zero items.
    """
    config = agent.context or ContextConfig()
    current = now or datetime.now(UTC)
    since = await resolve_since(agent, config, client, current)
    collected = CollectedContext(since=since, collected_at=current)

    async def _none() -> list[Any]:
        return []

    results = await asyncio.gather(
        collect_issues(client, config.issues, since) if config.issues else _none(),
        collect_pull_requests(client, config.pull_requests, since)
        if config.pull_requests
        else _none(),
        collect_discussions(client, config.discussions, since) if config.discussions else _none(),
        collect_commits(client, config.commits, since) if config.commits else _none(),
        collect_releases(client, config.releases, since) if config.releases else _none(),
        collect_workflow_runs(client, config.workflow_runs, since)
        if config.workflow_runs
        else _none(),
    )
    (
        collected.issues,
        collected.pull_requests,
        collected.discussions,
        collected.commits,
        collected.releases,
        collected.workflow_runs,
    ) = results

    if config.stars or config.forks:
        repository = await client.get_repository()
        if config.stars:
            collected.stars = int(repository.get("stargazers_count", 0) or 0)
        if config.forks:
            collected.forks = int(repository.get("forks_count", 0) or 0)
    return collected


@log_stage("context")
async def run_context_stage(
    agent: AgentDefinition,
    client: GitHubClient,
    *,
    context_path: str | Path,
    now: datetime | None = None,
) -> StageResult:
    if agent.context is None:
        return StageResult.skip(
            "No context configuration in agent definition",
            **{"has-context": "false", "total-items": "0"},
        )
    try:
        collected = await collect(agent, client, now=now)
    except GitHubError as exc:
        logger.error("Context collection for %s failed: %s", agent.name, exc)
        return StageResult.failure(f"Context collection failed: {exc}", **{"has-context": "false"})

    total = collected.total_items
    minimum = agent.context.min_items
    if total < minimum:
        return StageResult.skip(
            f"Collected {total} items, but minimum is {minimum}",
            **{"has-context": "false", "total-items": str(total)},
        )

    target = Path(context_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(collected.render(), encoding="utf-8")
    logger.info("Collected %d context items for %s", total, agent.name)
    return StageResult(
        success=True,
        outputs={"has-context": "true", "total-items": str(total)},
        artifacts=[str(target)],
    )
