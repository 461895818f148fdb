"""Output-intent kinds, per-item results and the shared execution context."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Literal

from repo_agents.agents.types import AgentDefinition
from repo_agents.dispatcher.preflight import DEFAULT_GIT_EMAIL, DEFAULT_GIT_USER
from repo_agents.errors import GitHubError
from repo_agents.github.client import GitHubClient

logger = logging.getLogger(__name__)

Rejection = Literal["not_allowed", "limit_exceeded", "parse_error"]


class OutputKind(str, Enum):
    ADD_COMMENT = "add-comment"
    ADD_LABEL = "add-label"
    REMOVE_LABEL = "remove-label"
    CREATE_ISSUE = "create-issue"
    CREATE_DISCUSSION = "create-discussion"
    CREATE_PR = "create-pr"
    UPDATE_FILE = "update-file"
    CLOSE_ISSUE = "close-issue"
    CLOSE_PR = "close-pr"

    @classmethod
    def parse(cls, value: str) -> OutputKind | None:
        try:
            return cls(value)
        except ValueError:
            return None


@dataclass(slots=True)
class OutputItem:
    """One output-intent file as found on disk."""

    type_name: str
    filename: str
    sequence: int
    data: dict[str, Any] = field(default_factory=dict)
    parse_error: str | None = None

    @property
    def kind(self) -> OutputKind | None:
        return OutputKind.parse(self.type_name)


@dataclass(slots=True)
class OutputResult:
    output_type: str
    filename: str
    validation_passed: bool = False
    execution_succeeded: bool = False
    error: str | None = None
    rejection: Rejection | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class ExecutionContext:
    client: GitHubClient
    agent: AgentDefinition
    issue_number: int | None = None
    pr_number: int | None = None
    server_url: str = "https://github.com"
    run_id: str = "0"
    run_number: str = "0"
    workflow: str = "AI Agents"
    git_user: str = DEFAULT_GIT_USER
    git_email: str = DEFAULT_GIT_EMAIL
    _labels: set[str] | None = field(default=None, repr=False)
    _categories: dict[str, str] | None = field(default=None, repr=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def target_number(self) -> int | None:
        return self.issue_number or self.pr_number

    @property
    def run_url(self) -> str:
        return f"{self.server_url}/{self.client.repository}/actions/runs/{self.run_id}"

    async def repo_labels(self) -> set[str] | None:
        """Repository label names, or None when they cannot be fetched."""
        async with self._lock:
            if self._labels is None:
                try:
                    self._labels = await self.client.list_label_names()
                except GitHubError as exc:
                    logger.warning("Label lookup failed, skipping label existence check: %s", exc)
                    return None
            return self._labels

    async def discussion_categories(self) -> dict[str, str] | None:
        async with self._lock:
            if self._categories is None:
                try:
                    self._categories = await self.client.discussion_categories()
                except GitHubError as exc:
                    logger.warning("Category lookup failed, skipping category check: %s", exc)
                    return None
            return self._categories

    def attribution(self) -> str:
        path = self.agent.path
        marker = ".github/agents/"
        relative = path[path.index(marker) :] if marker in path else path
        agent_ref = self.agent.name
        if relative:
            agent_url = f"{self.server_url}/{self.client.repository}/blob/main/{relative}"
            agent_ref = f"[{self.agent.name}]({agent_url})"
        return (
            f"\n\n> *Generated by {agent_ref} in workflow "
            f"[{self.workflow} #{self.run_number}]({self.run_url})*"
        )
