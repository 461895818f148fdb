"""Dispatch pipeline data contracts."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from repo_agents.config import Settings


@dataclass(frozen=True, slots=True)
class RunEnvironment:
    """Host run facts for one triggering event."""

    repository: str
    run_id: str = "0"
    run_attempt: str = "1"
    server_url: str = "https://github.com"
    event_name: str = ""
    event_path: str = ""
    ref: str = ""
    sha: str = ""
    actor: str = ""
    event_schedule: str = ""
    workflow_dispatch_agent: str = ""

    @property
    def run_url(self) -> str:
        return f"{self.server_url}/{self.repository}/actions/runs/{self.run_id}"

    @classmethod
    def from_settings(cls, settings: Settings) -> RunEnvironment:
        return cls(
            repository=settings.github_repository,
            run_id=settings.github_run_id,
            run_attempt=settings.github_run_attempt,
            server_url=settings.github_server_url.rstrip("/"),
            event_name=settings.github_event_name,
            event_path=settings.github_event_path,
            ref=settings.github_ref,
            sha=settings.github_sha,
            actor=settings.github_actor,
            event_schedule=settings.github_event_schedule,
            workflow_dispatch_agent=settings.workflow_dispatch_agent,
        )


@dataclass(frozen=True, slots=True)
class IssueData:
    number: int = 0
    title: str = ""
    body: str = ""
    author: str = ""
    labels: tuple[str, ...] = ()
    state: str = ""
    url: str = ""


@dataclass(frozen=True, slots=True)
class PullRequestData:
    number: int = 0
    title: str = ""
    body: str = ""
    author: str = ""
    labels: tuple[str, ...] = ()
    base_branch: str = ""
    head_branch: str = ""
    state: str = ""
    url: str = ""


@dataclass(frozen=True, slots=True)
class DiscussionData:
    number: int = 0
    title: str = ""
    body: str = ""
    author: str = ""
    labels: tuple[str, ...] = ()
    state: str = ""
    category: str = ""
    url: str = ""


@dataclass(frozen=True, slots=True)
class ScheduleData:
    cron: str = ""


@dataclass(frozen=True, slots=True)
class RepositoryDispatchData:
    event_type: str = ""
    client_payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class DispatchContext:
    dispatch_id: str
    dispatched_at: str
    run_id: str
    run_url: str
    event_name: str
    event_action: str
    repository: str
    ref: str = ""
    sha: str = ""
    actor: str = ""
    issue: IssueData | None = None
    pull_request: PullRequestData | None = None
    discussion: DiscussionData | None = None
    schedule: ScheduleData | None = None
    repository_dispatch: RepositoryDispatchData | None = None
    payload: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def target_number(self) -> int | None:
        if self.issue is not None and self.issue.number:
            return self.issue.number
        if self.pull_request is not None and self.pull_request.number:
            return self.pull_request.number
        return None

    @property
    def target_labels(self) -> tuple[str, ...]:
        if self.issue is not None:
            return self.issue.labels
        if self.pull_request is not None:
            return self.pull_request.labels
        if self.discussion is not None:
            return self.discussion.labels
        return ()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("payload", None)
        for key in ("issue", "pull_request", "discussion", "schedule", "repository_dispatch"):
            if data[key] is None:
                data.pop(key)
        return data


@dataclass(slots=True)
class StageResult:
    """Outcome of one pipeline stage.

    A skip is ``success=True`` with ``skip_reason`` set; only failures carry
    ``success=False``.
    """

    success: bool
    outputs: dict[str, str] = field(default_factory=dict)
    skip_reason: str | None = None
    artifacts: list[str] = field(default_factory=list)

    @property
    def skipped(self) -> bool:
        return self.success and self.skip_reason is not None

    @property
    def status(self) -> str:
        if not self.success:
            return "failure"
        return "skipped" if self.skip_reason else "success"

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status,
            "skip_reason": self.skip_reason,
            "outputs": dict(self.outputs),
            "artifacts": list(self.artifacts),
        }

    @classmethod
    def skip(cls, reason: str, **outputs: str) -> StageResult:
        return cls(success=True, outputs=dict(outputs), skip_reason=reason)

    @classmethod
    def failure(cls, reason: str, **outputs: str) -> StageResult:
        return cls(success=False, outputs={"error": reason, **outputs})
