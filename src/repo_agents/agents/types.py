"""Agent definition data models."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from repo_agents.ids import slugify

Access = Literal["read", "write"]

OUTPUT_TYPES = (
    "add-comment",
    "add-label",
    "remove-label",
    "create-issue",
    "create-discussion",
    "create-pr",
    "update-file",
    "close-issue",
    "close-pr",
)

# Output type -> permission scopes of which at least one must be "write".
OUTPUT_PERMISSIONS: dict[str, tuple[str, ...]] = {
    "add-comment": ("issues", "pull_requests"),
    "add-label": ("issues", "pull_requests"),
    "remove-label": ("issues", "pull_requests"),
    "create-issue": ("issues",),
    "close-issue": ("issues",),
    "close-pr": ("pull_requests",),
    "create-discussion": ("discussions",),
    "create-pr": ("contents",),
    "update-file": ("contents",),
}

FILE_MODIFYING_OUTPUTS = frozenset({"update-file"})


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)


class EventTypes(_Frozen):
    types: list[str] = Field(default_factory=list)


class ScheduleEntry(_Frozen):
    cron: str


class WorkflowDispatch(_Frozen):
    inputs: dict[str, dict[str, object]] = Field(default_factory=dict)


class TriggerConfig(_Frozen):
    issues: EventTypes | None = None
    pull_request: EventTypes | None = None
    discussion: EventTypes | None = None
    schedule: list[ScheduleEntry] | None = None
    workflow_dispatch: WorkflowDispatch | None = None
    repository_dispatch: EventTypes | None = None

    @field_validator(
        "issues", "pull_request", "discussion", "repository_dispatch", mode="before"
    )
    @classmethod
    def _empty_event(cls, value: object) -> object:
        # `issues: true` means any action
        if value is True:
            return {}
        if value is False:
            return None
        return value

    @field_validator("workflow_dispatch", mode="before")
    @classmethod
    def _bool_dispatch(cls, value: object) -> object:
        if value is True:
            return {}
        if value is False:
            return None
        return value

    def has_any(self) -> bool:
        return any(
            item is not None
            for item in (
                self.issues,
                self.pull_request,
                self.discussion,
                self.schedule,
                self.workflow_dispatch,
                self.repository_dispatch,
            )
        )


class PermissionsConfig(_Frozen):
    contents: Access = "read"
    issues: Access = "read"
    pull_requests: Access = "read"
    discussions: Access = "read"


class OutputConfig(_Frozen):
    max: int | None = Field(default=None, ge=1)
    sign: bool = False


class PreFlightConfig(_Frozen):
    check_blocking_issues: bool = False


class AuditConfig(_Frozen):
    create_issues: bool = True
    labels: list[str] = Field(default_factory=lambda: ["agent-failure"])
    assignees: list[str] = Field(default_factory=list)


class IssuesContext(_Frozen):
    states: list[str] = Field(default_factory=list)
    labels: list[str] = Field(default_factory=list)
    exclude_labels: list[str] = Field(default_factory=list)
    assignees: list[str] = Field(default_factory=list)
    limit: int = Field(default=100, ge=1, le=100)


class PullRequestsContext(_Frozen):
    states: list[str] = Field(default_factory=list)
    labels: list[str] = Field(default_factory=list)
    exclude_labels: list[str] = Field(default_factory=list)
    reviewers: list[str] = Field(default_factory=list)
    base_branch: str = ""
    head_branch: str = ""
    limit: int = Field(default=100, ge=1, le=100)


class DiscussionsContext(_Frozen):
    categories: list[str] = Field(default_factory=list)
    answered: bool = False
    unanswered: bool = False
    limit: int = Field(default=100, ge=1, le=100)


class CommitsContext(_Frozen):
    branches: list[str] = Field(default_factory=lambda: ["main", "master"])
    authors: list[str] = Field(default_factory=list)
    exclude_authors: list[str] = Field(default_factory=list)
    limit: int = Field(default=100, ge=1, le=100)


class ReleasesContext(_Frozen):
    prerelease: bool | None = None
    draft: bool | None = None
    limit: int = Field(default=20, ge=1, le=100)


class WorkflowRunsContext(_Frozen):
    status: list[str] = Field(default_factory=lambda: ["failure"])
    limit: int = Field(default=50, ge=1, le=100)


class ContextConfig(_Frozen):
    issues: IssuesContext | None = None
    pull_requests: PullRequestsContext | None = None
    discussions: DiscussionsContext | None = None
    commits: CommitsContext | None = None
    releases: ReleasesContext | None = None
    workflow_runs: WorkflowRunsContext | None = None
    stars: bool = False
    forks: bool = False
    since: str = "last-run"
    min_items: int = Field(default=1, ge=0)

    @field_validator(
        "issues",
        "pull_requests",
        "discussions",
        "commits",
        "releases",
        "workflow_runs",
        mode="before",
    )
    @classmethod
    def _bare_resource(cls, value: object) -> object:
        if value is True:
            return {}
        if value is False:
            return None
        return value


class AgentDefinition(_Frozen):
    name: str = Field(min_length=1)
    on: TriggerConfig
    permissions: PermissionsConfig = Field(default_factory=PermissionsConfig)
    outputs: dict[str, OutputConfig] = Field(default_factory=dict)
    allowed_actors: list[str] = Field(default_factory=list, alias="allowed-actors")
    allowed_users: list[str] = Field(default_factory=list, alias="allowed-users")
    allowed_teams: list[str] = Field(default_factory=list, alias="allowed-teams")
    allowed_bots: list[str] = Field(default_factory=list, alias="allowed-bots")
    allowed_paths: list[str] = Field(default_factory=list, alias="allowed-paths")
    trigger_labels: list[str] = Field(default_factory=list)
    rate_limit_minutes: int = Field(default=5, ge=0)
    max_open_prs: int | None = Field(default=None, ge=1)
    pre_flight: PreFlightConfig = Field(default_factory=PreFlightConfig)
    progress_comment: bool | None = None
    context: ContextConfig | None = None
    audit: AuditConfig = Field(default_factory=AuditConfig)
    markdown: str = ""
    path: str = ""

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        clean = value.strip()
        if not clean:
            raise ValueError("name must be a non-empty string")
        return clean

    @field_validator("outputs", mode="before")
    @classmethod
    def _normalize_outputs(cls, value: object) -> object:
        if value is None:
            return {}
        if isinstance(value, list):
            return {str(item): {} for item in value}
        if isinstance(value, dict):
            normalized: dict[str, object] = {}
            for key, config in value.items():
                if config is False:
                    continue
                normalized[str(key)] = {} if config is True or config is None else config
            return normalized
        return value

    @model_validator(mode="after")
    def _check_policy(self) -> AgentDefinition:
        if not self.on.has_any():
            raise ValueError("at least one trigger must be specified")
        unknown = sorted(set(self.outputs) - set(OUTPUT_TYPES))
        if unknown:
            raise ValueError(f"unknown output types: {', '.join(unknown)}")
        for output_type in self.outputs:
            scopes = OUTPUT_PERMISSIONS[output_type]
            if not any(getattr(self.permissions, scope) == "write" for scope in scopes):
                required = " or ".join(f"{scope}: write" for scope in scopes)
                raise ValueError(f"{output_type} requires {required} permission")
            if output_type in FILE_MODIFYING_OUTPUTS and not self.allowed_paths:
                raise ValueError(f"{output_type} requires allowed-paths to be specified")
        return self

    @property
    def actor_allowlist(self) -> list[str]:
        return [*self.allowed_users, *self.allowed_actors]

    def output_config(self, output_type: str) -> OutputConfig | None:
        return self.outputs.get(output_type)

    def uses_progress_comment(self) -> bool:
        if self.progress_comment is not None:
            return self.progress_comment
        return self.on.issues is not None or self.on.pull_request is not None

    @property
    def workflow_file(self) -> str:
        stem = self.path.rsplit("/", 1)[-1].removesuffix(".md") if self.path else ""
        if not stem:
            stem = slugify(self.name)
        return f"agent-{stem}.yml"
