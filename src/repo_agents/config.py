"""Application configuration contract."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from repo_agents.errors import ConfigError
from repo_agents.logging import LOG_FORMATS


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = Field(alias="APP_ENV", default="dev")
    log_level: str = Field(alias="LOG_LEVEL", default="INFO")
    log_format: str = Field(alias="LOG_FORMAT", default="auto")

    # Filesystem handoff between pipeline stages
    agents_dir: str = Field(alias="AGENTS_DIR", default=".github/agents")
    outputs_dir: str = Field(alias="OUTPUTS_DIR", default="/tmp/outputs")
    audit_dir: str = Field(alias="AUDIT_DIR", default="/tmp/audit")
    context_path: str = Field(alias="CONTEXT_PATH", default="/tmp/context/collected.md")
    dispatch_context_path: str = Field(
        alias="DISPATCH_CONTEXT_PATH", default="/tmp/dispatch-context/context.json"
    )
    validation_errors_dir: str = Field(
        alias="VALIDATION_ERRORS_DIR", default="/tmp/validation-errors"
    )
    metrics_path: str = Field(alias="METRICS_PATH", default="/tmp/audit-data/metrics/metrics.json")

    # AI service credentials
    anthropic_api_key: str = Field(alias="ANTHROPIC_API_KEY", default="")
    claude_code_oauth_token: str = Field(alias="CLAUDE_CODE_OAUTH_TOKEN", default="")

    # Automation credentials, highest priority first
    gh_app_id: str = Field(alias="GH_APP_ID", default="")
    gh_app_private_key: str = Field(alias="GH_APP_PRIVATE_KEY", default="")
    fallback_token: str = Field(alias="FALLBACK_TOKEN", default="")
    github_token: str = Field(alias="GITHUB_TOKEN", default="")

    github_api_base_url: str = Field(alias="GITHUB_API_BASE_URL", default="https://api.github.com")
    github_server_url: str = Field(alias="GITHUB_SERVER_URL", default="https://github.com")
    http_timeout_seconds: float = Field(alias="HTTP_TIMEOUT_SECONDS", default=15.0)

    workflow_dispatch_agent: str = Field(alias="WORKFLOW_DISPATCH_AGENT", default="")
    github_event_schedule: str = Field(alias="GITHUB_EVENT_SCHEDULE", default="")
    max_open_prs_label: str = Field(
        alias="MAX_OPEN_PRS_LABEL", default="implementation-in-progress"
    )
    config_issue_label: str = Field(alias="CONFIG_ISSUE_LABEL", default="repo-agents-config")
    dispatcher_workflow_file: str = Field(
        alias="DISPATCHER_WORKFLOW_FILE", default="agent-dispatcher.yml"
    )

    # GitHub Actions run metadata
    github_repository: str = Field(alias="GITHUB_REPOSITORY", default="")
    github_run_id: str = Field(alias="GITHUB_RUN_ID", default="0")
    github_run_attempt: str = Field(alias="GITHUB_RUN_ATTEMPT", default="1")
    github_run_number: str = Field(alias="GITHUB_RUN_NUMBER", default="0")
    github_workflow: str = Field(alias="GITHUB_WORKFLOW", default="AI Agents")
    github_event_name: str = Field(alias="GITHUB_EVENT_NAME", default="")
    github_event_path: str = Field(alias="GITHUB_EVENT_PATH", default="")
    github_ref: str = Field(alias="GITHUB_REF", default="")
    github_sha: str = Field(alias="GITHUB_SHA", default="")
    github_actor: str = Field(alias="GITHUB_ACTOR", default="")


def validate_settings_for_env(settings: Settings) -> None:
    if settings.http_timeout_seconds <= 0:
        raise ConfigError("invalid configuration: HTTP_TIMEOUT_SECONDS must be positive")
    if settings.log_format not in LOG_FORMATS:
        raise ConfigError(
            f"invalid configuration: LOG_FORMAT must be one of {', '.join(LOG_FORMATS)}"
        )

    if settings.app_env != "prod":
        return

    missing: list[str] = []
    if not settings.github_repository.strip():
        missing.append("GITHUB_REPOSITORY")
    elif "/" not in settings.github_repository:
        missing.append("GITHUB_REPOSITORY(owner/repo format)")
    if not (settings.anthropic_api_key.strip() or settings.claude_code_oauth_token.strip()):
        missing.append("ANTHROPIC_API_KEY|CLAUDE_CODE_OAUTH_TOKEN")
    if settings.gh_app_id.strip() and not settings.gh_app_private_key.strip():
        missing.append("GH_APP_PRIVATE_KEY")

    if missing:
        keys = ", ".join(sorted(set(missing)))
        raise ConfigError(f"invalid production configuration: {keys}")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
