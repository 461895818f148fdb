"""repo-agents exception hierarchy.

All pipeline exceptions inherit from RepoAgentsError so stage runners can
turn any of them into a failed StageResult with one except clause.
"""


class RepoAgentsError(Exception):
    """Base exception for all repo-agents errors."""

    def __init__(self, message: str = "", *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class ConfigError(RepoAgentsError, ValueError):
    """Invalid or missing configuration."""


class DefinitionError(RepoAgentsError):
    """Agent definition could not be read or failed validation."""

    def __init__(self, message: str = "", *, path: str = "", errors: list[str] | None = None):
        super().__init__(message)
        self.path = path
        self.errors = list(errors or [])


class EventPayloadError(RepoAgentsError):
    """Triggering event payload could not be read or parsed."""


class PreflightError(RepoAgentsError):
    """No usable credentials for this run."""


class GitHubError(RepoAgentsError):
    """Error talking to the GitHub API, including timeouts."""

    def __init__(
        self, message: str = "", *, status_code: int | None = None, retryable: bool = True
    ) -> None:
        super().__init__(message, retryable=retryable)
        self.status_code = status_code


class OutputValidationError(RepoAgentsError):
    """Output-intent file failed its schema or policy checks."""

    def __init__(self, message: str = "", *, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [message])


class OutputExecutionError(RepoAgentsError):
    """Validated output could not be applied to the repository."""
