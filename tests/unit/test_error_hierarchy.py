"""Tests for error hierarchy."""

from repo_agents.errors import (
    ConfigError,
    DefinitionError,
    EventPayloadError,
    GitHubError,
    OutputExecutionError,
    OutputValidationError,
    PreflightError,
    RepoAgentsError,
)


def test_hierarchy() -> None:
    for cls in (
        ConfigError,
        DefinitionError,
        EventPayloadError,
        GitHubError,
        OutputExecutionError,
        OutputValidationError,
        PreflightError,
    ):
        assert issubclass(cls, RepoAgentsError)


def test_retryable_default() -> None:
    assert RepoAgentsError("test").retryable is False
    assert GitHubError("test").retryable is True
    assert GitHubError("bad request", status_code=422, retryable=False).retryable is False
    assert PreflightError("test").retryable is False


def test_definition_error_carries_path_and_errors() -> None:
    err = DefinitionError("invalid", path="agents/triage.md", errors=["name: missing"])
    assert str(err) == "invalid"
    assert err.path == "agents/triage.md"
    assert err.errors == ["name: missing"]


def test_catch_as_repo_agents_error() -> None:
    try:
        raise GitHubError("api down", status_code=503)
    except RepoAgentsError as exc:
        assert exc.retryable is True
        assert isinstance(exc, GitHubError)
        assert exc.status_code == 503


def test_config_error_is_a_value_error() -> None:
    assert issubclass(ConfigError, ValueError)


def test_output_validation_error_lists_every_problem() -> None:
    err = OutputValidationError("two problems", errors=["`body` is required", "title too long"])
    assert err.errors == ["`body` is required", "title too long"]
    assert OutputValidationError("single").errors == ["single"]
