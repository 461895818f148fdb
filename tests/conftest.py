import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
import pytest

from repo_agents.config import get_settings
from repo_agents.github.client import GitHubClient
from repo_agents.logging import clear_context

REPOSITORY = "acme/widgets"

Route = Callable[[httpx.Request], httpx.Response] | Any


class FakeGitHub:
    """In-memory GitHub API keyed by (method, path); unknown routes answer 404."""

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: list[httpx.Request] = []

    def on(self, method: str, path: str, body: Route = None, status: int = 200) -> None:
        if callable(body):
            self.routes[(method, path)] = body
        else:
            payload = body if body is not None else {}
            self.routes[(method, path)] = lambda request: httpx.Response(status, json=payload)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"message": "Not Found"})
        return route(request)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def client(self, repository: str = REPOSITORY) -> GitHubClient:
        return GitHubClient("test-token", repository, transport=self.transport())

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.method == method and request.url.path == path
        ]

    def bodies(self, method: str, path: str) -> list[Any]:
        return [json.loads(request.content) for request in self.calls(method, path)]


@pytest.fixture(autouse=True)
def test_env(tmp_path: Path, monkeypatch):
    for key in (
        "ANTHROPIC_API_KEY",
        "CLAUDE_CODE_OAUTH_TOKEN",
        "GH_APP_ID",
        "GH_APP_PRIVATE_KEY",
        "FALLBACK_TOKEN",
        "GITHUB_TOKEN",
        "GITHUB_EVENT_NAME",
        "GITHUB_EVENT_PATH",
        "GITHUB_ACTOR",
        "WORKFLOW_DISPATCH_AGENT",
        "GITHUB_EVENT_SCHEDULE",
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("GITHUB_REPOSITORY", REPOSITORY)
    monkeypatch.setenv("GITHUB_RUN_ID", "100")
    monkeypatch.setenv("GITHUB_RUN_ATTEMPT", "1")
    monkeypatch.setenv("GITHUB_RUN_NUMBER", "7")
    monkeypatch.setenv("AGENTS_DIR", str(tmp_path / "agents"))
    monkeypatch.setenv("OUTPUTS_DIR", str(tmp_path / "outputs"))
    monkeypatch.setenv("AUDIT_DIR", str(tmp_path / "audit"))
    monkeypatch.setenv("CONTEXT_PATH", str(tmp_path / "context" / "collected.md"))
    monkeypatch.setenv("DISPATCH_CONTEXT_PATH", str(tmp_path / "dispatch" / "context.json"))
    monkeypatch.setenv("VALIDATION_ERRORS_DIR", str(tmp_path / "validation-errors"))
    monkeypatch.setenv("METRICS_PATH", str(tmp_path / "metrics.json"))
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
    clear_context()


@pytest.fixture
def github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def write_agent(tmp_path: Path) -> Callable[[str, str], Path]:
    def _write(filename: str, frontmatter: str, body: str = "Do the work.") -> Path:
        path = tmp_path / "agents" / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"---\n{frontmatter.strip()}\n---\n\n{body}\n", encoding="utf-8")
        return path

    return _write


@pytest.fixture
def write_event(tmp_path: Path) -> Callable[[dict[str, Any]], Path]:
    def _write(payload: dict[str, Any]) -> Path:
        path = tmp_path / "event.json"
        path.write_text(json.dumps(payload), encoding="utf-8")
        return path

    return _write
