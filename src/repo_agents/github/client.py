"""Async GitHub REST and GraphQL client."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from repo_agents.errors import GitHubError

logger = logging.getLogger(__name__)

API_VERSION = "2022-11-28"
MAX_PAGES = 10


def github_headers(token: str) -> dict[str, str]:
    headers = {
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": API_VERSION,
        "User-Agent": "repo-agents/1.0",
    }
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def split_repository(repository: str) -> tuple[str, str]:
    parts = repository.split("/")
    if len(parts) != 2 or not all(parts):
        raise ValueError(f"invalid repository format: {repository!r}, expected 'owner/repo'")
    return parts[0], parts[1]


class GitHubClient:
    """Thin wrapper over ``httpx.AsyncClient`` bound to one repository.

    Every failure (HTTP status, transport error, timeout) surfaces as
    ``GitHubError``. Callers that treat a lookup as best-effort catch it there.
    """

    def __init__(
        self,
        token: str,
        repository: str,
        *,
        base_url: str = "https://api.github.com",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.owner, self.repo = split_repository(repository)
        self.repository = repository
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=github_headers(token),
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> GitHubClient:
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    @property
    def repo_path(self) -> str:
        return f"/repos/{self.owner}/{self.repo}"

    async def _send(
        self, method: str, path: str, *, params: dict[str, Any] | None = None, json: Any = None
    ) -> httpx.Response:
        try:
            return await self._client.request(method, path, params=params, json=json)
        except httpx.TimeoutException as exc:
            raise GitHubError(f"{method} {path} timed out") from exc
        except httpx.HTTPError as exc:
            raise GitHubError(f"{method} {path} failed: {exc}") from exc

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        allow_404: bool = False,
    ) -> Any:
        resp = await self._send(method, path, params=params, json=json)
        if resp.status_code == 404 and allow_404:
            return None
        if resp.status_code >= 400:
            message = ""
            try:
                payload = resp.json()
                if isinstance(payload, dict):
                    message = str(payload.get("message", ""))
            except ValueError:
                message = resp.text[:200]
            raise GitHubError(
                f"{method} {path} returned {resp.status_code}: {message}".rstrip(": "),
                status_code=resp.status_code,
                retryable=resp.status_code >= 500 or resp.status_code == 429,
            )
        if resp.status_code == 204 or not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            raise GitHubError(f"{method} {path} returned invalid JSON") from exc

    async def get(self, path: str, **kwargs: Any) -> Any:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> Any:
        return await self.request("POST", path, **kwargs)

    async def patch(self, path: str, **kwargs: Any) -> Any:
        return await self.request("PATCH", path, **kwargs)

    async def put(self, path: str, **kwargs: Any) -> Any:
        return await self.request("PUT", path, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> Any:
        return await self.request("DELETE", path, **kwargs)

    async def paginate(
        self,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        limit: int = 100,
        key: str | None = None,
    ) -> list[dict[str, Any]]:
        """Collect up to ``limit`` objects from a paginated list endpoint.

        ``key`` names the list inside an envelope object (``workflow_runs``).
        """
        items: list[dict[str, Any]] = []
        page = 1
        while page <= MAX_PAGES and len(items) < limit:
            query = {**(params or {}), "per_page": 100, "page": page}
            payload = await self.get(path, params=query)
            if key is not None and isinstance(payload, dict):
                payload = payload.get(key, [])
            if not isinstance(payload, list):
                raise GitHubError(f"GET {path} did not return a list")
            chunk = [item for item in payload if isinstance(item, dict)]
            items.extend(chunk)
            if len(chunk) < 100:
                break
            page += 1
        return items[:limit]

    async def graphql(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        payload = await self.post("/graphql", json={"query": query, "variables": variables or {}})
        if not isinstance(payload, dict):
            raise GitHubError("graphql response is not an object")
        errors = payload.get("errors")
        if errors:
            first = errors[0] if isinstance(errors, list) and errors else errors
            message = first.get("message", "") if isinstance(first, dict) else str(first)
            raise GitHubError(f"graphql error: {message}", retryable=False)
        data = payload.get("data")
        return data if isinstance(data, dict) else {}

    # Actor facts

    async def get_repository_permission(self, username: str) -> str:
        """Return admin, write, read or none. Lookup failures read as none."""
        try:
            payload = await self.get(
                f"{self.repo_path}/collaborators/{username}/permission", allow_404=True
            )
        except GitHubError as exc:
            logger.warning("Permission lookup for %s failed: %s", username, exc)
            return "none"
        permission = payload.get("permission") if isinstance(payload, dict) else None
        if permission in {"admin", "write", "read"}:
            return str(permission)
        return "none"

    async def is_team_member(self, team_slug: str, username: str) -> bool:
        try:
            payload = await self.get(
                f"/orgs/{self.owner}/teams/{team_slug}/memberships/{username}", allow_404=True
            )
        except GitHubError as exc:
            logger.warning("Team lookup %s/%s failed: %s", self.owner, team_slug, exc)
            return False
        return isinstance(payload, dict) and payload.get("state") == "active"

    async def is_org_member(self, username: str) -> bool:
        # 204 member, 404 not a member, 302 requester cannot see membership
        try:
            resp = await self._send("GET", f"/orgs/{self.owner}/members/{username}")
        except GitHubError as exc:
            logger.warning("Org membership lookup for %s failed: %s", username, exc)
            return False
        return resp.status_code == 204

    # Run history and repository state

    async def recent_successful_runs(
        self, workflow_file: str, limit: int = 5
    ) -> list[dict[str, Any]]:
        """Completed successful runs of a workflow, most recent first."""
        payload = await self.get(
            f"{self.repo_path}/actions/workflows/{workflow_file}/runs",
            params={"status": "success", "per_page": max(1, min(limit, 100))},
            allow_404=True,
        )
        if not isinstance(payload, dict):
            return []
        runs = [run for run in payload.get("workflow_runs", []) if isinstance(run, dict)]
        runs = [run for run in runs if run.get("conclusion") == "success"]
        runs.sort(key=lambda run: str(run.get("created_at", "")), reverse=True)
        return runs[:limit]

    async def count_open_prs(self, label: str) -> int:
        query = f'repo:{self.repository} is:pr is:open label:"{label}"'
        payload = await self.get("/search/issues", params={"q": query, "per_page": 1})
        return int(payload.get("total_count", 0) or 0) if isinstance(payload, dict) else 0

    async def blocked_by(self, number: int) -> list[dict[str, Any]]:
        payload = await self.get(f"{self.repo_path}/issues/{number}/dependencies/blocked_by")
        if not isinstance(payload, list):
            return []
        return [item for item in payload if isinstance(item, dict)]

    async def blocking(self, number: int) -> list[dict[str, Any]]:
        payload = await self.get(f"{self.repo_path}/issues/{number}/dependencies/blocking")
        if not isinstance(payload, list):
            return []
        return [item for item in payload if isinstance(item, dict)]

    async def get_repository(self) -> dict[str, Any]:
        payload = await self.get(self.repo_path)
        return payload if isinstance(payload, dict) else {}

    async def list_label_names(self) -> set[str]:
        labels = await self.paginate(f"{self.repo_path}/labels", limit=1000)
        return {str(label.get("name", "")) for label in labels if label.get("name")}

    async def discussion_categories(self) -> dict[str, str]:
        """Map discussion category name to node id."""
        data = await self.graphql(
            """
            query($owner: String!, $repo: String!) {
              repository(owner: $owner, name: $repo) {
                id
                discussionCategories(first: 50) { nodes { id name } }
              }
            }
            """,
            {"owner": self.owner, "repo": self.repo},
        )
        repository = data.get("repository") or {}
        nodes = (repository.get("discussionCategories") or {}).get("nodes") or []
        return {str(node["name"]): str(node["id"]) for node in nodes if node and node.get("name")}

    async def repository_node_id(self) -> str:
        data = await self.graphql(
            "query($owner: String!, $repo: String!) "
            "{ repository(owner: $owner, name: $repo) { id } }",
            {"owner": self.owner, "repo": self.repo},
        )
        return str((data.get("repository") or {}).get("id", ""))

    # Comments and issues

    async def create_comment(self, number: int, body: str) -> dict[str, Any]:
        return await self.post(f"{self.repo_path}/issues/{number}/comments", json={"body": body})

    async def update_comment(self, comment_id: int, body: str) -> dict[str, Any]:
        return await self.patch(
            f"{self.repo_path}/issues/comments/{comment_id}", json={"body": body}
        )

    async def get_comment(self, comment_id: int) -> dict[str, Any]:
        return await self.get(f"{self.repo_path}/issues/comments/{comment_id}")

    async def add_labels(self, number: int, labels: list[str]) -> Any:
        return await self.post(f"{self.repo_path}/issues/{number}/labels", json={"labels": labels})

    async def remove_label(self, number: int, label: str) -> None:
        await self.delete(
            f"{self.repo_path}/issues/{number}/labels/{quote(label, safe='')}", allow_404=True
        )

    async def create_issue(
        self,
        title: str,
        body: str,
        *,
        labels: list[str] | None = None,
        assignees: list[str] | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"title": title, "body": body}
        if labels:
            payload["labels"] = labels
        if assignees:
            payload["assignees"] = assignees
        return await self.post(f"{self.repo_path}/issues", json=payload)

    async def update_issue(self, number: int, **fields: Any) -> dict[str, Any]:
        return await self.patch(f"{self.repo_path}/issues/{number}", json=fields)

    async def list_issues(self, *, limit: int = 100, **params: Any) -> list[dict[str, Any]]:
        return await self.paginate(f"{self.repo_path}/issues", params=params, limit=limit)

    # Branches, contents, pull requests

    async def branch_sha(self, branch: str) -> str | None:
        payload = await self.get(f"{self.repo_path}/git/ref/heads/{branch}", allow_404=True)
        if not isinstance(payload, dict):
            return None
        return str((payload.get("object") or {}).get("sha", "")) or None

    async def create_branch(self, branch: str, sha: str) -> dict[str, Any]:
        return await self.post(
            f"{self.repo_path}/git/refs", json={"ref": f"refs/heads/{branch}", "sha": sha}
        )

    async def file_sha(self, path: str, ref: str) -> str | None:
        payload = await self.get(
            f"{self.repo_path}/contents/{path}", params={"ref": ref}, allow_404=True
        )
        if not isinstance(payload, dict):
            return None
        return str(payload.get("sha", "")) or None

    async def put_file(
        self,
        path: str,
        *,
        content_b64: str,
        message: str,
        branch: str,
        sha: str | None,
        committer: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"message": message, "content": content_b64, "branch": branch}
        if sha:
            payload["sha"] = sha
        if committer:
            payload["committer"] = committer
            payload["author"] = committer
        return await self.put(f"{self.repo_path}/contents/{path}", json=payload)

    async def create_pull(self, *, title: str, body: str, head: str, base: str) -> dict[str, Any]:
        return await self.post(
            f"{self.repo_path}/pulls",
            json={"title": title, "body": body, "head": head, "base": base},
        )

    async def close_pull(self, number: int) -> dict[str, Any]:
        return await self.patch(f"{self.repo_path}/pulls/{number}", json={"state": "closed"})

    async def merge_pull(self, number: int) -> dict[str, Any]:
        return await self.put(f"{self.repo_path}/pulls/{number}/merge", json={})

    # Workflows

    async def disable_workflow(self, workflow_file: str) -> None:
        await self.put(f"{self.repo_path}/actions/workflows/{workflow_file}/disable")
