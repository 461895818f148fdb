"""Preflight authenticator: resolve credentials and identity once per event."""

from __future__ import annotations

import base64
import json
import logging
import time
from dataclasses import dataclass, field

import httpx
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from repo_agents.config import Settings
from repo_agents.errors import GitHubError, PreflightError
from repo_agents.github.client import GitHubClient
from repo_agents.ids import now_iso
from repo_agents.logging import log_stage

logger = logging.getLogger(__name__)

DEFAULT_GIT_USER = "github-actions[bot]"
DEFAULT_GIT_EMAIL = "github-actions[bot]@users.noreply.github.com"
CONFIG_ISSUE_TITLE = "Agent Dispatcher: Configuration Required"


@dataclass(frozen=True, slots=True)
class Credentials:
    token: str = field(repr=False)
    git_user: str = DEFAULT_GIT_USER
    git_email: str = DEFAULT_GIT_EMAIL
    source: str = "github_token"

    def outputs(self) -> dict[str, str]:
        # The token itself never leaves the process through stage outputs
        return {
            "should-continue": "true",
            "token-source": self.source,
            "git-user": self.git_user,
            "git-email": self.git_email,
        }


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_app_jwt(app_id: str, private_key_pem: str, *, now: int | None = None) -> str:
    """RS256 JWT for GitHub App authentication, valid for ten minutes."""
    issued = int(now if now is not None else time.time())
    header = {"alg": "RS256", "typ": "JWT"}
    # Backdated to tolerate clock drift
    claims = {"iat": issued - 60, "exp": issued + 600, "iss": app_id}
    unsigned = ".".join(
        _b64url(json.dumps(part, separators=(",", ":")).encode("utf-8"))
        for part in (header, claims)
    )
    try:
        key = serialization.load_pem_private_key(
            private_key_pem.replace("\\n", "\n").encode("utf-8"), password=None
        )
    except (ValueError, TypeError) as exc:
        raise PreflightError(f"invalid GitHub App private key: {exc}") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise PreflightError("GitHub App private key must be an RSA key")
    signature = key.sign(unsigned.encode("ascii"), padding.PKCS1v15(), hashes.SHA256())
    return f"{unsigned}.{_b64url(signature)}"


def has_ai_credentials(settings: Settings) -> bool:
    return bool(settings.anthropic_api_key.strip() or settings.claude_code_oauth_token.strip())


def fallback_token(settings: Settings) -> tuple[str, str]:
    if settings.fallback_token.strip():
        return settings.fallback_token.strip(), "fallback_token"
    if settings.github_token.strip():
        return settings.github_token.strip(), "github_token"
    return "", "none"


async def app_credentials(
    settings: Settings, repository: str, *, transport: httpx.AsyncBaseTransport | None = None
) -> Credentials | None:
    """Exchange the app key for an installation token, or None on any failure."""
    app_id = settings.gh_app_id.strip()
    private_key = settings.gh_app_private_key.strip()
    if not app_id or not private_key:
        return None
    try:
        jwt = generate_app_jwt(app_id, private_key)
        async with GitHubClient(
            jwt,
            repository,
            base_url=settings.github_api_base_url,
            timeout=settings.http_timeout_seconds,
            transport=transport,
        ) as client:
            installation = await client.get(f"{client.repo_path}/installation")
            installation_id = installation.get("id") if isinstance(installation, dict) else None
            if not installation_id:
                logger.warning("GitHub App is not installed on %s", repository)
                return None
            issued = await client.post(f"/app/installations/{installation_id}/access_tokens")
            token = issued.get("token") if isinstance(issued, dict) else None
            if not token:
                logger.warning("GitHub App installation token response had no token")
                return None
            try:
                app = await client.get("/app")
            except GitHubError as exc:
                logger.warning("GitHub App identity lookup failed: %s", exc)
                app = {}
    except (PreflightError, GitHubError, ValueError) as exc:
        logger.warning("GitHub App token generation failed, falling back: %s", exc)
        return None

    slug = str(app.get("slug") or "github-app")
    app_numeric_id = str(app.get("id") or "0")
    return Credentials(
        token=str(token),
        git_user=f"{slug}[bot]",
        git_email=f"{app_numeric_id}+{slug}[bot]@users.noreply.github.com",
        source="app",
    )


async def report_configuration_error(
    settings: Settings,
    repository: str,
    message: str,
    *,
    token: str,
    transport: httpx.AsyncBaseTransport | None = None,
) -> None:
    """Open or update the configuration issue and disable the dispatcher.

    Best-effort: failures are logged and never raised.
    """
    if not token:
        logger.warning("No GitHub token available to report configuration error")
        return
    label = settings.config_issue_label
    workflow = settings.dispatcher_workflow_file
    try:
        async with GitHubClient(
            token,
            repository,
            base_url=settings.github_api_base_url,
            timeout=settings.http_timeout_seconds,
            transport=transport,
        ) as client:
            existing = await client.list_issues(state="open", labels=label, limit=1)
            if existing:
                await client.create_comment(
                    int(existing[0]["number"]),
                    f"Configuration check failed again at {now_iso()}:\n\n{message}",
                )
            else:
                body = (
                    "## Configuration Error\n\n"
                    "The agent dispatcher detected missing configuration and has been disabled.\n\n"
                    f"### Issues Found\n\n{message}\n\n"
                    "### How to Fix\n\n"
                    "1. Add an `ANTHROPIC_API_KEY` or `CLAUDE_CODE_OAUTH_TOKEN` "
                    "repository secret.\n"
                    f"2. Re-enable the dispatcher: `gh workflow enable {workflow}`\n"
                    f"3. Test the configuration: `gh workflow run {workflow}`\n"
                )
                await client.create_issue(CONFIG_ISSUE_TITLE, body, labels=[label])
            await client.disable_workflow(workflow)
    except (GitHubError, ValueError) as exc:
        logger.warning("Failed to report configuration error: %s", exc)


async def resolve_token(
    settings: Settings, repository: str, *, transport: httpx.AsyncBaseTransport | None = None
) -> Credentials:
    """Resolve a GitHub token without checking AI credentials or writing to the repository.

    Used by single-stage commands that run after dispatch already passed
    preflight.
    """
    credentials = await app_credentials(settings, repository, transport=transport)
    if credentials is not None:
        logger.info("Using GitHub App token as %s", credentials.git_user)
        return credentials

    token, source = fallback_token(settings)
    if not token:
        raise PreflightError("No usable GitHub token (GH_APP_ID, FALLBACK_TOKEN or GITHUB_TOKEN)")
    logger.info("Using %s for GitHub access", source)
    return Credentials(token=token, source=source)


@log_stage("preflight")
async def run_preflight(
    settings: Settings, repository: str, *, transport: httpx.AsyncBaseTransport | None = None
) -> Credentials:
    """Resolve the run-wide execution token.

    Priority: GitHub App installation token, then FALLBACK_TOKEN, then
    GITHUB_TOKEN. Raises ``PreflightError`` when no AI credential or no
    usable token exists; a missing AI credential is also reported on the
    configuration issue and disables the dispatcher.
    """
    if not has_ai_credentials(settings):
        message = "Missing AI credentials (ANTHROPIC_API_KEY or CLAUDE_CODE_OAUTH_TOKEN)"
        logger.error(message)
        token, _ = fallback_token(settings)
        await report_configuration_error(
            settings, repository, message, token=token, transport=transport
        )
        raise PreflightError(message)
    return await resolve_token(settings, repository, transport=transport)
