"""Context normalizer: raw event payload to a uniform DispatchContext."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from repo_agents.dispatcher.types import (
    DiscussionData,
    DispatchContext,
    IssueData,
    PullRequestData,
    RepositoryDispatchData,
    RunEnvironment,
    ScheduleData,
)
from repo_agents.errors import EventPayloadError
from repo_agents.ids import now_iso

logger = logging.getLogger(__name__)


def read_event_payload(source: str | Path | dict[str, Any]) -> dict[str, Any]:
    if isinstance(source, dict):
        return source
    path = Path(source)
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise EventPayloadError(f"cannot read event payload {path}: {exc}") from exc
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise EventPayloadError(f"event payload {path} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise EventPayloadError(f"event payload {path} is not a JSON object")
    return payload


def _obj(value: object) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _str(value: object) -> str:
    return value if isinstance(value, str) else ""


def _int(value: object) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


def _login(value: object) -> str:
    return _str(_obj(value).get("login"))


def _label_names(value: object) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    names: list[str] = []
    for item in value:
        if isinstance(item, dict) and isinstance(item.get("name"), str):
            names.append(item["name"])
        elif isinstance(item, str):
            names.append(item)
    return tuple(names)


def extract_issue(payload: dict[str, Any]) -> IssueData:
    issue = _obj(payload.get("issue"))
    return IssueData(
        number=_int(issue.get("number")),
        title=_str(issue.get("title")),
        body=_str(issue.get("body")),
        author=_login(issue.get("user")),
        labels=_label_names(issue.get("labels")),
        state=_str(issue.get("state")),
        url=_str(issue.get("html_url")),
    )


def extract_pull_request(payload: dict[str, Any]) -> PullRequestData:
    pr = _obj(payload.get("pull_request"))
    return PullRequestData(
        number=_int(pr.get("number")),
        title=_str(pr.get("title")),
        body=_str(pr.get("body")),
        author=_login(pr.get("user")),
        labels=_label_names(pr.get("labels")),
        base_branch=_str(_obj(pr.get("base")).get("ref")),
        head_branch=_str(_obj(pr.get("head")).get("ref")),
        state=_str(pr.get("state")),
        url=_str(pr.get("html_url")),
    )


def extract_discussion(payload: dict[str, Any]) -> DiscussionData:
    discussion = _obj(payload.get("discussion"))
    return DiscussionData(
        number=_int(discussion.get("number")),
        title=_str(discussion.get("title")),
        body=_str(discussion.get("body")),
        author=_login(discussion.get("user")),
        labels=_label_names(discussion.get("labels")),
        state=_str(discussion.get("state")),
        category=_str(_obj(discussion.get("category")).get("name")),
        url=_str(discussion.get("html_url")),
    )


def build_dispatch_context(
    env: RunEnvironment, source: str | Path | dict[str, Any] | None = None
) -> DispatchContext:
    """Normalize the triggering event into a DispatchContext.

    Missing optional fields become empty values. Only an unreadable or
    non-object payload raises ``EventPayloadError``.
    """
    payload = read_event_payload(source if source is not None else env.event_path)
    event_name = env.event_name
    extra: dict[str, Any] = {}
    if event_name == "issues":
        extra["issue"] = extract_issue(payload)
    elif event_name == "pull_request":
        extra["pull_request"] = extract_pull_request(payload)
    elif event_name == "discussion":
        extra["discussion"] = extract_discussion(payload)
    elif event_name == "schedule":
        extra["schedule"] = ScheduleData(cron=_str(payload.get("schedule")) or env.event_schedule)
    elif event_name == "repository_dispatch":
        extra["repository_dispatch"] = RepositoryDispatchData(
            event_type=_str(payload.get("action")),
            client_payload=_obj(payload.get("client_payload")),
        )

    return DispatchContext(
        dispatch_id=f"{env.run_id}-{env.run_attempt}",
        dispatched_at=now_iso(),
        run_id=env.run_id,
        run_url=env.run_url,
        event_name=event_name,
        event_action=_str(payload.get("action")),
        repository=env.repository,
        ref=env.ref,
        sha=env.sha,
        actor=env.actor or _login(payload.get("sender")),
        payload=payload,
        **extra,
    )


def write_dispatch_context(context: DispatchContext, path: str | Path) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(context.to_dict(), indent=2), encoding="utf-8")
    logger.info("Dispatch context written to %s", target)
    return target
