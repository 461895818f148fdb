"""Per-kind validation and execution for output intents."""

from __future__ import annotations

import base64
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from repo_agents.errors import OutputExecutionError, OutputValidationError
from repo_agents.stages.outputs.base import ExecutionContext, OutputKind

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 256
MAX_COMMENT_LENGTH = 65536
BRANCH_PATTERN = re.compile(r"^[a-zA-Z0-9/_.-]+$")
CLOSE_REASONS = ("completed", "not_planned")

Validator = Callable[[dict[str, Any], ExecutionContext], Awaitable[list[str]]]
Executor = Callable[[dict[str, Any], ExecutionContext], Awaitable[str]]


@dataclass(frozen=True, slots=True)
class OutputHandler:
    kind: OutputKind
    validate: Validator
    execute: Executor

    async def check(self, data: dict[str, Any], ctx: ExecutionContext) -> None:
        """Raise ``OutputValidationError`` listing every problem with ``data``."""
        errors = await self.validate(data, ctx)
        if errors:
            raise OutputValidationError("; ".join(errors), errors=errors)


def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """``**`` spans directories, ``*`` stays within one segment, ``?`` is one character."""
    parts: list[str] = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if pattern.startswith("**", i):
            parts.append(".*")
            i += 2
            continue
        if char == "*":
            parts.append("[^/]*")
        elif char == "?":
            parts.append(".")
        else:
            parts.append(re.escape(char))
        i += 1
    return re.compile("^" + "".join(parts) + "$")


def match_glob(path: str, patterns: list[str]) -> bool:
    return any(glob_to_regex(pattern).match(path) for pattern in patterns)


def is_safe_path(path: str) -> bool:
    if not path or path.startswith("/") or "\\" in path:
        return False
    return ".." not in path.split("/")


def _nonempty_str(data: dict[str, Any], key: str) -> bool:
    value = data.get(key)
    return isinstance(value, str) and bool(value.strip())


def _string_list(value: Any) -> bool:
    return isinstance(value, list) and bool(value) and all(isinstance(v, str) and v for v in value)


def _file_errors(kind: OutputKind, files: Any) -> list[str]:
    if not isinstance(files, list) or not files:
        return [f"**{kind.value}**: `files` must be a non-empty array"]
    errors = []
    for index, entry in enumerate(files):
        if not isinstance(entry, dict):
            errors.append(f"**{kind.value}**: files[{index}] must be an object")
            continue
        path = entry.get("path")
        if not isinstance(path, str) or not path:
            errors.append(f"**{kind.value}**: files[{index}].path is required")
        elif not is_safe_path(path):
            errors.append(f"**{kind.value}**: files[{index}].path `{path}` must be a relative path")
        if not isinstance(entry.get("content"), str):
            errors.append(f"**{kind.value}**: files[{index}].content must be a string")
    return errors


async def _missing_labels(labels: list[str], ctx: ExecutionContext) -> list[str]:
    existing = await ctx.repo_labels()
    if existing is None:
        return []
    return [label for label in labels if label not in existing]


def _require_target(ctx: ExecutionContext, kind: OutputKind) -> int:
    number = ctx.target_number
    if not number:
        raise OutputExecutionError(f"{kind.value} requires an issue or pull request number")
    return number


def _encode(content: str) -> str:
    return base64.b64encode(content.encode("utf-8")).decode("ascii")


# add-comment


async def validate_add_comment(data: dict[str, Any], ctx: ExecutionContext) -> list[str]:
    body = data.get("body")
    if not isinstance(body, str) or not body.strip():
        return ["**add-comment**: `body` is required and must be a string"]
    if len(body) > MAX_COMMENT_LENGTH:
        return [f"**add-comment**: `body` exceeds {MAX_COMMENT_LENGTH} characters ({len(body)})"]
    return []


async def execute_add_comment(data: dict[str, Any], ctx: ExecutionContext) -> str:
    number = _require_target(ctx, OutputKind.ADD_COMMENT)
    created = await ctx.client.create_comment(number, str(data["body"]) + ctx.attribution())
    return f"Comment {created.get('id', '')} posted on #{number}"


# add-label / remove-label


async def validate_add_label(data: dict[str, Any], ctx: ExecutionContext) -> list[str]:
    labels = data.get("labels")
    if not _string_list(labels):
        return ["**add-label**: `labels` must be a non-empty array of strings"]
    missing = await _missing_labels(labels, ctx)
    if missing:
        return [f"**add-label**: labels do not exist in the repository: {', '.join(missing)}"]
    return []


async def execute_add_label(data: dict[str, Any], ctx: ExecutionContext) -> str:
    number = _require_target(ctx, OutputKind.ADD_LABEL)
    await ctx.client.add_labels(number, list(data["labels"]))
    return f"Added {', '.join(data['labels'])} to #{number}"


async def validate_remove_label(data: dict[str, Any], ctx: ExecutionContext) -> list[str]:
    if not _string_list(data.get("labels")):
        return ["**remove-label**: `labels` must be a non-empty array of strings"]
    return []


async def execute_remove_label(data: dict[str, Any], ctx: ExecutionContext) -> str:
    number = _require_target(ctx, OutputKind.REMOVE_LABEL)
    for label in data["labels"]:
        await ctx.client.remove_label(number, label)
    return f"Removed {', '.join(data['labels'])} from #{number}"


# create-issue


async def validate_create_issue(data: dict[str, Any], ctx: ExecutionContext) -> list[str]:
    errors = []
    title = data.get("title")
    if not _nonempty_str(data, "title"):
        errors.append("**create-issue**: `title` is required")
    elif len(title) > MAX_TITLE_LENGTH:
        errors.append(f"**create-issue**: `title` exceeds {MAX_TITLE_LENGTH} characters")
    if not _nonempty_str(data, "body"):
        errors.append("**create-issue**: `body` is required")
    for key in ("labels", "assignees"):
        value = data.get(key)
        if key in data and not (isinstance(value, list) and all(isinstance(v, str) for v in value)):
            errors.append(f"**create-issue**: `{key}` must be an array of strings")
    if not errors and data.get("labels"):
        missing = await _missing_labels(data["labels"], ctx)
        if missing:
            errors.append(
                f"**create-issue**: labels do not exist in the repository: {', '.join(missing)}"
            )
    return errors


async def execute_create_issue(data: dict[str, Any], ctx: ExecutionContext) -> str:
    created = await ctx.client.create_issue(
        str(data["title"]),
        str(data["body"]),
        labels=list(data.get("labels") or []),
        assignees=list(data.get("assignees") or []),
    )
    return f"Created issue #{created.get('number', '')}"


# create-discussion


CREATE_DISCUSSION_MUTATION = """
mutation($repositoryId: ID!, $categoryId: ID!, $title: String!, $body: String!) {
  createDiscussion(
    input: {repositoryId: $repositoryId, categoryId: $categoryId, title: $title, body: $body}
  ) {
    discussion { number url }
  }
}
"""


async def validate_create_discussion(data: dict[str, Any], ctx: ExecutionContext) -> list[str]:
    errors = []
    if not _nonempty_str(data, "title"):
        errors.append("**create-discussion**: `title` is required")
    elif len(data["title"]) > MAX_TITLE_LENGTH:
        errors.append(f"**create-discussion**: `title` exceeds {MAX_TITLE_LENGTH} characters")
    if not _nonempty_str(data, "body"):
        errors.append("**create-discussion**: `body` is required")
    if not _nonempty_str(data, "category"):
        errors.append("**create-discussion**: `category` is required")
    else:
        categories = await ctx.discussion_categories()
        if categories is not None and data["category"] not in categories:
            errors.append(
                f"**create-discussion**: category `{data['category']}` does not exist "
                f"(available: {', '.join(sorted(categories)) or 'none'})"
            )
    return errors


async def execute_create_discussion(data: dict[str, Any], ctx: ExecutionContext) -> str:
    categories = await ctx.discussion_categories() or {}
    category_id = categories.get(str(data["category"]))
    if not category_id:
        raise OutputExecutionError(f"discussion category `{data['category']}` not found")
    repository_id = await ctx.client.repository_node_id()
    result = await ctx.client.graphql(
        CREATE_DISCUSSION_MUTATION,
        {
            "repositoryId": repository_id,
            "categoryId": category_id,
            "title": str(data["title"]),
            "body": str(data["body"]) + ctx.attribution(),
        },
    )
    discussion = ((result.get("createDiscussion") or {}).get("discussion")) or {}
    return f"Created discussion #{discussion.get('number', '')}"


# create-pr / update-file


async def validate_create_pr(data: dict[str, Any], ctx: ExecutionContext) -> list[str]:
    errors = []
    branch = data.get("branch")
    if not isinstance(branch, str) or not branch:
        errors.append("**create-pr**: `branch` is required")
    elif not BRANCH_PATTERN.match(branch) or ".." in branch:
        errors.append(f"**create-pr**: `branch` `{branch}` contains invalid characters")
    if not _nonempty_str(data, "title"):
        errors.append("**create-pr**: `title` is required")
    if not _nonempty_str(data, "body"):
        errors.append("**create-pr**: `body` is required")
    if "base" in data and not _nonempty_str(data, "base"):
        errors.append("**create-pr**: `base` must be a branch name")
    errors.extend(_file_errors(OutputKind.CREATE_PR, data.get("files")))
    return errors


async def _default_branch(ctx: ExecutionContext) -> str:
    repository = await ctx.client.get_repository()
    return str(repository.get("default_branch") or "main")


async def _write_files(
    ctx: ExecutionContext,
    kind: OutputKind,
    files: list[dict[str, Any]],
    *,
    branch: str,
    message: str,
) -> None:
    config = ctx.agent.output_config(kind.value)
    # Omitting the committer lets GitHub sign the commit as the token owner
    committer = None
    if config is None or not config.sign:
        committer = {"name": ctx.git_user, "email": ctx.git_email}
    for entry in files:
        path = str(entry["path"])
        sha = await ctx.client.file_sha(path, branch)
        await ctx.client.put_file(
            path,
            content_b64=_encode(str(entry["content"])),
            message=message,
            branch=branch,
            sha=sha,
            committer=committer,
        )


async def execute_create_pr(data: dict[str, Any], ctx: ExecutionContext) -> str:
    branch = str(data["branch"])
    base = str(data.get("base") or await _default_branch(ctx))
    open_prs = await ctx.client.get(
        f"{ctx.client.repo_path}/pulls",
        params={"head": f"{ctx.client.owner}:{branch}", "state": "open"},
    )
    if isinstance(open_prs, list) and open_prs:
        return f"Pull request #{open_prs[0].get('number', '')} already open for {branch}"

    if await ctx.client.branch_sha(branch) is None:
        base_sha = await ctx.client.branch_sha(base)
        if base_sha is None:
            raise OutputExecutionError(f"base branch `{base}` not found")
        await ctx.client.create_branch(branch, base_sha)
    await _write_files(
        ctx, OutputKind.CREATE_PR, data["files"], branch=branch, message=str(data["title"])
    )
    created = await ctx.client.create_pull(
        title=str(data["title"]), body=str(data["body"]) + ctx.attribution(), head=branch, base=base
    )
    return f"Created pull request #{created.get('number', '')}"


async def validate_update_file(data: dict[str, Any], ctx: ExecutionContext) -> list[str]:
    errors = _file_errors(OutputKind.UPDATE_FILE, data.get("files"))
    if not _nonempty_str(data, "message"):
        errors.append("**update-file**: `message` is required")
    if "branch" in data and (
        not isinstance(data["branch"], str) or not BRANCH_PATTERN.match(data["branch"])
    ):
        errors.append("**update-file**: `branch` contains invalid characters")
    allowed = ctx.agent.allowed_paths
    for entry in data.get("files") or []:
        path = entry.get("path") if isinstance(entry, dict) else None
        if isinstance(path, str) and is_safe_path(path) and not match_glob(path, allowed):
            errors.append(
                f"**update-file**: path `{path}` does not match allowed-paths "
                f"({', '.join(allowed)})"
            )
    return errors


async def execute_update_file(data: dict[str, Any], ctx: ExecutionContext) -> str:
    branch = str(data.get("branch") or await _default_branch(ctx))
    await _write_files(
        ctx, OutputKind.UPDATE_FILE, data["files"], branch=branch, message=str(data["message"])
    )
    return f"Updated {len(data['files'])} file(s) on {branch}"


# close-issue / close-pr


async def validate_close_issue(data: dict[str, Any], ctx: ExecutionContext) -> list[str]:
    reason = data.get("state_reason")
    if reason is not None and reason not in CLOSE_REASONS:
        return [f"**close-issue**: `state_reason` must be one of {', '.join(CLOSE_REASONS)}"]
    return []


async def execute_close_issue(data: dict[str, Any], ctx: ExecutionContext) -> str:
    number = ctx.issue_number
    if not number:
        raise OutputExecutionError("close-issue requires an issue number")
    await ctx.client.update_issue(
        number, state="closed", state_reason=str(data.get("state_reason") or "completed")
    )
    return f"Closed issue #{number}"


async def validate_close_pr(data: dict[str, Any], ctx: ExecutionContext) -> list[str]:
    if "merge" in data and not isinstance(data["merge"], bool):
        return ["**close-pr**: `merge` must be a boolean"]
    return []


async def execute_close_pr(data: dict[str, Any], ctx: ExecutionContext) -> str:
    number = ctx.pr_number
    if not number:
        raise OutputExecutionError("close-pr requires a pull request number")
    if data.get("merge"):
        await ctx.client.merge_pull(number)
        return f"Merged pull request #{number}"
    await ctx.client.close_pull(number)
    return f"Closed pull request #{number}"


HANDLERS: dict[OutputKind, OutputHandler] = {
    handler.kind: handler
    for handler in (
        OutputHandler(OutputKind.ADD_COMMENT, validate_add_comment, execute_add_comment),
        OutputHandler(OutputKind.ADD_LABEL, validate_add_label, execute_add_label),
        OutputHandler(OutputKind.REMOVE_LABEL, validate_remove_label, execute_remove_label),
        OutputHandler(OutputKind.CREATE_ISSUE, validate_create_issue, execute_create_issue),
        OutputHandler(
            OutputKind.CREATE_DISCUSSION, validate_create_discussion, execute_create_discussion
        ),
        OutputHandler(OutputKind.CREATE_PR, validate_create_pr, execute_create_pr),
        OutputHandler(OutputKind.UPDATE_FILE, validate_update_file, execute_update_file),
        OutputHandler(OutputKind.CLOSE_ISSUE, validate_close_issue, execute_close_issue),
        OutputHandler(OutputKind.CLOSE_PR, validate_close_pr, execute_close_pr),
    )
}
