"""Agent definition discovery from markdown files with YAML frontmatter."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from pydantic import ValidationError

from repo_agents.agents.types import AgentDefinition
from repo_agents.errors import DefinitionError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LoadResult:
    agents: list[AgentDefinition] = field(default_factory=list)
    errors: list[DefinitionError] = field(default_factory=list)


def split_frontmatter(content: str) -> tuple[dict[str, object], str]:
    """Split a markdown document into (frontmatter mapping, body)."""
    if not content.startswith("---"):
        raise DefinitionError("frontmatter is required")
    end = content.find("\n---", 3)
    if end == -1:
        raise DefinitionError("frontmatter is not terminated")
    block = content[3:end]
    body = content[end + 4 :]
    try:
        parsed = yaml.safe_load(block)
    except yaml.YAMLError as exc:
        raise DefinitionError(f"failed to parse frontmatter: {exc}") from exc
    if not isinstance(parsed, dict) or not parsed:
        raise DefinitionError("frontmatter is required")
    # YAML 1.1 reads a bare `on:` key as boolean true
    if True in parsed and "on" not in parsed:
        parsed["on"] = parsed.pop(True)
    return {str(key): value for key, value in parsed.items()}, body.strip()


def _format_errors(exc: ValidationError) -> list[str]:
    errors: list[str] = []
    for item in exc.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        message = str(item.get("msg", "invalid value"))
        errors.append(f"{location}: {message}" if location else message)
    return errors


def parse_agent(content: str, path: str = "") -> AgentDefinition:
    frontmatter, body = split_frontmatter(content)
    try:
        return AgentDefinition.model_validate({**frontmatter, "markdown": body, "path": path})
    except ValidationError as exc:
        errors = _format_errors(exc)
        raise DefinitionError(
            f"invalid agent definition: {'; '.join(errors)}", path=path, errors=errors
        ) from exc


def load_agent(path: Path) -> AgentDefinition:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise DefinitionError(f"failed to read file: {exc}", path=str(path)) from exc
    try:
        return parse_agent(content, str(path))
    except DefinitionError as exc:
        if not exc.path:
            exc.path = str(path)
        raise


def discover_agent_files(root: Path) -> list[Path]:
    if not root.exists():
        return []
    return sorted(candidate for candidate in root.rglob("*.md") if candidate.is_file())


def load_agents(root: Path) -> LoadResult:
    """Load every agent definition under ``root``.

    Discovery runs fresh on each call. Invalid definitions are collected in
    ``errors`` and never abort loading of their siblings. Duplicate names keep
    the first definition in sorted path order.
    """
    result = LoadResult()
    seen: set[str] = set()
    for path in discover_agent_files(root):
        try:
            agent = load_agent(path)
        except DefinitionError as exc:
            logger.warning("Skipping invalid agent definition %s: %s", path, exc)
            result.errors.append(exc)
            continue
        if agent.name in seen:
            error = DefinitionError(f"duplicate agent name: {agent.name}", path=str(path))
            logger.warning("Skipping agent definition %s: %s", path, error)
            result.errors.append(error)
            continue
        seen.add(agent.name)
        result.agents.append(agent)
    return result
