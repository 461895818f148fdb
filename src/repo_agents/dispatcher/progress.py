"""Progress comment lifecycle on the triggering issue or pull request."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from repo_agents.errors import GitHubError
from repo_agents.github.client import GitHubClient

logger = logging.getLogger(__name__)

STAGE_ORDER = ("validation", "context", "agent", "outputs")
STAGE_LABELS = {
    "validation": "Validation",
    "context": "Context",
    "agent": "Agent",
    "outputs": "Outputs",
}
STATUS_ICONS = {
    "pending": "⏳",
    "running": "🔄",
    "success": "✅",
    "failed": "❌",
    "skipped": "⏭️",
}


def progress_marker(run_id: str, agent_name: str) -> str:
    return f"<!-- repo-agents-progress:{run_id}:{agent_name} -->"


@dataclass(slots=True)
class ProgressState:
    agent_name: str
    run_id: str
    run_url: str
    stages: dict[str, str] = field(default_factory=dict)
    current: str = "validation"
    error: str | None = None
    final_comment: str | None = None

    @classmethod
    def initial(
        cls, agent_name: str, run_id: str, run_url: str, *, has_context: bool
    ) -> ProgressState:
        stages = {"validation": "success"}
        if has_context:
            stages["context"] = "pending"
        stages["agent"] = "pending"
        stages["outputs"] = "pending"
        return cls(
            agent_name=agent_name,
            run_id=run_id,
            run_url=run_url,
            stages=stages,
            current="context" if has_context else "agent",
        )

    def update(self, stage: str, status: str, error: str | None = None) -> None:
        if stage not in self.stages or status not in STATUS_ICONS:
            raise ValueError(f"unknown progress transition: {stage} -> {status}")
        self.stages[stage] = status
        if status == "running":
            self.current = stage
        elif status == "failed":
            self.current = "failed"
            self.error = error
        elif status == "success":
            following = STAGE_ORDER[STAGE_ORDER.index(stage) + 1 :]
            later = [name for name in following if name in self.stages]
            self.current = next(
                (name for name in later if self.stages[name] != "skipped"), "complete"
            )

    def render(self) -> str:
        marker = progress_marker(self.run_id, self.agent_name)
        if self.final_comment:
            return f"{marker}\n{self.final_comment}"

        if self.current == "failed":
            header = f"### ❌ Agent: {self.agent_name}"
        elif self.current == "complete":
            header = f"### ✅ Agent: {self.agent_name}"
        else:
            header = f"### 🤖 Agent: {self.agent_name}"

        rows = [
            f"| {STAGE_LABELS[stage]} | {STATUS_ICONS[self.stages[stage]]} |"
            for stage in STAGE_ORDER
            if stage in self.stages
        ]
        lines = [marker, header, "", "| Stage | Status |", "|-------|--------|", *rows]
        if self.error:
            lines.extend(["", f"> **Error:** {self.error}"])
        lines.extend(["", "---", f"*[View workflow run]({self.run_url})*"])
        return "\n".join(lines)


class ProgressComment:
    """One progress comment, created once and then edited in place.

    Comment writes are best-effort: a failed update is logged and never
    fails the run.
    """

    def __init__(self, client: GitHubClient, issue_number: int, state: ProgressState) -> None:
        self.client = client
        self.issue_number = issue_number
        self.state = state
        self.comment_id: int | None = None

    @classmethod
    async def create(
        cls, client: GitHubClient, issue_number: int, state: ProgressState
    ) -> ProgressComment | None:
        progress = cls(client, issue_number, state)
        try:
            created = await client.create_comment(issue_number, state.render())
        except GitHubError as exc:
            logger.warning("Failed to create progress comment on #%s: %s", issue_number, exc)
            return None
        progress.comment_id = int(created.get("id", 0) or 0) or None
        return progress

    async def _push(self) -> None:
        if self.comment_id is None:
            return
        try:
            await self.client.update_comment(self.comment_id, self.state.render())
        except GitHubError as exc:
            logger.warning("Failed to update progress comment %s: %s", self.comment_id, exc)

    async def update(self, stage: str, status: str, error: str | None = None) -> None:
        if stage not in self.state.stages:
            return
        self.state.update(stage, status, error)
        await self._push()

    async def finalize(self, final_comment: str) -> None:
        self.state.final_comment = final_comment
        self.state.current = "complete"
        await self._push()
