"""Output-intent validation and execution."""

from repo_agents.stages.outputs.base import ExecutionContext, OutputKind, OutputResult
from repo_agents.stages.outputs.executor import discover_output_files, run_outputs_stage

__all__ = [
    "ExecutionContext",
    "OutputKind",
    "OutputResult",
    "discover_output_files",
    "run_outputs_stage",
]
