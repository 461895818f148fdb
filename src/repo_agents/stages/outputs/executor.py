"""Output executor: gate, validate and apply the agent's output intents.

Every intent file is judged on its own. Undeclared kinds are rejected as
``not_allowed``; items past a kind's ``max`` are rejected as
``limit_exceeded`` while the first ``max`` items still run. Kinds run
concurrently; items of one kind run one at a time in file order.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections import defaultdict
from pathlib import Path

from repo_agents.dispatcher.types import StageResult
from repo_agents.errors import OutputValidationError, RepoAgentsError
from repo_agents.logging import log_stage
from repo_agents.stages.outputs.base import ExecutionContext, OutputItem, OutputKind, OutputResult
from repo_agents.stages.outputs.handlers import HANDLERS

logger = logging.getLogger(__name__)

OUTPUT_FILE_PATTERN = re.compile(r"^(?P<type>[a-z][a-z-]*?)(?:-(?P<seq>\d+))?\.json$")
RESULTS_FILENAME = "outputs.json"


def parse_output_filename(filename: str) -> tuple[str, int]:
    """``add-label-2.json`` -> ``("add-label", 2)``; unsequenced files are 0."""
    match = OUTPUT_FILE_PATTERN.match(filename)
    if match is None:
        return filename.removesuffix(".json"), 0
    return match.group("type"), int(match.group("seq") or 0)


def _read_item(path: Path) -> OutputItem:
    type_name, sequence = parse_output_filename(path.name)
    item = OutputItem(type_name=type_name, filename=path.name, sequence=sequence)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        item.parse_error = f"**{type_name}**: invalid JSON in {path.name}: {exc}"
        return item
    if not isinstance(data, dict):
        item.parse_error = f"**{type_name}**: expected a JSON object in {path.name}"
        return item
    item.data = data
    return item


def discover_output_files(
    outputs_dir: str | Path, output_type: str | None = None
) -> list[OutputItem]:
    root = Path(outputs_dir)
    if not root.is_dir():
        return []
    items = [_read_item(path) for path in root.glob("*.json") if path.is_file()]
    if output_type:
        items = [item for item in items if item.type_name == output_type]
    return sorted(items, key=lambda item: (item.type_name, item.sequence, item.filename))


def admit(
    items: list[OutputItem], ctx: ExecutionContext
) -> tuple[dict[OutputKind, list[OutputItem]], list[OutputResult]]:
    """Split items into runnable per-kind groups and up-front rejections."""
    groups: dict[OutputKind, list[OutputItem]] = defaultdict(list)
    rejected: list[OutputResult] = []
    for item in items:
        kind = item.kind
        config = ctx.agent.output_config(item.type_name)
        if kind is None or config is None:
            rejected.append(
                OutputResult(
                    output_type=item.type_name,
                    filename=item.filename,
                    error=(
                        f"Output type '{item.type_name}' is not allowed "
                        f"for agent {ctx.agent.name}"
                    ),
                    rejection="not_allowed",
                )
            )
            continue
        if config.max is not None and len(groups[kind]) >= config.max:
            rejected.append(
                OutputResult(
                    output_type=item.type_name,
                    filename=item.filename,
                    error=(
                        f"Output '{item.type_name}' exceeds max of {config.max} "
                        f"({item.filename})"
                    ),
                    rejection="limit_exceeded",
                )
            )
            continue
        groups[kind].append(item)
    return dict(groups), rejected


async def run_item(item: OutputItem, ctx: ExecutionContext) -> OutputResult:
    result = OutputResult(output_type=item.type_name, filename=item.filename)
    if item.parse_error:
        result.error = item.parse_error
        result.rejection = "parse_error"
        return result

    handler = HANDLERS[OutputKind(item.type_name)]
    try:
        await handler.check(item.data, ctx)
    except OutputValidationError as exc:
        result.error = "\n".join(f"{error} in {item.filename}" for error in exc.errors)
        logger.warning("Output %s failed validation: %s", item.filename, exc)
        return result
    result.validation_passed = True

    try:
        detail = await handler.execute(item.data, ctx)
    except RepoAgentsError as exc:
        result.error = f"**{item.type_name}**: {exc} in {item.filename}"
        logger.error("Output %s failed: %s", item.filename, exc)
        return result
    result.execution_succeeded = True
    logger.info("Output %s executed: %s", item.filename, detail)
    return result


async def _run_group(items: list[OutputItem], ctx: ExecutionContext) -> list[OutputResult]:
    return [await run_item(item, ctx) for item in items]


async def execute_outputs(items: list[OutputItem], ctx: ExecutionContext) -> list[OutputResult]:
    groups, rejected = admit(items, ctx)
    grouped = await asyncio.gather(*(_run_group(group, ctx) for group in groups.values()))
    by_file = {result.filename: result for result in rejected}
    for results in grouped:
        by_file.update({result.filename: result for result in results})
    return [by_file[item.filename] for item in items]


def write_validation_errors(results: list[OutputResult], errors_dir: str | Path) -> list[Path]:
    failed: dict[str, list[OutputResult]] = defaultdict(list)
    for result in results:
        if not result.validation_passed and result.error:
            failed[result.output_type].append(result)
    root = Path(errors_dir)
    written: list[Path] = []
    for output_type, entries in failed.items():
        root.mkdir(parents=True, exist_ok=True)
        json_path = root / f"{output_type}.json"
        json_path.write_text(
            json.dumps([entry.to_dict() for entry in entries], indent=2), encoding="utf-8"
        )
        text_path = root / f"{output_type}.txt"
        text = "\n".join(entry.error or "" for entry in entries)
        text_path.write_text(text + "\n", encoding="utf-8")
        written.extend([json_path, text_path])
    return written


def write_output_results(results: list[OutputResult], audit_dir: str | Path) -> Path:
    path = Path(audit_dir) / RESULTS_FILENAME
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = [result.to_dict() for result in results]
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    return path


def read_output_results(audit_dir: str | Path) -> list[OutputResult]:
    path = Path(audit_dir) / RESULTS_FILENAME
    if not path.is_file():
        return []
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Could not read output results %s: %s", path, exc)
        return []
    fields = OutputResult.__dataclass_fields__
    return [
        OutputResult(**{key: value for key, value in entry.items() if key in fields})
        for entry in payload
        if isinstance(entry, dict) and "output_type" in entry and "filename" in entry
    ]


@log_stage("outputs")
async def run_outputs_stage(
    ctx: ExecutionContext,
    *,
    outputs_dir: str | Path,
    audit_dir: str | Path | None = None,
    validation_errors_dir: str | Path | None = None,
    output_type: str | None = None,
) -> tuple[StageResult, list[OutputResult]]:
    if not ctx.agent.outputs:
        return StageResult.skip("Agent has no outputs configured"), []
    items = discover_output_files(outputs_dir, output_type)
    if not items:
        return StageResult.skip("No output files found"), []

    results = await execute_outputs(items, ctx)
    artifacts: list[str] = []
    if validation_errors_dir is not None:
        written = write_validation_errors(results, validation_errors_dir)
        artifacts.extend(str(path) for path in written)
    if audit_dir is not None:
        artifacts.append(str(write_output_results(results, audit_dir)))

    succeeded = sum(1 for result in results if result.execution_succeeded)
    rejected = sum(1 for result in results if result.rejection)
    failed = len(results) - succeeded - rejected
    outputs = {
        "total": str(len(results)),
        "executed": str(succeeded),
        "failed": str(failed),
        "rejected": str(rejected),
    }
    if succeeded == len(results):
        return StageResult(success=True, outputs=outputs, artifacts=artifacts), results
    errors = "; ".join(result.error or result.filename for result in results if result.error)
    failure = StageResult(success=False, outputs={**outputs, "error": errors}, artifacts=artifacts)
    return failure, results
