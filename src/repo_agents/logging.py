"""structlog setup for pipeline runs.

Records carry the run's ``dispatch_id``, ``agent`` and ``stage`` once bound.
Inside GitHub Actions, warnings and errors render as workflow commands so
they surface as annotations on the run.
"""

import functools
import logging
import os
import sys
from collections.abc import Awaitable, Callable
from typing import Any, ParamSpec, TypeVar

import structlog

CONTEXT_KEYS = ("dispatch_id", "agent", "stage")
LOG_FORMATS = ("auto", "console", "json", "github")

_COMMANDS = {"debug": "debug", "warning": "warning", "error": "error", "critical": "error"}

P = ParamSpec("P")
T = TypeVar("T")


def _escape(value: str) -> str:
    return value.replace("%", "%25").replace("\r", "%0D").replace("\n", "%0A")


def render_github(_: Any, __: str, event_dict: structlog.types.EventDict) -> str:
    """Render a record as a plain line, or a workflow command for debug/warning/error."""
    level = str(event_dict.pop("level", "info"))
    event = str(event_dict.pop("event", ""))
    exception = event_dict.pop("exception", None)
    for key in ("timestamp", "logger", "dispatch_id"):
        # The runner already timestamps lines and one run is one dispatch
        event_dict.pop(key, None)
    scope = "/".join(str(event_dict.pop(key)) for key in ("agent", "stage") if event_dict.get(key))

    message = f"[{scope}] {event}" if scope else event
    extras = " ".join(f"{key}={value}" for key, value in sorted(event_dict.items()))
    if extras:
        message = f"{message} {extras}"
    if exception:
        message = f"{message}\n{exception}"

    command = _COMMANDS.get(level)
    if command is None:
        return message
    return f"::{command}::{_escape(message)}"


def resolve_format(log_format: str) -> str:
    if log_format != "auto":
        return log_format
    if os.environ.get("GITHUB_ACTIONS") == "true":
        return "github"
    return "json" if os.environ.get("APP_ENV", "dev") == "prod" else "console"


def configure_logging(level: str, log_format: str = "auto") -> None:
    """Route stdlib and structlog records through one stderr handler.

    Args:
        level: Log level string (DEBUG, INFO, WARNING, ERROR).
        log_format: One of ``LOG_FORMATS``. ``auto`` picks ``github`` on an
            Actions runner, ``json`` in prod and ``console`` otherwise.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    resolved = resolve_format(log_format)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    renderer: structlog.types.Processor
    render_chain: list[structlog.types.Processor] = []
    if resolved == "json":
        render_chain.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()
    elif resolved == "github":
        render_chain.append(structlog.processors.format_exc_info)
        renderer = render_github
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *render_chain,
            renderer,
        ],
    )

    # stdout is reserved for the JSON stage result printed by the CLI
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(log_level)
    logging.getLogger("httpx").setLevel(max(log_level, logging.WARNING))


def bind_run(*, dispatch_id: str | None = None, agent: str | None = None) -> None:
    """Bind run identifiers; an empty value leaves the bound one in place."""
    pairs = (("dispatch_id", dispatch_id), ("agent", agent))
    values = {key: value for key, value in pairs if value}
    structlog.contextvars.bind_contextvars(**values)


def log_stage(stage: str) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Tag every record logged while the decorated coroutine runs with ``stage``."""

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            with structlog.contextvars.bound_contextvars(stage=stage):
                return await func(*args, **kwargs)

        return wrapper

    return decorator


def clear_context() -> None:
    structlog.contextvars.unbind_contextvars(*CONTEXT_KEYS)
