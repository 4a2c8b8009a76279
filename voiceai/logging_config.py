"""
structlog setup for the dashboard service.

Events are rendered by structlog and handed to the stdlib root logger, so
our own events, uvicorn and httpx share the console and the
``dashboard.jsonl`` file. Request handlers bind the tenant id into the
context, which puts it on every line logged while serving that request.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import structlog

LOG_FILE = "dashboard.jsonl"
_HANDLER_PREFIX = "voiceai."
_CHATTY = ("aiosqlite", "httpx", "httpcore", "uvicorn.access")


def setup_logging(log_dir: Path, json_logs: bool = True, level: int = logging.INFO) -> None:
    """
    Configure structlog on top of stdlib logging.

    Parameters
    ----------
    log_dir : Path
        Directory for the JSON-lines log file.
    json_logs : bool
        Render JSON (and write ``log_dir/dashboard.jsonl``); otherwise use
        the human-readable console renderer only.
    level : int
        Minimum level for our events; chatty libraries stay at WARNING.
    """
    log_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(level)
    # Calling twice (CLI command then server) must not duplicate output.
    for handler in list(root.handlers):
        if (handler.get_name() or "").startswith(_HANDLER_PREFIX):
            root.removeHandler(handler)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if json_logs:
        handlers.append(logging.FileHandler(log_dir / LOG_FILE, encoding="utf-8"))
    for handler in handlers:
        handler.set_name(f"{_HANDLER_PREFIX}{type(handler).__name__}")
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(handler)

    for name in _CHATTY:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(colors=False)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_tenant(tenant_id: str) -> None:
    """Attach the tenant id to every log line emitted in this context."""
    structlog.contextvars.bind_contextvars(tenant_id=tenant_id)
