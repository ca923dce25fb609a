"""
Structured logging for the diligence engine.

Provides:
- Context variables for session_id, agent, phase (using contextvars)
- JSONFormatter for machine-readable logs to file
- ContextRichHandler for console output prefixed with run context
- ContextLogger wrapper that accepts structured keyword fields
- setup_logging() and get_logger()
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator

import orjson
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.text import Text

_session_id_var: ContextVar[str | None] = ContextVar("session_id", default=None)
_agent_var: ContextVar[str | None] = ContextVar("agent", default=None)
_phase_var: ContextVar[str | None] = ContextVar("phase", default=None)

ROOT_LOGGER = "dde"


def get_session_id() -> str | None:
    """Get the current analysis session ID from context."""
    return _session_id_var.get()


def get_agent() -> str | None:
    """Get the current agent name from context."""
    return _agent_var.get()


def get_phase() -> str | None:
    """Get the current phase from context."""
    return _phase_var.get()


@contextmanager
def log_context(
    session_id: str | None = None,
    agent: str | None = None,
    phase: str | None = None,
) -> Generator[None, None, None]:
    """Scope logging context for the duration of a block.

    Values left as None keep whatever the enclosing context already set.
    Each asyncio task copies the context on creation, so agents running
    concurrently inside one batch do not see each other's agent name.
    """
    tokens = []
    if session_id is not None:
        tokens.append((_session_id_var, _session_id_var.set(session_id)))
    if agent is not None:
        tokens.append((_agent_var, _agent_var.set(agent)))
    if phase is not None:
        tokens.append((_phase_var, _phase_var.set(phase)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def _context_fields() -> dict[str, str]:
    fields: dict[str, str] = {}
    session_id = get_session_id()
    agent = get_agent()
    phase = get_phase()
    if session_id:
        fields["session_id"] = session_id
    if agent:
        fields["agent"] = agent
    if phase:
        fields["phase"] = phase
    return fields


class JSONFormatter(logging.Formatter):
    """JSON Lines formatter for log files."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_obj.update(_context_fields())

        if hasattr(record, "extra"):
            log_obj["extra"] = record.extra

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return orjson.dumps(log_obj, default=str).decode("utf-8")


class ContextRichHandler(RichHandler):
    """Rich handler that includes run context in console output."""

    def get_level_text(self, record: logging.LogRecord) -> Text:
        level_text = super().get_level_text(record)

        parts: list[str] = []
        session_id = get_session_id()
        agent = get_agent()
        phase = get_phase()

        if session_id:
            short_id = session_id.split("_")[-1][-8:]
            parts.append(f"[dim]{short_id}[/dim]")
        if phase:
            parts.append(f"[cyan]{phase}[/cyan]")
        if agent:
            parts.append(f"[magenta]{agent}[/magenta]")

        if parts:
            level_text.append(" ")
            level_text.append_text(Text.from_markup(" ".join(parts)))
        return level_text

    def render_message(self, record: logging.LogRecord, message: str) -> Any:
        extra = getattr(record, "extra", None)
        if extra:
            fields = " ".join(
                f"{k}={escape(str(v))}"
                for k, v in extra.items()
                if k not in ("session_id", "agent", "phase")
            )
            if fields:
                message = f"{message} [dim]{fields}[/dim]"
        return super().render_message(record, message)


class ContextLogger:
    """Logger wrapper that takes structured fields as keyword arguments.

    ``logger.info("Batch finished", batch=2, failed=1)``
    """

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def _log(
        self,
        level: int,
        msg: str,
        *args: Any,
        exc_info: bool = False,
        **kwargs: Any,
    ) -> None:
        extra = kwargs.pop("extra", {})
        extra.update(_context_fields())

        for key in list(kwargs.keys()):
            if key not in ("stack_info", "stacklevel"):
                extra[key] = kwargs.pop(key)

        self._logger.log(level, msg, *args, exc_info=exc_info, extra={"extra": extra})

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args: Any, exc_info: bool = False, **kwargs: Any) -> None:
        self._log(logging.ERROR, msg, *args, exc_info=exc_info, **kwargs)

    def critical(self, msg: str, *args: Any, exc_info: bool = False, **kwargs: Any) -> None:
        self._log(logging.CRITICAL, msg, *args, exc_info=exc_info, **kwargs)

    def exception(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log at ERROR level with the active traceback."""
        self._log(logging.ERROR, msg, *args, exc_info=True, **kwargs)


_console: Console | None = None
_setup_done: bool = False


def get_console() -> Console:
    """Get the shared stderr console."""
    global _console
    if _console is None:
        _console = Console(stderr=True)
    return _console


def setup_logging(
    log_level: str = "INFO",
    log_file: Path | None = None,
    console_output: bool = True,
) -> None:
    """Configure the ``dde`` logger tree.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Path to a JSON Lines log file. If None, no file handler.
        console_output: Whether to attach the rich console handler.
    """
    global _setup_done

    root_logger = logging.getLogger(ROOT_LOGGER)
    root_logger.setLevel(getattr(logging, log_level.upper()))
    root_logger.handlers.clear()

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setFormatter(JSONFormatter())
        file_handler.setLevel(logging.DEBUG)
        root_logger.addHandler(file_handler)

    if console_output:
        rich_handler = ContextRichHandler(
            console=get_console(),
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
            tracebacks_show_locals=False,
            markup=True,
        )
        rich_handler.setLevel(getattr(logging, log_level.upper()))
        root_logger.addHandler(rich_handler)

    root_logger.propagate = False

    for noisy_logger in ["aiosqlite", "asyncio"]:
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)

    _setup_done = True


def get_logger(name: str) -> ContextLogger:
    """Get a context-aware logger under the ``dde`` namespace.

    Args:
        name: Logger name (usually __name__).
    """
    if not _setup_done:
        setup_logging()

    if name != ROOT_LOGGER and not name.startswith(f"{ROOT_LOGGER}."):
        name = f"{ROOT_LOGGER}.{name}"

    return ContextLogger(logging.getLogger(name))
