"""
Structured logging for unattended provisioning runs.

Every component writes through one process-wide ``structlog`` configuration
whose final processor renders a single text line per event and hands it to
a ``LogSink``. The sink appends complete lines to the install log, so lines
from the orchestrator and from any helper process writing to the same file
never interleave mid-line.

Why This Matters:
    A boot-time payload has no terminal. Whoever launched the instance can
    only read the log file (or its tail in the host boot log) afterwards.
    The line format is therefore a contract that external monitors grep.

Architecture:
    ::

        logger.success("Docker installed", version="24.0.5")
                │
                ▼
        ┌──────────────────────────────────────────────┐
        │ processor chain                               │
        │   1. merge_contextvars   (step / total_steps) │
        │   2. add level tag       (INFO, SUCCESS, ...) │
        │   3. level filter        (DropEvent)          │
        │   4. secret redaction                         │
        │   5. format_exc_info                          │
        │   6. TimeStamper         (%Y-%m-%d %H:%M:%S)  │
        │   7. render_line                              │
        └──────────────────────────────────────────────┘
                │
                ▼
        [2025-01-01 12:00:00] [SUCCESS] [STEP 1/12] Docker installed version=24.0.5
                │
                ▼
        LogSink ──► install log (append, line-buffered) ──► stdout echo

Key Concepts:
    ProvisionLogger: bound logger with ``debug``, ``info``, ``success``,
        ``warning`` and ``error`` methods. ``SUCCESS`` sits between INFO and
        WARNING.
    LogSink: append-only file writer with optional stdout echo.
    step_context: binds the ``[STEP n/total]`` tag for the duration of a step.
    link_alias / append_log_tail: best-effort hand-offs to the alias path and
        the host boot log.

Guardrails:
    ❌ DON'T: Log a password, even at DEBUG
    ✅ DO: Pass ``SecretStr`` values or ``*password*`` keys; they are masked

Related Modules:
    - :mod:`tigspine.core.secrets` — ``mask_secret`` rendering
    - :mod:`tigspine.provision.orchestrator` — binds the step context
    - :mod:`tigspine.provision.report` — writes the closing block

Tags:
    logging, structlog, audit-trail, redaction, boot-log
"""

from __future__ import annotations

import sys
from collections import deque
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, TextIO

import structlog
from pydantic import SecretStr
from structlog.types import EventDict, WrappedLogger

from tigspine.core.secrets import MASK_PREFIX, mask_secret

LEVELS: dict[str, int] = {
    "debug": 10,
    "info": 20,
    "success": 25,
    "warning": 30,
    "error": 40,
    "critical": 50,
}

_SENSITIVE_KEYS = ("password", "secret", "token")

BOOT_LOG_BANNER = "=== TIG Stack Installation Log ==="


# ---------------------------------------------------------------------------
# Sink
# ---------------------------------------------------------------------------


class LogSink:
    """Append-only line writer.

    Args:
        path: Log file. ``None`` means echo only.
        echo: Also write every line to ``stream`` (stdout by default).
        stream: Echo target, mainly for tests.
    """

    def __init__(
        self,
        path: Path | None = None,
        *,
        echo: bool = False,
        stream: TextIO | None = None,
    ) -> None:
        self.path = path
        self.echo = echo
        self._stream = stream
        self._fh: TextIO | None = None

    def open(self) -> LogSink:
        if self.path is not None and self._fh is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self.path, "a", buffering=1, encoding="utf-8")
        return self

    def write(self, line: str) -> None:
        text = line if line.endswith("\n") else line + "\n"
        if self._fh is not None:
            self._fh.write(text)
        if self.echo:
            stream = self._stream or sys.stdout
            stream.write(text)
            stream.flush()

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None


def open_sink(
    preferred: Path, fallback: Path, *, echo: bool = True
) -> tuple[LogSink, bool]:
    """Open the preferred log file, else the fallback, else echo only.

    Returns the sink and whether a fallback was taken.
    """
    for path in (preferred, fallback):
        try:
            return LogSink(path, echo=echo).open(), path != preferred
        except OSError:
            continue
    return LogSink(None, echo=True), True


class _SinkLogger:
    """Wrapped logger handed to structlog; every level writes the rendered line."""

    def __init__(self, sink: LogSink) -> None:
        self._sink = sink

    def msg(self, message: str) -> None:
        self._sink.write(message)

    debug = info = success = warning = error = critical = msg


class SinkLoggerFactory:
    def __init__(self, sink: LogSink) -> None:
        self.sink = sink

    def __call__(self, *args: Any) -> _SinkLogger:
        return _SinkLogger(self.sink)


# ---------------------------------------------------------------------------
# Bound logger
# ---------------------------------------------------------------------------


class ProvisionLogger(structlog.BoundLoggerBase):
    """Bound logger exposing the provisioning severities."""

    def debug(self, event: str | None = None, **kw: Any) -> Any:
        return self._proxy_to_logger("debug", event, **kw)

    def info(self, event: str | None = None, **kw: Any) -> Any:
        return self._proxy_to_logger("info", event, **kw)

    def success(self, event: str | None = None, **kw: Any) -> Any:
        return self._proxy_to_logger("success", event, **kw)

    def warning(self, event: str | None = None, **kw: Any) -> Any:
        return self._proxy_to_logger("warning", event, **kw)

    warn = warning

    def error(self, event: str | None = None, **kw: Any) -> Any:
        return self._proxy_to_logger("error", event, **kw)

    def exception(self, event: str | None = None, **kw: Any) -> Any:
        kw.setdefault("exc_info", True)
        return self._proxy_to_logger("error", event, **kw)


# ---------------------------------------------------------------------------
# Processors
# ---------------------------------------------------------------------------


def _add_level(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["level"] = method_name.upper()
    return event_dict


class _LevelFilter:
    def __init__(self, level: str) -> None:
        self.threshold = LEVELS.get(level.lower(), LEVELS["info"])

    def __call__(self, logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        if LEVELS.get(method_name, LEVELS["info"]) < self.threshold:
            raise structlog.DropEvent
        return event_dict


def redact_secrets(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask ``SecretStr`` values and string values under sensitive keys."""
    for key, value in list(event_dict.items()):
        if isinstance(value, SecretStr):
            event_dict[key] = mask_secret(value.get_secret_value())
        elif isinstance(value, str) and any(s in key.lower() for s in _SENSITIVE_KEYS):
            if not value.startswith(MASK_PREFIX):
                event_dict[key] = mask_secret(value)
    return event_dict


def _format_value(value: Any) -> str:
    text = str(value)
    if not text or any(c.isspace() for c in text):
        return repr(text)
    return text


def render_line(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> str:
    """Render ``[ts] [LEVEL] [STEP n/total] event key=value ...``."""
    timestamp = event_dict.pop("timestamp", "")
    level = event_dict.pop("level", method_name.upper())
    step = event_dict.pop("step", None)
    total = event_dict.pop("total_steps", None)
    event = event_dict.pop("event", "")
    exception = event_dict.pop("exception", None)

    parts = [f"[{timestamp}]", f"[{level}]"]
    if step is not None:
        parts.append(f"[STEP {step}/{total if total is not None else '?'}]")
    parts.append(str(event))
    extras = " ".join(f"{k}={_format_value(v)}" for k, v in event_dict.items())
    if extras:
        parts.append(extras)

    line = " ".join(parts)
    if exception:
        line = f"{line}\n{exception}"
    return line


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def configure_logging(sink: LogSink | None = None, level: str = "INFO") -> LogSink:
    """Install the process-wide processor chain and return the active sink.

    Safe to call repeatedly; loggers are not cached, so module-level
    loggers pick up the newest sink on their next call.
    """
    sink = sink or LogSink(echo=True)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _add_level,
            _LevelFilter(level),
            redact_secrets,
            structlog.processors.format_exc_info,
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", utc=False),
            render_line,
        ],
        wrapper_class=ProvisionLogger,
        context_class=dict,
        logger_factory=SinkLoggerFactory(sink),
        cache_logger_on_first_use=False,
    )
    return sink


def get_logger(name: str | None = None) -> Any:
    """Return a :class:`ProvisionLogger` proxy (usually ``get_logger(__name__)``)."""
    if not structlog.is_configured():
        configure_logging()
    return structlog.get_logger(name)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


@contextmanager
def step_context(ordinal: int, total: int) -> Iterator[None]:
    """Tag every line logged inside the block with ``[STEP ordinal/total]``."""
    with structlog.contextvars.bound_contextvars(step=ordinal, total_steps=total):
        yield


# ---------------------------------------------------------------------------
# Hand-offs
# ---------------------------------------------------------------------------


def link_alias(alias: Path, target: Path) -> bool:
    """Point ``alias`` at ``target``. Returns False if the link could not be made."""
    if alias == target:
        return False
    try:
        if alias.is_symlink() or alias.exists():
            alias.unlink()
        alias.symlink_to(target.resolve())
    except OSError:
        return False
    return True


def append_log_tail(log_path: Path, boot_log: Path, lines: int = 50) -> bool:
    """Append the last ``lines`` lines of ``log_path`` to ``boot_log``."""
    if lines <= 0 or log_path == boot_log:
        return False
    try:
        with open(log_path, encoding="utf-8", errors="replace") as fh:
            tail = deque(fh, maxlen=lines)
        with open(boot_log, "a", encoding="utf-8") as out:
            out.write(f"{BOOT_LOG_BANNER}\n")
            out.writelines(tail)
    except OSError:
        return False
    return True


__all__ = [
    "LEVELS",
    "LogSink",
    "open_sink",
    "ProvisionLogger",
    "configure_logging",
    "get_logger",
    "clear_context",
    "step_context",
    "redact_secrets",
    "render_line",
    "link_alias",
    "append_log_tail",
]
