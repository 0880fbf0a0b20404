"""
Structured error types for the provisioning orchestrator.

Every failure the orchestrator can observe is raised as a ``TigError``
subclass carrying a category, a ``foundational`` flag and an
``ErrorContext`` with the step, service, path or command involved. Lower
layers only raise; the step orchestrator decides whether a failure aborts
the run or is recorded and skipped, and the bootstrap entry point maps the
final outcome to a process exit code.

Why This Matters:
    The provisioner runs at boot with nobody watching. The only channels
    back to a human are the log file and the exit code, so an error has to
    carry enough context to explain itself in one log line.

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                         TigError                              │
        │        (category, foundational, context, cause)               │
        ├──────────────────────────────────────────────────────────────┤
        │  ConfigurationError     SecretGenerationError  (foundational) │
        │  (CONFIG)               (SECURITY)                            │
        │                                                               │
        │  MaterializeError       CommandError                          │
        │  (STORAGE)              (RUNTIME)                             │
        │                                                               │
        │  RuntimeInstallError    UnsupportedPlatformError (found.)     │
        │  (RUNTIME)              (PLATFORM)                            │
        │                                                               │
        │  ConvergenceError       StepAbortedError                      │
        │  (CONVERGENCE)          (ORCHESTRATION)                       │
        └──────────────────────────────────────────────────────────────┘

Guardrails:
    ❌ DON'T: Call ``sys.exit`` below the bootstrap layer
    ✅ DO: Raise a typed error and let the orchestrator classify it

    ❌ DON'T: Swallow the original exception
    ✅ DO: Pass it as ``cause=`` so the log shows the root failure

Tags:
    error-handling, exception-hierarchy, provisioning, error-context
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Classification used for log routing and the closing summary."""

    CONFIG = "CONFIG"
    SECURITY = "SECURITY"
    STORAGE = "STORAGE"
    RUNTIME = "RUNTIME"
    PLATFORM = "PLATFORM"
    CONVERGENCE = "CONVERGENCE"
    ORCHESTRATION = "ORCHESTRATION"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """Where an error happened.

    All fields are optional; ``to_dict`` drops the empty ones so the
    logged context stays short.
    """

    step: str | None = None
    service: str | None = None
    path: str | None = None
    command: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for key in ("step", "service", "path", "command"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        data.update(self.metadata)
        return data


class TigError(Exception):
    """Base class for all provisioning errors.

    Args:
        message: Human-readable description, logged verbatim.
        category: Override of the subclass default category.
        foundational: Override of the subclass default. A foundational
            error invalidates every later step.
        context: Structured context for the log line.
        cause: Underlying exception, chained as ``__cause__``.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_foundational: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        foundational: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.foundational = (
            self.default_foundational if foundational is None else foundational
        )
        self.context = context or ErrorContext()
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class ConfigurationError(TigError):
    """The Configuration Set could not be resolved.

    ``problems`` holds one ``(environment key, message)`` pair per invalid
    setting so they can all be reported in a single pass.
    """

    default_category = ErrorCategory.CONFIG
    default_foundational = True

    def __init__(
        self,
        message: str,
        problems: list[tuple[str, str]] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.problems = list(problems or [])


class SecretGenerationError(TigError):
    """The operating system's secure random source is unavailable."""

    default_category = ErrorCategory.SECURITY
    default_foundational = True


class MaterializeError(TigError):
    """A directory or file could not be created, owned, or verified."""

    default_category = ErrorCategory.STORAGE


class CommandError(TigError):
    """An external command failed or timed out."""

    default_category = ErrorCategory.RUNTIME

    def __init__(
        self,
        message: str,
        *,
        argv: list[str] | None = None,
        returncode: int | None = None,
        stderr: str = "",
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.argv = list(argv or [])
        self.returncode = returncode
        self.stderr = stderr
        if self.argv and self.context.command is None:
            self.context.command = " ".join(self.argv)


class RuntimeInstallError(TigError):
    """The container runtime or compose tool could not be installed or validated."""

    default_category = ErrorCategory.RUNTIME


class UnsupportedPlatformError(RuntimeInstallError):
    """The host distribution is not one the installer knows how to handle."""

    default_category = ErrorCategory.PLATFORM
    default_foundational = True


class ConvergenceError(TigError):
    """Managed services did not all reach a running state, even after remediation."""

    default_category = ErrorCategory.CONVERGENCE

    def __init__(
        self,
        message: str,
        states: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.states = dict(states or {})


class StepAbortedError(TigError):
    """A foundational step failed and the run cannot continue."""

    default_category = ErrorCategory.ORCHESTRATION
    default_foundational = True


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "TigError",
    "ConfigurationError",
    "SecretGenerationError",
    "MaterializeError",
    "CommandError",
    "RuntimeInstallError",
    "UnsupportedPlatformError",
    "ConvergenceError",
    "StepAbortedError",
]
