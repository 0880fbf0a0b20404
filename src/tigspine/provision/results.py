"""Run Ledger and status models for a provisioning run.

The ledger is the orchestrator's in-memory record of what happened. The
orchestrator plans every step as ``pending`` before the first one runs. Every
attempted step lands in exactly one of two lists (completed or failed), and
the final run status is derived from those lists plus a single ``aborted``
flag set when a foundational step fails.

Status taxonomy::

    step:  pending ─► running ─► completed
                             └─► failed

    run:   RUNNING ─► SUCCESS           no failures
                  ├─► PARTIAL_SUCCESS   only recoverable steps failed
                  └─► FAILED            a foundational step aborted the run
                                        (or nothing could start at all)

Exit codes: 0 for SUCCESS and PARTIAL_SUCCESS, 1 for FAILED, 2 when the
configuration could not be resolved and no step was attempted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepKind(str, Enum):
    FOUNDATIONAL = "foundational"
    RECOVERABLE = "recoverable"


class RunStatus(str, Enum):
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    PARTIAL_SUCCESS = "PARTIAL_SUCCESS"
    FAILED = "FAILED"


@dataclass
class StepOutcome:
    """Tracked state of one step in one run."""

    ordinal: int
    name: str
    kind: StepKind = StepKind.RECOVERABLE
    status: StepStatus = StepStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    diagnostic: str | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ordinal": self.ordinal,
            "name": self.name,
            "kind": self.kind.value,
            "status": self.status.value,
            "duration_seconds": self.duration_seconds,
            "diagnostic": self.diagnostic,
        }


@dataclass
class RunLedger:
    """Ordered record of step outcomes for one run."""

    total_steps: int
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: datetime | None = None
    status: RunStatus = RunStatus.RUNNING
    outcomes: list[StepOutcome] = field(default_factory=list)
    aborted: bool = False
    abort_reason: str | None = None

    # ── Recording ────────────────────────────────────────────────

    def plan(self, ordinal: int, name: str, kind: StepKind = StepKind.RECOVERABLE) -> StepOutcome:
        """Register a step as ``pending`` before the run reaches it."""
        outcome = StepOutcome(ordinal=ordinal, name=name, kind=kind)
        self.outcomes.append(outcome)
        return outcome

    def begin(self, ordinal: int, name: str, kind: StepKind = StepKind.RECOVERABLE) -> StepOutcome:
        """Move a step to ``running``, planning it first if it was not."""
        outcome = next(
            (o for o in self.outcomes if o.ordinal == ordinal and o.status == StepStatus.PENDING),
            None,
        ) or self.plan(ordinal, name, kind)
        outcome.status = StepStatus.RUNNING
        outcome.started_at = datetime.now()
        return outcome

    def record_success(self, outcome: StepOutcome) -> None:
        outcome.status = StepStatus.COMPLETED
        outcome.completed_at = datetime.now()

    def record_failure(self, outcome: StepOutcome, diagnostic: str) -> None:
        outcome.status = StepStatus.FAILED
        outcome.completed_at = datetime.now()
        outcome.diagnostic = diagnostic

    def abort(self, reason: str) -> None:
        self.aborted = True
        self.abort_reason = reason

    # ── Views ────────────────────────────────────────────────────

    @property
    def attempted(self) -> list[StepOutcome]:
        return [o for o in self.outcomes if o.status != StepStatus.PENDING]

    @property
    def pending_steps(self) -> list[str]:
        """Planned steps the run never reached (only after an abort)."""
        return [o.name for o in self.outcomes if o.status == StepStatus.PENDING]

    @property
    def completed_steps(self) -> list[str]:
        return [o.name for o in self.outcomes if o.status == StepStatus.COMPLETED]

    @property
    def failed_steps(self) -> list[tuple[str, str]]:
        return [
            (o.name, o.diagnostic or "")
            for o in self.outcomes
            if o.status == StepStatus.FAILED
        ]

    def is_partitioned(self) -> bool:
        """Every attempted step is in exactly one of completed / failed."""
        completed = self.completed_steps
        failed = [name for name, _ in self.failed_steps]
        attempted = [o.name for o in self.attempted]
        return (
            len(completed) + len(failed) == len(attempted)
            and not set(completed) & set(failed)
            and sorted(completed + failed) == sorted(attempted)
        )

    # ── Finalisation ─────────────────────────────────────────────

    def compute_status(self) -> RunStatus:
        if self.aborted:
            return RunStatus.FAILED
        if self.failed_steps:
            return RunStatus.PARTIAL_SUCCESS
        return RunStatus.SUCCESS

    def mark_complete(self) -> None:
        """Freeze the ledger: set completion time and final status."""
        if self.completed_at is None:
            self.completed_at = datetime.now()
        self.status = self.compute_status()

    @property
    def exit_code(self) -> int:
        status = self.status if self.status != RunStatus.RUNNING else self.compute_status()
        return EXIT_FAILED if status == RunStatus.FAILED else EXIT_OK

    @property
    def duration_seconds(self) -> float:
        end = self.completed_at or datetime.now()
        return (end - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "total_steps": self.total_steps,
            "completed": self.completed_steps,
            "failed": [{"step": name, "error": err} for name, err in self.failed_steps],
            "pending": self.pending_steps,
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "steps": [o.to_dict() for o in self.outcomes],
        }


@dataclass(frozen=True)
class SystemState:
    """Host facts reported in the closing block."""

    runtime_installed: bool
    runtime_running: bool
    compose_installed: bool
    install_dir_exists: bool
    running_services: int


__all__ = [
    "EXIT_OK",
    "EXIT_FAILED",
    "EXIT_CONFIG",
    "StepStatus",
    "StepKind",
    "RunStatus",
    "StepOutcome",
    "RunLedger",
    "SystemState",
]
