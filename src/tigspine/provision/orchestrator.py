"""Step Orchestrator: the control spine of a provisioning run.

Why This Matters:
    The run is a fixed sequence of twelve steps with real dependencies
    between them, executed once, unattended, on a machine nobody is logged
    into. A failure in one corner (say, a Grafana plugin) must not stop the
    database and collector from coming up, yet a failure at the base
    (no container runtime, no install directory) makes everything after it
    meaningless. The orchestrator encodes that difference explicitly.

Architecture:
    ::

        StepOrchestrator.run(state)
          ledger.plan(step) for every step         ─► pending
          for step in steps (ordinal order):
            ledger.begin(step)                     pending ─► running
            with step_context(n, total):           [STEP n/total] on every line
              step.body(state)
                ├─ ok        ─► ledger.record_success      ─► completed
                └─ exception ─► ledger.record_failure      ─► failed
                                 foundational? ─► raise StepAbortedError
                                                  ─► ledger.abort, rest stay pending
                                 otherwise     ─► continue
          ledger.mark_complete()                   SUCCESS | PARTIAL_SUCCESS | FAILED

Key Concepts:
    Step: ordinal, name, body ``(RunState) -> None``, and kind.
    StepKind.FOUNDATIONAL: failure aborts the run. A body may also raise a
        ``TigError`` whose ``foundational`` flag is set (unsupported
        platform, secret generation), which aborts regardless of kind.
    RunState: the one object handed to every step body. It owns the
        configuration, the ledger and every collaborator; there is no
        module-level mutable state.

Related Modules:
    - :mod:`tigspine.provision.results` — ``RunLedger`` and statuses
    - :mod:`tigspine.provision.steps` — the twelve step bodies
    - :mod:`tigspine.provision.bootstrap` — builds ``RunState`` and runs this

Tags:
    orchestration, state-machine, graceful-degradation, steps, ledger
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from tigspine.core.commands import CommandRunner
from tigspine.core.errors import ErrorContext, StepAbortedError, TigError
from tigspine.core.logging import get_logger, step_context
from tigspine.core.settings import ProvisionerSettings
from tigspine.provision.compose import ComposeManager
from tigspine.provision.config import StackConfig
from tigspine.provision.health import HealthProbes
from tigspine.provision.materializer import ResourceMaterializer
from tigspine.provision.results import RunLedger, StepKind
from tigspine.provision.runtime import InstallReport, RuntimeInstaller
from tigspine.provision.validator import DeploymentValidator, ValidationReport

logger = get_logger(__name__)


@dataclass
class RunState:
    """Everything a step body may read or update during one run."""

    config: StackConfig
    settings: ProvisionerSettings
    ledger: RunLedger
    runner: CommandRunner
    materializer: ResourceMaterializer
    installer: RuntimeInstaller
    compose: ComposeManager
    validator: DeploymentValidator
    probes: HealthProbes | None = None
    log_path: Path | None = None
    owner: str | None = None
    install_report: InstallReport | None = None
    validation: ValidationReport | None = None

    def close(self) -> None:
        self.installer.close()
        if self.probes is not None:
            self.probes.close()


StepBody = Callable[[RunState], None]


@dataclass(frozen=True)
class Step:
    ordinal: int
    name: str
    body: StepBody
    kind: StepKind = StepKind.RECOVERABLE

    @property
    def foundational(self) -> bool:
        return self.kind == StepKind.FOUNDATIONAL


def describe_failure(exc: BaseException) -> str:
    """Short diagnostic for the ledger and the ``Failed:`` log line."""
    if isinstance(exc, TigError):
        return exc.message
    text = str(exc)
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


class StepOrchestrator:
    """Runs a fixed, ordered list of steps against one ``RunState``."""

    def __init__(self, steps: Sequence[Step]) -> None:
        ordinals = [step.ordinal for step in steps]
        if ordinals != list(range(1, len(steps) + 1)):
            raise ValueError(f"step ordinals must be 1..{len(steps)} in order, got {ordinals}")
        names = [step.name for step in steps]
        if len(set(names)) != len(names):
            raise ValueError("step names must be unique")
        self.steps = tuple(steps)

    @property
    def total(self) -> int:
        return len(self.steps)

    def run(self, state: RunState) -> RunLedger:
        ledger = state.ledger
        ledger.total_steps = self.total
        for step in self.steps:
            ledger.plan(step.ordinal, step.name, step.kind)

        try:
            for step in self.steps:
                self._run_step(step, state)
        except StepAbortedError as exc:
            ledger.abort(exc.message)
            logger.error(
                "Foundational step failed; aborting remaining steps",
                skipped=len(ledger.pending_steps),
            )

        ledger.mark_complete()
        return ledger

    def _run_step(self, step: Step, state: RunState) -> None:
        """Run one step body; raise ``StepAbortedError`` if the run must stop."""
        ledger = state.ledger
        outcome = ledger.begin(step.ordinal, step.name, step.kind)
        with step_context(step.ordinal, self.total):
            logger.info(f"Starting: {step.name}")
            try:
                step.body(state)
            except Exception as exc:
                diagnostic = describe_failure(exc)
                ledger.record_failure(outcome, diagnostic)
                fields = exc.context.to_dict() if isinstance(exc, TigError) else {}
                fields.pop("step", None)
                logger.error(f"Failed: {step.name} - {diagnostic}", **fields)
                if step.foundational or (isinstance(exc, TigError) and exc.foundational):
                    raise StepAbortedError(
                        f"{step.name}: {diagnostic}",
                        context=ErrorContext(step=step.name),
                        cause=exc,
                    ) from exc
                logger.warning("Continuing with remaining installation steps...")
                return
            ledger.record_success(outcome)
            logger.success(f"Completed: {step.name}")


__all__ = ["RunState", "Step", "StepBody", "StepOrchestrator", "describe_failure"]
