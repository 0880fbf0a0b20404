"""Deployment Validator: start the service group and wait for convergence.

Why This Matters:
    Containers built on first boot are slow and sometimes flaky: an image
    pull times out, InfluxDB is not listening yet when Grafana starts, a
    container exits once and is restarted. The validator absorbs this with
    a bounded poll, one full restart, and a second shorter poll, and only
    then reports a hard failure that names the services still down.

Architecture:
    ::

        start() ── down ─► up
                              │
        validate()            ▼
          poll(max_attempts) ─── all running? ──yes──► probes ─► report
                │ no
                ▼
          diagnostics (ps + last 20 log lines per non-running service)
                │
          remediate: down ─► pause ─► up
                │
          poll(remediation_attempts) ── all running? ──yes──► probes ─► report
                │ no
                ▼
          diagnostics ─► ConvergenceError(states)

Key Concepts:
    ServiceHealth: ``unknown → starting → healthy | unhealthy`` per service.
    Convergence: every managed service is ``running`` in the same poll.
        Two out of three is not convergence.
    Remediation: at most one stop/start cycle per ``validate()`` call.
    Probes: advisory checks run after convergence; see
        :mod:`tigspine.provision.health`.

Related Modules:
    - :mod:`tigspine.provision.retry` — ``ConvergencePolicy``
    - :mod:`tigspine.provision.compose` — state queries and lifecycle
    - :mod:`tigspine.provision.steps` — steps 9 and 10 call into here

Tags:
    convergence, health-check, retry, remediation, polling
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from tigspine.core.errors import ConvergenceError, ErrorContext
from tigspine.core.logging import get_logger
from tigspine.provision.compose import STATE_RUNNING, ComposeManager
from tigspine.provision.health import HealthProbes, ProbeResult
from tigspine.provision.retry import ConvergencePolicy

logger = get_logger(__name__)

DIAGNOSTIC_LOG_LINES = 20


class ServiceHealth(str, Enum):
    UNKNOWN = "unknown"
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass
class PollOutcome:
    converged: bool
    attempts: int
    states: dict[str, str]

    @property
    def not_running(self) -> dict[str, str]:
        return {svc: state for svc, state in self.states.items() if state != STATE_RUNNING}


@dataclass
class ValidationReport:
    """What ``validate()`` observed."""

    health: dict[str, ServiceHealth]
    states: dict[str, str]
    attempts: int
    remediated: bool = False
    probes: list[ProbeResult] = field(default_factory=list)

    @property
    def probe_warnings(self) -> int:
        return sum(1 for probe in self.probes if not probe.ok)


class DeploymentValidator:
    """Drives start, convergence polling, remediation and probes."""

    def __init__(
        self,
        compose: ComposeManager,
        policy: ConvergencePolicy,
        probes: HealthProbes | None = None,
    ) -> None:
        self.compose = compose
        self.policy = policy
        self.probes = probes
        self.health: dict[str, ServiceHealth] = {
            service: ServiceHealth.UNKNOWN for service in compose.services
        }
        self.remediations = 0

    def start(self) -> None:
        """Bring the group down (clearing leftovers) and up again."""
        self.compose.down()
        self.compose.up()
        self._mark(ServiceHealth.STARTING)

    def poll(self, attempts: int) -> PollOutcome:
        """Poll up to ``attempts`` times; stop early once every service runs."""
        states: dict[str, str] = {}
        for attempt in range(1, attempts + 1):
            states = self.compose.service_states()
            running = sum(1 for state in states.values() if state == STATE_RUNNING)
            if running == len(states):
                logger.info(
                    "All services running",
                    attempt=attempt,
                    running=f"{running}/{len(states)}",
                )
                return PollOutcome(True, attempt, states)
            logger.info(
                "Waiting for services",
                attempt=f"{attempt}/{attempts}",
                running=f"{running}/{len(states)}",
                states=",".join(f"{svc}={state}" for svc, state in states.items()),
            )
            if attempt < attempts:
                self.policy.sleep(self.policy.delay)
        return PollOutcome(False, attempts, states)

    def remediate(self) -> None:
        """The single full stop / pause / start cycle."""
        self.remediations += 1
        logger.warning("Services did not converge; restarting the service group once")
        self.compose.down()
        self.policy.sleep(self.policy.remediation_pause)
        self.compose.up()
        self._mark(ServiceHealth.STARTING)

    def capture_diagnostics(self, outcome: PollOutcome) -> None:
        logger.warning("Service group status:")
        for line in self.compose.ps().strip().splitlines():
            logger.warning(f"  {line}")
        for service, state in outcome.not_running.items():
            logs = self.compose.logs(service, tail=DIAGNOSTIC_LOG_LINES).strip()
            logger.warning(
                f"Last {DIAGNOSTIC_LOG_LINES} log lines of non-running service",
                service=service,
                state=state,
            )
            for line in logs.splitlines() or ["(no output)"]:
                logger.warning(f"  {service} | {line}")

    def validate(self) -> ValidationReport:
        """Wait for convergence, remediating once, then run the probes.

        Raises:
            ConvergenceError: Services still not running after remediation.
        """
        outcome = self.poll(self.policy.max_attempts)
        attempts = outcome.attempts
        remediated = False

        if not outcome.converged:
            self.capture_diagnostics(outcome)
            self.remediate()
            remediated = True
            outcome = self.poll(self.policy.remediation_attempts)
            attempts += outcome.attempts

        if not outcome.converged:
            self.capture_diagnostics(outcome)
            for service, state in outcome.states.items():
                self.health[service] = (
                    ServiceHealth.HEALTHY if state == STATE_RUNNING else ServiceHealth.UNHEALTHY
                )
            offenders = outcome.not_running
            raise ConvergenceError(
                "Services failed to converge after remediation: "
                + ", ".join(f"{svc} ({state})" for svc, state in offenders.items()),
                states=offenders,
                context=ErrorContext(service=",".join(offenders)),
            )

        self._mark(ServiceHealth.HEALTHY)
        report = ValidationReport(
            health=dict(self.health),
            states=outcome.states,
            attempts=attempts,
            remediated=remediated,
        )
        if self.probes is not None:
            report.probes = self.probes.run_all()
        return report

    def _mark(self, health: ServiceHealth) -> None:
        for service in self.health:
            self.health[service] = health


__all__ = [
    "DeploymentValidator",
    "PollOutcome",
    "ServiceHealth",
    "ValidationReport",
    "DIAGNOSTIC_LOG_LINES",
]
