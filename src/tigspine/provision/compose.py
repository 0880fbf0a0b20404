"""Compose tool wrapper for the managed service group.

Thin layer over the compose CLI run in the install root. It prefers a
standalone ``docker-compose`` binary and falls back to the ``docker
compose`` plugin, because either may be what the runtime installer left
behind.

Key Concepts:
    MANAGED_SERVICES: the three services whose convergence is checked.
    service_states(): per service, the container's ``State.Status`` as
        reported by ``docker inspect``; ``missing`` when compose knows no
        container for it, ``unknown`` when the query itself failed.
    up()/down(): the only two lifecycle commands. Both raise
        ``CommandError`` on failure.

Related Modules:
    - :mod:`tigspine.provision.validator` — polls ``service_states``
    - :mod:`tigspine.provision.health` — uses ``exec`` for the collector probe

Tags:
    compose, docker, lifecycle, subprocess
"""

from __future__ import annotations

import subprocess
from pathlib import Path

from tigspine.core.commands import CommandRunner
from tigspine.core.logging import get_logger

logger = get_logger(__name__)

MANAGED_SERVICES: tuple[str, ...] = ("influxdb", "telegraf", "grafana")

STATE_RUNNING = "running"
STATE_MISSING = "missing"
STATE_UNKNOWN = "unknown"


def _normalize_state(state: str) -> str:
    """Map a raw runtime state onto the small vocabulary used in logs."""
    state = state.strip().lower()
    if state in ("running", "healthy"):
        return STATE_RUNNING
    if state in ("created", "restarting", "starting"):
        return "starting"
    if state in ("exited", "dead", "paused", "removing"):
        return state
    return STATE_UNKNOWN if not state else state


class ComposeManager:
    """Runs compose commands for the project in ``project_dir``."""

    def __init__(
        self,
        runner: CommandRunner,
        project_dir: Path,
        services: tuple[str, ...] = MANAGED_SERVICES,
    ) -> None:
        self.runner = runner
        self.project_dir = project_dir
        self.services = services

    def command(self) -> list[str]:
        """The compose invocation available on this host."""
        if self.runner.which("docker-compose"):
            return ["docker-compose"]
        return ["docker", "compose"]

    def up(self) -> None:
        logger.info("Building and starting service group", project=str(self.project_dir))
        self.runner.run(
            [*self.command(), "up", "-d", "--build", "--remove-orphans"],
            cwd=self.project_dir,
        )

    def down(self) -> None:
        logger.info("Stopping service group", project=str(self.project_dir))
        self.runner.run(
            [*self.command(), "down", "--remove-orphans"],
            cwd=self.project_dir,
        )

    def container_id(self, service: str) -> str | None:
        result = self.runner.run(
            [*self.command(), "ps", "-q", service], check=False, cwd=self.project_dir
        )
        if result.returncode != 0:
            return None
        ids = result.stdout.split()
        return ids[0] if ids else ""

    def service_state(self, service: str) -> str:
        container = self.container_id(service)
        if container is None:
            return STATE_UNKNOWN
        if not container:
            return STATE_MISSING
        result = self.runner.run(
            ["docker", "inspect", "--format", "{{.State.Status}}", container],
            check=False,
        )
        if result.returncode != 0:
            return STATE_UNKNOWN
        return _normalize_state(result.stdout)

    def service_states(self) -> dict[str, str]:
        return {service: self.service_state(service) for service in self.services}

    def running_count(self) -> int:
        return sum(1 for state in self.service_states().values() if state == STATE_RUNNING)

    def logs(self, service: str, tail: int = 20) -> str:
        result = self.runner.run(
            [*self.command(), "logs", "--no-color", "--tail", str(tail), service],
            check=False,
            cwd=self.project_dir,
        )
        return (result.stdout or "") + (result.stderr or "")

    def ps(self) -> str:
        result = self.runner.run(
            [*self.command(), "ps"], check=False, cwd=self.project_dir
        )
        return result.stdout or result.stderr or ""

    def exec(self, service: str, args: list[str]) -> subprocess.CompletedProcess[str]:
        return self.runner.run(
            [*self.command(), "exec", "-T", service, *args],
            check=False,
            cwd=self.project_dir,
        )


__all__ = ["ComposeManager", "MANAGED_SERVICES", "STATE_RUNNING", "STATE_MISSING", "STATE_UNKNOWN"]
