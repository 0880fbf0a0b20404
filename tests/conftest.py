"""
Shared pytest fixtures for tig-spine tests.

This module provides:
- A fake command runner that records argv lists and answers by prefix
- A sleep recorder standing in for the convergence clock
- Per-test logging to a temporary file
- A resolved StackConfig rooted in ``tmp_path``

Nothing here touches the real host: no subprocess, no network, no sleeping.
"""

from __future__ import annotations

import subprocess
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest

from tigspine.core.errors import CommandError
from tigspine.core.logging import LogSink, clear_context, configure_logging
from tigspine.provision.config import StackConfig

#: A user name that will not exist on any test host.
MISSING_USER = "tig-test-no-such-user"


# =============================================================================
# Fakes
# =============================================================================


class FakeCommandRunner:
    """Drop-in for ``CommandRunner`` that never spawns a process.

    Responses are registered by argv prefix with :meth:`on`. The longest
    matching prefix wins; ties go to the most recent registration. Commands
    with no matching rule succeed with empty output.
    """

    def __init__(self, which: tuple[str, ...] = ()) -> None:
        self.available = set(which)
        self.calls: list[list[str]] = []
        self.cwds: list[Path | None] = []
        self._rules: list[tuple[tuple[str, ...], Callable[[list[str]], subprocess.CompletedProcess[str]]]] = []

    def on(
        self,
        *prefix: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        handler: Callable[[list[str]], Any] | None = None,
    ) -> FakeCommandRunner:
        def respond(args: list[str]) -> subprocess.CompletedProcess[str]:
            if handler is not None:
                value = handler(args)
                if isinstance(value, subprocess.CompletedProcess):
                    return value
                code, out = value
                return subprocess.CompletedProcess(args, code, out, "")
            return subprocess.CompletedProcess(args, returncode, stdout, stderr)

        self._rules.append((tuple(prefix), respond))
        return self

    def which(self, name: str) -> str | None:
        return f"/usr/bin/{name}" if name in self.available else None

    def run(
        self,
        args: list[str],
        *,
        check: bool = True,
        timeout: float | None = None,
        cwd: Path | None = None,
        input: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        args = list(args)
        self.calls.append(args)
        self.cwds.append(cwd)
        result = self._respond(args)
        if check and result.returncode != 0:
            raise CommandError(
                f"Command failed with exit code {result.returncode}: {' '.join(args)}"
                + (f": {result.stderr.strip()}" if result.stderr.strip() else ""),
                argv=args,
                returncode=result.returncode,
                stderr=result.stderr,
            )
        return result

    def _respond(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        best = None
        best_len = -1
        for prefix, respond in self._rules:
            if tuple(args[: len(prefix)]) == prefix and len(prefix) >= best_len:
                best, best_len = respond, len(prefix)
        if best is None:
            return subprocess.CompletedProcess(args, 0, "", "")
        return best(args)

    # ── Assertions ───────────────────────────────────────────────

    def ran(self, *prefix: str) -> bool:
        return self.count(*prefix) > 0

    def count(self, *prefix: str) -> int:
        return sum(1 for call in self.calls if tuple(call[: len(prefix)]) == prefix)


class SleepRecorder:
    """Callable clock: records requested waits instead of sleeping."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)

    @property
    def total(self) -> float:
        return sum(self.calls)


def answer_running(runner: FakeCommandRunner, compose: tuple[str, ...] = ("docker-compose",)) -> FakeCommandRunner:
    """Answer state queries as if every managed service is running."""
    runner.on(*compose, "ps", "-q", handler=lambda args: (0, f"{args[-1]}-cid\n"))
    runner.on("docker", "inspect", stdout="running\n")
    return runner


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def log_sink(tmp_path: Path) -> Generator[LogSink, None, None]:
    """Route all log output of a test to ``tmp_path/test.log``."""
    sink = LogSink(tmp_path / "test.log", echo=False).open()
    configure_logging(sink, "DEBUG")
    clear_context()
    yield sink
    clear_context()
    sink.close()


@pytest.fixture
def log_text(log_sink: LogSink) -> Callable[[], str]:
    """Return a reader for everything logged so far."""

    def read() -> str:
        assert log_sink.path is not None
        return log_sink.path.read_text(encoding="utf-8")

    return read


@pytest.fixture
def fake_runner() -> FakeCommandRunner:
    return FakeCommandRunner(which=("docker", "docker-compose"))


@pytest.fixture
def runner_factory() -> Callable[..., FakeCommandRunner]:
    """Build a runner with a chosen set of binaries on PATH."""
    return FakeCommandRunner


@pytest.fixture
def running_stack() -> Callable[..., FakeCommandRunner]:
    return answer_running


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def stack_env(tmp_path: Path) -> dict[str, str]:
    """Environment for a run rooted entirely in ``tmp_path``."""
    return {
        "TIG_INSTALL_DIR": str(tmp_path / "tig-stack"),
        "TIG_LOG_FILE": str(tmp_path / "logs" / "tig-stack-install.log"),
        "TIG_USER": MISSING_USER,
        "TIG_GRAFANA_PASSWORD": "GrafanaPass123",
        "TIG_INFLUXDB_PASSWORD": "InfluxPass4567",
    }


@pytest.fixture
def stack_config(stack_env: dict[str, str]) -> StackConfig:
    return StackConfig.from_env(stack_env)
