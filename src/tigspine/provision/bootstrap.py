"""Boot payload entry point.

``run_provisioning()`` is what the instance executes at first boot (via
``python -m tigspine`` or the ``tigspine-provision`` script). It takes no
arguments and reads everything from the environment.

Sequence::

    open log sink (fallback to a local file) ─► configure structlog
    ─► alias symlink ─► start marker ─► run header
    ─► provisioner settings + Configuration Set ──(invalid)──► exit 2, no step attempted
    ─► build RunState ─► StepOrchestrator.run
    ─► closing block ─► completion marker ─► log tail to boot log
    ─► exit 0 (SUCCESS / PARTIAL_SUCCESS) or 1 (FAILED)

The closing block, the completion marker and the boot-log hand-off run in
a ``finally`` so they are written however the run ends.
"""

from __future__ import annotations

import os
import sys
import time
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any

import httpx

from tigspine.core.commands import CommandRunner
from tigspine.core.errors import ConfigurationError, SecretGenerationError
from tigspine.core.logging import append_log_tail, configure_logging, get_logger, link_alias, open_sink
from tigspine.core.settings import ProvisionerSettings, fallback_settings, load_settings
from tigspine.provision.compose import ComposeManager
from tigspine.provision.config import StackConfig, requested_log_file
from tigspine.provision.health import HealthProbes
from tigspine.provision.materializer import ResourceMaterializer
from tigspine.provision.orchestrator import RunState, Step, StepOrchestrator
from tigspine.provision.report import (
    collect_system_state,
    fetch_instance_metadata,
    log_run_header,
    log_summary,
    write_completion_marker,
    write_start_marker,
)
from tigspine.provision.results import EXIT_CONFIG, EXIT_FAILED, RunLedger
from tigspine.provision.retry import ConvergencePolicy
from tigspine.provision.runtime import RuntimeInstaller
from tigspine.provision.steps import STEPS
from tigspine.provision.validator import DeploymentValidator

logger = get_logger(__name__)


def build_run_state(
    config: StackConfig,
    settings: ProvisionerSettings,
    ledger: RunLedger,
    *,
    runner: CommandRunner | None = None,
    http: httpx.Client | None = None,
    sleep: Callable[[float], None] = time.sleep,
    log_path: Path | None = None,
    installer_options: Mapping[str, Any] | None = None,
) -> RunState:
    """Wire every collaborator for one run."""
    runner = runner or CommandRunner(default_timeout=settings.command_timeout)
    compose = ComposeManager(runner, config.install_dir)
    probes = HealthProbes(compose, config, client=http, timeout=settings.probe_timeout)
    validator = DeploymentValidator(
        compose, ConvergencePolicy.from_settings(settings, sleep=sleep), probes
    )
    installer = RuntimeInstaller(
        runner,
        config.operating_user,
        http=http,
        compose_fallback_version=settings.compose_fallback_version,
        **dict(installer_options or {}),
    )
    return RunState(
        config=config,
        settings=settings,
        ledger=ledger,
        runner=runner,
        materializer=ResourceMaterializer(),
        installer=installer,
        compose=compose,
        validator=validator,
        probes=probes,
        log_path=log_path,
    )


def run_provisioning(
    environ: Mapping[str, str] | None = None,
    settings: ProvisionerSettings | None = None,
    *,
    runner: CommandRunner | None = None,
    http: httpx.Client | None = None,
    sleep: Callable[[float], None] = time.sleep,
    steps: Sequence[Step] | None = None,
    installer_options: Mapping[str, Any] | None = None,
    settings_overrides: Mapping[str, Any] | None = None,
) -> int:
    """Run the whole provisioning sequence and return the process exit code.

    When ``settings`` is omitted they are read from ``TIG_PROVISIONER_*``
    plus ``settings_overrides``. Invalid values are reported like any other
    configuration error (exit 2) after the log and markers are set up with
    the rejected values reset to their defaults.
    """
    environ = os.environ if environ is None else environ
    settings_error: ConfigurationError | None = None
    if settings is None:
        overrides = dict(settings_overrides or {})
        try:
            settings = load_settings(**overrides)
        except ConfigurationError as exc:
            settings_error = exc
            settings = fallback_settings(exc, **overrides)
    steps = tuple(steps or STEPS)
    ledger = RunLedger(total_steps=len(steps), started_at=datetime.now())

    sink, fell_back = open_sink(
        requested_log_file(environ), settings.fallback_log, echo=settings.echo
    )
    configure_logging(sink, settings.log_level)
    if fell_back:
        logger.warning("Using fallback log file", path=str(sink.path or "stdout"))
    if sink.path is not None and settings.log_alias is not None:
        if link_alias(settings.log_alias, sink.path):
            logger.info(f"Log file accessible via {settings.log_alias}")
        else:
            logger.warning("Could not create log alias", alias=str(settings.log_alias))

    write_start_marker(
        settings.marker_dir,
        ledger.started_at,
        fetch_instance_metadata(settings.metadata_url, client=http),
    )

    exit_code = EXIT_FAILED
    state: RunState | None = None
    config: StackConfig | None = None
    try:
        log_run_header(
            environ,
            sink.path,
            len(steps),
            install_dir=environ.get("TIG_INSTALL_DIR") or "/opt/tig-stack",
            user=environ.get("TIG_USER") or "ec2-user",
        )
        try:
            if settings_error is not None:
                raise settings_error
            config = StackConfig.from_env(environ)
        except ConfigurationError as exc:
            logger.error(f"Configuration error: {exc.message}")
            for key, message in exc.problems:
                logger.error(f"  {key}: {message}")
            ledger.abort(exc.message)
            exit_code = EXIT_CONFIG
            return exit_code
        except SecretGenerationError as exc:
            logger.error(f"Secret generation failed: {exc.message}")
            ledger.abort(exc.message)
            return exit_code

        logger.info("Configuration resolved", **config.describe())
        state = build_run_state(
            config,
            settings,
            ledger,
            runner=runner,
            http=http,
            sleep=sleep,
            log_path=sink.path,
            installer_options=installer_options,
        )
        StepOrchestrator(steps).run(state)
        exit_code = ledger.exit_code
        return exit_code
    finally:
        ledger.mark_complete()
        install_dir = config.install_dir if config else Path(environ.get("TIG_INSTALL_DIR") or "/opt/tig-stack")
        system_state = collect_system_state(
            state.runner if state else (runner or CommandRunner(default_timeout=60)),
            install_dir,
            state.compose if state else None,
        )
        log_summary(
            ledger,
            exit_code,
            system_state,
            log_path=sink.path,
            grafana_url=config.grafana_url if config else None,
            grafana_user=config.grafana_user if config else None,
        )
        write_completion_marker(settings.marker_dir, ledger, exit_code)
        if state is not None:
            state.close()
        sink.close()
        if sink.path is not None and settings.boot_log is not None:
            append_log_tail(sink.path, settings.boot_log, settings.boot_log_tail)


def main() -> None:
    sys.exit(run_provisioning())


__all__ = ["build_run_state", "run_provisioning", "main"]
