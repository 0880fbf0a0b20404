"""The twelve provisioning steps.

Each body takes the run's ``RunState``, checks the current host state
before acting, and signals failure by raising. Bodies never decide whether
the run continues; that belongs to the orchestrator and the step's kind.

=====  ==================================  ============
  #    Step                                Kind
=====  ==================================  ============
  1    Docker Installation                 foundational
  2    Directory Structure Creation        foundational
  3    Docker Compose Configuration        recoverable
  4    Grafana Configuration               recoverable
  5    InfluxDB Configuration              recoverable
  6    Telegraf Configuration              recoverable
  7    Password Generation                 recoverable
  8    Environment File Creation           recoverable
  9    TIG Stack Deployment                recoverable
 10    Deployment Validation               recoverable
 11    Restart Persistence Configuration   recoverable
 12    Documentation Creation              recoverable
=====  ==================================  ============
"""

from __future__ import annotations

import pwd
from datetime import datetime
from pathlib import Path

import yaml

from tigspine.core.errors import (
    CommandError,
    ErrorContext,
    MaterializeError,
    RuntimeInstallError,
    SecretGenerationError,
)
from tigspine.core.logging import get_logger
from tigspine.core.secrets import MIN_SECRET_LENGTH, mask_secret, secret_problems
from tigspine.provision import templates
from tigspine.provision.compose import MANAGED_SERVICES
from tigspine.provision.config import SECRET_FIELDS
from tigspine.provision.orchestrator import RunState, Step
from tigspine.provision.results import StepKind

logger = get_logger(__name__)

DIRECTORY_MODE = 0o755


def _owner(state: RunState) -> str | None:
    """The operating user if it exists on this host, else None (leave ownership alone)."""
    if state.owner is None:
        user = state.config.operating_user
        try:
            pwd.getpwnam(user)
        except KeyError:
            logger.warning("Operating user does not exist; files keep the current owner", user=user)
            state.owner = ""
        else:
            state.owner = user
    return state.owner or None


def _timestamp() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


# ---------------------------------------------------------------------------
# 1-2: foundations
# ---------------------------------------------------------------------------


def install_docker(state: RunState) -> None:
    report = state.installer.install()
    state.install_report = report
    if report.already_installed:
        logger.info("Container runtime was already installed; package installation skipped")


def create_directory_structure(state: RunState) -> None:
    root = state.config.install_dir
    owner = _owner(state)
    state.materializer.ensure_directory(root, owner, DIRECTORY_MODE)
    for service in templates.SERVICE_DIRS:
        state.materializer.ensure_directory(root / service, owner, DIRECTORY_MODE)
    logger.info("Directory structure ready", root=str(root))


# ---------------------------------------------------------------------------
# 3-6: generated configuration
# ---------------------------------------------------------------------------


def create_compose_file(state: RunState) -> None:
    path = state.materializer.write_asset(
        state.config.install_dir, templates.COMPOSE, owner=_owner(state)
    )
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise MaterializeError(
            f"{path} is not valid YAML: {exc}", context=ErrorContext(path=str(path)), cause=exc
        ) from exc
    services = (document or {}).get("services") or {}
    missing = [name for name in MANAGED_SERVICES if name not in services]
    if missing:
        raise MaterializeError(
            f"{path} does not define services: {', '.join(missing)}",
            context=ErrorContext(path=str(path)),
        )
    logger.info("Service definition written", path=str(path), services=",".join(services))


def configure_grafana(state: RunState) -> None:
    root, owner = state.config.install_dir, _owner(state)
    for asset in templates.GRAFANA_ASSETS:
        state.materializer.write_asset(root, asset, owner=owner)
    if state.config.grafana_plugins_enabled:
        logger.info("Grafana plugins will be installed at container start", plugins=state.config.grafana_plugins)
    else:
        logger.info("Grafana plugin installation disabled")


def configure_influxdb(state: RunState) -> None:
    root, owner = state.config.install_dir, _owner(state)
    values = {"influxdb_port": state.config.influxdb_port}
    for asset in templates.INFLUXDB_ASSETS:
        extra = (f'":{state.config.influxdb_port}"',) if asset is templates.INFLUXDB_CONF else ()
        state.materializer.write_asset(root, asset, values, owner=owner, extra_tokens=extra)


def configure_telegraf(state: RunState) -> None:
    root, owner = state.config.install_dir, _owner(state)
    interval = state.config.telegraf_interval
    values = {"telegraf_interval": interval}
    for asset in templates.TELEGRAF_ASSETS:
        extra = (f'interval = "{interval}"',) if asset is templates.TELEGRAF_CONF else ()
        state.materializer.write_asset(root, asset, values, owner=owner, extra_tokens=extra)
    logger.info("Telegraf collection interval", interval=interval)


# ---------------------------------------------------------------------------
# 7-8: secrets
# ---------------------------------------------------------------------------


def check_passwords(state: RunState) -> None:
    for field_name in SECRET_FIELDS:
        value = getattr(state.config, field_name).get_secret_value()
        problems = secret_problems(value, MIN_SECRET_LENGTH)
        if problems:
            raise SecretGenerationError(f"{field_name} does not meet policy: {'; '.join(problems)}")
        provenance = state.config.password_provenance.get(field_name, "provided")
        logger.info(
            f"{field_name.replace('_', ' ').capitalize()}: {mask_secret(value)}",
            source=provenance,
        )


def parse_env_file(path: Path) -> dict[str, str]:
    values: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value
    return values


def create_env_file(state: RunState) -> None:
    config = state.config
    values = {**config.env_file_values(), "generated_at": _timestamp()}
    asset = templates.ENV_FILE
    path = state.materializer.write_asset(
        config.install_dir,
        asset,
        values,
        owner=_owner(state),
        extra_tokens=tuple(f"{key}=" for key in config.env_file_values()),
    )
    written = parse_env_file(path)
    for key in ("GRAFANA_PASSWORD", "INFLUXDB_ADMIN_PASSWORD"):
        if len(written.get(key, "")) < MIN_SECRET_LENGTH:
            raise MaterializeError(
                f"{path} holds a {key} shorter than {MIN_SECRET_LENGTH} characters",
                context=ErrorContext(path=str(path)),
            )
    logger.info("Environment file written", path=str(path), mode=oct(asset.mode), keys=len(written))


# ---------------------------------------------------------------------------
# 9-10: deployment
# ---------------------------------------------------------------------------


def deploy_stack(state: RunState) -> None:
    state.validator.start()
    logger.info("Service group started", services=",".join(state.compose.services))


def validate_deployment(state: RunState) -> None:
    report = state.validator.validate()
    state.validation = report
    logger.info(
        "Deployment converged",
        attempts=report.attempts,
        remediated=report.remediated,
        probe_warnings=report.probe_warnings,
    )
    logger.info(f"Grafana should be accessible at {state.config.grafana_url}")


# ---------------------------------------------------------------------------
# 11-12: persistence and documentation
# ---------------------------------------------------------------------------


def configure_restart_persistence(state: RunState) -> None:
    compose_file = state.config.install_dir / templates.COMPOSE.path
    if compose_file.is_file():
        services = (yaml.safe_load(compose_file.read_text(encoding="utf-8")) or {}).get("services") or {}
        lacking = [name for name, spec in services.items() if (spec or {}).get("restart") != "always"]
        if lacking:
            logger.warning("Services without restart policy 'always'", services=",".join(lacking))
        else:
            logger.info("Containers configured with restart policy: always")

    if state.runner.run(["systemctl", "is-enabled", "docker"], check=False).returncode == 0:
        logger.info("Container runtime service already enabled at boot")
        return
    try:
        state.runner.run(["systemctl", "enable", "docker"])
    except CommandError as exc:
        raise RuntimeInstallError(
            f"Could not enable the container runtime at boot: {exc.message}", cause=exc
        ) from exc
    logger.info("Container runtime service enabled for automatic startup")


def _host_address(state: RunState) -> str:
    try:
        result = state.runner.run(["hostname", "-I"], check=False)
    except CommandError:
        return "localhost"
    addresses = result.stdout.split() if result.returncode == 0 else []
    return addresses[0] if addresses else "localhost"


def create_documentation(state: RunState) -> None:
    config = state.config
    values = {
        "host_address": _host_address(state),
        "grafana_port": config.grafana_port,
        "grafana_user": config.grafana_user,
        "influxdb_port": config.influxdb_port,
        "influxdb_database": config.influxdb_database,
        "telegraf_interval": config.telegraf_interval,
        "compose_command": " ".join(state.compose.command()),
        "log_file": str(state.log_path or config.log_file),
        "generated_at": _timestamp(),
    }
    path = state.materializer.write_asset(config.install_dir, templates.README, values, owner=_owner(state))
    logger.info("Documentation created", path=str(path))


STEPS: tuple[Step, ...] = (
    Step(1, "Docker Installation", install_docker, StepKind.FOUNDATIONAL),
    Step(2, "Directory Structure Creation", create_directory_structure, StepKind.FOUNDATIONAL),
    Step(3, "Docker Compose Configuration", create_compose_file),
    Step(4, "Grafana Configuration", configure_grafana),
    Step(5, "InfluxDB Configuration", configure_influxdb),
    Step(6, "Telegraf Configuration", configure_telegraf),
    Step(7, "Password Generation", check_passwords),
    Step(8, "Environment File Creation", create_env_file),
    Step(9, "TIG Stack Deployment", deploy_stack),
    Step(10, "Deployment Validation", validate_deployment),
    Step(11, "Restart Persistence Configuration", configure_restart_persistence),
    Step(12, "Documentation Creation", create_documentation),
)


__all__ = [
    "STEPS",
    "parse_env_file",
    "install_docker",
    "create_directory_structure",
    "create_compose_file",
    "configure_grafana",
    "configure_influxdb",
    "configure_telegraf",
    "check_passwords",
    "create_env_file",
    "deploy_stack",
    "validate_deployment",
    "configure_restart_persistence",
    "create_documentation",
]
