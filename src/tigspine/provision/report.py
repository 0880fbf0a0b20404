"""Run header, closing summary block and completion markers.

The closing block is the machine-readable contract for external monitors.
It is always written, whatever happened before it, and always has the same
shape::

    === Installation Summary ===
    Final Status: PARTIAL_SUCCESS
    Exit Code: 0
    Completed Steps (11/12):
      ✓ Docker Installation
      ...
    Failed Steps (1):
      ✗ Grafana Configuration - <diagnostic>
    Not Attempted Steps (n):            only after a foundational abort
      - <step>
    === Final System State ===
    Docker installed: Yes
    Docker running: Yes
    Docker Compose installed: Yes
    TIG directory exists: Yes
    Containers running: 3
    ==========================

Markers are two small text files in ``marker_dir``: the start marker is
written before any step, the completion marker after the closing block.
External pollers read these instead of parsing the log.
"""

from __future__ import annotations

import os
import platform
import pwd
import shutil
import socket
from collections.abc import Mapping
from datetime import datetime
from pathlib import Path

import httpx

from tigspine.core.commands import CommandRunner
from tigspine.core.errors import CommandError
from tigspine.core.logging import get_logger
from tigspine.core.secrets import mask_secret
from tigspine.provision.compose import ComposeManager
from tigspine.provision.results import RunLedger, RunStatus, SystemState

logger = get_logger(__name__)

START_MARKER = "tig-deployment-start.txt"
COMPLETE_MARKER = "tig-deployment-complete.txt"

SCRIPT_NAME = "tig-spine"
SCRIPT_VERSION = "0.1.0"

_ENV_PREFIXES = ("TIG_", "GRAFANA_", "INFLUXDB_", "TELEGRAF_", "CONTAINER_")
_SENSITIVE = ("PASSWORD", "SECRET", "TOKEN")


def _yes_no(value: bool) -> str:
    return "Yes" if value else "No"


# ---------------------------------------------------------------------------
# Header
# ---------------------------------------------------------------------------


def _current_user() -> str:
    try:
        return pwd.getpwuid(os.getuid()).pw_name
    except KeyError:
        return str(os.getuid())


def _available_memory(meminfo: Path = Path("/proc/meminfo")) -> str:
    try:
        for line in meminfo.read_text(encoding="utf-8").splitlines():
            if line.startswith("MemAvailable:"):
                return line.split(":", 1)[1].strip()
    except OSError:
        return "unknown"
    return "unknown"


def _free_disk(path: str = "/") -> str:
    try:
        usage = shutil.disk_usage(path)
    except OSError:
        return "unknown"
    return f"{usage.free / 1024**3:.1f} GiB free of {usage.total / 1024**3:.1f} GiB"


def redacted_environment(environ: Mapping[str, str]) -> list[str]:
    """``KEY=value`` lines for stack-related variables, secrets masked."""
    lines = []
    for key in sorted(environ):
        if not key.startswith(_ENV_PREFIXES):
            continue
        value = environ[key]
        if any(marker in key.upper() for marker in _SENSITIVE):
            value = mask_secret(value)
        lines.append(f"{key}={value}")
    return lines


def log_run_header(
    environ: Mapping[str, str],
    log_path: Path | None,
    total_steps: int,
    install_dir: str,
    user: str,
) -> None:
    logger.info("=== TIG Stack Installation Started ===")
    logger.info(f"Script: {SCRIPT_NAME}")
    logger.info(f"Version: {SCRIPT_VERSION}")
    logger.info(f"Log file: {log_path or 'stdout'}")
    logger.info(f"Install directory: {install_dir}")
    logger.info(f"Target user: {user}")
    logger.info(f"Process ID: {os.getpid()}")
    logger.info(f"Total steps: {total_steps}")

    logger.info("=== System Information ===")
    logger.info(f"Hostname: {socket.gethostname()}")
    logger.info(f"OS: {platform.platform()}")
    logger.info(f"Architecture: {platform.machine()}")
    logger.info(f"User: {_current_user()}")
    logger.info(f"Working directory: {os.getcwd()}")
    logger.info(f"Disk: {_free_disk()}")
    logger.info(f"Available memory: {_available_memory()}")

    logger.info("=== Environment Variables ===")
    lines = redacted_environment(environ)
    for line in lines:
        logger.info(line)
    if not lines:
        logger.info("No TIG-related environment variables found")
    logger.info("=============================")


# ---------------------------------------------------------------------------
# System state
# ---------------------------------------------------------------------------


def _succeeds(runner: CommandRunner, args: list[str]) -> bool:
    try:
        return runner.run(args, check=False).returncode == 0
    except CommandError:
        return False


def collect_system_state(
    runner: CommandRunner, install_dir: Path, compose: ComposeManager | None = None
) -> SystemState:
    runtime_installed = runner.which("docker") is not None
    compose_installed = runner.which("docker-compose") is not None or (
        runtime_installed and _succeeds(runner, ["docker", "compose", "version"])
    )
    running = 0
    if compose is not None and runtime_installed and (install_dir / "docker-compose.yml").is_file():
        try:
            running = compose.running_count()
        except CommandError:
            running = 0
    return SystemState(
        runtime_installed=runtime_installed,
        runtime_running=_succeeds(runner, ["systemctl", "is-active", "--quiet", "docker"]),
        compose_installed=compose_installed,
        install_dir_exists=install_dir.is_dir(),
        running_services=running,
    )


# ---------------------------------------------------------------------------
# Closing block
# ---------------------------------------------------------------------------


def log_summary(
    ledger: RunLedger,
    exit_code: int,
    system_state: SystemState,
    *,
    log_path: Path | None = None,
    grafana_url: str | None = None,
    grafana_user: str | None = None,
) -> None:
    """Write the closing block. Called exactly once per run."""
    logger.info("=== Installation Summary ===")
    logger.info(f"Final Status: {ledger.status.value}")
    logger.info(f"Exit Code: {exit_code}")

    completed = ledger.completed_steps
    logger.info(f"Completed Steps ({len(completed)}/{ledger.total_steps}):")
    for name in completed:
        logger.info(f"  ✓ {name}")

    failed = ledger.failed_steps
    if failed:
        logger.error(f"Failed Steps ({len(failed)}):")
        for name, diagnostic in failed:
            logger.error(f"  ✗ {name} - {diagnostic}")

    pending = ledger.pending_steps
    if pending:
        logger.warning(f"Not Attempted Steps ({len(pending)}):")
        for name in pending:
            logger.warning(f"  - {name}")

    if ledger.status == RunStatus.SUCCESS:
        logger.success("TIG Stack installation completed successfully")
    elif ledger.status == RunStatus.PARTIAL_SUCCESS:
        logger.warning("TIG Stack installation completed with failed steps")
    else:
        logger.error("TIG Stack installation failed", reason=ledger.abort_reason or "")

    if ledger.status == RunStatus.SUCCESS and grafana_url:
        logger.info(f"Grafana should be accessible at: {grafana_url}")
        logger.info(f"Default credentials - User: {grafana_user}, Password: check .env file")
    if ledger.status != RunStatus.SUCCESS:
        log_troubleshooting(log_path)

    logger.info("=== Final System State ===")
    logger.info(f"Docker installed: {_yes_no(system_state.runtime_installed)}")
    logger.info(f"Docker running: {_yes_no(system_state.runtime_running)}")
    logger.info(f"Docker Compose installed: {_yes_no(system_state.compose_installed)}")
    logger.info(f"TIG directory exists: {_yes_no(system_state.install_dir_exists)}")
    logger.info(f"Containers running: {system_state.running_services}")
    logger.info("==========================")
    logger.info("=== TIG Stack Installation Finished ===")
    logger.info(f"Installation log available at: {log_path or 'stdout'}")


def log_troubleshooting(log_path: Path | None) -> None:
    logger.info("=== Troubleshooting Information ===")
    logger.info("1. Check system logs: journalctl -u cloud-final")
    logger.info("2. Check Docker status: systemctl status docker")
    logger.info("3. Check container status: docker ps -a")
    logger.info(f"4. Check this log file: {log_path or 'stdout'}")
    logger.info("5. Check cloud-init logs: /var/log/cloud-init-output.log")
    logger.info("===================================")


# ---------------------------------------------------------------------------
# Markers
# ---------------------------------------------------------------------------


def _metadata_token(client: httpx.Client, url: str) -> str | None:
    """Session token for the v2 metadata API; None falls back to v1 requests."""
    try:
        response = client.put(url, headers={"X-aws-ec2-metadata-token-ttl-seconds": "300"})
    except httpx.HTTPError:
        return None
    return response.text if response.status_code == 200 else None


def fetch_instance_metadata(
    base_url: str, client: httpx.Client | None = None, timeout: float = 2.0
) -> dict[str, str]:
    """Instance id and public address from the metadata service, best effort."""
    if not base_url:
        return {}
    own_client = client is None
    client = client or httpx.Client(timeout=timeout)
    metadata: dict[str, str] = {}
    try:
        token = _metadata_token(client, base_url.rsplit("/meta-data", 1)[0] + "/api/token")
        headers = {"X-aws-ec2-metadata-token": token} if token else {}
        for key, label in (("instance-id", "Instance ID"), ("public-ipv4", "Public IP")):
            try:
                response = client.get(f"{base_url}/{key}", headers=headers)
            except httpx.HTTPError:
                continue
            if response.status_code == 200 and response.text.strip():
                metadata[label] = response.text.strip()
    finally:
        if own_client:
            client.close()
    return metadata


def write_start_marker(
    marker_dir: Path, started_at: datetime, metadata: Mapping[str, str] | None = None
) -> Path | None:
    lines = [
        f"TIG Stack deployment started at {started_at:%Y-%m-%d %H:%M:%S}",
        f"Hostname: {socket.gethostname()}",
        f"PID: {os.getpid()}",
    ]
    lines += [f"{label}: {value}" for label, value in (metadata or {}).items()]
    return _write_marker(marker_dir / START_MARKER, lines)


def write_completion_marker(marker_dir: Path, ledger: RunLedger, exit_code: int) -> Path | None:
    data = ledger.to_dict()
    completed_at = ledger.completed_at or datetime.now()
    lines = [
        f"TIG Stack deployment completed at {completed_at:%Y-%m-%d %H:%M:%S}",
        f"Final status: {data['status']}",
        f"Exit code: {exit_code}",
        f"Completed steps: {len(data['completed'])}/{data['total_steps']}",
        f"Failed steps: {', '.join(item['step'] for item in data['failed']) or 'none'}",
    ]
    if data["pending"]:
        lines.append(f"Not attempted: {', '.join(data['pending'])}")
    if data["abort_reason"]:
        lines.append(f"Abort reason: {data['abort_reason']}")
    lines.append(f"Total deployment time: {int(data['duration_seconds'])} seconds")
    return _write_marker(marker_dir / COMPLETE_MARKER, lines)


def _write_marker(path: Path, lines: list[str]) -> Path | None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    except OSError as exc:
        logger.warning("Could not write marker file", path=str(path), error=str(exc))
        return None
    return path


__all__ = [
    "START_MARKER",
    "COMPLETE_MARKER",
    "collect_system_state",
    "fetch_instance_metadata",
    "log_run_header",
    "log_summary",
    "log_troubleshooting",
    "redacted_environment",
    "write_completion_marker",
    "write_start_marker",
]
