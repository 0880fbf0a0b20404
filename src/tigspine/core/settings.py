"""
Operational settings for the provisioner itself.

These are the knobs that shape *how* a run behaves (log locations, marker
directory, polling budget, timeouts) as opposed to the stack's own
Configuration Set in :mod:`tigspine.provision.config`. They are read from
``TIG_PROVISIONER_*`` environment variables with ``pydantic-settings`` so
an image builder can tune a run without touching the payload.

Fields
──────
log_level             : Minimum severity written to the log sink
log_alias             : Symlink pointing at the active log file
fallback_log          : Log path used when the configured one is not writable
boot_log              : Host boot-log sink that receives the log tail
boot_log_tail         : Number of trailing log lines copied to ``boot_log``
marker_dir            : Directory for the start / completion marker files
poll_attempts         : First convergence budget (attempts)
poll_delay            : Seconds between convergence attempts
remediation_pause     : Seconds between ``down`` and ``up`` during remediation
remediation_attempts  : Second, smaller convergence budget
probe_timeout         : Per-request timeout for semantic health probes
command_timeout       : Upper bound for any single external command
compose_fallback_version : Compose release used when the latest lookup fails
metadata_url          : Instance metadata endpoint (empty disables lookups)
echo                  : Mirror log lines to stdout

Tags:
    settings, configuration, pydantic-settings, environment
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tigspine.core.errors import ConfigurationError

ENV_PREFIX = "TIG_PROVISIONER_"


class ProvisionerSettings(BaseSettings):
    """Run-level settings, all optional."""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_ignore_empty=True,
        extra="ignore",
    )

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = "INFO"
    log_alias: Path | None = Path("/var/log/tig-stack-latest.log")
    fallback_log: Path = Path("tig-stack-install.log")
    boot_log: Path | None = Path("/var/log/cloud-init-output.log")
    boot_log_tail: int = Field(default=50, ge=0)
    echo: bool = True

    # ── Markers ──────────────────────────────────────────────────
    marker_dir: Path = Path("/tmp")

    # ── Convergence ──────────────────────────────────────────────
    poll_attempts: int = Field(default=30, ge=1)
    poll_delay: float = Field(default=10.0, ge=0)
    remediation_pause: float = Field(default=5.0, ge=0)
    remediation_attempts: int = Field(default=6, ge=1)
    probe_timeout: float = Field(default=5.0, gt=0)

    # ── Runtime ──────────────────────────────────────────────────
    command_timeout: float = Field(default=900.0, gt=0)
    compose_fallback_version: str = "v2.24.1"
    metadata_url: str = "http://169.254.169.254/latest/meta-data"

    @model_validator(mode="after")
    def _remediation_budget_is_smaller(self) -> ProvisionerSettings:
        if self.remediation_attempts >= self.poll_attempts:
            raise ValueError(
                "remediation_attempts must be smaller than poll_attempts "
                f"({self.remediation_attempts} >= {self.poll_attempts})"
            )
        return self


# Model-level failures come from the budget check, which spans both fields.
_BUDGET_FIELDS = ("poll_attempts", "remediation_attempts")


def env_key(field_name: str) -> str:
    return f"{ENV_PREFIX}{field_name.upper()}"


def _error_fields(error: Any) -> list[str]:
    loc = error.get("loc") or ()
    return [str(loc[0])] if loc else list(_BUDGET_FIELDS)


def load_settings(**overrides: Any) -> ProvisionerSettings:
    """Read ``TIG_PROVISIONER_*`` and ``overrides`` into settings.

    Raises:
        ConfigurationError: One problem per rejected value, keyed by its
            environment variable. The ``ValidationError`` is the cause.
    """
    try:
        return ProvisionerSettings(**overrides)
    except ValidationError as exc:
        problems = [
            (" / ".join(env_key(name) for name in _error_fields(error)), error["msg"])
            for error in exc.errors()
        ]
        raise ConfigurationError(
            "Invalid provisioner settings", problems=problems, cause=exc
        ) from exc


def fallback_settings(error: ConfigurationError, **overrides: Any) -> ProvisionerSettings:
    """Settings with every rejected value reset to its default.

    Used so a run with bad settings can still open its log and write its
    markers before reporting the error.
    """
    fields = ProvisionerSettings.model_fields
    if isinstance(error.cause, ValidationError):
        rejected = {name for item in error.cause.errors() for name in _error_fields(item)}
    else:
        rejected = set(fields)
    defaults = {name: fields[name].default for name in rejected if name in fields}
    try:
        return ProvisionerSettings(**{**overrides, **defaults})
    except ValidationError:
        return ProvisionerSettings.model_construct()


__all__ = ["ENV_PREFIX", "ProvisionerSettings", "env_key", "fallback_settings", "load_settings"]
