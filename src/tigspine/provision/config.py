"""Environment Resolver: build the immutable Configuration Set.

The boot payload receives no arguments. Every customisation arrives as an
environment variable, and every setting has a built-in default, so
``StackConfig.from_env()`` on a bare environment yields a complete,
working configuration with freshly generated passwords.

Why This Matters:
    Later steps write these values into files that containers read at start.
    A half-resolved configuration would surface as a container crash-loop
    minutes later, far from its cause. Resolution is therefore all or
    nothing, and happens before any step runs.

Key Concepts:
    ENV_MAP: field name → environment keys, first non-empty one wins. The
        ``TIG_*`` spellings are preferred; the bare spellings match the
        keys written to the generated ``.env`` file.
    StackConfig: frozen pydantic model. Passwords are ``SecretStr``.
    password_provenance: which passwords were ``generated`` vs ``provided``.
    ConfigurationError: every invalid setting in one error, named by the
        environment key the caller would need to fix.

Architecture Decisions:
    - Empty string counts as unset. Cloud-init templates often export
      ``VAR=`` for optional values.
    - Unrecognised keys are ignored. The process environment is full of
      unrelated variables.
    - Supplied passwords only need the length floor; generated ones also
      carry upper, lower and digit characters.

Related Modules:
    - :mod:`tigspine.core.secrets` — password generation and policy
    - :mod:`tigspine.provision.templates` — consumes the resolved values

Tags:
    configuration, environment, pydantic, validation, immutable
"""

from __future__ import annotations

import os
import re
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator

from tigspine.core.errors import ConfigurationError
from tigspine.core.secrets import DEFAULT_SECRET_LENGTH, generate_secret, mask_secret, secret_problems

#: Field name → environment keys, highest precedence first.
ENV_MAP: dict[str, tuple[str, ...]] = {
    "grafana_port": ("TIG_GRAFANA_PORT", "GRAFANA_PORT"),
    "grafana_user": ("TIG_GRAFANA_USER", "GRAFANA_USER"),
    "grafana_password": ("TIG_GRAFANA_PASSWORD", "GRAFANA_PASSWORD"),
    "influxdb_port": ("TIG_INFLUXDB_PORT", "INFLUXDB_PORT"),
    "influxdb_user": ("TIG_INFLUXDB_USER", "INFLUXDB_ADMIN_USER"),
    "influxdb_password": ("TIG_INFLUXDB_PASSWORD", "INFLUXDB_ADMIN_PASSWORD"),
    "influxdb_database": ("TIG_INFLUXDB_DATABASE", "INFLUXDB_DATABASE"),
    "influxdb_host": ("INFLUXDB_HOST",),
    "telegraf_host": ("TELEGRAF_HOST",),
    "telegraf_interval": ("TELEGRAF_INTERVAL",),
    "container_prefix": ("TIG_CONTAINER_PREFIX", "CONTAINER_PREFIX"),
    "install_dir": ("TIG_INSTALL_DIR",),
    "log_file": ("TIG_LOG_FILE", "LOG_FILE"),
    "operating_user": ("TIG_USER",),
    "grafana_plugins_enabled": ("GRAFANA_PLUGINS_ENABLED",),
    "grafana_plugins": ("GRAFANA_PLUGINS",),
}

SECRET_FIELDS = ("grafana_password", "influxdb_password")

_DURATION = re.compile(r"^\d+(ns|us|µs|ms|s|m|h)$")
_PREFIX = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")


def recognized_keys() -> list[str]:
    """All environment keys the resolver reads, in table order."""
    return [key for keys in ENV_MAP.values() for key in keys]


def requested_log_file(environ: Mapping[str, str] | None = None) -> Path:
    """Log path asked for by the environment, read before full resolution.

    Logging has to start before the Configuration Set exists, so that a
    configuration error is itself logged to the right file.
    """
    environ = os.environ if environ is None else environ
    default = StackConfig.model_fields["log_file"].default
    for key in ENV_MAP["log_file"]:
        raw = (environ.get(key) or "").strip()
        if raw:
            path = Path(raw)
            return path if path.is_absolute() else default
    return default


class StackConfig(BaseModel):
    """Fully resolved, immutable settings for one provisioning run."""

    model_config = ConfigDict(frozen=True)

    # ── Grafana ──────────────────────────────────────────────────
    grafana_port: int = Field(default=3000, ge=1, le=65535)
    grafana_user: str = Field(default="admin", min_length=1)
    grafana_password: SecretStr
    grafana_plugins_enabled: bool = True
    grafana_plugins: str = "grafana-piechart-panel"

    # ── InfluxDB ─────────────────────────────────────────────────
    influxdb_port: int = Field(default=8086, ge=1, le=65535)
    influxdb_user: str = Field(default="grafana", min_length=1)
    influxdb_password: SecretStr
    influxdb_database: str = Field(default="metrics", min_length=1)
    influxdb_host: str = "influxdb"

    # ── Telegraf ─────────────────────────────────────────────────
    telegraf_host: str = "telegraf"
    telegraf_interval: str = "10s"

    # ── Host layout ──────────────────────────────────────────────
    container_prefix: str = "tig"
    install_dir: Path = Path("/opt/tig-stack")
    log_file: Path = Path("/var/log/tig-stack-install.log")
    operating_user: str = Field(default="ec2-user", min_length=1)

    password_provenance: dict[str, str] = Field(default_factory=dict)

    @field_validator("grafana_password", "influxdb_password")
    @classmethod
    def _check_password(cls, value: SecretStr) -> SecretStr:
        problems = secret_problems(value.get_secret_value())
        if problems:
            raise ValueError("; ".join(problems))
        return value

    @field_validator("telegraf_interval")
    @classmethod
    def _check_interval(cls, value: str) -> str:
        if not _DURATION.match(value):
            raise ValueError(f"'{value}' is not a duration such as 10s, 500ms or 1m")
        return value

    @field_validator("container_prefix")
    @classmethod
    def _check_prefix(cls, value: str) -> str:
        if not _PREFIX.match(value):
            raise ValueError(f"'{value}' is not a valid container name prefix")
        return value

    @field_validator("install_dir", "log_file")
    @classmethod
    def _check_absolute(cls, value: Path) -> Path:
        if not value.is_absolute():
            raise ValueError(f"'{value}' must be an absolute path")
        return value

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        *,
        secret_factory: Callable[[int], str] = generate_secret,
    ) -> StackConfig:
        """Resolve the Configuration Set from ``environ`` (default ``os.environ``).

        Raises:
            ConfigurationError: One or more settings are invalid.
            SecretGenerationError: A password had to be generated and the
                random source failed.
        """
        environ = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        sources: dict[str, str] = {}
        for field_name, keys in ENV_MAP.items():
            for key in keys:
                raw = environ.get(key)
                if raw is None or not raw.strip():
                    continue
                values[field_name] = raw if field_name in SECRET_FIELDS else raw.strip()
                sources[field_name] = key
                break

        provenance: dict[str, str] = {}
        for field_name in SECRET_FIELDS:
            if field_name in values:
                provenance[field_name] = "provided"
            else:
                values[field_name] = secret_factory(DEFAULT_SECRET_LENGTH)
                provenance[field_name] = "generated"
        values["password_provenance"] = provenance

        try:
            return cls(**values)
        except ValidationError as exc:
            problems = []
            for err in exc.errors():
                field_name = str(err["loc"][0]) if err["loc"] else "?"
                key = sources.get(field_name, ENV_MAP.get(field_name, (field_name,))[0])
                problems.append((key, err["msg"]))
            summary = "; ".join(f"{key}: {msg}" for key, msg in problems)
            raise ConfigurationError(
                f"Invalid configuration: {summary}", problems=problems, cause=exc
            ) from exc

    # ── Views ────────────────────────────────────────────────────

    @property
    def grafana_url(self) -> str:
        return f"http://localhost:{self.grafana_port}"

    @property
    def influxdb_url(self) -> str:
        return f"http://localhost:{self.influxdb_port}"

    def describe(self) -> dict[str, Any]:
        """Settings as loggable values, passwords masked."""
        data: dict[str, Any] = {}
        for field_name in ENV_MAP:
            value = getattr(self, field_name)
            if isinstance(value, SecretStr):
                data[field_name] = mask_secret(value.get_secret_value())
            else:
                data[field_name] = str(value) if isinstance(value, Path) else value
        return data

    def env_file_values(self) -> dict[str, str]:
        """Key/value pairs written to the stack's ``.env`` file, in file order."""
        return {
            "CONTAINER_PREFIX": self.container_prefix,
            "GRAFANA_PORT": str(self.grafana_port),
            "GRAFANA_USER": self.grafana_user,
            "GRAFANA_PASSWORD": self.grafana_password.get_secret_value(),
            "GRAFANA_PLUGINS_ENABLED": "true" if self.grafana_plugins_enabled else "false",
            "GRAFANA_PLUGINS": self.grafana_plugins,
            "INFLUXDB_PORT": str(self.influxdb_port),
            "INFLUXDB_HOST": self.influxdb_host,
            "INFLUXDB_DATABASE": self.influxdb_database,
            "INFLUXDB_ADMIN_USER": self.influxdb_user,
            "INFLUXDB_ADMIN_PASSWORD": self.influxdb_password.get_secret_value(),
            "TELEGRAF_HOST": self.telegraf_host,
            "TELEGRAF_INTERVAL": self.telegraf_interval,
        }


__all__ = ["ENV_MAP", "SECRET_FIELDS", "StackConfig", "recognized_keys", "requested_log_file"]
