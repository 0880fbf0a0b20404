"""Runtime Installer: container runtime and compose tool.

Why This Matters:
    Everything after step 1 assumes a working ``docker`` daemon the
    operating user may talk to. This module makes that true on the three
    distribution families seen on cloud images, and proves it by running a
    real container before returning.

Key Concepts:
    PlatformInfo: ``ID`` / ``VERSION_ID`` / ``VERSION_CODENAME`` from
        ``/etc/os-release`` (``/etc/redhat-release`` alone implies CentOS),
        mapped to a family: ``amazon``, ``ubuntu`` or ``rhel``.
    Short-circuit: when ``docker info`` already succeeds, no package
        manager is touched; group membership, compose and validation still
        run.
    Compose tool: existing ``docker-compose`` binary, else the ``docker
        compose`` plugin, else the standalone release binary. The release
        tag comes from the GitHub API; any lookup failure falls back to a
        pinned version.
    Validation: ``docker run --rm hello-world`` must succeed. The user-level
        ``docker ps`` check is informational, since a new group membership
        only applies to new login sessions.

Architecture Decisions:
    - Every host command goes through ``CommandRunner``; the HTTP calls go
      through an injectable ``httpx.Client``. Tests replace both.
    - An unsupported platform raises ``UnsupportedPlatformError`` before any
      command runs.

Related Modules:
    - :mod:`tigspine.core.commands` — subprocess wrapper
    - :mod:`tigspine.provision.steps` — step 1 and step 11

Tags:
    docker, installation, platform-detection, compose, package-manager
"""

from __future__ import annotations

import os
import platform
import shlex
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from tigspine.core.commands import CommandRunner
from tigspine.core.errors import (
    CommandError,
    ErrorContext,
    RuntimeInstallError,
    UnsupportedPlatformError,
)
from tigspine.core.logging import get_logger

logger = get_logger(__name__)

COMPOSE_RELEASES_API = "https://api.github.com/repos/docker/compose/releases/latest"
COMPOSE_DOWNLOAD_URL = "https://github.com/docker/compose/releases/download/{version}/docker-compose-{system}-{machine}"
DOCKER_APT_KEY_URL = "https://download.docker.com/linux/ubuntu/gpg"
DOCKER_CENTOS_REPO = "https://download.docker.com/linux/centos/docker-ce.repo"

RUNTIME_GROUP = "docker"

FAMILIES = {
    "amzn": "amazon",
    "amazon": "amazon",
    "ubuntu": "ubuntu",
    "centos": "rhel",
    "rhel": "rhel",
}

#: argv[0] values that count as package-manager calls.
PACKAGE_MANAGERS = frozenset({"yum", "dnf", "apt-get", "yum-config-manager"})


@dataclass(frozen=True)
class PlatformInfo:
    id: str
    version: str = ""
    codename: str = ""

    @property
    def family(self) -> str | None:
        return FAMILIES.get(self.id)


@dataclass
class InstallReport:
    platform: PlatformInfo
    already_installed: bool = False
    compose: list[str] = field(default_factory=list)
    compose_source: str = ""
    user_can_run_docker: bool = False


def parse_os_release(text: str) -> dict[str, str]:
    values: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, raw = line.partition("=")
        parts = shlex.split(raw) if raw else [""]
        values[key.strip()] = parts[0] if parts else ""
    return values


class RuntimeInstaller:
    """Installs and validates the container runtime for ``user``."""

    def __init__(
        self,
        runner: CommandRunner,
        user: str,
        *,
        http: httpx.Client | None = None,
        os_release: Path = Path("/etc/os-release"),
        redhat_release: Path = Path("/etc/redhat-release"),
        compose_fallback_version: str = "v2.24.1",
        compose_path: Path = Path("/usr/local/bin/docker-compose"),
        compose_link: Path = Path("/usr/bin/docker-compose"),
        apt_keyring: Path = Path("/etc/apt/keyrings/docker.gpg"),
        apt_source: Path = Path("/etc/apt/sources.list.d/docker.list"),
    ) -> None:
        self.runner = runner
        self.user = user
        self._http = http
        self._owns_http = http is None
        self.os_release = os_release
        self.redhat_release = redhat_release
        self.compose_fallback_version = compose_fallback_version
        self.compose_path = compose_path
        self.compose_link = compose_link
        self.apt_keyring = apt_keyring
        self.apt_source = apt_source

    # ------------------------------------------------------------------
    # Platform
    # ------------------------------------------------------------------

    def detect_platform(self) -> PlatformInfo:
        """Identify the distribution; raise if it is not supported."""
        if self.os_release.is_file():
            values = parse_os_release(self.os_release.read_text(encoding="utf-8"))
            info = PlatformInfo(
                id=values.get("ID", "").lower(),
                version=values.get("VERSION_ID", ""),
                codename=values.get("VERSION_CODENAME", ""),
            )
        elif self.redhat_release.is_file():
            info = PlatformInfo(id="centos")
        else:
            raise UnsupportedPlatformError(
                "Cannot determine the operating system: no os-release information",
                context=ErrorContext(path=str(self.os_release)),
            )

        if info.family is None:
            raise UnsupportedPlatformError(
                f"Unsupported operating system: {info.id or 'unknown'} {info.version}".rstrip()
            )
        logger.info("Detected platform", os=info.id, version=info.version, family=info.family)
        return info

    # ------------------------------------------------------------------
    # Install
    # ------------------------------------------------------------------

    def runtime_responsive(self) -> bool:
        if not self.runner.which("docker"):
            return False
        return self.runner.run(["docker", "info"], check=False).returncode == 0

    def install(self) -> InstallReport:
        """Make the runtime and compose tool available and prove they work."""
        info = self.detect_platform()
        report = InstallReport(platform=info)

        if self.runtime_responsive():
            report.already_installed = True
            version = self.runner.run(["docker", "--version"], check=False).stdout.strip()
            logger.info("Container runtime already installed", version=version or "unknown")
        else:
            self._install_packages(info)
            self._enable_service()

        self.configure_permissions()
        report.compose, report.compose_source = self.ensure_compose()
        report.user_can_run_docker = self.validate()
        return report

    def _install_packages(self, info: PlatformInfo) -> None:
        logger.info("Installing container runtime", family=info.family)
        try:
            if info.family == "amazon":
                self.runner.run(["yum", "update", "-y"])
                self.runner.run(["yum", "install", "-y", "docker"])
            elif info.family == "ubuntu":
                self._install_ubuntu(info)
            else:
                self.runner.run(["yum", "install", "-y", "yum-utils"])
                self.runner.run(["yum-config-manager", "--add-repo", DOCKER_CENTOS_REPO])
                self.runner.run(
                    ["yum", "install", "-y", "docker-ce", "docker-ce-cli",
                     "containerd.io", "docker-compose-plugin"]
                )
        except CommandError as exc:
            raise RuntimeInstallError(
                f"Container runtime installation failed on {info.id}: {exc.message}",
                context=exc.context,
                cause=exc,
            ) from exc

    def _install_ubuntu(self, info: PlatformInfo) -> None:
        self.runner.run(["apt-get", "update", "-y"])
        self.runner.run(["apt-get", "install", "-y", "ca-certificates", "curl", "gnupg"])

        self.apt_keyring.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
        try:
            response = self._client().get(DOCKER_APT_KEY_URL)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise RuntimeInstallError(
                f"Could not download the Docker repository key: {exc}", cause=exc
            ) from exc
        self.runner.run(
            ["gpg", "--dearmor", "--yes", "-o", str(self.apt_keyring)],
            input=response.text,
        )

        arch = self.runner.run(["dpkg", "--print-architecture"]).stdout.strip()
        codename = info.codename or self.runner.run(["lsb_release", "-cs"]).stdout.strip()
        self.apt_source.write_text(
            f"deb [arch={arch} signed-by={self.apt_keyring}] "
            f"https://download.docker.com/linux/ubuntu {codename} stable\n",
            encoding="utf-8",
        )
        self.runner.run(["apt-get", "update", "-y"])
        self.runner.run(
            ["apt-get", "install", "-y", "docker-ce", "docker-ce-cli",
             "containerd.io", "docker-compose-plugin"]
        )

    def _enable_service(self) -> None:
        try:
            self.runner.run(["systemctl", "start", "docker"])
            self.runner.run(["systemctl", "enable", "docker"])
        except CommandError as exc:
            raise RuntimeInstallError(
                f"Could not start the container runtime service: {exc.message}", cause=exc
            ) from exc
        logger.info("Container runtime service started and enabled")

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def configure_permissions(self) -> None:
        """Ensure the runtime group exists and the operating user is in it."""
        if self.runner.run(["getent", "group", RUNTIME_GROUP], check=False).returncode != 0:
            self.runner.run(["groupadd", RUNTIME_GROUP])
            logger.info("Created group", group=RUNTIME_GROUP)

        if self.runner.run(["id", self.user], check=False).returncode != 0:
            logger.warning("Operating user not found; skipping group membership", user=self.user)
            return
        self.runner.run(["usermod", "-aG", RUNTIME_GROUP, self.user])
        logger.info("Added user to group", user=self.user, group=RUNTIME_GROUP)

    # ------------------------------------------------------------------
    # Compose
    # ------------------------------------------------------------------

    def _client(self) -> httpx.Client:
        if self._http is None:
            self._http = httpx.Client(timeout=30.0, follow_redirects=True)
        return self._http

    def latest_compose_version(self) -> str:
        """Latest compose release tag, or the pinned fallback on any failure."""
        try:
            response = self._client().get(
                COMPOSE_RELEASES_API, headers={"Accept": "application/vnd.github+json"}
            )
            response.raise_for_status()
            tag = response.json()["tag_name"]
            if not isinstance(tag, str) or not tag.startswith("v"):
                raise ValueError(f"unexpected tag_name {tag!r}")
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
            logger.warning(
                "Could not determine latest compose release; using pinned version",
                version=self.compose_fallback_version,
                reason=str(exc),
            )
            return self.compose_fallback_version
        logger.info("Latest compose release", version=tag)
        return tag

    def ensure_compose(self) -> tuple[list[str], str]:
        """Return the compose invocation and where it came from."""
        if self.runner.which("docker-compose"):
            result = self.runner.run(["docker-compose", "--version"], check=False)
            if result.returncode == 0:
                logger.info("Compose tool already installed", version=result.stdout.strip())
                return ["docker-compose"], "existing"

        if self.runner.run(["docker", "compose", "version"], check=False).returncode == 0:
            logger.info("Using the compose plugin")
            return ["docker", "compose"], "plugin"

        version = self.latest_compose_version()
        self.download_compose(version)
        return ["docker-compose"], version

    def download_compose(self, version: str) -> Path:
        url = COMPOSE_DOWNLOAD_URL.format(
            version=version,
            system=platform.system().lower(),
            machine=platform.machine(),
        )
        logger.info("Downloading compose tool", version=version, url=url)
        target = self.compose_path
        tmp: Path | None = None
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".docker-compose.")
            tmp = Path(tmp_name)
            with os.fdopen(fd, "wb") as fh, self._client().stream("GET", url) as response:
                response.raise_for_status()
                for chunk in response.iter_bytes():
                    fh.write(chunk)
            tmp.chmod(0o755)
            os.replace(tmp, target)
            tmp = None
            link = self.compose_link
            if link != target and not link.exists() and not link.is_symlink():
                link.symlink_to(target)
        except (httpx.HTTPError, OSError) as exc:
            if tmp is not None:
                tmp.unlink(missing_ok=True)
            raise RuntimeInstallError(
                f"Could not install compose {version}: {exc}",
                context=ErrorContext(path=str(target)),
                cause=exc,
            ) from exc
        logger.success("Compose tool installed", path=str(target), version=version)
        return target

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> bool:
        """Run a throwaway container; report whether the user can use the runtime."""
        try:
            self.runner.run(["docker", "run", "--rm", "hello-world"])
        except CommandError as exc:
            raise RuntimeInstallError(
                f"Container runtime cannot run workloads: {exc.message}", cause=exc
            ) from exc
        logger.success("Container runtime executed a test workload")

        result = self.runner.run(["su", "-", self.user, "-c", "docker ps"], check=False)
        if result.returncode == 0:
            logger.info("Operating user can run docker commands", user=self.user)
            return True
        logger.info(
            "Operating user cannot run docker commands yet; group membership applies at next login",
            user=self.user,
        )
        return False

    def close(self) -> None:
        if self._http is not None and self._owns_http:
            self._http.close()
            self._http = None


__all__ = [
    "RuntimeInstaller",
    "InstallReport",
    "PlatformInfo",
    "PACKAGE_MANAGERS",
    "parse_os_release",
]
