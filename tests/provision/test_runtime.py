"""Tests for the Runtime Installer.

Package managers, systemctl and the container runtime are all faked; the
compose download goes through httpx.MockTransport.
"""

from __future__ import annotations

import stat

import httpx
import pytest

from tigspine.core.errors import RuntimeInstallError, UnsupportedPlatformError
from tigspine.provision.runtime import (
    COMPOSE_RELEASES_API,
    PACKAGE_MANAGERS,
    RuntimeInstaller,
    parse_os_release,
)

AMAZON = 'NAME="Amazon Linux"\nVERSION="2023"\nID="amzn"\nVERSION_ID="2023"\n'
UBUNTU = 'NAME="Ubuntu"\nID=ubuntu\nVERSION_ID="22.04"\nVERSION_CODENAME=jammy\n'
CENTOS = 'NAME="CentOS Stream"\nID="centos"\nVERSION_ID="9"\n'
GENTOO = 'NAME=Gentoo\nID=gentoo\n'


class GitHubStub:
    """MockTransport handler for the release API and the binary download."""

    def __init__(self, tag="v2.30.0", api_status=200):
        self.tag = tag
        self.api_status = api_status
        self.requests: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        if url == COMPOSE_RELEASES_API:
            if self.api_status != 200:
                return httpx.Response(self.api_status)
            return httpx.Response(200, json={"tag_name": self.tag})
        if "/releases/download/" in url:
            return httpx.Response(200, content=b"\x7fELF compose binary")
        if url.endswith("/gpg"):
            return httpx.Response(200, text="-----BEGIN PGP PUBLIC KEY BLOCK-----\n")
        return httpx.Response(404)


@pytest.fixture
def os_release(tmp_path):
    def write(text):
        path = tmp_path / "os-release"
        path.write_text(text)
        return path

    return write


def _installer(runner, tmp_path, release, stub=None, **kwargs):
    stub = stub or GitHubStub()
    return RuntimeInstaller(
        runner,
        "ec2-user",
        http=httpx.Client(transport=httpx.MockTransport(stub)),
        os_release=release,
        redhat_release=tmp_path / "redhat-release",
        compose_path=tmp_path / "bin" / "docker-compose",
        compose_link=tmp_path / "docker-compose-link",
        apt_keyring=tmp_path / "keyrings" / "docker.gpg",
        apt_source=tmp_path / "docker.list",
        **kwargs,
    )


def _package_manager_calls(runner):
    return [call for call in runner.calls if call[0] in PACKAGE_MANAGERS]


class TestParseOsRelease:
    def test_quoted_and_bare_values(self):
        values = parse_os_release(UBUNTU + "# comment\n\n")
        assert values["ID"] == "ubuntu"
        assert values["VERSION_ID"] == "22.04"
        assert values["NAME"] == "Ubuntu"


class TestDetectPlatform:
    @pytest.mark.parametrize(
        "text, family",
        [(AMAZON, "amazon"), (UBUNTU, "ubuntu"), (CENTOS, "rhel")],
    )
    def test_supported(self, fake_runner, tmp_path, os_release, text, family):
        info = _installer(fake_runner, tmp_path, os_release(text)).detect_platform()
        assert info.family == family

    def test_redhat_release_fallback(self, fake_runner, tmp_path):
        (tmp_path / "redhat-release").write_text("CentOS Linux release 7.9\n")
        info = _installer(fake_runner, tmp_path, tmp_path / "missing").detect_platform()
        assert info.family == "rhel"

    def test_unsupported(self, fake_runner, tmp_path, os_release):
        with pytest.raises(UnsupportedPlatformError, match="gentoo") as exc_info:
            _installer(fake_runner, tmp_path, os_release(GENTOO)).install()
        assert exc_info.value.foundational is True
        assert _package_manager_calls(fake_runner) == []

    def test_no_release_information(self, fake_runner, tmp_path):
        with pytest.raises(UnsupportedPlatformError):
            _installer(fake_runner, tmp_path, tmp_path / "missing").detect_platform()


class TestAlreadyInstalled:
    def test_no_package_manager_calls(self, fake_runner, tmp_path, os_release):
        fake_runner.on("docker", "--version", stdout="Docker version 24.0.5\n")
        report = _installer(fake_runner, tmp_path, os_release(AMAZON)).install()
        assert report.already_installed is True
        assert _package_manager_calls(fake_runner) == []
        assert not fake_runner.ran("systemctl", "start", "docker")
        # permissions, compose detection and validation still run
        assert fake_runner.ran("usermod", "-aG", "docker", "ec2-user")
        assert report.compose == ["docker-compose"]
        assert report.compose_source == "existing"
        assert fake_runner.ran("docker", "run", "--rm", "hello-world")
        assert report.user_can_run_docker is True

    def test_compose_plugin(self, runner_factory, tmp_path, os_release):
        runner = runner_factory(which=("docker",))
        report = _installer(runner, tmp_path, os_release(AMAZON)).install()
        assert report.compose == ["docker", "compose"]
        assert report.compose_source == "plugin"


class TestFreshInstall:
    def _runner(self, runner_factory):
        runner = runner_factory(which=())
        runner.on("docker", "compose", "version", returncode=1)
        return runner

    def test_amazon(self, runner_factory, tmp_path, os_release):
        runner = self._runner(runner_factory)
        stub = GitHubStub(tag="v2.30.0")
        report = _installer(runner, tmp_path, os_release(AMAZON), stub).install()

        assert report.already_installed is False
        assert _package_manager_calls(runner) == [
            ["yum", "update", "-y"],
            ["yum", "install", "-y", "docker"],
        ]
        assert runner.ran("systemctl", "start", "docker")
        assert runner.ran("systemctl", "enable", "docker")
        assert report.compose_source == "v2.30.0"

        binary = tmp_path / "bin" / "docker-compose"
        assert binary.read_bytes() == b"\x7fELF compose binary"
        assert stat.S_IMODE(binary.stat().st_mode) == 0o755
        assert (tmp_path / "docker-compose-link").resolve() == binary.resolve()
        assert any("/download/v2.30.0/" in url for url in stub.requests)

    def test_compose_version_falls_back(self, runner_factory, tmp_path, os_release, log_text):
        runner = self._runner(runner_factory)
        stub = GitHubStub(api_status=403)
        report = _installer(runner, tmp_path, os_release(AMAZON), stub, compose_fallback_version="v2.24.1").install()
        assert report.compose_source == "v2.24.1"
        assert any("/download/v2.24.1/" in url for url in stub.requests)
        assert "using pinned version" in log_text()

    def test_centos_adds_repository(self, runner_factory, tmp_path, os_release):
        runner = self._runner(runner_factory)
        _installer(runner, tmp_path, os_release(CENTOS)).install()
        assert runner.ran("yum-config-manager", "--add-repo")
        assert runner.ran("yum", "install", "-y", "docker-ce")

    def test_ubuntu_writes_apt_source(self, runner_factory, tmp_path, os_release):
        runner = self._runner(runner_factory)
        runner.on("dpkg", "--print-architecture", stdout="amd64\n")
        _installer(runner, tmp_path, os_release(UBUNTU)).install()
        source = (tmp_path / "docker.list").read_text()
        assert "arch=amd64" in source
        assert "ubuntu jammy stable" in source
        assert runner.ran("gpg", "--dearmor")
        assert runner.ran("apt-get", "install", "-y", "docker-ce")
        assert not runner.ran("lsb_release")

    def test_package_failure(self, runner_factory, tmp_path, os_release):
        runner = self._runner(runner_factory)
        runner.on("yum", "install", returncode=1, stderr="No package docker available.")
        with pytest.raises(RuntimeInstallError, match="No package docker available") as exc_info:
            _installer(runner, tmp_path, os_release(AMAZON)).install()
        assert exc_info.value.foundational is False


class TestPermissions:
    def test_creates_missing_group(self, fake_runner, tmp_path, os_release):
        fake_runner.on("getent", "group", "docker", returncode=2)
        _installer(fake_runner, tmp_path, os_release(AMAZON)).configure_permissions()
        assert fake_runner.ran("groupadd", "docker")

    def test_missing_user_is_skipped(self, fake_runner, tmp_path, os_release, log_text):
        fake_runner.on("id", returncode=1)
        _installer(fake_runner, tmp_path, os_release(AMAZON)).configure_permissions()
        assert not fake_runner.ran("usermod")
        assert "Operating user not found" in log_text()


class TestValidate:
    def test_workload_failure(self, fake_runner, tmp_path, os_release):
        fake_runner.on("docker", "run", returncode=125)
        with pytest.raises(RuntimeInstallError, match="cannot run workloads"):
            _installer(fake_runner, tmp_path, os_release(AMAZON)).validate()

    def test_user_check_is_informational(self, fake_runner, tmp_path, os_release):
        fake_runner.on("su", returncode=1)
        assert _installer(fake_runner, tmp_path, os_release(AMAZON)).validate() is False
