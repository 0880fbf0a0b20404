"""End-to-end provisioning runs against a faked host.

Each test drives ``run_provisioning`` with an environment rooted in
``tmp_path``, a fake command runner and a mock HTTP transport, then checks
the exit code, the generated files, the log and the marker files.
"""

from __future__ import annotations

import re
import stat
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest

from tigspine.core.settings import ProvisionerSettings
from tigspine.provision.bootstrap import run_provisioning
from tigspine.provision.report import COMPLETE_MARKER, START_MARKER
from tigspine.provision.steps import parse_env_file

AMAZON = 'NAME="Amazon Linux"\nID="amzn"\nVERSION_ID="2023"\n'
GENTOO = "ID=gentoo\n"


@pytest.fixture
def settings(tmp_path):
    return ProvisionerSettings(
        marker_dir=tmp_path / "markers",
        log_alias=tmp_path / "tig-stack-latest.log",
        fallback_log=tmp_path / "fallback.log",
        boot_log=tmp_path / "cloud-init-output.log",
        metadata_url="",
        echo=False,
        poll_attempts=3,
        poll_delay=1,
        remediation_pause=1,
        remediation_attempts=2,
    )


@pytest.fixture
def http():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/ping":
            return httpx.Response(204)
        return httpx.Response(200, json={"database": "ok"})

    return httpx.Client(transport=httpx.MockTransport(handler))


@pytest.fixture
def provision(tmp_path, settings, fake_runner, running_stack, sleep_recorder, http):
    running_stack(fake_runner)

    def run(env, release=AMAZON):
        os_release = tmp_path / "os-release"
        os_release.write_text(release)
        return run_provisioning(
            env,
            settings,
            runner=fake_runner,
            http=http,
            sleep=sleep_recorder,
            installer_options={"os_release": os_release, "redhat_release": tmp_path / "none"},
        )

    return run


def _install_log(stack_env):
    return Path(stack_env["TIG_LOG_FILE"]).read_text(encoding="utf-8")


def _marker(settings, name):
    return (settings.marker_dir / name).read_text(encoding="utf-8")


class TestSuccessfulRun:
    def test_all_steps_complete(self, provision, stack_env, settings, fake_runner):
        assert provision(stack_env) == 0

        root = Path(stack_env["TIG_INSTALL_DIR"])
        for name in ("docker-compose.yml", ".env", "README.md", "grafana/run.sh", "influxdb/run.sh", "telegraf/run.sh"):
            assert (root / name).is_file(), name
        assert stat.S_IMODE((root / ".env").stat().st_mode) == 0o640

        text = _install_log(stack_env)
        assert "[STEP 1/12] Starting: Docker Installation" in text
        assert "[STEP 12/12] Completed: Documentation Creation" in text
        assert "Final Status: SUCCESS" in text
        assert "Completed Steps (12/12):" in text
        assert "Exit Code: 0" in text
        assert "GrafanaPass123" not in text
        assert "InfluxPass4567" not in text

        marker = _marker(settings, COMPLETE_MARKER)
        assert "Final status: SUCCESS" in marker
        assert "Completed steps: 12/12" in marker
        assert "Failed steps: none" in marker
        assert (settings.marker_dir / START_MARKER).is_file()

    def test_existing_runtime_is_not_reinstalled(self, provision, stack_env, fake_runner):
        provision(stack_env)
        assert not any(call[0] in ("yum", "dnf", "apt-get") for call in fake_runner.calls)

    def test_log_handoffs(self, provision, stack_env, settings):
        provision(stack_env)
        assert settings.log_alias.is_symlink()
        boot = settings.boot_log.read_text()
        assert "=== TIG Stack Installation Log ===" in boot
        assert "Final Status: SUCCESS" in boot

    def test_rerun_is_idempotent(self, provision, stack_env):
        assert provision(stack_env) == 0
        compose = Path(stack_env["TIG_INSTALL_DIR"]) / "docker-compose.yml"
        first = compose.read_bytes()
        assert provision(stack_env) == 0
        assert compose.read_bytes() == first

    def test_generated_passwords(self, provision, stack_env, settings):
        env = {k: v for k, v in stack_env.items() if "PASSWORD" not in k}
        assert provision(env) == 0

        env_file = Path(stack_env["TIG_INSTALL_DIR"]) / ".env"
        assert stat.S_IMODE(env_file.stat().st_mode) == 0o640
        values = parse_env_file(env_file)
        generated = [values["GRAFANA_PASSWORD"], values["INFLUXDB_ADMIN_PASSWORD"]]
        for value in generated:
            assert re.fullmatch(r"[A-Za-z0-9]{16}", value), value
        assert generated[0] != generated[1]

        text = _install_log(stack_env)
        assert "Completed Steps (12/12):" in text
        boot = settings.boot_log.read_text()
        for value in generated:
            assert value not in text
            assert value not in boot


class TestPartialRun:
    def test_failed_recoverable_step(self, provision, stack_env, settings, fake_runner):
        fake_runner.on("docker-compose", "up", returncode=1, stderr="build failed")
        assert provision(stack_env) == 0

        text = _install_log(stack_env)
        assert "Final Status: PARTIAL_SUCCESS" in text
        assert "Completed Steps (11/12):" in text
        assert "Failed Steps (1):" in text
        assert "✗ TIG Stack Deployment - Command failed" in text
        assert "Continuing with remaining installation steps..." in text
        assert "=== Troubleshooting Information ===" in text
        assert "Final status: PARTIAL_SUCCESS" in _marker(settings, COMPLETE_MARKER)

    def test_services_never_converge(self, provision, stack_env, fake_runner, sleep_recorder):
        fake_runner.on("docker", "inspect", stdout="exited\n")
        assert provision(stack_env) == 0

        text = _install_log(stack_env)
        assert "✗ Deployment Validation - Services failed to converge" in text
        # start + one remediation
        assert fake_runner.count("docker-compose", "up") == 2
        assert sleep_recorder.calls == [1, 1, 1, 1]


class TestAbortedRun:
    def test_unsupported_platform(self, provision, stack_env, settings):
        assert provision(stack_env, release=GENTOO) == 1

        text = _install_log(stack_env)
        assert "Unsupported operating system: gentoo" in text
        assert "Foundational step failed; aborting remaining steps" in text
        assert "[STEP 2/12]" not in text
        assert "Final Status: FAILED" in text
        assert "Exit Code: 1" in text

        marker = _marker(settings, COMPLETE_MARKER)
        assert "Completed steps: 0/12" in marker
        assert "Failed steps: Docker Installation" in marker


class TestConfigurationErrors:
    def test_invalid_port_exits_2_before_any_step(self, provision, stack_env, settings, fake_runner):
        code = provision({**stack_env, "TIG_GRAFANA_PORT": "99999"})
        assert code == 2

        text = _install_log(stack_env)
        assert "TIG_GRAFANA_PORT" in text
        assert "Starting:" not in text
        assert "Final Status: FAILED" in text
        assert "Exit Code: 2" in text
        assert not fake_runner.ran("yum")
        assert "Exit code: 2" in _marker(settings, COMPLETE_MARKER)

    def test_secret_generation_failure_exits_1(self, provision, stack_env):
        env = {k: v for k, v in stack_env.items() if "PASSWORD" not in k}
        with patch("tigspine.core.secrets.token_bytes", side_effect=OSError("no entropy")):
            assert provision(env) == 1
        text = _install_log(stack_env)
        assert "Secret generation failed" in text
        assert "Starting:" not in text


    def test_invalid_provisioner_settings_exit_2(self, tmp_path, monkeypatch, stack_env, fake_runner, http):
        markers = tmp_path / "markers"
        for key, value in {
            "MARKER_DIR": str(markers),
            "LOG_ALIAS": str(tmp_path / "tig-stack-latest.log"),
            "FALLBACK_LOG": str(tmp_path / "fallback.log"),
            "BOOT_LOG": str(tmp_path / "cloud-init-output.log"),
            "METADATA_URL": "http://metadata.test/latest/meta-data",
            "ECHO": "false",
            "POLL_ATTEMPTS": "lots",
        }.items():
            monkeypatch.setenv(f"TIG_PROVISIONER_{key}", value)

        assert run_provisioning(stack_env, runner=fake_runner, http=http, sleep=lambda s: None) == 2

        text = _install_log(stack_env)
        assert "Configuration error: Invalid provisioner settings" in text
        assert "TIG_PROVISIONER_POLL_ATTEMPTS" in text
        assert "Starting:" not in text
        assert "Exit Code: 2" in text
        assert "Exit code: 2" in (markers / COMPLETE_MARKER).read_text()
        assert (markers / START_MARKER).is_file()

    def test_remediation_budget_not_smaller_exits_2(self, tmp_path, monkeypatch, stack_env, fake_runner, http):
        monkeypatch.setenv("TIG_PROVISIONER_MARKER_DIR", str(tmp_path / "markers"))
        monkeypatch.setenv("TIG_PROVISIONER_ECHO", "false")
        monkeypatch.setenv("TIG_PROVISIONER_BOOT_LOG", str(tmp_path / "boot.log"))
        monkeypatch.setenv("TIG_PROVISIONER_LOG_ALIAS", str(tmp_path / "alias.log"))
        code = run_provisioning(
            stack_env,
            runner=fake_runner,
            http=http,
            sleep=lambda s: None,
            settings_overrides={"poll_attempts": 4, "remediation_attempts": 4},
        )
        assert code == 2
        text = _install_log(stack_env)
        assert "TIG_PROVISIONER_POLL_ATTEMPTS / TIG_PROVISIONER_REMEDIATION_ATTEMPTS" in text
        assert "smaller than poll_attempts" in text


class TestLogFallback:
    def test_unwritable_log_path(self, provision, stack_env, settings, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("x")
        env = {**stack_env, "TIG_LOG_FILE": str(blocker / "install.log")}
        assert provision(env) == 0
        text = settings.fallback_log.read_text()
        assert "Using fallback log file" in text
        assert "Final Status: SUCCESS" in text
