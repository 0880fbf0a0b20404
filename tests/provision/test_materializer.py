"""Tests for the Resource Materializer."""

from __future__ import annotations

import os
import pwd
import stat

import pytest

from tigspine.core.errors import MaterializeError
from tigspine.provision import templates
from tigspine.provision.materializer import ResourceMaterializer, resolve_owner


def _mode(path):
    return stat.S_IMODE(path.stat().st_mode)


@pytest.fixture
def materializer():
    return ResourceMaterializer()


class TestEnsureDirectory:
    def test_creates_with_mode(self, materializer, tmp_path):
        target = tmp_path / "tig-stack" / "grafana"
        assert materializer.ensure_directory(target, mode=0o755) is True
        assert target.is_dir()
        assert _mode(target) == 0o755

    def test_is_idempotent(self, materializer, tmp_path):
        target = tmp_path / "tig-stack"
        materializer.ensure_directory(target)
        (target / "keep.txt").write_text("data")
        assert materializer.ensure_directory(target) is False
        assert (target / "keep.txt").read_text() == "data"

    def test_file_in_the_way(self, materializer, tmp_path):
        target = tmp_path / "tig-stack"
        target.write_text("not a directory")
        with pytest.raises(MaterializeError, match="not a directory"):
            materializer.ensure_directory(target)

    def test_unknown_owner(self, materializer, tmp_path):
        with pytest.raises(MaterializeError, match="does not exist"):
            materializer.ensure_directory(tmp_path / "d", owner="tig-test-no-such-user")


class TestWriteFile:
    def test_writes_content_and_mode(self, materializer, tmp_path):
        path = materializer.write_file(tmp_path / ".env", "KEY=value\n", mode=0o640)
        assert path.read_text() == "KEY=value\n"
        assert _mode(path) == 0o640

    def test_overwrites_and_reapplies_mode(self, materializer, tmp_path):
        path = tmp_path / "run.sh"
        path.write_text("old")
        path.chmod(0o600)
        materializer.write_file(path, "#!/bin/bash\n", mode=0o755)
        assert path.read_text() == "#!/bin/bash\n"
        assert _mode(path) == 0o755

    def test_rewrite_is_byte_identical(self, materializer, tmp_path):
        path = tmp_path / "docker-compose.yml"
        body = templates.COMPOSE.render()
        materializer.write_file(path, body)
        first = path.read_bytes()
        materializer.write_file(path, body)
        assert path.read_bytes() == first

    def test_no_temp_files_left_behind(self, materializer, tmp_path):
        root = tmp_path / "out"
        materializer.write_file(root / "a.conf", "x = 1\n")
        assert [p.name for p in root.iterdir()] == ["a.conf"]

    def test_missing_required_token(self, materializer, tmp_path):
        with pytest.raises(MaterializeError, match="missing required content: \\[http\\]"):
            materializer.write_file(tmp_path / "influxdb.conf", "[meta]\n", required_tokens=("[meta]", "[http]"))

    def test_empty_content_fails_assertion(self, materializer, tmp_path):
        with pytest.raises(MaterializeError, match="is empty"):
            materializer.write_file(tmp_path / "empty.conf", "")

    def test_unwritable_parent(self, materializer, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("file")
        with pytest.raises(MaterializeError, match="Could not write"):
            materializer.write_file(blocker / "x.conf", "data")


class TestWriteAsset:
    def test_renders_under_root(self, materializer, tmp_path):
        path = materializer.write_asset(
            tmp_path, templates.TELEGRAF_CONF, {"telegraf_interval": "15s"},
            extra_tokens=('interval = "15s"',),
        )
        assert path == tmp_path / "telegraf" / "telegraf.conf.template"
        assert 'interval = "15s"' in path.read_text()

    def test_extra_token_mismatch_fails(self, materializer, tmp_path):
        with pytest.raises(MaterializeError):
            materializer.write_asset(
                tmp_path, templates.INFLUXDB_CONF, {"influxdb_port": 8086},
                extra_tokens=('":9999"',),
            )


class TestVerifyFile:
    def test_missing_file(self, tmp_path):
        with pytest.raises(MaterializeError, match="was not created"):
            ResourceMaterializer.verify_file(tmp_path / "nope")

    def test_wrong_mode(self, tmp_path):
        path = tmp_path / "f"
        path.write_text("x")
        path.chmod(0o600)
        with pytest.raises(MaterializeError, match="expected 0o644"):
            ResourceMaterializer.verify_file(path, mode=0o644)


class TestResolveOwner:
    def test_none_passes_through(self):
        assert resolve_owner(None) is None

    def test_current_user(self):
        try:
            name = pwd.getpwuid(os.getuid()).pw_name
        except KeyError:
            pytest.skip("current uid has no passwd entry")
        uid, _ = resolve_owner(name)
        assert uid == os.getuid()
