import json
import logging
from pathlib import Path

import pytest
from typer.testing import CliRunner

import nixiform.cli.app as app_mod
from nixiform.cli.app import app
from nixiform.cli.helper import Runtime
from nixiform.deploy.executor import ParallelExecutor
from nixiform.deploy.push import Pusher
from nixiform.lifecycle.manager import InstanceLifecycle
from nixiform.secrets.sync import SecretsSync

INVENTORY = {"nodes": {"web": {"ip": "10.0.0.2"}, "db": {"ip": "10.0.0.3"}}}


@pytest.fixture
def workspace(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for var in ("NIXIFORM_CONFIG", "NIXIFORM_WORK_DIR", "NIXIFORM_SOURCE", "NIXIFORM_JOBS"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setattr(
        app_mod, "init_logging",
        lambda **kw: (logging.getLogger("nixiform"), "run-test", None),
    )
    (tmp_path / "nixiform.yaml").write_text(f"source: {tmp_path}\nwork_dir: {tmp_path / 'state'}\n")
    return tmp_path


def _write_inventory(workspace: Path) -> Path:
    f = workspace / "tf-output.json"
    f.write_text(json.dumps(INVENTORY))
    assert CliRunner().invoke(app, ["input", str(f)]).exit_code == 0
    return workspace / "state" / "input.json"


def test_input_then_nodes(workspace):
    snapshot = _write_inventory(workspace)
    assert json.loads(snapshot.read_text()) == INVENTORY

    result = CliRunner().invoke(app, ["nodes"])
    assert result.exit_code == 0
    assert result.output.split() == ["db", "web"]


def test_nodes_without_snapshot(workspace):
    assert CliRunner().invoke(app, ["nodes"]).exit_code == 14


def test_input_missing_file(workspace):
    assert CliRunner().invoke(app, ["input", "nope.json"]).exit_code == 14


def test_local_and_bundle_are_exclusive(workspace):
    _write_inventory(workspace)
    assert CliRunner().invoke(app, ["push", "-l", "-b", "web"]).exit_code == 2


def test_unknown_node_fails_only_itself(workspace):
    _write_inventory(workspace)
    result = CliRunner().invoke(app, ["build", "ghost"])
    assert result.exit_code == 10


def test_dry_push_end_to_end(workspace, monkeypatch, remote, nix):
    _write_inventory(workspace)
    system = workspace / "nixos-system-web"
    system.mkdir()
    (workspace / "flake.nix").write_text("{}\n")
    (workspace / "state" / "web.nix").write_text("{}\n")

    nix.build = lambda name: str(system)
    nix.values = {"nixiform.filesDir": "/var/lib/nixiform/files", "nixiform.secrets": {}}
    remote.on("echo nixiform-alive", (0, "nixiform-alive\n", ""))
    remote.on("test -e /etc/NIXOS", (0, "", ""))

    def fake_runtime(config, run_id=None):
        lifecycle = InstanceLifecycle(config, remote, nix)
        return Runtime(
            config=config,
            remote=remote,
            nix=nix,
            lifecycle=lifecycle,
            secrets=SecretsSync(remote, nix),
            pusher=Pusher(remote, nix, nix, lifecycle),
            executor=ParallelExecutor(config.jobs, run_id=run_id),
        )

    monkeypatch.setattr(app_mod, "build_runtime", fake_runtime)

    result = CliRunner().invoke(app, ["--jobs", "2", "push", "-l", "-d", "web"])

    assert result.exit_code == 0, result.output
    assert remote.transfers == [(str(system), "copy")]
    assert remote.count("action=dry-activate") == 1
    assert remote.streamed == []


def test_bad_configuration_prints_error_line(workspace, monkeypatch):
    monkeypatch.setenv("NIXIFORM_JOBS", "0")
    result = CliRunner().invoke(app, ["nodes"])
    assert result.exit_code == 2
    assert "Error: invalid configuration" in result.output
