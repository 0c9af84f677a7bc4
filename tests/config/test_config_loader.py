from pathlib import Path
import textwrap

import pytest

from nixiform.config.loader import load_config
from nixiform.core.errors import WrongUsage


def test_defaults_without_any_source(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    cfg = load_config(environ={})
    assert cfg.source == "."
    assert cfg.ssh_user == "root"
    assert cfg.jobs == 1
    assert cfg.input_file == Path(".nixiform") / "input.json"


def test_yaml_then_env_then_overrides(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "nixiform.yaml").write_text(textwrap.dedent("""
        source: ./fleet
        ssh_user: deploy
        ssh_port: 2222
        jobs: 2
    """))
    cfg = load_config(
        environ={"NIXIFORM_SSH_PORT": "2200", "NIXIFORM_SSH_OPTS": "-o Compression=yes"},
        overrides={"jobs": 8, "debug": None},
    )
    assert cfg.source == "./fleet"
    assert cfg.ssh_user == "deploy"
    assert cfg.ssh_port == 2200
    assert cfg.ssh_opts == ["-o", "Compression=yes"]
    assert cfg.jobs == 8
    assert cfg.debug is False


def test_explicit_config_env_var(tmp_path: Path, monkeypatch):
    f = tmp_path / "elsewhere.yaml"
    f.write_text("work_dir: ${STATE_ROOT}/state\n")
    # ${VAR} expansion reads the process environment
    monkeypatch.setenv("STATE_ROOT", str(tmp_path))
    cfg = load_config(environ={"NIXIFORM_CONFIG": str(f)})
    assert cfg.work_dir == tmp_path / "state"
    assert cfg.module_file("web") == tmp_path / "state" / "web.nix"


def test_missing_explicit_config_is_wrong_usage(tmp_path: Path):
    with pytest.raises(WrongUsage):
        load_config(environ={"NIXIFORM_CONFIG": str(tmp_path / "nope.yaml")})


@pytest.mark.parametrize("overrides", [{"jobs": 0}, {"colour": "blue"}])
def test_invalid_values_are_wrong_usage(tmp_path: Path, monkeypatch, overrides):
    monkeypatch.chdir(tmp_path)
    with pytest.raises(WrongUsage) as ei:
        load_config(environ={}, overrides=overrides)
    assert ei.value.exit_code == 2
