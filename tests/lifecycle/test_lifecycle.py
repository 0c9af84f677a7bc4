import types

import pytest

from nixiform.core.errors import (
    BuildFailed,
    HostNotManaged,
    HostUnreachable,
    HostUnreachableAfterReboot,
    InvalidProvisioner,
    MissingBootstrapFiles,
    NoDeployFile,
    NoSuchConfig,
    RefusedDryBootstrap,
)
from nixiform.core.models import Node
from nixiform.lifecycle.manager import InstanceLifecycle
from nixiform.nix.interface import BuildError
from nixiform.remote.interface import RemoteConnectionError
from nixiform.utils.execution import ExecutionContext

ALIVE = (0, "nixiform-alive\n", "")


class FakeGit:
    def __init__(self):
        self.calls = []

    def run(self, argv, **kw):
        self.calls.append(argv)
        return types.SimpleNamespace(returncode=0, stdout="", stderr="")


@pytest.fixture
def git():
    return FakeGit()


@pytest.fixture
def lifecycle(config, remote, nix, git):
    return InstanceLifecycle(config, remote, nix, git=git)


# ----------------- reachability -----------------

def test_reachable_on_first_answer(lifecycle, remote, node, sleeps):
    remote.on("echo nixiform-alive", ALIVE)
    lifecycle.check_reachable(node)
    assert remote.count("echo nixiform-alive") == 1
    assert sleeps == []


def test_unreachable_after_fixed_retries(lifecycle, remote, node, sleeps):
    remote.on("echo nixiform-alive", RemoteConnectionError("connection refused"))

    with pytest.raises(HostUnreachable) as ei:
        lifecycle.check_reachable(node)

    assert "host unreachable" in str(ei.value)
    assert ei.value.exit_code == 17
    assert remote.count("echo nixiform-alive") == 3
    assert sleeps == [5.0, 5.0]


def test_answer_without_marker_is_retried(lifecycle, remote, node, sleeps):
    remote.on("echo nixiform-alive", (0, "", ""), ALIVE)
    lifecycle.check_reachable(node)
    assert sleeps == [5.0]


# ----------------- reboot -----------------

def test_reboot_waits_for_new_boot_id(lifecycle, remote, node, sleeps):
    remote.on("random/boot_id", (0, "aaa\n", ""), (0, "aaa\n", ""), (0, "bbb\n", ""))
    lifecycle.reboot(node)
    assert remote.count("systemctl reboot") == 1
    assert sleeps == [5.0]


def test_reboot_that_never_returns(lifecycle, remote, node, sleeps):
    remote.on("random/boot_id", (0, "aaa\n", ""), RemoteConnectionError("no route to host"))
    with pytest.raises(HostUnreachableAfterReboot) as ei:
        lifecycle.reboot(node)
    assert ei.value.unreachable
    assert len(sleeps) == 4


# ----------------- managed base system -----------------

def test_managed_node_is_left_alone(lifecycle, remote, node):
    remote.on("test -e /etc/NIXOS", (0, "", ""))
    assert lifecycle.ensure_managed(node) is False
    assert remote.count("nixos-infect") == 0


def test_dry_run_refuses_bootstrap(lifecycle, remote, node):
    remote.on("test -e /etc/NIXOS", (1, "", ""))
    with pytest.raises(RefusedDryBootstrap):
        lifecycle.ensure_managed(node, ctx=ExecutionContext(dry_run=True))
    assert remote.count("nixos-infect") == 0


def test_unknown_provider_is_invalid(lifecycle, remote):
    remote.on("test -e /etc/NIXOS", (1, "", ""))
    with pytest.raises(InvalidProvisioner):
        lifecycle.ensure_managed(Node(name="x", ip="10.0.0.9", provider="mystery-cloud"))


def test_bootstrap_reboots_and_verifies(lifecycle, remote, node, sleeps):
    remote.on("&& test -f", (0, "", ""))
    remote.on("test -e /etc/NIXOS", (1, "", ""))
    remote.on("random/boot_id", (0, "aaa\n", ""), (0, "bbb\n", ""))

    assert lifecycle.ensure_managed(node) is True

    (bootstrap,) = [c for c in remote.commands if "nixos-infect" in c]
    assert "PROVIDER=hetznercloud" in bootstrap
    assert remote.count("systemctl reboot") == 1


def test_bootstrap_without_descriptors_is_not_managed(lifecycle, remote, node, sleeps):
    remote.on("&& test -f", (1, "", ""))
    remote.on("test -e /etc/NIXOS", (1, "", ""))
    remote.on("random/boot_id", (0, "aaa\n", ""), (0, "bbb\n", ""))

    with pytest.raises(HostNotManaged):
        lifecycle.ensure_managed(node)


# ----------------- node module -----------------

def _descriptor_answers(remote):
    remote.on("uname -m", (0, "x86_64\nLinux\n", ""))
    remote.on("cat /etc/nixos/hardware-configuration.nix", (0, "{ boot.loader.grub.device = \"/dev/sda\"; }\n", ""))
    remote.on("cat /etc/nixos/networking.nix", (0, "{ networking.useDHCP = true; }\n", ""))


def test_module_generated_once(lifecycle, remote, node, config, git):
    _descriptor_answers(remote)

    module = lifecycle.ensure_module(node)

    text = module.read_text()
    assert 'system = "x86_64-linux";' in text
    assert "./node-1/hardware-configuration.nix" in text
    assert (config.work_dir / "node-1" / "networking.nix").read_text().startswith("{ networking")
    assert git.calls[0][:3] == ["git", "add", "--intent-to-add"]

    module.write_text("# edited by hand\n")
    issued = len(remote.commands)
    assert lifecycle.ensure_module(node) == module
    assert module.read_text() == "# edited by hand\n"
    assert len(remote.commands) == issued


def test_unreadable_descriptor(lifecycle, remote, node):
    remote.on("uname -m", (0, "aarch64\nLinux\n", ""))
    remote.on("cat ", (1, "", "No such file or directory"))
    with pytest.raises(MissingBootstrapFiles):
        lifecycle.ensure_module(node)


# ----------------- build -----------------

def test_build_requires_module_and_flake(lifecycle, node, config, tmp_path):
    with pytest.raises(NoSuchConfig):
        lifecycle.build(node)

    config.work_dir.mkdir(parents=True)
    config.module_file(node.name).write_text("{}\n")
    with pytest.raises(NoDeployFile):
        lifecycle.build(node)

    (tmp_path / "flake.nix").write_text("{}\n")
    assert lifecycle.build(node) == "/nix/store/aaa-nixos-system-node-1"
    assert lifecycle.build(node, realize=False).endswith(".drv")


def test_build_failure(lifecycle, node, nix, config, tmp_path, monkeypatch):
    config.work_dir.mkdir(parents=True)
    config.module_file(node.name).write_text("{}\n")
    (tmp_path / "flake.nix").write_text("{}\n")

    def boom(name):
        raise BuildError("error: attribute 'nixiform' missing")

    monkeypatch.setattr(nix, "build", boom)
    with pytest.raises(BuildFailed) as ei:
        lifecycle.build(node)
    assert ei.value.exit_code == 12
