# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nixiform/lifecycle/manager.py

from __future__ import annotations

import json
import logging
from pathlib import Path
from textwrap import dedent
from typing import List, Optional, Tuple

from jinja2 import Environment, StrictUndefined

from ..config.models import NixiformConfig
from ..core.errors import (
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
from ..core.models import Node
from ..logging.log import node_logger
from ..nix.interface import Builder, NixError
from ..remote import scripts
from ..remote.interface import RemoteConnectionError, RemoteRunner
from ..utils.execution import CommandRunner, ExecutionContext
from ..utils.retry import RetryError, retry

log = logging.getLogger("nixiform")

NIXOS_INFECT_URL = "https://raw.githubusercontent.com/elitak/nixos-infect/master/nixos-infect"
NIXOS_CHANNEL = "nixos-24.05"

# inventory provider tag -> nixos-infect PROVIDER value
BOOTSTRAP_PROVIDERS = {
    "generic": "",
    "digitalocean": "digitalocean",
    "hcloud": "hetznercloud",
    "hetznercloud": "hetznercloud",
    "lightsail": "lightsail",
    "vultr": "vultr",
}

REACHABLE_RETRIES = 3
REACHABLE_INTERVAL = 5.0
REBOOT_RETRIES = 5

MODULE_TEMPLATE = dedent("""\
    # Generated by nixiform for {{ name }}; never regenerated once present.
    {
      system = {{ system | nixstr }};
      modules = [
        ./{{ name }}/hardware-configuration.nix
        ./{{ name }}/networking.nix
        { networking.hostName = {{ name | nixstr }}; }
      ];
    }
    """)


def _nix_string(value) -> str:
    # JSON string escaping is valid Nix once interpolation is disarmed
    return json.dumps(str(value)).replace("${", "\\${")


_env = Environment(undefined=StrictUndefined, autoescape=False, keep_trailing_newline=True)
_env.filters["nixstr"] = _nix_string


class _ProbeFailed(RuntimeError):
    pass


def _is_local_source(source: str) -> bool:
    return "://" not in source and ":" not in source.split("/", 1)[0]


class InstanceLifecycle:
    """
    Moves a node through Unknown -> Reachable -> Managed -> Configured -> Built.
    """

    def __init__(
        self,
        config: NixiformConfig,
        remote: RemoteRunner,
        builder: Builder,
        *,
        git: Optional[CommandRunner] = None,
    ):
        self.config = config
        self.remote = remote
        self.builder = builder
        self.git = git or CommandRunner(label="git")

    # ------------------ helpers ------------------

    def _execute(self, node: Node, command: str) -> Tuple[int, str, str]:
        try:
            return self.remote.execute(node, command)
        except RemoteConnectionError as e:
            raise HostUnreachable(f"{node.name}: {e}") from e

    def _wait(self, node: Node, probe, retries: int, interval: float) -> None:
        nlog = node_logger(node.name)

        def on_retry(attempt: int, exc: Exception) -> None:
            nlog.info("not reachable (attempt %d/%d): %s", attempt, retries, exc)

        retry(
            retries=retries,
            delay=interval,
            retry_on=(_ProbeFailed,),
            on_retry=on_retry,
        )(probe)()

    def _answer(self, node: Node, command: str) -> str:
        try:
            rc, out, _ = self.remote.execute(node, command)
        except RemoteConnectionError as e:
            raise _ProbeFailed(str(e)) from e
        if rc != 0:
            raise _ProbeFailed(f"probe exited {rc}")
        return out

    # ------------------ reachability ------------------

    def check_reachable(
        self,
        node: Node,
        retries: int = REACHABLE_RETRIES,
        interval: float = REACHABLE_INTERVAL,
    ) -> None:
        """
        Probe with a trivial command until it answers with the marker,
        at most *retries* attempts spaced *interval* seconds apart.
        """
        def probe() -> None:
            out = self._answer(node, scripts.render("probe", marker=scripts.ALIVE_MARKER))
            if scripts.ALIVE_MARKER not in out:
                raise _ProbeFailed("probe answered without the marker")

        try:
            self._wait(node, probe, retries, interval)
        except RetryError as e:
            raise HostUnreachable(f"host unreachable: {node.name} ({node.ip}) after {e.attempts} attempts") from e
        node_logger(node.name).debug("reachable")

    def boot_id(self, node: Node) -> str:
        rc, out, err = self._execute(node, scripts.render("boot_id"))
        if rc != 0:
            raise HostUnreachable(f"{node.name}: cannot read boot id: {err.strip()}")
        return out.strip()

    def reboot(
        self,
        node: Node,
        retries: int = REBOOT_RETRIES,
        interval: float = REACHABLE_INTERVAL,
    ) -> None:
        """
        Reboot and wait until the node answers with a new boot id.
        """
        nlog = node_logger(node.name)
        before = self.boot_id(node)
        nlog.info("rebooting")
        self._execute(node, scripts.render("reboot"))

        def probe() -> None:
            current = self._answer(node, scripts.render("boot_id")).strip()
            if not current or current == before:
                raise _ProbeFailed("still running the previous boot")

        try:
            self._wait(node, probe, retries, interval)
        except RetryError as e:
            raise HostUnreachableAfterReboot(
                f"{node.name} did not come back after reboot ({e.attempts} attempts)"
            ) from e
        nlog.info("back online after reboot")

    # ------------------ managed base system ------------------

    def is_managed(self, node: Node) -> bool:
        rc, _, _ = self._execute(node, scripts.render("is_managed", marker=scripts.MANAGED_MARKER))
        return rc == 0

    def _descriptors_present(self, node: Node) -> bool:
        rc, _, _ = self._execute(
            node,
            scripts.render(
                "descriptors_present",
                marker=scripts.MANAGED_MARKER,
                hardware=scripts.HARDWARE_FILE,
                networking=scripts.NETWORKING_FILE,
            ),
        )
        return rc == 0

    def ensure_managed(self, node: Node, *, ctx: ExecutionContext = ExecutionContext()) -> bool:
        """
        Bootstrap the managed base system once if it is missing.
        Returns True when a bootstrap was performed.
        """
        nlog = node_logger(node.name)
        if self.is_managed(node):
            return False

        if ctx.dry_run:
            raise RefusedDryBootstrap(f"{node.name} is not managed yet; refusing to bootstrap in dry mode")
        if node.provider not in BOOTSTRAP_PROVIDERS:
            raise InvalidProvisioner(f"{node.name}: no bootstrap known for provider '{node.provider}'")

        nlog.info("bootstrapping managed base system (provider=%s)", node.provider)
        rc, _, err = self._execute(
            node,
            scripts.render(
                "bootstrap",
                url=NIXOS_INFECT_URL,
                provider=BOOTSTRAP_PROVIDERS[node.provider],
                channel=NIXOS_CHANNEL,
            ),
        )
        if rc != 0:
            raise HostNotManaged(f"host not managed: bootstrap of {node.name} failed (rc={rc}): {err.strip()[-500:]}")

        self.reboot(node)

        if not self._descriptors_present(node):
            raise HostNotManaged(
                f"host not managed: {node.name} still lacks the base system or "
                f"{scripts.HARDWARE_FILE} / {scripts.NETWORKING_FILE}; fix it by hand"
            )
        nlog.info("bootstrap complete")
        return True

    # ------------------ node module ------------------

    def _read_remote(self, node: Node, path: str) -> str:
        rc, out, err = self._execute(node, scripts.render("read_file", path=path))
        if rc != 0:
            raise MissingBootstrapFiles(f"{node.name}: cannot read {path}: {err.strip()}")
        return out

    def detect_system(self, node: Node) -> str:
        rc, out, err = self._execute(node, scripts.render("arch"))
        words = out.split()
        if rc != 0 or len(words) < 2:
            raise HostNotManaged(f"{node.name}: cannot detect architecture: {err.strip()}")
        return f"{words[0]}-{words[1]}".lower()

    def _stage(self, paths: List[Path]) -> None:
        # Flakes only see tracked files; staging is a convenience.
        try:
            cp = self.git.run(["git", "add", "--intent-to-add", "--", *map(str, paths)])
        except OSError as e:
            log.debug("git unavailable, not staging %s: %s", paths, e)
            return
        if cp.returncode != 0:
            log.debug("git add failed, files left unstaged: %s", cp.stderr.strip())

    def ensure_module(self, node: Node) -> Path:
        """
        Generate the node module once; an existing module is never touched.
        """
        nlog = node_logger(node.name)
        module = self.config.module_file(node.name)
        if module.exists():
            nlog.debug("module %s already present", module)
            return module

        system = self.detect_system(node)
        hardware = self._read_remote(node, scripts.HARDWARE_FILE)
        networking = self._read_remote(node, scripts.NETWORKING_FILE)

        node_dir = self.config.work_dir / node.name
        node_dir.mkdir(parents=True, exist_ok=True)
        (node_dir / "hardware-configuration.nix").write_text(hardware)
        (node_dir / "networking.nix").write_text(networking)

        text = _env.from_string(MODULE_TEMPLATE).render(name=node.name, system=system)
        try:
            with open(module, "x", encoding="utf-8") as f:
                f.write(text)
        except FileExistsError:
            return module

        nlog.info("generated %s (%s)", module, system)
        self._stage([module, node_dir])
        return module

    # ------------------ build ------------------

    def build(self, node: Node, *, realize: bool = True) -> str:
        """
        Ask the builder for the node's artifact: the realised system, or
        only its derivation when *realize* is False.
        """
        if not self.config.module_file(node.name).exists():
            raise NoSuchConfig(f"no module for {node.name}; run `nixiform init {node.name}` first")
        source = self.config.source
        if _is_local_source(source) and not (Path(source) / "flake.nix").is_file():
            raise NoDeployFile(f"no flake.nix in {source}")

        try:
            artifact = self.builder.build(node.name) if realize else self.builder.instantiate(node.name)
        except NixError as e:
            raise BuildFailed(f"build failed for {node.name}: {e}") from e
        node_logger(node.name).info("built %s", artifact)
        return artifact
