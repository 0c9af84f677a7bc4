# src/nixiform/cli/helper.py
from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import typer

from nixiform.config.models import NixiformConfig
from nixiform.core.errors import InvalidProvisioner, NixiformError, NoInputFile
from nixiform.core.models import Node
from nixiform.deploy.executor import ExecutionReport, ParallelExecutor
from nixiform.deploy.push import Pusher
from nixiform.inventory.inventory import Inventory
from nixiform.lifecycle.manager import InstanceLifecycle
from nixiform.nix.cli_runner import NixCliRunner
from nixiform.observers.logger import LoggerObserver
from nixiform.remote.ssh_runner import SshRunner
from nixiform.secrets.sync import SecretsSync

log = logging.getLogger("nixiform")


@dataclass
class Runtime:
    """
    Everything a command needs, wired once from the run configuration.
    """

    config: NixiformConfig
    remote: Any
    nix: Any
    lifecycle: InstanceLifecycle
    secrets: SecretsSync
    pusher: Pusher
    executor: ParallelExecutor
    _inventory: Optional[Inventory] = field(default=None, repr=False)

    @property
    def inventory(self) -> Inventory:
        if self._inventory is None:
            self._inventory = Inventory.load(self.config.input_file)
        return self._inventory

    def node(self, name: str) -> Node:
        return self.inventory.node(name)

    def names(self, requested: Optional[List[str]]) -> List[str]:
        return self.inventory.select(requested)


def build_runtime(config: NixiformConfig, run_id: Optional[str] = None) -> Runtime:
    remote = SshRunner(config)
    nix = NixCliRunner(config)
    lifecycle = InstanceLifecycle(config, remote, nix)
    return Runtime(
        config=config,
        remote=remote,
        nix=nix,
        lifecycle=lifecycle,
        secrets=SecretsSync(remote, nix),
        pusher=Pusher(remote, nix, nix, lifecycle),
        executor=ParallelExecutor(
            config.jobs,
            observers=[LoggerObserver(log)],
            run_id=run_id,
        ),
    )


def read_provisioner_output(path: str) -> Dict[str, Any]:
    """
    Load the provisioner's JSON document from a file, or stdin for "-".
    """
    if path == "-":
        raw = sys.stdin.read()
    else:
        p = Path(path)
        if not p.is_file():
            raise NoInputFile(f"no such input file: {path}")
        raw = p.read_text()
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise InvalidProvisioner(f"input is not valid JSON: {e}") from e


@contextmanager
def reported() -> Iterator[None]:
    """
    Turn a command-level NixiformError into an `Error:` line and its exit status.
    """
    try:
        yield
    except NixiformError as e:
        if log.handlers:
            log.error("%s", e)
        else:
            # logging is set up only after the config loaded
            typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(e.exit_code)


def finish(report: ExecutionReport, verb: str) -> None:
    failed = [r for r in report.results if not r.ok]
    if failed:
        log.error(
            "%s failed on %d of %d node(s): %s",
            verb, len(failed), len(report.results), ", ".join(r.node for r in failed),
        )
    else:
        log.info("%s finished on %d node(s) [%s]", verb, len(report.results), report.summary())
    raise typer.Exit(report.exit_code)
