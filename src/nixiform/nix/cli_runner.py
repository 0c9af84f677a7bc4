# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nixiform/nix/cli_runner.py

from __future__ import annotations

import json
import subprocess
from typing import Any, List, Optional, Sequence, Type

from ..config.models import NixiformConfig
from ..utils.execution import CommandRunner
from .interface import BuildError, EvaluationError, NixError


class NixCliRunner:
    """
    A pragmatic wrapper around the `nix` / `nix-store` CLIs.
    - Node configurations live at ``<source>#nixiform.nodes."<name>"``.
    - Testable by mocking subprocess.run.
    """

    def __init__(self, config: NixiformConfig, runner: Optional[CommandRunner] = None):
        self.config = config
        self.runner = runner or CommandRunner(label="nix")

    # ------------------------- internal helpers -------------------------

    def _attr(self, node: str, suffix: str) -> str:
        return f'{self.config.source}#nixiform.nodes."{node}".{suffix}'

    def _run(self, argv: List[str], error: Type[NixError] = NixError) -> subprocess.CompletedProcess:
        cp = self.runner.run(argv)
        if cp.returncode != 0:
            stderr = (cp.stderr or "").strip()
            raise error(f"{argv[0]} failed (rc={cp.returncode}) for {' '.join(argv[1:])}\n{stderr}")
        return cp

    def _nix(self, *args: str) -> List[str]:
        return ["nix", *self.config.nix_flags, *args]

    # ------------------------- Evaluator -------------------------

    def evaluate(self, node: str, expression: str) -> Any:
        argv = self._nix("eval", "--json", self._attr(node, f"config.{expression}"))
        cp = self._run(argv, EvaluationError)
        try:
            return json.loads(cp.stdout)
        except json.JSONDecodeError as e:
            raise EvaluationError(f"nix eval returned invalid JSON for {expression}") from e

    # ------------------------- Builder -------------------------

    def instantiate(self, node: str) -> str:
        argv = self._nix("eval", "--raw", self._attr(node, "config.system.build.toplevel.drvPath"))
        return self._run(argv, BuildError).stdout.strip()

    def build(self, node: str) -> str:
        argv = self._nix(
            "build", "--no-link", "--print-out-paths",
            self._attr(node, "config.system.build.toplevel"),
        )
        lines = self._run(argv, BuildError).stdout.split()
        if not lines:
            raise BuildError(f"nix build printed no output path for {node}")
        return lines[-1]

    def realise(self, drv: str, options: Sequence[str] = ()) -> str:
        argv = ["nix-store", "--realise", drv, *options]
        lines = self._run(argv, BuildError).stdout.split()
        if not lines:
            raise BuildError(f"nix-store printed no output path for {drv}")
        return lines[-1]

    def requisites(self, path: str) -> List[str]:
        argv = ["nix-store", "--query", "--requisites", path]
        return self._run(argv).stdout.split()

    def export(self, paths: Sequence[str]) -> subprocess.Popen:
        """Start `nix-store --export`; the caller consumes its stdout."""
        return self.runner.popen(["nix-store", "--export", *paths])
