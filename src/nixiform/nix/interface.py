# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nixiform/nix/interface.py

from __future__ import annotations
import subprocess
from typing import Any, List, Protocol, Sequence


class NixError(RuntimeError):
    """Base class for evaluator/builder failures."""


class EvaluationError(NixError):
    """Raised when an expression could not be evaluated."""


class BuildError(NixError):
    """Raised when a node configuration could not be instantiated or realised."""


class Evaluator(Protocol):
    def evaluate(self, node: str, expression: str) -> Any:
        """Evaluate *expression* against the node's configuration, return JSON data."""
        ...


class Builder(Protocol):
    def build(self, node: str) -> str:
        """Realise the node's system, return the output store path."""
        ...

    def instantiate(self, node: str) -> str:
        """Instantiate the node's system, return the unrealised derivation path."""
        ...

    def realise(self, drv: str, options: Sequence[str] = ()) -> str:
        ...

    def requisites(self, path: str) -> List[str]:
        ...

    def export(self, paths: Sequence[str]) -> subprocess.Popen:
        """Start a closure export whose stdout is the archive stream."""
        ...
