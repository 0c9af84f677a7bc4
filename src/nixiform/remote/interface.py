# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nixiform/remote/interface.py

from __future__ import annotations
from typing import Iterable, Optional, Protocol, Tuple

from ..core.models import Node


class RemoteConnectionError(RuntimeError):
    """The secure channel to a node could not be opened or broke mid-command."""


class RemoteRunner(Protocol):
    """
    Contract for running commands on, and moving artifacts to, one node.
    Implementations never retry; retry policy belongs to the caller.
    """

    def execute(self, node: Node, command: str, *, stdin: Optional[bytes] = None) -> Tuple[int, str, str]:
        """
        Run *command* on *node*, return (exit_status, stdout, stderr).
        A non-zero status is returned, not raised.
        """
        ...

    def stream(self, node: Node, command: str, chunks: Iterable[bytes]) -> Tuple[int, str, str]:
        """
        Run *command* with *chunks* fed to its stdin in one operation.
        """
        ...

    def transfer(self, node: Node, artifact: str, mode: str) -> None:
        """
        Copy a store path closure (mode "copy") or only the derivation
        closure (mode "derivation") to *node*. Raises on failure.
        """
        ...


class TransferError(RuntimeError):
    """Copying an artifact closure to a node failed."""
