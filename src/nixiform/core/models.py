# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nixiform/core/models.py

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .errors import NixiformError


@dataclass(frozen=True)
class Node:
    """
    Represents a server from the inventory snapshot.
    """
    name: str                     # inventory key, unique per fleet
    ip: str                       # address to connect to
    provider: str = "generic"     # provisioner tag, selects the bootstrap flavour
    ssh_key: Optional[str] = None  # host public key ("ssh-ed25519 AAAA...")
    meta: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)


@dataclass(frozen=True)
class SecretDescriptor:
    name: str
    local_path: Path
    remote_path: str
    mode: str = "0400"
    user: str = "root"
    group: str = "root"
    links: Tuple[str, ...] = ()

    @property
    def digest(self) -> str:
        return self.remote_path.rsplit("/", 1)[-1]


@dataclass(frozen=True)
class CacheSettings:
    substituters: Tuple[str, ...] = ()
    trusted_public_keys: Tuple[str, ...] = ()

    def nix_options(self) -> List[str]:
        """
        Render as `--option` pairs for nix-store / nix commands.
        """
        opts: List[str] = []
        if self.substituters:
            opts += ["--option", "extra-substituters", " ".join(self.substituters)]
        if self.trusted_public_keys:
            opts += ["--option", "extra-trusted-public-keys", " ".join(self.trusted_public_keys)]
        return opts


class Outcome(enum.IntEnum):
    """Per-node result, ordered by severity."""

    SUCCESS = 0
    PARTIAL_SERVICE_FAILURE = 1
    NEEDS_REBOOT = 2
    UNREACHABLE = 3
    FATAL = 4

    @property
    def label(self) -> str:
        return self.name.lower().replace("_", "-")


@dataclass
class SyncReport:
    kept: List[str] = field(default_factory=list)
    transferred: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    dry_run: bool = False

    @property
    def in_sync(self) -> bool:
        return not self.transferred and not self.removed


@dataclass
class NodeResult:
    node: str
    outcome: Outcome = Outcome.SUCCESS
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.outcome < Outcome.UNREACHABLE

    @property
    def exit_code(self) -> int:
        if self.ok:
            return 0
        if isinstance(self.error, NixiformError):
            return self.error.exit_code
        return 1

    @classmethod
    def from_error(cls, node: str, error: BaseException) -> "NodeResult":
        unreachable = isinstance(error, NixiformError) and error.unreachable
        return cls(
            node=node,
            outcome=Outcome.UNREACHABLE if unreachable else Outcome.FATAL,
            error=error,
        )


def known_host(ip: str, port: int = 22) -> str:
    """Host name as OpenSSH and paramiko look it up in known_hosts."""
    return ip if port == 22 else f"[{ip}]:{port}"
