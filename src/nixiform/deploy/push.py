# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nixiform/deploy/push.py

from __future__ import annotations

import logging
import zlib
from pathlib import Path
from typing import IO, Iterator

from ..core.errors import (
    ActivationFailed,
    HostNotManaged,
    HostUnreachable,
    InvalidArtifact,
    RebootRequired,
    TransferFailed,
)
from ..core.models import CacheSettings, Node, Outcome
from ..lifecycle.manager import InstanceLifecycle
from ..logging.log import node_logger
from ..nix.interface import Builder, Evaluator, NixError
from ..remote import scripts
from ..remote.interface import RemoteConnectionError, RemoteRunner, TransferError

log = logging.getLogger("nixiform")

OPERATIONS = ("switch", "dry-activate")
TRANSFERS = ("remote", "local", "bundle")

SUBSTITUTERS_EXPR = "nix.settings.substituters"
TRUSTED_KEYS_EXPR = "nix.settings.trusted-public-keys"
CHUNK_SIZE = 64 * 1024


def gzip_chunks(stream: IO[bytes]) -> Iterator[bytes]:
    """Compress a byte stream into gzip framing, chunk by chunk."""
    comp = zlib.compressobj(wbits=31)
    for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
        data = comp.compress(chunk)
        if data:
            yield data
    yield comp.flush()


class Pusher:
    """
    Per-node push: transfer a built artifact, activate it and coordinate
    the reboot a new kernel needs.

    Rebooting is opt-in. A node that needs one is left on its current
    generation unless `auto_reboot` is set, and an activation is retried
    at most once after a reboot.
    """

    def __init__(
        self,
        remote: RemoteRunner,
        builder: Builder,
        evaluator: Evaluator,
        lifecycle: InstanceLifecycle,
    ):
        self.remote = remote
        self.builder = builder
        self.evaluator = evaluator
        self.lifecycle = lifecycle

    # ------------------ caches ------------------

    def cache_settings(self, node: Node) -> CacheSettings:
        substituters = self.evaluator.evaluate(node.name, SUBSTITUTERS_EXPR) or []
        keys = self.evaluator.evaluate(node.name, TRUSTED_KEYS_EXPR) or []
        return CacheSettings(tuple(substituters), tuple(keys))

    # ------------------ transfer ------------------

    def _realise_locally(self, artifact: str, caches: CacheSettings) -> str:
        if artifact.endswith(".drv"):
            return self.builder.realise(artifact, caches.nix_options())
        return artifact

    def _transfer_local(self, node: Node, artifact: str, caches: CacheSettings) -> str:
        try:
            path = self._realise_locally(artifact, caches)
            self.remote.transfer(node, path, "copy")
        except (NixError, TransferError, RemoteConnectionError) as e:
            raise TransferFailed("local", f"local-realize transfer to {node.name} failed: {e}") from e
        return path

    def _transfer_bundle(self, node: Node, artifact: str, caches: CacheSettings) -> str:
        try:
            path = self._realise_locally(artifact, caches)
            closure = self.builder.requisites(path)
            proc = self.builder.export(closure)
            try:
                rc, _, err = self.remote.stream(node, scripts.render("import_bundle"), gzip_chunks(proc.stdout))
            finally:
                proc.stdout.close()
                export_rc = proc.wait()
        except (NixError, RemoteConnectionError, OSError) as e:
            raise TransferFailed("bundle", f"bundle transfer to {node.name} failed: {e}") from e
        if export_rc != 0:
            raise TransferFailed("bundle", f"nix-store --export failed (rc={export_rc})")
        if rc != 0:
            raise TransferFailed("bundle", f"remote import on {node.name} failed (rc={rc}): {err.strip()}")
        return path

    def _transfer_remote(self, node: Node, artifact: str, caches: CacheSettings) -> str:
        try:
            if not artifact.endswith(".drv"):
                self.remote.transfer(node, artifact, "copy")
                return artifact
            self.remote.transfer(node, artifact, "derivation")
            rc, out, err = self.remote.execute(
                node, scripts.render("realise", drv=artifact, options=caches.nix_options())
            )
        except (TransferError, RemoteConnectionError) as e:
            raise TransferFailed("remote", f"remote-realize transfer to {node.name} failed: {e}") from e
        lines = out.split()
        if rc != 0 or not lines:
            raise TransferFailed("remote", f"remote realise on {node.name} failed (rc={rc}): {err.strip()}")
        return lines[-1]

    def transfer(self, node: Node, artifact: str, mode: str = "remote") -> str:
        """
        Make the artifact's closure present on the node; return the realised path.
        """
        if mode not in TRANSFERS:
            raise ValueError(f"unknown transfer mode {mode!r}")
        try:
            caches = self.cache_settings(node)
        except NixError as e:
            raise TransferFailed(mode, f"cannot resolve caches for {node.name}: {e}") from e
        handler = {
            "local": self._transfer_local,
            "bundle": self._transfer_bundle,
            "remote": self._transfer_remote,
        }[mode]
        path = handler(node, artifact, caches)
        node_logger(node.name).info("transferred %s (%s)", path, mode)
        return path

    # ------------------ activation ------------------

    def _execute(self, node: Node, command: str):
        try:
            return self.remote.execute(node, command)
        except RemoteConnectionError as e:
            raise HostUnreachable(f"{node.name}: {e}") from e

    def activate(self, node: Node, path: str, operation: str) -> Outcome:
        rc, _, err = self._execute(node, scripts.activate(path, operation))
        if rc == 0:
            return Outcome.SUCCESS
        if rc == scripts.EXIT_NEEDS_REBOOT:
            return Outcome.NEEDS_REBOOT
        if rc == scripts.EXIT_PARTIAL:
            return Outcome.PARTIAL_SERVICE_FAILURE
        if rc == scripts.EXIT_NOT_MANAGED:
            raise HostNotManaged(f"host not managed: {node.name} lost its base system marker")
        raise ActivationFailed(f"{operation} on {node.name} failed (rc={rc}): {err.strip()[-500:]}")

    def _reboot_into(self, node: Node, path: str) -> None:
        rc, _, err = self._execute(node, scripts.render("install_boot", path=path, profile=scripts.SYSTEM_PROFILE))
        if rc != 0:
            raise ActivationFailed(f"installing boot entry on {node.name} failed (rc={rc}): {err.strip()}")
        self.lifecycle.reboot(node)

    # ------------------ public API ------------------

    def push(
        self,
        node: Node,
        artifact: str,
        *,
        operation: str = "switch",
        transfer: str = "remote",
        auto_reboot: bool = False,
    ) -> Outcome:
        if operation not in OPERATIONS:
            raise ValueError(f"unknown operation {operation!r}")
        nlog = node_logger(node.name)

        if not artifact or not Path(artifact).exists():
            raise InvalidArtifact(f"invalid artifact for {node.name}: {artifact!r}")
        if not self.lifecycle.is_managed(node):
            raise HostNotManaged(f"host not managed: {node.name}; run `nixiform init {node.name}`")

        path = self.transfer(node, artifact, transfer)

        outcome = self.activate(node, path, operation)
        if outcome is Outcome.NEEDS_REBOOT:
            if operation == "dry-activate":
                nlog.warning("activating %s would require a reboot", path)
                return outcome
            if not auto_reboot:
                raise RebootRequired(
                    f"reboot required to activate {path} on {node.name}; "
                    f"active generation left unchanged (use -r to allow reboots)"
                )
            self._reboot_into(node, path)
            outcome = self.activate(node, path, operation)
            if outcome is Outcome.NEEDS_REBOOT:
                raise RebootRequired(f"{node.name} still needs a reboot after rebooting into {path}")

        if outcome is Outcome.PARTIAL_SERVICE_FAILURE:
            nlog.warning("%s finished but some services failed to start", operation)
        else:
            nlog.info("%s of %s succeeded", operation, path)
        return outcome

    def diff(self, node: Node, artifact: str, transfer: str = "remote") -> str:
        """
        Closure differences between the node's running system and *artifact*.
        """
        path = self.transfer(node, artifact, transfer)
        rc, out, err = self._execute(node, scripts.render("diff_closures", path=path))
        if rc != 0:
            raise ActivationFailed(f"diff on {node.name} failed (rc={rc}): {err.strip()}")
        return out
