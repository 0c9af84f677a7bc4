# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nixiform/secrets/sync.py

from __future__ import annotations

import gzip
import hashlib
import logging
import tarfile
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ..core.errors import SecretsPushFailed
from ..core.models import Node, SecretDescriptor, SyncReport
from ..logging.log import node_logger
from ..nix.interface import Evaluator, NixError
from ..remote import scripts
from ..remote.interface import RemoteConnectionError, RemoteRunner
from ..utils.execution import ExecutionContext

log = logging.getLogger("nixiform")

MANIFEST_EXPR = "nixiform.secrets"
FILES_DIR_EXPR = "nixiform.filesDir"
DEFAULT_FILES_DIR = "/var/lib/nixiform/secrets"
CHUNK_SIZE = 64 * 1024


def content_digest(path: Path) -> str:
    """
    sha256 over a file's bytes, or over every (relative name, content)
    pair of a directory tree in sorted order.
    """
    h = hashlib.sha256()
    if path.is_dir():
        h.update(b"dir\0")
        for f in sorted(p for p in path.rglob("*") if p.is_file()):
            h.update(f.relative_to(path).as_posix().encode() + b"\0")
            h.update(f.read_bytes())
            h.update(b"\0")
    else:
        h.update(path.read_bytes())
    return h.hexdigest()


def directory_mode(mode: int) -> int:
    """Add an execute bit for every read bit so directories stay traversable."""
    return mode | ((mode & 0o444) >> 2)


def describe(name: str, entry: Dict[str, Any], files_dir: str, base: Path) -> SecretDescriptor:
    source = entry.get("source")
    if not source:
        raise SecretsPushFailed(f"secret '{name}' has no source file")
    local = Path(source)
    if not local.is_absolute():
        local = base / local
    if not local.exists():
        raise SecretsPushFailed(f"secret '{name}': local file {local} does not exist")
    links = entry.get("links") or ()
    if isinstance(links, str):
        links = (links,)
    links = tuple(links)

    return SecretDescriptor(
        name=name,
        local_path=local,
        remote_path=f"{files_dir.rstrip('/')}/{content_digest(local)}",
        mode=str(entry.get("mode") or "0400"),
        user=str(entry.get("user") or "root"),
        group=str(entry.get("group") or "root"),
        links=links,
    )


def _normalize(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.mtime = 0
    info.uid = info.gid = 0
    info.uname = info.gname = "root"
    return info


def build_archive(staged: List[SecretDescriptor], target: Path) -> Path:
    """
    Pack staged descriptors into one gzip tar named by digest, with
    timestamps and ownership normalized so equal input gives equal bytes.
    """
    seen = set()
    with open(target, "wb") as raw:
        with gzip.GzipFile(filename="", mode="wb", fileobj=raw, mtime=0) as gz:
            with tarfile.open(fileobj=gz, mode="w", format=tarfile.PAX_FORMAT) as tar:
                for d in sorted(staged, key=lambda s: s.digest):
                    if d.digest in seen:
                        continue
                    seen.add(d.digest)
                    tar.add(str(d.local_path), arcname=d.digest, filter=_normalize)
    return target


def _chunks(path: Path) -> Iterator[bytes]:
    with open(path, "rb") as f:
        yield from iter(lambda: f.read(CHUNK_SIZE), b"")


class SecretsSync:
    """
    Makes a node's remote secrets directory match its declared manifest.

    Entries are content-addressed, so an entry already present under its
    digest is never re-sent unless forced, and a changed file lands under a
    new name instead of replacing the old one in place. Links of kept
    entries are re-pointed on every run; ownership and mode only with force.
    """

    def __init__(
        self,
        remote: RemoteRunner,
        evaluator: Evaluator,
        *,
        base_dir: Optional[Path] = None,
        staging_root: Optional[Path] = None,
    ):
        self.remote = remote
        self.evaluator = evaluator
        self.base_dir = base_dir or Path.cwd()
        self.staging_root = staging_root

    # ------------------ manifest ------------------

    def manifest(self, node: Node) -> Tuple[str, List[SecretDescriptor]]:
        try:
            files_dir = self.evaluator.evaluate(node.name, FILES_DIR_EXPR) or DEFAULT_FILES_DIR
            entries = self.evaluator.evaluate(node.name, MANIFEST_EXPR) or {}
        except NixError as e:
            raise SecretsPushFailed(f"cannot evaluate secrets of {node.name}: {e}") from e
        declared = [
            describe(name, entries[name], files_dir, self.base_dir)
            for name in sorted(entries)
        ]
        return files_dir, declared

    # ------------------ remote steps ------------------

    def _run(self, node: Node, command: str, what: str) -> str:
        try:
            rc, out, err = self.remote.execute(node, command)
        except RemoteConnectionError as e:
            raise SecretsPushFailed(f"{what} failed: {e}") from e
        if rc != 0:
            raise SecretsPushFailed(f"{what} failed (rc={rc}): {err.strip()}")
        return out

    def _list(self, node: Node, files_dir: str) -> List[str]:
        out = self._run(node, scripts.render("secrets_list", files_dir=files_dir), "listing secrets")
        return [ln.strip() for ln in out.splitlines() if ln.strip()]

    def _send(self, node: Node, staged: List[SecretDescriptor], files_dir: str) -> None:
        with tempfile.TemporaryDirectory(prefix="nixiform-secrets-", dir=self.staging_root) as staging:
            archive = build_archive(staged, Path(staging) / "secrets.tar.gz")
            command = scripts.render("secrets_receive", files_dir=files_dir)
            try:
                rc, _, err = self.remote.stream(node, command, _chunks(archive))
            except RemoteConnectionError as e:
                raise SecretsPushFailed(f"secrets transfer interrupted: {e}") from e
            if rc != 0:
                raise SecretsPushFailed(f"secrets transfer failed (rc={rc}): {err.strip()}")

    def _apply(self, node: Node, d: SecretDescriptor) -> None:
        nlog = node_logger(node.name)

        out = self._run(node, scripts.render("resolve_owner", user=d.user, group=d.group), "resolving owner")
        missing = [w for w in ("missing-user", "missing-group") if w in out]
        if missing:
            nlog.warning(
                "secret '%s': cannot resolve %s:%s on the node, ownership left unchanged",
                d.name, d.user, d.group,
            )
        else:
            self._run(node, scripts.render("secrets_chown", owner=f"{d.user}:{d.group}", path=d.remote_path), "chown")

        mode = int(d.mode, 8)
        self._run(
            node,
            scripts.render(
                "secrets_chmod",
                path=d.remote_path,
                mode=f"{mode:04o}",
                dir_mode=f"{directory_mode(mode):04o}",
            ),
            "chmod",
        )

        self._link(node, d)

    def _link(self, node: Node, d: SecretDescriptor) -> None:
        for link in d.links:
            self._run(node, scripts.render("secrets_link", link=link, target=d.remote_path), f"linking {link}")

    # ------------------ public API ------------------

    def sync(
        self,
        node: Node,
        *,
        ctx: ExecutionContext = ExecutionContext(),
        force: bool = False,
    ) -> SyncReport:
        nlog = node_logger(node.name)
        files_dir, declared = self.manifest(node)
        report = SyncReport(dry_run=ctx.dry_run)

        candidates = set(self._list(node, files_dir))
        staged: List[SecretDescriptor] = []
        kept: List[SecretDescriptor] = []
        for d in declared:
            if d.digest in candidates and not force:
                kept.append(d)
                report.kept.append(d.name)
            else:
                staged.append(d)
        removable = sorted(candidates - {d.digest for d in declared})

        if removable:
            paths = [f"{files_dir.rstrip('/')}/{entry}" for entry in removable]
            if ctx.dry_run:
                for p in paths:
                    nlog.info("would remove %s", p)
            else:
                self._run(node, scripts.render("secrets_remove", paths=paths), "removing stale secrets")
                for p in paths:
                    nlog.debug("removed %s", p)
            report.removed = removable

        # links may vanish (tmpfs, reboots) while the content stays
        if not ctx.dry_run:
            for d in kept:
                self._link(node, d)

        if staged:
            report.transferred = [d.name for d in staged]
            if ctx.dry_run:
                for d in staged:
                    nlog.info("would transfer %s -> %s", d.name, d.remote_path)
            else:
                self._send(node, staged, files_dir)
                for d in staged:
                    self._apply(node, d)
                nlog.info("transferred %d secret(s)", len(staged))

        if report.in_sync:
            nlog.info("secrets already in sync")
        return report
