# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nixiform/inventory/inventory.py

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from ..core.errors import InvalidProvisioner, NoInputFile, NoSuchInstance
from ..core.models import Node, known_host

log = logging.getLogger("nixiform")

Segment = Union[str, int]


@dataclass(frozen=True)
class DocumentPath:
    """
    A typed path into a schema-opaque JSON document.

    ``DocumentPath.parse("nodes.node-1.ip")`` addresses
    ``doc["nodes"]["node-1"]["ip"]``; numeric segments index lists.
    """

    segments: Tuple[Segment, ...]

    @classmethod
    def parse(cls, text: str) -> "DocumentPath":
        if not text or text == ".":
            return cls(())
        parts: List[Segment] = []
        for raw in text.strip(".").split("."):
            parts.append(int(raw) if raw.isdigit() else raw)
        return cls(tuple(parts))

    def resolve(self, document: Any) -> Any:
        current = document
        for i, seg in enumerate(self.segments):
            try:
                current = current[seg]
            except (KeyError, IndexError, TypeError):
                where = ".".join(str(s) for s in self.segments[: i + 1])
                raise KeyError(where) from None
        return current

    def __str__(self) -> str:
        return ".".join(str(s) for s in self.segments)


def _unwrap_provisioner_output(doc: Any) -> Dict[str, Any]:
    """
    Accept either the inventory shape itself or a `terraform output -json`
    document whose single output value holds it.
    """
    if isinstance(doc, dict) and isinstance(doc.get("nodes"), dict):
        return doc
    if isinstance(doc, dict) and len(doc) == 1:
        (only,) = doc.values()
        if isinstance(only, dict) and isinstance(only.get("value"), dict):
            return _unwrap_provisioner_output(only["value"])
    raise InvalidProvisioner("input is neither an inventory document nor a provisioner output holding one")


class Inventory:
    """
    Read-only view over the inventory snapshot:
    ``{ nodes: { <name>: {ip, provider, ssh_key, ...} }, meta: {...} }``.
    """

    def __init__(self, document: Dict[str, Any]):
        self.document = _unwrap_provisioner_output(document)

    @classmethod
    def load(cls, path: Path) -> "Inventory":
        if not path.is_file():
            raise NoInputFile(f"no inventory snapshot at {path}, run `nixiform input` first")
        return cls(json.loads(path.read_text()))

    def query(self, path: Union[str, DocumentPath]) -> Any:
        if isinstance(path, str):
            path = DocumentPath.parse(path)
        return path.resolve(self.document)

    def names(self) -> List[str]:
        return sorted(self.document["nodes"])

    def node(self, name: str) -> Node:
        # names become file names under the work directory
        if not name or "/" in name or name.startswith("."):
            raise InvalidProvisioner(f"invalid node name '{name}' in the inventory")
        try:
            attrs = self.query(DocumentPath(("nodes", name)))
        except KeyError:
            raise NoSuchInstance(f"no node named '{name}' in the inventory") from None
        if not isinstance(attrs, dict) or not attrs.get("ip"):
            raise InvalidProvisioner(f"node '{name}' has no ip in the inventory")
        meta = {k: v for k, v in attrs.items() if k not in ("ip", "provider", "ssh_key")}
        return Node(
            name=name,
            ip=str(attrs["ip"]),
            provider=str(attrs.get("provider") or "generic"),
            ssh_key=attrs.get("ssh_key"),
            meta=meta,
        )

    def select(self, names: Optional[List[str]]) -> List[str]:
        """
        Requested names (all nodes when empty), duplicates dropped,
        request order kept. Unknown names surface per node later.
        """
        return list(dict.fromkeys(names)) if names else self.names()

    def known_hosts(self, port: int = 22) -> str:
        lines = []
        for name in self.names():
            attrs = self.document["nodes"][name]
            # nodes lacking an ip fail later, per node
            if isinstance(attrs, dict) and attrs.get("ip") and attrs.get("ssh_key"):
                lines.append(f"{known_host(str(attrs['ip']), port)} {attrs['ssh_key'].strip()}")
        return "\n".join(lines) + ("\n" if lines else "")

    def write(self, work_dir: Path, port: int = 22) -> Path:
        """
        Persist the snapshot and derived known_hosts under *work_dir*.
        """
        work_dir.mkdir(parents=True, exist_ok=True)
        target = work_dir / "input.json"
        target.write_text(json.dumps(self.document, indent=2, sort_keys=True) + "\n")
        (work_dir / "known_hosts").write_text(self.known_hosts(port))
        log.info("Wrote inventory for %d node(s) to %s", len(self.names()), target)
        return target
