# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nixiform/remote/ssh_runner.py

from __future__ import annotations

import logging
import shlex
from typing import Iterable, List, Optional, Tuple

import paramiko

from ..config.models import NixiformConfig
from ..core.models import Node, known_host
from ..utils.execution import CommandRunner
from .interface import RemoteConnectionError, TransferError

log = logging.getLogger("nixiform")

TRANSFER_MODES = ("copy", "derivation")


class SshRunner:
    """
    Remote execution over paramiko, plus closure transfer through `nix copy`
    (which drives the external ssh client).

    Connection parameters are fixed for the run. A fresh connection is opened
    per call so reboots and dropped links never leave stale handles behind.
    """

    def __init__(self, config: NixiformConfig, local: Optional[CommandRunner] = None):
        self.config = config
        self.local = local or CommandRunner(label="nix-copy")

    # ------------------ connection & utils ------------------

    def _load_pkey(self):
        if not self.config.ssh_key_path:
            return None
        key_path = str(self.config.ssh_key_path)
        for key_cls in (
            paramiko.Ed25519Key,
            paramiko.RSAKey,
            paramiko.ECDSAKey,
        ):
            try:
                return key_cls.from_private_key_file(key_path)
            except paramiko.SSHException:
                continue
        raise RemoteConnectionError(f"Unsupported private key format for {key_path}")

    def _connect(self, node: Node) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        if node.ssh_key:
            # Pin the host key published by the provisioner
            host = known_host(node.ip, self.config.ssh_port)
            entry = paramiko.hostkeys.HostKeyEntry.from_line(f"{host} {node.ssh_key}")
            if entry is None:
                raise RemoteConnectionError(f"unparseable host key for {node.name}")
            client.get_host_keys().add(host, entry.key.get_name(), entry.key)
            client.set_missing_host_key_policy(paramiko.RejectPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        pkey = self._load_pkey()
        try:
            client.connect(
                hostname=node.ip,
                port=self.config.ssh_port,
                username=self.config.ssh_user,
                pkey=pkey,
                timeout=self.config.connect_timeout,
                allow_agent=True,
                look_for_keys=pkey is None,
            )
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise RemoteConnectionError(
                f"Failed to SSH into {node.ip} as '{self.config.ssh_user}': {e}"
            ) from e
        return client

    def _wrap(self, command: str) -> str:
        """
        Run through a POSIX shell; escalate with sudo for non-root logins.
        """
        if self.config.ssh_user == "root":
            return f"sh -c {shlex.quote(command)}"
        return f"sudo -n sh -c {shlex.quote(command)}"

    def _exec(self, node: Node, command: str, chunks: Iterable[bytes]) -> Tuple[int, str, str]:
        client = self._connect(node)
        try:
            log.debug("[%s] $ %s", node.name, command)
            stdin, stdout, stderr = client.exec_command(self._wrap(command))
            for chunk in chunks:
                stdin.channel.sendall(chunk)
            stdin.channel.shutdown_write()
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            rc = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            raise RemoteConnectionError(f"connection to {node.ip} lost: {e}") from e
        finally:
            client.close()
        log.debug("[%s] [exit %d]", node.name, rc)
        if err.strip():
            log.debug("[%s] [stderr] %s", node.name, err.rstrip())
        return rc, out, err

    # ------------------ public API ------------------

    def execute(self, node: Node, command: str, *, stdin: Optional[bytes] = None) -> Tuple[int, str, str]:
        return self._exec(node, command, [stdin] if stdin else [])

    def stream(self, node: Node, command: str, chunks: Iterable[bytes]) -> Tuple[int, str, str]:
        return self._exec(node, command, chunks)

    def ssh_options(self) -> List[str]:
        """
        Options handed to the external ssh client (nix copy, interactive ssh).
        """
        opts = ["-p", str(self.config.ssh_port)]
        if self.config.ssh_key_path:
            opts += ["-i", str(self.config.ssh_key_path)]
        if self.config.known_hosts_file.exists():
            opts += ["-o", f"UserKnownHostsFile={self.config.known_hosts_file}"]
        return opts + list(self.config.ssh_opts)

    def ssh_argv(self, node: Node) -> List[str]:
        return ["ssh", *self.ssh_options(), f"{self.config.ssh_user}@{node.ip}"]

    def transfer(self, node: Node, artifact: str, mode: str) -> None:
        if mode not in TRANSFER_MODES:
            raise ValueError(f"unknown transfer mode {mode!r}")
        cmd = ["nix", *self.config.nix_flags, "copy", "--to", f"ssh://{self.config.ssh_user}@{node.ip}"]
        if mode == "derivation":
            cmd.append("--derivation")
        cmd.append(artifact)

        cp = self.local.run(cmd, env={"NIX_SSHOPTS": shlex.join(self.ssh_options())})
        if cp.returncode != 0:
            raise TransferError(f"nix copy of {artifact} to {node.name} failed (rc={cp.returncode})\n{cp.stderr}")
