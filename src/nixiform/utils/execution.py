# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nixiform/utils/execution.py

from __future__ import annotations

import logging
import os
import subprocess
import time
from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence, Union

Cmd = Sequence[Union[str, "os.PathLike[str]"]]

log = logging.getLogger("nixiform")


@dataclass(frozen=True)
class ExecutionContext:
    """
    controls how commands are executed
    """

    dry_run: bool = False


@dataclass
class CommandRunner:
    """
    Runs local commands (nix, git, ssh) with logged output.
    """

    label: str = "cmd"
    env: Mapping[str, str] = field(default_factory=dict)
    logger: Union[logging.Logger, logging.LoggerAdapter] = log

    def _env(self, extra: Optional[Mapping[str, str]]) -> Optional[dict]:
        if not self.env and not extra:
            return None
        merged = dict(os.environ)
        merged.update(self.env)
        merged.update(extra or {})
        return merged

    def run(
        self,
        cmd: Cmd,
        *,
        check: bool = False,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        input: str | None = None,
    ) -> subprocess.CompletedProcess:
        label = self.label
        cmd_str = " ".join(map(str, cmd))

        # --- Log command ---
        self.logger.debug(f"[{label}] $ {cmd_str}")

        start = time.time()

        try:
            result = subprocess.run(
                [str(c) for c in cmd],
                capture_output=True,
                check=check,
                text=True,
                cwd=cwd,
                env=self._env(env),
                input=input,
            )
        except subprocess.CalledProcessError as e:
            self.logger.debug(f"[{label}][exit {e.returncode}]")
            if e.stderr:
                self.logger.debug(f"[{label}][stderr]\n{e.stderr.rstrip()}")
            raise

        duration = time.time() - start

        # --- Log outputs ---
        if result.stdout:
            self.logger.debug(f"[{label}][stdout]\n{result.stdout.rstrip()}")
        if result.stderr:
            self.logger.debug(f"[{label}][stderr]\n{result.stderr.rstrip()}")
        self.logger.debug(f"[{label}][exit {result.returncode}] ({duration:.2f}s)")

        return result

    def popen(self, cmd: Cmd, *, env: Mapping[str, str] | None = None) -> subprocess.Popen:
        """
        Start a command whose binary stdout is consumed by the caller.
        """
        self.logger.debug(f"[{self.label}] $ {' '.join(map(str, cmd))} |")
        return subprocess.Popen(
            [str(c) for c in cmd],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=self._env(env),
        )
