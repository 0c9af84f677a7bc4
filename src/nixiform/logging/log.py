# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

#src/nixiform/logging/log.py

from __future__ import annotations

import logging
from pathlib import Path
from datetime import datetime, timezone
import uuid


def init_logging(
    *,
    base_dir: Path | None = None,
    name: str = "nixiform",
    verbose: bool = False,
) -> tuple[logging.Logger, str, Path]:
    """
    Initializes:
      - human readable log file (set -x style)
      - returns run_id so observers can reuse it
    """
    run_id = str(uuid.uuid4())

    if base_dir is None:
        base_dir = Path.home() / ".nixiform" / "logs"
    base_dir.mkdir(parents=True, exist_ok=True)

    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    log_path = base_dir / f"{name}-{ts}-{run_id}.log"

    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()
    logger.propagate = False

    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)-7s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # File = FULL TRACE
    fh = logging.FileHandler(log_path)
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(formatter)

    # Console = INFO by default, DEBUG when --debug is passed
    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG if verbose else logging.INFO)
    ch.setFormatter(ConsoleFormatter())

    logger.addHandler(fh)
    logger.addHandler(ch)

    logger.debug("=== nixiform run started ===")
    logger.debug(f"run_id={run_id}")
    logger.debug(f"log_file={log_path}")

    return logger, run_id, log_path


class ConsoleFormatter(logging.Formatter):
    """
    Console lines read `Info: ...`, `Warning: ...`, `Error: ...`.
    """

    LABELS = {
        logging.DEBUG: "Debug",
        logging.INFO: "Info",
        logging.WARNING: "Warning",
        logging.ERROR: "Error",
        logging.CRITICAL: "Error",
    }

    def format(self, record: logging.LogRecord) -> str:
        label = self.LABELS.get(record.levelno, record.levelname.title())
        return f"{label}: {record.getMessage()}"


class NodeLogger(logging.LoggerAdapter):
    """
    Tags every message with the node it belongs to, so interleaved
    output from parallel workers stays attributable.
    """

    def __init__(self, logger: logging.Logger, node: str):
        super().__init__(logger, {"node": node})

    def process(self, msg, kwargs):
        return f"[{self.extra['node']}] {msg}", kwargs


def node_logger(node: str) -> NodeLogger:
    return NodeLogger(logging.getLogger("nixiform"), node)
