# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import List, Dict, Any
from datetime import datetime, timezone


@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events in a single command invocation
    stage: str        # build/check/secrets/push/...

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def new_ctx(run_id: str, stage: str) -> Dict[str, Any]:
    return {
        "ts": datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z"),
        "run_id": run_id,
        "stage": stage,
    }


# ----- Per-node lifecycle -----

@dataclass(frozen=True)
class NodeStarted(BaseEvent):
    node: str

@dataclass(frozen=True)
class NodeSucceeded(BaseEvent):
    node: str
    outcome: str
    duration_ms: int

@dataclass(frozen=True)
class NodeFailed(BaseEvent):
    node: str
    outcome: str
    error: str
    exit_code: int


# ----- Summary -----

@dataclass(frozen=True)
class StageSummary(BaseEvent):
    ok: List[str]
    failed: List[str]
    worst: str
