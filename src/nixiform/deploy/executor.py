# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import concurrent.futures
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..core.errors import NixiformError
from ..core.models import NodeResult, Outcome
from ..logging.log import node_logger
from ..observers.dispatcher import EventBus
from ..observers.events import (
    new_ctx,
    NodeStarted,
    NodeSucceeded,
    NodeFailed,
    StageSummary,
)
from ..observers.interface import Observer

log = logging.getLogger("nixiform")

# An operation receives a node name and returns a value; returning an
# Outcome reports a non-default (but non-fatal) result.
Operation = Callable[[str], Any]


@dataclass
class ExecutionReport:
    results: List[NodeResult] = field(default_factory=list)

    def by_node(self) -> Dict[str, NodeResult]:
        return {r.node: r for r in self.results}

    @property
    def worst(self) -> Outcome:
        return max((r.outcome for r in self.results), default=Outcome.SUCCESS)

    @property
    def ok(self) -> bool:
        return all(r.ok for r in self.results)

    @property
    def exit_code(self) -> int:
        """
        0 unless some node failed; then the status of the first node,
        in request order, that hit the worst outcome.
        """
        worst = self.worst
        if worst < Outcome.UNREACHABLE:
            return 0
        return next(r.exit_code for r in self.results if r.outcome == worst)

    def summary(self) -> str:
        counts: Dict[str, int] = {}
        for r in self.results:
            counts[r.outcome.label] = counts.get(r.outcome.label, 0) + 1
        return " ".join(f"{k}={v}" for k, v in sorted(counts.items()))


class ParallelExecutor:
    """
    Runs a per-node operation over many nodes on a bounded thread pool.

    A node's failure is captured in its own result and never cancels its
    siblings. Each node runs on exactly one worker at a time.
    """

    def __init__(
        self,
        jobs: int = 1,
        *,
        observers: Optional[List[Observer]] = None,
        run_id: Optional[str] = None,
    ):
        if jobs < 1:
            raise ValueError("jobs must be >= 1")
        self.jobs = jobs
        self.bus = EventBus(observers or [])
        self.run_id = run_id or str(uuid.uuid4())

    def _run_one(self, name: str, operation: Operation, stage: str) -> NodeResult:
        nlog = node_logger(name)
        self.bus.emit(NodeStarted(node=name, **new_ctx(self.run_id, stage)))
        t0 = time.time()
        try:
            value = operation(name)
        except Exception as exc:
            result = NodeResult.from_error(name, exc)
            if isinstance(exc, NixiformError):
                nlog.error("%s", exc)
            else:
                nlog.error("%s failed: %s: %s", stage, type(exc).__name__, exc)
                nlog.debug("traceback", exc_info=True)
            self.bus.emit(
                NodeFailed(
                    node=name,
                    outcome=result.outcome.label,
                    error=str(exc),
                    exit_code=result.exit_code,
                    **new_ctx(self.run_id, stage),
                )
            )
            return result

        outcome = value if isinstance(value, Outcome) else Outcome.SUCCESS
        result = NodeResult(node=name, outcome=outcome, value=value)
        self.bus.emit(
            NodeSucceeded(
                node=name,
                outcome=outcome.label,
                duration_ms=int((time.time() - t0) * 1000),
                **new_ctx(self.run_id, stage),
            )
        )
        return result

    def run(self, names: Sequence[str], operation: Operation, *, stage: str = "run") -> ExecutionReport:
        """
        Run *operation* once per distinct name; returns results in request order.
        """
        unique = list(dict.fromkeys(names))
        log.debug("[%s] %d node(s), %d worker(s)", stage, len(unique), self.jobs)

        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self.jobs, thread_name_prefix="nixiform"
        ) as pool:
            futures = {name: pool.submit(self._run_one, name, operation, stage) for name in unique}
            report = ExecutionReport([futures[name].result() for name in unique])

        self.bus.emit(
            StageSummary(
                ok=[r.node for r in report.results if r.ok],
                failed=[r.node for r in report.results if not r.ok],
                worst=report.worst.label,
                **new_ctx(self.run_id, stage),
            )
        )
        return report

    def run_stages(
        self,
        names: Sequence[str],
        stages: Sequence[Tuple[str, Operation]],
    ) -> ExecutionReport:
        """
        Run stages with a barrier between them: every node finishes a stage
        before any node starts the next. A node that fails a stage is not
        scheduled for the later ones.
        """
        unique = list(dict.fromkeys(names))
        final: Dict[str, NodeResult] = {}
        alive = unique
        for label, operation in stages:
            if not alive:
                break
            report = self.run(alive, operation, stage=label)
            for r in report.results:
                previous = final.get(r.node)
                if previous is None or r.outcome >= previous.outcome:
                    final[r.node] = r
            alive = [r.node for r in report.results if r.ok]
            log.debug("[%s] %s", label, report.summary())
        return ExecutionReport([final[n] for n in unique if n in final])
