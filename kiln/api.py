"""Entry points: plan and run requested steps.

    from kiln import api
    from kiln.config import BuildConfig

    config = BuildConfig.load("kiln.toml")
    summary = api.run([api.StepRequest("compile-std", 1)], config)
    summary.raise_for_failure()

A request names a step; host and target default to the build triple. The
plan is recomputed on every call; nothing about the graph is cached between
invocations.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from kiln.config import BuildConfig
from kiln.errors import GraphError
from kiln.executor import Executor, RunSummary
from kiln.graph import ExecutionPlan, StepGraph
from kiln.stages import StageCoordinator
from kiln.step import HOST_ONLY, Step, StepKind

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepRequest:
    kind: StepKind | str
    stage: int
    host: str | None = None
    target: str | None = None

    def to_step(self, config: BuildConfig) -> Step:
        try:
            kind = StepKind.parse(self.kind) if isinstance(self.kind, str) else self.kind
        except ValueError as e:
            raise GraphError(str(e)) from e
        host = self.host or config.build
        if kind in (StepKind.DOCS, StepKind.TEST) and host != config.build:
            raise GraphError(f"{kind.value} runs on the build triple {config.build}, not {host}")
        target = self.target or host
        if kind in HOST_ONLY and target != host:
            raise GraphError(f"{kind.value} has no separate target; got {target} for host {host}")
        try:
            return Step(kind, self.stage, host, target)
        except ValueError as e:
            raise GraphError(f"bad request {self}: {e}") from e


def _resolve(requests: Iterable[StepRequest], config: BuildConfig,
             coordinator: StageCoordinator) -> ExecutionPlan:
    roots = [r.to_step(config) for r in requests]
    return StepGraph(coordinator).resolve(*roots)


def plan(requests: Iterable[StepRequest], config: BuildConfig) -> ExecutionPlan:
    """Resolve requests into an execution plan without running anything."""
    return _resolve(requests, config, StageCoordinator(config))


def run(requests: Iterable[StepRequest], config: BuildConfig) -> RunSummary:
    """Plan, validate and execute. Graph and stage errors raise before any step runs."""
    coordinator = StageCoordinator(config)
    execution_plan = _resolve(requests, config, coordinator)
    log.info("plan: %d step(s)", len(execution_plan))
    summary = Executor(config, coordinator).run(execution_plan)
    log.info("%s", summary.describe().splitlines()[0])
    return summary
