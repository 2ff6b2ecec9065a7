"""Staleness tracking.

Before a step runs, the tracker computes its current fingerprint and
compares it with the one recorded after the step's last successful run.
The first difference found is the reason the step is stale:

    no record / unreadable record      never built, or a crash mid-write
    configuration changed              a tracked setting differs
    dependency rebuilt                 a dependency ran in this invocation
    dependency changed                 a dependency's recorded identity moved
    inputs changed                     a source file is newer (or differs),
                                       or a declared input appeared or vanished

Inputs that cannot be scanned at all make the step stale with a warning.
A step whose record matches on every count is skipped. Records are written
only after the step succeeded and its artifacts were installed, and removed
before it runs, so a failed or interrupted step is always retried.
"""

from __future__ import annotations

import logging
from collections.abc import Collection
from dataclasses import dataclass
from pathlib import Path

from kiln.errors import FingerprintError
from kiln.fingerprint import Fingerprint, read_record, remove_record, write_record
from kiln.graph import ExecutionPlan
from kiln.hash import digest_json, short
from kiln.stages import StageCoordinator
from kiln.step import Step
from kiln.tree import InputState, scan

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Staleness:
    stale: bool
    reason: str
    fingerprint: Fingerprint

    def __bool__(self) -> bool:
        return self.stale


class StalenessTracker:
    def __init__(self, coordinator: StageCoordinator, plan: ExecutionPlan):
        self.coordinator = coordinator
        self.config = coordinator.config
        self.plan = plan

    def inputs(self, step: Step) -> list[Path]:
        """Declared inputs of ``step`` that exist on disk."""
        paths = []
        if self.coordinator.uses_process(step):
            src = self.config.source_path(step.kind)
            if src is not None:
                paths.append(src)
        paths += self.coordinator.external_inputs(step)
        paths += self.config.extra_inputs(step)
        return [p for p in paths if p.exists()]

    def recorded(self, step: Step) -> Fingerprint:
        return read_record(self.coordinator.stamp_path(step))

    def dependency_ids(self, step: Step) -> dict[str, str]:
        ids = {}
        for dep in self.plan.dependencies(step):
            try:
                ids[str(dep)] = self.recorded(dep).id
            except FingerprintError:
                ids[str(dep)] = ""
        return ids

    def fingerprint(self, step: Step) -> Fingerprint:
        return Fingerprint(
            step=step,
            config=digest_json(self.config.fingerprint_data(step)),
            inputs=scan(self.inputs(step), self.config.fingerprint_mode),
            deps=self.dependency_ids(step),
        )

    def unreadable(self, step: Step) -> Fingerprint:
        """Fingerprint for inputs that could not be scanned; never matches a later scan."""
        return Fingerprint(
            step=step,
            config=digest_json(self.config.fingerprint_data(step)),
            inputs=InputState(self.config.fingerprint_mode, -1, "unreadable"),
            deps=self.dependency_ids(step),
        )

    def check(self, step: Step, rebuilt: Collection[Step] = ()) -> Staleness:
        try:
            current = self.fingerprint(step)
        except FingerprintError as e:
            log.warning("%s: cannot scan inputs: %s", step, e)
            return Staleness(True, f"unreadable inputs ({e})", self.unreadable(step))

        def stale(reason: str) -> Staleness:
            log.debug("%s is stale: %s", step, reason)
            return Staleness(True, reason, current)

        try:
            old = self.recorded(step)
        except FingerprintError as e:
            if self.coordinator.stamp_path(step).exists():
                log.warning("%s: discarding fingerprint: %s", step, e)
                return stale(f"unreadable fingerprint ({e})")
            return stale("no fingerprint recorded")

        if old.step != step:
            return stale("fingerprint recorded for a different step")
        if old.config != current.config:
            return stale("configuration changed")
        for dep in self.plan.dependencies(step):
            if dep in rebuilt:
                return stale(f"dependency rebuilt: {dep}")
        for name, dep_id in current.deps.items():
            if old.deps.get(name) != dep_id:
                return stale(f"dependency changed: {name}")
        if set(old.deps) != set(current.deps):
            return stale("dependency set changed")
        if current.inputs.paths != old.inputs.paths:
            return stale("declared inputs added or removed")
        if current.inputs.mode == "content":
            if current.inputs.digest != old.inputs.digest:
                return stale("input contents changed")
        elif current.inputs.newest_ns > old.inputs.newest_ns:
            return stale("inputs changed")

        log.debug("%s is fresh (%s)", step, short(old.id))
        return Staleness(False, "up to date", old)

    def is_stale(self, step: Step, rebuilt: Collection[Step] = ()) -> bool:
        return self.check(step, rebuilt).stale

    def record(self, fp: Fingerprint) -> None:
        write_record(self.coordinator.stamp_path(fp.step), fp)
        log.debug("recorded %s as %s", fp.step, short(fp.id))

    def invalidate(self, step: Step) -> None:
        remove_record(self.coordinator.stamp_path(step))
