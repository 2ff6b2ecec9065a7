"""Executor: run an execution plan.

Steps are started in plan order, each as soon as every one of its
dependencies has finished successfully, at most ``jobs`` at a time. A step
that starts:

    1. checks staleness (skips if its fingerprint still matches)
    2. removes its old fingerprint record
    3. runs its driver through the wrapper shims (or copies, if install-only)
    4. installs its artifacts into its toolchain root
    5. records its new fingerprint

A non-zero exit fails the step. With ``fail_fast`` nothing new starts after
a failure; steps already running are left to finish, never killed. Without
it, independent work carries on and everything downstream of a failure is
reported as blocked.
"""

from __future__ import annotations

import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field

from kiln.config import BuildConfig
from kiln.errors import StepFailed
from kiln.graph import ExecutionPlan
from kiln.hash import short
from kiln.process import run_invocation
from kiln.recipes import Recipes
from kiln.stages import StageCoordinator
from kiln.step import Step
from kiln.tracker import StalenessTracker

log = logging.getLogger(__name__)


@dataclass
class RunSummary:
    plan: ExecutionPlan
    executed: list[Step] = field(default_factory=list)
    skipped: list[Step] = field(default_factory=list)
    failed: list[StepFailed] = field(default_factory=list)
    blocked: list[Step] = field(default_factory=list)
    reasons: dict[Step, str] = field(default_factory=dict)
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed

    def raise_for_failure(self) -> None:
        if self.failed:
            raise self.failed[0]

    def describe(self) -> str:
        verb = "would run" if self.dry_run else "ran"
        lines = [
            f"{verb} {len(self.executed)}, up to date {len(self.skipped)}, "
            f"failed {len(self.failed)}, blocked {len(self.blocked)}"
        ]
        for step in self.executed:
            lines.append(f"  {verb}: {step} ({self.reasons.get(step, '')})")
        for f in self.failed:
            lines.append(f"  failed: {f.step} (exit code {f.returncode})")
        for step in self.blocked:
            lines.append(f"  blocked: {step}")
        return "\n".join(lines)


class Executor:
    def __init__(self, config: BuildConfig, coordinator: StageCoordinator | None = None):
        self.config = config
        self.coordinator = coordinator or StageCoordinator(config)
        self.recipes = Recipes(self.coordinator)

    def run(self, plan: ExecutionPlan) -> RunSummary:
        """Validate the stage chain, then run every stale step of ``plan``.

        Raises StageResolutionError before anything runs if a stage cannot
        be resolved, and WrapperDelegationError (after running steps
        finish) if a real tool could not be executed.
        """
        self.coordinator.validate(plan)
        tracker = StalenessTracker(self.coordinator, plan)
        if self.config.dry_run:
            return self._dry_run(plan, tracker)

        summary = RunSummary(plan)
        jobs = self.config.jobs
        pending = list(plan.steps)
        succeeded: set[Step] = set()
        rebuilt: set[Step] = set()
        broken: set[Step] = set()
        running: dict[Future, Step] = {}
        abort: BaseException | None = None
        stop = False

        with ThreadPoolExecutor(max_workers=jobs, thread_name_prefix="kiln") as pool:
            while pending or running:
                if not stop:
                    for step in list(pending):
                        if len(running) >= jobs:
                            break
                        deps = plan.dependencies(step)
                        if any(d in broken for d in deps):
                            pending.remove(step)
                            broken.add(step)
                            summary.blocked.append(step)
                            log.info("blocked %s", step)
                        elif all(d in succeeded for d in deps):
                            pending.remove(step)
                            fut = pool.submit(self._run_step, step, tracker, frozenset(rebuilt), summary)
                            running[fut] = step
                if not running:
                    break

                finished, _ = wait(running, return_when=FIRST_COMPLETED)
                for fut in finished:
                    step = running.pop(fut)
                    try:
                        ran = fut.result()
                    except StepFailed as e:
                        log.error("%s failed with exit code %d", step, e.returncode)
                        summary.failed.append(e)
                        broken.add(step)
                        stop = stop or self.config.fail_fast
                    except Exception as e:
                        broken.add(step)
                        abort = abort or e
                        stop = True
                    else:
                        succeeded.add(step)
                        if ran:
                            rebuilt.add(step)
                            summary.executed.append(step)
                        else:
                            summary.skipped.append(step)

        for step in pending:
            summary.blocked.append(step)
        if abort is not None:
            raise abort
        return summary

    def _run_step(self, step: Step, tracker: StalenessTracker, rebuilt: frozenset[Step],
                  summary: RunSummary) -> bool:
        status = tracker.check(step, rebuilt)
        if not status.stale:
            log.info("up to date: %s", step)
            return False

        log.info("running %s (%s)", step, status.reason)
        summary.reasons[step] = status.reason
        tracker.invalidate(step)

        inv = self.recipes.invocation(step)
        if inv is None:
            out_dir = self.recipes.out_dir(step)
        else:
            result = run_invocation(step, inv)
            if not result.ok:
                raise StepFailed(step, result.returncode, result.stdout, result.stderr, inv.argv)
            out_dir = inv.out_dir

        fp = status.fingerprint
        self.coordinator.install(step, out_dir, fp.id)
        tracker.record(fp)
        log.info("finished %s [%s]", step, short(fp.id))
        return True

    def _dry_run(self, plan: ExecutionPlan, tracker: StalenessTracker) -> RunSummary:
        summary = RunSummary(plan, dry_run=True)
        would_run: set[Step] = set()
        for step in plan:
            status = tracker.check(step, would_run)
            if status.stale:
                would_run.add(step)
                summary.executed.append(step)
                summary.reasons[step] = status.reason
            else:
                summary.skipped.append(step)
        return summary
