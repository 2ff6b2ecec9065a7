"""Step graph: resolve a requested step into an ordered execution plan.

Dependencies are declared by a rules object, anything with a
``dependencies(step) -> list[Step]`` method. The graph asks the rules about
each step at most once and keeps the answer, so the same key always maps to
the same node, however many branches reach it:

    std(1) ─┬─> compiler(1) ─┬─> std(0)
    tool(1) ┘                 └─> (external stage 0 compiler)

    plan = [std(0), compiler(1), std(1), tool(1)]

Order is a depth-first post-order: a step comes after all of its
dependencies, and among steps with no ordering constraint the one declared
first comes first. A step met again while still being expanded is a cycle,
reported with the full chain of steps that closes it.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Protocol

from kiln.errors import CycleError, GraphError
from kiln.step import LEGAL_EDGES, Step

log = logging.getLogger(__name__)


class Rules(Protocol):
    def dependencies(self, step: Step) -> list[Step]: ...


class StaticRules:
    """Rules from an explicit adjacency mapping. Unlisted steps are leaves."""

    def __init__(self, edges: Mapping[Step, Iterable[Step]]):
        self.edges = {step: list(deps) for step, deps in edges.items()}

    def dependencies(self, step: Step) -> list[Step]:
        return list(self.edges.get(step, []))


def validate_edge(step: Step, dep: Step) -> None:
    """Reject edges the closed kind table does not allow."""
    if dep.kind not in LEGAL_EDGES[step.kind]:
        raise GraphError(f"illegal dependency: {step} may not depend on {dep.kind.value} ({dep})")
    if dep.stage > step.stage:
        raise GraphError(f"illegal dependency: {step} may not depend on later stage {dep}")


@dataclass(frozen=True, eq=False)
class ExecutionPlan:
    """Ordered, deduplicated steps for one or more requested roots."""

    roots: tuple[Step, ...]
    steps: tuple[Step, ...]
    deps: Mapping[Step, tuple[Step, ...]] = field(default_factory=dict)

    def __iter__(self) -> Iterator[Step]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    def __contains__(self, step: object) -> bool:
        return step in self.deps

    def dependencies(self, step: Step) -> tuple[Step, ...]:
        return self.deps[step]

    def describe(self) -> str:
        lines = []
        for i, s in enumerate(self.steps, 1):
            needs = ", ".join(str(self.steps.index(d) + 1) for d in self.deps[s])
            lines.append(f"{i:3d}. {s}" + (f"  [after {needs}]" if needs else ""))
        return "\n".join(lines)


class StepGraph:
    """Memoized dependency graph over a rules object."""

    def __init__(self, rules: Rules):
        self.rules = rules
        self._deps: dict[Step, tuple[Step, ...]] = {}

    def dependencies(self, step: Step) -> tuple[Step, ...]:
        """Validated, deduplicated direct dependencies of ``step``."""
        if step in self._deps:
            return self._deps[step]
        deps: list[Step] = []
        for dep in self.rules.dependencies(step):
            if dep == step:
                raise CycleError([step, step])
            validate_edge(step, dep)
            if dep not in deps:
                deps.append(dep)
        self._deps[step] = tuple(deps)
        return self._deps[step]

    def resolve(self, *roots: Step) -> ExecutionPlan:
        if not roots:
            raise GraphError("nothing requested: at least one root step is required")
        order: list[Step] = []
        done: set[Step] = set()
        for root in roots:
            self._visit(root, [], set(), done, order)
        plan = ExecutionPlan(
            roots=tuple(dict.fromkeys(roots)),
            steps=tuple(order),
            deps=MappingProxyType({s: self._deps[s] for s in order}),
        )
        log.debug("planned %d step(s) for %s", len(plan), ", ".join(map(str, plan.roots)))
        return plan

    def _visit(self, step: Step, stack: list[Step], on_stack: set[Step],
               done: set[Step], order: list[Step]) -> None:
        if step in done:
            return
        if step in on_stack:
            raise CycleError(stack[stack.index(step):] + [step])
        stack.append(step)
        on_stack.add(step)
        for dep in self.dependencies(step):
            self._visit(dep, stack, on_stack, done, order)
        stack.pop()
        on_stack.discard(step)
        done.add(step)
        order.append(step)
