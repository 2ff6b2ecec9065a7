"""Steps: the unit of build work.

A Step is identified by (kind, stage, host, target) and nothing else:
two requests for the same key are the same step, so a step needed by two
branches of the graph is planned and executed once.

    Step(StepKind.STD, 1, "x86_64-unknown-linux-gnu", "aarch64-unknown-linux-gnu")
    → "compile-std stage1 (x86_64-unknown-linux-gnu -> aarch64-unknown-linux-gnu)"

Kinds are a closed set. Which kinds may depend on which is fixed in
LEGAL_EDGES so every edge can be checked when the graph is built, before
anything runs.

host is the platform the step's product runs on (or, for libraries, the
toolchain root it is installed into); target is the platform the code it
produces runs on.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass


class StepKind(str, enum.Enum):
    COMPILER = "compile-compiler"
    STD = "compile-std"
    TOOL = "build-tool"
    DOCS = "generate-docs"
    TEST = "run-tests"
    ASSEMBLE = "assemble"

    @classmethod
    def parse(cls, value: str) -> StepKind:
        for kind in cls:
            if value in (kind.value, kind.name.lower()):
                return kind
        names = ", ".join(k.value for k in cls)
        raise ValueError(f"unknown step kind {value!r} (expected one of: {names})")


LEGAL_EDGES: dict[StepKind, frozenset[StepKind]] = {
    StepKind.COMPILER: frozenset({StepKind.COMPILER, StepKind.STD}),
    StepKind.STD: frozenset({StepKind.COMPILER, StepKind.STD}),
    StepKind.TOOL: frozenset({StepKind.COMPILER, StepKind.STD}),
    StepKind.DOCS: frozenset({StepKind.STD, StepKind.TOOL}),
    StepKind.TEST: frozenset({StepKind.COMPILER, StepKind.STD, StepKind.TOOL}),
    StepKind.ASSEMBLE: frozenset({StepKind.COMPILER, StepKind.STD, StepKind.TOOL}),
}

# Kinds whose product is a program running on ``host``; for these
# host and target must agree.
HOST_ONLY = frozenset({StepKind.COMPILER, StepKind.TOOL, StepKind.ASSEMBLE})


@dataclass(frozen=True, order=True)
class Step:
    kind: StepKind
    stage: int
    host: str
    target: str

    def __post_init__(self):
        if not isinstance(self.kind, StepKind):
            object.__setattr__(self, "kind", StepKind.parse(self.kind))
        if self.stage < 0:
            raise ValueError(f"stage must be >= 0, got {self.stage}")
        if self.kind in HOST_ONLY and self.host != self.target:
            raise ValueError(
                f"{self.kind.value} runs on its host: host {self.host!r} "
                f"and target {self.target!r} must match"
            )

    @property
    def slug(self) -> str:
        """File-name-safe identifier, unique within one toolchain root."""
        return f"{self.kind.value}-{self.target}"

    def to_json(self) -> dict:
        return {"kind": self.kind.value, "stage": self.stage, "host": self.host, "target": self.target}

    @classmethod
    def from_json(cls, data: dict) -> Step:
        return cls(StepKind.parse(data["kind"]), int(data["stage"]), data["host"], data["target"])

    def __str__(self) -> str:
        if self.host == self.target:
            return f"{self.kind.value} stage{self.stage} ({self.host})"
        return f"{self.kind.value} stage{self.stage} ({self.host} -> {self.target})"


def compiler(stage: int, host: str) -> Step:
    return Step(StepKind.COMPILER, stage, host, host)


def std(stage: int, host: str, target: str) -> Step:
    return Step(StepKind.STD, stage, host, target)


def tool(stage: int, host: str) -> Step:
    return Step(StepKind.TOOL, stage, host, host)


def docs(stage: int, build: str, target: str) -> Step:
    return Step(StepKind.DOCS, stage, build, target)


def test(stage: int, build: str, target: str) -> Step:
    return Step(StepKind.TEST, stage, build, target)


def assemble(stage: int, host: str) -> Step:
    return Step(StepKind.ASSEMBLE, stage, host, host)
