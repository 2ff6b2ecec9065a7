"""Error taxonomy for the orchestrator.

Graph and stage errors are raised before any process is spawned. A failed
step is reported with its identity and the wrapped process's output. A
wrapper that cannot reach its real binary is an environment problem, kept
apart from an ordinary compile failure.

    KilnError
      ├── ConfigError
      ├── GraphError
      │     └── CycleError
      ├── StageResolutionError
      ├── FingerprintError        (absorbed by the tracker → "stale")
      ├── StepFailed
      └── WrapperDelegationError
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from kiln.step import Step


class KilnError(Exception):
    pass


class ConfigError(KilnError):
    pass


class GraphError(KilnError):
    pass


class CycleError(GraphError):
    """A dependency cycle. ``cycle`` lists the steps, first step repeated last."""

    def __init__(self, cycle: list[Step]):
        self.cycle = cycle
        chain = " -> ".join(str(s) for s in cycle)
        super().__init__(f"dependency cycle detected: {chain}")


class StageResolutionError(KilnError):
    def __init__(self, message: str, step: Step | None = None, stage: int | None = None):
        self.step = step
        self.stage = stage
        if step is not None:
            message = f"{message} (while resolving {step})"
        super().__init__(message)


class FingerprintError(KilnError):
    pass


class StepFailed(KilnError):
    """A step's external process exited non-zero.

    The exit code is the wrapped process's own code, never remapped.
    """

    def __init__(self, step: Step, returncode: int, stdout: str = "", stderr: str = "",
                 command: list[str] | None = None):
        self.step = step
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.command = command or []
        super().__init__(f"step failed: {step} (exit code {returncode})")


class WrapperDelegationError(KilnError):
    """The real tool behind a step or wrapper could not be located or executed."""

    def __init__(self, message: str, step: Step | None = None, program: str | None = None):
        self.step = step
        self.program = program
        if step is not None:
            message = f"{message} (in {step})"
        super().__init__(message)
