"""Spawning a step's driver process."""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass

from kiln.errors import WrapperDelegationError
from kiln.recipes import Invocation
from kiln.step import Step
from kiln.wrappers.base import DELEGATION_EXIT, DELEGATION_SENTINEL

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def delegation_failure(stderr: str) -> str | None:
    """The wrapper's delegation message in ``stderr``, if there is one."""
    for line in stderr.splitlines():
        if line.startswith(DELEGATION_SENTINEL):
            return line[len(DELEGATION_SENTINEL):].strip()
    return None


def run_invocation(step: Step, inv: Invocation) -> ProcessResult:
    """Run the driver to completion in a fresh out dir. No timeout: a build takes what it takes."""
    if inv.out_dir.exists():
        shutil.rmtree(inv.out_dir)
    inv.out_dir.mkdir(parents=True)
    log.debug("%s: %s", step, inv)
    try:
        result = subprocess.run(
            inv.argv,
            cwd=str(inv.cwd),
            env=inv.env,
            capture_output=True,
            text=True,
            errors="replace",
        )
    except OSError as e:
        raise WrapperDelegationError(
            f"cannot execute driver {inv.argv[0]!r}: {e}", step=step, program=inv.argv[0]) from e

    if result.returncode == DELEGATION_EXIT:
        message = delegation_failure(result.stderr)
        if message is not None:
            raise WrapperDelegationError(message, step=step)
    return ProcessResult(result.returncode, result.stdout, result.stderr)
