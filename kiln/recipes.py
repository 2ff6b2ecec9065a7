"""Driver invocations: what process a step runs, with which environment.

A step's driver is a command template from configuration:

    ["{wrapper:compiler}", "{src}", "--out-dir", "{out}", "-j{jobs}"]

Placeholders:

    {src} {out}               the step's source tree and private output dir
    {stage} {host} {target}   the step key
    {build} {jobs}            build triple, parallelism
    {opt_level} {sysroot}     tracked settings, compiler sysroot
    {compiler} {docgen}       the real binaries the wrappers delegate to
    {compiler_name}           configured compiler file name
    {tools}                   configured tool names, comma-separated
    {wrapper:<variant>}       path of the shim launching that wrapper

The environment starts from the orchestrator's own, adds ``config.env``,
the ``KILN_*`` variables the wrappers read, and the wrapper variables
(``CC``, ``COMPILER``, ...) pointing at shims, much like mkDerivation laying
its standard variables under the package's own.
"""

from __future__ import annotations

import os
import shlex
import stat
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path

import kiln
from kiln.errors import ConfigError
from kiln.layout import shim_dir, step_out_dir
from kiln.stages import StageCoordinator
from kiln.step import Step, StepKind
from kiln.wrappers import VARIANTS

SHIM_TEMPLATE = """\
#!{python}
import sys
sys.path.insert(0, {path!r})
from kiln.wrappers import main
sys.exit(main({variant!r}, sys.argv[1:]))
"""


@dataclass(frozen=True)
class Invocation:
    argv: list[str]
    env: dict[str, str] = field(repr=False)
    cwd: Path
    out_dir: Path

    def __str__(self) -> str:
        return shlex.join(self.argv)


class _Shims:
    """Formats ``{wrapper:<variant>}`` as the shim path for that variant."""

    def __init__(self, paths: dict[str, Path]):
        self.paths = paths

    def __format__(self, variant: str) -> str:
        if variant not in self.paths:
            raise ConfigError(f"unknown wrapper variant in driver template: {variant!r}")
        return str(self.paths[variant])


class Recipes:
    def __init__(self, coordinator: StageCoordinator):
        self.coordinator = coordinator
        self.config = coordinator.config
        self._shims: dict[str, Path] | None = None
        self._lock = threading.Lock()

    def shims(self) -> dict[str, Path]:
        """Write one launcher script per wrapper variant, once per run."""
        with self._lock:
            if self._shims is None:
                d = shim_dir(self.config.out_root)
                d.mkdir(parents=True, exist_ok=True)
                package_parent = str(Path(kiln.__file__).resolve().parent.parent)
                paths = {}
                for variant in sorted(VARIANTS):
                    path = d / variant
                    path.write_text(SHIM_TEMPLATE.format(
                        python=sys.executable, path=package_parent, variant=variant))
                    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
                    paths[variant] = path
                self._shims = paths
            return self._shims

    def out_dir(self, step: Step) -> Path:
        return step_out_dir(self.config.out_root, step)

    def environment(self, step: Step) -> dict[str, str]:
        cfg = self.config
        ref = self.coordinator.compiler_for(step)
        base = dict(os.environ)
        real_cc = cfg.stage0.cc or base.get("KILN_REAL_CC") or base.get("CC") or "cc"

        env = dict(base)
        env.update(cfg.env)
        env.update({
            "KILN_STEP": str(step),
            "KILN_STAGE": str(ref.stage),
            "KILN_HOST": step.host,
            "KILN_TARGET": step.target,
            "KILN_BUILD": cfg.build,
            "KILN_OUT": str(self.out_dir(step)),
            "KILN_SRC": str(cfg.source_path(step.kind) or cfg.source_root),
            "KILN_JOBS": str(cfg.jobs),
            "KILN_VERBOSE": str(cfg.verbose),
            "KILN_OPT_LEVEL": cfg.opt_level,
            "KILN_DEBUG_ASSERTIONS": "1" if cfg.debug_assertions else "0",
            "KILN_FEATURES": " ".join(cfg.features),
            "KILN_FLAGS": shlex.join(cfg.stage_flags(step.stage)),
            "KILN_REAL_COMPILER": str(ref.path),
            "KILN_SYSROOT": str(ref.sysroot.path),
            "KILN_LIBDIR": str(ref.libdir),
            "KILN_REAL_CC": real_cc,
        })
        docgen = self.coordinator.docgen_for(step)
        if docgen is not None:
            env["KILN_REAL_DOCGEN"] = str(docgen)
        if cfg.stage0.backend_config:
            env["KILN_REAL_BACKEND_CONFIG"] = cfg.stage0.backend_config
        if cfg.cache.program:
            env["KILN_CACHE"] = cfg.cache.program
        if cfg.cache.endpoint:
            env["KILN_CACHE_ENDPOINT"] = cfg.cache.endpoint

        shims = self.shims()
        for var, variant in cfg.wrapper_env.items():
            env[var] = str(shims[variant])
        return env

    def invocation(self, step: Step) -> Invocation | None:
        """The process to run for ``step``; None for install-only steps."""
        if not self.coordinator.uses_process(step):
            return None
        cfg = self.config
        ref = self.coordinator.compiler_for(step)
        out = self.out_dir(step)
        src = cfg.source_path(step.kind) or cfg.source_root
        docgen = self.coordinator.docgen_for(step)
        values = {
            "src": src,
            "out": out,
            "stage": step.stage,
            "host": step.host,
            "target": step.target,
            "build": cfg.build,
            "jobs": cfg.jobs,
            "opt_level": cfg.opt_level,
            "sysroot": ref.sysroot.path,
            "compiler": ref.path,
            "docgen": docgen or "",
            "compiler_name": cfg.toolchain.compiler_name,
            "tools": ",".join(cfg.tools) if step.kind is StepKind.TOOL else "",
            "wrapper": _Shims(self.shims()),
        }
        argv = []
        for arg in cfg.driver(step.kind):
            try:
                argv.append(arg.format_map(values))
            except (KeyError, IndexError, ValueError) as e:
                raise ConfigError(f"bad driver template {arg!r} for {step.kind.value}: {e}") from e
        return Invocation(argv=argv, env=self.environment(step), cwd=cfg.source_root, out_dir=out)
