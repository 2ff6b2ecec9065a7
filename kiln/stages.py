"""Stage coordinator: the bootstrap chain.

Stage 0 is a compiler someone else built. Every later stage is built by the
one before it:

    stage0 compiler (external) ──builds──> std(0)
    stage0 compiler + std(0)   ──builds──> compiler(1)
    compiler(1)                ──builds──> std(1)
    compiler(1) + std(1)       ──builds──> compiler(2)
    ...

A compiler always runs on the build machine when it is used, so the
compiler that builds anything at stage N is compiler(N, build); for
compiler(N) itself, compiler(N-1, build). Cross compilation follows:

  - std(N) for another target needs compiler(N, build) and nothing else; the
    compiler is not rebuilt for it.
  - compiler(N) for another host is compiled by compiler(N-1, build) against
    std(N-1, build, that host).
  - std(N) installed into another host's root is a copy of std(N, build).

Each (stage, host) pair has one ToolchainRoot. The coordinator hands out
these roots, decides which compiler and sysroot each step uses, checks the
whole chain is resolvable before anything runs, and installs finished
artifacts into the roots.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path

from kiln import step as steps
from kiln import triple
from kiln.config import BuildConfig
from kiln.errors import GraphError, StageResolutionError, StepFailed
from kiln.graph import ExecutionPlan
from kiln.layout import ToolchainRoot, copy_tree, remove_files
from kiln.step import Step, StepKind

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompilerRef:
    """The compiler a step runs, and the sysroot it runs against."""

    stage: int
    path: Path
    sysroot: ToolchainRoot
    libdir: Path
    external: bool = False

    def __str__(self) -> str:
        origin = "external" if self.external else "built"
        return f"stage{self.stage} compiler ({origin}: {self.path})"


class StageCoordinator:
    def __init__(self, config: BuildConfig):
        self.config = config
        self.build = config.build
        self.out_root = config.out_root
        self._roots: dict[tuple[int, str], ToolchainRoot] = {}
        self._roots_lock = threading.Lock()
        self._kept: dict[Step, list[Step]] = {}

    # --- Roots ---

    def root(self, stage: int, host: str) -> ToolchainRoot:
        """The one ToolchainRoot for (stage, host); same object on every call."""
        key = (stage, host)
        with self._roots_lock:
            if key not in self._roots:
                tc = self.config.toolchain
                self._roots[key] = ToolchainRoot(
                    stage=stage,
                    host=host,
                    path=self.out_root / host / f"stage{stage}",
                    compiler_name=tc.compiler_name,
                    docgen_name=tc.docgen_name,
                    stdlib_dir=tc.stdlib_dir,
                )
            return self._roots[key]

    def root_of(self, step: Step) -> ToolchainRoot:
        """The root a step installs into and keeps its fingerprint in."""
        return self.root(step.stage, step.host)

    def stamp_path(self, step: Step) -> Path:
        return self.root_of(step).stamp_path(step)

    # --- Dependency rules ---

    def uplifted_from(self, step: Step) -> Step | None:
        """The step whose artifacts ``step`` copies instead of compiling.

        A std for a non-build host is always a copy of the build host's.
        Without a full bootstrap, std at stage 2 and up is the stage 1 std
        carried forward.
        """
        if step.kind is not StepKind.STD:
            return None
        if step.host != self.build:
            return steps.std(step.stage, self.build, step.target)
        if not self.config.full_bootstrap and step.stage >= 2:
            return steps.std(1, self.build, step.target)
        return None

    def dependencies(self, step: Step) -> list[Step]:
        deps = self._rules(step)
        kept = [d for d in deps if self._is_kept(d)]
        if kept:
            self._kept[step] = kept
            log.debug("%s: using kept %s", step, ", ".join(map(str, kept)))
        return [d for d in deps if not self._is_kept(d)]

    def _is_kept(self, step: Step) -> bool:
        return (
            self.config.is_kept(step.stage)
            and step.kind in (StepKind.COMPILER, StepKind.STD, StepKind.TOOL)
        )

    def _rules(self, step: Step) -> list[Step]:
        n, build = step.stage, self.build

        if step.kind in (StepKind.DOCS, StepKind.TEST) and step.host != build:
            raise GraphError(f"{step}: {step.kind.value} runs on the build platform {build}")

        if step.kind is StepKind.COMPILER:
            if n == 0:
                raise StageResolutionError(
                    "the stage 0 compiler is supplied externally and cannot be built", step=step)
            deps = [steps.std(n - 1, build, step.host)]
            if n - 1 >= 1:
                deps.append(steps.compiler(n - 1, build))
            return deps

        if step.kind is StepKind.STD:
            source = self.uplifted_from(step)
            if source is not None:
                return [source]
            return [steps.compiler(n, build)] if n >= 1 else []

        if step.kind is StepKind.TOOL:
            if n == 0:
                raise StageResolutionError(
                    "stage 0 tools are supplied externally and cannot be built", step=step)
            return [steps.compiler(n, build), steps.std(n, build, step.host)]

        if step.kind is StepKind.DOCS:
            deps = [steps.std(n, build, step.target)]
            if n >= 1:
                deps.append(steps.tool(n, build))
            return deps

        if step.kind is StepKind.TEST:
            deps = [steps.std(n, build, step.target)]
            if n >= 1:
                deps += [steps.compiler(n, build), steps.tool(n, build)]
            return deps

        if step.kind is StepKind.ASSEMBLE:
            if n == 0:
                raise StageResolutionError(
                    "stage 0 is supplied externally and cannot be assembled", step=step)
            deps = [steps.compiler(n, step.host), steps.std(n, step.host, step.host)]
            if self.config.tools:
                deps.append(steps.tool(n, step.host))
            return deps

        raise GraphError(f"no rules for step kind {step.kind!r}")

    # --- Compiler resolution ---

    def compiler_stage(self, step: Step) -> int:
        """Stage of the compiler that does ``step``'s work."""
        return step.stage - 1 if step.kind is StepKind.COMPILER else step.stage

    def compiler_for(self, step: Step) -> CompilerRef:
        """Resolve the compiler binary and sysroot ``step`` builds with."""
        stage = self.compiler_stage(step)
        sysroot = self.root(stage, self.build)
        if stage == 0:
            path = self.stage0_compiler(step)
            return CompilerRef(0, path, sysroot, path.parent.parent / "lib", external=True)
        return CompilerRef(stage, sysroot.compiler_path, sysroot, sysroot.lib_dir)

    def docgen_for(self, step: Step) -> Path | None:
        if step.kind is not StepKind.DOCS:
            return None
        if step.stage == 0:
            docgen = self.config.stage0.docgen
            if docgen is None:
                raise StageResolutionError(
                    "no stage 0 documentation generator configured (stage0.docgen)", step=step)
            return Path(docgen)
        return self.root(step.stage, self.build).docgen_path

    def stage0_compiler(self, step: Step | None = None) -> Path:
        path = self.config.stage0.compiler
        if path is None:
            raise StageResolutionError(
                "no stage 0 compiler configured (stage0.compiler)", step=step, stage=0)
        return Path(path)

    def uses_process(self, step: Step) -> bool:
        return step.kind is not StepKind.ASSEMBLE and self.uplifted_from(step) is None

    def external_inputs(self, step: Step) -> list[Path]:
        """Externally supplied binaries a step's output depends on."""
        if not self.uses_process(step):
            return []
        out = []
        if self.compiler_stage(step) == 0:
            out.append(self.stage0_compiler(step))
        if step.kind is StepKind.DOCS and step.stage == 0:
            out.append(self.docgen_for(step))
        return out

    # --- Validation ---

    def validate(self, plan: ExecutionPlan) -> None:
        """Check every stage the plan relies on can be resolved.

        Runs before any step. A stage is resolvable if it is external and
        configured (stage 0), built by this plan, or kept and present on
        disk.
        """
        for step in plan:
            if step.kind is StepKind.COMPILER and step.stage >= 2:
                prev = steps.compiler(step.stage - 1, self.build)
                if prev not in plan.dependencies(step) and not self.config.is_kept(prev.stage):
                    raise StageResolutionError(
                        f"broken stage chain: {step} does not depend on {prev}", step=step)

            for kept in self._kept.get(step, []):
                self._check_present(kept, step)

            if not self.uses_process(step):
                continue
            stage = self.compiler_stage(step)
            if stage == 0:
                self._check_stage0(step)
            else:
                needed = steps.compiler(stage, self.build)
                if needed not in plan and not (
                    self.config.is_kept(stage) and self.root(stage, self.build).has_compiler()
                ):
                    raise StageResolutionError(
                        f"stage {stage} compiler is not available: not built by this plan "
                        f"and not present at {self.root(stage, self.build).compiler_path}",
                        step=step, stage=stage,
                    )

    def _check_stage0(self, step: Step) -> None:
        path = self.stage0_compiler(step)
        if not path.is_file():
            raise StageResolutionError(
                f"stage 0 compiler not found at {path}", step=step, stage=0)
        docgen = self.docgen_for(step)
        if step.kind is StepKind.DOCS and step.stage == 0 and not docgen.is_file():
            raise StageResolutionError(
                f"stage 0 documentation generator not found at {docgen}", step=step, stage=0)

    def _check_present(self, kept: Step, needed_by: Step) -> None:
        root = self.root_of(kept)
        if kept.kind is StepKind.COMPILER:
            present = root.has_compiler()
        elif kept.kind is StepKind.STD:
            present = root.has_std(kept.target)
        else:
            present = root.has_component(kept)
        if not present:
            raise StageResolutionError(
                f"stage {kept.stage} is kept but {kept} has no artifacts under {root.path}",
                step=needed_by, stage=kept.stage,
            )

    # --- Installation ---

    def install(self, step: Step, out_dir: Path, fingerprint: str = "") -> list[str]:
        """Move a finished step's artifacts into its toolchain root."""
        root = self.root_of(step).ensure()

        if step.kind is StepKind.TEST:
            return []
        if step.kind is StepKind.ASSEMBLE:
            self._assemble(step, root)
            return []

        source = self.uplifted_from(step)
        if source is not None:
            out_dir = self.root_of(source).std_dir(step.target)
        dest = self._destination(step, root)
        # drop what the previous run of this step installed
        remove_files(dest, root.installed_files(step))
        files = copy_tree(out_dir, dest)
        if source is not None:
            log.info("uplifted %s from %s (%d file(s))", step, source, len(files))
        root.record_component(step, files, fingerprint)
        return files

    def _destination(self, step: Step, root: ToolchainRoot) -> Path:
        if step.kind is StepKind.COMPILER or step.kind is StepKind.TOOL:
            return root.path
        if step.kind is StepKind.STD:
            return root.std_dir(step.target)
        if step.kind is StepKind.DOCS:
            return root.doc_dir(step.target)
        raise GraphError(f"cannot install step kind {step.kind!r}")

    def _assemble(self, step: Step, root: ToolchainRoot) -> None:
        missing = []
        if not root.has_compiler():
            missing.append(str(root.compiler_path))
        if not root.has_std(step.host):
            missing.append(str(root.std_dir(step.host)))
        for name in self.config.tools:
            path = root.bin_dir / triple.exe(name, step.host)
            if not path.is_file():
                missing.append(f"tool {name} ({path})")
        if missing:
            raise StepFailed(step, 1, stderr="incomplete toolchain root, missing: " + ", ".join(missing))

        def complete(data: dict) -> None:
            data["complete"] = True
            data["assembled"] = sorted(data["components"])
        root.update_manifest(complete)
        log.info("assembled %s at %s", step, root.path)
