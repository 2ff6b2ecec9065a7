"""On-disk layout of the staged output tree.

Everything lives under the output root (``build/`` by default):

    <out>/<host>/stage<N>/                   ToolchainRoot for (N, host)
        bin/<compiler>                       compiler built at stage N
        bin/<tool>...                        auxiliary tools
        lib/                                 compiler runtime libraries
        lib/<stdlib>/<target>/lib/           standard library for <target>
        share/doc/<target>/                  generated documentation
        manifest.json                        installed components
        .kiln/stamps/<kind>-<target>.json    fingerprint record per step
    <out>/<host>/stage<N>-<kind>/<target>/   private output dir of one step
    <out>/bootstrap-shims/                   wrapper launchers

Stage 0's root holds the standard library built by the external stage 0
compiler; the stage 0 compiler itself stays wherever configuration points.

Downstream tooling reads this layout, so it must not change between
versions: an old tree must still be readable for incremental rebuilds.
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from kiln import triple
from kiln.step import Step

MANIFEST = "manifest.json"
STAMP_DIR = ".kiln/stamps"
SHIM_DIR = "bootstrap-shims"


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON so readers see either the old or the new file, never half."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2, sort_keys=True)
            f.write("\n")
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def step_out_dir(out_root: Path, step: Step) -> Path:
    """Private output directory owned by exactly one step."""
    return out_root / step.host / f"stage{step.stage}-{step.kind.value}" / step.target


def shim_dir(out_root: Path) -> Path:
    return out_root / SHIM_DIR


def copy_tree(src: Path, dst: Path) -> list[str]:
    """Copy the contents of ``src`` into ``dst``. Returns copied relative paths."""
    copied = []
    if not src.is_dir():
        return copied
    for dirpath, dirnames, filenames in os.walk(src):
        dirnames.sort()
        rel_dir = Path(dirpath).relative_to(src)
        (dst / rel_dir).mkdir(parents=True, exist_ok=True)
        for name in sorted(filenames):
            s = Path(dirpath) / name
            d = dst / rel_dir / name
            if d.is_symlink() or d.exists():
                d.unlink()
            shutil.copy2(s, d, follow_symlinks=False)
            copied.append(str(rel_dir / name))
    return copied


def remove_files(dst: Path, files: list[str]) -> None:
    """Remove files previously copied into ``dst`` by ``copy_tree``."""
    for rel in files:
        (dst / rel).unlink(missing_ok=True)


@dataclass(frozen=True, eq=False)
class ToolchainRoot:
    """Artifact tree of one (stage, host) pair.

    Steps write their own files here without coordination; only the
    manifest is shared, and ``update_manifest`` serializes it per root.
    """

    stage: int
    host: str
    path: Path
    compiler_name: str = "compiler"
    docgen_name: str = "docgen"
    stdlib_dir: str = "stdlib"
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def bin_dir(self) -> Path:
        return self.path / "bin"

    @property
    def lib_dir(self) -> Path:
        return self.path / "lib"

    @property
    def compiler_path(self) -> Path:
        return self.bin_dir / triple.exe(self.compiler_name, self.host)

    @property
    def docgen_path(self) -> Path:
        return self.bin_dir / triple.exe(self.docgen_name, self.host)

    @property
    def manifest_path(self) -> Path:
        return self.path / MANIFEST

    def std_dir(self, target: str) -> Path:
        return self.lib_dir / self.stdlib_dir / target / "lib"

    def doc_dir(self, target: str) -> Path:
        return self.path / "share" / "doc" / target

    def stamp_path(self, step: Step) -> Path:
        return self.path / STAMP_DIR / f"{step.slug}.json"

    def ensure(self) -> ToolchainRoot:
        for d in (self.bin_dir, self.lib_dir, self.path / STAMP_DIR):
            d.mkdir(parents=True, exist_ok=True)
        return self

    # --- Manifest ---

    def read_manifest(self) -> dict:
        try:
            with open(self.manifest_path) as f:
                data = json.load(f)
        except (FileNotFoundError, json.JSONDecodeError):
            data = {}
        data.setdefault("stage", self.stage)
        data.setdefault("host", self.host)
        data.setdefault("components", {})
        data.setdefault("complete", False)
        return data

    def update_manifest(self, fn: Callable[[dict], None]) -> dict:
        """Read-modify-write the manifest under this root's lock."""
        with self.lock:
            data = self.read_manifest()
            fn(data)
            write_json_atomic(self.manifest_path, data)
            return data

    def record_component(self, step: Step, files: list[str], fingerprint: str = "") -> None:
        def add(data: dict) -> None:
            data["components"][step.slug] = {
                "step": step.to_json(),
                "files": sorted(files),
                "fingerprint": fingerprint,
            }
        self.update_manifest(add)

    def installed_files(self, step: Step) -> list[str]:
        entry = self.read_manifest()["components"].get(step.slug, {})
        return list(entry.get("files", []))

    def has_component(self, step: Step) -> bool:
        return step.slug in self.read_manifest()["components"]

    def has_compiler(self) -> bool:
        return self.compiler_path.is_file()

    def has_std(self, target: str) -> bool:
        return self.std_dir(target).is_dir()
