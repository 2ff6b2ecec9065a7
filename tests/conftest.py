"""Shared fixtures: a throwaway source tree and a fake stage 0 toolchain.

The fake compiler is a Python script. It logs each call, then writes an
output shaped like the step asked for: a compiler binary (a copy of itself,
so the stage 1 compiler works the same way), a tool binary, or a marker
file. Setting FAKE_FAIL to a step prefix makes that step exit 3.
"""

import json
import os
import sys
from dataclasses import dataclass
from pathlib import Path

import pytest

from kiln.config import BuildConfig

BUILD = "x86_64-unknown-linux-gnu"
CROSS = "aarch64-unknown-linux-gnu"

FAKE_COMPILER = """\
#!{python}
import json, os, shutil, sys
from pathlib import Path

args = sys.argv[1:]
step = os.environ.get("KILN_STEP", "")
log = os.environ.get("FAKE_LOG")
if log:
    with open(log, "a") as f:
        f.write(json.dumps({{"step": step, "args": args}}) + "\\n")
if "--version" in args:
    print("fake-compiler 1.0")
    sys.exit(0)
fail = os.environ.get("FAKE_FAIL")
if fail and step.startswith(fail):
    print("boom: " + step, file=sys.stderr)
    sys.exit(3)
out = Path(args[args.index("--out-dir") + 1])
kind = step.split()[0]
if kind == "compile-compiler":
    (out / "bin").mkdir(parents=True, exist_ok=True)
    shutil.copy(sys.argv[0], out / "bin" / "compiler")
elif kind == "build-tool":
    (out / "bin").mkdir(parents=True, exist_ok=True)
    shutil.copy(sys.argv[0], out / "bin" / "docgen")
else:
    out.mkdir(parents=True, exist_ok=True)
    (out / (kind + ".out")).write_text(step + "\\n")
"""


def write_script(path, text):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    path.chmod(0o755)
    return path


@dataclass
class FakeTree:
    root: Path
    src: Path
    out: Path
    stage0: Path
    log: Path

    def config(self, **overrides):
        settings = {
            "build": BUILD,
            "src_dir": self.src,
            "out_dir": self.out,
            "jobs": 2,
            "stage0": {"compiler": self.stage0, "docgen": self.stage0},
            "inputs": {"compile-std:1": ["std1-extra"]},
        }
        settings.update(overrides)
        return BuildConfig(**settings)

    def calls(self):
        if not self.log.exists():
            return []
        return [json.loads(line) for line in self.log.read_text().splitlines()]

    def steps_run(self):
        return [c["step"] for c in self.calls()]

    def clear_log(self):
        self.log.unlink(missing_ok=True)

    def touch(self, rel, seconds=10):
        """Bump a source file's mtime well past anything recorded."""
        path = self.src / rel
        st = path.stat()
        os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + seconds * 1_000_000_000))


@pytest.fixture
def fake(tmp_path, monkeypatch):
    src = tmp_path / "src"
    for rel in ("compiler/main.src", "library/core.src", "tools/docgen.src",
                "tests/smoke.src", "std1-extra/patch.diff"):
        f = src / rel
        f.parent.mkdir(parents=True, exist_ok=True)
        f.write_text(rel + "\n")
    stage0 = write_script(tmp_path / "stage0" / "bin" / "compiler",
                          FAKE_COMPILER.format(python=sys.executable))
    log = tmp_path / "calls.jsonl"
    monkeypatch.setenv("FAKE_LOG", str(log))
    monkeypatch.delenv("FAKE_FAIL", raising=False)
    for var in list(os.environ):
        if var.startswith("KILN_"):
            monkeypatch.delenv(var)
    return FakeTree(root=tmp_path, src=src, out=tmp_path / "out", stage0=stage0, log=log)
