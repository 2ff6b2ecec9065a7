"""Step fingerprints.

A fingerprint captures everything that determines a step's output:

    step      (kind, stage, host, target)
    config    digest of the tracked configuration for this step
    inputs    newest mtime / content digest and path set of the declared inputs
    deps      identity of each dependency's own recorded fingerprint

and its identity is the SHA-256 of the canonical serialization of those
four fields. Because each dependency contributes its *identity* rather than
its file paths, a rebuilt dependency with a new identity changes the
identity of every step downstream of it, all the way up the graph. It is the
same trick as hashing input derivations by their hashes instead of their
store paths.

Records are JSON files in the toolchain root::

    {
      "step": {"kind": "compile-std", "stage": 0, ...},
      "config": "3b1f...",
      "inputs": {"mode": "mtime", "newest_ns": 1718000000000000000, "digest": "",
                 "paths": [".../library"]},
      "deps": {"compile-compiler stage1 (x86_64-unknown-linux-gnu)": "9ac2..."},
      "id": "d41e..."
    }
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path

from kiln.errors import FingerprintError
from kiln.hash import digest_json
from kiln.layout import write_json_atomic
from kiln.step import Step
from kiln.tree import InputState


@dataclass(frozen=True)
class Fingerprint:
    step: Step
    config: str
    inputs: InputState
    deps: dict[str, str] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return digest_json({
            "step": self.step.to_json(),
            "config": self.config,
            "inputs": self.inputs.to_json(),
            "deps": self.deps,
        })

    def to_json(self) -> dict:
        return {
            "step": self.step.to_json(),
            "config": self.config,
            "inputs": self.inputs.to_json(),
            "deps": dict(sorted(self.deps.items())),
            "id": self.id,
        }

    @classmethod
    def from_json(cls, data: dict) -> Fingerprint:
        try:
            fp = cls(
                step=Step.from_json(data["step"]),
                config=data["config"],
                inputs=InputState.from_json(data["inputs"]),
                deps=dict(data.get("deps", {})),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise FingerprintError(f"malformed fingerprint record: {e}") from e
        if data.get("id") != fp.id:
            raise FingerprintError("fingerprint record does not match its recorded id")
        return fp


def read_record(path: Path) -> Fingerprint:
    """Load a record. Any problem reading it is a FingerprintError."""
    try:
        with open(path) as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise FingerprintError(f"no fingerprint recorded at {path}") from e
    except (OSError, json.JSONDecodeError) as e:
        raise FingerprintError(f"cannot read fingerprint {path}: {e}") from e
    if not isinstance(data, dict):
        raise FingerprintError(f"malformed fingerprint record: {path}")
    return Fingerprint.from_json(data)


def write_record(path: Path, fp: Fingerprint) -> None:
    write_json_atomic(path, fp.to_json())


def remove_record(path: Path) -> None:
    path.unlink(missing_ok=True)
