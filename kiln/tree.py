"""Source tree scanning for staleness checks.

Two ways to summarize a step's declared inputs:

  mtime    newest modification time (nanoseconds) over every file and
           directory under the inputs. Cheap; a touched file always counts
           as a change, even if its bytes did not change.

  content  SHA-256 of a deterministic serialization of the trees. Only
           bytes, names, symlink targets and the executable bit count;
           timestamps, owners and other permission bits are ignored.

The content serialization is a NAR-style stream where every value is
encoded as:
    uint64_le(length) + raw bytes + zero-padding to 8-byte boundary

    str("kiln-tree-1")
    str("(")
      str("regular") [str("executable")] str("contents") str(<data>)
    | str("symlink") str(<target>)
    | str("directory") { str("entry") str(<name>) <recurse> }
    str(")")

Directory entries are visited in sorted order so the same tree always
produces the same stream. Version-control metadata and bytecode caches are
skipped in both modes.
"""

import hashlib
import os
import struct
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

from kiln.errors import FingerprintError

IGNORED_NAMES = frozenset({".git", ".hg", ".svn", "__pycache__", ".DS_Store"})

MODES = ("mtime", "content")


def _pad8(n: int) -> int:
    return (8 - n % 8) % 8


def _str(s: str | bytes) -> bytes:
    if isinstance(s, str):
        s = s.encode()
    return struct.pack("<Q", len(s)) + s + b"\0" * _pad8(len(s))


def _serialize_entry(path: Path, sink: Callable[[bytes], object]) -> None:
    sink(_str("("))

    if path.is_symlink():
        sink(_str("symlink"))
        sink(_str(os.readlink(path)))

    elif path.is_file():
        sink(_str("regular"))
        if os.access(path, os.X_OK):
            sink(_str("executable"))
        sink(_str("contents"))
        sink(_str(path.read_bytes()))

    elif path.is_dir():
        sink(_str("directory"))
        for name in sorted(os.listdir(path)):
            if name in IGNORED_NAMES:
                continue
            sink(_str("entry"))
            sink(_str(name))
            _serialize_entry(path / name, sink)
    else:
        raise FingerprintError(f"unsupported file type: {path}")

    sink(_str(")"))


def tree_digest(paths: Iterable[str | Path]) -> str:
    """Content digest over several inputs, independent of the order given."""
    h = hashlib.sha256()
    for p in sorted({str(p) for p in paths}):
        path = Path(p)
        if not path.exists() and not path.is_symlink():
            raise FingerprintError(f"declared input does not exist: {path}")
        h.update(_str(p))
        h.update(_str("kiln-tree-1"))
        try:
            _serialize_entry(path, h.update)
        except OSError as e:
            raise FingerprintError(f"cannot read {path}: {e}") from e
    return h.hexdigest()


def newest_mtime(paths: Iterable[str | Path]) -> int:
    """Newest ``st_mtime_ns`` over all inputs, directories included.

    Directories count so that deleting or renaming a file (which changes
    only the parent's mtime) is seen as a change.
    """
    newest = 0
    for p in paths:
        path = Path(p)
        try:
            newest = max(newest, path.lstat().st_mtime_ns)
            if path.is_dir() and not path.is_symlink():
                for dirpath, dirnames, filenames in os.walk(path, onerror=_raise):
                    dirnames[:] = sorted(d for d in dirnames if d not in IGNORED_NAMES)
                    newest = max(newest, os.lstat(dirpath).st_mtime_ns)
                    for name in filenames:
                        if name in IGNORED_NAMES:
                            continue
                        newest = max(newest, os.lstat(os.path.join(dirpath, name)).st_mtime_ns)
        except OSError as e:
            raise FingerprintError(f"cannot stat {path}: {e}") from e
    return newest


def _raise(err: OSError) -> None:
    raise err


@dataclass(frozen=True)
class InputState:
    """Summary of a step's declared inputs at one point in time."""

    mode: str
    newest_ns: int
    digest: str = ""
    paths: tuple[str, ...] = ()

    def to_json(self) -> dict:
        return {
            "mode": self.mode,
            "newest_ns": self.newest_ns,
            "digest": self.digest,
            "paths": list(self.paths),
        }

    @classmethod
    def from_json(cls, data: dict) -> "InputState":
        return cls(data["mode"], int(data["newest_ns"]), data.get("digest", ""),
                   tuple(data.get("paths", ())))


def scan(paths: Iterable[str | Path], mode: str = "mtime") -> InputState:
    """Summarize inputs. ``content`` mode records both mtime and digest.

    The set of paths is recorded too, so an input that disappears (and
    takes its mtime with it) still counts as a change.
    """
    if mode not in MODES:
        raise ValueError(f"unknown fingerprint mode: {mode!r}")
    paths = list(paths)
    newest = newest_mtime(paths)
    digest = tree_digest(paths) if mode == "content" else ""
    return InputState(mode, newest, digest, tuple(sorted({str(p) for p in paths})))
