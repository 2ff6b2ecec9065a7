"""Tests for source tree scanning."""

import hashlib
import os
import struct

import pytest

from kiln.errors import FingerprintError
from kiln.tree import InputState, newest_mtime, scan, tree_digest


def _str(s):
    if isinstance(s, str):
        s = s.encode()
    pad = (8 - len(s) % 8) % 8
    return struct.pack("<Q", len(s)) + s + b"\0" * pad


def test_regular_file(tmp_path):
    f = tmp_path / "hello.txt"
    f.write_text("hello")
    f.chmod(0o644)
    expected = hashlib.sha256(
        _str(str(f)) + _str("kiln-tree-1") + _str("(") + _str("regular")
        + _str("contents") + _str("hello") + _str(")")
    ).hexdigest()
    assert tree_digest([f]) == expected


def test_executable_bit(tmp_path):
    f = tmp_path / "run"
    f.write_text("x")
    f.chmod(0o644)
    before = tree_digest([f])
    f.chmod(0o755)
    assert tree_digest([f]) != before


def test_directory_ignores_vcs(tmp_path):
    d = tmp_path / "d"
    d.mkdir()
    (d / "b").write_text("b")
    (d / "a").write_text("a")
    first = tree_digest([d])
    (d / ".git").mkdir()
    (d / ".git" / "HEAD").write_text("ref")
    assert tree_digest([d]) == first
    (d / "c").write_text("c")
    assert tree_digest([d]) != first


def test_symlink_target_counts(tmp_path):
    os.symlink("one", tmp_path / "link")
    first = tree_digest([tmp_path / "link"])
    os.unlink(tmp_path / "link")
    os.symlink("two", tmp_path / "link")
    assert tree_digest([tmp_path / "link"]) != first


@pytest.mark.skipif(not hasattr(os, "mkfifo"), reason="needs named pipes")
def test_digest_rejects_special_files(tmp_path):
    os.mkfifo(tmp_path / "pipe")
    with pytest.raises(FingerprintError, match="unsupported file type"):
        tree_digest([tmp_path])


def test_digest_ignores_timestamps(tmp_path):
    f = tmp_path / "f"
    f.write_text("same")
    d1 = tree_digest([f])
    os.utime(f, (0, 0))
    assert tree_digest([f]) == d1
    f.write_text("different")
    assert tree_digest([f]) != d1


def test_digest_order_independent(tmp_path):
    (tmp_path / "a").write_text("a")
    (tmp_path / "b").write_text("b")
    assert tree_digest([tmp_path / "a", tmp_path / "b"]) == tree_digest([tmp_path / "b", tmp_path / "a"])


def test_digest_missing(tmp_path):
    with pytest.raises(FingerprintError):
        tree_digest([tmp_path / "nope"])


def test_newest_mtime_sees_nested_files(tmp_path):
    d = tmp_path / "src"
    (d / "sub").mkdir(parents=True)
    f = d / "sub" / "x"
    f.write_text("x")
    base = newest_mtime([d])
    later = base + 5_000_000_000
    os.utime(f, ns=(later, later))
    assert newest_mtime([d]) == later


def test_newest_mtime_missing(tmp_path):
    with pytest.raises(FingerprintError):
        newest_mtime([tmp_path / "nope"])


def test_scan_modes(tmp_path):
    (tmp_path / "f").write_text("f")
    assert scan([tmp_path], "mtime").digest == ""
    assert scan([tmp_path], "content").digest == tree_digest([tmp_path])
    with pytest.raises(ValueError):
        scan([tmp_path], "size")


def test_input_state_json():
    state = InputState("content", 12, "ab", ("/src/library",))
    assert InputState.from_json(state.to_json()) == state
    assert InputState.from_json({"mode": "mtime", "newest_ns": 3}).paths == ()


def test_scan_records_path_set(tmp_path):
    (tmp_path / "b").write_text("b")
    (tmp_path / "a").write_text("a")
    state = scan([tmp_path / "b", tmp_path / "a", tmp_path / "b"])
    assert state.paths == (str(tmp_path / "a"), str(tmp_path / "b"))
