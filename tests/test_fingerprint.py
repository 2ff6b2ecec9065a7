"""Tests for fingerprint records."""

import json

import pytest

from kiln import step as steps
from kiln.errors import FingerprintError
from kiln.fingerprint import Fingerprint, read_record, remove_record, write_record
from kiln.tree import InputState

H = "x86_64-unknown-linux-gnu"


def _fp(**kw):
    fields = {
        "step": steps.std(1, H, H),
        "config": "c" * 64,
        "inputs": InputState("mtime", 1000),
        "deps": {"compile-compiler stage1": "d" * 64},
    }
    fields.update(kw)
    return Fingerprint(**fields)


def test_id_is_deterministic():
    assert _fp().id == _fp().id
    assert len(_fp().id) == 64


def test_id_follows_dependency_identity():
    assert _fp().id != _fp(deps={"compile-compiler stage1": "e" * 64}).id


def test_id_follows_inputs_and_config():
    assert _fp().id != _fp(inputs=InputState("mtime", 1001)).id
    assert _fp().id != _fp(config="0" * 64).id


def test_write_and_read(tmp_path):
    path = tmp_path / "stamps" / "compile-std.json"
    fp = _fp()
    write_record(path, fp)
    assert read_record(path) == fp
    assert json.loads(path.read_text())["id"] == fp.id


def test_tampered_record(tmp_path):
    path = tmp_path / "s.json"
    write_record(path, _fp())
    data = json.loads(path.read_text())
    data["config"] = "0" * 64
    path.write_text(json.dumps(data))
    with pytest.raises(FingerprintError, match="does not match"):
        read_record(path)


def test_missing_and_corrupt(tmp_path):
    with pytest.raises(FingerprintError):
        read_record(tmp_path / "none.json")
    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    with pytest.raises(FingerprintError):
        read_record(bad)
    bad.write_text('{"step": {}}')
    with pytest.raises(FingerprintError):
        read_record(bad)


def test_remove(tmp_path):
    path = tmp_path / "s.json"
    write_record(path, _fp())
    remove_record(path)
    assert not path.exists()
    remove_record(path)
