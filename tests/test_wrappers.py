"""Tests for the tool wrappers."""

import json
import os
import signal
import socket
import subprocess
import sys

import pytest

from kiln.wrappers import VARIANTS, main
from kiln.wrappers import cache, compiler, config_query, docgen
from kiln.wrappers.base import (
    DELEGATION_EXIT, DELEGATION_SENTINEL, exit_code, has_flag, inject_common, with_libdir,
)

from conftest import BUILD, CROSS, write_script

# Echoes its argv and selected env as JSON, exits with $FAKE_EXIT.
ECHO = """\
#!{python}
import json, os, sys
print(json.dumps({{"args": sys.argv[1:], "ld": os.environ.get("LD_LIBRARY_PATH", "")}}))
sys.exit(int(os.environ.get("FAKE_EXIT", "0")))
"""


@pytest.fixture
def echo(tmp_path):
    return write_script(tmp_path / "bin" / "echo-tool", ECHO.format(python=sys.executable))


def _env(**kw):
    env = {"PATH": os.environ.get("PATH", ""), "KILN_BUILD": BUILD}
    env.update(kw)
    return env


class TestRewrite:
    def test_injects_sysroot_target_flags(self):
        env = _env(KILN_SYSROOT="/s", KILN_TARGET=CROSS, KILN_FLAGS="-O '--cfg=a b'", KILN_STAGE="1")
        assert inject_common(["x.src"], env) == [
            "x.src", "--sysroot", "/s", "--target", CROSS, "-O", "--cfg=a b"]

    def test_explicit_target_wins(self):
        env = _env(KILN_SYSROOT="/s", KILN_TARGET=CROSS)
        out = inject_common(["--target=wasm32-unknown-unknown", "--sysroot", "/mine"], env)
        assert out.count("--sysroot") == 1
        assert CROSS not in out

    def test_stage0_marker(self):
        assert inject_common(["a"], _env(KILN_STAGE="0"))[-1] == "--cfg=stage0"
        assert "--cfg=stage0" not in inject_common(["a"], _env(KILN_STAGE="2"))

    def test_version_query_untouched(self):
        env = _env(KILN_SYSROOT="/s", KILN_TARGET=CROSS, KILN_STAGE="0")
        assert inject_common(["-vV"], env) == ["-vV"]

    def test_has_flag(self):
        assert has_flag(["--target=x"], "--target")
        assert has_flag(["--target", "x"], "--target")
        assert not has_flag(["--targets"], "--target")

    def test_libdir_prepended(self):
        env = with_libdir(_env(KILN_LIBDIR="/lib1", LD_LIBRARY_PATH="/old"))
        assert env["LD_LIBRARY_PATH"] == "/lib1" + os.pathsep + "/old"

    def test_exit_code(self):
        assert exit_code(3) == 3
        assert exit_code(-signal.SIGKILL) == 128 + signal.SIGKILL


class TestDelegation:
    def test_compiler_runs_real_binary(self, echo, capfd):
        env = _env(KILN_REAL_COMPILER=str(echo), KILN_SYSROOT="/s", KILN_LIBDIR="/l", KILN_STAGE="1")
        assert compiler.main(["in.src"], env) == 0
        seen = json.loads(capfd.readouterr().out)
        assert seen["args"] == ["in.src", "--sysroot", "/s"]
        assert seen["ld"].split(os.pathsep)[0] == "/l"

    def test_exit_code_passes_through(self, echo):
        env = _env(KILN_REAL_COMPILER=str(echo), FAKE_EXIT="42")
        assert compiler.main([], env) == 42

    def test_missing_real_binary(self, tmp_path, capfd):
        env = _env(KILN_REAL_COMPILER=str(tmp_path / "nope"))
        assert compiler.main([], env) == DELEGATION_EXIT
        assert capfd.readouterr().err.startswith(DELEGATION_SENTINEL)

    def test_unset_real_binary(self, capfd):
        assert docgen.main(["x"], _env()) == DELEGATION_EXIT
        assert "KILN_REAL_DOCGEN is not set" in capfd.readouterr().err

    def test_unknown_variant(self, capfd):
        assert main("linker", []) == 2
        assert "unknown variant" in capfd.readouterr().err

    def test_variants_are_closed(self):
        assert VARIANTS == {"compiler", "docgen", "cache-cc", "config-query"}

    def test_module_entry_point(self, echo):
        env = dict(os.environ, KILN_REAL_COMPILER=str(echo), FAKE_EXIT="5")
        env.pop("KILN_SYSROOT", None)
        result = subprocess.run(
            [sys.executable, "-m", "kiln.wrappers", "compiler", "a"],
            env=env, capture_output=True, text=True,
            cwd=os.path.dirname(os.path.dirname(os.path.abspath(__file__))),
        )
        assert result.returncode == 5
        assert json.loads(result.stdout)["args"][0] == "a"


class TestCache:
    def test_no_cache_configured(self, echo, capfd):
        env = _env(KILN_REAL_CC=str(echo))
        assert cache.resolve_cache(env) is None
        assert cache.main(["-c", "f.c"], env) == 0
        assert json.loads(capfd.readouterr().out)["args"] == ["-c", "f.c"]

    def test_cache_not_installed_falls_back(self, echo, capfd):
        env = _env(KILN_REAL_CC=str(echo), KILN_CACHE="kiln-no-such-cache")
        assert cache.main(["-c", "f.c"], env) == 0
        assert json.loads(capfd.readouterr().out)["args"] == ["-c", "f.c"]

    def test_cache_used_when_reachable(self, tmp_path, echo, capfd):
        wrapper = write_script(tmp_path / "bin" / "fakecache", ECHO.format(python=sys.executable))
        env = _env(KILN_REAL_CC=str(echo), KILN_CACHE=str(wrapper))
        assert cache.main(["-c", "f.c"], env) == 0
        assert json.loads(capfd.readouterr().out)["args"] == [str(echo), "-c", "f.c"]

    def test_unreachable_endpoint_falls_back(self, tmp_path, echo, capfd):
        wrapper = write_script(tmp_path / "bin" / "fakecache", ECHO.format(python=sys.executable))
        with socket.socket() as s:
            s.bind(("127.0.0.1", 0))
            port = s.getsockname()[1]
        env = _env(KILN_REAL_CC=str(echo), KILN_CACHE=str(wrapper),
                   KILN_CACHE_ENDPOINT=f"127.0.0.1:{port}")
        assert cache.resolve_cache(env) is None
        assert cache.main(["f.c"], env) == 0
        assert json.loads(capfd.readouterr().out)["args"] == ["f.c"]

    def test_reachable_endpoint(self):
        with socket.socket() as s:
            s.bind(("127.0.0.1", 0))
            s.listen()
            assert cache.endpoint_reachable(f"127.0.0.1:{s.getsockname()[1]}")
        assert not cache.endpoint_reachable("not-a-port")

    def test_missing_compiler_is_delegation_error(self, tmp_path, capfd):
        env = _env(KILN_REAL_CC=str(tmp_path / "nope"))
        assert cache.main([], env) == DELEGATION_EXIT
        assert DELEGATION_SENTINEL in capfd.readouterr().err


class TestConfigQuery:
    def test_normalizes_separators(self, tmp_path, capsys):
        tool = write_script(tmp_path / "bin" / "backend-config",
                            f"#!{sys.executable}\nprint(r'C:\\llvm\\lib')\n")
        env = _env(KILN_REAL_BACKEND_CONFIG=str(tool))
        assert config_query.main(["--libdir"], env) == 0
        assert capsys.readouterr().out == "C:/llvm/lib\n"

    def test_unset(self, capfd):
        assert config_query.main([], _env()) == DELEGATION_EXIT
