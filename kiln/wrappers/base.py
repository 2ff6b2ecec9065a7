"""Shared plumbing for the wrappers: argument rewriting and delegation."""

import os
import shlex
import subprocess
import sys

from kiln import triple

DELEGATION_SENTINEL = "kiln-wrapper: delegation-error:"
DELEGATION_EXIT = 127

VERSION_QUERIES = frozenset({"-vV", "-V", "--version"})


def has_flag(args, flag):
    """True if ``flag`` is present as ``flag``, ``flag value`` or ``flag=value``."""
    return any(a == flag or a.startswith(flag + "=") for a in args)


def is_version_query(args):
    return any(a in VERSION_QUERIES for a in args)


def verbosity(env):
    try:
        return int(env.get("KILN_VERBOSE", "0"))
    except ValueError:
        return 0


def inject_common(args, env):
    """Add sysroot, target, stage flags and stage marker to ``args``.

    Version queries go through untouched: the build asks the real binary
    who it is before it knows which sysroot to use.
    """
    if is_version_query(args):
        return list(args)
    out = list(args)
    sysroot = env.get("KILN_SYSROOT")
    if sysroot and not has_flag(args, "--sysroot"):
        out += ["--sysroot", sysroot]
    target = env.get("KILN_TARGET")
    if target and not has_flag(args, "--target"):
        out += ["--target", target]
    out += shlex.split(env.get("KILN_FLAGS", ""))
    if env.get("KILN_STAGE") == "0" and "--cfg=stage0" not in out:
        out.append("--cfg=stage0")
    return out


def with_libdir(env):
    """Copy of ``env`` with KILN_LIBDIR first on the loader search path."""
    env = dict(env)
    libdir = env.get("KILN_LIBDIR")
    if libdir:
        var = triple.dylib_path_var(env.get("KILN_BUILD") or triple.default_build_triple())
        current = env.get(var)
        env[var] = libdir + (os.pathsep + current if current else "")
    return env


def exit_code(returncode):
    """Shell convention: a child killed by signal N exits 128 + N."""
    return 128 - returncode if returncode < 0 else returncode


def delegation_error(message):
    print(f"{DELEGATION_SENTINEL} {message}", file=sys.stderr)
    return DELEGATION_EXIT


def spawn(argv, env, capture_stdout=False):
    """Run the real program. Raises OSError if it cannot be executed."""
    if verbosity(env) >= 2:
        print(f"kiln-wrapper: {shlex.join(argv)}", file=sys.stderr)
    return subprocess.run(
        argv,
        env=env,
        stdout=subprocess.PIPE if capture_stdout else None,
        text=capture_stdout,
    )


def delegate(real_var, args, env):
    """Run the program named by ``env[real_var]``; return its exit code."""
    real = env.get(real_var)
    if not real:
        return delegation_error(f"{real_var} is not set")
    try:
        result = spawn([real, *args], env)
    except OSError as e:
        return delegation_error(f"cannot execute {real}: {e}")
    return exit_code(result.returncode)
