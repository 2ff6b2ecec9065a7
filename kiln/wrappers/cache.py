"""C compiler wrapper with an optional compilation cache in front.

    KILN_CACHE=sccache KILN_REAL_CC=cc  cache-cc -c foo.c
        → sccache cc -c foo.c          (cache found and reachable)
        → cc -c foo.c                  (otherwise)

The cache's server endpoint, if configured, is probed with a plain socket
connection first: ``host:port`` over TCP, or a Unix socket path. A cache
that is missing, unreachable or fails to start is never an error; the
compile just runs without it.
"""

import os
import shutil
import socket
import sys

from kiln.wrappers.base import delegation_error, exit_code, spawn, verbosity

PROBE_TIMEOUT = 0.5


def endpoint_reachable(endpoint, timeout=PROBE_TIMEOUT):
    if endpoint.startswith("unix:"):
        endpoint = endpoint[len("unix:"):]
    try:
        if endpoint.startswith("/"):
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            sock.settimeout(timeout)
            try:
                sock.connect(endpoint)
            finally:
                sock.close()
        else:
            host, _, port = endpoint.rpartition(":")
            with socket.create_connection((host or "127.0.0.1", int(port)), timeout=timeout):
                pass
    except (OSError, ValueError):
        return False
    return True


def resolve_cache(env):
    """Path of the cache program if it is usable right now, else None."""
    program = env.get("KILN_CACHE")
    if not program:
        return None
    path = shutil.which(program, path=env.get("PATH"))
    if path is None:
        return None
    endpoint = env.get("KILN_CACHE_ENDPOINT")
    if endpoint and not endpoint_reachable(endpoint):
        return None
    return path


def main(args, env=None):
    env = dict(os.environ if env is None else env)
    real_cc = env.get("KILN_REAL_CC") or "cc"

    cache = resolve_cache(env)
    if cache is not None:
        try:
            return exit_code(spawn([cache, real_cc, *args], env).returncode)
        except OSError as e:
            if verbosity(env) >= 1:
                print(f"kiln-wrapper: cache {cache} unusable ({e}), compiling directly",
                      file=sys.stderr)

    try:
        return exit_code(spawn([real_cc, *args], env).returncode)
    except OSError as e:
        return delegation_error(f"cannot execute {real_cc}: {e}")
