"""Backend configuration query wrapper.

Runs KILN_REAL_BACKEND_CONFIG and rewrites backslashes in its output to
forward slashes, so paths it reports on Windows survive being pasted into
flags and makefiles.
"""

import os
import sys

from kiln.wrappers.base import delegation_error, exit_code, spawn


def normalize(text):
    return text.replace("\\", "/")


def main(args, env=None):
    env = dict(os.environ if env is None else env)
    real = env.get("KILN_REAL_BACKEND_CONFIG")
    if not real:
        return delegation_error("KILN_REAL_BACKEND_CONFIG is not set")
    try:
        result = spawn([real, *args], env, capture_stdout=True)
    except OSError as e:
        return delegation_error(f"cannot execute {real}: {e}")
    sys.stdout.write(normalize(result.stdout or ""))
    sys.stdout.flush()
    return exit_code(result.returncode)
