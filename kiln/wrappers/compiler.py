"""Compiler wrapper.

Reads KILN_REAL_COMPILER and runs it with the stage's sysroot, target and
flags added, its own runtime libraries first on the loader path.
"""

import os

from kiln.wrappers.base import delegate, inject_common, with_libdir


def rewrite(args, env):
    return inject_common(args, env)


def main(args, env=None):
    env = dict(os.environ if env is None else env)
    return delegate("KILN_REAL_COMPILER", rewrite(args, env), with_libdir(env))
