"""Documentation generator wrapper. Same rewriting as the compiler's."""

import os

from kiln.wrappers.base import delegate, inject_common, with_libdir


def main(args, env=None):
    env = dict(os.environ if env is None else env)
    return delegate("KILN_REAL_DOCGEN", inject_common(args, env), with_libdir(env))
