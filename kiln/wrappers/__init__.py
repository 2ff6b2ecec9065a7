"""Tool wrappers: small programs standing in front of the real toolchain.

A driver never calls the real compiler directly. It calls a shim, which
starts one of these wrappers; the wrapper rewrites arguments and
environment from the ``KILN_*`` variables the executor set, then runs the
real binary and passes its exit code and output straight through.

    driver ──> shim ──> kiln.wrappers.main("compiler", argv)
                          │  + --sysroot, --target, stage flags
                          └──> $KILN_REAL_COMPILER argv'

Variants are a closed set, chosen when the wrapper process starts:

    compiler       the stage compiler
    docgen         the documentation generator
    cache-cc       C compiler, through the compilation cache when reachable
    config-query   backend configuration tool, paths normalized to "/"

This package only reads the environment; it must stay importable without
the orchestrator's configuration layer.
"""

import importlib
import sys

VARIANTS = frozenset({"compiler", "docgen", "cache-cc", "config-query"})

_MODULES = {
    "compiler": "compiler",
    "docgen": "docgen",
    "cache-cc": "cache",
    "config-query": "config_query",
}


def main(variant, args=None):
    """Run wrapper ``variant`` with ``args``. Returns the exit code."""
    if args is None:
        args = sys.argv[1:]
    if variant not in VARIANTS:
        print(f"kiln-wrapper: unknown variant {variant!r}", file=sys.stderr)
        return 2
    module = importlib.import_module(f"kiln.wrappers.{_MODULES[variant]}")
    return module.main(list(args))


def compiler_main():
    return main("compiler")


def docgen_main():
    return main("docgen")


def cache_cc_main():
    return main("cache-cc")


def config_query_main():
    return main("config-query")
