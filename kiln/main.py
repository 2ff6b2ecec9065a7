#!/usr/bin/env python3
"""kiln: staged bootstrap of a self-hosting compiler."""

import argparse
import json
import logging
import sys

from kiln import api
from kiln.config import BuildConfig
from kiln.errors import KilnError, StepFailed
from kiln.hash import digest_json
from kiln.stages import StageCoordinator
from kiln.wrappers.base import exit_code


def parse_request(text):
    """``kind:stage[:host[:target]]``, e.g. ``compile-std:1::aarch64-unknown-linux-gnu``."""
    parts = text.split(":")
    if len(parts) < 2 or len(parts) > 4:
        raise argparse.ArgumentTypeError(f"expected kind:stage[:host[:target]], got {text!r}")
    try:
        stage = int(parts[1])
    except ValueError:
        raise argparse.ArgumentTypeError(f"stage must be an integer in {text!r}")
    host = parts[2] if len(parts) > 2 and parts[2] else None
    target = parts[3] if len(parts) > 3 and parts[3] else None
    return api.StepRequest(parts[0], stage, host, target)


def load_config(args):
    overrides = {
        "jobs": args.jobs,
        "out_dir": args.out_dir,
        "verbose": args.verbose or None,
        "keep_stages": args.keep_stage or None,
    }
    if args.keep_going:
        overrides["fail_fast"] = False
    if args.stage0_compiler:
        overrides["stage0"] = {"compiler": args.stage0_compiler}
    if getattr(args, "dry_run", False):
        overrides["dry_run"] = True
    return BuildConfig.load(args.config, **overrides)


def report_failure(failure):
    print(f"error: {failure}", file=sys.stderr)
    if failure.command:
        print(f"  command: {' '.join(failure.command)}", file=sys.stderr)
    tail = failure.stderr.strip().splitlines()[-20:]
    for line in tail:
        print(f"  | {line}", file=sys.stderr)


def cmd_plan(args):
    config = load_config(args)
    print(api.plan(args.steps, config).describe())


def cmd_build(args):
    config = load_config(args)
    summary = api.run(args.steps, config)
    print(summary.describe())
    if not summary.ok:
        for failure in summary.failed:
            report_failure(failure)
        sys.exit(exit_code(summary.failed[0].returncode) or 1)


def cmd_check(args):
    args.dry_run = True
    config = load_config(args)
    summary = api.run(args.steps, config)
    print(summary.describe())
    sys.exit(1 if summary.executed else 0)


def cmd_config(args):
    config = load_config(args)
    info = {
        "config": config.model_dump(mode="json"),
        "tracked_digest": digest_json(config.tracked()),
    }
    json.dump(info, sys.stdout, indent=2, sort_keys=True)
    print()


def cmd_root(args):
    config = load_config(args)
    root = StageCoordinator(config).root(args.stage, args.host or config.build)
    print(root.path)


def main(argv=None):
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-c", "--config", help="TOML configuration file")
    common.add_argument("-j", "--jobs", type=int, help="Steps to run in parallel")
    common.add_argument("-v", "--verbose", action="count", default=0)
    common.add_argument("--out-dir", help="Output root")
    common.add_argument("--keep-stage", type=int, action="append",
                        help="Treat this stage as already built (repeatable)")
    common.add_argument("--keep-going", action="store_true",
                        help="Keep running independent steps after a failure")
    common.add_argument("--stage0-compiler", help="External stage 0 compiler")

    parser = argparse.ArgumentParser(prog="kiln", description="Staged compiler bootstrap")
    sub = parser.add_subparsers(dest="command")

    # plan
    p = sub.add_parser("plan", parents=[common], help="Show the execution plan")
    p.add_argument("steps", nargs="+", type=parse_request, metavar="kind:stage[:host[:target]]")
    p.set_defaults(func=cmd_plan)

    # build
    p = sub.add_parser("build", parents=[common], help="Build the requested steps")
    p.add_argument("steps", nargs="+", type=parse_request, metavar="kind:stage[:host[:target]]")
    p.set_defaults(func=cmd_build)

    # check
    p = sub.add_parser("check", parents=[common], help="Report which steps would run")
    p.add_argument("steps", nargs="+", type=parse_request, metavar="kind:stage[:host[:target]]")
    p.set_defaults(func=cmd_check)

    # config
    p = sub.add_parser("config", parents=[common], help="Show the effective configuration")
    p.set_defaults(func=cmd_config)

    # root
    p = sub.add_parser("root", parents=[common], help="Print a toolchain root's path")
    p.add_argument("stage", type=int)
    p.add_argument("--host")
    p.set_defaults(func=cmd_root)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose >= 2 else logging.INFO if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        args.func(args)
    except StepFailed as e:
        report_failure(e)
        sys.exit(exit_code(e.returncode) or 1)
    except KilnError as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
