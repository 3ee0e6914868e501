#!/usr/bin/env python3
"""
Promising Simulator CLI
=======================
Runs the built-in litmus catalogue through the exhaustive explorer and
reports the reachable final states.

Provides:
  - Catalogue listing
  - Single / repeated / full-catalogue runs
  - Allowed / forbidden outcome checks per test

Usage:
  python cli.py --list
  python cli.py --test MP --test SB [--max-paths N] [-v]
  python cli.py --all
"""

from __future__ import annotations
import argparse
import logging
import sys
from typing import Optional, Sequence

from effects import PromisingError
from litmus import CATALOGUE, Litmus

logger = logging.getLogger(__name__)


def _cond(cond) -> str:
    return " /\\ ".join(f"{k}={v}" for k, v in cond.items())


def run_test(test: Litmus, max_paths: int, verbose: bool = False) -> bool:
    """Explore one test; print its finals and checks.  True if every
    check holds."""
    print(f"== {test.name} ==  {test.doc}")
    try:
        result = test.explorer(max_paths=max_paths).run()
    except PromisingError as e:
        print(f"  error: {e}")
        return False

    if verbose:
        for final in sorted(result.finals, key=str):
            print(f"  {final}")
    print(f"  {len(result.finals)} final state(s), {result.paths} path(s), "
          f"{result.discarded} discarded")
    for tid, msg in result.errors:
        print(f"  T{tid}: {msg}")

    ok = not result.errors
    for cond in test.forbidden:
        hit = result.allows(cond)
        print(f"  {'✗' if hit else '✓'} forbidden  {_cond(cond)}")
        ok = ok and not hit
    for cond in test.allowed:
        hit = result.allows(cond)
        print(f"  {'✓' if hit else '✗'} allowed    {_cond(cond)}")
        ok = ok and hit
    return ok


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Promising-semantics litmus explorer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  python cli.py --list\n"
               "  python cli.py --test MP+dmbs -v\n"
               "  python cli.py --all --max-paths 200000\n"
    )
    parser.add_argument("--list", action="store_true",
                        help="List catalogue tests and exit")
    parser.add_argument("--test", "-t", type=str, action="append", default=[],
                        help="Run the named test (can repeat)")
    parser.add_argument("--all", action="store_true",
                        help="Run every catalogue test")
    parser.add_argument("--max-paths", type=int, default=100_000, metavar="N",
                        help="Abort a test after N search nodes (default: 100000)")
    parser.add_argument("--verbose", "-v", action="count", default=0,
                        help="Print every final state; -vv also logs discards")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose > 1 else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s")

    if args.list:
        width = max(len(name) for name in CATALOGUE)
        for name, test in CATALOGUE.items():
            print(f"  {name:<{width}}  {test.doc}")
        return 0

    names = list(CATALOGUE) if args.all else args.test
    if not names:
        parser.print_usage()
        return 2
    unknown = [n for n in names if n not in CATALOGUE]
    if unknown:
        print(f"Unknown test(s): {', '.join(unknown)}", file=sys.stderr)
        return 2

    failed = [n for n in names
              if not run_test(CATALOGUE[n], args.max_paths, args.verbose > 0)]
    if failed:
        print(f"\nFAILED: {', '.join(failed)}")
        return 1
    print(f"\nAll {len(names)} test(s) passed")
    return 0


if __name__ == "__main__":
    sys.exit(main())
