"""carly CLI: list, run and check tests.

Usage::

    carly list
    carly run "batch set halves" --node n1 --node n2 --node n3 --time-limit 30
    carly check store/batch-set-halves/20260101T000000.000000/history.jsonl --model set

Exit codes:

- 0: the history is valid, or validity could not be decided
- 1: a checker found the history invalid
- 2: usage error, unknown test, unreadable history or failed setup
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

from carly import __version__, setups
from carly.batch import TESTS, lookup
from carly.checker import Compose, Linearizable, SetChecker, WellFormed, check_safe
from carly.core import exit_code, parse_nodes, run
from carly.errors import HistoryError, RunAborted, SetupError
from carly.history import to_jsonable
from carly.model import MODELS
from carly.store import load_history

USAGE_ERROR = 2
INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="carly", description="Fault injection and history checking.")
    parser.add_argument("--version", action="version", version=f"carly {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="log at DEBUG level")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="print the name of every test")

    run_parser = sub.add_parser("run", help="run a test and check its history")
    run_parser.add_argument("test", help="test name, with or without the 'batch set' prefix")
    run_parser.add_argument(
        "--node",
        action="append",
        help="a node to test against; repeat or separate with commas (default n1..n5)",
    )
    run_parser.add_argument("--time-limit", type=float, help="seconds of client and fault activity")
    run_parser.add_argument("--concurrency", type=int, help="client processes (default: one per node)")
    run_parser.add_argument("--store", help="directory for run artifacts")
    run_parser.add_argument("--seed", type=int, help="seed for fault selection")
    run_parser.add_argument("--abort-after", type=float, help="abort the run after this many seconds")

    check_parser = sub.add_parser("check", help="check a stored history")
    check_parser.add_argument("history", help="history.jsonl file or run directory")
    check_parser.add_argument("--model", choices=sorted(MODELS), default="set")
    check_parser.add_argument(
        "--checker",
        choices=("linearizable", "set"),
        default="linearizable",
        help="linearizability search, or final-read set analysis",
    )
    check_parser.add_argument("--max-configurations", type=int, help="search budget before giving up")
    return parser


def _list(args: argparse.Namespace) -> int:
    for name in TESTS:
        print(name)
    return 0


def _run(args: argparse.Namespace) -> int:
    try:
        factory = lookup(args.test)
    except KeyError as e:
        print(f"carly: {e.args[0]}", file=sys.stderr)
        return USAGE_ERROR
    opts = {
        "nodes": parse_nodes(args.node),
        "time_limit": args.time_limit,
        "concurrency": args.concurrency if args.concurrency is not None else setups.default("concurrency"),
        "store_dir": args.store,
        "seed": args.seed,
    }
    test = factory({k: v for k, v in opts.items() if v is not None})
    try:
        result = run(test, abort_after=args.abort_after)
    except SetupError as e:
        print(f"carly: {e}", file=sys.stderr)
        return USAGE_ERROR
    except RunAborted as e:
        print(f"carly: {e}; {len(e.history)} ops recorded", file=sys.stderr)
        return INTERRUPTED
    print(json.dumps({"valid": to_jsonable(result.valid), "store": str(result.path)}, indent=2))
    return exit_code(result)


def _check(args: argparse.Namespace) -> int:
    try:
        history = load_history(args.history)
    except (OSError, HistoryError) as e:
        print(f"carly: cannot read history: {e}", file=sys.stderr)
        return USAGE_ERROR
    model = MODELS[args.model]()
    if args.checker == "set":
        main = SetChecker()
    else:
        main = Linearizable(model, max_configurations=args.max_configurations)
    checker = Compose({"well-formed": WellFormed(), args.checker: main})
    results = check_safe(checker, None, model, history)
    print(json.dumps(to_jsonable(results), indent=2, sort_keys=True, default=repr))
    return exit_code(results["valid"])


_COMMANDS = {"list": _list, "run": _run, "check": _check}


def main(argv: list[str] | None = None) -> int:
    """Entry point for the ``carly`` CLI command."""
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        return e.code if isinstance(e.code, int) else USAGE_ERROR
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return _COMMANDS[args.command](args)
    except KeyboardInterrupt:
        return INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
