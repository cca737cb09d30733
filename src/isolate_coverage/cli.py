#!/usr/bin/env python3
"""Command line entry point for coverage collection.

``collect`` attaches to a running VM and writes the CodeCoverage JSON;
``merge`` combines collected files into one hit map.
"""

import argparse
import asyncio
import importlib
import json
import logging
import os
import sys

from isolate_coverage.collect import collect
from isolate_coverage.errors import MalformedServiceUriError
from isolate_coverage.hitmap import create_hitmap, parse_coverage, write_coverage_data
from isolate_coverage.log import configure_logging
from isolate_coverage.service import websocket_uri

logger = logging.getLogger(__name__)

CLIENT_ENV_VAR = "ISOLATE_COVERAGE_CLIENT"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = "8181"

# sysexits.h EX_SOFTWARE
EXIT_SOFTWARE = 70


def load_client_factory(reference):
    """Resolve a ``module:callable`` reference to a connection factory."""
    module_name, sep, attr_path = reference.partition(":")
    if not sep or not module_name or not attr_path:
        raise ValueError(f"expected module:callable, got {reference!r}")
    target = importlib.import_module(module_name)
    for attr in attr_path.split("."):
        target = getattr(target, attr)
    if not callable(target):
        raise ValueError(f"{reference!r} is not callable")
    return target


def _write_output(text, out):
    if out == "stdout":
        sys.stdout.write(text)
        sys.stdout.flush()
        return
    parent = os.path.dirname(out)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(out, "w", encoding="utf-8") as f:
        f.write(text)


def cmd_collect(args):
    """Execute 'collect' subcommand — collect coverage from a running VM."""
    service_uri = args.uri or f"http://{args.host}:{args.port}/"
    try:
        websocket_uri(service_uri)
    except MalformedServiceUriError:
        print(f"Error: Invalid service URI specified: {service_uri}", file=sys.stderr)
        return 1

    reference = args.client or os.environ.get(CLIENT_ENV_VAR)
    if not reference:
        print(
            f"Error: no service client configured. Use --client or set {CLIENT_ENV_VAR}.",
            file=sys.stderr,
        )
        return 1
    try:
        connect = load_client_factory(reference)
    except (ImportError, AttributeError, ValueError) as e:
        print(f"Error: cannot load service client {reference}: {e}", file=sys.stderr)
        return 1

    try:
        result = asyncio.run(
            collect(
                service_uri,
                resume=args.resume_isolates,
                wait_paused=args.wait_paused,
                on_exit=args.on_exit,
                timeout=args.connect_timeout,
                connect=connect,
            )
        )
    except Exception as e:
        logger.debug("Coverage collection failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_SOFTWARE

    try:
        _write_output(json.dumps(result), args.out)
        if args.coverage_data:
            hit_maps = create_hitmap(result["coverage"])
            n_files = write_coverage_data(hit_maps, args.coverage_data)
            print(f"Saved {args.coverage_data} ({n_files} files)", file=sys.stderr)
    except OSError as e:
        print(f"Error: cannot write output: {e}", file=sys.stderr)
        return 1
    return 0


def cmd_merge(args):
    """Execute 'merge' subcommand — merge collected files into a hit map."""
    missing = [path for path in args.json_files if not os.path.isfile(path)]
    if missing:
        print(f"Error: coverage file not found: {missing[0]}", file=sys.stderr)
        return 1

    try:
        merged = parse_coverage(args.json_files)
    except (ValueError, OSError) as e:
        # ValueError covers malformed JSON and odd-length hits lists.
        print(f"Error: cannot read coverage data: {e}", file=sys.stderr)
        return 1

    n_lines = sum(len(v) for v in merged.values())
    print(
        f"Merged {len(args.json_files)} file(s): {len(merged)} sources, {n_lines} lines",
        file=sys.stderr,
    )

    try:
        _write_output(json.dumps(merged), args.out)
        if args.coverage_data:
            n_files = write_coverage_data(merged, args.coverage_data)
            print(f"Saved {args.coverage_data} ({n_files} files)", file=sys.stderr)
    except OSError as e:
        print(f"Error: cannot write output: {e}", file=sys.stderr)
        return 1
    return 0


def build_parser():
    parser = argparse.ArgumentParser(
        prog="isolate-coverage",
        description="Collect line coverage from a running VM through its service protocol",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Log progress")
    parser.add_argument("--debug", action="store_true", help="Log debugging details")
    parser.add_argument("--quiet", "-q", action="store_true", help="Only log errors")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # --- collect ---
    p_collect = subparsers.add_parser("collect", help="Collect coverage from a running VM")
    p_collect.add_argument("--uri", "-u", default=None, help="VM service URI")
    p_collect.add_argument(
        "--host", "-H", default=DEFAULT_HOST, help="Remote VM host. DEPRECATED: use --uri"
    )
    p_collect.add_argument(
        "--port", "-p", default=DEFAULT_PORT, help="Remote VM port. DEPRECATED: use --uri"
    )
    p_collect.add_argument(
        "--out", "-o", default="stdout", help="Output: may be a file or stdout (default: stdout)"
    )
    p_collect.add_argument(
        "--connect-timeout", "-t", type=int, default=None, help="Connect timeout in seconds"
    )
    p_collect.add_argument(
        "--wait-paused",
        "-w",
        action="store_true",
        help="Wait for all isolates to be paused before collecting coverage",
    )
    p_collect.add_argument(
        "--resume-isolates", "-r", action="store_true", help="Resume all isolates on exit"
    )
    p_collect.add_argument(
        "--on-exit", "-e", action="store_true", help="Collect coverage whenever an isolate exits"
    )
    p_collect.add_argument(
        "--client",
        default=None,
        help=f"Service client factory as module:callable (default: ${CLIENT_ENV_VAR})",
    )
    p_collect.add_argument(
        "--coverage-data", default=None, help="Also write executed lines to a coverage.py data file"
    )
    p_collect.set_defaults(func=cmd_collect)

    # --- merge ---
    p_merge = subparsers.add_parser("merge", help="Merge collected coverage files into a hit map")
    p_merge.add_argument("json_files", nargs="+", help="CodeCoverage JSON files")
    p_merge.add_argument(
        "--out", "-o", default="stdout", help="Output: may be a file or stdout (default: stdout)"
    )
    p_merge.add_argument(
        "--coverage-data", default=None, help="Also write executed lines to a coverage.py data file"
    )
    p_merge.set_defaults(func=cmd_merge)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    configure_logging(debug=args.debug, verbose=args.verbose, quiet=args.quiet)
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
