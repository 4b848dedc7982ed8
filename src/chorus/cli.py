"""
Command-line interface for chorus.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from .config import get_settings
from .draw import render_dot
from .errors import ChorusError
from .loader import ScenarioLoader
from .scheduler import run
from .transport import LoopbackTransport, echo_actor
from .version import __version__


def build_cli_parser() -> argparse.ArgumentParser:
    cli = argparse.ArgumentParser(prog="chorus", description="Scenario runner for actor-style systems")
    cli.add_argument(
        "--version",
        action="version",
        version=f"chorus {__version__} (Python {sys.version.split()[0]})",
    )
    cli.add_argument("-v", "--verbose", action="count", default=0, help="Increase log verbosity")
    cli.add_argument(
        "-I",
        "--search-path",
        action="append",
        default=[],
        help="Extra directory to look up subroutine files in (repeatable)",
    )
    sub = cli.add_subparsers(dest="command", required=True)

    check_cmd = sub.add_parser("check", help="Load and validate a scenario without running it")
    check_cmd.add_argument("file", type=Path)

    draw_cmd = sub.add_parser("draw", help="Render a scenario graph as Graphviz DOT")
    draw_cmd.add_argument("file", type=Path)
    draw_cmd.add_argument("-o", "--output", type=Path, help="Write DOT here instead of stdout")
    draw_cmd.add_argument("--no-subroutines", action="store_true", help="Do not expand called subroutines")

    run_cmd = sub.add_parser("run", help="Run a scenario against the in-memory loopback transport")
    run_cmd.add_argument("file", type=Path)
    run_cmd.add_argument(
        "--route",
        action="append",
        default=[],
        metavar="TYPE=PARTICIPANT",
        help="Routing table entry for messages sent without a target",
    )
    run_cmd.add_argument("--echo", action="append", default=[], metavar="ACTOR", help="Attach an echo actor")
    run_cmd.add_argument("--json", action="store_true", help="Print the full verdict as JSON")
    run_cmd.add_argument("--no-trace", action="store_true", help="Do not record a run trace")
    return cli


def configure_logging(verbose: int) -> None:
    level = get_settings().log_level
    if verbose == 1:
        level = "INFO"
    elif verbose >= 2:
        level = "DEBUG"
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _parse_routes(entries: list[str]) -> dict[str, str]:
    routes: dict[str, str] = {}
    for entry in entries:
        message_type, sep, participant = entry.partition("=")
        if not sep or not message_type or not participant:
            raise SystemExit(f"Invalid route '{entry}', expected TYPE=PARTICIPANT")
        routes[message_type] = participant
    return routes


def main(argv: list[str] | None = None) -> None:
    cli = build_cli_parser()
    args = cli.parse_args(argv)
    configure_logging(args.verbose)
    loader = ScenarioLoader(get_settings().search_path + list(args.search_path))

    try:
        graph = loader.load(args.file)
    except ChorusError as exc:
        print(json.dumps({"status": "error", "error": exc.to_dict()}, indent=2))
        raise SystemExit(2) from exc

    if args.command == "check":
        summary = {
            "status": "ok",
            "scenario": graph.name,
            "events": len(graph),
            "subroutines": sorted(graph.subroutines),
            "required": [node.name for node in graph.required()],
        }
        print(json.dumps(summary, indent=2))
        return

    if args.command == "draw":
        dot = render_dot(graph, include_subroutines=not args.no_subroutines)
        if args.output:
            args.output.write_text(dot, encoding="utf-8")
        else:
            print(dot, end="")
        return

    if args.command == "run":
        transport = LoopbackTransport(routes=_parse_routes(args.route))
        for actor in args.echo:
            transport.actor(actor, echo_actor)
        verdict = run(graph, transport, record_trace=not args.no_trace)
        if args.json:
            print(json.dumps(verdict.to_dict(), indent=2, default=str))
        else:
            print(verdict.report())
        if not verdict.ok:
            raise SystemExit(1)
        return


if __name__ == "__main__":  # pragma: no cover
    main()
