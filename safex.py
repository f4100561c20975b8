#!/usr/bin/env python3
"""
safex command-line entry point.

``safex <command> [options]`` imports the module that owns the command and
runs its ``main`` with the remaining arguments. Whatever the command, the
process exit status follows one table (see ``safex_errors``):

    0    success
    1    extraction or verification failed
    2    usage error or unexpected failure
    130  cancelled (SIGINT, SIGTERM or --max-time)
"""

from __future__ import annotations

import importlib
import sys
from typing import Callable, Dict, List, NamedTuple, Optional

from safex_errors import (
    EXIT_CANCELLED,
    EXIT_FAILURE,
    EXIT_OK,
    EXIT_USAGE,
    ExtractionError,
    exit_code_for,
)


class Command(NamedTuple):
    module: str
    summary: str


COMMANDS: Dict[str, Command] = {
    "extract": Command("safex_extract", "Safely extract a tar or zip archive"),
    "detect": Command("safex_detect", "Print an archive's format from its magic bytes"),
    "digest": Command("safex_digest", "Compute or verify an archive digest"),
}

EXIT_CODES = [
    (EXIT_OK, "success"),
    (EXIT_FAILURE, "extraction or verification failed"),
    (EXIT_USAGE, "usage error or unexpected failure"),
    (EXIT_CANCELLED, "cancelled"),
]


def usage() -> str:
    width = max(len(name) for name in COMMANDS)
    lines = [
        "usage: safex <command> [options]",
        "",
        "Safe extraction of tar and zip archives.",
        "",
        "commands:",
    ]
    lines.extend(f"  {name:<{width}}  {cmd.summary}" for name, cmd in COMMANDS.items())
    lines.extend(["", "exit codes:"])
    lines.extend(f"  {code:<3}  {meaning}" for code, meaning in EXIT_CODES)
    lines.extend(["", "Run 'safex <command> --help' for the options of one command."])
    return "\n".join(lines)


def _load(name: str) -> Callable[..., Optional[int]]:
    return importlib.import_module(COMMANDS[name].module).main


def run(name: str, argv: List[str]) -> int:
    """Run one subcommand and turn however it ends into a safex exit status."""
    entry = _load(name)
    try:
        result = entry(argv, prog=f"safex {name}")
    except SystemExit as exc:
        # argparse: 0 after --help, 2 on bad arguments
        if exc.code is None:
            return EXIT_OK
        return exc.code if isinstance(exc.code, int) else EXIT_USAGE
    except KeyboardInterrupt:
        print("Cancelled", file=sys.stderr)
        return EXIT_CANCELLED
    except ExtractionError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return exit_code_for(exc)
    except Exception as exc:
        print(f"Error: unexpected {type(exc).__name__}: {exc}", file=sys.stderr)
        return exit_code_for(exc)
    return EXIT_OK if result is None else int(result)


def main(argv: Optional[List[str]] = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    if not argv or argv[0] in {"-h", "--help"}:
        print(usage())
        return EXIT_OK

    name, *rest = argv
    if name not in COMMANDS:
        print(f"Unknown command: {name}", file=sys.stderr)
        print(usage())
        return EXIT_USAGE

    return run(name, rest)


if __name__ == "__main__":
    sys.exit(main())
