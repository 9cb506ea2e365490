from __future__ import annotations

import argparse
import asyncio
import os
import shutil
from typing import Mapping, Sequence

from rich.console import Console
from rich.markup import escape

from rainbowpty import __version__
from rainbowpty.ansi import RainbowStream
from rainbowpty.log import LOG_FILENAME, file_logging
from rainbowpty.paths import get_config, get_log
from rainbowpty.rainbow import COLOR_MODES, ColorPhase
from rainbowpty.settings import Schema, Settings, SettingsError, load_settings
from rainbowpty.settings_schema import SCHEMA
from rainbowpty.shell import Session, SessionError

DEFAULT_SHELL = "/bin/sh"

DESCRIPTION = """\
Run a command (by default your shell) in a pseudo-terminal, and color
its output with a shifting rainbow. Escape sequences pass through
unmodified, so full-screen programs keep working.
"""


class ProgramNotFound(Exception):
    """The program doesn't exist, or isn't executable."""


def resolve_program(name: str, path: str | None = None) -> str:
    """Find the executable for a program.

    Names containing a path separator are used as-is, otherwise each
    directory in the search path is checked.

    Args:
        name: Program name or path.
        path: Search path (defaults to $PATH).

    Raises:
        ProgramNotFound: If there is no executable for the name.

    Returns:
        Path to the executable.
    """
    if (program := shutil.which(name, path=path)) is None:
        raise ProgramNotFound(f"{name}: command not found or not executable")
    return program


def default_shell(settings: Settings, environ: Mapping[str, str]) -> str:
    """Get the program to run when no command is given."""
    return (
        settings.get("shell.command", str) or environ.get("SHELL") or DEFAULT_SHELL
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rainbowpty",
        description=DESCRIPTION,
        epilog=f"Settings are read from {get_config() / 'settings.json'}",
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument(
        "--colors",
        choices=list(COLOR_MODES),
        help="color mode (default from settings: truecolor)",
    )
    parser.add_argument("--frequency", type=float, help="gradient frequency")
    parser.add_argument("--spread", type=float, help="gradient spread")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help=f"log level (logs are written to {get_log() / LOG_FILENAME})",
    )
    parser.add_argument("command", nargs="?", help="program to run (default: $SHELL)")
    parser.add_argument(
        "arguments", nargs=argparse.REMAINDER, help="arguments for the program"
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Run rainbowpty.

    Args:
        argv: Command line arguments, or `None` for `sys.argv`.

    Returns:
        Exit code.
    """
    args = build_parser().parse_args(argv)
    console = Console(stderr=True, highlight=False)

    # The level is refined once settings are loaded
    log_path = get_log() / LOG_FILENAME
    with file_logging(args.log_level or "WARNING", log_path) as logger:
        try:
            settings_path = get_config() / "settings.json"
            settings = load_settings(Schema(SCHEMA), settings_path)
            logger.setLevel(args.log_level or settings.get("logging.level", str))
            frequency = args.frequency
            if frequency is None:
                frequency = settings.get("rainbow.frequency", float)
            spread = args.spread
            if spread is None:
                spread = settings.get("rainbow.spread", float)
            stream = RainbowStream(
                ColorPhase.random(frequency, spread),
                colors=args.colors or settings.get("rainbow.colors", str),
                max_sequence=settings.get("parser.max_sequence", int),
            )
            program = resolve_program(
                args.command or default_shell(settings, os.environ)
            )
        except (SettingsError, ProgramNotFound, ValueError) as error:
            logger.error("%s", error)
            console.print(f"[b]rainbowpty:[/b] {escape(str(error))}", soft_wrap=True)
            return 1

        session = Session(program, args.arguments, stream, env=os.environ.copy())
        try:
            asyncio.run(session.run())
        except SessionError as error:
            console.print(f"[b]rainbowpty:[/b] {escape(str(error))}", soft_wrap=True)
            return 1
    return 0
