"""
devreload: serve a static site and reload open pages when sources change.

Usage:
    devreload                                   # serve the current directory
    devreload public -w 'public/**/*'           # reload on any change in public/
    devreload public -w 'src/**/*.js' 'npm run build'
    devreload public -s 'src/**/*.css' 'cp "$FILE" public/' --push-state

Each -w/--watch rule runs its optional command with the changed path in
$FILE; a failing command puts its stderr on every open page. Rules given
with -s/--silent-watch run their command but never notify the browser.

Environment:
    DEV_SERVER_ADDRESS   listen address (default: localhost)
    DEV_SERVER_PORT      listen port (default: 3000)
    DEV_SERVER_LOG_LEVEL logging level (default: INFO)
"""

import argparse
import asyncio
import logging
import os
import sys

from . import __version__
from .server import DEFAULT_HOST, DEFAULT_PORT, DevServer
from .watch import ConfigError, WatchRule


LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"
LOG_DATEFMT = "%H:%M:%S"


# ─────────────────────────────────────────────────────────────────────────────
# CONFIGURATION
# ─────────────────────────────────────────────────────────────────────────────

def env_config(environ=None):
    """Return ``(host, port, log_level)`` from the environment."""
    environ = os.environ if environ is None else environ
    host = environ.get("DEV_SERVER_ADDRESS") or DEFAULT_HOST
    raw_port = environ.get("DEV_SERVER_PORT") or str(DEFAULT_PORT)
    try:
        port = int(raw_port)
    except ValueError:
        raise ConfigError(f"DEV_SERVER_PORT is not a number: {raw_port!r}") from None
    if not 0 <= port <= 65535:
        raise ConfigError(f"DEV_SERVER_PORT out of range: {port}")
    level = (environ.get("DEV_SERVER_LOG_LEVEL") or "INFO").upper()
    if not isinstance(logging.getLevelName(level), int):
        raise ConfigError(f"unknown DEV_SERVER_LOG_LEVEL: {level!r}")
    return host, port, level


def build_parser():
    parser = argparse.ArgumentParser(
        prog="devreload",
        description="Serve a static site and live-reload it when files change.",
    )
    parser.add_argument("root", nargs="?", default=os.getcwd(),
                        help="directory to serve (default: current directory)")
    parser.add_argument("-w", "--watch", action="append", nargs="+", default=[],
                        metavar=("PATTERN", "COMMAND"),
                        help="reload when files matching PATTERN change, "
                             "running COMMAND first if given")
    parser.add_argument("-s", "--silent-watch", action="append", nargs="+", default=[],
                        metavar=("PATTERN", "COMMAND"),
                        help="like --watch but never notify the browser")
    parser.add_argument("--push-state", action="store_true",
                        help="serve index.html for any missing HTML path")
    parser.add_argument("--no-stderr-fails", dest="stderr_fails", action="store_false",
                        help="treat a command that exits 0 as successful "
                             "even if it wrote to stderr")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def _rule(values, silent):
    if len(values) > 2:
        raise ConfigError(
            f"watch rule takes PATTERN [COMMAND], got {len(values)} values: {values!r}"
            " (quote the command)")
    pattern = values[0]
    command = values[1] if len(values) == 2 else None
    return WatchRule(pattern, command, silent)


def rules_from_args(args):
    rules = [_rule(v, silent=False) for v in args.watch]
    rules += [_rule(v, silent=True) for v in args.silent_watch]
    return rules


def setup_logging(level):
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT,
                        stream=sys.stderr)
    # websockets logs every plain HTTP response as a rejected handshake
    logging.getLogger("websockets").setLevel(logging.WARNING)


# ─────────────────────────────────────────────────────────────────────────────
# MAIN
# ─────────────────────────────────────────────────────────────────────────────

def main(argv=None):
    args = build_parser().parse_args(argv)
    try:
        host, port, level = env_config()
        rules = rules_from_args(args)
        server = DevServer(args.root, rules, host=host, port=port,
                           push_state=args.push_state,
                           stderr_fails=args.stderr_fails)
        server.check()
    except ConfigError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    setup_logging(level)
    print(f"Waiting for reloads at http://{host}:{port}")
    for rule in rules:
        command = f" → {rule.command}" if rule.command else ""
        silent = " (silent)" if rule.silent else ""
        print(f"  watching {rule.pattern}{command}{silent}")

    try:
        asyncio.run(server.run())
    except KeyboardInterrupt:
        print("\nServer stopped.")
    except ConfigError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"error: cannot listen on {host}:{port}: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
