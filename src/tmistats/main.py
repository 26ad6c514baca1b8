#!/usr/bin/env python3
"""
tmi-stats command line.

Collects statistics from a T-Mobile Home Internet gateway.

Usage:
    tmi-stats get
    tmi-stats poll --count 60
    tmi-stats speedtest
    tmi-stats span "moved gateway to the window"
    tmi-stats last -n 20
"""
import argparse
import asyncio
import json
import sys

from . import __version__
from .config_loader import Config
from .display import format_band_row, format_note, format_speed_result, format_speed_test
from .gateway import GatewayClient, GatewayError, Stats, parse_stats
from .logging_setup import get_logger, setup_logging
from .poller import GatewayPoller
from .speedtest import SpeedTestError
from .speedtest import run as run_speedtest
from .storage import NoteType, StatsStore, StoreError, now_ms

logger = get_logger(__name__)


def _summarize(stats: Stats) -> str:
    parts = []
    for generation, info in stats.signal.generations().items():
        parts.append(
            f"{generation} [{','.join(sorted(info.bands))}] "
            f"bars={info.bars} sinr={info.sinr} rsrp={info.rsrp}"
        )
    return "; ".join(parts) or "no signal"


async def cmd_get(cfg: Config, args: argparse.Namespace) -> int:
    """Fetch once and print the raw JSON."""
    async with GatewayClient(cfg.gateway.host, cfg.gateway.request_timeout) as client:
        payload = await client.get_raw_json()
    print(json.dumps(payload, indent=2))

    # Make sure the payload parses; raises with details if it doesn't
    parse_stats(payload)
    return 0


async def cmd_init(cfg: Config, args: argparse.Namespace) -> int:
    async with StatsStore(cfg.storage.path) as store:
        version = await store.get_version()
    logger.info("Stats database ready at %s (schema v%d)", cfg.storage.path, version)
    return 0


async def cmd_poll(cfg: Config, args: argparse.Namespace) -> int:
    """Poll until stopped (or ``--count`` samples), saving each stable sample."""
    async with (
        GatewayClient(cfg.gateway.host, cfg.gateway.request_timeout) as client,
        StatsStore(cfg.storage.path) as store,
    ):
        poller = GatewayPoller.from_config(client, cfg.poll)
        logger.info("Polling %s, saving to %s", client.url, store.db_path)

        saved = 0
        while args.count is None or saved < args.count:
            try:
                stats = await poller.get_next_stable()
                await store.save_signal(stats.signal)
            except (GatewayError, StoreError) as e:
                # One bad iteration shouldn't end a long session
                logger.error("Poll failed: %s", e)
                await asyncio.sleep(cfg.poll.min_wait_ms / 1000)
                continue

            saved += 1
            logger.info("%s", _summarize(stats))

    logger.info("Saved %d samples", saved)
    return 0


async def cmd_speedtest(cfg: Config, args: argparse.Namespace) -> int:
    async with StatsStore(cfg.storage.path) as store:
        started = now_ms()
        result = await run_speedtest(cfg.speedtest.command)
        finished = now_ms()
        await store.save_speed_test(started, finished, result)
    print(format_speed_result(result))
    print(result.result.url)
    return 0


async def cmd_note(cfg: Config, args: argparse.Namespace) -> int:
    note_type = NoteType.SPAN_START if args.command == "span" else NoteType.NOTE
    async with StatsStore(cfg.storage.path) as store:
        await store.save_note(note_type, " ".join(args.text))
    return 0


async def cmd_last(cfg: Config, args: argparse.Namespace) -> int:
    async with StatsStore(cfg.storage.path) as store:
        rows = await store.get_last_stats(args.n)
    for row in rows:
        print(format_band_row(row))
    return 0


async def cmd_notes(cfg: Config, args: argparse.Namespace) -> int:
    async with StatsStore(cfg.storage.path) as store:
        notes = await store.get_notes()
    for note in notes:
        print(format_note(note))
    return 0


async def cmd_speedtests(cfg: Config, args: argparse.Namespace) -> int:
    async with StatsStore(cfg.storage.path) as store:
        records = await store.get_speed_tests()
    for record in records:
        print(format_speed_test(record))
    return 0


COMMANDS = {
    "get": cmd_get,
    "init": cmd_init,
    "poll": cmd_poll,
    "speedtest": cmd_speedtest,
    "note": cmd_note,
    "span": cmd_note,
    "last": cmd_last,
    "notes": cmd_notes,
    "speedtests": cmd_speedtests,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tmi-stats",
        description="Collects statistics from your T-Mobile Home Internet Gateway",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", "-c", help="Path to config JSON")
    parser.add_argument("--host", help="Where to connect to the gateway")
    parser.add_argument("--db", help="Path to the stats database")
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument("--log-file", help="Also write log output to this file")
    parser.add_argument(
        "--quiet",
        "-q",
        action="store_true",
        help="No log output on the console (see --log-file)",
    )

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.add_parser("get", help="Just get and show the stats once")
    sub.add_parser("init", help="Create the stats database (or check its version)")

    poll = sub.add_parser("poll", help="Poll the gateway and save stable samples")
    poll.add_argument("--count", "-n", type=int, help="Stop after this many samples")

    sub.add_parser("speedtest", help="Run a speed test and save the result")

    note = sub.add_parser("note", help="Save a note at the current time")
    note.add_argument("text", nargs="+")
    span = sub.add_parser("span", help="Start a new observation span")
    span.add_argument("text", nargs="+")

    last = sub.add_parser("last", help="Show the most recent band rows")
    last.add_argument("-n", type=int, default=20, help="Number of rows (default: 20)")

    sub.add_parser("notes", help="Show notes and spans")
    sub.add_parser("speedtests", help="Show saved speed tests")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    setup_logging(
        verbose=args.verbose,
        console_output=not args.quiet,
        log_file=args.log_file,
        simple_format=args.command != "poll",
    )

    cfg = Config.load(args.config)
    if args.host:
        cfg.gateway.host = args.host
    if args.db:
        cfg.storage.db_path = args.db

    try:
        return asyncio.run(COMMANDS[args.command](cfg, args))
    except KeyboardInterrupt:
        logger.info("Stopped with Ctrl+C")
        return 0
    except (GatewayError, StoreError, SpeedTestError) as e:
        logger.error("%s", e)
        return 1


def run() -> None:
    """Entry point for the tmi-stats CLI."""
    sys.exit(main())


if __name__ == "__main__":
    run()
