"""Command-line entry point: run the scenario suite against a chat server."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from typing import List, TextIO

import aiohttp

from .config import HarnessConfig, UserConfig, load_config
from .errors import ConfigError, FixtureError
from .fixtures import prepare_config
from .report import SuiteReport
from .runner import run_suite
from .suite import build_suite
from .verify import verify

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def _parse_user(value: str) -> UserConfig:
    name, sep, token = value.partition("=")
    if not sep or not name or not token:
        raise argparse.ArgumentTypeError(f"expected NAME=TOKEN, got {value!r}")
    return UserConfig(name=name, token=token)


def _parse_room(value: str):
    return int(value) if value.isdigit() else value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chat-harness",
        description="Drive a room-scoped chat server through multi-client scenarios and verify delivery.",
    )
    parser.add_argument("--config", type=str, default=None, help="Path to a JSON config file")
    parser.add_argument("--endpoint", type=str, default=None, help="Websocket endpoint of the server under test")
    parser.add_argument("--api-base", type=str, default=None, help="HTTP API base used to obtain tokens and rooms")
    parser.add_argument(
        "--user",
        type=_parse_user,
        action="append",
        default=[],
        metavar="NAME=TOKEN",
        help="Simulated user (repeatable; replaces users from the config file)",
    )
    parser.add_argument(
        "--room",
        type=_parse_room,
        action="append",
        default=[],
        help="Room id to use (repeatable; replaces rooms from the config file)",
    )
    parser.add_argument("--timeout-ms", type=int, default=None, help="Deadline for each scenario")
    parser.add_argument("--settle-ms", type=int, default=None, help="Base settle window between steps")
    parser.add_argument(
        "--close-timeout-ms", type=int, default=None, help="Bound on each close handshake during shutdown"
    )
    echo = parser.add_mutually_exclusive_group()
    echo.add_argument("--expect-echo", dest="expect_echo", action="store_true", default=None)
    echo.add_argument("--no-expect-echo", dest="expect_echo", action="store_false")
    parser.add_argument(
        "--scenario",
        action="append",
        default=[],
        help="Only run the named scenario (repeatable)",
    )
    parser.add_argument("--json-out", type=str, default=None, help="Write the report to a JSON file")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (DEBUG, INFO, WARNING, ...)")
    return parser


def build_config(args: argparse.Namespace) -> HarnessConfig:
    config = load_config(args.config) if args.config else HarnessConfig()
    config = config.with_env()

    updates = {}
    if args.endpoint:
        updates["endpoint"] = args.endpoint
    if args.api_base:
        updates["api_base"] = args.api_base
    if args.user:
        updates["users"] = list(args.user)
    if args.room:
        updates["rooms"] = list(args.room)
    if args.timeout_ms is not None:
        if args.timeout_ms <= 0:
            raise ConfigError("--timeout-ms must be positive")
        updates["timeout_ms"] = args.timeout_ms
    if args.settle_ms is not None:
        if args.settle_ms < 0:
            raise ConfigError("--settle-ms must not be negative")
        updates["settle_ms"] = args.settle_ms
    if args.close_timeout_ms is not None:
        if args.close_timeout_ms <= 0:
            raise ConfigError("--close-timeout-ms must be positive")
        updates["close_timeout_ms"] = args.close_timeout_ms
    if args.expect_echo is not None:
        updates["expect_echo"] = args.expect_echo
    return replace(config, **updates) if updates else config


async def run(config: HarnessConfig, scenario_names: List[str] | None = None) -> SuiteReport:
    async with aiohttp.ClientSession() as session:
        config = await prepare_config(config, session)
        suite = build_suite(config).select(scenario_names)
        results = await run_suite(config, suite.scenarios, session=session)
    return SuiteReport(scenarios=[verify(result) for result in results], skipped=dict(suite.skipped))


def main(argv: List[str] | None = None, output: TextIO | None = None) -> int:
    output = output or sys.stdout
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = build_config(args)
        report = asyncio.run(run(config, args.scenario))
    except (ConfigError, FixtureError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_CONFIG

    print(report.render(), file=output)
    if args.json_out:
        with open(args.json_out, "w", encoding="utf-8") as handle:
            json.dump(report.to_dict(), handle, indent=2)

    return EXIT_OK if report.passed else EXIT_FAILED


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
