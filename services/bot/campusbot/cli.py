"""
Command line entry point.

    campusbot server
    campusbot warmup [--modules id,contact,course,program] [--reset]
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

import uvicorn

from common.config import Settings, get_settings

from . import tracing
from .container import Container
from .warmup import parse_modules

logger = logging.getLogger("cli")


def _build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="campusbot", description="Campus information LINE bot")
    sub = parser.add_subparsers(dest="command", required=True)

    server = sub.add_parser("server", help="run the webhook server with background warm-up")
    server.add_argument("--host", default="0.0.0.0")
    server.add_argument("--port", type=int, default=settings.service_port)

    warmup = sub.add_parser("warmup", help="fill the cache from the upstream sites and exit")
    warmup.add_argument(
        "--modules",
        default=",".join(settings.warmup_modules),
        help="comma separated modules (id, contact, course, program)",
    )
    warmup.add_argument("--reset", action="store_true", help="purge the cache before warming")
    return parser


def run_server(settings: Settings, host: str, port: int) -> int:
    problems = settings.validate(require_line=True)
    if problems:
        for p in problems:
            logger.error("Configuration error: %s", p)
        return 2
    from .main import create_app

    uvicorn.run(create_app(settings), host=host, port=port, log_level=settings.log_level.lower())
    return 0


async def _warmup(settings: Settings, modules: List[str], reset: bool) -> int:
    container = Container(settings)
    await container.start(background=False)
    try:
        report = await container.warmup.run(modules, reset=reset, timeout=settings.warmup_timeout)
    finally:
        await container.stop()
    for name, count in sorted(report.counts.items()):
        logger.info("%s: %d record(s)", name, count)
    for err in report.errors:
        logger.error("%s", err)
    return 0 if report.ok else 1


def run_warmup(settings: Settings, modules_arg: str, reset: bool) -> int:
    problems = settings.validate()
    if problems:
        for p in problems:
            logger.error("Configuration error: %s", p)
        return 2
    modules = parse_modules(modules_arg)
    if not modules:
        logger.error("No valid warm-up modules in %r", modules_arg)
        return 2
    return asyncio.run(_warmup(settings, modules, reset))


def main(argv: Optional[List[str]] = None) -> int:
    settings = get_settings()
    tracing.install_log_filter()
    args = _build_parser(settings).parse_args(argv)
    if args.command == "server":
        return run_server(settings, args.host, args.port)
    return run_warmup(settings, args.modules, args.reset)


if __name__ == "__main__":
    sys.exit(main())
