"""Worker daemon: polls the task table and processes pending tasks.

Usage:
    clipper-worker [--batch-size 5] [--loop-interval 30] [--log-level info] [--log-file worker.log] [--once]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from clipper.core.config import Settings, settings as default_settings

logger = logging.getLogger("clipper.worker")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="clipper-worker", description="Process pending clipper tasks.")
    p.add_argument("--batch-size", type=int, help="Tasks fetched per cycle (BATCH_SIZE).")
    p.add_argument("--loop-interval", type=float, help="Seconds to sleep on an empty queue (LOOP_INTERVAL).")
    p.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        help="Log level (LOG_LEVEL).",
    )
    p.add_argument("--log-file", help="Also write logs to this file.")
    p.add_argument("--once", action="store_true", help="Run a single cycle and exit.")
    return p


def configure_logging(level: str, log_file: str | None = None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, handlers=handlers, force=True)


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    overrides: dict = {}
    if args.batch_size is not None:
        overrides["BATCH_SIZE"] = args.batch_size
    if args.loop_interval is not None:
        overrides["LOOP_INTERVAL"] = args.loop_interval
    if args.log_level is not None:
        overrides["LOG_LEVEL"] = args.log_level
    return settings.model_copy(update=overrides) if overrides else settings


async def run(settings: Settings, *, once: bool = False) -> None:
    from clipper.workers.runtime import build_runtime

    runtime = build_runtime(settings)
    try:
        await runtime.db.create_all()
        scheduler = runtime.scheduler()
        if once:
            fetched = await scheduler.run_once()
            logger.info("Single cycle done, %d task(s) fetched", fetched)
            return

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, scheduler.stop)
            except NotImplementedError:
                # Windows event loops have no signal handler support
                signal.signal(sig, lambda *_: loop.call_soon_threadsafe(scheduler.stop))
        await scheduler.run_forever()
    finally:
        await runtime.close()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = apply_overrides(default_settings, args)
    configure_logging(settings.LOG_LEVEL, args.log_file)

    missing = settings.missing_worker_settings()
    if missing:
        logger.error("Missing required configuration: %s", ", ".join(missing))
        return 1

    logger.info("Starting clipper worker (batch_size=%d)", settings.BATCH_SIZE)
    asyncio.run(run(settings, once=args.once))
    return 0


if __name__ == "__main__":
    sys.exit(main())
