"""
Process Runner

Entry point for the long-running and periodic processes of the service.

    broadcast-reliability worker                 consume the priority lanes
    broadcast-reliability recover                one recovery sweep
    broadcast-reliability recover --interval 300 sweep every 5 minutes
    broadcast-reliability housekeeping           one housekeeping sweep
    broadcast-reliability api                    serve the operational API
"""

import asyncio
import signal
import sys

from broadcast_reliability.broadcasting.recovery import summarize
from broadcast_reliability.broadcasting.service import get_broadcast_service
from broadcast_reliability.core.config.constants import Stage
from broadcast_reliability.core.config.settings import get_settings
from broadcast_reliability.core.logging.logger import get_logger, setup_logging
from broadcast_reliability.infrastructure.cache.redis_client import close_redis

logger = get_logger(__name__)


async def run_worker(consumer_name: str | None = None) -> None:
    service = get_broadcast_service()
    await service.initialize()
    consumer = service.create_consumer(consumer_name=consumer_name)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, consumer.stop)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C cancels instead
            pass

    try:
        await consumer.start()
    finally:
        await close_redis()


async def run_sweep(job: str, interval: float | None = None) -> int:
    """
    Run the recovery or housekeeping sweep once, or every ``interval`` seconds.

    Returns:
        Process exit code
    """
    service = get_broadcast_service()
    await service.initialize()
    sweeper = service.recovery if job == "recover" else service.housekeeping

    try:
        while True:
            stats = await sweeper.run()
            if job == "recover":
                print(f"recovery: {summarize(stats)}")
            else:
                print(
                    f"housekeeping: failed_broadcasts_cleaned={stats['failed_broadcasts_cleaned']} "
                    f"analytics_keys_cleaned={stats['analytics_keys_cleaned']} errors={stats['errors']}"
                )
            if not interval:
                return 0
            await asyncio.sleep(interval)
    finally:
        await close_redis()


def run_api(host: str | None = None, port: int | None = None) -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "broadcast_reliability.application.app:create_app",
        factory=True,
        host=host or settings.app.API_HOST,
        port=port or settings.app.API_PORT,
        log_level=settings.logging.LOG_LEVEL.lower(),
    )


def create_parser():
    """Create command-line argument parser."""
    import argparse

    parser = argparse.ArgumentParser(
        prog="broadcast-reliability",
        description="Broadcast reliability layer: lanes, dead letters, recovery and housekeeping",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s worker                        # Consume the priority lanes
  %(prog)s worker --consumer-name w1     # Fixed consumer name in the group
  %(prog)s recover                       # One recovery sweep
  %(prog)s recover --interval 300        # Recovery sweep every 5 minutes
  %(prog)s housekeeping --interval 86400 # Daily cleanup
  %(prog)s api --port 8080               # Operational API
        """,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    worker = subparsers.add_parser("worker", help="Run a lane consumer")
    worker.add_argument("--consumer-name", metavar="NAME", help="Consumer name within the group")

    for name, help_text in (
        ("recover", "Replay recoverable failed broadcasts"),
        ("housekeeping", "Delete old failed broadcasts and analytics counters"),
    ):
        sweep = subparsers.add_parser(name, help=help_text)
        sweep.add_argument(
            "--interval",
            type=float,
            metavar="SECONDS",
            help="Repeat the sweep every SECONDS instead of running once",
        )

    api = subparsers.add_parser("api", help="Serve the operational API")
    api.add_argument("--host", help="Bind address (default: API_HOST)")
    api.add_argument("--port", type=int, help="Bind port (default: API_PORT)")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Application entry point."""
    args = create_parser().parse_args(argv)

    settings = get_settings()
    setup_logging(log_level=settings.logging.LOG_LEVEL, log_format=settings.logging.LOG_FORMAT)
    logger.info("Runner starting", stage=Stage.INITIALIZATION, command=args.command)

    try:
        if args.command == "worker":
            asyncio.run(run_worker(args.consumer_name))
            return 0
        if args.command in ("recover", "housekeeping"):
            return asyncio.run(run_sweep(args.command, args.interval))
        run_api(args.host, args.port)
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted", command=args.command)
        return 130


if __name__ == "__main__":
    sys.exit(main())
