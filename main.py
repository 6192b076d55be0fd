import asyncio
import logging
import sys
import argparse
import signal
import functools

from sweepstakes.config import settings
from sweepstakes.database.db import init_db
from sweepstakes.utils.cache import start_cache_cleanup_task
from sweepstakes.webapp.app import setup_webapp, start_webapp


logger = logging.getLogger("sweepstakes")

background_tasks = []
shutdown_event = asyncio.Event()


def handle_shutdown_signal(sig):
    logger.info(f"Received shutdown signal: {sig}")
    shutdown_event.set()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Sweepstakes entry and draw service")
    parser.add_argument("--host", help="Bind address (overrides WEBAPP_HOST)")
    parser.add_argument("--port", type=int, help="Bind port (overrides WEBAPP_PORT)")
    parser.add_argument("--init-db-only", action="store_true", help="Create the schema and exit")
    return parser.parse_args(argv)


async def main(argv=None):
    """Entry point."""
    args = parse_args(argv)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, functools.partial(handle_shutdown_signal, sig))
        except NotImplementedError:
            # add_signal_handler is not available on Windows
            logger.info(f"Signal handler for {sig} is not supported on this platform")

    logger.info(f"Starting sweepstakes service ({settings.ENVIRONMENT})")
    await init_db()
    if args.init_db_only:
        logger.info("Schema created, exiting")
        return

    cleanup_task = asyncio.create_task(start_cache_cleanup_task(), name="cache_cleanup_task")
    background_tasks.append(cleanup_task)

    app = setup_webapp()
    try:
        await start_webapp(app, shutdown_event=shutdown_event, host=args.host, port=args.port)
    finally:
        await shutdown()


async def shutdown():
    """Cancels background tasks."""
    for task in background_tasks:
        if task and not task.done():
            task.cancel()
            try:
                await asyncio.wait_for(task, timeout=5.0)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass
    background_tasks.clear()
    shutdown_event.set()
    logger.info("All background tasks stopped")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        logger.info("Interrupted")
    except Exception as e:
        logger.error(f"Unhandled exception: {e}")
        sys.exit(1)
