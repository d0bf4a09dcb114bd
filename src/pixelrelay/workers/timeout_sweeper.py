"""Timeout sweeper worker.

Periodically force-fails tasks stuck past their absolute ceiling and retries
refunds that did not go through when their task failed.
"""

import asyncio

import structlog

from pixelrelay.core.config import Settings
from pixelrelay.services.sweeper import TimeoutSweeper

logger = structlog.get_logger()


async def run_timeout_sweeper(sweeper: TimeoutSweeper, settings: Settings) -> None:
    """Main entry point for the timeout sweeper.

    Runs until asyncio.CancelledError (app shutdown). Errors inside one pass
    are logged and the loop continues after a short back-off.

    Args:
        sweeper: Sweeper wired with the application's completion handler
        settings: Application settings (sweep interval, batch size)
    """
    interval = settings.sweep_interval_seconds
    batch_size = settings.sweep_batch_size

    logger.info(
        "worker.started",
        worker="timeout_sweeper",
        interval=interval,
        batch_size=batch_size,
    )

    try:
        while True:
            try:
                report = await sweeper.sweep(limit=batch_size)
                if report.total:
                    logger.debug(
                        "sweep.pass_done",
                        timed_out=len(report.timed_out),
                        refunds_retried=len(report.refunds_retried),
                        skipped=len(report.skipped),
                    )

            except asyncio.CancelledError:
                raise

            except Exception as e:
                logger.error(
                    "worker.error",
                    worker_type="timeout_sweeper",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(5)

            await asyncio.sleep(interval)

    except asyncio.CancelledError:
        logger.info(
            "worker.stopped",
            worker="timeout_sweeper",
            message="Graceful shutdown requested",
        )
        raise
