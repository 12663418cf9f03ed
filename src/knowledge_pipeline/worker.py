"""Worker that polls the job queue and runs claimed jobs."""

import asyncio
import logging

from knowledge_pipeline.config.settings import settings
from knowledge_pipeline.pipeline.processor import JobProcessor
from knowledge_pipeline.rate_limiter import SleepFn
from knowledge_pipeline.services import build_services

logging.basicConfig(level=settings.log_level, format=settings.log_format)
logger = logging.getLogger(__name__)


async def run_worker(
    processor: JobProcessor, poll_interval: float = 5, max_jobs: int = 5, sleep: SleepFn = asyncio.sleep
) -> None:
    """Poll for jobs forever. Errors in one pass are logged and the loop continues."""
    logger.info(f"Started polling for jobs every {poll_interval}s, up to {max_jobs} at a time")

    while True:
        try:
            summary = await processor.process_next_jobs(max_jobs)
            if summary.processed:
                logger.info(f"Processed {summary.processed} jobs: {summary.succeeded} ok, {summary.failed} failed")
                # More work may be queued behind the batch just finished.
                continue
        except Exception as e:
            logger.error(f"Job processing pass failed: {e}")

        await sleep(poll_interval)


async def _main() -> None:
    services = await build_services(settings)
    try:
        await run_worker(services.processor, settings.worker_poll_interval, settings.worker_max_jobs)
    finally:
        await services.aclose()


def main() -> None:
    """Entry point for the worker process."""
    asyncio.run(_main())


if __name__ == "__main__":
    main()
