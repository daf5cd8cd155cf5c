"""
CRM Sync Worker
Consumes the sync topic with the CRM sync processor.

Run as separate process:
    python -m leadflow.workers.crm_sync_worker [--concurrency N]
"""
import argparse
import asyncio
import logging
from typing import List

from dotenv import load_dotenv

from leadflow.core.config import get_settings
from leadflow.core.container import Container, build_container
from leadflow.core.logging import configure_logging
from leadflow.workers.consumer_worker import QueueConsumerWorker, default_consumer_id, run_workers

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


def build_sync_workers(container: Container, concurrency: int = 1) -> List[QueueConsumerWorker]:
    settings = container.settings
    return [
        QueueConsumerWorker(
            queue=container.queue,
            topic=settings.sync_topic,
            group=settings.sync_group,
            consumer_id=default_consumer_id("crm-sync", index),
            handler=container.sync_processor.handle,
            sweeper=container.sweeper(settings.sync_topic, settings.sync_group),
            poll_interval=settings.poll_interval,
            sweep_interval=settings.sweep_interval
        )
        for index in range(concurrency)
    ]


async def main(concurrency: int = 1) -> None:
    """Entry point for running the CRM sync worker as a separate process."""
    settings = get_settings()
    configure_logging(settings.log_level)

    container = build_container(settings)
    try:
        await run_workers(build_sync_workers(container, concurrency))
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")
    finally:
        await container.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="CRM sync consumer")
    parser.add_argument("--concurrency", type=int, default=1, help="Consumer tasks in this process")
    args = parser.parse_args()
    asyncio.run(main(args.concurrency))
