"""
Scheduler Worker
Runs the registered periodic jobs.

Run as separate process:
    python -m leadflow.workers.scheduler_worker
"""
import asyncio
import logging
import time
from typing import Dict, Optional, Sequence

from dotenv import load_dotenv

from leadflow.core.config import get_settings
from leadflow.core.container import Container, build_container
from leadflow.core.logging import configure_logging
from leadflow.workers.consumer_worker import install_signal_handlers
from leadflow.workers.jobs import JOBS, JobDescriptor

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


class SchedulerWorker:
    """
    Runs each job every interval_seconds.

    Intervals come from the registry and can be overridden per job under
    jobs.<job_name>.interval_seconds in the YAML config. A failing job is
    logged and retried at its next interval; it does not stop the others.
    """

    TICK_INTERVAL = 1.0

    def __init__(
        self,
        container: Container,
        jobs: Sequence[JobDescriptor] = JOBS,
        tick_interval: Optional[float] = None
    ):
        self.container = container
        self.jobs = list(jobs)
        self.tick_interval = self.TICK_INTERVAL if tick_interval is None else tick_interval
        self.running = False

        self._next_run: Dict[str, float] = {}
        self._runs: Dict[str, int] = {job.name: 0 for job in self.jobs}
        self._failures: Dict[str, int] = {job.name: 0 for job in self.jobs}

    def interval_for(self, job: JobDescriptor) -> float:
        override = self.container.config.get(f"{job.config_key}.interval_seconds")
        return float(override) if override is not None else float(job.interval_seconds)

    async def run_due(self, now: Optional[float] = None) -> int:
        """Run every job whose next run time has passed."""
        now = time.monotonic() if now is None else now
        ran = 0

        for job in self.jobs:
            if now < self._next_run.get(job.name, 0.0):
                continue

            self._next_run[job.name] = now + self.interval_for(job)
            await self.run_job(job)
            ran += 1

        return ran

    async def run_job(self, job: JobDescriptor) -> None:
        try:
            result = await job.handler(self.container)
            self._runs[job.name] += 1
            logger.info(f"Job {job.name} finished: {result}")
        except Exception as e:
            self._failures[job.name] += 1
            logger.error(f"Job {job.name} failed: {e}", exc_info=True)

    async def run(self) -> None:
        self.running = True
        logger.info(f"Scheduler started with jobs: {', '.join(j.name for j in self.jobs)}")

        while self.running:
            try:
                await self.run_due()
                await asyncio.sleep(self.tick_interval)
            except asyncio.CancelledError:
                logger.info("Scheduler received cancellation signal")
                break

        self.running = False
        logger.info("Scheduler stopped")

    def stop(self) -> None:
        self.running = False

    def get_stats(self) -> dict:
        return {
            "running": self.running,
            "runs": dict(self._runs),
            "failures": dict(self._failures),
        }


async def main() -> None:
    """Entry point for running the scheduler as a separate process."""
    settings = get_settings()
    configure_logging(settings.log_level)

    container = build_container(settings)
    scheduler = SchedulerWorker(container)
    install_signal_handlers(scheduler.stop)

    try:
        await scheduler.run()
    except KeyboardInterrupt:
        logger.info("Scheduler interrupted by user")
    finally:
        await container.close()


if __name__ == "__main__":
    asyncio.run(main())
