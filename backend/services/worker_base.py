"""
Base worker class for queue consumers

Worker loop: BRPOP a job, load the state it refers to, decide whether it
still needs doing, do it. Handlers must tolerate duplicates because the
queue is at-least-once.
"""
import asyncio
import signal
import logging
from typing import Optional, Tuple

import asyncpg

from services.job_queue import JobQueue

logger = logging.getLogger(__name__)


class BaseWorker:
    """
    Base class for all queue workers

    - Signal handling (graceful shutdown)
    - Processed / failed counters
    - A failed job is logged and counted; the loop keeps consuming

    Subclasses implement get_state, should_process and process.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        job_queue: JobQueue,
        worker_name: str,
        queue_name: str
    ):
        self.pool = pool
        self.job_queue = job_queue
        self.worker_name = worker_name
        self.queue_name = queue_name
        self.running = False
        self.jobs_processed = 0
        self.jobs_skipped = 0
        self.jobs_failed = 0

    async def start(self):
        """
        Main worker loop

        Continuously:
        1. BRPOP from queue (blocks until job available)
        2. Fetch current state from PostgreSQL
        3. Skip if the job no longer applies
        4. Process
        """
        self._setup_signal_handlers()

        self.running = True
        logger.info(f"[{self.worker_name}] Started, listening on {self.queue_name}")

        while self.running:
            try:
                job = await self.job_queue.dequeue(self.queue_name, timeout=5)

                if job:
                    logger.debug(f"[{self.worker_name}] Received job: {job}")
                    await self.run_job(job)

            except asyncio.CancelledError:
                logger.info(f"[{self.worker_name}] Received cancellation signal")
                break
            except Exception as e:
                logger.error(f"[{self.worker_name}] Worker loop error: {e}", exc_info=True)
                await asyncio.sleep(1)

        logger.info(
            f"[{self.worker_name}] Shutting down. "
            f"Processed: {self.jobs_processed}, Skipped: {self.jobs_skipped}, Failed: {self.jobs_failed}"
        )

    async def run_job(self, job: dict) -> Optional[dict]:
        """
        Handle one job with failure isolation.

        Returns:
            Whatever process() returned, or None if skipped or failed
        """
        try:
            state = await self.get_state(job)
            should_process, why = await self.should_process(state)

            if not should_process:
                self.jobs_skipped += 1
                logger.info(f"[{self.worker_name}] Skipping job: {why}")
                return None

            result = await self.process(job, state)
            self.jobs_processed += 1
            return result

        except Exception as e:
            self.jobs_failed += 1
            await self.handle_error(job, e)
            return None

    def _setup_signal_handlers(self):
        """Setup graceful shutdown on SIGTERM/SIGINT"""
        def shutdown_handler(signum, frame):
            logger.info(f"[{self.worker_name}] Received signal {signum}, shutting down...")
            self.running = False

        signal.signal(signal.SIGTERM, shutdown_handler)
        signal.signal(signal.SIGINT, shutdown_handler)

    async def process(self, job: dict, state: dict):
        """Do the work. The return value is handed back by run_job."""
        raise NotImplementedError(f"{self.__class__.__name__} must implement process()")

    async def should_process(self, state: dict) -> Tuple[bool, str]:
        """
        Decide whether the job still applies

        Default: always process.

        Returns:
            (should_process, reason when skipping)
        """
        return True, ''

    async def get_state(self, job: dict) -> dict:
        """Load whatever the job refers to; a job only carries ids."""
        raise NotImplementedError(f"{self.__class__.__name__} must implement get_state()")

    async def handle_error(self, job: dict, error: Exception):
        """Log the failure. The job is not re-queued."""
        logger.error(
            f"[{self.worker_name}] Error processing job {job}: {error}",
            exc_info=True
        )
