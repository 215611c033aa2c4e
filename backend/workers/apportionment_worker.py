"""
Apportionment Worker - consumes queue:apportion

Job: {project_id}

Recomputes the project's automatic attestations. Recomputation is a full
replacement, so duplicate jobs only cost time.
"""
import asyncio
import logging

import asyncpg

from config import create_job_queue, create_postgres_pool
from repositories import (
    ActivityRepository,
    AttestationRepository,
    EvidenceRepository,
    PayrollRepository,
)
from services.apportionment_service import ApportionmentService
from services.job_queue import QUEUE_APPORTION, JobQueue
from services.worker_base import BaseWorker

logger = logging.getLogger(__name__)


class ApportionmentWorker(BaseWorker):

    def __init__(self, pool: asyncpg.Pool, job_queue: JobQueue, service: ApportionmentService = None):
        super().__init__(pool, job_queue, worker_name='apportion', queue_name=QUEUE_APPORTION)
        self.service = service or ApportionmentService(
            EvidenceRepository(pool),
            ActivityRepository(pool),
            AttestationRepository(pool),
            PayrollRepository(pool),
        )

    async def get_state(self, job: dict) -> dict:
        return {'project_id': job.get('project_id')}

    async def should_process(self, state: dict):
        if not state['project_id']:
            return False, 'job has no project_id'
        return True, ''

    async def process(self, job: dict, state: dict):
        return await self.service.recompute(state['project_id'])


async def run_apportionment_worker():
    pool = await create_postgres_pool()
    job_queue = await create_job_queue()
    worker = ApportionmentWorker(pool, job_queue)
    try:
        await worker.start()
    finally:
        await job_queue.close()
        await pool.close()


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(name)s] %(levelname)s: %(message)s'
    )
    asyncio.run(run_apportionment_worker())
