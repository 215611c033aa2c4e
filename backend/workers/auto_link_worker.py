"""
Auto-Link Worker - consumes queue:autolink

Job: {project_id, evidence_ids?, force?}

Runs the auto-link runner for the project. Duplicate jobs are harmless:
the attempt cooldown and content-hash gates veto re-evaluation, and the
final write is a compare-and-set. When anything got linked, an apportion
task is queued for the project.
"""
import asyncio
import logging

import asyncpg

from config import create_job_queue, create_postgres_pool, get_settings
from repositories import ActivityRepository, EvidenceRepository
from services.auto_link import AutoLinkPolicy
from services.auto_link_runner import AutoLinkRunner
from services.job_queue import QUEUE_AUTOLINK, JobQueue
from services.worker_base import BaseWorker

logger = logging.getLogger(__name__)


class AutoLinkWorker(BaseWorker):

    def __init__(self, pool: asyncpg.Pool, job_queue: JobQueue, runner: AutoLinkRunner = None):
        super().__init__(pool, job_queue, worker_name='autolink', queue_name=QUEUE_AUTOLINK)
        self.runner = runner or AutoLinkRunner(
            EvidenceRepository(pool),
            ActivityRepository(pool),
            AutoLinkPolicy.from_settings(get_settings()),
        )

    async def get_state(self, job: dict) -> dict:
        return {'project_id': job.get('project_id')}

    async def should_process(self, state: dict):
        if not state['project_id']:
            return False, 'job has no project_id'
        return True, ''

    async def process(self, job: dict, state: dict):
        summary = await self.runner.run(
            state['project_id'],
            evidence_ids=job.get('evidence_ids'),
            force=bool(job.get('force')),
        )
        if summary.linked:
            await self.job_queue.submit_apportion(state['project_id'])
        return summary


async def run_auto_link_worker():
    pool = await create_postgres_pool()
    job_queue = await create_job_queue()
    worker = AutoLinkWorker(pool, job_queue)
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
    asyncio.run(run_auto_link_worker())
