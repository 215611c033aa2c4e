"""
Classification Worker - consumes queue:classify

Job: {evidence_id}

Assigns a systematic step to one evidence item. Idempotent: items that
were already classified, or whose step was set by a human, are skipped.
An Unclassified result is stored as Unknown so the item is not retried.
A changed step on linked evidence moves apportionment weights, so an
apportion task is queued for the project.
"""
import asyncio
import logging

import asyncpg

from config import create_job_queue, create_postgres_pool, get_settings
from models.domain import Classified, StepSource, SystematicStep
from repositories import EvidenceRepository
from services.job_queue import QUEUE_CLASSIFY, JobQueue
from services.step_classifier import StepClassifier
from services.worker_base import BaseWorker

logger = logging.getLogger(__name__)


class ClassificationWorker(BaseWorker):

    def __init__(
        self,
        pool: asyncpg.Pool,
        job_queue: JobQueue,
        classifier: StepClassifier = None,
        evidence_repo: EvidenceRepository = None,
    ):
        super().__init__(pool, job_queue, worker_name='classify', queue_name=QUEUE_CLASSIFY)
        self.classifier = classifier or StepClassifier(get_settings())
        self.evidence_repo = evidence_repo or EvidenceRepository(pool)

    async def get_state(self, job: dict) -> dict:
        evidence = None
        if job.get('evidence_id'):
            evidence = await self.evidence_repo.get_by_id(job['evidence_id'])
        return {'evidence': evidence}

    async def should_process(self, state: dict):
        evidence = state['evidence']
        if evidence is None:
            return False, 'evidence not found'
        if evidence.soft_deleted:
            return False, f'{evidence.id} is deleted'
        if evidence.step_source == StepSource.MANUAL:
            return False, f'{evidence.id} step set manually'
        if evidence.classified_at is not None:
            return False, f'{evidence.id} already classified'
        return True, ''

    async def process(self, job: dict, state: dict):
        evidence = state['evidence']
        result = await self.classifier.classify(evidence.content)

        if isinstance(result, Classified):
            step = result.step
            logger.info(f"[{self.worker_name}] {evidence.id} -> {step.value} ({result.confidence:.2f})")
        else:
            step = SystematicStep.UNKNOWN
            logger.info(f"[{self.worker_name}] {evidence.id} unclassified: {result.reason}")

        updated = await self.evidence_repo.update_classification(evidence.id, step)
        if updated and evidence.is_linked and step != evidence.systematic_step:
            await self.job_queue.submit_apportion(evidence.project_id)
        return result


async def run_classification_worker():
    pool = await create_postgres_pool()
    job_queue = await create_job_queue()
    worker = ClassificationWorker(pool, job_queue)
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
    asyncio.run(run_classification_worker())
