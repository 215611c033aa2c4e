"""
Redis-based job queue for background tasks

Uses LPUSH/BRPOP for efficient queue consumption. Delivery is
at-least-once: a job popped by a worker that then crashes is gone, and
anything that re-submits may deliver twice, so every task handler must be
idempotent.

Queues (one per worker type):
- queue:autolink   → AutoLinkWorker   {project_id, evidence_ids?, force?}
- queue:classify   → ClassificationWorker {evidence_id}
- queue:apportion  → ApportionmentWorker  {project_id}
"""
import json
import logging
from datetime import datetime, timezone
from typing import List, Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)

QUEUE_AUTOLINK = 'queue:autolink'
QUEUE_CLASSIFY = 'queue:classify'
QUEUE_APPORTION = 'queue:apportion'


class JobQueue:
    """
    Redis-based job queue

    Each job is consumed by exactly ONE worker (round-robin over BRPOP).
    Producers call the submit_* helpers and never wait for completion.
    """

    def __init__(self, redis_url: str):
        self.redis: Optional[redis.Redis] = None
        self.redis_url = redis_url

    async def connect(self):
        """Open the client and fail fast if Redis is unreachable"""
        self.redis = redis.from_url(self.redis_url, decode_responses=True)
        await self.redis.ping()
        logger.info(f"[JobQueue] Connected to {self.redis_url.split('@')[-1]}")

    async def close(self):
        if self.redis:
            await self.redis.aclose()
            self.redis = None

    async def enqueue(self, queue_name: str, job: dict):
        """
        Add job to queue

        Example:
            await queue.enqueue('queue:classify', {'evidence_id': 'ev_abc12345'})
        """
        job.setdefault('submitted_at', datetime.now(timezone.utc).isoformat())
        await self.redis.lpush(queue_name, json.dumps(job))

    async def dequeue(self, queue_name: str, timeout: int = 5) -> Optional[dict]:
        """
        BRPOP one job, waiting at most `timeout` seconds.

        Returns None on timeout. A payload that is not valid JSON is logged
        and dropped.
        """
        result = await self.redis.brpop(queue_name, timeout=timeout)
        if not result:
            return None
        _, payload = result
        try:
            return json.loads(payload)
        except json.JSONDecodeError:
            logger.error(f"[JobQueue] Dropping malformed job on {queue_name}: {payload[:200]!r}")
            return None

    async def queue_length(self, queue_name: str) -> int:
        """Get current queue length"""
        return await self.redis.llen(queue_name)

    # =========================================================================
    # TASK HELPERS
    # =========================================================================

    async def submit_autolink(self, project_id: str, evidence_ids: Optional[List[str]] = None, force: bool = False):
        await self.enqueue(QUEUE_AUTOLINK, {
            'project_id': project_id,
            'evidence_ids': evidence_ids,
            'force': force,
        })

    async def submit_classify(self, evidence_id: str):
        await self.enqueue(QUEUE_CLASSIFY, {'evidence_id': evidence_id})

    async def submit_apportion(self, project_id: str):
        await self.enqueue(QUEUE_APPORTION, {'project_id': project_id})
