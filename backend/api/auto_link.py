"""
Auto-link API router

POST runs the linker synchronously for one project (bounded by the
per-run cap and the daily budget). GET diagnostics replays the gate chain
without writing anything.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from redis.exceptions import RedisError

from api.dependencies import get_auto_link_runner, get_job_queue
from middleware.rate_limit import client_ip, enforce_rate_limits
from models.api.evidence import AutoLinkRequest, AutoLinkRunResponse
from services.auto_link_runner import AutoLinkRunner
from services.errors import EvidenceNotFound
from services.job_queue import JobQueue
from services.rate_limit import CLASSIFY_PER_IP, CLASSIFY_PER_PROJECT, LimitCheck

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/evidence/auto-link", tags=["auto-link"])


@router.post("", response_model=AutoLinkRunResponse)
async def run_auto_link(
    request: Request,
    body: AutoLinkRequest,
    runner: AutoLinkRunner = Depends(get_auto_link_runner),
    job_queue: JobQueue = Depends(get_job_queue),
):
    """
    Link unlinked evidence of a project to its core activities
    """
    await enforce_rate_limits(request, [
        LimitCheck(client_ip(request), CLASSIFY_PER_IP, 'ip'),
        LimitCheck(body.project_id, CLASSIFY_PER_PROJECT, 'project'),
    ])

    summary = await runner.run(body.project_id, evidence_ids=body.evidence_ids, force=body.force)

    if summary.linked:
        try:
            await job_queue.submit_apportion(body.project_id)
        except (RedisError, OSError) as e:
            logger.error(f"Failed to queue apportionment for {body.project_id}: {e}")

    return AutoLinkRunResponse(**summary.to_dict())


@router.get("/diagnostics")
async def auto_link_diagnostics(
    project_id: str = Query(..., min_length=1),
    evidence_id: Optional[str] = Query(None),
    runner: AutoLinkRunner = Depends(get_auto_link_runner),
):
    """
    Gate-by-gate breakdown for up to 20 evidence items (or one, by id)
    """
    try:
        return await runner.diagnostics(project_id, evidence_id=evidence_id)
    except EvidenceNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
