"""
Evidence API router

Ingestion, human linking and soft delete. Linking and classification of
new evidence happen in the background; callers must treat the step and
link fields as eventually consistent.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from redis.exceptions import RedisError

from api.dependencies import get_activity_repo, get_evidence_repo, get_job_queue
from middleware.rate_limit import evidence_rate_limit
from models.api.evidence import EvidenceCreate, EvidenceResponse, ManualLinkRequest
from models.domain import EvidenceItem
from repositories import ActivityRepository, EvidenceRepository
from services.job_queue import JobQueue
from services.term_similarity import content_hash

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/projects/{project_id}/evidence", tags=["evidence"])


@router.post(
    "",
    response_model=EvidenceResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(evidence_rate_limit)],
)
async def create_evidence(
    project_id: str,
    body: EvidenceCreate,
    evidence_repo: EvidenceRepository = Depends(get_evidence_repo),
    job_queue: JobQueue = Depends(get_job_queue),
):
    """
    Log a piece of evidence and queue classification + auto-linking
    """
    if not (body.content and body.content.strip()) and not body.file_ref:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Evidence needs content or a file reference"
        )

    evidence = EvidenceItem(
        id=None,
        project_id=project_id,
        created_at=None,
        author=body.author.strip().lower() if body.author else None,
        content=body.content,
        file_ref=body.file_ref,
        source=body.source,
        content_hash=content_hash(body.content),
        metadata=body.metadata,
    )
    evidence = await evidence_repo.create(evidence)

    # Fire and forget; the workers pick these up
    try:
        await job_queue.submit_classify(evidence.id)
        await job_queue.submit_autolink(project_id, evidence_ids=[evidence.id])
    except (RedisError, OSError) as e:
        logger.error(f"Failed to queue background tasks for {evidence.id}: {e}")

    return EvidenceResponse.from_domain(evidence)


@router.patch("/{evidence_id}/link", response_model=EvidenceResponse)
async def set_link(
    project_id: str,
    evidence_id: str,
    body: ManualLinkRequest,
    evidence_repo: EvidenceRepository = Depends(get_evidence_repo),
    activity_repo: ActivityRepository = Depends(get_activity_repo),
    job_queue: JobQueue = Depends(get_job_queue),
):
    """
    Link evidence to an activity by hand (or unlink with activity_id null).

    The evidence becomes manually linked and auto-linking leaves it alone.
    """
    if body.activity_id:
        activity = await activity_repo.get_by_id(body.activity_id, project_id=project_id)
        if not activity:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Activity not found in this project"
            )

    updated = await evidence_repo.set_manual_link(evidence_id, project_id, body.activity_id)
    if not updated:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Evidence not found")

    try:
        await job_queue.submit_apportion(project_id)
    except (RedisError, OSError) as e:
        logger.error(f"Failed to queue apportionment for {project_id}: {e}")

    evidence = await evidence_repo.get_by_id(evidence_id, project_id=project_id)
    return EvidenceResponse.from_domain(evidence)


@router.delete("/{evidence_id}")
async def delete_evidence(
    project_id: str,
    evidence_id: str,
    evidence_repo: EvidenceRepository = Depends(get_evidence_repo),
    job_queue: JobQueue = Depends(get_job_queue),
):
    """
    Soft-delete evidence; it drops out of linking and apportionment
    """
    deleted = await evidence_repo.soft_delete(evidence_id, project_id)
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Evidence not found")

    try:
        await job_queue.submit_apportion(project_id)
    except (RedisError, OSError) as e:
        logger.error(f"Failed to queue apportionment for {project_id}: {e}")

    return {"deleted": True, "id": evidence_id}
