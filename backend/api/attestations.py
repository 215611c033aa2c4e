"""
Attestations API router

Human attestations are written here directly. Automatic ones are only
written by the apportionment worker; this router can ask for a recompute
but never computes inline.
"""

import logging
from datetime import datetime, timezone
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Response, status
from redis.exceptions import RedisError

from api.dependencies import (
    get_activity_repo,
    get_attestation_repo,
    get_job_queue,
    get_payroll_repo,
)
from middleware.rate_limit import recompute_rate_limit
from models.api.attestation import AttestationCreate, AttestationResponse
from models.domain import MonthlyAttestation
from repositories import ActivityRepository, AttestationRepository, PayrollRepository
from services.cost_ledger import apportion_ledger, export_csv
from services.job_queue import JobQueue

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/projects/{project_id}", tags=["attestations"])

HUMAN_CREATOR = "user"


@router.get("/attestations", response_model=List[AttestationResponse])
async def list_attestations(
    project_id: str,
    attestation_repo: AttestationRepository = Depends(get_attestation_repo),
):
    attestations = await attestation_repo.list_for_project(project_id)
    return [AttestationResponse.from_domain(a) for a in attestations]


@router.post("/attestations", response_model=AttestationResponse)
async def upsert_attestation(
    project_id: str,
    body: AttestationCreate,
    attestation_repo: AttestationRepository = Depends(get_attestation_repo),
    activity_repo: ActivityRepository = Depends(get_activity_repo),
    job_queue: JobQueue = Depends(get_job_queue),
):
    """
    Create or replace a human attestation for (person, month, activity).

    A human row always takes precedence over the automatic one for the same
    key. A recompute is queued so the remaining automatic rows adapt.
    """
    activity_name = None
    if body.activity_id:
        activity = await activity_repo.get_by_id(body.activity_id, project_id=project_id)
        if not activity:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="activity_id does not belong to this project"
            )
        activity_name = activity.name

    attestation = MonthlyAttestation(
        id=None,
        project_id=project_id,
        person_identifier=body.person_identifier,
        person_email=body.person_email,
        month=body.month,
        activity_id=body.activity_id,
        activity_name=activity_name,
        amount_type=body.amount_type,
        amount_value=round(body.amount_value, 2),
        note=body.note,
        created_by=HUMAN_CREATOR,
    )
    attestation = await attestation_repo.upsert_human(attestation)

    try:
        await job_queue.submit_apportion(project_id)
    except (RedisError, OSError) as e:
        logger.error(f"Failed to queue apportionment for {project_id}: {e}")

    return AttestationResponse.from_domain(attestation)


@router.post(
    "/attestations/recompute",
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(recompute_rate_limit)],
)
async def recompute_attestations(
    project_id: str,
    job_queue: JobQueue = Depends(get_job_queue),
):
    """
    Queue a smart apportionment recompute for the project
    """
    try:
        await job_queue.submit_apportion(project_id)
    except (RedisError, OSError) as e:
        logger.error(f"Failed to queue apportionment for {project_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job queue not available"
        )
    return {"queued": True, "project_id": project_id}


@router.delete("/attestations/{attestation_id}")
async def delete_attestation(
    project_id: str,
    attestation_id: str,
    attestation_repo: AttestationRepository = Depends(get_attestation_repo),
    job_queue: JobQueue = Depends(get_job_queue),
):
    deleted = await attestation_repo.delete(attestation_id, project_id)
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Attestation not found")

    try:
        await job_queue.submit_apportion(project_id)
    except (RedisError, OSError) as e:
        logger.error(f"Failed to queue apportionment for {project_id}: {e}")

    return {"deleted": True, "id": attestation_id}


@router.get("/costs/export")
async def export_costs(
    project_id: str,
    attestation_repo: AttestationRepository = Depends(get_attestation_repo),
    payroll_repo: PayrollRepository = Depends(get_payroll_repo),
    activity_repo: ActivityRepository = Depends(get_activity_repo),
):
    """
    Payroll costs split by attested activity, as CSV
    """
    entries = await payroll_repo.list_for_project(project_id)
    attestations = await attestation_repo.list_for_project(project_id)
    activities = await activity_repo.list_for_project(project_id)

    rows = apportion_ledger(entries, attestations, {a.id: a.name for a in activities})
    filename = f"costs_{project_id}_{datetime.now(timezone.utc).strftime('%Y%m%d')}.csv"

    return Response(
        content=export_csv(rows),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
