"""
Shared FastAPI dependencies

The pool and the job queue are created in the app lifespan (main.py) and
stored on app.state; repositories are cheap wrappers built per request.
"""
from fastapi import HTTPException, Request, status

from config import get_settings
from repositories import (
    ActivityRepository,
    AttestationRepository,
    EvidenceRepository,
    PayrollRepository,
)
from services.auto_link import AutoLinkPolicy
from services.auto_link_runner import AutoLinkRunner
from services.job_queue import JobQueue


def get_db_pool(request: Request):
    pool = getattr(request.app.state, 'db_pool', None)
    if pool is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not available"
        )
    return pool


def get_job_queue(request: Request) -> JobQueue:
    queue = getattr(request.app.state, 'job_queue', None)
    if queue is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job queue not available"
        )
    return queue


def get_evidence_repo(request: Request) -> EvidenceRepository:
    return EvidenceRepository(get_db_pool(request))


def get_activity_repo(request: Request) -> ActivityRepository:
    return ActivityRepository(get_db_pool(request))


def get_attestation_repo(request: Request) -> AttestationRepository:
    return AttestationRepository(get_db_pool(request))


def get_payroll_repo(request: Request) -> PayrollRepository:
    return PayrollRepository(get_db_pool(request))


def get_auto_link_runner(request: Request) -> AutoLinkRunner:
    pool = get_db_pool(request)
    return AutoLinkRunner(
        EvidenceRepository(pool),
        ActivityRepository(pool),
        AutoLinkPolicy.from_settings(get_settings()),
    )
