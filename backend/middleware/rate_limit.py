"""
Rate limiting for FastAPI routes

The RateLimiter lives on app.state (created in the app lifespan). Routes
either depend on one of the ready-made dependencies below or call
enforce_rate_limits() when the project id only appears in the body.
RateLimitExceeded is rendered as a 429 by rate_limit_exceeded_handler,
registered on the app.
"""
import logging
from typing import List

from fastapi import Request
from fastapi.responses import JSONResponse

from services.rate_limit import (
    CLASSIFY_PER_IP,
    CLASSIFY_PER_PROJECT,
    EVIDENCE_PER_IP,
    EVIDENCE_PER_PROJECT,
    LimitCheck,
    RateLimiter,
    RateLimitExceeded,
    RateLimitResult,
)

logger = logging.getLogger(__name__)

FORWARDED_IP_HEADERS = ('x-real-ip', 'cf-connecting-ip', 'x-vercel-forwarded-for')


def client_ip(request: Request) -> str:
    """
    Best guess at the caller's address.

    First hop of x-forwarded-for, then the single-address proxy headers,
    then the socket peer.
    """
    forwarded = request.headers.get('x-forwarded-for')
    if forwarded:
        first = forwarded.split(',')[0].strip()
        if first:
            return first

    for header in FORWARDED_IP_HEADERS:
        value = request.headers.get(header)
        if value:
            return value.strip()

    if request.client and request.client.host:
        return request.client.host
    return 'unknown'


def get_rate_limiter(request: Request) -> RateLimiter:
    limiter = getattr(request.app.state, 'rate_limiter', None)
    if limiter is None:
        # No store configured: allow everything
        limiter = RateLimiter(client=None)
    return limiter


async def enforce_rate_limits(request: Request, checks: List[LimitCheck]) -> RateLimitResult:
    """
    Raises:
        RateLimitExceeded: if any bucket denies the request
    """
    return await get_rate_limiter(request).enforce(checks)


async def evidence_rate_limit(request: Request, project_id: str) -> RateLimitResult:
    """Dependency for evidence ingestion routes under /api/projects/{project_id}"""
    return await enforce_rate_limits(request, [
        LimitCheck(client_ip(request), EVIDENCE_PER_IP, 'ip'),
        LimitCheck(project_id, EVIDENCE_PER_PROJECT, 'project'),
    ])


async def recompute_rate_limit(request: Request, project_id: str) -> RateLimitResult:
    """Dependency for recomputation routes under /api/projects/{project_id}"""
    return await enforce_rate_limits(request, [
        LimitCheck(client_ip(request), CLASSIFY_PER_IP, 'ip'),
        LimitCheck(project_id, CLASSIFY_PER_PROJECT, 'project'),
    ])


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning(f"Rate limit exceeded for {client_ip(request)} on {request.url.path} ({exc.result.limited_by})")
    return JSONResponse(status_code=429, content=exc.payload(), headers=exc.headers())
