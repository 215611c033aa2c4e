"""
Evidence Attribution Service - FastAPI Backend

Connections are opened once in the lifespan and shared via app.state:
- db_pool       asyncpg pool (repositories)
- rate_limiter  token buckets over a redis.asyncio client
- job_queue     Redis queue for classify / autolink / apportion tasks
"""
import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Add backend to path for API imports
sys.path.insert(0, str(Path(__file__).parent))

from api import attestations, auto_link, evidence
from config import create_job_queue, create_postgres_pool, create_redis_client
from middleware.rate_limit import rate_limit_exceeded_handler
from services.rate_limit import RateLimiter, RateLimitExceeded

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    app.state.db_pool = await create_postgres_pool()
    redis_client = create_redis_client()
    app.state.rate_limiter = RateLimiter(redis_client)
    app.state.job_queue = await create_job_queue()
    logger.info("Connections ready")
    yield
    # Shutdown
    await app.state.job_queue.close()
    await redis_client.aclose()
    await app.state.db_pool.close()
    logger.info("Connections closed")


app = FastAPI(
    title="Evidence Attribution Service",
    description="Evidence linking and labour cost apportionment for R&D claims",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

app.include_router(evidence.router)
app.include_router(auto_link.router)
app.include_router(attestations.router)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/api/health")
async def api_health():
    return {"status": "ok", "service": "evidence_attribution"}


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(name)s] %(levelname)s: %(message)s'
    )
    uvicorn.run(app, host="0.0.0.0", port=8000)
