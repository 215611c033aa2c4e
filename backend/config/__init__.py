"""
Configuration: settings plus the connection factories built from them.
"""
from .settings import Settings, get_settings
from .database import (
    PoolConfig,
    create_postgres_pool,
    create_job_queue,
    create_redis_client,
)

__all__ = [
    'Settings',
    'get_settings',
    'PoolConfig',
    'create_postgres_pool',
    'create_job_queue',
    'create_redis_client',
]
