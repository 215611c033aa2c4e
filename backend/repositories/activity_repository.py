"""
Activity Repository - PostgreSQL storage for core activities

Storage: PostgreSQL (core_activities table)
"""
import logging
from typing import List, Optional

import asyncpg

from models.domain import CoreActivity

logger = logging.getLogger(__name__)


def _row_to_activity(row) -> CoreActivity:
    return CoreActivity(
        id=row['id'],
        project_id=row['project_id'],
        name=row['name'],
        uncertainty=row['uncertainty'] or '',
        created_at=row['created_at'],
    )


class ActivityRepository:
    """
    Repository for CoreActivity domain model
    """

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def get_by_id(self, activity_id: str, project_id: Optional[str] = None) -> Optional[CoreActivity]:
        """
        Retrieve activity by ID, optionally scoped to a project.

        Args:
            activity_id: Activity ID (ca_xxxxxxxx)
            project_id: If given, the activity must belong to this project
        """
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT id, project_id, name, uncertainty, created_at
                FROM core_activities
                WHERE id = $1 AND ($2::text IS NULL OR project_id = $2)
            """, activity_id, project_id)

            return _row_to_activity(row) if row else None

    async def list_for_project(self, project_id: str) -> List[CoreActivity]:
        """
        All activities of a project, oldest first.

        Order matters: auto-link ties go to the earliest activity.
        """
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT id, project_id, name, uncertainty, created_at
                FROM core_activities
                WHERE project_id = $1
                ORDER BY created_at ASC, id ASC
            """, project_id)

            return [_row_to_activity(row) for row in rows]

    async def create(self, activity: CoreActivity) -> CoreActivity:
        """
        Create a new core activity.
        """
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow("""
                INSERT INTO core_activities (id, project_id, name, uncertainty, created_at)
                VALUES ($1, $2, $3, $4, COALESCE($5, NOW()))
                RETURNING created_at
            """, activity.id, activity.project_id, activity.name,
                activity.uncertainty, activity.created_at)

            activity.created_at = row['created_at']
            logger.info(f"Created activity {activity.id} ({activity.name})")
            return activity
