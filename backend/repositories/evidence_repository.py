"""
Evidence Repository - PostgreSQL storage for evidence items

Storage: PostgreSQL (evidence table)

Evidence rows are never physically deleted. Link fields are written either
by a manual link (unconditional) or by the auto-linker through
compare_and_set_link, which refuses to touch manually linked rows and only
applies if nobody else stamped link_attempted_at in the meantime.
"""
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import asyncpg

from models.domain import EvidenceItem, LinkSource, StepSource, SystematicStep

logger = logging.getLogger(__name__)

EVIDENCE_COLUMNS = """
    id, project_id, author, content, file_ref, source,
    systematic_step, step_source, classified_at,
    linked_activity_id, link_source, link_reason,
    link_updated_at, link_attempted_at, content_hash,
    soft_deleted, metadata, created_at
"""

# Columns the auto-linker may write
AUTO_LINK_COLUMNS = (
    'linked_activity_id',
    'link_source',
    'link_reason',
    'link_updated_at',
    'link_attempted_at',
    'content_hash',
)


def _row_to_evidence(row) -> EvidenceItem:
    metadata = row['metadata']
    if isinstance(metadata, str):
        metadata = json.loads(metadata) if metadata else {}

    return EvidenceItem(
        id=row['id'],
        project_id=row['project_id'],
        author=row['author'],
        content=row['content'],
        file_ref=row['file_ref'],
        source=row['source'],
        systematic_step=row['systematic_step'],
        step_source=row['step_source'],
        classified_at=row['classified_at'],
        linked_activity_id=row['linked_activity_id'],
        link_source=row['link_source'],
        link_reason=row['link_reason'],
        link_updated_at=row['link_updated_at'],
        link_attempted_at=row['link_attempted_at'],
        content_hash=row['content_hash'],
        soft_deleted=row['soft_deleted'],
        metadata=metadata or {},
        created_at=row['created_at'],
    )


class EvidenceRepository:
    """
    Repository for EvidenceItem domain model
    """

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    # =========================================================================
    # READ OPERATIONS
    # =========================================================================

    async def get_by_id(self, evidence_id: str, project_id: Optional[str] = None) -> Optional[EvidenceItem]:
        """
        Retrieve evidence by ID, optionally scoped to a project.

        Args:
            evidence_id: Evidence ID (ev_xxxxxxxx)
            project_id: If given, the row must belong to this project

        Returns:
            EvidenceItem or None
        """
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                SELECT {EVIDENCE_COLUMNS}
                FROM evidence
                WHERE id = $1 AND ($2::text IS NULL OR project_id = $2)
            """, evidence_id, project_id)

            return _row_to_evidence(row) if row else None

    async def list_for_project(
        self,
        project_id: str,
        evidence_ids: Optional[Sequence[str]] = None,
        limit: int = 100,
        include_deleted: bool = False,
    ) -> List[EvidenceItem]:
        """
        Evidence for a project, most recent first.

        Args:
            project_id: Project the evidence belongs to
            evidence_ids: Restrict to these IDs when given
            limit: Maximum number of rows
            include_deleted: Include soft-deleted rows

        Returns:
            List of evidence items
        """
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT {EVIDENCE_COLUMNS}
                FROM evidence
                WHERE project_id = $1
                  AND ($2::text[] IS NULL OR id = ANY($2::text[]))
                  AND ($3 OR NOT soft_deleted)
                ORDER BY created_at DESC
                LIMIT $4
            """, project_id, list(evidence_ids) if evidence_ids is not None else None,
                include_deleted, limit)

            return [_row_to_evidence(row) for row in rows]

    async def list_linked_for_apportionment(self, project_id: str) -> List[EvidenceItem]:
        """
        Live, linked evidence with an author: the input to apportionment.
        """
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT {EVIDENCE_COLUMNS}
                FROM evidence
                WHERE project_id = $1
                  AND NOT soft_deleted
                  AND linked_activity_id IS NOT NULL
                  AND author IS NOT NULL
                ORDER BY created_at ASC
            """, project_id)

            return [_row_to_evidence(row) for row in rows]

    async def count_attempted_since(self, project_id: str, since: datetime) -> int:
        """
        Count evidence whose link was attempted at or after `since`.

        Used for the rolling daily auto-link budget.
        """
        async with self.db_pool.acquire() as conn:
            return await conn.fetchval("""
                SELECT COUNT(*) FROM evidence
                WHERE project_id = $1 AND link_attempted_at >= $2
            """, project_id, since)

    async def linkage_summary(self, project_id: str) -> Dict[str, int]:
        """
        Counts of live evidence by link state.

        Returns:
            {total, linked, linked_auto, linked_manual, unlinked}
        """
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT
                    COUNT(*) AS total,
                    COUNT(*) FILTER (WHERE linked_activity_id IS NOT NULL) AS linked,
                    COUNT(*) FILTER (WHERE linked_activity_id IS NOT NULL AND link_source = 'auto') AS linked_auto,
                    COUNT(*) FILTER (WHERE linked_activity_id IS NOT NULL AND link_source = 'manual') AS linked_manual
                FROM evidence
                WHERE project_id = $1 AND NOT soft_deleted
            """, project_id)

            total = row['total'] or 0
            linked = row['linked'] or 0
            return {
                'total': total,
                'linked': linked,
                'linked_auto': row['linked_auto'] or 0,
                'linked_manual': row['linked_manual'] or 0,
                'unlinked': total - linked,
            }

    # =========================================================================
    # CREATE OPERATION
    # =========================================================================

    async def create(self, evidence: EvidenceItem) -> EvidenceItem:
        """
        Insert a new evidence item.

        Returns:
            The evidence with its database-generated created_at
        """
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow("""
                INSERT INTO evidence (
                    id, project_id, author, content, file_ref, source,
                    systematic_step, step_source, content_hash, metadata,
                    created_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb, COALESCE($11, NOW()))
                RETURNING created_at
            """,
                evidence.id,
                evidence.project_id,
                evidence.author,
                evidence.content,
                evidence.file_ref,
                evidence.source.value,
                evidence.systematic_step.value,
                evidence.step_source.value,
                evidence.content_hash,
                json.dumps(evidence.metadata or {}),
                evidence.created_at,
            )

            evidence.created_at = row['created_at']
            logger.info(f"Created evidence {evidence.id} in project {evidence.project_id}")
            return evidence

    # =========================================================================
    # UPDATE OPERATIONS
    # =========================================================================

    async def compare_and_set_link(
        self,
        evidence_id: str,
        expected_attempted_at: Optional[datetime],
        updates: Dict[str, Any],
    ) -> bool:
        """
        Apply auto-link field updates only if nothing changed underneath.

        The write lands only when the row is not manually linked and its
        link_attempted_at still equals the value read before evaluation.

        Args:
            evidence_id: Evidence ID
            expected_attempted_at: link_attempted_at as read before deciding
            updates: Column -> value, restricted to AUTO_LINK_COLUMNS

        Returns:
            True if the row was updated, False on conflict
        """
        unknown = set(updates) - set(AUTO_LINK_COLUMNS)
        if unknown:
            raise ValueError(f"Not an auto-link column: {sorted(unknown)}")
        if not updates:
            return True

        columns = [c for c in AUTO_LINK_COLUMNS if c in updates]
        assignments = ", ".join(f"{col} = ${i + 3}" for i, col in enumerate(columns))
        values = [
            updates[col].value if isinstance(updates[col], LinkSource) else updates[col]
            for col in columns
        ]

        async with self.db_pool.acquire() as conn:
            result = await conn.execute(f"""
                UPDATE evidence
                SET {assignments}
                WHERE id = $1
                  AND link_source <> 'manual'
                  AND link_attempted_at IS NOT DISTINCT FROM $2
            """, evidence_id, expected_attempted_at, *values)

            return result == "UPDATE 1"

    async def set_manual_link(
        self,
        evidence_id: str,
        project_id: str,
        activity_id: Optional[str],
    ) -> bool:
        """
        Record a human link decision. Passing activity_id=None unlinks.

        Either way link_source becomes 'manual', link_reason is cleared
        and automation stops touching the row.

        Returns:
            True if the evidence exists in the project
        """
        async with self.db_pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE evidence
                SET linked_activity_id = $3,
                    link_source = 'manual',
                    link_reason = NULL,
                    link_updated_at = NOW()
                WHERE id = $1 AND project_id = $2
            """, evidence_id, project_id, activity_id)

            updated = result == "UPDATE 1"
            if updated:
                logger.info(f"Manually linked evidence {evidence_id} -> {activity_id}")
            return updated

    async def soft_delete(self, evidence_id: str, project_id: str) -> bool:
        """
        Hide evidence from linking and apportionment.

        Returns:
            True if a live row was marked deleted
        """
        async with self.db_pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE evidence
                SET soft_deleted = true
                WHERE id = $1 AND project_id = $2 AND NOT soft_deleted
            """, evidence_id, project_id)

            deleted = result == "UPDATE 1"
            if deleted:
                logger.info(f"Soft-deleted evidence {evidence_id}")
            return deleted

    async def update_classification(self, evidence_id: str, step: SystematicStep) -> bool:
        """
        Store an automatic step classification.

        A step set by a human is never overwritten.

        Returns:
            True if the row was updated
        """
        async with self.db_pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE evidence
                SET systematic_step = $2,
                    step_source = $3,
                    classified_at = NOW()
                WHERE id = $1 AND step_source <> 'manual'
            """, evidence_id, step.value, StepSource.AUTO.value)

            return result == "UPDATE 1"
