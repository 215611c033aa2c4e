"""
Attestation Repository - PostgreSQL storage for monthly attestations

Storage: PostgreSQL (monthly_attestations table)
Unique key: (project_id, person_identifier, month, activity_id), with a NULL
activity_id ("Unallocated") treated as a value.

Human rows are upserted one at a time. Automatic rows are only ever
written as a full replacement set: delete every automatic row of the
project and insert the new set in one transaction. An insert that hits an
existing key (a human row) is skipped, never overwritten.
"""
import json
import logging
from typing import Iterable, List, Optional, Tuple

import asyncpg

from models.domain import AUTOMATIC_CREATORS, MonthlyAttestation

logger = logging.getLogger(__name__)

ATTESTATION_COLUMNS = """
    a.id, a.project_id, a.person_identifier, a.person_email, a.month,
    a.activity_id, a.amount_type, a.amount_value, a.confidence_score,
    a.evidence_count, a.total_evidence, a.calculation_basis, a.note,
    a.created_by, a.created_at, c.name AS activity_name
"""

INSERT_SQL = """
    INSERT INTO monthly_attestations (
        id, project_id, person_identifier, person_email, month,
        activity_id, amount_type, amount_value, confidence_score,
        evidence_count, total_evidence, calculation_basis, note,
        created_by, created_at
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12::jsonb, $13, $14, NOW())
"""


def _row_to_attestation(row) -> MonthlyAttestation:
    basis = row['calculation_basis']
    if isinstance(basis, str):
        basis = json.loads(basis) if basis else {}

    return MonthlyAttestation(
        id=row['id'],
        project_id=row['project_id'],
        person_identifier=row['person_identifier'],
        person_email=row['person_email'],
        month=row['month'],
        activity_id=row['activity_id'],
        activity_name=row['activity_name'],
        amount_type=row['amount_type'],
        amount_value=float(row['amount_value']),
        confidence_score=float(row['confidence_score']) if row['confidence_score'] is not None else None,
        evidence_count=row['evidence_count'] or 0,
        total_evidence=row['total_evidence'] or 0,
        calculation_basis=basis or {},
        note=row['note'],
        created_by=row['created_by'],
        created_at=row['created_at'],
    )


def _insert_args(att: MonthlyAttestation) -> tuple:
    return (
        att.id,
        att.project_id,
        att.person_identifier,
        att.person_email,
        att.month,
        att.activity_id,
        att.amount_type.value,
        att.amount_value,
        att.confidence_score,
        att.evidence_count,
        att.total_evidence,
        json.dumps(att.calculation_basis or {}),
        att.note,
        att.created_by,
    )


class AttestationRepository:
    """
    Repository for MonthlyAttestation domain model
    """

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    # =========================================================================
    # READ OPERATIONS
    # =========================================================================

    async def list_for_project(self, project_id: str, humans_only: bool = False) -> List[MonthlyAttestation]:
        """
        Attestations for a project ordered by month, person, activity name.

        Args:
            project_id: Project ID
            humans_only: Exclude rows written by the apportionment engine
        """
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT {ATTESTATION_COLUMNS}
                FROM monthly_attestations a
                LEFT JOIN core_activities c ON c.id = a.activity_id
                WHERE a.project_id = $1
                  AND (NOT $2 OR a.created_by IS NULL OR NOT (a.created_by = ANY($3::text[])))
                ORDER BY a.month ASC, a.person_identifier ASC, c.name ASC NULLS LAST
            """, project_id, humans_only, sorted(AUTOMATIC_CREATORS))

            return [_row_to_attestation(row) for row in rows]

    async def list_human(self, project_id: str) -> List[MonthlyAttestation]:
        return await self.list_for_project(project_id, humans_only=True)

    # =========================================================================
    # HUMAN WRITES
    # =========================================================================

    async def upsert_human(self, attestation: MonthlyAttestation) -> MonthlyAttestation:
        """
        Insert or replace the row for the attestation's key.

        A human write always wins: it overwrites an automatic row with the
        same key and takes over its identity.
        """
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(INSERT_SQL + """
                ON CONFLICT (project_id, person_identifier, month, activity_id)
                DO UPDATE SET
                    person_email = EXCLUDED.person_email,
                    amount_type = EXCLUDED.amount_type,
                    amount_value = EXCLUDED.amount_value,
                    confidence_score = EXCLUDED.confidence_score,
                    evidence_count = EXCLUDED.evidence_count,
                    total_evidence = EXCLUDED.total_evidence,
                    calculation_basis = EXCLUDED.calculation_basis,
                    note = EXCLUDED.note,
                    created_by = EXCLUDED.created_by,
                    created_at = NOW()
                RETURNING id, created_at
            """, *_insert_args(attestation))

            attestation.id = row['id']
            attestation.created_at = row['created_at']
            logger.info(
                f"Attestation {attestation.id} set by {attestation.created_by}: "
                f"{attestation.person_identifier} {attestation.month} -> {attestation.activity_id}"
            )
            return attestation

    async def delete(self, attestation_id: str, project_id: str) -> bool:
        """
        Delete one attestation.

        Returns:
            True if deleted, False if not found
        """
        async with self.db_pool.acquire() as conn:
            result = await conn.execute("""
                DELETE FROM monthly_attestations
                WHERE id = $1 AND project_id = $2
            """, attestation_id, project_id)

            rows_deleted = int(result.split()[-1])
            if rows_deleted > 0:
                logger.info(f"Deleted attestation {attestation_id}")
                return True
            return False

    # =========================================================================
    # AUTOMATIC REPLACEMENT
    # =========================================================================

    async def replace_automatic(
        self,
        project_id: str,
        attestations: Iterable[MonthlyAttestation],
    ) -> Tuple[int, int]:
        """
        Atomically swap the project's automatic attestations for a new set.

        Args:
            project_id: Project ID
            attestations: Automatic attestations for this project

        Returns:
            (inserted, skipped) where skipped rows collided with a human key
        """
        inserted = 0
        skipped = 0
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                deleted = await conn.execute("""
                    DELETE FROM monthly_attestations
                    WHERE project_id = $1 AND created_by = ANY($2::text[])
                """, project_id, sorted(AUTOMATIC_CREATORS))

                for att in attestations:
                    if att.project_id != project_id:
                        raise ValueError(f"Attestation {att.id} belongs to {att.project_id}, not {project_id}")
                    result = await conn.execute(
                        INSERT_SQL + " ON CONFLICT (project_id, person_identifier, month, activity_id) DO NOTHING",
                        *_insert_args(att),
                    )
                    if result.endswith(" 1"):
                        inserted += 1
                    else:
                        skipped += 1

        logger.info(
            f"Replaced automatic attestations for {project_id}: "
            f"removed {deleted.split()[-1]}, inserted {inserted}, skipped {skipped}"
        )
        return inserted, skipped

    async def get_by_id(self, attestation_id: str, project_id: Optional[str] = None) -> Optional[MonthlyAttestation]:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                SELECT {ATTESTATION_COLUMNS}
                FROM monthly_attestations a
                LEFT JOIN core_activities c ON c.id = a.activity_id
                WHERE a.id = $1 AND ($2::text IS NULL OR a.project_id = $2)
            """, attestation_id, project_id)

            return _row_to_attestation(row) if row else None
