"""
Payroll Repository - read-only access to the cost ledger

Storage: PostgreSQL (cost_ledger + payroll_uploads tables)

The ledger is written by the payroll import, not by this service. Rows are
returned raw and validated by services.payroll_ledger, which drops
anything unusable.
"""
import logging
from typing import List

import asyncpg

from models.domain import PayrollLedgerEntry
from services.payroll_ledger import read_ledger_rows

logger = logging.getLogger(__name__)


class PayrollRepository:
    """
    Repository for PayrollLedgerEntry (read-only)
    """

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def list_for_project(self, project_id: str) -> List[PayrollLedgerEntry]:
        """
        Every usable ledger entry for a project, by month then person.
        """
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT l.id, l.project_id, l.person_identifier, l.person_email,
                       l.person_name, l.month, l.gross_wages, l.superannuation,
                       l.on_costs, l.total_amount, l.basis_text,
                       u.filename AS source_file, u.uploaded_at
                FROM cost_ledger l
                LEFT JOIN payroll_uploads u ON u.id = l.upload_id
                WHERE l.project_id = $1
                ORDER BY l.month ASC, l.person_identifier ASC
            """, project_id)

        entries = read_ledger_rows([dict(row) for row in rows])
        logger.debug(f"Loaded {len(entries)} ledger entries for project {project_id}")
        return entries
