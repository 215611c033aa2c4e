"""
Payroll ledger domain model
"""
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional


@dataclass
class PayrollLedgerEntry:
    """
    External payroll fact for one person in one month

    Storage: PostgreSQL (cost_ledger table), written by the payroll import
    outside this service. Read-only input to apportionment.
    """
    person_identifier: str
    month: date  # first of month
    gross_wages: float = 0.0
    superannuation: float = 0.0
    on_costs: float = 0.0
    total_amount: Optional[float] = None

    id: Optional[str] = None
    project_id: Optional[str] = None
    person_email: Optional[str] = None
    person_name: Optional[str] = None
    basis_text: str = ""
    source_file: Optional[str] = None
    uploaded_at: Optional[datetime] = None

    def __post_init__(self):
        if self.total_amount is None:
            self.total_amount = self.gross_wages + self.superannuation + self.on_costs
