"""
Monthly attestation domain model
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional, Tuple
from enum import Enum

from utils.id_generator import generate_attestation_id, validate_id


class AmountType(str, Enum):
    PERCENT = "percent"
    HOURS = "hours"


# created_by tags written by the apportionment engine. Anything else is a human.
AUTO_SMART = "auto_smart"
AUTO_GAP_FILL = "auto_gap_fill"
AUTOMATIC_CREATORS = frozenset({AUTO_SMART, AUTO_GAP_FILL})

UNALLOCATED_LABEL = "Unallocated"


@dataclass
class MonthlyAttestation:
    """
    Share of one person's month attributed to one activity

    Storage: PostgreSQL (monthly_attestations table)
    Unique key: (project_id, person_identifier, month, activity_id)

    activity_id None means "Unallocated". calculation_basis is the
    structured explanation (weights, FTE estimate, normalisation flag).

    ID format: at_xxxxxxxx (11 chars)
    """
    id: str
    project_id: str
    person_identifier: str
    month: date  # first of month
    activity_id: Optional[str]
    amount_type: AmountType
    amount_value: float
    created_by: Optional[str] = None

    person_email: Optional[str] = None
    activity_name: Optional[str] = None
    confidence_score: Optional[float] = None
    evidence_count: int = 0
    total_evidence: int = 0
    calculation_basis: dict = field(default_factory=dict)
    note: Optional[str] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.id or not validate_id(self.id):
            self.id = generate_attestation_id()
        self.amount_type = AmountType(self.amount_type)

    @property
    def key(self) -> Tuple[str, date, Optional[str]]:
        """(person, month, activity) identity within a project"""
        return (self.person_identifier, self.month, self.activity_id)

    @property
    def is_automatic(self) -> bool:
        return self.created_by in AUTOMATIC_CREATORS

    @property
    def is_human(self) -> bool:
        return not self.is_automatic
