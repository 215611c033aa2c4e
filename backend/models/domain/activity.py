"""
Core activity domain model
"""
from dataclasses import dataclass
from datetime import datetime

from utils.id_generator import generate_activity_id, validate_id


@dataclass
class CoreActivity:
    """
    A named technical uncertainty under investigation

    Storage: PostgreSQL (core_activities table)

    Target of evidence linking. Only the name may change once evidence
    references the activity.

    ID format: ca_xxxxxxxx (11 chars)
    """
    id: str
    project_id: str
    name: str
    uncertainty: str
    created_at: datetime

    def __post_init__(self):
        if not self.id or not validate_id(self.id):
            self.id = generate_activity_id()

    @property
    def match_text(self) -> str:
        """Text the similarity scorer compares evidence against"""
        return f"{self.name} {self.uncertainty or ''}"
