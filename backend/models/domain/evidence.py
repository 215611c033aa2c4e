"""
Evidence domain model
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
from enum import Enum

from utils.id_generator import generate_evidence_id, validate_id


class SystematicStep(str, Enum):
    """Stage of the experimental method an evidence item documents"""
    HYPOTHESIS = "Hypothesis"
    EXPERIMENT = "Experiment"
    OBSERVATION = "Observation"
    EVALUATION = "Evaluation"
    CONCLUSION = "Conclusion"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value) -> 'SystematicStep':
        """Lenient parse; anything unrecognised becomes UNKNOWN"""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class LinkSource(str, Enum):
    """Who set linked_activity_id"""
    NONE = "none"
    AUTO = "auto"
    MANUAL = "manual"


class StepSource(str, Enum):
    """Who set systematic_step"""
    NONE = "none"
    AUTO = "auto"
    MANUAL = "manual"


class EvidenceSource(str, Enum):
    """Ingestion channel"""
    NOTE = "note"
    UPLOAD = "upload"
    EMAIL = "email"
    COMMIT = "commit"


@dataclass
class EvidenceItem:
    """
    Evidence domain model - one timestamped fact logged against a project

    Storage: PostgreSQL (evidence table)

    Link fields (linked_activity_id, link_source, link_reason, link_updated_at,
    link_attempted_at, content_hash) are owned by the auto-link engine unless
    link_source is MANUAL, after which automation never touches them.
    Evidence is never physically deleted; soft_deleted hides it.

    ID format: ev_xxxxxxxx (11 chars)
    """
    id: str
    project_id: str
    created_at: datetime

    author: Optional[str] = None  # email or other person identifier
    content: Optional[str] = None
    file_ref: Optional[str] = None
    source: EvidenceSource = EvidenceSource.NOTE

    # Classification
    systematic_step: SystematicStep = SystematicStep.UNKNOWN
    step_source: StepSource = StepSource.NONE
    classified_at: Optional[datetime] = None

    # Linking
    linked_activity_id: Optional[str] = None
    link_source: LinkSource = LinkSource.NONE
    link_reason: Optional[str] = None
    link_updated_at: Optional[datetime] = None
    link_attempted_at: Optional[datetime] = None
    content_hash: Optional[str] = None

    soft_deleted: bool = False

    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        """Validate and generate ID if needed"""
        if not self.id or not validate_id(self.id):
            self.id = generate_evidence_id()
        self.systematic_step = SystematicStep.parse(self.systematic_step)
        self.link_source = LinkSource(self.link_source or LinkSource.NONE)
        self.step_source = StepSource(self.step_source or StepSource.NONE)

    @property
    def is_linked(self) -> bool:
        return self.linked_activity_id is not None

    @property
    def is_manually_linked(self) -> bool:
        return self.link_source == LinkSource.MANUAL

    @property
    def has_attachment(self) -> bool:
        return bool(self.file_ref)
