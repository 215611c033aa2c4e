"""
Domain Models - Storage-agnostic data structures

These models represent the core domain records independent of storage layer.
Engines and workers operate on these models, not raw database rows.

Architecture:
- Domain models are pure Python objects (dataclasses)
- Storage details (PostgreSQL) are abstracted via repositories
- Business logic operates on these models, not database rows

Evidence Attribution Models:
- EvidenceItem: timestamped fact, possibly linked to a CoreActivity
- CoreActivity: technical uncertainty that evidence supports
- MonthlyAttestation: per person/month/activity share of labour
- PayrollLedgerEntry: external payroll fact feeding apportionment
"""

from .evidence import (
    EvidenceItem,
    EvidenceSource,
    LinkSource,
    StepSource,
    SystematicStep,
)
from .activity import CoreActivity
from .attestation import (
    MonthlyAttestation,
    AmountType,
    AUTO_SMART,
    AUTO_GAP_FILL,
    AUTOMATIC_CREATORS,
    UNALLOCATED_LABEL,
)
from .payroll import PayrollLedgerEntry
from .classification import Classified, Unclassified, ClassificationResult

__all__ = [
    # Core records
    'EvidenceItem',
    'CoreActivity',
    'MonthlyAttestation',
    'PayrollLedgerEntry',

    # Enums / tags
    'EvidenceSource',
    'LinkSource',
    'StepSource',
    'SystematicStep',
    'AmountType',
    'AUTO_SMART',
    'AUTO_GAP_FILL',
    'AUTOMATIC_CREATORS',
    'UNALLOCATED_LABEL',

    # Classification
    'Classified',
    'Unclassified',
    'ClassificationResult',
]
