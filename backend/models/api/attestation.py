"""
Pydantic models for attestation endpoints
"""

from datetime import date
from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, Dict, Any

from models.domain import AmountType, MonthlyAttestation
from utils.datetime_utils import parse_month


class AttestationCreate(BaseModel):
    """Human-entered share of a person's month"""
    person_identifier: str = Field(min_length=1)
    person_email: Optional[str] = None
    month: date
    activity_id: Optional[str] = None  # None = Unallocated
    amount_type: AmountType
    amount_value: float = Field(ge=0)
    note: Optional[str] = None

    @field_validator('month', mode='before')
    @classmethod
    def normalise_month(cls, v):
        month = parse_month(v)
        if month is None:
            raise ValueError("month must be YYYY-MM or YYYY-MM-DD")
        return month

    @field_validator('person_identifier')
    @classmethod
    def normalise_person(cls, v: str) -> str:
        v = v.strip().lower()
        if not v:
            raise ValueError("person_identifier is required")
        return v

    @model_validator(mode='after')
    def check_percent(self):
        if self.amount_type == AmountType.PERCENT and self.amount_value > 100:
            raise ValueError("percent amount_value must be between 0 and 100")
        return self


class AttestationResponse(BaseModel):
    """Response model for an attestation"""
    id: str
    project_id: str
    person_identifier: str
    person_email: Optional[str]
    month: str
    activity_id: Optional[str]
    activity_name: Optional[str]
    amount_type: str
    amount_value: float
    confidence_score: Optional[float]
    evidence_count: int
    total_evidence: int
    calculation_basis: Dict[str, Any]
    note: Optional[str]
    created_by: Optional[str]
    created_at: Optional[str]

    @classmethod
    def from_domain(cls, att: MonthlyAttestation) -> 'AttestationResponse':
        return cls(
            id=att.id,
            project_id=att.project_id,
            person_identifier=att.person_identifier,
            person_email=att.person_email,
            month=att.month.isoformat(),
            activity_id=att.activity_id,
            activity_name=att.activity_name,
            amount_type=att.amount_type.value,
            amount_value=att.amount_value,
            confidence_score=att.confidence_score,
            evidence_count=att.evidence_count,
            total_evidence=att.total_evidence,
            calculation_basis=att.calculation_basis,
            note=att.note,
            created_by=att.created_by,
            created_at=att.created_at.isoformat() if att.created_at else None,
        )
