"""
Pydantic models for evidence and auto-link endpoints
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any

from models.domain import EvidenceItem, EvidenceSource


class EvidenceCreate(BaseModel):
    """Request model for logging evidence"""
    author: Optional[str] = None
    content: Optional[str] = Field(default=None, max_length=20000)
    file_ref: Optional[str] = None
    source: EvidenceSource = EvidenceSource.NOTE
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ManualLinkRequest(BaseModel):
    """Human link decision; activity_id None unlinks"""
    activity_id: Optional[str] = None


class AutoLinkRequest(BaseModel):
    """Request model for an auto-link run"""
    project_id: str
    evidence_ids: Optional[List[str]] = Field(default=None, max_length=100)
    force: bool = False


class EvidenceResponse(BaseModel):
    """Response model for an evidence item"""
    id: str
    project_id: str
    author: Optional[str]
    content: Optional[str]
    file_ref: Optional[str]
    source: str
    systematic_step: str
    step_source: str
    linked_activity_id: Optional[str]
    link_source: str
    link_reason: Optional[str]
    link_updated_at: Optional[str]
    soft_deleted: bool
    created_at: str

    @classmethod
    def from_domain(cls, evidence: EvidenceItem) -> 'EvidenceResponse':
        return cls(
            id=evidence.id,
            project_id=evidence.project_id,
            author=evidence.author,
            content=evidence.content,
            file_ref=evidence.file_ref,
            source=evidence.source.value,
            systematic_step=evidence.systematic_step.value,
            step_source=evidence.step_source.value,
            linked_activity_id=evidence.linked_activity_id,
            link_source=evidence.link_source.value,
            link_reason=evidence.link_reason,
            link_updated_at=evidence.link_updated_at.isoformat() if evidence.link_updated_at else None,
            soft_deleted=evidence.soft_deleted,
            created_at=evidence.created_at.isoformat() if evidence.created_at else None,
        )


class AutoLinkRunResponse(BaseModel):
    """Summary of one auto-link run"""
    project_id: str
    linked: int
    processed: int
    deferred: int
    vetoed: Dict[str, int]
    failed: int
    conflicts: int
