"""
Domain errors raised by services and translated to HTTP responses by routers
"""


class EvidenceNotFound(Exception):
    def __init__(self, evidence_id: str):
        super().__init__(f"Evidence not found: {evidence_id}")
        self.evidence_id = evidence_id


class ActivityNotFound(Exception):
    def __init__(self, activity_id: str):
        super().__init__(f"Activity not found: {activity_id}")
        self.activity_id = activity_id


class InvalidAttestation(ValueError):
    """Attestation values that cannot be stored"""
