"""
Repository Pattern - Storage abstraction layer

Repositories hide storage details (PostgreSQL) from business logic.
Consumers work with domain models, not asyncpg records.

Every repository takes the asyncpg pool in its constructor; the pool is
created once per process (config.create_postgres_pool) and passed in.

- EvidenceRepository: evidence items and their link/classification fields
- ActivityRepository: core activities
- AttestationRepository: monthly attestations (human + automatic)
- PayrollRepository: cost ledger rows, read-only
"""
from .evidence_repository import EvidenceRepository
from .activity_repository import ActivityRepository
from .attestation_repository import AttestationRepository
from .payroll_repository import PayrollRepository

__all__ = [
    'EvidenceRepository',
    'ActivityRepository',
    'AttestationRepository',
    'PayrollRepository',
]
