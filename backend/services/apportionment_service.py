"""
Apportionment Service - load, compute, persist

Wraps SmartApportionmentEngine with the project's data and the
attestation table. Recomputes for one project are serialized by an
in-process asyncio.Lock per project; different projects run in parallel.
"""
import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict

from repositories import (
    ActivityRepository,
    AttestationRepository,
    EvidenceRepository,
    PayrollRepository,
)
from services.apportionment import SmartApportionmentEngine

logger = logging.getLogger(__name__)


class ApportionmentService:
    """
    Usage:
        service = ApportionmentService(evidence_repo, activity_repo,
                                       attestation_repo, payroll_repo)
        summary = await service.recompute(project_id)
    """

    def __init__(
        self,
        evidence_repo: EvidenceRepository,
        activity_repo: ActivityRepository,
        attestation_repo: AttestationRepository,
        payroll_repo: PayrollRepository,
        engine: SmartApportionmentEngine = None,
    ):
        self.evidence_repo = evidence_repo
        self.activity_repo = activity_repo
        self.attestation_repo = attestation_repo
        self.payroll_repo = payroll_repo
        self.engine = engine or SmartApportionmentEngine()
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def recompute(self, project_id: str) -> Dict[str, Any]:
        """
        Regenerate the project's automatic attestations.

        Returns:
            Summary dict with counts of what was written and held back
        """
        async with self._locks[project_id]:
            evidence = await self.evidence_repo.list_linked_for_apportionment(project_id)
            activities = await self.activity_repo.list_for_project(project_id)
            payroll = await self.payroll_repo.list_for_project(project_id)
            humans = await self.attestation_repo.list_human(project_id)

            result = self.engine.generate(
                project_id,
                evidence,
                activities,
                payroll=payroll,
                human_attestations=humans,
            )

            inserted, skipped = await self.attestation_repo.replace_automatic(
                project_id, result.attestations
            )

        summary = {
            'project_id': project_id,
            'evidence_used': len(evidence) - result.skipped_evidence,
            'smart': result.smart_count,
            'gap_fill': result.gap_fill_count,
            'inserted': inserted,
            'already_satisfied': skipped + len(result.suppressed),
            'failed_groups': len(result.failed_groups),
        }
        logger.info(f"[Apportionment] Recomputed {project_id}: {summary}")
        return summary
