"""
Auto-Link Runner - apply the decision engine to a project's evidence

Loads a project's activities and candidate evidence, enforces the rolling
daily attempt budget and the per-run cap, and persists every decision
through an atomic compare-and-set on link_attempted_at. One item failing
never stops the rest of the run.

Budget:
    attempts are counted from link_attempted_at over the last 24 hours. A
    run stamps at most min(max_items_per_run, budget left) items; further
    stampable items are deferred to a later run. Items that end in a
    non-stamping veto (manual link, cooldowns, no activities) are tallied
    but use none of the allowance.
"""
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from repositories import ActivityRepository, EvidenceRepository
from services.auto_link import AutoLinkEngine, AutoLinkPolicy
from services.errors import EvidenceNotFound
from utils.datetime_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

CANDIDATE_LIMIT = 100
DIAGNOSTICS_LIMIT = 20
BUDGET_WINDOW = timedelta(hours=24)


@dataclass
class RunSummary:
    """Counts for one auto-link run"""
    project_id: str
    linked: int = 0
    processed: int = 0
    deferred: int = 0
    failed: int = 0
    conflicts: int = 0
    vetoed: Counter = field(default_factory=Counter)
    linked_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'project_id': self.project_id,
            'linked': self.linked,
            'processed': self.processed,
            'deferred': self.deferred,
            'vetoed': dict(self.vetoed),
            'failed': self.failed,
            'conflicts': self.conflicts,
        }


class AutoLinkRunner:
    """
    Orchestrates auto-linking for one project at a time.

    Usage:
        runner = AutoLinkRunner(evidence_repo, activity_repo, policy)
        summary = await runner.run(project_id)
    """

    def __init__(
        self,
        evidence_repo: EvidenceRepository,
        activity_repo: ActivityRepository,
        policy: Optional[AutoLinkPolicy] = None,
    ):
        self.evidence_repo = evidence_repo
        self.activity_repo = activity_repo
        self.policy = policy or AutoLinkPolicy()
        self.engine = AutoLinkEngine(self.policy)

    async def budget(self, project_id: str, now: datetime) -> Dict[str, Any]:
        attempted = await self.evidence_repo.count_attempted_since(project_id, now - BUDGET_WINDOW)
        attempted = attempted or 0
        return {
            'attempted_today': attempted,
            'daily_limit': self.policy.daily_limit,
            'within_budget': attempted < self.policy.daily_limit,
        }

    async def run(
        self,
        project_id: str,
        evidence_ids: Optional[Sequence[str]] = None,
        force: bool = False,
        now: Optional[datetime] = None,
    ) -> RunSummary:
        """
        Evaluate candidate evidence and persist the outcomes.

        Args:
            project_id: Project to process
            evidence_ids: Restrict to these items (default: most recent 100)
            force: Bypass the content-hash gate
            now: Evaluation time (default: current UTC time)

        Returns:
            RunSummary
        """
        now = ensure_utc(now) if now else utcnow()
        summary = RunSummary(project_id=project_id)

        activities = await self.activity_repo.list_for_project(project_id)
        candidates = await self.evidence_repo.list_for_project(
            project_id, evidence_ids=evidence_ids, limit=CANDIDATE_LIMIT
        )
        budget = await self.budget(project_id, now)
        allowance = max(0, min(
            self.policy.max_items_per_run,
            self.policy.daily_limit - budget['attempted_today'],
        ))

        if not activities:
            logger.info(f"[AutoLink] Project {project_id} has no core activities")

        # Only attempts that stamp link_attempted_at count against the allowance
        used = 0
        for evidence in candidates:
            try:
                decision = self.engine.decide(evidence, activities, now, force=force)
            except Exception as e:
                summary.failed += 1
                logger.error(f"[AutoLink] Failed to evaluate {evidence.id}: {e}", exc_info=True)
                continue

            if not decision.stamp_attempt:
                summary.vetoed[decision.outcome] += 1
                continue

            if used >= allowance:
                summary.deferred += 1
                continue

            used += 1
            summary.processed += 1
            try:
                updates = decision.link_updates(now)

                if updates:
                    applied = await self.evidence_repo.compare_and_set_link(
                        evidence.id, evidence.link_attempted_at, updates
                    )
                    if not applied:
                        summary.conflicts += 1
                        logger.info(f"[AutoLink] {evidence.id} changed during evaluation, skipped write")
                        continue

                if decision.linked:
                    summary.linked += 1
                    summary.linked_ids.append(evidence.id)
                    logger.info(
                        f"[AutoLink] Linked {evidence.id} -> {decision.activity_id} "
                        f"(score {decision.score:.2f})"
                    )
                else:
                    summary.vetoed[decision.outcome] += 1

            except Exception as e:
                summary.failed += 1
                logger.error(f"[AutoLink] Failed to process {evidence.id}: {e}", exc_info=True)

        if summary.deferred:
            logger.info(
                f"[AutoLink] Deferred {summary.deferred} items for {project_id} "
                f"(allowance {allowance}, attempted today {budget['attempted_today']})"
            )
        logger.info(f"[AutoLink] Run complete for {project_id}: {summary.to_dict()}")
        return summary

    async def diagnostics(
        self,
        project_id: str,
        evidence_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Read-only gate replay for support.

        Raises:
            EvidenceNotFound: if evidence_id is given but not in the project
        """
        now = ensure_utc(now) if now else utcnow()

        activities = await self.activity_repo.list_for_project(project_id)
        report: Dict[str, Any] = {
            'project_id': project_id,
            'activities': [
                {'id': a.id, 'name': a.name, 'created_at': ensure_utc(a.created_at).isoformat()}
                for a in activities
            ],
            'budget': await self.budget(project_id, now),
            'evidence': [],
            'blocking_issues': [],
        }

        if not activities:
            report['blocking_issues'].append(
                'NO_ACTIVITIES: Project has no core activities. Add at least one activity first.'
            )
            return report

        if evidence_id:
            evidence = await self.evidence_repo.get_by_id(evidence_id, project_id=project_id)
            if evidence is None:
                raise EvidenceNotFound(evidence_id)
            items = [evidence]
        else:
            items = await self.evidence_repo.list_for_project(project_id, limit=DIAGNOSTICS_LIMIT)

        report['evidence'] = [self.engine.diagnose(e, activities, now) for e in items]
        report['summary'] = await self.evidence_repo.linkage_summary(project_id)
        return report
