"""
Auto-Link Decision Engine - decide which core activity an evidence item supports

For one evidence item and the project's activities, walk a fixed gate chain.
Each gate may veto before any scoring happens; the first failing gate's
reason is authoritative. Survivors are scored with term-set Jaccard
similarity against every activity and the best one wins.

Gate chain:
1. manual_link       - human links are never re-evaluated
2. soft_deleted      - deleted evidence is ignored
3. content_length    - sanitized content must be >= min length
4. has_activities    - nothing to link to
5. recency_window    - old evidence only when a fresh activity could claim it
6. link_cooldown     - linked recently (any source)
   attempt_cooldown  - attempted recently (linked or not)
7. content_hash      - unchanged since last attempt, unless forced
8. keyword_score     - best Jaccard >= threshold

The engine is pure: it takes `now` explicitly and returns decisions; the
caller (AutoLinkService) owns persistence. diagnose() replays the same gates
without short-circuiting so support can see every gate's state at once.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from config import Settings
from models.domain import CoreActivity, EvidenceItem, LinkSource
from services.term_similarity import (
    content_hash,
    extract_top_terms,
    sanitize_text,
    shared_terms,
    similarity,
    truncate_text,
)
from utils.datetime_utils import days_between, ensure_utc, hours_between

logger = logging.getLogger(__name__)

MAX_LINK_REASON_CHARS = 110


class VetoReason(str, Enum):
    """Machine-readable outcome codes for a gate veto"""
    MANUAL_LINK = "manual_link"
    SOFT_DELETED = "soft_deleted"
    CONTENT_TOO_SHORT = "content_too_short"
    NO_ACTIVITIES = "no_activities"
    OUTSIDE_RECENCY_WINDOW = "outside_recency_window"
    LINK_COOLDOWN = "link_cooldown"
    ATTEMPT_COOLDOWN = "attempt_cooldown"
    ALREADY_EVALUATED = "already_evaluated"
    NO_KEYWORD_OVERLAP = "no_keyword_overlap"
    SCORE_BELOW_THRESHOLD = "score_below_threshold"


LINKED = "linked"

# Vetoes that mean "looked at this recently / cannot touch it". Stamping
# link_attempted_at for these would keep pushing the retry cooldown forward
# under repeated triggers, so they leave the item untouched.
# NO_ACTIVITIES says nothing about the item itself: a stamp would spend the
# daily budget and hold the item in retry cooldown past the moment the
# first activity is created.
NON_STAMPING_VETOES = frozenset({
    VetoReason.MANUAL_LINK,
    VetoReason.NO_ACTIVITIES,
    VetoReason.LINK_COOLDOWN,
    VetoReason.ATTEMPT_COOLDOWN,
    VetoReason.ALREADY_EVALUATED,
})


@dataclass
class AutoLinkPolicy:
    """Thresholds for the gate chain"""
    min_content_length: int = 20
    recency_window_days: float = 60
    backfill_days: float = 14
    cooldown_hours: float = 24
    retry_hours: float = 1
    score_threshold: float = 0.10
    top_terms: int = 5
    daily_limit: int = 100
    max_items_per_run: int = 25

    @classmethod
    def from_settings(cls, settings: Settings) -> 'AutoLinkPolicy':
        return cls(
            min_content_length=settings.autolink_min_content_length,
            recency_window_days=settings.autolink_recency_window_days,
            backfill_days=settings.autolink_backfill_days,
            cooldown_hours=settings.autolink_cooldown_hours,
            retry_hours=settings.autolink_retry_hours,
            score_threshold=settings.autolink_score_threshold,
            top_terms=settings.autolink_top_terms,
            daily_limit=settings.autolink_daily_limit,
            max_items_per_run=settings.autolink_max_items_per_run,
        )


@dataclass
class ActivityScore:
    """Similarity of one evidence item against one activity"""
    activity_id: str
    activity_name: str
    activity_terms: List[str]
    score: float
    matched_terms: List[str]
    passes_threshold: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            'activity_id': self.activity_id,
            'activity_name': self.activity_name,
            'activity_terms': self.activity_terms,
            'matched_terms': self.matched_terms,
            'jaccard_score': round(self.score, 3),
            'passes_threshold': self.passes_threshold,
        }


@dataclass
class GateCheck:
    """Result of one gate, with the values it compared"""
    gate: str
    passed: bool
    reason: Optional[VetoReason] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {'pass': self.passed, **self.details}


@dataclass
class LinkDecision:
    """
    Outcome of running the gate chain on one evidence item.

    `outcome` is LINKED or a VetoReason value. `stamp_attempt` says whether
    the caller should record link_attempted_at for this outcome.
    """
    evidence_id: str
    outcome: str
    activity_id: Optional[str] = None
    score: float = 0.0
    link_reason: Optional[str] = None
    evidence_terms: List[str] = field(default_factory=list)
    scores: List[ActivityScore] = field(default_factory=list)
    content_hash: Optional[str] = None
    stamp_attempt: bool = True

    @property
    def linked(self) -> bool:
        return self.outcome == LINKED

    def link_updates(self, now: datetime) -> Dict[str, Any]:
        """
        Column updates to persist for this decision.

        Empty for non-stamping vetoes. Stamped vetoes only move
        link_attempted_at and content_hash; an existing link stays as it is.
        """
        if not self.stamp_attempt:
            return {}
        updates: Dict[str, Any] = {
            'link_attempted_at': now,
            'content_hash': self.content_hash,
        }
        if self.linked:
            updates.update({
                'linked_activity_id': self.activity_id,
                'link_source': LinkSource.AUTO.value,
                'link_reason': self.link_reason,
                'link_updated_at': now,
            })
        return updates


class AutoLinkEngine:
    """
    Rule-based linker: gate chain + Jaccard scoring.

    Usage:
        engine = AutoLinkEngine(AutoLinkPolicy.from_settings(get_settings()))
        decision = engine.decide(evidence, activities, now=utcnow())
        if decision.stamp_attempt:
            await repo.compare_and_set_link(evidence.id, evidence.link_attempted_at,
                                            decision.link_updates(now))
    """

    def __init__(self, policy: Optional[AutoLinkPolicy] = None):
        self.policy = policy or AutoLinkPolicy()
        self._gates: List[Callable[..., GateCheck]] = [
            self._check_manual,
            self._check_soft_deleted,
            self._check_content_length,
            self._check_has_activities,
            self._check_recency,
            self._check_link_cooldown,
            self._check_attempt_cooldown,
            self._check_content_hash,
        ]

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def decide(
        self,
        evidence: EvidenceItem,
        activities: Sequence[CoreActivity],
        now: datetime,
        force: bool = False,
    ) -> LinkDecision:
        """
        Run the gate chain for one evidence item.

        Args:
            evidence: Item to evaluate
            activities: All core activities of the item's project
            now: Evaluation time (aware datetime)
            force: Re-evaluate even if content is unchanged since last attempt

        Returns:
            LinkDecision (linked, or vetoed with the first failing gate's reason)
        """
        now = ensure_utc(now)
        current_hash = content_hash(evidence.content)

        for gate in self._gates:
            check = gate(evidence, activities, now, force)
            if not check.passed:
                logger.debug(f"[AutoLink] {evidence.id} vetoed at {check.gate}: {check.reason.value}")
                return LinkDecision(
                    evidence_id=evidence.id,
                    outcome=check.reason.value,
                    content_hash=current_hash,
                    stamp_attempt=check.reason not in NON_STAMPING_VETOES,
                )

        evidence_terms = extract_top_terms(evidence.content, self.policy.top_terms)
        scores = self.score_activities(evidence_terms, activities)
        check = self._check_scores(scores)

        if not check.passed:
            return LinkDecision(
                evidence_id=evidence.id,
                outcome=check.reason.value,
                score=scores[0].score if scores else 0.0,
                evidence_terms=evidence_terms,
                scores=scores,
                content_hash=current_hash,
            )

        best = scores[0]
        return LinkDecision(
            evidence_id=evidence.id,
            outcome=LINKED,
            activity_id=best.activity_id,
            score=best.score,
            link_reason=self._explain(best),
            evidence_terms=evidence_terms,
            scores=scores,
            content_hash=current_hash,
        )

    def diagnose(
        self,
        evidence: EvidenceItem,
        activities: Sequence[CoreActivity],
        now: datetime,
    ) -> Dict[str, Any]:
        """
        Replay every gate without short-circuiting.

        Returns a JSON-ready breakdown: each gate's pass/fail with the values
        it compared, the evidence terms, and per-activity scores sorted
        by score descending.
        """
        now = ensure_utc(now)
        checks = [gate(evidence, activities, now, False) for gate in self._gates]

        evidence_terms = extract_top_terms(evidence.content, self.policy.top_terms)
        scores = self.score_activities(evidence_terms, activities)
        checks.append(self._check_scores(scores))

        return {
            'id': evidence.id,
            'created_at': ensure_utc(evidence.created_at).isoformat(),
            'step': evidence.systematic_step.value,
            'content_preview': truncate_text(evidence.content, 100),
            'current_link': 'LINKED' if evidence.is_linked else 'UNLINKED',
            'linked_activity_id': evidence.linked_activity_id,
            'link_source': evidence.link_source.value,
            'link_reason': evidence.link_reason,
            'checks': {c.gate: c.to_dict() for c in checks},
            'blocking_reasons': [c.reason.value for c in checks if not c.passed],
            'evidence_terms': evidence_terms,
            'activity_scores': [s.to_dict() for s in scores],
        }

    def score_activities(
        self,
        evidence_terms: List[str],
        activities: Sequence[CoreActivity],
    ) -> List[ActivityScore]:
        """
        Score evidence terms against every activity.

        Sorted by score descending; equal scores keep the activities' input
        order (oldest activity first when callers pass them by created_at).
        """
        scores = []
        for activity in activities:
            activity_terms = extract_top_terms(activity.match_text, self.policy.top_terms)
            score = similarity(evidence_terms, activity_terms)
            scores.append(ActivityScore(
                activity_id=activity.id,
                activity_name=activity.name,
                activity_terms=activity_terms,
                score=score,
                matched_terms=shared_terms(evidence_terms, activity_terms),
                passes_threshold=score >= self.policy.score_threshold,
            ))
        scores.sort(key=lambda s: s.score, reverse=True)
        return scores

    # =========================================================================
    # GATES
    # =========================================================================

    def _check_manual(self, evidence, activities, now, force) -> GateCheck:
        return GateCheck(
            gate='manual_link',
            passed=evidence.link_source != LinkSource.MANUAL,
            reason=VetoReason.MANUAL_LINK,
            details={'link_source': evidence.link_source.value},
        )

    def _check_soft_deleted(self, evidence, activities, now, force) -> GateCheck:
        return GateCheck(
            gate='soft_deleted',
            passed=not evidence.soft_deleted,
            reason=VetoReason.SOFT_DELETED,
            details={'value': bool(evidence.soft_deleted)},
        )

    def _check_content_length(self, evidence, activities, now, force) -> GateCheck:
        length = len(sanitize_text(evidence.content))
        return GateCheck(
            gate='content_length',
            passed=length >= self.policy.min_content_length,
            reason=VetoReason.CONTENT_TOO_SHORT,
            details={'value': length, 'min_required': self.policy.min_content_length},
        )

    def _check_has_activities(self, evidence, activities, now, force) -> GateCheck:
        return GateCheck(
            gate='has_activities',
            passed=len(activities) > 0,
            reason=VetoReason.NO_ACTIVITIES,
            details={'activities_count': len(activities)},
        )

    def _check_recency(self, evidence, activities, now, force) -> GateCheck:
        evidence_age = days_between(ensure_utc(evidence.created_at), now)
        has_recent_activity = any(
            days_between(ensure_utc(a.created_at), now) <= self.policy.backfill_days
            for a in activities
        )
        return GateCheck(
            gate='recency_window',
            passed=evidence_age <= self.policy.recency_window_days or has_recent_activity,
            reason=VetoReason.OUTSIDE_RECENCY_WINDOW,
            details={
                'evidence_age_days': round(evidence_age, 1),
                'window_days': self.policy.recency_window_days,
                'backfill_days': self.policy.backfill_days,
                'has_recent_activity': has_recent_activity,
            },
        )

    def _check_link_cooldown(self, evidence, activities, now, force) -> GateCheck:
        updated_at = ensure_utc(evidence.link_updated_at)
        hours_since = hours_between(updated_at, now) if updated_at else None
        return GateCheck(
            gate='link_cooldown',
            passed=hours_since is None or hours_since >= self.policy.cooldown_hours,
            reason=VetoReason.LINK_COOLDOWN,
            details={
                'hours_since_update': round(hours_since, 1) if hours_since is not None else None,
                'cooldown_hours': self.policy.cooldown_hours,
            },
        )

    def _check_attempt_cooldown(self, evidence, activities, now, force) -> GateCheck:
        attempted_at = ensure_utc(evidence.link_attempted_at)
        hours_since = hours_between(attempted_at, now) if attempted_at else None
        return GateCheck(
            gate='attempt_cooldown',
            passed=hours_since is None or hours_since >= self.policy.retry_hours,
            reason=VetoReason.ATTEMPT_COOLDOWN,
            details={
                'hours_since_attempt': round(hours_since, 1) if hours_since is not None else None,
                'cooldown_hours': self.policy.retry_hours,
            },
        )

    def _check_content_hash(self, evidence, activities, now, force) -> GateCheck:
        current = content_hash(evidence.content)
        stored = evidence.content_hash
        attempted_at = ensure_utc(evidence.link_attempted_at)
        prior_attempt = attempted_at is not None
        changed = stored is None or stored != current
        # An activity created after the last attempt is a new target the
        # previous evaluation never saw.
        newer_activity = prior_attempt and any(
            ensure_utc(a.created_at) > attempted_at for a in activities
        )
        return GateCheck(
            gate='content_hash',
            passed=force or not prior_attempt or changed or newer_activity,
            reason=VetoReason.ALREADY_EVALUATED,
            details={
                'current': current[:16] if current else None,
                'stored': stored[:16] if stored else None,
                'changed': changed if stored else 'never_hashed',
                'prior_attempt': prior_attempt,
                'newer_activity': newer_activity,
                'forced': force,
            },
        )

    def _check_scores(self, scores: List[ActivityScore]) -> GateCheck:
        best = scores[0].score if scores else 0.0
        if best <= 0:
            reason = VetoReason.NO_KEYWORD_OVERLAP
        else:
            reason = VetoReason.SCORE_BELOW_THRESHOLD
        return GateCheck(
            gate='keyword_score',
            passed=best > 0 and best >= self.policy.score_threshold,
            reason=reason,
            details={
                'has_any_overlap': best > 0,
                'best_score': round(best, 3),
                'threshold': self.policy.score_threshold,
            },
        )

    def _explain(self, best: ActivityScore) -> str:
        terms = ', '.join(best.matched_terms)
        reason = f"Matched terms: {terms} (score {best.score:.2f})"
        return reason[:MAX_LINK_REASON_CHARS]
