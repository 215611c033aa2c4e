"""
Smart Apportionment - derive monthly attestations from linked evidence

Given every non-deleted evidence item that has an author and a linked
activity, plus the project's payroll ledger, produce per person per month
a percentage split across activities with a confidence score.

Pipeline:
A. weight each item: step weight x length factor x attachment boost x recency decay
B. group by (author, month); share = activity weight / group weight
C. confidence: start at 1.0, multiply down for thin or suspicious signal
D. FTE estimate from payroll: cost / month's max cost, clamped, max over months
E. normalise groups whose shares drift more than 2 points from 100
F. gap fill: payroll person/months with no attestation get 100% Unallocated

Human-entered attestations win for their exact (person, month, activity)
key; the engine drops its own record for that key and rescales the rest
of that person's month to whatever the human percent entries leave of 100.
A failure inside one (person, month) group is logged and skipped; the
remaining groups are still produced.
"""
import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from models.domain import (
    AUTO_GAP_FILL,
    AUTO_SMART,
    UNALLOCATED_LABEL,
    AmountType,
    CoreActivity,
    EvidenceItem,
    MonthlyAttestation,
    PayrollLedgerEntry,
    SystematicStep,
)
from utils.datetime_utils import days_between, ensure_utc, month_end, month_start

logger = logging.getLogger(__name__)

# Weighting constants
STEP_WEIGHTS = {
    SystematicStep.CONCLUSION: 2.0,
    SystematicStep.EVALUATION: 2.0,
    SystematicStep.OBSERVATION: 1.5,
    SystematicStep.EXPERIMENT: 1.5,
    SystematicStep.HYPOTHESIS: 1.0,
    SystematicStep.UNKNOWN: 0.8,
}
RECENCY_HALF_LIFE_DAYS = 45
ATTACHMENT_BOOST = 1.2
FULL_WEIGHT_CONTENT_LENGTH = 200
EMPTY_CONTENT_LENGTH_FACTOR = 0.3

# Confidence penalties
FEW_ITEMS_THRESHOLD = 3
FEW_ITEMS_PENALTY = 0.7
LOW_WEIGHT_THRESHOLD = 2.0
LOW_WEIGHT_PENALTY = 0.8
PART_TIME_FTE = 0.6
PART_TIME_SHARE = 80.0
PART_TIME_PENALTY = 0.6
SINGLE_ACTIVITY_PENALTY = 0.9

# Normalisation
NORMALIZATION_TOLERANCE = 2.0
NORMALIZATION_PENALTY = 0.95

# FTE
MIN_FTE = 0.1
MAX_FTE = 1.0

GAP_FILL_CONFIDENCE = 0.3

PersonMonth = Tuple[str, date]
AttestationKey = Tuple[str, date, Optional[str]]


def person_key(value: Optional[str]) -> Optional[str]:
    """Canonical person identifier (emails compare case-insensitively)"""
    if value is None:
        return None
    value = value.strip().lower()
    return value or None


# =============================================================================
# STEP A: EVIDENCE WEIGHT
# =============================================================================

def step_weight(step) -> float:
    return STEP_WEIGHTS.get(SystematicStep.parse(step), STEP_WEIGHTS[SystematicStep.UNKNOWN])


def length_factor(content: Optional[str]) -> float:
    """
    Logarithmic credit for content length, reaching 1.0 at 200 characters.

    Empty content is floored at 0.3 (an attachment-only upload still counts).
    Always within [0, 1].
    """
    length = len(content.strip()) if content else 0
    if length > 0:
        return min(1.0, math.log10(length + 1) / math.log10(FULL_WEIGHT_CONTENT_LENGTH + 1))
    return EMPTY_CONTENT_LENGTH_FACTOR


def attachment_boost(has_attachment: bool) -> float:
    return ATTACHMENT_BOOST if has_attachment else 1.0


def recency_decay(age_days: float) -> float:
    """Half-life decay: 1.0 at age <= 0, 0.5 at 45 days, 0.25 at 90 days"""
    if age_days <= 0:
        return 1.0
    return 0.5 ** (age_days / RECENCY_HALF_LIFE_DAYS)


def evidence_weight(item: EvidenceItem, month: date) -> float:
    """
    Weight of one evidence item for the month being apportioned.

    Age is measured from the item's creation to the end of that month.
    """
    age = days_between(ensure_utc(item.created_at), month_end(month))
    return (
        step_weight(item.systematic_step)
        * length_factor(item.content)
        * attachment_boost(item.has_attachment)
        * recency_decay(age)
    )


# =============================================================================
# STEP D: FTE ESTIMATE
# =============================================================================

def estimate_fte(entries: Iterable[PayrollLedgerEntry]) -> Dict[str, float]:
    """
    Estimate each person's full-time equivalence from relative payroll cost.

    Per month the highest total cost is the full-time reference; a person's
    FTE is cost / reference clamped to [0.1, 1.0]. The highest FTE seen for
    a person across months is kept.
    """
    by_month: Dict[date, Dict[str, float]] = defaultdict(lambda: defaultdict(float))
    for entry in entries:
        person = person_key(entry.person_identifier)
        if person is None:
            continue
        by_month[entry.month][person] += float(entry.total_amount or 0.0)

    estimates: Dict[str, float] = {}
    for costs in by_month.values():
        reference = max(costs.values(), default=0.0)
        for person, cost in costs.items():
            fte = cost / reference if reference > 0 else MAX_FTE
            fte = max(MIN_FTE, min(MAX_FTE, fte))
            if fte > estimates.get(person, 0.0):
                estimates[person] = fte
    return estimates


# =============================================================================
# ENGINE
# =============================================================================

@dataclass
class _ActivityTally:
    weight: float = 0.0
    count: int = 0
    evidence_ids: List[str] = field(default_factory=list)


@dataclass
class _Group:
    person: str
    month: date
    activities: Dict[str, _ActivityTally] = field(default_factory=dict)
    total_weight: float = 0.0
    evidence_count: int = 0


@dataclass
class ApportionmentResult:
    """Attestations to persist, plus what was held back and why"""
    attestations: List[MonthlyAttestation] = field(default_factory=list)
    suppressed: List[AttestationKey] = field(default_factory=list)
    failed_groups: List[PersonMonth] = field(default_factory=list)
    skipped_evidence: int = 0

    @property
    def smart_count(self) -> int:
        return sum(1 for a in self.attestations if a.created_by == AUTO_SMART)

    @property
    def gap_fill_count(self) -> int:
        return sum(1 for a in self.attestations if a.created_by == AUTO_GAP_FILL)


class SmartApportionmentEngine:
    """
    Pure batch computation; ApportionmentService handles I/O and locking.

    Usage:
        result = SmartApportionmentEngine().generate(
            project_id, evidence, activities, payroll, human_attestations
        )
    """

    def generate(
        self,
        project_id: str,
        evidence: Sequence[EvidenceItem],
        activities: Sequence[CoreActivity],
        payroll: Sequence[PayrollLedgerEntry] = (),
        human_attestations: Sequence[MonthlyAttestation] = (),
    ) -> ApportionmentResult:
        result = ApportionmentResult()
        activity_names = {a.id: a.name for a in activities}
        fte_estimates = estimate_fte(payroll)

        groups, skipped = self._group_evidence(evidence, activity_names)
        result.skipped_evidence = skipped

        smart: List[MonthlyAttestation] = []
        for group in groups.values():
            try:
                attestations = self._apportion_group(project_id, group, activity_names, fte_estimates)
                smart.extend(self.normalize(attestations))
            except Exception as e:
                result.failed_groups.append((group.person, group.month))
                logger.error(
                    f"[Apportionment] Group {group.person}/{group.month} failed: {e}",
                    exc_info=True
                )

        human_keys: Set[AttestationKey] = set()
        human_percent: Dict[PersonMonth, float] = defaultdict(float)
        for att in human_attestations:
            person = person_key(att.person_identifier)
            human_keys.add((person, att.month, att.activity_id))
            if att.amount_type == AmountType.PERCENT:
                human_percent[(person, att.month)] += att.amount_value
            else:
                human_percent.setdefault((person, att.month), 0.0)

        gap_fills = self.fill_payroll_gaps(
            project_id, smart, payroll, already_covered=human_percent.keys()
        )

        remaining: Dict[PersonMonth, List[MonthlyAttestation]] = defaultdict(list)
        for att in smart + gap_fills:
            if att.key in human_keys:
                result.suppressed.append(att.key)
                continue
            remaining[(att.key[0], att.month)].append(att)

        for person_month, group in remaining.items():
            if person_month not in human_percent:
                result.attestations.extend(group)
                continue
            # Automatic shares fill whatever the human entries leave of 100
            target = max(0.0, 100.0 - human_percent[person_month])
            if target <= 0:
                result.suppressed.extend(att.key for att in group)
                continue
            result.attestations.extend(self.normalize(group, target))

        if result.suppressed:
            logger.info(
                f"[Apportionment] {len(result.suppressed)} key(s) kept as entered by a human"
            )
        return result

    # -------------------------------------------------------------------------
    # Steps B + C
    # -------------------------------------------------------------------------

    def _group_evidence(
        self,
        evidence: Sequence[EvidenceItem],
        activity_names: Dict[str, str],
    ) -> Tuple[Dict[PersonMonth, _Group], int]:
        groups: Dict[PersonMonth, _Group] = {}
        skipped = 0

        for item in evidence:
            person = person_key(item.author)
            if item.soft_deleted or person is None or item.linked_activity_id is None:
                skipped += 1
                continue
            if item.linked_activity_id not in activity_names:
                # Linked to an activity that no longer exists
                skipped += 1
                continue

            month = month_start(ensure_utc(item.created_at))
            key = (person, month)
            group = groups.get(key)
            if group is None:
                group = groups[key] = _Group(person=person, month=month)

            weight = evidence_weight(item, month)
            tally = group.activities.setdefault(item.linked_activity_id, _ActivityTally())
            tally.weight += weight
            tally.count += 1
            tally.evidence_ids.append(item.id)
            group.total_weight += weight
            group.evidence_count += 1

        return groups, skipped

    def _apportion_group(
        self,
        project_id: str,
        group: _Group,
        activity_names: Dict[str, str],
        fte_estimates: Dict[str, float],
    ) -> List[MonthlyAttestation]:
        if group.total_weight <= 0:
            return []

        fte = fte_estimates.get(group.person, MAX_FTE)
        attestations = []

        for activity_id, tally in group.activities.items():
            percent = tally.weight / group.total_weight * 100
            confidence = self.confidence(
                evidence_count=tally.count,
                total_weight=tally.weight,
                fte=fte,
                percent=percent,
                activity_count=len(group.activities),
            )
            attestations.append(MonthlyAttestation(
                id=None,
                project_id=project_id,
                person_identifier=group.person,
                person_email=group.person if '@' in group.person else None,
                month=group.month,
                activity_id=activity_id,
                activity_name=activity_names.get(activity_id),
                amount_type=AmountType.PERCENT,
                amount_value=round(percent, 2),
                confidence_score=round(confidence, 2),
                evidence_count=tally.count,
                total_evidence=group.evidence_count,
                calculation_basis={
                    'total_weight': round(tally.weight, 2),
                    'group_weight': round(group.total_weight, 2),
                    'fte_estimate': round(fte, 2),
                    'evidence_ids': list(tally.evidence_ids),
                },
                created_by=AUTO_SMART,
            ))

        return attestations

    @staticmethod
    def confidence(
        evidence_count: int,
        total_weight: float,
        fte: float,
        percent: float,
        activity_count: int,
    ) -> float:
        """Multiplicative confidence for one (person, month, activity) share"""
        confidence = 1.0
        if evidence_count < FEW_ITEMS_THRESHOLD:
            confidence *= FEW_ITEMS_PENALTY
        if total_weight < LOW_WEIGHT_THRESHOLD:
            confidence *= LOW_WEIGHT_PENALTY
        if fte < PART_TIME_FTE and percent > PART_TIME_SHARE:
            confidence *= PART_TIME_PENALTY
        if activity_count == 1:
            # No comparative signal
            confidence *= SINGLE_ACTIVITY_PENALTY
        return confidence

    # -------------------------------------------------------------------------
    # Step E
    # -------------------------------------------------------------------------

    @staticmethod
    def normalize(
        attestations: List[MonthlyAttestation],
        target: float = 100.0,
    ) -> List[MonthlyAttestation]:
        """
        Rescale one (person, month) group to exactly `target` when it drifts.

        target is 100 for a fully automatic group, or what is left after the
        human percent entries for that person/month. Groups within +/-2 points
        of target are left alone. Rescaled records keep their pre-scaling
        value in calculation_basis and lose 5% confidence.
        """
        total = sum(a.amount_value for a in attestations)
        if total <= 0 or abs(total - target) <= NORMALIZATION_TOLERANCE:
            return attestations

        for att in attestations:
            original = att.amount_value
            att.amount_value = round(original / total * target, 2)
            if att.calculation_basis.get('normalized'):
                # Already rescaled once; keep the first original and penalty
                continue
            att.calculation_basis['normalized'] = True
            att.calculation_basis['original_percent'] = original
            if att.confidence_score is not None:
                att.confidence_score = round(att.confidence_score * NORMALIZATION_PENALTY, 2)

        # Put the rounding residue on the largest share so the group hits target exactly
        residue = round(target - sum(a.amount_value for a in attestations), 2)
        if residue:
            largest = max(attestations, key=lambda a: a.amount_value)
            largest.amount_value = round(largest.amount_value + residue, 2)

        return attestations

    # -------------------------------------------------------------------------
    # Step F
    # -------------------------------------------------------------------------

    @staticmethod
    def fill_payroll_gaps(
        project_id: str,
        attestations: Sequence[MonthlyAttestation],
        payroll: Sequence[PayrollLedgerEntry],
        already_covered: Iterable[PersonMonth] = (),
    ) -> List[MonthlyAttestation]:
        """
        One 100% Unallocated attestation per payroll person/month with no coverage.
        """
        covered: Set[PersonMonth] = {
            (person_key(a.person_identifier), a.month) for a in attestations
        }
        covered.update(already_covered)

        gap_fills = []
        for entry in payroll:
            person = person_key(entry.person_identifier)
            if person is None:
                continue
            key = (person, entry.month)
            if key in covered:
                continue

            gap_fills.append(MonthlyAttestation(
                id=None,
                project_id=project_id,
                person_identifier=person,
                person_email=entry.person_email,
                month=entry.month,
                activity_id=None,
                activity_name=UNALLOCATED_LABEL,
                amount_type=AmountType.PERCENT,
                amount_value=100.0,
                confidence_score=GAP_FILL_CONFIDENCE,
                evidence_count=0,
                total_evidence=0,
                calculation_basis={
                    'reason': 'no_evidence_found',
                    'note': 'Person has payroll but no evidence for this month',
                },
                created_by=AUTO_GAP_FILL,
            ))
            covered.add(key)

        return gap_fills
