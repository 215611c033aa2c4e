"""
Smart apportionment: weights, confidence, normalisation, gap fill and
human precedence.
"""

from datetime import date, datetime, timezone

import pytest

from conftest import make_activity, make_evidence
from models.domain import (
    AUTO_GAP_FILL,
    AUTO_SMART,
    MonthlyAttestation,
    PayrollLedgerEntry,
    SystematicStep,
)
from services.apportionment import (
    SmartApportionmentEngine,
    estimate_fte,
    evidence_weight,
    length_factor,
    recency_decay,
    step_weight,
)

JUNE = date(2025, 6, 1)
JULY = date(2025, 7, 1)
LONG_TEXT = "x" * 250


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def linked(author, activity_id, step=SystematicStep.CONCLUSION, created_at=None, **kwargs):
    return make_evidence(
        created_at or utc(2025, 6, 20),
        kwargs.pop('content', LONG_TEXT),
        author=author,
        linked_activity_id=activity_id,
        systematic_step=step,
        **kwargs,
    )


def payroll(person, month, total):
    return PayrollLedgerEntry(person_identifier=person, month=month, gross_wages=total)


def human(person, month, activity_id, value=50.0):
    return MonthlyAttestation(
        id=None,
        project_id='proj-1',
        person_identifier=person,
        month=month,
        activity_id=activity_id,
        amount_type='percent',
        amount_value=value,
        created_by='user',
    )


def auto(value, confidence=0.8, activity_id='ca_alpha001'):
    return MonthlyAttestation(
        id=None,
        project_id='proj-1',
        person_identifier='a@x.com',
        month=JUNE,
        activity_id=activity_id,
        amount_type='percent',
        amount_value=value,
        confidence_score=confidence,
        created_by=AUTO_SMART,
    )


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def engine():
    return SmartApportionmentEngine()


@pytest.fixture
def activities():
    created = utc(2025, 1, 1)
    return [
        make_activity('ca_alpha001', 'Anomaly Detection', 'Can we detect drift?', created),
        make_activity('ca_beta0001', 'Cache Eviction', 'Can eviction keep latency low?', created),
    ]


# ============================================================================
# TEST: WEIGHTS
# ============================================================================

class TestWeights:

    def test_recency_half_life(self):
        assert recency_decay(45) == 0.5
        assert recency_decay(0) == 1.0
        assert recency_decay(90) == pytest.approx(0.25)

    def test_step_weights(self):
        assert step_weight(SystematicStep.CONCLUSION) == 2.0
        assert step_weight(SystematicStep.EVALUATION) == 2.0
        assert step_weight(SystematicStep.OBSERVATION) == 1.5
        assert step_weight(SystematicStep.EXPERIMENT) == 1.5
        assert step_weight(SystematicStep.HYPOTHESIS) == 1.0
        assert step_weight(SystematicStep.UNKNOWN) == 0.8
        assert step_weight("not a step") == 0.8

    def test_length_factor(self):
        assert length_factor(None) == 0.3
        assert length_factor("   ") == 0.3
        assert length_factor("x" * 200) == pytest.approx(1.0)
        assert length_factor("x" * 5000) == 1.0
        assert 0 < length_factor("x") < 0.2

    def test_evidence_weight_combines_factors(self):
        # 2025-05-17 to the end of June is exactly 45 days
        item = make_evidence(
            utc(2025, 5, 17),
            LONG_TEXT,
            systematic_step=SystematicStep.CONCLUSION,
            file_ref='uploads/result.png',
        )
        assert evidence_weight(item, JUNE) == pytest.approx(2.0 * 1.0 * 1.2 * 0.5)


# ============================================================================
# TEST: FTE ESTIMATE
# ============================================================================

class TestEstimateFte:

    def test_relative_to_month_maximum(self):
        fte = estimate_fte([
            payroll('a@x.com', JUNE, 10000),
            payroll('b@x.com', JUNE, 4000),
        ])
        assert fte == {'a@x.com': 1.0, 'b@x.com': pytest.approx(0.4)}

    def test_keeps_highest_month(self):
        fte = estimate_fte([
            payroll('a@x.com', JUNE, 10000),
            payroll('b@x.com', JUNE, 4000),
            payroll('a@x.com', JULY, 10000),
            payroll('b@x.com', JULY, 9000),
        ])
        assert fte['b@x.com'] == pytest.approx(0.9)

    def test_clamped_to_minimum(self):
        fte = estimate_fte([
            payroll('a@x.com', JUNE, 10000),
            payroll('b@x.com', JUNE, 500),
        ])
        assert fte['b@x.com'] == 0.1

    def test_person_keys_case_insensitive(self):
        fte = estimate_fte([payroll(' A@X.com ', JUNE, 10000)])
        assert fte == {'a@x.com': 1.0}


# ============================================================================
# TEST: CONFIDENCE
# ============================================================================

class TestConfidence:

    def test_strong_signal(self):
        assert SmartApportionmentEngine.confidence(5, 5.0, 1.0, 50.0, 2) == 1.0

    def test_thin_single_activity(self):
        confidence = SmartApportionmentEngine.confidence(1, 1.0, 1.0, 100.0, 1)
        assert confidence == pytest.approx(0.7 * 0.8 * 0.9)

    def test_part_time_with_dominant_share(self):
        confidence = SmartApportionmentEngine.confidence(5, 5.0, 0.5, 90.0, 2)
        assert confidence == pytest.approx(0.6)


# ============================================================================
# TEST: NORMALISATION
# ============================================================================

class TestNormalize:

    def test_rescales_drifting_group(self):
        group = [auto(60.0), auto(60.0, activity_id='ca_beta0001')]

        result = SmartApportionmentEngine.normalize(group)

        assert [a.amount_value for a in result] == [50.0, 50.0]
        assert all(a.calculation_basis['normalized'] for a in result)
        assert result[0].calculation_basis['original_percent'] == 60.0
        assert result[0].confidence_score == pytest.approx(0.76)

    def test_residue_lands_on_largest_share(self):
        group = [auto(40.0), auto(40.0, activity_id='ca_beta0001'), auto(40.0, activity_id=None)]

        result = SmartApportionmentEngine.normalize(group)

        assert sum(a.amount_value for a in result) == pytest.approx(100.0, abs=0.01)
        assert sorted(a.amount_value for a in result) == [33.33, 33.33, 33.34]

    def test_within_tolerance_untouched(self):
        group = [auto(51.0), auto(50.0, activity_id='ca_beta0001')]

        result = SmartApportionmentEngine.normalize(group)

        assert [a.amount_value for a in result] == [51.0, 50.0]
        assert 'normalized' not in result[0].calculation_basis


# ============================================================================
# TEST: GENERATE
# ============================================================================

class TestGenerate:

    def test_splits_by_weight(self, engine, activities):
        evidence = [
            linked('a@x.com', 'ca_alpha001'),
            linked('a@x.com', 'ca_alpha001'),
            linked('a@x.com', 'ca_alpha001'),
            linked('a@x.com', 'ca_beta0001', step=SystematicStep.HYPOTHESIS),
        ]

        result = engine.generate('proj-1', evidence, activities)
        by_activity = {a.activity_id: a for a in result.attestations}

        assert by_activity['ca_alpha001'].amount_value == 85.71
        assert by_activity['ca_beta0001'].amount_value == 14.29
        assert by_activity['ca_alpha001'].confidence_score == 1.0
        assert by_activity['ca_beta0001'].confidence_score == 0.56
        assert by_activity['ca_alpha001'].evidence_count == 3
        assert by_activity['ca_alpha001'].total_evidence == 4
        assert by_activity['ca_alpha001'].activity_name == 'Anomaly Detection'
        assert all(a.created_by == AUTO_SMART for a in result.attestations)
        assert all(a.month == JUNE for a in result.attestations)

    def test_group_sums_near_hundred(self, engine, activities):
        evidence = [
            linked('a@x.com', 'ca_alpha001', step=SystematicStep.OBSERVATION, content="short"),
            linked('a@x.com', 'ca_beta0001', step=SystematicStep.UNKNOWN, file_ref='f.pdf'),
            linked('a@x.com', 'ca_beta0001', created_at=utc(2025, 6, 2)),
        ]

        result = engine.generate('proj-1', evidence, activities)

        total = sum(a.amount_value for a in result.attestations)
        assert 98 <= total <= 102

    def test_gap_fill_for_payroll_without_evidence(self, engine, activities):
        result = engine.generate('proj-1', [], activities, payroll=[payroll('c@x.com', JUNE, 5000)])

        assert len(result.attestations) == 1
        gap = result.attestations[0]
        assert gap.activity_id is None
        assert gap.amount_value == 100.0
        assert gap.confidence_score == 0.3
        assert gap.created_by == AUTO_GAP_FILL
        assert gap.calculation_basis['reason'] == 'no_evidence_found'
        assert result.gap_fill_count == 1

    def test_no_gap_fill_when_evidence_covers_month(self, engine, activities):
        result = engine.generate(
            'proj-1',
            [linked('A@X.com', 'ca_alpha001')],
            activities,
            payroll=[payroll('a@x.com', JUNE, 5000)],
        )

        assert result.gap_fill_count == 0
        assert result.smart_count == 1

    def test_part_time_single_activity_confidence(self, engine, activities):
        result = engine.generate(
            'proj-1',
            [linked('b@x.com', 'ca_alpha001', step=SystematicStep.HYPOTHESIS)],
            activities,
            payroll=[payroll('a@x.com', JUNE, 10000), payroll('b@x.com', JUNE, 2000)],
        )
        smart = [a for a in result.attestations if a.created_by == AUTO_SMART]

        assert smart[0].amount_value == 100.0
        assert smart[0].confidence_score == 0.3  # 0.7 * 0.8 * 0.6 * 0.9
        assert smart[0].calculation_basis['fte_estimate'] == 0.2

    def test_skips_unusable_evidence(self, engine, activities):
        evidence = [
            linked('a@x.com', 'ca_alpha001'),
            linked('a@x.com', 'ca_alpha001', soft_deleted=True),
            linked(None, 'ca_alpha001'),
            linked('a@x.com', None),
            linked('a@x.com', 'ca_gone0001'),
        ]

        result = engine.generate('proj-1', evidence, activities)

        assert result.skipped_evidence == 4
        assert result.smart_count == 1


# ============================================================================
# TEST: HUMAN PRECEDENCE
# ============================================================================

class TestHumanPrecedence:

    def test_human_key_suppresses_automatic_record(self, engine, activities):
        evidence = [
            linked('a@x.com', 'ca_alpha001'),
            linked('a@x.com', 'ca_beta0001'),
        ]

        result = engine.generate(
            'proj-1', evidence, activities,
            human_attestations=[human('a@x.com', JUNE, 'ca_alpha001')],
        )

        assert [a.activity_id for a in result.attestations] == ['ca_beta0001']
        assert result.suppressed == [('a@x.com', JUNE, 'ca_alpha001')]

    def test_human_month_blocks_gap_fill(self, engine, activities):
        result = engine.generate(
            'proj-1', [], activities,
            payroll=[payroll('a@x.com', JULY, 5000)],
            human_attestations=[human('A@x.com', JULY, None, value=100.0)],
        )

        assert result.attestations == []

    def test_remaining_shares_fill_what_human_entries_leave(self, engine, activities):
        # Automatic split is 75/25; the human claims alpha at 50
        evidence = [linked('a@x.com', 'ca_alpha001') for _ in range(3)]
        evidence.append(linked('a@x.com', 'ca_beta0001'))

        result = engine.generate(
            'proj-1', evidence, activities,
            human_attestations=[human('a@x.com', JUNE, 'ca_alpha001', value=50.0)],
        )

        assert [a.activity_id for a in result.attestations] == ['ca_beta0001']
        beta = result.attestations[0]
        assert beta.amount_value == 50.0
        assert beta.calculation_basis['normalized'] is True
        assert beta.calculation_basis['original_percent'] == 25.0
        assert beta.confidence_score == 0.53

        month_total = 50.0 + sum(a.amount_value for a in result.attestations)
        assert 98.0 <= month_total <= 102.0

    def test_human_total_of_100_leaves_nothing_automatic(self, engine, activities):
        evidence = [
            linked('a@x.com', 'ca_alpha001'),
            linked('a@x.com', 'ca_beta0001'),
        ]

        result = engine.generate(
            'proj-1', evidence, activities,
            human_attestations=[human('a@x.com', JUNE, None, value=100.0)],
        )

        assert result.attestations == []
        assert sorted(k[2] for k in result.suppressed) == ['ca_alpha001', 'ca_beta0001']

    def test_other_months_are_not_rescaled(self, engine, activities):
        evidence = [
            linked('a@x.com', 'ca_alpha001'),
            linked('a@x.com', 'ca_beta0001', created_at=utc(2025, 7, 20)),
        ]

        result = engine.generate(
            'proj-1', evidence, activities,
            human_attestations=[human('a@x.com', JULY, 'ca_alpha001', value=30.0)],
        )

        june = [a for a in result.attestations if a.month == JUNE]
        july = [a for a in result.attestations if a.month == JULY]
        assert [a.amount_value for a in june] == [100.0]
        assert 'normalized' not in june[0].calculation_basis
        assert [(a.activity_id, a.amount_value) for a in july] == [('ca_beta0001', 70.0)]


# ============================================================================
# TEST: FAILURE ISOLATION
# ============================================================================

class TestFailureIsolation:

    def test_one_failing_group_does_not_stop_others(self, activities):

        class FlakyEngine(SmartApportionmentEngine):
            def _apportion_group(self, project_id, group, activity_names, fte_estimates):
                if group.person == 'bad@x.com':
                    raise RuntimeError("boom")
                return super()._apportion_group(project_id, group, activity_names, fte_estimates)

        evidence = [
            linked('bad@x.com', 'ca_alpha001'),
            linked('good@x.com', 'ca_alpha001'),
        ]

        result = FlakyEngine().generate('proj-1', evidence, activities)

        assert result.failed_groups == [('bad@x.com', JUNE)]
        assert [a.person_identifier for a in result.attestations] == ['good@x.com']
