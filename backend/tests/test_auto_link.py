"""
Auto-link gate chain and scoring.

The engine is pure, so every test pins `now` and builds evidence/activities
relative to it.
"""

from datetime import timedelta

import pytest

from conftest import make_activity, make_evidence
from models.domain import LinkSource
from services.auto_link import (
    LINKED,
    MAX_LINK_REASON_CHARS,
    AutoLinkEngine,
    AutoLinkPolicy,
    VetoReason,
)
from services.term_similarity import content_hash

ISOLATION_EVIDENCE = "Ran isolation forest with threshold 0.2 on holdout"


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def engine():
    return AutoLinkEngine(AutoLinkPolicy())


@pytest.fixture
def isolation_activity(now):
    return make_activity(
        'ca_iso00001',
        'Isolation Forest Thresholding',
        'Which isolation forest threshold separates anomalies?',
        now - timedelta(days=30),
    )


@pytest.fixture
def cache_activity(now):
    return make_activity(
        'ca_cache001',
        'Cache Eviction Policy',
        'Can adaptive eviction keep latency under budget?',
        now - timedelta(days=30),
    )


@pytest.fixture
def activities(isolation_activity, cache_activity):
    return [isolation_activity, cache_activity]


def fresh_evidence(now, content=ISOLATION_EVIDENCE, **kwargs):
    return make_evidence(now - timedelta(days=1), content, **kwargs)


# ============================================================================
# TEST: LINKING
# ============================================================================

class TestLinking:

    def test_isolation_forest_scenario_links(self, engine, activities, now):
        decision = engine.decide(fresh_evidence(now), activities, now)

        assert decision.outcome == LINKED
        assert decision.linked
        assert decision.activity_id == 'ca_iso00001'
        assert decision.score >= 0.10
        assert decision.evidence_terms == ['isolation', 'forest', 'threshold', 'holdout']
        assert decision.link_reason.startswith("Matched terms: isolation, forest, threshold")

    def test_exact_three_term_activity_scores_075(self, engine, now):
        activity = make_activity('ca_iso00002', 'Isolation Forest Threshold', '', now - timedelta(days=30))
        decision = engine.decide(fresh_evidence(now), [activity], now)

        assert decision.linked
        assert decision.score == pytest.approx(0.75)
        assert decision.link_reason == "Matched terms: isolation, forest, threshold (score 0.75)"

    def test_link_updates_for_linked_decision(self, engine, activities, now):
        evidence = fresh_evidence(now)
        decision = engine.decide(evidence, activities, now)
        updates = decision.link_updates(now)

        assert updates['linked_activity_id'] == 'ca_iso00001'
        assert updates['link_source'] == LinkSource.AUTO.value
        assert updates['link_attempted_at'] == now
        assert updates['link_updated_at'] == now
        assert updates['content_hash'] == content_hash(evidence.content)

    def test_tie_goes_to_first_activity(self, engine, now):
        first = make_activity('ca_first001', 'Isolation Forest Threshold', '', now - timedelta(days=30))
        second = make_activity('ca_second01', 'Isolation Forest Threshold', '', now - timedelta(days=20))

        decision = engine.decide(fresh_evidence(now), [first, second], now)

        assert decision.activity_id == 'ca_first001'

    def test_link_reason_capped(self, now):
        engine = AutoLinkEngine(AutoLinkPolicy(top_terms=30))
        words = ' '.join(f"parameter{i:02d}sweep" for i in range(20))
        activity = make_activity('ca_long0001', words, '', now - timedelta(days=30))
        evidence = fresh_evidence(now, content=words)

        decision = engine.decide(evidence, [activity], now)

        assert decision.linked
        assert len(decision.link_reason) <= MAX_LINK_REASON_CHARS


# ============================================================================
# TEST: GATES
# ============================================================================

class TestGates:

    def test_manual_link_never_touched(self, engine, activities, now):
        evidence = fresh_evidence(
            now,
            link_source=LinkSource.MANUAL,
            linked_activity_id='ca_cache001',
        )

        decision = engine.decide(evidence, activities, now, force=True)

        assert decision.outcome == VetoReason.MANUAL_LINK.value
        assert decision.stamp_attempt is False
        assert decision.link_updates(now) == {}

    def test_soft_deleted(self, engine, activities, now):
        decision = engine.decide(fresh_evidence(now, soft_deleted=True), activities, now)
        assert decision.outcome == VetoReason.SOFT_DELETED.value
        assert decision.stamp_attempt is True

    def test_nineteen_chars_vetoed_despite_overlap(self, engine, activities, now):
        content = "isolation forest xx"
        assert len(content) == 19

        decision = engine.decide(fresh_evidence(now, content=content), activities, now)

        assert decision.outcome == VetoReason.CONTENT_TOO_SHORT.value

    def test_twenty_chars_without_overlap_vetoed_at_scoring(self, engine, activities, now):
        content = "kubernetes pod crash"
        assert len(content) == 20

        decision = engine.decide(fresh_evidence(now, content=content), activities, now)

        assert decision.outcome == VetoReason.NO_KEYWORD_OVERLAP.value
        assert decision.score == 0.0

    def test_markup_does_not_count_towards_length(self, engine, activities, now):
        content = "<div><span>isolation</span></div>"
        decision = engine.decide(fresh_evidence(now, content=content), activities, now)
        assert decision.outcome == VetoReason.CONTENT_TOO_SHORT.value

    def test_no_activities(self, engine, now):
        decision = engine.decide(fresh_evidence(now), [], now)
        assert decision.outcome == VetoReason.NO_ACTIVITIES.value
        assert decision.stamp_attempt is False

    def test_old_evidence_outside_window(self, engine, activities, now):
        evidence = make_evidence(now - timedelta(days=90), ISOLATION_EVIDENCE)
        decision = engine.decide(evidence, activities, now)
        assert decision.outcome == VetoReason.OUTSIDE_RECENCY_WINDOW.value

    def test_old_evidence_backfilled_by_new_activity(self, engine, now):
        evidence = make_evidence(now - timedelta(days=90), ISOLATION_EVIDENCE)
        activity = make_activity('ca_new00001', 'Isolation Forest Threshold', '', now - timedelta(days=5))

        decision = engine.decide(evidence, [activity], now)

        assert decision.linked

    def test_link_cooldown(self, engine, activities, now):
        evidence = fresh_evidence(now, link_updated_at=now - timedelta(hours=2))
        decision = engine.decide(evidence, activities, now)
        assert decision.outcome == VetoReason.LINK_COOLDOWN.value
        assert decision.link_updates(now) == {}

    def test_attempt_cooldown(self, engine, activities, now):
        evidence = fresh_evidence(now, link_attempted_at=now - timedelta(minutes=30))
        decision = engine.decide(evidence, activities, now)
        assert decision.outcome == VetoReason.ATTEMPT_COOLDOWN.value
        assert decision.stamp_attempt is False

    def test_unchanged_content_already_evaluated(self, engine, activities, now):
        evidence = fresh_evidence(
            now,
            link_attempted_at=now - timedelta(hours=3),
            content_hash=content_hash(ISOLATION_EVIDENCE),
        )
        decision = engine.decide(evidence, activities, now)
        assert decision.outcome == VetoReason.ALREADY_EVALUATED.value
        assert decision.stamp_attempt is False

    def test_force_bypasses_hash_gate(self, engine, activities, now):
        evidence = fresh_evidence(
            now,
            link_attempted_at=now - timedelta(hours=3),
            content_hash=content_hash(ISOLATION_EVIDENCE),
        )
        decision = engine.decide(evidence, activities, now, force=True)
        assert decision.linked

    def test_changed_content_reevaluated(self, engine, activities, now):
        evidence = fresh_evidence(
            now,
            link_attempted_at=now - timedelta(hours=3),
            content_hash=content_hash("an older draft of the note"),
        )
        decision = engine.decide(evidence, activities, now)
        assert decision.linked

    def test_activity_newer_than_attempt_reopens(self, engine, now):
        evidence = fresh_evidence(
            now,
            link_attempted_at=now - timedelta(hours=3),
            content_hash=content_hash(ISOLATION_EVIDENCE),
        )
        activity = make_activity('ca_new00002', 'Isolation Forest Threshold', '', now - timedelta(hours=1))

        decision = engine.decide(evidence, [activity], now)

        assert decision.linked

    def test_score_below_threshold(self, now, activities):
        engine = AutoLinkEngine(AutoLinkPolicy(score_threshold=0.9))
        decision = engine.decide(fresh_evidence(now), activities, now)

        assert decision.outcome == VetoReason.SCORE_BELOW_THRESHOLD.value
        assert decision.stamp_attempt is True
        updates = decision.link_updates(now)
        assert updates == {
            'link_attempted_at': now,
            'content_hash': content_hash(ISOLATION_EVIDENCE),
        }


# ============================================================================
# TEST: DIAGNOSTICS
# ============================================================================

class TestDiagnose:

    def test_reports_every_gate(self, engine, activities, now):
        report = engine.diagnose(fresh_evidence(now), activities, now)

        assert set(report['checks']) == {
            'manual_link', 'soft_deleted', 'content_length', 'has_activities',
            'recency_window', 'link_cooldown', 'attempt_cooldown', 'content_hash',
            'keyword_score',
        }
        assert report['blocking_reasons'] == []
        assert report['checks']['content_length'] == {
            'pass': True, 'value': len(ISOLATION_EVIDENCE), 'min_required': 20,
        }
        assert report['current_link'] == 'UNLINKED'

    def test_scores_sorted_descending(self, engine, activities, now):
        report = engine.diagnose(fresh_evidence(now), activities, now)

        scores = [s['jaccard_score'] for s in report['activity_scores']]
        assert scores == sorted(scores, reverse=True)
        assert report['activity_scores'][0]['activity_id'] == 'ca_iso00001'

    def test_does_not_short_circuit(self, engine, activities, now):
        evidence = fresh_evidence(
            now,
            content="too short",
            soft_deleted=True,
            link_attempted_at=now - timedelta(minutes=10),
        )
        report = engine.diagnose(evidence, activities, now)

        assert report['blocking_reasons'] == [
            'soft_deleted', 'content_too_short', 'attempt_cooldown', 'no_keyword_overlap',
        ]
        assert report['checks']['attempt_cooldown']['hours_since_attempt'] == pytest.approx(0.2, abs=0.05)
