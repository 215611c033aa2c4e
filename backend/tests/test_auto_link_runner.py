"""
Auto-link runner: budget, per-run cap, compare-and-set persistence and
per-item failure isolation. Repositories are AsyncMocks.
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from conftest import make_activity, make_evidence
from services.auto_link import AutoLinkPolicy
from services.auto_link_runner import AutoLinkRunner
from services.errors import EvidenceNotFound

LINKABLE = "Ran isolation forest with threshold 0.2 on holdout"


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def activities(now):
    return [make_activity('ca_iso00001', 'Isolation Forest Threshold', '', now - timedelta(days=30))]


@pytest.fixture
def evidence_repo():
    repo = AsyncMock()
    repo.list_for_project.return_value = []
    repo.count_attempted_since.return_value = 0
    repo.compare_and_set_link.return_value = True
    repo.linkage_summary.return_value = {
        'total': 0, 'linked': 0, 'linked_auto': 0, 'linked_manual': 0, 'unlinked': 0,
    }
    return repo


@pytest.fixture
def activity_repo(activities):
    repo = AsyncMock()
    repo.list_for_project.return_value = activities
    return repo


@pytest.fixture
def runner(evidence_repo, activity_repo):
    return AutoLinkRunner(evidence_repo, activity_repo, AutoLinkPolicy())


def candidates(now, count, content=LINKABLE):
    return [make_evidence(now - timedelta(days=1), content) for _ in range(count)]


# ============================================================================
# TEST: RUN
# ============================================================================

class TestRun:

    @pytest.mark.asyncio
    async def test_links_and_counts_vetoes(self, runner, evidence_repo, now):
        linkable, short = make_evidence(now - timedelta(days=1), LINKABLE), make_evidence(now, "tiny")
        evidence_repo.list_for_project.return_value = [linkable, short]

        summary = await runner.run('proj-1', now=now)

        assert summary.to_dict() == {
            'project_id': 'proj-1',
            'linked': 1,
            'processed': 2,
            'deferred': 0,
            'vetoed': {'content_too_short': 1},
            'failed': 0,
            'conflicts': 0,
        }
        assert summary.linked_ids == [linkable.id]
        first_call = evidence_repo.compare_and_set_link.await_args_list[0]
        evidence_id, expected, updates = first_call.args
        assert evidence_id == linkable.id
        assert expected is None
        assert updates['linked_activity_id'] == 'ca_iso00001'
        assert updates['link_attempted_at'] == now

    @pytest.mark.asyncio
    async def test_candidates_loaded_for_project(self, runner, evidence_repo, now):
        await runner.run('proj-1', evidence_ids=['ev_aaaa0001'], now=now)

        evidence_repo.list_for_project.assert_awaited_once_with(
            'proj-1', evidence_ids=['ev_aaaa0001'], limit=100
        )
        evidence_repo.count_attempted_since.assert_awaited_once_with('proj-1', now - timedelta(hours=24))

    @pytest.mark.asyncio
    async def test_per_run_cap_defers_rest(self, runner, evidence_repo, now):
        evidence_repo.list_for_project.return_value = candidates(now, 30)

        summary = await runner.run('proj-1', now=now)

        assert summary.processed == 25
        assert summary.deferred == 5

    @pytest.mark.asyncio
    async def test_daily_budget_limits_run(self, runner, evidence_repo, now):
        evidence_repo.list_for_project.return_value = candidates(now, 20)
        evidence_repo.count_attempted_since.return_value = 90

        summary = await runner.run('proj-1', now=now)

        assert summary.processed == 10
        assert summary.deferred == 10

    @pytest.mark.asyncio
    async def test_budget_exhausted_defers_everything(self, runner, evidence_repo, now):
        evidence_repo.list_for_project.return_value = candidates(now, 3)
        evidence_repo.count_attempted_since.return_value = 100

        summary = await runner.run('proj-1', now=now)

        assert summary.processed == 0
        assert summary.deferred == 3
        evidence_repo.compare_and_set_link.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lost_compare_and_set_is_a_conflict(self, runner, evidence_repo, now):
        evidence_repo.list_for_project.return_value = candidates(now, 1)
        evidence_repo.compare_and_set_link.return_value = False

        summary = await runner.run('proj-1', now=now)

        assert summary.conflicts == 1
        assert summary.linked == 0

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_run(self, runner, evidence_repo, now):
        evidence_repo.list_for_project.return_value = candidates(now, 2)
        evidence_repo.compare_and_set_link.side_effect = [RuntimeError("db went away"), True]

        summary = await runner.run('proj-1', now=now)

        assert summary.failed == 1
        assert summary.linked == 1
        assert summary.processed == 2

    @pytest.mark.asyncio
    async def test_non_stamping_veto_writes_nothing(self, runner, evidence_repo, now):
        evidence_repo.list_for_project.return_value = [
            make_evidence(now - timedelta(days=1), LINKABLE, link_attempted_at=now - timedelta(minutes=10))
        ]

        summary = await runner.run('proj-1', now=now)

        assert summary.vetoed == {'attempt_cooldown': 1}
        evidence_repo.compare_and_set_link.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_manual_links_do_not_use_the_allowance(self, runner, evidence_repo, now):
        # Newest first: a full run's worth of manual links ahead of older linkable items
        manual = [
            make_evidence(now - timedelta(hours=1), LINKABLE,
                          link_source='manual', linked_activity_id='ca_iso00001')
            for _ in range(25)
        ]
        older = candidates(now, 5)
        evidence_repo.list_for_project.return_value = manual + older

        summary = await runner.run('proj-1', now=now)

        assert summary.linked == 5
        assert summary.processed == 5
        assert summary.deferred == 0
        assert summary.vetoed == {'manual_link': 25}
        assert summary.linked_ids == [e.id for e in older]
        assert evidence_repo.compare_and_set_link.await_count == 5

    @pytest.mark.asyncio
    async def test_cooldown_items_do_not_count_toward_deferral(self, runner, evidence_repo, now):
        cooling = [
            make_evidence(now - timedelta(days=1), LINKABLE, link_attempted_at=now - timedelta(minutes=10))
            for _ in range(3)
        ]
        evidence_repo.list_for_project.return_value = cooling + candidates(now, 2)
        evidence_repo.count_attempted_since.return_value = 99

        summary = await runner.run('proj-1', now=now)

        assert summary.processed == 1
        assert summary.deferred == 1
        assert summary.vetoed == {'attempt_cooldown': 3}

    @pytest.mark.asyncio
    async def test_no_activities_leaves_evidence_unstamped(self, runner, evidence_repo, activity_repo, now):
        activity_repo.list_for_project.return_value = []
        evidence_repo.list_for_project.return_value = candidates(now, 4)

        summary = await runner.run('proj-1', now=now)

        assert summary.processed == 0
        assert summary.deferred == 0
        assert summary.vetoed == {'no_activities': 4}
        evidence_repo.compare_and_set_link.assert_not_awaited()


# ============================================================================
# TEST: DIAGNOSTICS
# ============================================================================

class TestDiagnostics:

    @pytest.mark.asyncio
    async def test_no_activities_is_blocking(self, runner, activity_repo, now):
        activity_repo.list_for_project.return_value = []

        report = await runner.diagnostics('proj-1', now=now)

        assert report['blocking_issues'][0].startswith('NO_ACTIVITIES')
        assert report['evidence'] == []

    @pytest.mark.asyncio
    async def test_unknown_evidence(self, runner, evidence_repo, now):
        evidence_repo.get_by_id.return_value = None

        with pytest.raises(EvidenceNotFound):
            await runner.diagnostics('proj-1', evidence_id='ev_missing1', now=now)

    @pytest.mark.asyncio
    async def test_report_shape(self, runner, evidence_repo, now):
        evidence_repo.list_for_project.return_value = candidates(now, 2)
        evidence_repo.count_attempted_since.return_value = 12

        report = await runner.diagnostics('proj-1', now=now)

        assert report['budget'] == {'attempted_today': 12, 'daily_limit': 100, 'within_budget': True}
        assert len(report['evidence']) == 2
        assert report['evidence'][0]['blocking_reasons'] == []
        assert report['summary']['total'] == 0
        evidence_repo.list_for_project.assert_awaited_once_with('proj-1', limit=20)
        evidence_repo.compare_and_set_link.assert_not_awaited()
