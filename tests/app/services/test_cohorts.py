"""Tests for app.services.cohorts — cohort assignment, weekly retention and adoption stage detection."""
from datetime import date, datetime, timedelta

import pytest

from app.repositories.base import ActivitySample, AdoptionStageRecord, WalletRecord
from app.services.cohorts import (
    assign_cohorts,
    build_cohorts,
    cohort_period,
    detect_adoption_stages,
)

JUNE_1 = date(2026, 6, 1)   # a Monday


def _wallet(wallet_id, created_at):
    return WalletRecord(id=wallet_id, project_id='proj-1', owner_id='owner-1',
                        address=f'addr-{wallet_id}', created_at=created_at)


def _sample(wallet_id, day, tx=1, **fields):
    return ActivitySample(wallet_id=wallet_id, activity_date=day, transaction_count=tx,
                          is_active=tx > 0, **fields)


# ---------------------------------------------------------------------------
# Cohorts
# ---------------------------------------------------------------------------

class TestCohortPeriod:

    @pytest.mark.parametrize('created,weekly,monthly', [
        (datetime(2026, 6, 3, 18, 30), date(2026, 6, 1), date(2026, 6, 1)),
        (date(2026, 6, 14), date(2026, 6, 8), date(2026, 6, 1)),
        (date(2026, 6, 1), date(2026, 6, 1), date(2026, 6, 1)),
        (date(2026, 7, 2), date(2026, 6, 29), date(2026, 7, 1)),
    ])
    def test_periods(self, created, weekly, monthly):
        assert cohort_period(created, 'weekly') == weekly
        assert cohort_period(created, 'monthly') == monthly

    def test_wallets_without_created_at_are_left_out(self):
        wallets = [_wallet('a', datetime(2026, 6, 2)), _wallet('b', None), _wallet('c', datetime(2026, 6, 9))]
        assert assign_cohorts(wallets, 'weekly') == {date(2026, 6, 1): ['a'], date(2026, 6, 8): ['c']}


class TestBuildCohorts:

    @pytest.fixture
    def cohorts(self):
        wallets = [
            _wallet('a', datetime(2026, 6, 2)),
            _wallet('b', datetime(2026, 6, 3)),
            _wallet('c', datetime(2026, 6, 9)),
        ]
        samples = [
            _sample('a', date(2026, 6, 2)),
            _sample('a', date(2026, 6, 10)),
            _sample('b', date(2026, 6, 16)),
            _sample('c', date(2026, 6, 12), tx=0),
        ]
        rows = build_cohorts('proj-1', wallets, samples, as_of=date(2026, 6, 20))
        return {(c.cohort_type, c.cohort_period): c for c in rows}

    def test_counts(self, cohorts):
        assert {k: c.wallet_count for k, c in cohorts.items()} == {
            ('weekly', JUNE_1): 2,
            ('weekly', date(2026, 6, 8)): 1,
            ('monthly', JUNE_1): 3,
        }

    def test_weekly_retention(self, cohorts):
        first = cohorts[('weekly', JUNE_1)]
        assert (first.retention_week_1, first.retention_week_2, first.retention_week_3) == (50.0, 50.0, 50.0)
        assert first.retention_week_4 is None

    def test_inactive_days_and_future_weeks(self, cohorts):
        second = cohorts[('weekly', date(2026, 6, 8))]
        assert (second.retention_week_1, second.retention_week_2) == (0.0, 0.0)
        assert second.retention_week_3 is None
        assert second.retention_week_4 is None

    def test_monthly_retention(self, cohorts):
        monthly = cohorts[('monthly', JUNE_1)]
        assert monthly.retention_week_1 == 33.33
        assert monthly.retention_week_3 == 33.33


# ---------------------------------------------------------------------------
# Adoption stages
# ---------------------------------------------------------------------------

class TestDetectAdoptionStages:

    def test_progression(self):
        wallet = _wallet('w1', datetime(2026, 6, 1, 12, 0))
        samples = [
            _sample('w1', date(2026, 6, 9), tx=2),
            _sample('w1', date(2026, 6, 1), transfers_count=1),
            _sample('w1', date(2026, 6, 2), tx=2, swaps_count=2),
        ]
        stages = detect_adoption_stages(wallet, samples)
        assert [(s.stage_name, s.time_to_achieve_hours) for s in stages] == [
            ('created', 0.0),
            ('first_tx', 0.0),
            ('feature_usage', 12.0),
            ('recurring', 180.0),
        ]
        assert stages[3].achieved_at == datetime(2026, 6, 9)

    def test_high_value_needs_volume(self):
        wallet = _wallet('w1', datetime(2026, 6, 1))
        samples = [
            _sample('w1', JUNE_1 + timedelta(days=4 * n), total_volume_zatoshi=100_000)
            for n in range(10)
        ]
        stages = {s.stage_name: s for s in detect_adoption_stages(wallet, samples)}
        assert stages['high_value'].achieved_at.date() == JUNE_1 + timedelta(days=36)
        assert 'feature_usage' not in stages

        for sample in samples:
            sample.total_volume_zatoshi = 99_999
        light = detect_adoption_stages(wallet, samples)
        assert [s.stage_name for s in light] == ['created', 'first_tx', 'recurring']

    def test_no_activity(self):
        stages = detect_adoption_stages(_wallet('w1', datetime(2026, 6, 1)), [])
        assert [s.stage_name for s in stages] == ['created']

    def test_missing_created_at_uses_first_row(self):
        stages = detect_adoption_stages(_wallet('w1', None), [_sample('w1', date(2026, 6, 5))])
        assert stages[0].achieved_at == datetime(2026, 6, 5)
        assert [s.stage_name for s in stages] == ['created', 'first_tx']


# ---------------------------------------------------------------------------
# CohortService
# ---------------------------------------------------------------------------

@pytest.fixture
def project(make_project, make_wallet, add_activity):
    make_project()
    created = datetime.now() - timedelta(days=3)
    make_wallet('w1', created_at=created)
    make_wallet('w2', created_at=created)
    add_activity('w1', 2, transaction_count=1, transfers_count=1)


class TestCohortService:

    def test_refresh_project(self, services, repos, project):
        result = services.cohorts.refresh_project('proj-1')
        assert result == {'project_id': 'proj-1', 'cohorts': 2, 'stages': 3}
        weekly = repos.metrics.list_cohorts('proj-1', 'weekly')
        assert [c.wallet_count for c in weekly] == [2]
        names = sorted((s.wallet_id, s.stage_name) for s in repos.metrics.list_adoption_stages(['w1', 'w2']))
        assert names == [('w1', 'created'), ('w1', 'first_tx'), ('w2', 'created')]

    def test_refresh_is_idempotent(self, services, repos, project):
        services.cohorts.refresh_project('proj-1')
        services.cohorts.refresh_project('proj-1')
        assert len(repos.metrics.list_cohorts('proj-1')) == 2
        assert len(repos.metrics.list_adoption_stages(['w1', 'w2'])) == 3

    def test_stages_limited_to_listed_wallets(self, services, repos, project):
        result = services.cohorts.refresh_project('proj-1', wallet_ids=['w1'])
        assert result['stages'] == 2
        assert repos.metrics.list_adoption_stages(['w2']) == []
        assert len(repos.metrics.list_cohorts('proj-1')) == 2

    def test_achieved_stage_keeps_first_time(self, repos, project):
        first = datetime(2026, 6, 1)
        repos.metrics.upsert_adoption_stages([AdoptionStageRecord('w1', 'first_tx', first, 2.0)])
        repos.metrics.upsert_adoption_stages([AdoptionStageRecord('w1', 'first_tx', datetime(2026, 6, 5), 98.0)])
        [stage] = repos.metrics.list_adoption_stages(['w1'])
        assert (stage.achieved_at, stage.time_to_achieve_hours) == (first, 2.0)
