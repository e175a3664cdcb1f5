"""Tests for app.repositories.sql — SQLAlchemy repositories against in-memory SQLite."""
from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

from app.errors import InsufficientBalanceError, NotFoundError, ValidationError
from app.models.project import Project, Wallet
from app.repositories.base import (
    ActivitySample, AdoptionStageRecord, BenchmarkRecord, CohortRecord, EarningRecord,
    PaymentRecord, PrivacyAuditRecord, RecommendationRecord, ScoreRecord, TaskRecord,
    WithdrawalPlan, WithdrawalRecord,
)
from app.repositories.sql import build_sql_repositories

D = Decimal
DAY = date(2026, 6, 1)


@pytest.fixture
def sql_repos():
    return build_sql_repositories()


@pytest.fixture
def seeded(db_session):
    db_session.add(Project(id='proj-1', owner_id='owner-1', name='Shielded Swap', category='defi'))
    db_session.add(Project(id='proj-2', owner_id='owner-2', name='Old', category='nft', status='archived'))
    db_session.add_all([
        Wallet(id='w1', project_id='proj-1', address='t1abc', wallet_type='t', privacy_mode='monetizable',
               created_at=datetime(2026, 1, 1)),
        Wallet(id='w2', project_id='proj-1', address='zs1abc', wallet_type='z', privacy_mode='private',
               created_at=datetime(2026, 1, 2)),
        Wallet(id='w3', project_id='proj-1', address='u1abc', wallet_type='u', privacy_mode='monetizable',
               is_active=False, created_at=datetime(2026, 1, 3)),
    ])
    db_session.commit()


# ---------------------------------------------------------------------------
# Projects and wallets
# ---------------------------------------------------------------------------

class TestSqlProjectRepository:

    def test_get_project(self, sql_repos, seeded):
        project = sql_repos.projects.get_project('proj-1')
        assert project.name == 'Shielded Swap'
        assert project.category == 'defi'
        assert sql_repos.projects.get_project('nope') is None

    def test_list_projects_by_status(self, sql_repos, seeded):
        assert [p.id for p in sql_repos.projects.list_projects()] == ['proj-1', 'proj-2']
        assert [p.id for p in sql_repos.projects.list_projects(status='active')] == ['proj-1']

    def test_wallet_carries_project_owner(self, sql_repos, seeded):
        wallet = sql_repos.projects.get_wallet('w2')
        assert wallet.owner_id == 'owner-1'
        assert wallet.wallet_type == 'z'
        assert sql_repos.projects.get_wallet('nope') is None

    def test_list_wallets(self, sql_repos, seeded):
        assert [w.id for w in sql_repos.projects.list_wallets('proj-1')] == ['w1', 'w2', 'w3']
        assert [w.id for w in sql_repos.projects.list_wallets('proj-1', active_only=True)] == ['w1', 'w2']

    def test_list_by_mode_skips_inactive(self, sql_repos, seeded):
        assert [w.id for w in sql_repos.projects.list_wallets_by_mode('monetizable')] == ['w1']

    def test_update_privacy_mode(self, sql_repos, seeded):
        updated = sql_repos.projects.update_privacy_mode('w2', 'public')
        assert updated.privacy_mode == 'public'
        assert sql_repos.projects.get_wallet('w2').privacy_mode == 'public'
        assert sql_repos.projects.update_privacy_mode('nope', 'public') is None

    def test_privacy_audit_newest_first(self, sql_repos, seeded):
        sql_repos.projects.add_privacy_audit(PrivacyAuditRecord(wallet_id='w1', old_mode='private',
                                                                new_mode='public', actor_id='owner-1'))
        second = sql_repos.projects.add_privacy_audit(PrivacyAuditRecord(wallet_id='w1', old_mode='public',
                                                                         new_mode='monetizable'))
        assert second.id is not None
        audit = sql_repos.projects.list_privacy_audit('w1')
        assert [a.new_mode for a in audit] == ['monetizable', 'public']
        assert len(sql_repos.projects.list_privacy_audit('w1', limit=1)) == 1

    def test_alert_thresholds_upsert(self, sql_repos, seeded):
        assert sql_repos.projects.get_alert_thresholds('proj-1') == {}
        sql_repos.projects.save_alert_thresholds('proj-1', {'churn': {'critical': 40}})
        sql_repos.projects.save_alert_thresholds('proj-1', {'churn': {'critical': 35}})
        assert sql_repos.projects.get_alert_thresholds('proj-1') == {'churn': {'critical': 35}}


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

class TestSqlMetricsRepository:

    def test_upsert_replaces_same_day(self, sql_repos, seeded):
        metrics = sql_repos.metrics
        metrics.upsert_activity([ActivitySample('w1', DAY, transaction_count=2, is_active=True)])
        metrics.upsert_activity([
            ActivitySample('w1', DAY, transaction_count=5, shielded_count=3, is_active=True),
            ActivitySample('w1', DAY + timedelta(days=1), transaction_count=1),
        ])
        rows = metrics.list_activity(['w1'])
        assert [(r.activity_date, r.transaction_count) for r in rows] == [
            (DAY, 5), (DAY + timedelta(days=1), 1),
        ]
        assert rows[0].shielded_count == 3

    def test_list_activity_window(self, sql_repos, seeded):
        sql_repos.metrics.upsert_activity([
            ActivitySample('w1', DAY + timedelta(days=n), transaction_count=1) for n in range(5)
        ])
        rows = sql_repos.metrics.list_activity(['w1'], since=DAY + timedelta(days=1), until=DAY + timedelta(days=3))
        assert len(rows) == 3
        assert sql_repos.metrics.list_activity([]) == []

    def test_latest_scores(self, sql_repos, seeded):
        sql_repos.metrics.add_scores([
            ScoreRecord('w1', 40, calculated_at=datetime(2026, 6, 1)),
            ScoreRecord('w1', 75, status='healthy', risk_level='low', calculated_at=datetime(2026, 6, 2)),
            ScoreRecord('w2', 10, calculated_at=datetime(2026, 6, 1)),
        ])
        latest = sql_repos.metrics.latest_scores(['w1', 'w2'])
        assert latest['w1'].total_score == 75
        assert latest['w1'].status == 'healthy'
        assert [s.total_score for s in sql_repos.metrics.list_scores(['w1'])] == [40, 75]
        assert len(sql_repos.metrics.list_scores(since=datetime(2026, 6, 2))) == 1
        assert sql_repos.metrics.list_scores([]) == []

    def test_upsert_cohorts(self, sql_repos, seeded):
        metrics = sql_repos.metrics
        metrics.upsert_cohorts([CohortRecord('proj-1', 'weekly', DAY, wallet_count=2, retention_week_1=50.0)])
        metrics.upsert_cohorts([
            CohortRecord('proj-1', 'weekly', DAY, wallet_count=3, retention_week_1=66.67),
            CohortRecord('proj-1', 'monthly', DAY, wallet_count=3),
        ])
        weekly = metrics.list_cohorts('proj-1', 'weekly')
        assert [(c.wallet_count, c.retention_week_1) for c in weekly] == [(3, 66.67)]
        assert len(metrics.list_cohorts('proj-1')) == 2

    def test_upsert_adoption_stages_keeps_achieved(self, sql_repos, seeded):
        metrics = sql_repos.metrics
        metrics.upsert_adoption_stages([
            AdoptionStageRecord('w1', 'first_tx', datetime(2026, 6, 1), 2.0),
            AdoptionStageRecord('w1', 'recurring'),
        ])
        metrics.upsert_adoption_stages([
            AdoptionStageRecord('w1', 'first_tx', datetime(2026, 6, 5), 98.0),
            AdoptionStageRecord('w1', 'recurring', datetime(2026, 6, 9), 192.0),
        ])
        stages = {s.stage_name: s for s in metrics.list_adoption_stages(['w1'])}
        assert stages['first_tx'].time_to_achieve_hours == 2.0
        assert stages['recurring'].achieved_at == datetime(2026, 6, 9)


# ---------------------------------------------------------------------------
# Benchmarks
# ---------------------------------------------------------------------------

def _bench(benchmark_type='productivity', as_of=DAY, p50=60):
    return BenchmarkRecord(benchmark_type=benchmark_type, category='defi', as_of_date=as_of,
                           p25=40, p50=p50, p75=75, p90=90, sample_size=50)


class TestSqlBenchmarkRepository:

    def test_add_and_latest(self, sql_repos):
        sql_repos.benchmarks.add(_bench(as_of=DAY, p50=55))
        stored = sql_repos.benchmarks.add(_bench(as_of=DAY + timedelta(days=7), p50=62))
        assert stored.id is not None
        assert sql_repos.benchmarks.latest('productivity', 'defi').p50 == 62
        assert sql_repos.benchmarks.latest('churn', 'defi') is None

    def test_duplicate_date_rejected(self, sql_repos):
        sql_repos.benchmarks.add(_bench())
        with pytest.raises(ValidationError):
            sql_repos.benchmarks.add(_bench())

    def test_latest_by_category_and_history(self, sql_repos):
        sql_repos.benchmarks.add(_bench('retention'))
        sql_repos.benchmarks.add(_bench('productivity', DAY))
        sql_repos.benchmarks.add(_bench('productivity', DAY + timedelta(days=1)))
        latest = sql_repos.benchmarks.latest_by_category('defi')
        assert [(b.benchmark_type, b.as_of_date) for b in latest] == [
            ('productivity', DAY + timedelta(days=1)), ('retention', DAY),
        ]
        assert len(sql_repos.benchmarks.history('productivity', 'defi', limit=1)) == 1
        assert len(sql_repos.benchmarks.list_all()) == 3

    def test_delete_before(self, sql_repos):
        sql_repos.benchmarks.add(_bench(as_of=DAY))
        sql_repos.benchmarks.add(_bench(as_of=DAY + timedelta(days=30)))
        assert sql_repos.benchmarks.delete_before(DAY + timedelta(days=1)) == 1
        assert len(sql_repos.benchmarks.list_all()) == 1


# ---------------------------------------------------------------------------
# Recommendations and tasks
# ---------------------------------------------------------------------------

class TestSqlRecommendationRepository:

    def test_recommendations_by_priority(self, sql_repos, seeded):
        recs = sql_repos.recommendations
        recs.add_recommendation(RecommendationRecord(type='marketing', title='Low', priority=3, wallet_id='w1'))
        high = recs.add_recommendation(RecommendationRecord(
            type='retention', title='High', priority=9, wallet_id='w1',
            completion_indicators={'activity_resumed': 7}, actions=['Send a reminder'],
        ))
        recs.add_recommendation(RecommendationRecord(type='retention', title='Project', priority=8,
                                                     project_id='proj-1'))
        assert [r.title for r in recs.list_recommendations(wallet_id='w1')] == ['High', 'Low']
        assert [r.title for r in recs.list_recommendations(project_id='proj-1')] == ['Project']
        fetched = recs.get_recommendation(high.id)
        assert fetched.completion_indicators == {'activity_resumed': 7}
        assert fetched.actions == ['Send a reminder']

    def test_task_lifecycle(self, sql_repos, seeded):
        recs = sql_repos.recommendations
        rec = recs.add_recommendation(RecommendationRecord(type='retention', title='T', priority=9, wallet_id='w1'))
        task = recs.add_task(TaskRecord(recommendation_id=rec.id, baseline_metrics={'total_score': 40}))
        assert recs.get_task(task.id).status == 'pending'

        task.status = 'completed'
        task.completion_percentage = 100.0
        task.completed_at = datetime(2026, 6, 30)
        recs.update_task(task)
        stored = recs.get_task(task.id)
        assert stored.status == 'completed'
        assert stored.baseline_metrics == {'total_score': 40}
        assert [t.id for t in recs.list_tasks(status='completed')] == [task.id]
        assert recs.list_tasks(status='pending') == []
        assert recs.update_task(TaskRecord(recommendation_id=rec.id, id=999)) is None


# ---------------------------------------------------------------------------
# Payments, earnings, withdrawals
# ---------------------------------------------------------------------------

def _pay(repos, invoice_id, amount='0.001', requester='buyer'):
    repos.payments.add_payment(PaymentRecord(
        invoice_id=invoice_id, requester_id=requester, wallet_id='w1', owner_id='owner-1', amount_zec=D(amount),
    ))
    owner_share = (D(amount) * D('0.7')).quantize(D('0.00000001'))
    return repos.payments.mark_payment_paid(invoice_id, 'tx-' + invoice_id, datetime(2026, 6, 30), EarningRecord(
        owner_id='owner-1', wallet_id='w1', payment_id=None,
        amount_zec=owner_share, platform_fee_zec=D(amount) - owner_share,
    ))


class TestSqlPaymentRepository:

    def test_mark_paid_once(self, sql_repos, seeded):
        paid = _pay(sql_repos, 'inv-1')
        assert paid.status == 'paid'
        assert paid.txid == 'tx-inv-1'
        assert sql_repos.payments.mark_payment_paid('inv-1', 'tx-again', datetime.now(), EarningRecord(
            owner_id='owner-1', wallet_id='w1', payment_id=None,
            amount_zec=D('1'), platform_fee_zec=D('0'),
        )) is None
        earnings = sql_repos.payments.list_earnings('owner-1')
        assert len(earnings) == 1
        assert earnings[0].amount_zec == D('0.0007')

    def test_access_and_counts(self, sql_repos, seeded):
        sql_repos.payments.add_payment(PaymentRecord(
            invoice_id='inv-pending', requester_id='other', wallet_id='w1', owner_id='owner-1', amount_zec=D('0.001'),
        ))
        _pay(sql_repos, 'inv-1')
        _pay(sql_repos, 'inv-2', requester='buyer-2')
        assert sql_repos.payments.has_paid_access('buyer', 'w1') is True
        assert sql_repos.payments.has_paid_access('other', 'w1') is False
        assert sql_repos.payments.purchase_counts(['w1', 'w2']) == {'w1': 2}
        assert [p.invoice_id for p in sql_repos.payments.find_payments('buyer', 'w1')] == ['inv-1']
        assert sql_repos.payments.get_payment('inv-pending').status == 'pending'

    def test_withdrawal_with_split(self, sql_repos, seeded):
        _pay(sql_repos, 'inv-1', amount='0.01')
        _pay(sql_repos, 'inv-2', amount='0.01')
        first, second = sql_repos.payments.list_earnings('owner-1')
        plan = WithdrawalPlan(consumed_ids=[first.id], split=(second.id, D('0.003')))
        withdrawal = sql_repos.payments.apply_withdrawal(WithdrawalRecord(
            owner_id='owner-1', to_address='zs1dest', amount_zec=D('0.01'),
            fee_zec=D('0.001'), net_zec=D('0.009'), gateway_withdrawal_id='wd-1',
        ), plan)
        assert withdrawal.id is not None

        pending = sql_repos.payments.list_earnings('owner-1', status='pending')
        withdrawn = sql_repos.payments.list_earnings('owner-1', status='withdrawn')
        assert sum(e.amount_zec for e in pending) == D('0.004')
        assert sum(e.amount_zec for e in withdrawn) == D('0.010')
        assert all(e.withdrawal_id == withdrawal.id for e in withdrawn)
        assert [w.gateway_withdrawal_id for w in sql_repos.payments.list_withdrawals('owner-1')] == ['wd-1']

    def test_complete_and_release(self, sql_repos, seeded):
        _pay(sql_repos, 'inv-1', amount='0.01')
        _pay(sql_repos, 'inv-2', amount='0.01')
        first, second = sql_repos.payments.list_earnings('owner-1')

        def reserve(plan):
            return sql_repos.payments.apply_withdrawal(WithdrawalRecord(
                owner_id='owner-1', to_address='zs1dest', amount_zec=D('0.007'),
                fee_zec=D('0.001'), net_zec=D('0.006'),
            ), plan)

        done = reserve(WithdrawalPlan(consumed_ids=[first.id]))
        assert done.status == 'processing'
        submitted = sql_repos.payments.complete_withdrawal(done.id, 'wd-9')
        assert (submitted.status, submitted.gateway_withdrawal_id) == ('submitted', 'wd-9')

        failed = reserve(WithdrawalPlan(split=(second.id, D('0.004'))))
        assert sql_repos.payments.release_withdrawal(failed.id).status == 'failed'
        pending = sql_repos.payments.list_earnings('owner-1', status='pending')
        assert sum(e.amount_zec for e in pending) == D('0.007')
        assert all(e.withdrawal_id is None for e in pending)

        with pytest.raises(ValidationError):
            sql_repos.payments.release_withdrawal(done.id)
        with pytest.raises(NotFoundError):
            sql_repos.payments.complete_withdrawal(999, 'wd-x')

    def test_stale_plan_rejected(self, sql_repos, seeded):
        _pay(sql_repos, 'inv-1', amount='0.01')
        (earning,) = sql_repos.payments.list_earnings('owner-1')
        withdrawal = WithdrawalRecord(owner_id='owner-1', to_address='zs1dest', amount_zec=D('0.007'),
                                      fee_zec=D('0.001'), net_zec=D('0.006'))
        sql_repos.payments.apply_withdrawal(withdrawal, WithdrawalPlan(consumed_ids=[earning.id]))
        with pytest.raises(InsufficientBalanceError):
            sql_repos.payments.apply_withdrawal(withdrawal, WithdrawalPlan(consumed_ids=[earning.id]))
        assert len(sql_repos.payments.list_withdrawals('owner-1')) == 1
