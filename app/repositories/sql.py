"""
SQLAlchemy-backed repositories.

Each call opens its own session via app.database.get_session() (looked up at
call time so tests can patch it), commits on success, rolls back and logs on
failure, and always closes. Errors propagate to the service layer.
"""
import logging
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from app import database
from app.errors import InsufficientBalanceError, NotFoundError, ValidationError
from app.models.activity import (
    WalletActivityMetric, ProductivityScore, WalletCohort, WalletAdoptionStage,
)
from app.models.benchmark import Benchmark
from app.models.monetization import DataAccessPayment, Earning, Withdrawal
from app.models.privacy_audit import PrivacyAuditLog
from app.models.project import Project, Wallet, AlertConfiguration
from app.models.recommendation import Recommendation, RecommendationTask
from app.repositories.base import (
    ActivitySample, AdoptionStageRecord, BenchmarkRecord, BenchmarkRepository,
    CohortRecord, EarningRecord, MetricsRepository, PaymentRecord,
    PaymentRepository, PrivacyAuditRecord, ProjectRecord, ProjectRepository,
    RecommendationRecord, RecommendationRepository, Repositories, ScoreRecord,
    TaskRecord, WalletRecord, WithdrawalPlan, WithdrawalRecord,
)

logger = logging.getLogger('repositories.sql')

ZEC_QUANTUM = Decimal('0.00000001')


@contextmanager
def _session_scope(label):
    session = database.get_session()
    try:
        yield session
        session.commit()
    except (ValidationError, InsufficientBalanceError, NotFoundError):
        session.rollback()
        raise
    except Exception:
        session.rollback()
        logger.error("DB operation failed: %s", label, exc_info=True)
        raise
    finally:
        session.close()


def _dec(value) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal('0')


# ── Projects / wallets ────────────────────────────────────────────────────────

def _project_record(project: Project) -> ProjectRecord:
    return ProjectRecord(
        id=project.id, owner_id=project.owner_id, name=project.name,
        category=project.category, status=project.status,
        created_at=project.created_at,
    )


def _wallet_record(wallet: Wallet, owner_id: str) -> WalletRecord:
    return WalletRecord(
        id=wallet.id,
        project_id=wallet.project_id,
        owner_id=owner_id,
        address=wallet.address,
        wallet_type=wallet.wallet_type or 't',
        privacy_mode=wallet.privacy_mode or 'private',
        is_active=bool(wallet.is_active),
        created_at=wallet.created_at,
    )


def _audit_record(row: PrivacyAuditLog) -> PrivacyAuditRecord:
    return PrivacyAuditRecord(
        id=row.id, wallet_id=row.wallet_id, actor_id=row.actor_id,
        old_mode=row.old_mode, new_mode=row.new_mode, created_at=row.created_at,
    )


class SqlProjectRepository(ProjectRepository):

    def get_project(self, project_id):
        with _session_scope('get_project') as session:
            project = session.get(Project, project_id)
            return _project_record(project) if project is not None else None

    def list_projects(self, status=None):
        with _session_scope('list_projects') as session:
            q = session.query(Project)
            if status:
                q = q.filter(Project.status == status)
            return [_project_record(p) for p in q.order_by(Project.id).all()]

    def get_wallet(self, wallet_id):
        with _session_scope('get_wallet') as session:
            row = session.query(Wallet, Project.owner_id).join(
                Project, Wallet.project_id == Project.id,
            ).filter(Wallet.id == wallet_id).first()
            if row is None:
                return None
            return _wallet_record(row[0], row[1])

    def list_wallets(self, project_id, active_only=False):
        with _session_scope('list_wallets') as session:
            q = session.query(Wallet, Project.owner_id).join(
                Project, Wallet.project_id == Project.id,
            ).filter(Wallet.project_id == project_id)
            if active_only:
                q = q.filter(Wallet.is_active.is_(True))
            return [_wallet_record(w, owner) for w, owner in q.order_by(Wallet.created_at, Wallet.id).all()]

    def list_wallets_by_mode(self, mode):
        with _session_scope('list_wallets_by_mode') as session:
            rows = session.query(Wallet, Project.owner_id).join(
                Project, Wallet.project_id == Project.id,
            ).filter(
                Wallet.privacy_mode == mode,
                Wallet.is_active.is_(True),
            ).order_by(Wallet.id).all()
            return [_wallet_record(w, owner) for w, owner in rows]

    def update_privacy_mode(self, wallet_id, mode):
        with _session_scope('update_privacy_mode') as session:
            wallet = session.get(Wallet, wallet_id)
            if wallet is None:
                return None
            wallet.privacy_mode = mode
            wallet.updated_at = datetime.now()
            owner_id = session.query(Project.owner_id).filter(Project.id == wallet.project_id).scalar()
            session.flush()
            return _wallet_record(wallet, owner_id)

    def add_privacy_audit(self, record):
        with _session_scope('add_privacy_audit') as session:
            row = PrivacyAuditLog(
                wallet_id=record.wallet_id, actor_id=record.actor_id,
                old_mode=record.old_mode, new_mode=record.new_mode,
            )
            session.add(row)
            session.flush()
            record.id = row.id
            record.created_at = row.created_at or datetime.now()
            return record

    def list_privacy_audit(self, wallet_id, limit=50):
        with _session_scope('list_privacy_audit') as session:
            rows = session.query(PrivacyAuditLog).filter(
                PrivacyAuditLog.wallet_id == wallet_id,
            ).order_by(PrivacyAuditLog.id.desc()).limit(limit).all()
            return [_audit_record(r) for r in rows]

    def get_alert_thresholds(self, project_id):
        with _session_scope('get_alert_thresholds') as session:
            config = session.get(AlertConfiguration, project_id)
            return dict(config.thresholds or {}) if config else {}

    def save_alert_thresholds(self, project_id, thresholds):
        with _session_scope('save_alert_thresholds') as session:
            config = session.get(AlertConfiguration, project_id)
            if config is None:
                session.add(AlertConfiguration(project_id=project_id, thresholds=thresholds))
            else:
                config.thresholds = thresholds


# ── Metrics ───────────────────────────────────────────────────────────────────

_ACTIVITY_FIELDS = [
    'transaction_count', 'total_volume_zatoshi', 'total_fees_zatoshi',
    'shielded_count', 'transparent_count', 'shielded_volume_zatoshi',
    'transfers_count', 'swaps_count', 'bridges_count', 'is_active',
]


def _sample(row: WalletActivityMetric) -> ActivitySample:
    values = {name: getattr(row, name) for name in _ACTIVITY_FIELDS}
    for name in _ACTIVITY_FIELDS:
        if values[name] is None:
            values[name] = False if name == 'is_active' else 0
    return ActivitySample(wallet_id=row.wallet_id, activity_date=row.activity_date, **values)


def _score(row: ProductivityScore) -> ScoreRecord:
    return ScoreRecord(
        wallet_id=row.wallet_id,
        total_score=row.total_score,
        retention_score=row.retention_score or 0.0,
        adoption_score=row.adoption_score or 0.0,
        activity_score=row.activity_score or 0.0,
        diversity_score=row.diversity_score or 0.0,
        churn_score=row.churn_score or 0.0,
        status=row.status,
        risk_level=row.risk_level,
        calculated_at=row.calculated_at,
    )


class SqlMetricsRepository(MetricsRepository):

    def list_activity(self, wallet_ids, since=None, until=None):
        ids = list(wallet_ids)
        if not ids:
            return []
        with _session_scope('list_activity') as session:
            q = session.query(WalletActivityMetric).filter(WalletActivityMetric.wallet_id.in_(ids))
            if since is not None:
                q = q.filter(WalletActivityMetric.activity_date >= since)
            if until is not None:
                q = q.filter(WalletActivityMetric.activity_date <= until)
            rows = q.order_by(WalletActivityMetric.wallet_id, WalletActivityMetric.activity_date).all()
            return [_sample(r) for r in rows]

    def upsert_activity(self, samples):
        if not samples:
            return 0
        with _session_scope('upsert_activity') as session:
            for sample in samples:
                row = session.query(WalletActivityMetric).filter(
                    WalletActivityMetric.wallet_id == sample.wallet_id,
                    WalletActivityMetric.activity_date == sample.activity_date,
                ).first()
                if row is None:
                    row = WalletActivityMetric(wallet_id=sample.wallet_id, activity_date=sample.activity_date)
                    session.add(row)
                for name in _ACTIVITY_FIELDS:
                    setattr(row, name, getattr(sample, name))
            return len(samples)

    def add_scores(self, scores):
        if not scores:
            return 0
        with _session_scope('add_scores') as session:
            for s in scores:
                session.add(ProductivityScore(
                    wallet_id=s.wallet_id,
                    total_score=s.total_score,
                    retention_score=s.retention_score,
                    adoption_score=s.adoption_score,
                    activity_score=s.activity_score,
                    diversity_score=s.diversity_score,
                    churn_score=s.churn_score,
                    status=s.status,
                    risk_level=s.risk_level,
                    calculated_at=s.calculated_at or datetime.now(),
                ))
            return len(scores)

    def latest_scores(self, wallet_ids):
        ids = list(wallet_ids)
        if not ids:
            return {}
        with _session_scope('latest_scores') as session:
            rows = session.query(ProductivityScore).filter(
                ProductivityScore.wallet_id.in_(ids),
            ).order_by(ProductivityScore.calculated_at, ProductivityScore.id).all()
            latest = {}
            for row in rows:
                latest[row.wallet_id] = _score(row)
            return latest

    def list_scores(self, wallet_ids=None, since=None):
        with _session_scope('list_scores') as session:
            q = session.query(ProductivityScore)
            if wallet_ids is not None:
                ids = list(wallet_ids)
                if not ids:
                    return []
                q = q.filter(ProductivityScore.wallet_id.in_(ids))
            if since is not None:
                q = q.filter(ProductivityScore.calculated_at >= since)
            rows = q.order_by(ProductivityScore.calculated_at, ProductivityScore.id).all()
            return [_score(r) for r in rows]

    def list_cohorts(self, project_id, cohort_type=None, limit=None):
        with _session_scope('list_cohorts') as session:
            q = session.query(WalletCohort).filter(WalletCohort.project_id == project_id)
            if cohort_type:
                q = q.filter(WalletCohort.cohort_type == cohort_type)
            q = q.order_by(WalletCohort.cohort_period.desc())
            if limit:
                q = q.limit(limit)
            return [
                CohortRecord(
                    project_id=c.project_id, cohort_type=c.cohort_type,
                    cohort_period=c.cohort_period, wallet_count=c.wallet_count or 0,
                    retention_week_1=c.retention_week_1, retention_week_2=c.retention_week_2,
                    retention_week_3=c.retention_week_3, retention_week_4=c.retention_week_4,
                )
                for c in q.all()
            ]

    def upsert_cohorts(self, cohorts):
        if not cohorts:
            return 0
        with _session_scope('upsert_cohorts') as session:
            for c in cohorts:
                row = session.query(WalletCohort).filter(
                    WalletCohort.project_id == c.project_id,
                    WalletCohort.cohort_type == c.cohort_type,
                    WalletCohort.cohort_period == c.cohort_period,
                ).first()
                if row is None:
                    row = WalletCohort(project_id=c.project_id, cohort_type=c.cohort_type,
                                       cohort_period=c.cohort_period)
                    session.add(row)
                row.wallet_count = c.wallet_count
                row.retention_week_1 = c.retention_week_1
                row.retention_week_2 = c.retention_week_2
                row.retention_week_3 = c.retention_week_3
                row.retention_week_4 = c.retention_week_4
            return len(cohorts)

    def upsert_adoption_stages(self, stages):
        if not stages:
            return 0
        with _session_scope('upsert_adoption_stages') as session:
            for s in stages:
                row = session.query(WalletAdoptionStage).filter(
                    WalletAdoptionStage.wallet_id == s.wallet_id,
                    WalletAdoptionStage.stage_name == s.stage_name,
                ).first()
                if row is None:
                    session.add(WalletAdoptionStage(
                        wallet_id=s.wallet_id, stage_name=s.stage_name,
                        achieved_at=s.achieved_at, time_to_achieve_hours=s.time_to_achieve_hours,
                    ))
                elif row.achieved_at is None:
                    row.achieved_at = s.achieved_at
                    row.time_to_achieve_hours = s.time_to_achieve_hours
            return len(stages)

    def list_adoption_stages(self, wallet_ids):
        ids = list(wallet_ids)
        if not ids:
            return []
        with _session_scope('list_adoption_stages') as session:
            rows = session.query(WalletAdoptionStage).filter(
                WalletAdoptionStage.wallet_id.in_(ids),
            ).all()
            return [
                AdoptionStageRecord(
                    wallet_id=r.wallet_id, stage_name=r.stage_name,
                    achieved_at=r.achieved_at, time_to_achieve_hours=r.time_to_achieve_hours,
                )
                for r in rows
            ]


# ── Benchmarks ────────────────────────────────────────────────────────────────

def _benchmark(row: Benchmark) -> BenchmarkRecord:
    return BenchmarkRecord(
        id=row.id, benchmark_type=row.benchmark_type, category=row.category,
        as_of_date=row.as_of_date, p25=row.p25, p50=row.p50, p75=row.p75,
        p90=row.p90, sample_size=row.sample_size or 0,
    )


class SqlBenchmarkRepository(BenchmarkRepository):

    def add(self, record):
        session = database.get_session()
        try:
            row = Benchmark(
                benchmark_type=record.benchmark_type, category=record.category,
                as_of_date=record.as_of_date, p25=record.p25, p50=record.p50,
                p75=record.p75, p90=record.p90, sample_size=record.sample_size,
            )
            session.add(row)
            session.commit()
            record.id = row.id
            return record
        except IntegrityError:
            session.rollback()
            raise ValidationError(
                'Benchmark snapshot already exists for this date',
                details={
                    'benchmark_type': record.benchmark_type,
                    'category': record.category,
                    'as_of_date': record.as_of_date.isoformat(),
                },
            )
        except Exception:
            session.rollback()
            logger.error("Failed to store benchmark %s/%s", record.benchmark_type, record.category, exc_info=True)
            raise
        finally:
            session.close()

    def latest(self, benchmark_type, category):
        with _session_scope('latest_benchmark') as session:
            row = session.query(Benchmark).filter(
                Benchmark.benchmark_type == benchmark_type,
                Benchmark.category == category,
            ).order_by(Benchmark.as_of_date.desc()).first()
            return _benchmark(row) if row else None

    def latest_by_category(self, category):
        with _session_scope('latest_by_category') as session:
            rows = session.query(Benchmark).filter(
                Benchmark.category == category,
            ).order_by(Benchmark.benchmark_type, Benchmark.as_of_date.desc()).all()
            latest = {}
            for row in rows:
                latest.setdefault(row.benchmark_type, _benchmark(row))
            return list(latest.values())

    def history(self, benchmark_type, category, limit=30):
        with _session_scope('benchmark_history') as session:
            rows = session.query(Benchmark).filter(
                Benchmark.benchmark_type == benchmark_type,
                Benchmark.category == category,
            ).order_by(Benchmark.as_of_date.desc()).limit(limit).all()
            return [_benchmark(r) for r in rows]

    def list_all(self):
        with _session_scope('list_benchmarks') as session:
            rows = session.query(Benchmark).order_by(Benchmark.as_of_date.desc()).all()
            return [_benchmark(r) for r in rows]

    def delete_before(self, cutoff):
        with _session_scope('delete_benchmarks') as session:
            return session.query(Benchmark).filter(
                Benchmark.as_of_date < cutoff,
            ).delete(synchronize_session=False)


# ── Recommendations / tasks ──────────────────────────────────────────────────

_RECOMMENDATION_FIELDS = [
    'project_id', 'wallet_id', 'type', 'title', 'description', 'priority',
    'current_state', 'target_state', 'timeline', 'expected_impact',
    'effort_level', 'actions', 'completion_indicators',
]

_TASK_FIELDS = [
    'recommendation_id', 'status', 'baseline_metrics', 'completion_percentage',
    'effectiveness_score', 'effectiveness_level', 'last_checked_at', 'completed_at',
]


def _recommendation(row: Recommendation) -> RecommendationRecord:
    values = {name: getattr(row, name) for name in _RECOMMENDATION_FIELDS}
    return RecommendationRecord(id=row.id, created_at=row.created_at, **values)


def _task(row: RecommendationTask) -> TaskRecord:
    values = {name: getattr(row, name) for name in _TASK_FIELDS}
    values['baseline_metrics'] = values['baseline_metrics'] or {}
    values['completion_percentage'] = values['completion_percentage'] or 0.0
    return TaskRecord(id=row.id, created_at=row.created_at, **values)


class SqlRecommendationRepository(RecommendationRepository):

    def add_recommendation(self, record):
        with _session_scope('add_recommendation') as session:
            row = Recommendation(**{name: getattr(record, name) for name in _RECOMMENDATION_FIELDS})
            session.add(row)
            session.flush()
            record.id = row.id
            record.created_at = row.created_at or datetime.now()
            return record

    def get_recommendation(self, recommendation_id):
        with _session_scope('get_recommendation') as session:
            row = session.get(Recommendation, recommendation_id)
            return _recommendation(row) if row else None

    def list_recommendations(self, wallet_id=None, project_id=None):
        with _session_scope('list_recommendations') as session:
            q = session.query(Recommendation)
            if wallet_id is not None:
                q = q.filter(Recommendation.wallet_id == wallet_id)
            if project_id is not None:
                q = q.filter(Recommendation.project_id == project_id)
            rows = q.order_by(Recommendation.priority.desc(), Recommendation.id).all()
            return [_recommendation(r) for r in rows]

    def add_task(self, record):
        with _session_scope('add_task') as session:
            row = RecommendationTask(**{name: getattr(record, name) for name in _TASK_FIELDS})
            session.add(row)
            session.flush()
            record.id = row.id
            record.created_at = row.created_at or datetime.now()
            return record

    def get_task(self, task_id):
        with _session_scope('get_task') as session:
            row = session.get(RecommendationTask, task_id)
            return _task(row) if row else None

    def list_tasks(self, status=None):
        with _session_scope('list_tasks') as session:
            q = session.query(RecommendationTask)
            if status:
                q = q.filter(RecommendationTask.status == status)
            return [_task(r) for r in q.order_by(RecommendationTask.id).all()]

    def update_task(self, record):
        with _session_scope('update_task') as session:
            row = session.get(RecommendationTask, record.id)
            if row is None:
                return None
            for name in _TASK_FIELDS:
                setattr(row, name, getattr(record, name))
            return record


# ── Payments / earnings / withdrawals ────────────────────────────────────────

def _payment(row: DataAccessPayment) -> PaymentRecord:
    return PaymentRecord(
        id=row.id, invoice_id=row.invoice_id, requester_id=row.requester_id,
        requester_email=row.requester_email, wallet_id=row.wallet_id,
        owner_id=row.owner_id, amount_zec=_dec(row.amount_zec), status=row.status,
        payment_address=row.payment_address, txid=row.txid,
        expires_at=row.expires_at, paid_at=row.paid_at, created_at=row.created_at,
    )


def _earning(row: Earning) -> EarningRecord:
    return EarningRecord(
        id=row.id, owner_id=row.owner_id, wallet_id=row.wallet_id,
        payment_id=row.payment_id, amount_zec=_dec(row.amount_zec),
        platform_fee_zec=_dec(row.platform_fee_zec), status=row.status,
        withdrawal_id=row.withdrawal_id, created_at=row.created_at,
    )


def _withdrawal(row: Withdrawal) -> WithdrawalRecord:
    return WithdrawalRecord(
        id=row.id, owner_id=row.owner_id, to_address=row.to_address,
        amount_zec=_dec(row.amount_zec), fee_zec=_dec(row.fee_zec),
        net_zec=_dec(row.net_zec), status=row.status,
        gateway_withdrawal_id=row.gateway_withdrawal_id, created_at=row.created_at,
    )


class SqlPaymentRepository(PaymentRepository):

    def add_payment(self, record):
        with _session_scope('add_payment') as session:
            row = DataAccessPayment(
                invoice_id=record.invoice_id, requester_id=record.requester_id,
                requester_email=record.requester_email, wallet_id=record.wallet_id,
                owner_id=record.owner_id, amount_zec=record.amount_zec,
                status=record.status, payment_address=record.payment_address,
                expires_at=record.expires_at,
            )
            session.add(row)
            session.flush()
            record.id = row.id
            record.created_at = row.created_at or datetime.now()
            return record

    def get_payment(self, invoice_id):
        with _session_scope('get_payment') as session:
            row = session.query(DataAccessPayment).filter(DataAccessPayment.invoice_id == invoice_id).first()
            return _payment(row) if row else None

    def find_payments(self, requester_id, wallet_id):
        with _session_scope('find_payments') as session:
            rows = session.query(DataAccessPayment).filter(
                DataAccessPayment.requester_id == requester_id,
                DataAccessPayment.wallet_id == wallet_id,
            ).order_by(DataAccessPayment.id.desc()).all()
            return [_payment(r) for r in rows]

    def mark_payment_paid(self, invoice_id, txid, paid_at, earning):
        with _session_scope('mark_payment_paid') as session:
            updated = session.query(DataAccessPayment).filter(
                DataAccessPayment.invoice_id == invoice_id,
                DataAccessPayment.status == 'pending',
            ).update({'status': 'paid', 'txid': txid, 'paid_at': paid_at})
            if updated == 0:
                return None
            payment = session.query(DataAccessPayment).filter(DataAccessPayment.invoice_id == invoice_id).one()
            session.add(Earning(
                owner_id=earning.owner_id, wallet_id=earning.wallet_id,
                payment_id=payment.id, amount_zec=earning.amount_zec,
                platform_fee_zec=earning.platform_fee_zec, status='pending',
            ))
            session.flush()
            return _payment(payment)

    def has_paid_access(self, requester_id, wallet_id):
        with _session_scope('has_paid_access') as session:
            count = session.query(func.count(DataAccessPayment.id)).filter(
                DataAccessPayment.requester_id == requester_id,
                DataAccessPayment.wallet_id == wallet_id,
                DataAccessPayment.status == 'paid',
            ).scalar()
            return bool(count)

    def purchase_counts(self, wallet_ids):
        ids = list(wallet_ids)
        if not ids:
            return {}
        with _session_scope('purchase_counts') as session:
            rows = session.query(
                DataAccessPayment.wallet_id, func.count(DataAccessPayment.id),
            ).filter(
                DataAccessPayment.wallet_id.in_(ids),
                DataAccessPayment.status == 'paid',
            ).group_by(DataAccessPayment.wallet_id).all()
            return {wallet_id: int(count) for wallet_id, count in rows}

    def list_earnings(self, owner_id, status=None):
        with _session_scope('list_earnings') as session:
            q = session.query(Earning).filter(Earning.owner_id == owner_id)
            if status:
                q = q.filter(Earning.status == status)
            return [_earning(r) for r in q.order_by(Earning.created_at, Earning.id).all()]

    def apply_withdrawal(self, withdrawal, plan):
        with _session_scope('apply_withdrawal') as session:
            row = Withdrawal(
                owner_id=withdrawal.owner_id, to_address=withdrawal.to_address,
                amount_zec=withdrawal.amount_zec, fee_zec=withdrawal.fee_zec,
                net_zec=withdrawal.net_zec, status=withdrawal.status,
                gateway_withdrawal_id=withdrawal.gateway_withdrawal_id,
            )
            session.add(row)
            session.flush()

            if plan.consumed_ids:
                updated = session.query(Earning).filter(
                    Earning.id.in_(plan.consumed_ids),
                    Earning.owner_id == withdrawal.owner_id,
                    Earning.status == 'pending',
                ).update({'status': 'withdrawn', 'withdrawal_id': row.id})
                if updated != len(plan.consumed_ids):
                    raise InsufficientBalanceError('Earnings changed while processing the withdrawal')

            if plan.split is not None:
                earning_id, consumed = plan.split
                source = session.query(Earning).filter(
                    Earning.id == earning_id,
                    Earning.owner_id == withdrawal.owner_id,
                    Earning.status == 'pending',
                ).with_for_update().first()
                if source is None or _dec(source.amount_zec) <= consumed:
                    raise InsufficientBalanceError('Earnings changed while processing the withdrawal')
                source_amount = _dec(source.amount_zec)
                fee_part = (_dec(source.platform_fee_zec) * consumed / source_amount).quantize(ZEC_QUANTUM)
                source.amount_zec = source_amount - consumed
                source.platform_fee_zec = _dec(source.platform_fee_zec) - fee_part
                session.add(Earning(
                    owner_id=source.owner_id, wallet_id=source.wallet_id,
                    payment_id=source.payment_id, amount_zec=consumed,
                    platform_fee_zec=fee_part, status='withdrawn',
                    withdrawal_id=row.id, created_at=source.created_at,
                ))

            session.flush()
            withdrawal.id = row.id
            withdrawal.created_at = row.created_at or datetime.now()
            return withdrawal

    @staticmethod
    def _processing(session, withdrawal_id):
        row = session.query(Withdrawal).filter(Withdrawal.id == withdrawal_id).with_for_update().first()
        if row is None:
            raise NotFoundError(f'Withdrawal {withdrawal_id} not found')
        if row.status != 'processing':
            raise ValidationError(f'Withdrawal {withdrawal_id} is already {row.status}')
        return row

    def complete_withdrawal(self, withdrawal_id, gateway_withdrawal_id):
        with _session_scope('complete_withdrawal') as session:
            row = self._processing(session, withdrawal_id)
            row.status = 'submitted'
            row.gateway_withdrawal_id = gateway_withdrawal_id
            session.flush()
            return _withdrawal(row)

    def release_withdrawal(self, withdrawal_id):
        with _session_scope('release_withdrawal') as session:
            row = self._processing(session, withdrawal_id)
            row.status = 'failed'
            session.query(Earning).filter(Earning.withdrawal_id == withdrawal_id).update(
                {'status': 'pending', 'withdrawal_id': None}, synchronize_session=False,
            )
            session.flush()
            return _withdrawal(row)

    def list_withdrawals(self, owner_id):
        with _session_scope('list_withdrawals') as session:
            rows = session.query(Withdrawal).filter(
                Withdrawal.owner_id == owner_id,
            ).order_by(Withdrawal.id.desc()).all()
            return [_withdrawal(r) for r in rows]


def build_sql_repositories() -> Repositories:
    return Repositories(
        projects=SqlProjectRepository(),
        metrics=SqlMetricsRepository(),
        benchmarks=SqlBenchmarkRepository(),
        recommendations=SqlRecommendationRepository(),
        payments=SqlPaymentRepository(),
    )
