"""
In-memory repositories — same contracts as repositories/sql.py.

Activated with MOCK_STORAGE=1 for local demos, and used by the test suite to
exercise services without a database. All state sits behind one lock per
repository so concurrent requests see consistent snapshots.
"""
import copy
import itertools
import threading
from datetime import datetime
from decimal import Decimal

from app.errors import InsufficientBalanceError, NotFoundError, ValidationError
from app.repositories.base import (
    BenchmarkRepository, EarningRecord, MetricsRepository, PaymentRepository,
    ProjectRecord, ProjectRepository, RecommendationRepository, Repositories,
    WalletRecord,
)

ZEC_QUANTUM = Decimal('0.00000001')


class _Store:
    def __init__(self):
        self._lock = threading.RLock()
        self._ids = itertools.count(1)

    def _next_id(self):
        return next(self._ids)


class MemoryProjectRepository(_Store, ProjectRepository):

    def __init__(self):
        super().__init__()
        self.projects = {}
        self.wallets = {}
        self.audit = []
        self.alert_thresholds = {}

    # Seeding helpers (not part of the contract)
    def add_project(self, project: ProjectRecord) -> ProjectRecord:
        with self._lock:
            self.projects[project.id] = copy.deepcopy(project)
            return project

    def add_wallet(self, wallet: WalletRecord) -> WalletRecord:
        with self._lock:
            project = self.projects.get(wallet.project_id)
            if project is not None:
                wallet.owner_id = project.owner_id
            if wallet.created_at is None:
                wallet.created_at = datetime.now()
            self.wallets[wallet.id] = copy.deepcopy(wallet)
            return wallet

    def get_project(self, project_id):
        with self._lock:
            return copy.deepcopy(self.projects.get(project_id))

    def list_projects(self, status=None):
        with self._lock:
            rows = [p for p in self.projects.values() if status is None or p.status == status]
            return copy.deepcopy(sorted(rows, key=lambda p: p.id))

    def get_wallet(self, wallet_id):
        with self._lock:
            return copy.deepcopy(self.wallets.get(wallet_id))

    def list_wallets(self, project_id, active_only=False):
        with self._lock:
            wallets = [
                w for w in self.wallets.values()
                if w.project_id == project_id and (w.is_active or not active_only)
            ]
            return copy.deepcopy(sorted(wallets, key=lambda w: (w.created_at, w.id)))

    def list_wallets_by_mode(self, mode):
        with self._lock:
            wallets = [w for w in self.wallets.values() if w.privacy_mode == mode and w.is_active]
            return copy.deepcopy(sorted(wallets, key=lambda w: w.id))

    def update_privacy_mode(self, wallet_id, mode):
        with self._lock:
            wallet = self.wallets.get(wallet_id)
            if wallet is None:
                return None
            wallet.privacy_mode = mode
            return copy.deepcopy(wallet)

    def add_privacy_audit(self, record):
        with self._lock:
            record.id = self._next_id()
            record.created_at = record.created_at or datetime.now()
            self.audit.append(copy.deepcopy(record))
            return record

    def list_privacy_audit(self, wallet_id, limit=50):
        with self._lock:
            rows = [r for r in reversed(self.audit) if r.wallet_id == wallet_id]
            return copy.deepcopy(rows[:limit])

    def get_alert_thresholds(self, project_id):
        with self._lock:
            return copy.deepcopy(self.alert_thresholds.get(project_id, {}))

    def save_alert_thresholds(self, project_id, thresholds):
        with self._lock:
            self.alert_thresholds[project_id] = copy.deepcopy(thresholds)


class MemoryMetricsRepository(_Store, MetricsRepository):

    def __init__(self):
        super().__init__()
        self.activity = {}      # (wallet_id, date) → ActivitySample
        self.scores = []
        self.cohorts = []
        self.stages = []

    def add_cohort(self, cohort):
        with self._lock:
            self.cohorts.append(copy.deepcopy(cohort))

    def add_adoption_stage(self, stage):
        with self._lock:
            self.stages.append(copy.deepcopy(stage))

    def list_activity(self, wallet_ids, since=None, until=None):
        ids = set(wallet_ids)
        with self._lock:
            rows = [
                s for (wallet_id, day), s in self.activity.items()
                if wallet_id in ids
                and (since is None or day >= since)
                and (until is None or day <= until)
            ]
            return copy.deepcopy(sorted(rows, key=lambda s: (s.wallet_id, s.activity_date)))

    def upsert_activity(self, samples):
        with self._lock:
            for sample in samples:
                self.activity[(sample.wallet_id, sample.activity_date)] = copy.deepcopy(sample)
            return len(samples)

    def add_scores(self, scores):
        with self._lock:
            for score in scores:
                stored = copy.deepcopy(score)
                stored.calculated_at = stored.calculated_at or datetime.now()
                self.scores.append(stored)
            return len(scores)

    def latest_scores(self, wallet_ids):
        ids = set(wallet_ids)
        with self._lock:
            latest = {}
            for score in sorted(self.scores, key=lambda s: s.calculated_at):
                if score.wallet_id in ids:
                    latest[score.wallet_id] = score
            return copy.deepcopy(latest)

    def list_scores(self, wallet_ids=None, since=None):
        ids = set(wallet_ids) if wallet_ids is not None else None
        with self._lock:
            rows = [
                s for s in self.scores
                if (ids is None or s.wallet_id in ids) and (since is None or s.calculated_at >= since)
            ]
            return copy.deepcopy(sorted(rows, key=lambda s: s.calculated_at))

    def list_cohorts(self, project_id, cohort_type=None, limit=None):
        with self._lock:
            rows = [
                c for c in self.cohorts
                if c.project_id == project_id and (cohort_type is None or c.cohort_type == cohort_type)
            ]
            rows.sort(key=lambda c: c.cohort_period, reverse=True)
            return copy.deepcopy(rows[:limit] if limit else rows)

    def upsert_cohorts(self, cohorts):
        with self._lock:
            for cohort in cohorts:
                key = (cohort.project_id, cohort.cohort_type, cohort.cohort_period)
                self.cohorts = [
                    c for c in self.cohorts if (c.project_id, c.cohort_type, c.cohort_period) != key
                ]
                self.cohorts.append(copy.deepcopy(cohort))
            return len(cohorts)

    def upsert_adoption_stages(self, stages):
        with self._lock:
            for stage in stages:
                current = next(
                    (s for s in self.stages
                     if s.wallet_id == stage.wallet_id and s.stage_name == stage.stage_name),
                    None,
                )
                if current is None:
                    self.stages.append(copy.deepcopy(stage))
                elif current.achieved_at is None:
                    current.achieved_at = stage.achieved_at
                    current.time_to_achieve_hours = stage.time_to_achieve_hours
            return len(stages)

    def list_adoption_stages(self, wallet_ids):
        ids = set(wallet_ids)
        with self._lock:
            return copy.deepcopy([s for s in self.stages if s.wallet_id in ids])


class MemoryBenchmarkRepository(_Store, BenchmarkRepository):

    def __init__(self):
        super().__init__()
        self.rows = []

    def add(self, record):
        with self._lock:
            for row in self.rows:
                if (row.benchmark_type, row.category, row.as_of_date) == \
                        (record.benchmark_type, record.category, record.as_of_date):
                    raise ValidationError(
                        'Benchmark snapshot already exists for this date',
                        details={
                            'benchmark_type': record.benchmark_type,
                            'category': record.category,
                            'as_of_date': record.as_of_date.isoformat(),
                        },
                    )
            record.id = self._next_id()
            self.rows.append(copy.deepcopy(record))
            return record

    def _newest_first(self, rows):
        return sorted(rows, key=lambda r: r.as_of_date, reverse=True)

    def latest(self, benchmark_type, category):
        with self._lock:
            rows = [r for r in self.rows if r.benchmark_type == benchmark_type and r.category == category]
            return copy.deepcopy(self._newest_first(rows)[0]) if rows else None

    def latest_by_category(self, category):
        with self._lock:
            latest = {}
            for row in self._newest_first([r for r in self.rows if r.category == category]):
                latest.setdefault(row.benchmark_type, row)
            return copy.deepcopy(sorted(latest.values(), key=lambda r: r.benchmark_type))

    def history(self, benchmark_type, category, limit=30):
        with self._lock:
            rows = [r for r in self.rows if r.benchmark_type == benchmark_type and r.category == category]
            return copy.deepcopy(self._newest_first(rows)[:limit])

    def list_all(self):
        with self._lock:
            return copy.deepcopy(self._newest_first(self.rows))

    def delete_before(self, cutoff):
        with self._lock:
            before = len(self.rows)
            self.rows = [r for r in self.rows if r.as_of_date >= cutoff]
            return before - len(self.rows)


class MemoryRecommendationRepository(_Store, RecommendationRepository):

    def __init__(self):
        super().__init__()
        self.recommendations = {}
        self.tasks = {}

    def add_recommendation(self, record):
        with self._lock:
            record.id = self._next_id()
            record.created_at = record.created_at or datetime.now()
            self.recommendations[record.id] = copy.deepcopy(record)
            return record

    def get_recommendation(self, recommendation_id):
        with self._lock:
            return copy.deepcopy(self.recommendations.get(recommendation_id))

    def list_recommendations(self, wallet_id=None, project_id=None):
        with self._lock:
            rows = [
                r for r in self.recommendations.values()
                if (wallet_id is None or r.wallet_id == wallet_id)
                and (project_id is None or r.project_id == project_id)
            ]
            return copy.deepcopy(sorted(rows, key=lambda r: (-r.priority, r.id)))

    def add_task(self, record):
        with self._lock:
            record.id = self._next_id()
            record.created_at = record.created_at or datetime.now()
            self.tasks[record.id] = copy.deepcopy(record)
            return record

    def get_task(self, task_id):
        with self._lock:
            return copy.deepcopy(self.tasks.get(task_id))

    def list_tasks(self, status=None):
        with self._lock:
            rows = [t for t in self.tasks.values() if status is None or t.status == status]
            return copy.deepcopy(sorted(rows, key=lambda t: t.id))

    def update_task(self, record):
        with self._lock:
            if record.id not in self.tasks:
                return None
            self.tasks[record.id] = copy.deepcopy(record)
            return record


class MemoryPaymentRepository(_Store, PaymentRepository):

    def __init__(self):
        super().__init__()
        self.payments = {}      # invoice_id → PaymentRecord
        self.earnings = {}      # id → EarningRecord
        self.withdrawals = {}

    def add_payment(self, record):
        with self._lock:
            record.id = self._next_id()
            record.created_at = record.created_at or datetime.now()
            self.payments[record.invoice_id] = copy.deepcopy(record)
            return record

    def get_payment(self, invoice_id):
        with self._lock:
            return copy.deepcopy(self.payments.get(invoice_id))

    def find_payments(self, requester_id, wallet_id):
        with self._lock:
            rows = [
                p for p in self.payments.values()
                if p.requester_id == requester_id and p.wallet_id == wallet_id
            ]
            return copy.deepcopy(sorted(rows, key=lambda p: p.id, reverse=True))

    def add_earning(self, record: EarningRecord) -> EarningRecord:
        with self._lock:
            record.id = self._next_id()
            record.created_at = record.created_at or datetime.now()
            self.earnings[record.id] = copy.deepcopy(record)
            return record

    def mark_payment_paid(self, invoice_id, txid, paid_at, earning):
        with self._lock:
            payment = self.payments.get(invoice_id)
            if payment is None or payment.status != 'pending':
                return None
            payment.status = 'paid'
            payment.txid = txid
            payment.paid_at = paid_at
            earning.payment_id = payment.id
            earning.status = 'pending'
            self.add_earning(earning)
            return copy.deepcopy(payment)

    def has_paid_access(self, requester_id, wallet_id):
        with self._lock:
            return any(
                p.requester_id == requester_id and p.wallet_id == wallet_id and p.status == 'paid'
                for p in self.payments.values()
            )

    def purchase_counts(self, wallet_ids):
        ids = set(wallet_ids)
        with self._lock:
            counts = {}
            for p in self.payments.values():
                if p.wallet_id in ids and p.status == 'paid':
                    counts[p.wallet_id] = counts.get(p.wallet_id, 0) + 1
            return counts

    def list_earnings(self, owner_id, status=None):
        with self._lock:
            rows = [
                e for e in self.earnings.values()
                if e.owner_id == owner_id and (status is None or e.status == status)
            ]
            return copy.deepcopy(sorted(rows, key=lambda e: (e.created_at, e.id)))

    def apply_withdrawal(self, withdrawal, plan):
        with self._lock:
            targets = [self.earnings.get(i) for i in plan.consumed_ids]
            if any(e is None or e.status != 'pending' or e.owner_id != withdrawal.owner_id for e in targets):
                raise InsufficientBalanceError('Earnings changed while processing the withdrawal')
            source = None
            if plan.split is not None:
                source = self.earnings.get(plan.split[0])
                if source is None or source.status != 'pending' or source.amount_zec <= plan.split[1]:
                    raise InsufficientBalanceError('Earnings changed while processing the withdrawal')

            withdrawal.id = self._next_id()
            withdrawal.created_at = withdrawal.created_at or datetime.now()
            self.withdrawals[withdrawal.id] = copy.deepcopy(withdrawal)

            for earning in targets:
                earning.status = 'withdrawn'
                earning.withdrawal_id = withdrawal.id

            if source is not None:
                consumed = plan.split[1]
                fee_part = (source.platform_fee_zec * consumed / source.amount_zec).quantize(ZEC_QUANTUM)
                source.amount_zec -= consumed
                source.platform_fee_zec -= fee_part
                self.add_earning(EarningRecord(
                    owner_id=source.owner_id, wallet_id=source.wallet_id,
                    payment_id=source.payment_id, amount_zec=consumed,
                    platform_fee_zec=fee_part, status='withdrawn',
                    withdrawal_id=withdrawal.id, created_at=source.created_at,
                ))
            return withdrawal

    def _processing(self, withdrawal_id):
        withdrawal = self.withdrawals.get(withdrawal_id)
        if withdrawal is None:
            raise NotFoundError(f'Withdrawal {withdrawal_id} not found')
        if withdrawal.status != 'processing':
            raise ValidationError(f'Withdrawal {withdrawal_id} is already {withdrawal.status}')
        return withdrawal

    def complete_withdrawal(self, withdrawal_id, gateway_withdrawal_id):
        with self._lock:
            withdrawal = self._processing(withdrawal_id)
            withdrawal.status = 'submitted'
            withdrawal.gateway_withdrawal_id = gateway_withdrawal_id
            return copy.deepcopy(withdrawal)

    def release_withdrawal(self, withdrawal_id):
        with self._lock:
            withdrawal = self._processing(withdrawal_id)
            withdrawal.status = 'failed'
            for earning in self.earnings.values():
                if earning.withdrawal_id == withdrawal_id:
                    earning.status = 'pending'
                    earning.withdrawal_id = None
            return copy.deepcopy(withdrawal)

    def list_withdrawals(self, owner_id):
        with self._lock:
            rows = [w for w in self.withdrawals.values() if w.owner_id == owner_id]
            return copy.deepcopy(sorted(rows, key=lambda w: w.id, reverse=True))


def build_memory_repositories() -> Repositories:
    return Repositories(
        projects=MemoryProjectRepository(),
        metrics=MemoryMetricsRepository(),
        benchmarks=MemoryBenchmarkRepository(),
        recommendations=MemoryRecommendationRepository(),
        payments=MemoryPaymentRepository(),
    )
