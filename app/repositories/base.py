"""
Repository contracts.

Services never talk to SQLAlchemy directly: they receive repositories that
implement these interfaces and exchange plain dataclass records. The SQL
implementations live in repositories/sql.py, the in-memory ones (MOCK_STORAGE,
tests) in repositories/memory.py. Both must behave identically.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple


# ── Records ───────────────────────────────────────────────────────────────────

@dataclass
class ProjectRecord:
    id: str
    owner_id: str
    name: str
    category: str = 'other'
    status: str = 'active'
    created_at: Optional[datetime] = None


@dataclass
class WalletRecord:
    id: str
    project_id: str
    owner_id: str
    address: str
    wallet_type: str = 't'
    privacy_mode: str = 'private'
    is_active: bool = True
    created_at: Optional[datetime] = None


@dataclass
class ActivitySample:
    """One indexer row: a wallet's aggregate activity for one day."""
    wallet_id: str
    activity_date: date
    transaction_count: int = 0
    total_volume_zatoshi: int = 0
    total_fees_zatoshi: int = 0
    shielded_count: int = 0
    transparent_count: int = 0
    shielded_volume_zatoshi: int = 0
    transfers_count: int = 0
    swaps_count: int = 0
    bridges_count: int = 0
    is_active: bool = False


@dataclass
class ScoreRecord:
    wallet_id: str
    total_score: float
    retention_score: float = 0.0
    adoption_score: float = 0.0
    activity_score: float = 0.0
    diversity_score: float = 0.0
    churn_score: float = 0.0
    status: str = 'churn'
    risk_level: str = 'high'
    calculated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CohortRecord:
    project_id: str
    cohort_type: str
    cohort_period: date
    wallet_count: int = 0
    retention_week_1: Optional[float] = None
    retention_week_2: Optional[float] = None
    retention_week_3: Optional[float] = None
    retention_week_4: Optional[float] = None


@dataclass
class AdoptionStageRecord:
    wallet_id: str
    stage_name: str
    achieved_at: Optional[datetime] = None
    time_to_achieve_hours: Optional[float] = None


@dataclass
class BenchmarkRecord:
    benchmark_type: str
    category: str
    as_of_date: date
    p25: float
    p50: float
    p75: float
    p90: float
    sample_size: int = 0
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'benchmark_type': self.benchmark_type,
            'category': self.category,
            'as_of_date': self.as_of_date.isoformat(),
            'p25': self.p25,
            'p50': self.p50,
            'p75': self.p75,
            'p90': self.p90,
            'sample_size': self.sample_size,
        }


@dataclass
class RecommendationRecord:
    type: str
    title: str
    priority: int
    project_id: Optional[str] = None
    wallet_id: Optional[str] = None
    description: str = ''
    current_state: Dict[str, Any] = field(default_factory=dict)
    target_state: Dict[str, Any] = field(default_factory=dict)
    timeline: str = ''
    expected_impact: str = ''
    effort_level: str = 'Medium'
    actions: List[str] = field(default_factory=list)
    completion_indicators: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['created_at'] = self.created_at.isoformat() if self.created_at else None
        return data


@dataclass
class TaskRecord:
    recommendation_id: int
    status: str = 'pending'
    baseline_metrics: Dict[str, Any] = field(default_factory=dict)
    completion_percentage: float = 0.0
    effectiveness_score: Optional[float] = None
    effectiveness_level: Optional[str] = None
    last_checked_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ('last_checked_at', 'completed_at', 'created_at'):
            value = data[key]
            data[key] = value.isoformat() if value else None
        return data


@dataclass
class PaymentRecord:
    invoice_id: str
    requester_id: str
    wallet_id: str
    owner_id: str
    amount_zec: Decimal
    status: str = 'pending'
    requester_email: Optional[str] = None
    payment_address: Optional[str] = None
    txid: Optional[str] = None
    expires_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class EarningRecord:
    owner_id: str
    wallet_id: str
    payment_id: Optional[int]
    amount_zec: Decimal
    platform_fee_zec: Decimal
    status: str = 'pending'
    withdrawal_id: Optional[int] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class WithdrawalRecord:
    owner_id: str
    to_address: str
    amount_zec: Decimal
    fee_zec: Decimal
    net_zec: Decimal
    status: str = 'processing'  # processing / submitted / failed
    gateway_withdrawal_id: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class WithdrawalPlan:
    """Which pending earnings a withdrawal consumes.

    consumed_ids are withdrawn whole; split (earning_id, amount) withdraws only
    `amount` of that row and leaves the remainder pending.
    """
    consumed_ids: List[int] = field(default_factory=list)
    split: Optional[Tuple[int, Decimal]] = None


@dataclass
class PrivacyAuditRecord:
    wallet_id: str
    new_mode: str
    old_mode: Optional[str] = None
    actor_id: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None


# ── Interfaces ────────────────────────────────────────────────────────────────

class ProjectRepository(ABC):
    """Projects, wallets, privacy audit trail and per-project alert config."""

    @abstractmethod
    def get_project(self, project_id: str) -> Optional[ProjectRecord]: ...

    @abstractmethod
    def list_projects(self, status: Optional[str] = None) -> List[ProjectRecord]: ...

    @abstractmethod
    def get_wallet(self, wallet_id: str) -> Optional[WalletRecord]: ...

    @abstractmethod
    def list_wallets(self, project_id: str, active_only: bool = False) -> List[WalletRecord]: ...

    @abstractmethod
    def list_wallets_by_mode(self, mode: str) -> List[WalletRecord]: ...

    @abstractmethod
    def update_privacy_mode(self, wallet_id: str, mode: str) -> Optional[WalletRecord]: ...

    @abstractmethod
    def add_privacy_audit(self, record: PrivacyAuditRecord) -> PrivacyAuditRecord: ...

    @abstractmethod
    def list_privacy_audit(self, wallet_id: str, limit: int = 50) -> List[PrivacyAuditRecord]:
        """Newest first."""

    @abstractmethod
    def get_alert_thresholds(self, project_id: str) -> Dict[str, Any]: ...

    @abstractmethod
    def save_alert_thresholds(self, project_id: str, thresholds: Dict[str, Any]) -> None: ...


class MetricsRepository(ABC):
    """Indexer activity rows, productivity scores, cohorts, adoption stages."""

    @abstractmethod
    def list_activity(self, wallet_ids: Iterable[str], since: Optional[date] = None,
                      until: Optional[date] = None) -> List[ActivitySample]:
        """Ordered by (wallet_id, activity_date)."""

    @abstractmethod
    def upsert_activity(self, samples: List[ActivitySample]) -> int:
        """Insert or replace rows keyed by (wallet_id, activity_date)."""

    @abstractmethod
    def add_scores(self, scores: List[ScoreRecord]) -> int: ...

    @abstractmethod
    def latest_scores(self, wallet_ids: Iterable[str]) -> Dict[str, ScoreRecord]: ...

    @abstractmethod
    def list_scores(self, wallet_ids: Optional[Iterable[str]] = None,
                    since: Optional[datetime] = None) -> List[ScoreRecord]:
        """Score history, oldest first. wallet_ids=None means every wallet."""

    @abstractmethod
    def list_cohorts(self, project_id: str, cohort_type: Optional[str] = None,
                     limit: Optional[int] = None) -> List[CohortRecord]:
        """Newest cohort_period first."""

    @abstractmethod
    def upsert_cohorts(self, cohorts: List[CohortRecord]) -> int:
        """Insert or replace rows keyed by (project_id, cohort_type, cohort_period)."""

    @abstractmethod
    def upsert_adoption_stages(self, stages: List[AdoptionStageRecord]) -> int:
        """Insert rows keyed by (wallet_id, stage_name); a stage already achieved keeps its achieved_at."""

    @abstractmethod
    def list_adoption_stages(self, wallet_ids: Iterable[str]) -> List[AdoptionStageRecord]: ...


class BenchmarkRepository(ABC):

    @abstractmethod
    def add(self, record: BenchmarkRecord) -> BenchmarkRecord:
        """Append a snapshot. Raises ValidationError if the date already exists."""

    @abstractmethod
    def latest(self, benchmark_type: str, category: str) -> Optional[BenchmarkRecord]: ...

    @abstractmethod
    def latest_by_category(self, category: str) -> List[BenchmarkRecord]:
        """Latest snapshot of every benchmark_type in a category."""

    @abstractmethod
    def history(self, benchmark_type: str, category: str, limit: int = 30) -> List[BenchmarkRecord]:
        """Newest first."""

    @abstractmethod
    def list_all(self) -> List[BenchmarkRecord]: ...

    @abstractmethod
    def delete_before(self, cutoff: date) -> int: ...


class RecommendationRepository(ABC):

    @abstractmethod
    def add_recommendation(self, record: RecommendationRecord) -> RecommendationRecord: ...

    @abstractmethod
    def get_recommendation(self, recommendation_id: int) -> Optional[RecommendationRecord]: ...

    @abstractmethod
    def list_recommendations(self, wallet_id: Optional[str] = None,
                             project_id: Optional[str] = None) -> List[RecommendationRecord]:
        """Highest priority first."""

    @abstractmethod
    def add_task(self, record: TaskRecord) -> TaskRecord: ...

    @abstractmethod
    def get_task(self, task_id: int) -> Optional[TaskRecord]: ...

    @abstractmethod
    def list_tasks(self, status: Optional[str] = None) -> List[TaskRecord]: ...

    @abstractmethod
    def update_task(self, record: TaskRecord) -> TaskRecord: ...


class PaymentRepository(ABC):
    """Data access payments, owner earnings and withdrawals."""

    @abstractmethod
    def add_payment(self, record: PaymentRecord) -> PaymentRecord: ...

    @abstractmethod
    def get_payment(self, invoice_id: str) -> Optional[PaymentRecord]: ...

    @abstractmethod
    def find_payments(self, requester_id: str, wallet_id: str) -> List[PaymentRecord]: ...

    @abstractmethod
    def mark_payment_paid(self, invoice_id: str, txid: Optional[str], paid_at: datetime,
                          earning: EarningRecord) -> Optional[PaymentRecord]:
        """Atomically flip pending → paid and insert the earning.

        Returns the updated payment, or None when it was already paid (the
        earning is then NOT inserted).
        """

    @abstractmethod
    def has_paid_access(self, requester_id: str, wallet_id: str) -> bool: ...

    @abstractmethod
    def purchase_counts(self, wallet_ids: Iterable[str]) -> Dict[str, int]: ...

    @abstractmethod
    def list_earnings(self, owner_id: str, status: Optional[str] = None) -> List[EarningRecord]:
        """Oldest first."""

    @abstractmethod
    def apply_withdrawal(self, withdrawal: WithdrawalRecord, plan: WithdrawalPlan) -> WithdrawalRecord:
        """Insert the withdrawal and mark the planned earnings withdrawn, atomically.

        Runs before the payout so the balance is reserved; a stale plan raises
        InsufficientBalanceError and writes nothing.
        """

    @abstractmethod
    def complete_withdrawal(self, withdrawal_id: int, gateway_withdrawal_id: str) -> WithdrawalRecord:
        """processing → submitted, recording the gateway's id."""

    @abstractmethod
    def release_withdrawal(self, withdrawal_id: int) -> WithdrawalRecord:
        """processing → failed; every earning it held returns to pending."""

    @abstractmethod
    def list_withdrawals(self, owner_id: str) -> List[WithdrawalRecord]:
        """Newest first."""


@dataclass
class Repositories:
    """Bundle handed to the service layer."""
    projects: ProjectRepository
    metrics: MetricsRepository
    benchmarks: BenchmarkRepository
    recommendations: RecommendationRepository
    payments: PaymentRepository
