"""
Cohorts and adoption stages derived from the daily activity rows.

Wallets join the weekly cohort of the Monday on or before their created_at
and the monthly cohort of the first of that month. Retention week N is the
share of a cohort with at least one active day in the 7 days starting
(N - 1) weeks after the cohort period; weeks that have not started yet stay
None.

Adoption stages are detected by replaying a wallet's rows in date order:
a stage is achieved on the first day its cumulative criteria hold, and an
achieved stage is never un-achieved.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Iterable, List, Optional

from app.config import ADOPTION_STAGES
from app.repositories.base import (
    ActivitySample, AdoptionStageRecord, CohortRecord, Repositories, WalletRecord,
)
from app.services.productivity import _is_active, _kinds_used

logger = logging.getLogger('services.cohorts')

COHORT_TYPES = ('weekly', 'monthly')
RETENTION_WEEKS = 4

STAGE_CRITERIA = {
    'first_tx': {'min_transactions': 1},
    'feature_usage': {'min_transactions': 3, 'min_kinds': 2},
    'recurring': {'min_transactions': 5, 'min_active_days': 3, 'min_span_days': 7},
    'high_value': {
        'min_transactions': 10, 'min_active_days': 7, 'min_span_days': 30,
        'min_volume_zatoshi': 1_000_000,
    },
}


def _day(value) -> Optional[date]:
    if value is None:
        return None
    return value.date() if isinstance(value, datetime) else value


def week_start(day: date) -> date:
    return day - timedelta(days=day.weekday())


def month_start(day: date) -> date:
    return day.replace(day=1)


def cohort_period(created_at, cohort_type: str) -> Optional[date]:
    day = _day(created_at)
    if day is None:
        return None
    return week_start(day) if cohort_type == 'weekly' else month_start(day)


def assign_cohorts(wallets: Iterable[WalletRecord], cohort_type: str) -> Dict[date, List[str]]:
    """Group wallet ids by cohort period. Wallets without created_at are left out."""
    groups: Dict[date, List[str]] = {}
    for wallet in wallets:
        period = cohort_period(wallet.created_at, cohort_type)
        if period is None:
            logger.debug("Wallet %s has no created_at, not assigned to a cohort", wallet.id)
            continue
        groups.setdefault(period, []).append(wallet.id)
    return groups


def weekly_retention(period: date, wallet_ids: List[str], active_days: Dict[str, set],
                     week: int, as_of: date) -> Optional[float]:
    """Percent of the cohort active during retention week `week` (1-based)."""
    start = period + timedelta(weeks=week - 1)
    if start > as_of or not wallet_ids:
        return None
    end = start + timedelta(days=6)
    active = sum(
        1 for wallet_id in wallet_ids
        if any(start <= d <= end for d in active_days.get(wallet_id, ()))
    )
    return round(active / len(wallet_ids) * 100, 2)


def build_cohorts(project_id: str, wallets: List[WalletRecord], samples: Iterable[ActivitySample],
                  as_of: date, cohort_types=COHORT_TYPES) -> List[CohortRecord]:
    active_days: Dict[str, set] = {}
    for sample in samples:
        if _is_active(sample):
            active_days.setdefault(sample.wallet_id, set()).add(sample.activity_date)

    cohorts = []
    for cohort_type in cohort_types:
        for period, ids in sorted(assign_cohorts(wallets, cohort_type).items()):
            weeks = [weekly_retention(period, ids, active_days, n, as_of)
                     for n in range(1, RETENTION_WEEKS + 1)]
            cohorts.append(CohortRecord(
                project_id=project_id, cohort_type=cohort_type, cohort_period=period,
                wallet_count=len(ids),
                retention_week_1=weeks[0], retention_week_2=weeks[1],
                retention_week_3=weeks[2], retention_week_4=weeks[3],
            ))
    return cohorts


# ── Adoption stages ──────────────────────────────────────────────────────────

@dataclass
class _Progress:
    transactions: int = 0
    volume: int = 0
    active_days: int = 0
    kinds: int = 0
    first_active: Optional[date] = None
    last_active: Optional[date] = None

    @property
    def span_days(self) -> int:
        if self.first_active is None:
            return 0
        return (self.last_active - self.first_active).days


def stage_reached(stage: str, progress: _Progress) -> bool:
    criteria = STAGE_CRITERIA[stage]
    return (
        progress.transactions >= criteria.get('min_transactions', 0)
        and progress.kinds >= criteria.get('min_kinds', 0)
        and progress.active_days >= criteria.get('min_active_days', 0)
        and progress.span_days >= criteria.get('min_span_days', 0)
        and progress.volume >= criteria.get('min_volume_zatoshi', 0)
    )


def _hours_between(start: datetime, end: datetime) -> float:
    return max(round((end - start).total_seconds() / 3600, 1), 0.0)


def detect_adoption_stages(wallet: WalletRecord,
                           samples: List[ActivitySample]) -> List[AdoptionStageRecord]:
    """Achieved stages for one wallet, in funnel order."""
    samples = sorted(samples, key=lambda s: s.activity_date)
    created_at = wallet.created_at
    if created_at is None:
        if not samples:
            return []
        created_at = datetime.combine(samples[0].activity_date, time.min)
    tz = created_at.tzinfo

    stages = [AdoptionStageRecord(wallet.id, 'created', achieved_at=created_at, time_to_achieve_hours=0.0)]
    pending = [name for name in ADOPTION_STAGES if name in STAGE_CRITERIA]
    progress = _Progress()
    seen = []
    for sample in samples:
        if not pending:
            break
        seen.append(sample)
        progress.transactions += sample.transaction_count or 0
        progress.volume += sample.total_volume_zatoshi or 0
        progress.kinds = _kinds_used(seen)
        if _is_active(sample):
            progress.active_days += 1
            progress.first_active = progress.first_active or sample.activity_date
            progress.last_active = sample.activity_date

        reached_at = max(datetime.combine(sample.activity_date, time.min, tzinfo=tz), created_at)
        for name in list(pending):
            if stage_reached(name, progress):
                stages.append(AdoptionStageRecord(
                    wallet.id, name, achieved_at=reached_at,
                    time_to_achieve_hours=_hours_between(created_at, reached_at),
                ))
                pending.remove(name)
    return stages


class CohortService:

    def __init__(self, repos: Repositories):
        self.repos = repos

    def refresh_project(self, project_id: str, wallet_ids: Optional[List[str]] = None,
                        as_of: Optional[date] = None) -> Dict[str, Any]:
        """
        Recompute the project's cohorts and the adoption stages of
        `wallet_ids` (every project wallet when omitted) and store them.

        Cohorts always cover the whole project since one wallet's activity
        moves its cohort's retention.
        """
        as_of = as_of or date.today()
        wallets = self.repos.projects.list_wallets(project_id)
        samples = self.repos.metrics.list_activity([w.id for w in wallets], until=as_of)

        cohorts = build_cohorts(project_id, wallets, samples, as_of)
        self.repos.metrics.upsert_cohorts(cohorts)

        targets = set(wallet_ids) if wallet_ids is not None else None
        by_wallet: Dict[str, List[ActivitySample]] = {}
        for sample in samples:
            by_wallet.setdefault(sample.wallet_id, []).append(sample)
        stages = []
        for wallet in wallets:
            if targets is None or wallet.id in targets:
                stages.extend(detect_adoption_stages(wallet, by_wallet.get(wallet.id, [])))
        self.repos.metrics.upsert_adoption_stages(stages)

        logger.info(
            "Project %s: %d cohorts and %d adoption stages refreshed",
            project_id, len(cohorts), len(stages),
        )
        return {'project_id': project_id, 'cohorts': len(cohorts), 'stages': len(stages)}
