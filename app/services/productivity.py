"""
Productivity scoring — 0-100 wallet health score from daily activity history.

Pure functions over ActivitySample rows and adoption stages; persistence and
batching live in services/performance.py. Each recomputation produces a new
ScoreRecord; older ones are superseded, never mutated.

Components (0-100 each):
  retention  — frequency, recency, volume and diversity over the last 30 days
  adoption   — progress through the adoption funnel stages
  churn      — inverse churn risk over 60 days (higher = safer)
  activity   — recent (7 day) activity level
  diversity  — share of transaction kinds used (transfer/swap/bridge/shielded)
"""
from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional

from app.repositories.base import ActivitySample, AdoptionStageRecord, ScoreRecord

SCORING_WEIGHTS = {
    'retention': 0.30,
    'adoption': 0.25,
    'churn': 0.20,
    'activity': 0.15,
    'diversity': 0.10,
}

STATUS_THRESHOLDS = {'healthy': 70, 'at_risk': 40}
RISK_THRESHOLDS = {'low': 60, 'medium': 30}

STAGE_VALUES = {
    'created': 10,
    'first_tx': 20,
    'feature_usage': 30,
    'recurring': 25,
    'high_value': 15,
}

# stage → max hours for the "reached quickly" bonus
_QUICK_STAGE_HOURS = {'first_tx': 24, 'feature_usage': 72, 'recurring': 168}

_KIND_FIELDS = ['transfers_count', 'swaps_count', 'bridges_count', 'shielded_count']


def _is_active(sample: ActivitySample) -> bool:
    return bool(sample.is_active) or (sample.transaction_count or 0) > 0


def _window(samples: Iterable[ActivitySample], as_of: date, days: int) -> List[ActivitySample]:
    start = as_of - timedelta(days=days)
    return [s for s in samples if start < s.activity_date <= as_of]


def _kinds_used(samples: Iterable[ActivitySample]) -> int:
    return sum(1 for name in _KIND_FIELDS if any((getattr(s, name) or 0) > 0 for s in samples))


def _days_since_last_active(samples: Iterable[ActivitySample], as_of: date) -> Optional[int]:
    active_dates = [s.activity_date for s in samples if _is_active(s)]
    if not active_dates:
        return None
    return (as_of - max(active_dates)).days


def retention_score(samples: List[ActivitySample], as_of: date) -> int:
    recent = _window(samples, as_of, 30)
    active_days = len({s.activity_date for s in recent if _is_active(s)})
    if active_days == 0:
        return 0

    score = 0
    if active_days >= 15:
        score += 30
    elif active_days >= 8:
        score += 20
    elif active_days >= 4:
        score += 10
    else:
        score += 5

    since = _days_since_last_active(recent, as_of)
    if since is not None:
        if since <= 1:
            score += 30
        elif since <= 3:
            score += 20
        elif since <= 7:
            score += 10
        elif since <= 14:
            score += 5

    volume = sum(s.total_volume_zatoshi or 0 for s in recent)
    if volume > 100_000_000:      # > 1 ZEC
        score += 20
    elif volume > 10_000_000:
        score += 15
    elif volume > 1_000_000:
        score += 10
    elif volume > 0:
        score += 5

    score += min(_kinds_used(recent) * 5, 20)
    return min(score, 100)


def adoption_score(stages: List[AdoptionStageRecord]) -> int:
    score = 0
    for stage in stages:
        if not stage.achieved_at:
            continue
        score += STAGE_VALUES.get(stage.stage_name, 0)
        limit = _QUICK_STAGE_HOURS.get(stage.stage_name)
        if limit is not None and stage.time_to_achieve_hours is not None \
                and stage.time_to_achieve_hours <= limit:
            score += 5
    return min(score, 100)


def churn_score(samples: List[ActivitySample], as_of: date) -> int:
    """Higher = lower churn risk. No history at all scores 0."""
    window = _window(samples, as_of, 60)
    if not window:
        return 0

    score = 100
    since = _days_since_last_active(window, as_of)
    if since is None or since > 30:
        score -= 50
    elif since > 14:
        score -= 30
    elif since > 7:
        score -= 15
    elif since > 3:
        score -= 5

    active_ratio = sum(1 for s in window if _is_active(s)) / len(window)
    if active_ratio < 0.1:
        score -= 30
    elif active_ratio < 0.2:
        score -= 20
    elif active_ratio < 0.3:
        score -= 10

    recent_active = sum(1 for s in _window(window, as_of, 7) if _is_active(s))
    if recent_active == 0:
        score -= 20
    elif recent_active <= 1:
        score -= 10

    return max(0, min(score, 100))


def activity_score(samples: List[ActivitySample], as_of: date) -> int:
    recent = _window(samples, as_of, 7)
    active_days = len({s.activity_date for s in recent if _is_active(s)})
    score = 0
    if active_days >= 7:
        score += 50
    elif active_days >= 5:
        score += 40
    elif active_days >= 3:
        score += 30
    elif active_days >= 2:
        score += 20
    elif active_days >= 1:
        score += 10

    tx_count = sum(s.transaction_count or 0 for s in recent)
    if tx_count >= 20:
        score += 30
    elif tx_count >= 10:
        score += 20
    elif tx_count >= 5:
        score += 15
    elif tx_count >= 2:
        score += 10
    elif tx_count >= 1:
        score += 5

    score += min(_kinds_used(recent) * 5, 20)
    return min(score, 100)


def diversity_score(samples: List[ActivitySample], as_of: date) -> int:
    return _kinds_used(_window(samples, as_of, 30)) * 25


def status_from_score(score: float) -> str:
    if score >= STATUS_THRESHOLDS['healthy']:
        return 'healthy'
    if score >= STATUS_THRESHOLDS['at_risk']:
        return 'at_risk'
    return 'churn'


def risk_level_from_score(score: float) -> str:
    if score >= RISK_THRESHOLDS['low']:
        return 'low'
    if score >= RISK_THRESHOLDS['medium']:
        return 'medium'
    return 'high'


def calculate_productivity_score(wallet_id: str, samples: List[ActivitySample],
                                 stages: List[AdoptionStageRecord],
                                 as_of: Optional[date] = None) -> ScoreRecord:
    """Score one wallet from its activity rows and adoption stages."""
    as_of = as_of or date.today()
    components = {
        'retention': retention_score(samples, as_of),
        'adoption': adoption_score(stages),
        'churn': churn_score(samples, as_of),
        'activity': activity_score(samples, as_of),
        'diversity': diversity_score(samples, as_of),
    }
    total = round(sum(components[name] * weight for name, weight in SCORING_WEIGHTS.items()))
    total = max(0, min(100, total))

    return ScoreRecord(
        wallet_id=wallet_id,
        total_score=float(total),
        retention_score=float(components['retention']),
        adoption_score=float(components['adoption']),
        activity_score=float(components['activity']),
        diversity_score=float(components['diversity']),
        churn_score=float(components['churn']),
        status=status_from_score(total),
        risk_level=risk_level_from_score(total),
        calculated_at=datetime.now(),
    )
