"""
Shielded vs transparent users — retention, engagement and correlation by privacy usage.

Wallets are bucketed by the share of their transactions that were shielded
over the analysis window:
  > 70%  shielded_heavy
  > 30%  shielded_moderate
  >  5%  shielded_light
  else   transparent_only
Wallets with no transactions in the window are left out.
"""
import logging
import math
import statistics
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from app.errors import NotFoundError, ValidationError
from app.repositories.base import ActivitySample, Repositories, WalletRecord

logger = logging.getLogger('services.shielded_comparison')

USER_TYPES = ['shielded_heavy', 'shielded_moderate', 'shielded_light', 'transparent_only']
MIN_CORRELATION_WALLETS = 10
MAX_ANALYSIS_DAYS = 365


def classify_shielded_percentage(pct: float) -> str:
    if pct > 70:
        return 'shielded_heavy'
    if pct > 30:
        return 'shielded_moderate'
    if pct > 5:
        return 'shielded_light'
    return 'transparent_only'


@dataclass
class WalletPrivacyStats:
    wallet_id: str
    wallet_type: str
    total_transactions: int
    shielded_transactions: int
    total_volume_zatoshi: int
    daily_transactions: Dict[date, int] = field(default_factory=dict)

    @property
    def shielded_percentage(self) -> float:
        if not self.total_transactions:
            return 0.0
        return round(self.shielded_transactions / self.total_transactions * 100, 2)

    @property
    def user_type(self) -> str:
        return classify_shielded_percentage(self.shielded_percentage)

    @property
    def active_days(self) -> int:
        return len(self.daily_transactions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'wallet_id': self.wallet_id,
            'wallet_type': self.wallet_type,
            'total_transactions': self.total_transactions,
            'shielded_transactions': self.shielded_transactions,
            'shielded_percentage': self.shielded_percentage,
            'total_volume': self.total_volume_zatoshi,
            'active_days': self.active_days,
            'user_type': self.user_type,
        }


def build_wallet_stats(wallets: List[WalletRecord], samples: List[ActivitySample]) -> List[WalletPrivacyStats]:
    by_wallet = {w.id: w for w in wallets}
    stats = {}
    for s in samples:
        wallet = by_wallet.get(s.wallet_id)
        if wallet is None or not s.transaction_count:
            continue
        entry = stats.get(s.wallet_id)
        if entry is None:
            entry = stats[s.wallet_id] = WalletPrivacyStats(
                wallet_id=wallet.id, wallet_type=wallet.wallet_type,
                total_transactions=0, shielded_transactions=0, total_volume_zatoshi=0,
            )
        entry.total_transactions += s.transaction_count
        entry.shielded_transactions += s.shielded_count or 0
        entry.total_volume_zatoshi += abs(s.total_volume_zatoshi or 0)
        entry.daily_transactions[s.activity_date] = (
            entry.daily_transactions.get(s.activity_date, 0) + s.transaction_count
        )
    return sorted(stats.values(), key=lambda w: (-w.shielded_percentage, -w.total_transactions))


def classify_users(stats: List[WalletPrivacyStats]) -> Dict[str, Any]:
    groups = {t: [] for t in USER_TYPES}
    for wallet in stats:
        groups[wallet.user_type].append(wallet)
    total = len(stats)
    return {
        'total_users': total,
        'groups': groups,
        'distribution': {
            t: {
                'count': len(groups[t]),
                'percentage': round(len(groups[t]) / total * 100, 2) if total else 0,
            }
            for t in USER_TYPES
        },
    }


# ── Per-type metrics ─────────────────────────────────────────────────────────

def calculate_detailed_metrics(groups: Dict[str, List[WalletPrivacyStats]]) -> Dict[str, Dict[str, Any]]:
    metrics = {}
    for user_type in USER_TYPES:
        wallets = groups.get(user_type, [])
        if not wallets:
            metrics[user_type] = {
                'count': 0, 'avg_transactions_per_user': 0, 'avg_volume_per_user': 0,
                'avg_active_days': 0, 'avg_shielded_percentage': 0, 'avg_transaction_value': 0,
                'median_transaction_count': 0, 'total_volume': 0, 'total_transactions': 0,
                'total_shielded_transactions': 0, 'shielded_ratio': 0,
            }
            continue

        n = len(wallets)
        total_tx = sum(w.total_transactions for w in wallets)
        total_volume = sum(w.total_volume_zatoshi for w in wallets)
        total_shielded = sum(w.shielded_transactions for w in wallets)
        metrics[user_type] = {
            'count': n,
            'avg_transactions_per_user': round(total_tx / n, 2),
            'avg_volume_per_user': round(total_volume / n),
            'avg_active_days': round(sum(w.active_days for w in wallets) / n, 2),
            'avg_shielded_percentage': round(sum(w.shielded_percentage for w in wallets) / n, 2),
            'avg_transaction_value': round(total_volume / total_tx) if total_tx else 0,
            'median_transaction_count': statistics.median(w.total_transactions for w in wallets),
            'total_volume': total_volume,
            'total_transactions': total_tx,
            'total_shielded_transactions': total_shielded,
            'shielded_ratio': round(total_shielded / total_tx * 100, 2) if total_tx else 0,
        }
    return metrics


def retention_trend(values: List[Optional[float]]) -> str:
    valid = [v for v in values if v is not None]
    if len(valid) < 2:
        return 'stable'
    increasing = sum(1 for a, b in zip(valid, valid[1:]) if b > a)
    decreasing = sum(1 for a, b in zip(valid, valid[1:]) if b < a)
    if increasing > decreasing:
        return 'improving'
    if decreasing > increasing:
        return 'declining'
    return 'stable'


def group_retention(wallets: List[WalletPrivacyStats], end: date) -> Dict[str, float]:
    """Share of the group active in each of the last four weeks (week_1 = most recent)."""
    if not wallets:
        return {'week_1': 0, 'week_2': 0, 'week_3': 0, 'week_4': 0}
    retention = {}
    for week in range(1, 5):
        start = end - timedelta(days=week * 7)
        stop = end - timedelta(days=(week - 1) * 7)
        active = sum(1 for w in wallets if any(start < d <= stop for d in w.daily_transactions))
        retention[f'week_{week}'] = round(active / len(wallets) * 100, 2)
    return retention


def analyze_retention_by_user_type(groups, end: date) -> Dict[str, Dict[str, Any]]:
    analysis = {}
    for user_type in USER_TYPES:
        weeks = group_retention(groups.get(user_type, []), end)
        values = [weeks[f'week_{n}'] for n in range(1, 5)]
        analysis[user_type] = {
            **weeks,
            'avg_retention': round(sum(values) / 4, 2),
            'retention_trend': retention_trend(values) if groups.get(user_type) else 'stable',
        }
    return analysis


def _coefficient_of_variation(counts: List[int]) -> Optional[float]:
    if len(counts) < 2:
        return None
    mean = statistics.mean(counts)
    return statistics.stdev(counts) / mean if mean else None


def analyze_engagement_patterns(groups) -> Dict[str, Dict[str, Any]]:
    analysis = {}
    for user_type in USER_TYPES:
        wallets = groups.get(user_type, [])
        if not wallets:
            analysis[user_type] = {
                'avg_transactions_per_active_day': 0,
                'avg_days_between_transactions': 0,
                'engagement_consistency': 0,
                'total_active_days': 0,
            }
            continue

        per_day, gaps, cvs = [], [], []
        for w in wallets:
            days = sorted(w.daily_transactions)
            per_day.extend(w.daily_transactions.values())
            gaps.extend((b - a).days for a, b in zip(days, days[1:]))
            cv = _coefficient_of_variation(list(w.daily_transactions.values()))
            if cv is not None:
                cvs.append(cv)

        avg_cv = statistics.mean(cvs) if cvs else 1.0
        analysis[user_type] = {
            'avg_transactions_per_active_day': round(statistics.mean(per_day), 2),
            'avg_days_between_transactions': round(statistics.mean(gaps), 2) if gaps else 0,
            'engagement_consistency': max(0, round((1 - avg_cv) * 100)),
            'total_active_days': len(per_day),
        }
    return analysis


# ── Correlations ─────────────────────────────────────────────────────────────

def correlation_strength(coefficient: float) -> str:
    magnitude = abs(coefficient)
    if magnitude >= 0.7:
        return 'strong'
    if magnitude >= 0.4:
        return 'moderate'
    if magnitude >= 0.2:
        return 'weak'
    return 'negligible'


def pearson(xs: List[float], ys: List[float]) -> Dict[str, Any]:
    pairs = [(float(x), float(y)) for x, y in zip(xs, ys)
             if x is not None and y is not None and not math.isnan(x) and not math.isnan(y)]
    if len(pairs) < 3:
        return {'coefficient': 0, 'strength': 'insufficient_data', 'sample_size': len(pairs)}

    n = len(pairs)
    x_mean = sum(p[0] for p in pairs) / n
    y_mean = sum(p[1] for p in pairs) / n
    num = sum((x - x_mean) * (y - y_mean) for x, y in pairs)
    x_ss = sum((x - x_mean) ** 2 for x, _ in pairs)
    y_ss = sum((y - y_mean) ** 2 for _, y in pairs)
    denom = math.sqrt(x_ss * y_ss)
    coefficient = num / denom if denom else 0.0
    return {
        'coefficient': round(coefficient, 3),
        'strength': correlation_strength(coefficient),
        'sample_size': n,
    }


def correlation_significance(correlations: Dict[str, Dict], sample_size: int) -> str:
    if sample_size < 30:
        return 'low'
    significant = sum(1 for c in correlations.values() if c['strength'] in ('strong', 'moderate'))
    if significant >= 3:
        return 'high'
    if significant >= 1:
        return 'moderate'
    return 'low'


def correlation_insights(correlations: Dict[str, Dict], significance: str) -> List[str]:
    if significance == 'low':
        return ['Limited statistical significance in correlation analysis']
    insights = []
    retention = correlations.get('shielded_vs_retention')
    if retention and retention['strength'] not in ('negligible', 'insufficient_data'):
        if retention['coefficient'] > 0.3:
            insights.append(
                f"Strong positive correlation between privacy usage and retention (r={retention['coefficient']})")
        elif retention['coefficient'] < -0.3:
            insights.append(f"Privacy usage negatively correlates with retention (r={retention['coefficient']})")
    if correlations.get('shielded_vs_volume', {}).get('coefficient', 0) > 0.4:
        insights.append('Higher privacy usage correlates with increased transaction volumes')
    if correlations.get('shielded_vs_active_days', {}).get('coefficient', 0) > 0.3:
        insights.append('Privacy users demonstrate more consistent activity patterns')
    return insights


def calculate_shielded_correlations(stats: List[WalletPrivacyStats], end: date) -> Dict[str, Any]:
    if len(stats) < MIN_CORRELATION_WALLETS:
        return {
            'sample_size': len(stats),
            'correlations': {},
            'significance': 'insufficient_data',
            'insights': [f'Insufficient data for correlation analysis '
                         f'(minimum {MIN_CORRELATION_WALLETS} wallets required)'],
        }

    shielded = [w.shielded_percentage for w in stats]
    age = [(end - min(w.daily_transactions)).days for w in stats]
    recent_start = end - timedelta(days=7)
    retained = [
        (1 if any(d > recent_start for d in w.daily_transactions) else 0) if a >= 28 else None
        for w, a in zip(stats, age)
    ]
    correlations = {
        'shielded_vs_retention': pearson(
            [s for s, r in zip(shielded, retained) if r is not None],
            [r for r in retained if r is not None],
        ),
        'shielded_vs_transaction_count': pearson(shielded, [w.total_transactions for w in stats]),
        'shielded_vs_volume': pearson(shielded, [w.total_volume_zatoshi for w in stats]),
        'shielded_vs_active_days': pearson(shielded, [w.active_days for w in stats]),
        'shielded_vs_wallet_age': pearson(shielded, age),
        'shielded_vs_avg_tx_value': pearson(
            shielded, [w.total_volume_zatoshi / w.total_transactions for w in stats],
        ),
    }
    significance = correlation_significance(correlations, len(stats))
    return {
        'sample_size': len(stats),
        'correlations': correlations,
        'significance': significance,
        'insights': correlation_insights(correlations, significance),
    }


def generate_comparison_insights(classification, detailed, retention, engagement, correlation) -> Dict[str, List[str]]:
    insights = {
        'key_findings': [],
        'recommendations': [],
        'privacy_adoption_insights': [],
        'retention_insights': [],
        'engagement_insights': [],
        'correlation_insights': list(correlation.get('insights', [])),
    }
    total = classification['total_users']
    distribution = classification['distribution']
    shielded_users = total - distribution['transparent_only']['count']
    adoption = shielded_users / total * 100 if total else 0
    insights['privacy_adoption_insights'].append(f'{adoption:.1f}% of users utilize privacy features')
    if adoption < 20:
        insights['recommendations'].append('Low privacy adoption - consider privacy education and UX improvements')
    elif adoption > 60:
        insights['key_findings'].append('High privacy adoption indicates strong privacy-conscious user base')

    transparent_ret = retention['transparent_only']['avg_retention']
    heavy_ret = retention['shielded_heavy']['avg_retention']
    if heavy_ret > transparent_ret + 10:
        insights['key_findings'].append(f'Heavy privacy users show {heavy_ret - transparent_ret:.1f}% better retention')
        insights['retention_insights'].append('Privacy features correlate with improved user retention')
    elif transparent_ret > heavy_ret + 10:
        insights['retention_insights'].append('Transparent users show better retention - investigate privacy UX barriers')
        insights['recommendations'].append('Analyze privacy feature usability and user education needs')

    if (engagement['shielded_heavy']['avg_transactions_per_active_day']
            > engagement['transparent_only']['avg_transactions_per_active_day'] * 1.2):
        insights['engagement_insights'].append('Privacy users demonstrate higher transaction frequency per active day')

    if detailed['shielded_heavy']['avg_volume_per_user'] > detailed['transparent_only']['avg_volume_per_user'] * 1.5:
        insights['key_findings'].append('Privacy users transact significantly higher volumes')
        insights['recommendations'].append('Focus on privacy features for high-value user acquisition')

    if distribution['shielded_heavy']['count'] > distribution['shielded_moderate']['count'] * 2:
        insights['privacy_adoption_insights'].append('Users tend toward heavy privacy usage rather than moderate')
    return insights


class ShieldedComparisonService:

    def __init__(self, repos: Repositories):
        self.repos = repos

    def compare_shielded_vs_transparent(self, project_id: str, days: int = 30,
                                        end: Optional[date] = None) -> Dict[str, Any]:
        days = int(days)
        if not 1 <= days <= MAX_ANALYSIS_DAYS:
            raise ValidationError(f'days must be between 1 and {MAX_ANALYSIS_DAYS}')
        if self.repos.projects.get_project(project_id) is None:
            raise NotFoundError(f'Project {project_id} not found')

        end = end or date.today()
        start = end - timedelta(days=days)
        wallets = self.repos.projects.list_wallets(project_id, active_only=True)
        samples = self.repos.metrics.list_activity([w.id for w in wallets], since=start, until=end) if wallets else []
        stats = build_wallet_stats(wallets, samples)

        classification = classify_users(stats)
        groups = classification.pop('groups')
        detailed = calculate_detailed_metrics(groups)
        retention = analyze_retention_by_user_type(groups, end)
        engagement = analyze_engagement_patterns(groups)
        correlation = calculate_shielded_correlations(stats, end)

        logger.info("Shielded comparison for %s: %d wallets over %d days", project_id, len(stats), days)
        return {
            'project_id': project_id,
            'analysis_period': {'start_date': start.isoformat(), 'end_date': end.isoformat(), 'days': days},
            'user_classification': {
                **classification,
                'wallets': {t: [w.to_dict() for w in groups[t]] for t in USER_TYPES},
            },
            'detailed_metrics': detailed,
            'retention_analysis': retention,
            'engagement_analysis': engagement,
            'correlation_analysis': correlation,
            'insights': generate_comparison_insights(classification, detailed, retention, engagement, correlation),
        }
