"""
Comparison engine — a project's headline metrics against its category's benchmarks.

Metrics compared:
  productivity  average latest total_score across the project's wallets
  retention     average of weekly cohort week 1-4 retention
  adoption      average share of wallets reaching each of the 5 adoption stages
  churn         share of scored wallets in 'churn' status (lower is better)

Missing benchmarks degrade to status='no_benchmark' / range='unknown'; the
rest of the comparison keeps working.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from app.config import (
    ADOPTION_STAGES, COMPARISON_METRICS, GAP_SEVERITY_HIGH_PERCENT,
    GAP_SEVERITY_MEDIUM_PERCENT, GAP_SIGNIFICANCE_PERCENT, POSITION_THRESHOLDS,
)
from app.errors import NotFoundError, ValidationError
from app.repositories.base import Repositories
from app.services.benchmarks import (
    TargetPercentile, calculate_performance_gap, get_percentile_range,
)

logger = logging.getLogger('services.comparison')

RANGE_SCORES = {
    'above_90': 5,
    '75_90': 4,
    '50_75': 3,
    '25_50': 2,
    'below_25': 1,
}

# metric → True when a lower value is better
LOWER_IS_BETTER = {'churn': True}

_IMPROVEMENT_COPY = {
    'productivity': (
        'Your productivity score ({current}) is {pct}% below the {target} benchmark.',
        [
            'Increase user engagement through targeted campaigns',
            'Optimize onboarding flow to reduce friction',
            'Implement retention strategies for at-risk users',
        ],
    ),
    'retention': (
        'Your retention rate ({current}%) is {pct}% below the {target}% benchmark.',
        [
            'Analyze drop-off points in user journey',
            'Implement re-engagement campaigns for inactive users',
            'Add value-driving features to increase stickiness',
        ],
    ),
    'adoption': (
        'Your adoption rate ({current}%) is {pct}% below the {target}% benchmark.',
        [
            'Simplify onboarding process',
            'Add progressive feature discovery',
            'Provide incentives for completing adoption stages',
        ],
    ),
    'churn': (
        'Your churn rate ({current}%) is {pct}% off the {target}% benchmark.',
        [
            'Identify and address common churn triggers',
            'Implement early warning system for at-risk users',
            'Improve product value proposition',
        ],
    ),
}


def gap_severity(gap_percentage: float) -> str:
    magnitude = abs(gap_percentage)
    if magnitude > GAP_SEVERITY_HIGH_PERCENT:
        return 'high'
    if magnitude > GAP_SEVERITY_MEDIUM_PERCENT:
        return 'medium'
    return 'low'


def identify_performance_gaps(comparisons: Dict[str, Dict[str, Any]], target=TargetPercentile.P50) -> Dict[str, List]:
    """Bucket each compared metric into underperforming / outperforming / at_target."""
    target = TargetPercentile.parse(target)
    gaps = {'underperforming': [], 'outperforming': [], 'at_target': [], 'target_percentile': target.value}

    for metric, data in comparisons.items():
        if data.get('status') == 'no_benchmark':
            continue
        pct = data.get('gap_percentage') or 0.0
        magnitude = abs(pct)

        if data['status'] == 'below_target' and magnitude > GAP_SIGNIFICANCE_PERCENT:
            gaps['underperforming'].append({
                'metric': metric,
                'current': data['current_value'],
                'target': data['benchmark_target'],
                'gap': data['gap'],
                'gap_percentage': pct,
                'severity': gap_severity(pct),
            })
        elif data['status'] == 'above_target' and magnitude > GAP_SIGNIFICANCE_PERCENT:
            gaps['outperforming'].append({
                'metric': metric,
                'current': data['current_value'],
                'target': data['benchmark_target'],
                'gap': data['gap'],
                'gap_percentage': pct,
            })
        else:
            gaps['at_target'].append({
                'metric': metric,
                'current': data['current_value'],
                'target': data.get('benchmark_target'),
            })
    return gaps


def calculate_overall_position(comparisons: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    """Average the 1-5 range scores of every metric with a resolved benchmark."""
    resolved = [
        c for c in comparisons.values()
        if c.get('status') != 'no_benchmark' and c.get('percentile_range') in RANGE_SCORES
    ]
    if not resolved:
        return {'position': 'unknown', 'score': 0, 'metrics_compared': 0}

    avg = sum(RANGE_SCORES[c['percentile_range']] for c in resolved) / len(resolved)
    if avg >= POSITION_THRESHOLDS['top_performer']:
        position = 'top_performer'
    elif avg >= POSITION_THRESHOLDS['above_average']:
        position = 'above_average'
    elif avg >= POSITION_THRESHOLDS['average']:
        position = 'average'
    else:
        position = 'below_average'

    return {'position': position, 'score': round(avg, 2), 'metrics_compared': len(resolved)}


def generate_comparison_recommendations(gaps: Dict[str, List], project_metrics: Optional[Dict] = None) -> List[Dict]:
    """One improvement per underperforming metric plus a strengths note, by priority desc."""
    recommendations = []
    for gap in gaps.get('underperforming', []):
        template, actions = _IMPROVEMENT_COPY.get(
            gap['metric'],
            ('Your {metric} ({current}) is {pct}% off the {target} benchmark.',
             ['Review the drivers of this metric']),
        )
        recommendations.append({
            'metric': gap['metric'],
            'priority': {'high': 10, 'medium': 7}.get(gap['severity'], 5),
            'type': 'improvement',
            'severity': gap['severity'],
            'title': f"Improve {gap['metric']}",
            'description': template.format(
                metric=gap['metric'], current=gap['current'],
                pct=abs(gap['gap_percentage']), target=gap['target'],
            ),
            'actions': list(actions),
        })

    if gaps.get('outperforming'):
        names = ', '.join(g['metric'] for g in gaps['outperforming'])
        recommendations.append({
            'metric': 'strengths',
            'priority': 3,
            'type': 'strength',
            'title': 'Leverage Your Strengths',
            'description': f"You're outperforming benchmarks in: {names}",
            'actions': [
                'Document and replicate successful strategies',
                'Share best practices across your organization',
                'Consider these as competitive advantages in marketing',
            ],
        })

    recommendations.sort(key=lambda r: r['priority'], reverse=True)
    return recommendations


class ComparisonService:

    def __init__(self, repos: Repositories):
        self.repos = repos

    # ── Project metrics ──────────────────────────────────────────────────────

    def get_project_metrics(self, project_id: str) -> Dict[str, Any]:
        project = self.repos.projects.get_project(project_id)
        if project is None:
            raise NotFoundError(f'Project {project_id} not found')

        wallets = self.repos.projects.list_wallets(project_id)
        wallet_ids = [w.id for w in wallets]
        scores = self.repos.metrics.latest_scores(wallet_ids) if wallet_ids else {}

        productivity = self._productivity(scores)
        retention = self._retention(project_id)
        adoption = self._adoption(wallet_ids)
        churn = self._churn(scores, len(wallets))

        return {
            'project_id': project_id,
            'project_name': project.name,
            'category': project.category,
            'status': project.status,
            'metrics': {
                'productivity': productivity['average_score'],
                'retention': retention['overall_retention_rate'],
                'adoption': adoption['overall_adoption_rate'],
                'churn': churn['churn_rate'],
            },
            'detailed_metrics': {
                'productivity': productivity,
                'retention': retention,
                'adoption': adoption,
                'churn': churn,
            },
            'calculated_at': datetime.now().isoformat(),
        }

    @staticmethod
    def _productivity(scores):
        values = [s.total_score for s in scores.values()]
        return {
            'average_score': round(sum(values) / len(values), 2) if values else 0.0,
            'scored_wallets': len(values),
        }

    def _retention(self, project_id):
        weekly = self.repos.metrics.list_cohorts(project_id, cohort_type='weekly')
        weeks = {}
        for n in range(1, 5):
            values = [getattr(c, f'retention_week_{n}') for c in weekly]
            values = [v for v in values if v is not None]
            weeks[f'week_{n}'] = round(sum(values) / len(values), 2) if values else 0.0
        overall = sum(weeks.values()) / 4 if weekly else 0.0
        return {'overall_retention_rate': round(overall, 2), 'cohorts': len(weekly), **weeks}

    def _adoption(self, wallet_ids):
        total = len(wallet_ids)
        stages = self.repos.metrics.list_adoption_stages(wallet_ids) if wallet_ids else []
        achieved = {}
        for stage in stages:
            if stage.achieved_at is not None:
                achieved.setdefault(stage.stage_name, set()).add(stage.wallet_id)

        stage_data, total_pct = {}, 0.0
        for name in ADOPTION_STAGES:
            count = len(achieved.get(name, ()))
            pct = count / total * 100 if total else 0.0
            stage_data[name] = {'wallets_achieved': count, 'percentage': round(pct, 2)}
            total_pct += pct
        return {
            'overall_adoption_rate': round(total_pct / len(ADOPTION_STAGES), 2),
            'total_wallets': total,
            'stages': stage_data,
        }

    @staticmethod
    def _churn(scores, total_wallets):
        churned = sum(1 for s in scores.values() if s.status == 'churn')
        high_risk = sum(1 for s in scores.values() if s.risk_level == 'high')
        return {
            'churn_rate': round(churned / total_wallets * 100, 2) if total_wallets else 0.0,
            'churned_wallets': churned,
            'high_risk_wallets': high_risk,
            'at_risk_percentage': round(high_risk / total_wallets * 100, 2) if total_wallets else 0.0,
        }

    # ── Comparisons ──────────────────────────────────────────────────────────

    def build_comparisons(self, metrics: Dict[str, float], benchmarks: Dict[str, Any],
                          target=TargetPercentile.P50) -> Dict[str, Dict[str, Any]]:
        comparisons = {}
        for metric in COMPARISON_METRICS:
            value = metrics.get(metric, 0.0)
            benchmark = benchmarks.get(metric)
            if benchmark is None:
                comparisons[metric] = {
                    'current_value': value,
                    'status': 'no_benchmark',
                    'percentile_range': 'unknown',
                    'message': f'No benchmark available for {metric}',
                }
                continue
            lower = LOWER_IS_BETTER.get(metric, False)
            gap = calculate_performance_gap(value, benchmark, target, lower_is_better=lower)
            comparisons[metric] = {
                'current_value': value,
                'benchmark_target': gap.target_value,
                'gap': gap.gap,
                'gap_percentage': gap.percentage,
                'status': gap.status,
                'percentile_range': get_percentile_range(value, benchmark, lower_is_better=lower),
                'benchmark_data': benchmark.to_dict(),
            }
        return comparisons

    def compare_project_to_market(self, project_id: str, target=TargetPercentile.P50) -> Dict[str, Any]:
        target = TargetPercentile.parse(target)
        project_metrics = self.get_project_metrics(project_id)
        category = project_metrics['category']
        benchmarks = {b.benchmark_type: b for b in self.repos.benchmarks.latest_by_category(category)}

        if not benchmarks:
            logger.info("No benchmarks for category %s (project %s)", category, project_id)
            return {
                'project_id': project_id,
                'category': category,
                'status': 'no_benchmarks',
                'message': f'No benchmarks available for category: {category}',
                'project_metrics': project_metrics,
                'overall_position': {'position': 'unknown', 'score': 0, 'metrics_compared': 0},
            }

        comparisons = self.build_comparisons(project_metrics['metrics'], benchmarks, target)
        gaps = identify_performance_gaps(comparisons, target)
        return {
            'project_id': project_id,
            'project_name': project_metrics['project_name'],
            'category': category,
            'status': 'compared',
            'target_percentile': target.value,
            'comparisons': comparisons,
            'performance_gaps': gaps,
            'recommendations': generate_comparison_recommendations(gaps, project_metrics),
            'overall_position': calculate_overall_position(comparisons),
            'compared_at': datetime.now().isoformat(),
        }

    def compare_multiple_projects(self, project_ids: List[str], target=TargetPercentile.P50) -> Dict[str, Any]:
        if not project_ids:
            raise ValidationError('At least one project_id is required')
        target = TargetPercentile.parse(target)
        results = [self.compare_project_to_market(pid, target) for pid in project_ids]

        matrix = {
            'projects': [
                {
                    'id': r['project_id'],
                    'name': r.get('project_name') or r['project_metrics']['project_name'],
                    'category': r['category'],
                    'position': r['overall_position'],
                }
                for r in results
            ],
            'metrics': {},
            'leaders': {},
        }
        for metric in COMPARISON_METRICS:
            rows = []
            for r in results:
                data = r.get('comparisons', {}).get(metric)
                if data is None:
                    data = {'current_value': r['project_metrics']['metrics'][metric], 'status': 'no_benchmark'}
                rows.append({
                    'project_id': r['project_id'],
                    'value': data.get('current_value') or 0,
                    'gap': data.get('gap') or 0,
                    'status': data.get('status', 'unknown'),
                    'percentile_range': data.get('percentile_range', 'unknown'),
                })
            matrix['metrics'][metric] = rows
            pick = min if LOWER_IS_BETTER.get(metric) else max
            matrix['leaders'][metric] = pick(rows, key=lambda row: row['value'])['project_id']

        return {
            'comparison_matrix': matrix,
            'target_percentile': target.value,
            'compared_at': datetime.now().isoformat(),
        }
